"""
Content Management Service REST Client.

Provides the remote side of the sync engine over the service's HTTP APIs:
- Delta sync (delivery API) and full snapshots (preview API)
- Entry and asset writes with optimistic locking (management API)
- Binary upload, asset processing and processing polls (upload API)
- Rate limiting and retry logic
- Error mapping to a small exception taxonomy
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx

from cms_sync.config import ContentMode, Settings
from cms_sync.core.records import (
    MalformedPayloadError,
    normalize_url,
    parse_datetime,
    remote_version,
)

logger = logging.getLogger(__name__)

MANAGEMENT_CONTENT_TYPE = "application/vnd.contentful.management.v1+json"


class CMSError(Exception):
    """Base exception for remote API errors."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status


class NetworkUnavailableError(CMSError):
    """Raised when the service cannot be reached at all."""

    pass


class ServerError(CMSError):
    """Raised when the service answers with a 5xx status."""

    pass


class RateLimitError(CMSError):
    """Raised when rate limit is exceeded after all retries."""

    def __init__(self, retry_after: int = 60) -> None:
        super().__init__(f"Rate limit exceeded. Retry after {retry_after}s", status=429)
        self.retry_after = retry_after


class VersionConflictError(CMSError):
    """Raised when a write carries a stale version."""

    def __init__(self, resource_id: str, server_version: int | None = None) -> None:
        super().__init__(
            f"Version conflict on {resource_id} (server version {server_version})",
            code="VersionMismatch",
            status=409,
        )
        self.resource_id = resource_id
        self.server_version = server_version


class NotFoundError(CMSError):
    """Raised when a resource does not exist remotely."""

    pass


class ProcessingState(str, Enum):
    """Status of remote asset processing."""

    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ProcessingStatus:
    """Result of a single processing poll."""

    state: ProcessingState
    url: str | None = None
    width: int | None = None
    height: int | None = None
    size: int | None = None
    version: int = 0
    updated_at: Any = None
    error: str | None = None

    @classmethod
    def processing(cls) -> "ProcessingStatus":
        return cls(ProcessingState.PROCESSING)

    @classmethod
    def failed(cls, error: str) -> "ProcessingStatus":
        return cls(ProcessingState.FAILED, error=error)


@dataclass
class RemoteDelta:
    """Everything the remote side reports since a cursor."""

    entries: list[dict[str, Any]] = field(default_factory=list)
    assets: list[dict[str, Any]] = field(default_factory=list)
    deleted_entry_ids: list[str] = field(default_factory=list)
    deleted_asset_ids: list[str] = field(default_factory=list)
    next_token: str | None = None
    is_full_snapshot: bool = False

    def __len__(self) -> int:
        return (
            len(self.entries)
            + len(self.assets)
            + len(self.deleted_entry_ids)
            + len(self.deleted_asset_ids)
        )


@dataclass
class WriteResult:
    """Server acknowledgement of a write."""

    id: str
    version: int
    updated_at: Any = None
    resource: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_resource(cls, resource: dict[str, Any], fallback_id: str) -> "WriteResult":
        sys = resource.get("sys") or {}
        return cls(
            id=sys.get("id", fallback_id),
            version=remote_version(sys),
            updated_at=parse_datetime(sys.get("updatedAt")),
            resource=resource,
        )


class ContentfulClient:
    """
    REST client for a Contentful-style content service.

    Example:
        async with create_cms_client(settings) as client:
            delta = await client.fetch_changes(sync_token=None)
            result = await client.put_entry("book-1", fields, version=3)
    """

    def __init__(
        self,
        space_id: str,
        management_token: str,
        read_token: str,
        environment_id: str = "master",
        mode: ContentMode = ContentMode.DELIVERY,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            space_id: Space identifier
            management_token: Token for the management and upload APIs
            read_token: Token for the delivery or preview API
            environment_id: Environment identifier
            mode: Which read API to pull from
            settings: Full settings object (hosts, retries, page size)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.space_id = space_id
        self.environment_id = environment_id
        self.management_token = management_token
        self.read_token = read_token
        self.mode = mode
        self.settings = settings or Settings()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # -------------------------------------------------------------------------
    # URLs and plumbing
    # -------------------------------------------------------------------------

    def _space_path(self) -> str:
        return f"/spaces/{self.space_id}/environments/{self.environment_id}"

    @property
    def management_url(self) -> str:
        """Base URL for management operations."""
        return f"{self.settings.api.management_host}{self._space_path()}"

    @property
    def read_url(self) -> str:
        """Base URL for the delivery or preview API."""
        host = (
            self.settings.api.preview_host
            if self.mode == ContentMode.PREVIEW
            else self.settings.api.delivery_host
        )
        return f"{host}{self._space_path()}"

    @property
    def upload_url(self) -> str:
        return f"{self.settings.api.upload_host}/spaces/{self.space_id}/uploads"

    def _management_headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.management_token}",
            "Content-Type": MANAGEMENT_CONTENT_TYPE,
        }
        headers.update(extra)
        return headers

    def _read_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.read_token}"}

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=self.settings.api.timeout_seconds,
                    write=30.0,
                    pool=10.0,
                ),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ContentfulClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request, retrying rate limits and transport failures.

        Handles:
        - Rate limiting, honouring Retry-After
        - Transient transport errors with linear backoff
        """
        client = await self._get_client()
        max_retries = self.settings.api.max_retries
        retry_delay = self.settings.api.retry_delay_seconds

        for attempt in range(max_retries):
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TransportError as e:
                if attempt < max_retries - 1:
                    logger.debug("Transport error on %s %s: %s (retrying)", method, url, e)
                    await asyncio.sleep(retry_delay * (attempt + 1))
                    continue
                raise NetworkUnavailableError(f"Connection error: {e}") from e

            if response.status_code == 429:
                retry_after = _retry_after(response, default=retry_delay)
                if attempt < max_retries - 1:
                    logger.debug("Rate limited, sleeping %ss", retry_after)
                    await asyncio.sleep(retry_after)
                    continue
                raise RateLimitError(int(retry_after))

            return response

        raise NetworkUnavailableError("Max retries exceeded")

    async def _request(
        self,
        method: str,
        url: str,
        resource_id: str = "",
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Make an API request and decode the JSON body.

        Maps status codes onto the error taxonomy:
        - 404 -> NotFoundError
        - 409 -> VersionConflictError
        - 5xx -> ServerError
        - other non-2xx -> CMSError
        """
        response = await self._send(method, url, **kwargs)
        status = response.status_code

        if status == 404:
            raise NotFoundError(f"Not found: {resource_id or url}", status=404)
        if status == 409:
            header = response.headers.get("X-Contentful-Version")
            raise VersionConflictError(resource_id, int(header) if header else None)
        if status >= 500:
            message, code = _error_details(response)
            raise ServerError(
                f"Server error {status} on {method} {url}: {message}", code, status
            )
        if status >= 400:
            message, code = _error_details(response)
            raise CMSError(message, code, status)

        if status == 204 or not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedPayloadError(f"Invalid JSON from {url}", resource_id) from e
        if not isinstance(data, dict):
            raise MalformedPayloadError(f"Unexpected body from {url}", resource_id)
        return data

    # -------------------------------------------------------------------------
    # Pull
    # -------------------------------------------------------------------------

    async def fetch_changes(self, sync_token: str | None) -> RemoteDelta:
        """
        Fetch remote changes since ``sync_token``.

        Delivery mode uses the /sync endpoint (initial sync when the token is
        empty). Preview mode has no /sync endpoint and always returns a full
        snapshot.
        """
        if self.mode == ContentMode.PREVIEW:
            return await self._fetch_snapshot()
        return await self._fetch_sync(sync_token)

    async def _fetch_sync(self, sync_token: str | None) -> RemoteDelta:
        delta = RemoteDelta(is_full_snapshot=not sync_token)
        url = f"{self.read_url}/sync"
        params: dict[str, Any] = (
            {"sync_token": sync_token} if sync_token else {"initial": "true"}
        )

        while True:
            data = await self._request("GET", url, params=params, headers=self._read_headers())
            for item in data.get("items", []):
                _sort_sync_item(item, delta, self.settings.content_type_id)

            if data.get("nextPageUrl"):
                params = {"sync_token": _token_from_url(data["nextPageUrl"])}
                continue

            next_sync_url = data.get("nextSyncUrl")
            if not next_sync_url:
                raise MalformedPayloadError("Sync response has neither nextPageUrl nor nextSyncUrl")
            delta.next_token = _token_from_url(next_sync_url)
            return delta

    async def _fetch_snapshot(self) -> RemoteDelta:
        """Fetch every asset and book entry, page by page."""
        delta = RemoteDelta(is_full_snapshot=True)
        delta.assets = await self._fetch_all(f"{self.read_url}/assets", {})
        delta.entries = await self._fetch_all(
            f"{self.read_url}/entries",
            {"content_type": self.settings.content_type_id},
        )
        return delta

    async def _fetch_all(self, url: str, query: dict[str, Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        limit = self.settings.sync.page_size
        skip = 0

        while True:
            params = {**query, "locale": "*", "limit": limit, "skip": skip}
            data = await self._request("GET", url, params=params, headers=self._read_headers())
            page = data.get("items", [])
            items.extend(page)
            skip += len(page)
            if not page or skip >= data.get("total", 0):
                return items

    # -------------------------------------------------------------------------
    # Entries
    # -------------------------------------------------------------------------

    async def get_entry(self, entry_id: str) -> dict[str, Any] | None:
        """Fetch the current management copy of an entry (None if gone)."""
        try:
            return await self._request(
                "GET",
                f"{self.management_url}/entries/{entry_id}",
                entry_id,
                headers=self._management_headers(),
            )
        except NotFoundError:
            return None

    async def put_entry(
        self,
        entry_id: str,
        fields: dict[str, Any],
        version: int | None = None,
        content_type_id: str | None = None,
    ) -> WriteResult:
        """
        Create (no version) or update (with version) an entry.

        Raises:
            VersionConflictError: the server has a newer version
            NotFoundError: updating an entry that no longer exists
        """
        extra: dict[str, str] = {}
        if version:
            extra["X-Contentful-Version"] = str(version)
        else:
            extra["X-Contentful-Content-Type"] = content_type_id or self.settings.content_type_id

        data = await self._request(
            "PUT",
            f"{self.management_url}/entries/{entry_id}",
            entry_id,
            json={"fields": fields},
            headers=self._management_headers(**extra),
        )
        result = WriteResult.from_resource(data, entry_id)
        logger.debug("Wrote entry %s (version %s)", entry_id, result.version)
        return result

    async def publish_entry(self, entry_id: str, version: int) -> WriteResult:
        """Publish an entry at ``version``."""
        data = await self._request(
            "PUT",
            f"{self.management_url}/entries/{entry_id}/published",
            entry_id,
            headers=self._management_headers(**{"X-Contentful-Version": str(version)}),
        )
        return WriteResult.from_resource(data, entry_id)

    async def delete_entry(self, entry_id: str) -> None:
        """Unpublish (if published) and delete an entry. Missing entries are fine."""
        await self._delete_resource("entries", entry_id)

    # -------------------------------------------------------------------------
    # Assets
    # -------------------------------------------------------------------------

    async def get_asset(self, asset_id: str) -> dict[str, Any] | None:
        """Fetch the current management copy of an asset (None if gone)."""
        try:
            return await self._request(
                "GET",
                f"{self.management_url}/assets/{asset_id}",
                asset_id,
                headers=self._management_headers(),
            )
        except NotFoundError:
            return None

    async def put_asset(
        self,
        asset_id: str,
        fields: dict[str, Any],
        version: int | None = None,
    ) -> WriteResult:
        """Create or update asset metadata."""
        extra = {"X-Contentful-Version": str(version)} if version else {}
        data = await self._request(
            "PUT",
            f"{self.management_url}/assets/{asset_id}",
            asset_id,
            json={"fields": fields},
            headers=self._management_headers(**extra),
        )
        return WriteResult.from_resource(data, asset_id)

    async def publish_asset(self, asset_id: str, version: int) -> WriteResult:
        data = await self._request(
            "PUT",
            f"{self.management_url}/assets/{asset_id}/published",
            asset_id,
            headers=self._management_headers(**{"X-Contentful-Version": str(version)}),
        )
        return WriteResult.from_resource(data, asset_id)

    async def delete_asset(self, asset_id: str) -> None:
        await self._delete_resource("assets", asset_id)

    async def _delete_resource(self, collection: str, resource_id: str) -> None:
        base = f"{self.management_url}/{collection}/{resource_id}"
        try:
            await self._request(
                "DELETE", f"{base}/published", resource_id, headers=self._management_headers()
            )
        except (NetworkUnavailableError, ServerError):
            raise
        except CMSError as e:
            # Never published, or already gone
            logger.debug("Unpublish of %s skipped: %s", resource_id, e)
        try:
            await self._request("DELETE", base, resource_id, headers=self._management_headers())
        except NotFoundError:
            pass
        logger.debug("Deleted %s %s", collection, resource_id)

    # -------------------------------------------------------------------------
    # Binary upload workflow
    # -------------------------------------------------------------------------

    async def create_upload(self, data: bytes) -> str:
        """Send raw bytes to the upload API and return the upload id."""
        payload = await self._request(
            "POST",
            self.upload_url,
            content=data,
            headers={
                "Authorization": f"Bearer {self.management_token}",
                "Content-Type": "application/octet-stream",
            },
        )
        upload_id = (payload.get("sys") or {}).get("id")
        if not isinstance(upload_id, str):
            raise MalformedPayloadError("Upload response has no sys.id")
        return upload_id

    async def link_asset(
        self,
        asset_id: str,
        fields: dict[str, Any],
        version: int | None = None,
    ) -> WriteResult:
        """Create (or replace the file of) an asset referencing an upload.

        ``fields`` is normally built with ``Asset.upload_fields``.
        """
        return await self.put_asset(asset_id, fields, version)

    async def process_asset(self, asset_id: str, version: int, locale: str | None = None) -> None:
        """Ask the service to process the linked upload."""
        locale = locale or self.settings.locale
        await self._request(
            "PUT",
            f"{self.management_url}/assets/{asset_id}/files/{locale}/process",
            asset_id,
            headers=self._management_headers(**{"X-Contentful-Version": str(version)}),
        )

    async def poll_processing(self, asset_id: str, locale: str | None = None) -> ProcessingStatus:
        """
        Check whether processing has produced a final URL.

        The file block keeps ``uploadFrom`` while processing and gains
        ``url`` (plus details) once done.
        """
        locale = locale or self.settings.locale
        resource = await self.get_asset(asset_id)
        if resource is None:
            return ProcessingStatus.failed(f"Asset {asset_id} disappeared during processing")

        sys = resource.get("sys") or {}
        file_field = (resource.get("fields") or {}).get("file") or {}
        file_info = file_field.get(locale) if isinstance(file_field, dict) else None
        if not isinstance(file_info, dict):
            return ProcessingStatus.processing()

        if file_info.get("error"):
            return ProcessingStatus.failed(str(file_info["error"]))

        url = file_info.get("url")
        if not url:
            return ProcessingStatus.processing()

        details = file_info.get("details") or {}
        image = details.get("image") or {}
        return ProcessingStatus(
            state=ProcessingState.READY,
            url=normalize_url(url),
            width=image.get("width"),
            height=image.get("height"),
            size=details.get("size"),
            version=remote_version(sys),
            updated_at=parse_datetime(sys.get("updatedAt")),
        )

    async def download(self, source: str) -> bytes:
        """Read the bytes behind a local path, file:// URL or http(s) URL."""
        source = normalize_url(source) or source
        parsed = urlparse(source)
        if parsed.scheme in ("http", "https"):
            response = await self._send("GET", source)
            if response.status_code >= 400:
                raise CMSError(
                    f"Download of {source} failed with {response.status_code}",
                    status=response.status_code,
                )
            return response.content

        path = Path(parsed.path if parsed.scheme == "file" else source)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise CMSError(f"Cannot read {path}: {e}") from e


# =============================================================================
# Helpers
# =============================================================================


def _error_details(response: httpx.Response) -> tuple[str, str | None]:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}", None
    sys = data.get("sys") or {} if isinstance(data, dict) else {}
    message = data.get("message") if isinstance(data, dict) else None
    return (
        message or f"HTTP {response.status_code}",
        sys.get("id") if isinstance(sys, dict) else None,
    )


def _retry_after(response: httpx.Response, default: float) -> float:
    """Seconds to wait after a 429; unparseable headers fall back to ``default``."""
    value = response.headers.get("X-Contentful-RateLimit-Reset") or response.headers.get(
        "Retry-After"
    )
    if value is None:
        return 60.0
    try:
        return max(float(value.strip()), 0.0)
    except ValueError:
        logger.debug("Unparseable rate-limit header %r, waiting %ss", value, default)
        return default


def _token_from_url(url: str) -> str:
    tokens = parse_qs(urlparse(url).query).get("sync_token")
    if not tokens:
        raise MalformedPayloadError(f"No sync_token in {url}")
    return tokens[0]


def _sort_sync_item(item: Any, delta: RemoteDelta, content_type_id: str) -> None:
    sys = item.get("sys") if isinstance(item, dict) else None
    item_type = sys.get("type") if isinstance(sys, dict) else None

    if item_type == "Entry":
        # The sync endpoint returns every content type in the space
        content_type = ((sys.get("contentType") or {}).get("sys") or {}).get("id")
        if content_type == content_type_id:
            delta.entries.append(item)
        else:
            logger.debug("Skipping %s entry %s", content_type, sys.get("id"))
    elif item_type == "Asset":
        delta.assets.append(item)
    elif item_type == "DeletedEntry" and isinstance(sys.get("id"), str):
        delta.deleted_entry_ids.append(sys["id"])
    elif item_type == "DeletedAsset" and isinstance(sys.get("id"), str):
        delta.deleted_asset_ids.append(sys["id"])
    else:
        logger.warning("Skipping unrecognised sync item: %r", sys or item)


# Convenience function for creating client from settings
def create_cms_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ContentfulClient:
    """Create a ContentfulClient from settings."""
    return ContentfulClient(
        space_id=settings.space_id,
        management_token=settings.management_token.get_secret_value(),
        read_token=settings.read_token,
        environment_id=settings.environment_id,
        mode=settings.content_mode,
        settings=settings,
        transport=transport,
    )
