"""Shared fixtures: an in-memory fake of the remote content service."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

import httpx
import pytest

from cms_sync.config import ApiConfig, PollingPolicy, Settings, SyncOptions
from cms_sync.connectors.cms_client import ContentfulClient, create_cms_client
from cms_sync.connectors.store import LocalStore
from cms_sync.core.dirty import DirtyTracker
from cms_sync.core.records import Asset, Book, format_datetime

SPACE = "space-1"
ENV_PREFIX = f"/spaces/{SPACE}/environments/master"
BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def ts(seconds: float) -> datetime:
    """A fixed point in time, ``seconds`` after the test epoch."""
    return BASE_TIME + timedelta(seconds=seconds)


class FakeClock:
    """Deterministic clock for the dirty tracker; advances one second per call."""

    def __init__(self, start: float = 100) -> None:
        self.seconds = start

    def __call__(self) -> datetime:
        self.seconds += 1
        return ts(self.seconds)


class FakeRemote:
    """
    Minimal stand-in for the delivery, preview, management and upload APIs.

    Served through ``httpx.MockTransport`` so the real client code runs.
    """

    def __init__(self, locale: str = "en-US") -> None:
        self.locale = locale
        self.entries: dict[str, dict[str, Any]] = {}
        self.assets: dict[str, dict[str, Any]] = {}
        self.uploads: dict[str, bytes] = {}
        self.files: dict[str, bytes] = {}
        self.processing_polls: dict[str, int] = {}
        self.processing_failures: set[str] = set()
        self.requests: list[tuple[str, str, str]] = []
        self.offline = False
        # Called before each request; returning True drops the connection
        self.interceptor: Callable[[httpx.Request], bool] | None = None
        # Path suffixes answered with a 500
        self.server_errors: set[str] = set()
        self.sync_page_size = 100
        self.clock = 1000
        self._seq = 0
        self._changes: dict[tuple[str, str], int] = {}
        self._processing: dict[str, int] = {}
        self.transport = httpx.MockTransport(self.handle)

    # -------------------------------------------------------------------------
    # Seeding and inspection
    # -------------------------------------------------------------------------

    def tick(self) -> str:
        self.clock += 1
        return format_datetime(ts(self.clock)) or ""

    def _touch(self, kind: str, resource_id: str) -> None:
        self._seq += 1
        self._changes[(kind, resource_id)] = self._seq

    def add_book(self, book: Book) -> dict[str, Any]:
        resource = {
            "sys": self._sys(book.id, "Entry", book.contentful_version, book.updated_at),
            "fields": book.to_fields(self.locale),
        }
        resource["sys"]["contentType"] = {"sys": {"type": "Link", "id": "book"}}
        self.entries[book.id] = resource
        self._touch("Entry", book.id)
        return resource

    def add_asset(self, asset: Asset) -> dict[str, Any]:
        fields = asset.to_fields(self.locale)
        if asset.url_string:
            fields["file"] = {
                self.locale: {
                    "url": asset.url_string,
                    "fileName": asset.file_name or f"{asset.id}.jpg",
                    "contentType": asset.file_type or "image/jpeg",
                    "details": {
                        "size": asset.size or 0,
                        "image": {"width": asset.width or 0, "height": asset.height or 0},
                    },
                }
            }
        resource = {
            "sys": self._sys(asset.id, "Asset", asset.contentful_version, asset.updated_at),
            "fields": fields,
        }
        self.assets[asset.id] = resource
        self._touch("Asset", asset.id)
        return resource

    def remove(self, kind: str, resource_id: str) -> None:
        store = self.entries if kind == "Entry" else self.assets
        del store[resource_id]
        self._touch(kind, resource_id)

    def version_of(self, kind: str, resource_id: str) -> int:
        store = self.entries if kind == "Entry" else self.assets
        return store[resource_id]["sys"]["version"]

    def field(self, kind: str, resource_id: str, name: str) -> Any:
        store = self.entries if kind == "Entry" else self.assets
        return store[resource_id]["fields"].get(name, {}).get(self.locale)

    def count(self, method: str, path_suffix: str) -> int:
        return sum(
            1 for m, _, path in self.requests if m == method and path.endswith(path_suffix)
        )

    def _sys(
        self,
        resource_id: str,
        kind: str,
        version: int,
        updated_at: datetime | None,
    ) -> dict[str, Any]:
        stamp = format_datetime(updated_at) if updated_at else self.tick()
        return {
            "id": resource_id,
            "type": kind,
            "version": version or 1,
            "createdAt": stamp,
            "updatedAt": stamp,
        }

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.offline or (self.interceptor and self.interceptor(request)):
            raise httpx.ConnectError("network is down", request=request)

        host = request.url.host
        path = request.url.path
        self.requests.append((request.method, host, path))
        if any(path.endswith(suffix) for suffix in self.server_errors):
            return httpx.Response(500, json={"sys": {"id": "ServerError"}, "message": "Internal error"})

        if host == "upload.test":
            return self._upload(request)
        if host == "files.test":
            data = self.files.get(path)
            return httpx.Response(200, content=data) if data is not None else _not_found()
        if not path.startswith(ENV_PREFIX):
            return _not_found()

        parts = path[len(ENV_PREFIX):].strip("/").split("/")
        if host == "cdn.test" and parts == ["sync"]:
            return self._sync(request)
        if host == "preview.test" and parts in (["assets"], ["entries"]):
            return self._collection(parts[0], request)
        if host == "cma.test" and len(parts) >= 2:
            return self._management(request, parts)
        return _not_found()

    def _upload(self, request: httpx.Request) -> httpx.Response:
        upload_id = f"upload-{len(self.uploads) + 1}"
        self.uploads[upload_id] = request.content
        return httpx.Response(201, json={"sys": {"id": upload_id, "type": "Upload"}})

    def _public(self, resource: dict[str, Any]) -> dict[str, Any]:
        """Delivery/preview form: ``revision`` instead of ``version``."""
        sys = {k: v for k, v in resource["sys"].items() if k != "version"}
        sys["revision"] = resource["sys"]["version"]
        return {"sys": sys, "fields": resource["fields"]}

    def _sync(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        if params.get("initial") == "true":
            since, offset = 0, 0
        else:
            token = params["sync_token"]
            if token.startswith("p"):
                since_text, offset_text = token[1:].split("_")
                since, offset = int(since_text), int(offset_text)
            else:
                since, offset = int(token[1:]), 0

        items = []
        for (kind, resource_id), seq in sorted(self._changes.items(), key=lambda kv: kv[1]):
            if seq <= since:
                continue
            store = self.entries if kind == "Entry" else self.assets
            if resource_id in store:
                items.append(self._public(store[resource_id]))
            elif since:
                items.append({"sys": {"id": resource_id, "type": f"Deleted{kind}"}})

        page = items[offset:offset + self.sync_page_size]
        base = f"https://cdn.test{ENV_PREFIX}/sync"
        body: dict[str, Any] = {"items": page}
        if offset + self.sync_page_size < len(items):
            body["nextPageUrl"] = f"{base}?sync_token=p{since}_{offset + self.sync_page_size}"
        else:
            body["nextSyncUrl"] = f"{base}?sync_token=s{self._seq}"
        return httpx.Response(200, json=body)

    def _collection(self, name: str, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        store = self.entries if name == "entries" else self.assets
        items = [self._public(r) for _, r in sorted(store.items())]
        limit = int(params.get("limit", 100))
        skip = int(params.get("skip", 0))
        return httpx.Response(
            200,
            json={"items": items[skip:skip + limit], "total": len(items), "skip": skip, "limit": limit},
        )

    def _management(self, request: httpx.Request, parts: list[str]) -> httpx.Response:
        collection, resource_id, *tail = parts
        kind = "Entry" if collection == "entries" else "Asset"
        store = self.entries if kind == "Entry" else self.assets
        resource = store.get(resource_id)
        method = request.method

        if not tail:
            if method == "GET":
                if resource is None:
                    return _not_found()
                self._advance_processing(resource_id, resource)
                return httpx.Response(200, json=resource)
            if method == "PUT":
                return self._write(kind, store, resource_id, request)
            if method == "DELETE":
                if resource is None:
                    return _not_found()
                self.remove(kind, resource_id)
                return httpx.Response(204)

        if resource is None:
            return _not_found()

        if tail == ["published"]:
            if method == "PUT":
                if not self._version_matches(resource, request):
                    return _conflict(resource)
                resource["sys"]["publishedVersion"] = resource["sys"]["version"]
            resource["sys"]["version"] += 1
            resource["sys"]["updatedAt"] = self.tick()
            self._touch(kind, resource_id)
            return httpx.Response(200, json=resource)

        if len(tail) == 3 and tail[0] == "files" and tail[2] == "process":
            if not self._version_matches(resource, request):
                return _conflict(resource)
            self._processing[resource_id] = self.processing_polls.get(resource_id, 0)
            return httpx.Response(204)

        return _not_found()

    def _write(
        self,
        kind: str,
        store: dict[str, dict[str, Any]],
        resource_id: str,
        request: httpx.Request,
    ) -> httpx.Response:
        existing = store.get(resource_id)
        header = request.headers.get("X-Contentful-Version")
        fields = json.loads(request.content)["fields"]

        if existing is None:
            if header:
                return _not_found()
            resource = {"sys": self._sys(resource_id, kind, 1, None), "fields": fields}
            if kind == "Entry":
                content_type = request.headers.get("X-Contentful-Content-Type", "book")
                resource["sys"]["contentType"] = {"sys": {"type": "Link", "id": content_type}}
            store[resource_id] = resource
            self._touch(kind, resource_id)
            return httpx.Response(201, json=resource)

        if not self._version_matches(existing, request):
            return _conflict(existing)
        existing["fields"] = fields
        existing["sys"]["version"] += 1
        existing["sys"]["updatedAt"] = self.tick()
        self._touch(kind, resource_id)
        return httpx.Response(200, json=existing)

    def _version_matches(self, resource: dict[str, Any], request: httpx.Request) -> bool:
        header = request.headers.get("X-Contentful-Version")
        return header is not None and int(header) == resource["sys"]["version"]

    def _advance_processing(self, asset_id: str, resource: dict[str, Any]) -> None:
        if asset_id not in self._processing:
            return
        if self._processing[asset_id] > 0:
            self._processing[asset_id] -= 1
            return
        del self._processing[asset_id]

        file_info = resource["fields"]["file"][self.locale]
        if asset_id in self.processing_failures:
            file_info["error"] = "unsupported image"
            return
        upload = file_info.pop("uploadFrom")["sys"]["id"]
        file_info["url"] = f"//images.test/{asset_id}/{file_info['fileName']}"
        file_info["details"] = {
            "size": len(self.uploads[upload]),
            "image": {"width": 640, "height": 480},
        }


def _not_found() -> httpx.Response:
    return httpx.Response(404, json={"sys": {"id": "NotFound"}, "message": "The resource could not be found."})


def _conflict(resource: dict[str, Any]) -> httpx.Response:
    return httpx.Response(
        409,
        json={"sys": {"id": "VersionMismatch"}, "message": "Version mismatch"},
        headers={"X-Contentful-Version": str(resource["sys"]["version"])},
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at the fake hosts, with no retry or polling delays."""
    return Settings(
        space_id=SPACE,
        management_token="cma-token",
        delivery_token="cdn-token",
        preview_token="preview-token",
        database_path=tmp_path / "books.db",
        api=ApiConfig(
            management_host="https://cma.test",
            delivery_host="https://cdn.test",
            preview_host="https://preview.test",
            upload_host="https://upload.test",
            max_retries=2,
            retry_delay_seconds=0,
        ),
        sync=SyncOptions(auto_publish=False),
        polling=PollingPolicy.immediate(max_attempts=5),
    )


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def client(settings: Settings, remote: FakeRemote) -> ContentfulClient:
    return create_cms_client(settings, transport=remote.transport)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> Iterator[LocalStore]:
    """A file-backed store with the dirty tracker installed."""
    local = LocalStore(tmp_path / "local.db")
    DirtyTracker.install(local, clock=clock)
    yield local
    local.close()
