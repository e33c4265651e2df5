"""
Asset Upload Pipeline.

Gets a local binary into the remote service:
upload bytes -> link asset to the upload -> process -> poll until ready
-> (optionally) publish.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable

from cms_sync.config import PollingPolicy
from cms_sync.connectors.cms_client import (
    CMSError,
    ContentfulClient,
    NetworkUnavailableError,
    ProcessingState,
    ProcessingStatus,
    VersionConflictError,
    WriteResult,
)
from cms_sync.core.records import Asset, remote_version

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class AssetUploadState(str, Enum):
    CREATED = "created"
    UPLOADING = "uploading"
    LINKING = "linking"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class AssetUploadError(CMSError):
    """Raised when the bytes cannot be uploaded or linked."""

    def __init__(
        self,
        message: str,
        asset_id: str,
        state: AssetUploadState = AssetUploadState.FAILED,
    ) -> None:
        super().__init__(message)
        self.asset_id = asset_id
        self.state = state


class AssetProcessingError(AssetUploadError):
    """Raised when the service reports that processing failed."""


class ProcessingTimeoutError(AssetProcessingError):
    """Raised when processing did not finish within the polling budget."""


@dataclass
class AssetUploadResult:
    """Final server state of an uploaded asset."""

    asset_id: str
    url: str | None = None
    width: int | None = None
    height: int | None = None
    size: int | None = None
    version: int = 0
    updated_at: datetime | None = None
    polls: int = 0
    history: list[AssetUploadState] = field(
        default_factory=lambda: [AssetUploadState.CREATED]
    )

    @property
    def state(self) -> AssetUploadState:
        return self.history[-1]


class AssetUploadPipeline:
    """
    Runs the multi-step remote asset workflow.

    Example:
        pipeline = AssetUploadPipeline(client, settings.polling)
        result = await pipeline.upload(asset)
        print(result.url, result.version)
    """

    def __init__(
        self,
        client: ContentfulClient,
        policy: PollingPolicy | None = None,
        auto_publish: bool = True,
        locale: str = "en-US",
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.client = client
        self.policy = policy or PollingPolicy()
        self.auto_publish = auto_publish
        self.locale = locale
        self._sleep = sleep
        self._in_flight: set[str] = set()

    def is_uploading(self, asset_id: str) -> bool:
        return asset_id in self._in_flight

    async def upload(self, asset: Asset) -> AssetUploadResult:
        """
        Upload ``asset``'s binary and wait until the service has processed it.

        Raises:
            AssetUploadError: Missing source, or an HTTP error while
                uploading or linking
            AssetProcessingError: The service rejected the file
            ProcessingTimeoutError: Still processing after the polling budget
            NetworkUnavailableError: The service is unreachable
        """
        if asset.id in self._in_flight:
            raise AssetUploadError(f"Asset {asset.id} is already being uploaded", asset.id)
        if not asset.url_string:
            raise AssetUploadError(f"Asset {asset.id} has no file to upload", asset.id)

        self._in_flight.add(asset.id)
        result = AssetUploadResult(asset_id=asset.id)
        try:
            return await self._run(asset, result)
        except AssetUploadError as e:
            failed_at = result.state
            result.history.append(AssetUploadState.FAILED)
            e.state = failed_at
            raise
        finally:
            self._in_flight.discard(asset.id)

    async def _run(self, asset: Asset, result: AssetUploadResult) -> AssetUploadResult:
        self._advance(result, AssetUploadState.UPLOADING)
        try:
            data = await self.client.download(asset.url_string or "")
            upload_id = await self.client.create_upload(data)
        except NetworkUnavailableError:
            raise
        except CMSError as e:
            raise AssetUploadError(f"Upload of {asset.id} failed: {e}", asset.id) from e

        self._advance(result, AssetUploadState.LINKING)
        try:
            linked = await self._link(asset, upload_id)
            await self.client.process_asset(asset.id, linked.version, self.locale)
        except NetworkUnavailableError:
            raise
        except CMSError as e:
            raise AssetUploadError(f"Linking {asset.id} failed: {e}", asset.id) from e

        self._advance(result, AssetUploadState.PROCESSING)
        status = await self._wait_until_processed(asset.id, result)

        result.url = status.url
        result.width = status.width
        result.height = status.height
        result.size = status.size
        result.version = status.version
        result.updated_at = status.updated_at

        if self.auto_publish:
            published = await self.client.publish_asset(asset.id, status.version)
            result.version = published.version
            result.updated_at = published.updated_at or result.updated_at

        self._advance(result, AssetUploadState.READY)
        logger.info("Asset %s ready at %s (version %s)", asset.id, result.url, result.version)
        return result

    async def _link(self, asset: Asset, upload_id: str) -> WriteResult:
        fields = asset.upload_fields(upload_id, self.locale)
        try:
            return await self.client.link_asset(
                asset.id, fields, asset.contentful_version or None
            )
        except VersionConflictError:
            # Left behind by an earlier attempt that timed out while processing
            current = await self.client.get_asset(asset.id)
            if current is None:
                raise
            version = remote_version(current.get("sys") or {})
            logger.debug("Asset %s already exists (version %s), relinking", asset.id, version)
            return await self.client.link_asset(asset.id, fields, version)

    async def _wait_until_processed(
        self, asset_id: str, result: AssetUploadResult
    ) -> ProcessingStatus:
        for attempt in range(self.policy.max_attempts):
            status = await self.client.poll_processing(asset_id, self.locale)
            result.polls += 1

            if status.state == ProcessingState.READY:
                return status
            if status.state == ProcessingState.FAILED:
                raise AssetProcessingError(
                    f"Processing of {asset_id} failed: {status.error}", asset_id
                )

            if attempt < self.policy.max_attempts - 1:
                await self._sleep(self.policy.delay(attempt))

        raise ProcessingTimeoutError(
            f"Asset {asset_id} still processing after {result.polls} polls", asset_id
        )

    def _advance(self, result: AssetUploadResult, state: AssetUploadState) -> None:
        logger.debug("Asset %s: %s -> %s", result.asset_id, result.state.value, state.value)
        result.history.append(state)
