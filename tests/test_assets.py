"""Tests for the asset upload pipeline."""

import asyncio

import pytest

from cms_sync.config import PollingPolicy
from cms_sync.connectors.cms_client import ContentfulClient
from cms_sync.core.assets import (
    AssetProcessingError,
    AssetUploadError,
    AssetUploadPipeline,
    AssetUploadState,
    ProcessingTimeoutError,
)
from cms_sync.core.records import Asset

from conftest import FakeRemote


def _asset(remote: FakeRemote) -> Asset:
    remote.files["/covers/dune.jpg"] = b"\xff\xd8jpeg"
    return Asset(
        id="cover-1",
        title="Dune cover",
        url_string="https://files.test/covers/dune.jpg",
        file_name="dune.jpg",
        file_type="image/jpeg",
        is_dirty=True,
    )


class TestAssetUploadPipeline:
    """Tests for AssetUploadPipeline."""

    @pytest.mark.asyncio
    async def test_three_processing_polls_then_ready(
        self, client: ContentfulClient, remote: FakeRemote
    ) -> None:
        """Upload, link, three 'processing' polls, then ready."""
        remote.processing_polls["cover-1"] = 3
        pipeline = AssetUploadPipeline(client, PollingPolicy.immediate(), auto_publish=False)

        result = await pipeline.upload(_asset(remote))

        assert result.polls == 4
        assert result.url == "https://images.test/cover-1/dune.jpg"
        assert result.version == 1
        assert (result.width, result.height) == (640, 480)
        assert result.size == 6
        assert result.history == [
            AssetUploadState.CREATED,
            AssetUploadState.UPLOADING,
            AssetUploadState.LINKING,
            AssetUploadState.PROCESSING,
            AssetUploadState.READY,
        ]
        assert remote.uploads["upload-1"] == b"\xff\xd8jpeg"

    @pytest.mark.asyncio
    async def test_poll_delays_follow_policy(
        self, client: ContentfulClient, remote: FakeRemote
    ) -> None:
        """The injected sleep receives the policy's backoff delays."""
        remote.processing_polls["cover-1"] = 3
        delays: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)

        policy = PollingPolicy(interval_seconds=0.5, backoff_factor=2.0, max_interval_seconds=1.5)
        pipeline = AssetUploadPipeline(client, policy, auto_publish=False, sleep=fake_sleep)
        await pipeline.upload(_asset(remote))

        assert delays == [0.5, 1.0, 1.5]

    @pytest.mark.asyncio
    async def test_publish_after_ready(
        self, client: ContentfulClient, remote: FakeRemote
    ) -> None:
        """With auto-publish the final version comes from the publish call."""
        pipeline = AssetUploadPipeline(client, PollingPolicy.immediate(), auto_publish=True)
        result = await pipeline.upload(_asset(remote))

        assert result.version == 2
        assert remote.assets["cover-1"]["sys"]["publishedVersion"] == 1

    @pytest.mark.asyncio
    async def test_processing_timeout(
        self, client: ContentfulClient, remote: FakeRemote
    ) -> None:
        """Exceeding the poll budget raises ProcessingTimeoutError."""
        remote.processing_polls["cover-1"] = 10
        pipeline = AssetUploadPipeline(client, PollingPolicy.immediate(max_attempts=3))

        with pytest.raises(ProcessingTimeoutError) as excinfo:
            await pipeline.upload(_asset(remote))
        assert excinfo.value.state == AssetUploadState.PROCESSING
        assert remote.count("GET", "/assets/cover-1") == 3
        assert not pipeline.is_uploading("cover-1")

    @pytest.mark.asyncio
    async def test_processing_failure(
        self, client: ContentfulClient, remote: FakeRemote
    ) -> None:
        """An explicit failure from the service raises AssetProcessingError."""
        remote.processing_failures.add("cover-1")
        pipeline = AssetUploadPipeline(client, PollingPolicy.immediate())

        with pytest.raises(AssetProcessingError):
            await pipeline.upload(_asset(remote))

    @pytest.mark.asyncio
    async def test_missing_source_fails_fast(
        self, client: ContentfulClient, remote: FakeRemote
    ) -> None:
        """A missing binary fails in the uploading step, nothing is linked."""
        pipeline = AssetUploadPipeline(client, PollingPolicy.immediate())
        asset = Asset(id="cover-1", url_string="https://files.test/missing.jpg")

        with pytest.raises(AssetUploadError) as excinfo:
            await pipeline.upload(asset)
        assert excinfo.value.state == AssetUploadState.UPLOADING
        assert "cover-1" not in remote.assets

    @pytest.mark.asyncio
    async def test_no_url(self, client: ContentfulClient) -> None:
        """An asset without a file cannot be uploaded."""
        pipeline = AssetUploadPipeline(client)
        with pytest.raises(AssetUploadError):
            await pipeline.upload(Asset(id="cover-1"))

    @pytest.mark.asyncio
    async def test_same_asset_not_uploaded_twice_concurrently(
        self, client: ContentfulClient, remote: FakeRemote
    ) -> None:
        """A second upload of an in-flight asset is rejected."""
        remote.processing_polls["cover-1"] = 2
        gate = asyncio.Event()

        async def slow_sleep(seconds: float) -> None:
            await gate.wait()

        pipeline = AssetUploadPipeline(
            client, PollingPolicy.immediate(), auto_publish=False, sleep=slow_sleep
        )
        first = asyncio.create_task(pipeline.upload(_asset(remote)))
        while not pipeline.is_uploading("cover-1"):
            await asyncio.sleep(0)

        with pytest.raises(AssetUploadError):
            await pipeline.upload(_asset(remote))

        gate.set()
        result = await first
        assert result.state == AssetUploadState.READY
        assert len(remote.uploads) == 1

    @pytest.mark.asyncio
    async def test_local_file_source(
        self, client: ContentfulClient, remote: FakeRemote, tmp_path
    ) -> None:
        """Assets may point at a local file."""
        path = tmp_path / "cover.png"
        path.write_bytes(b"png-bytes")
        pipeline = AssetUploadPipeline(client, PollingPolicy.immediate(), auto_publish=False)

        result = await pipeline.upload(
            Asset(id="cover-2", url_string=str(path), file_name="cover.png", file_type="image/png")
        )
        assert result.url == "https://images.test/cover-2/cover.png"
        assert remote.uploads["upload-1"] == b"png-bytes"

    @pytest.mark.asyncio
    async def test_retry_after_timeout_relinks_existing_asset(
        self, client: ContentfulClient, remote: FakeRemote
    ) -> None:
        """An asset created by a timed-out attempt is relinked on the next try."""
        remote.processing_polls["cover-1"] = 10
        pipeline = AssetUploadPipeline(
            client, PollingPolicy.immediate(max_attempts=2), auto_publish=False
        )
        with pytest.raises(ProcessingTimeoutError):
            await pipeline.upload(_asset(remote))

        remote.processing_polls["cover-1"] = 0
        result = await pipeline.upload(_asset(remote))

        assert result.state == AssetUploadState.READY
        assert result.version == 2
        assert remote.count("PUT", "/assets/cover-1") == 3
