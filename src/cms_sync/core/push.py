"""
Push Engine - sends dirty local records to the remote service.

Assets are pushed before books so that cover links resolve. Each record is
pushed in isolation: a failure leaves that record dirty for the next cycle
and the rest of the batch carries on. Only an unreachable service (or a
broken local store) stops the batch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from cms_sync.connectors.cms_client import (
    ContentfulClient,
    NetworkUnavailableError,
    NotFoundError,
    VersionConflictError,
    WriteResult,
)
from cms_sync.connectors.store import LocalStore, LocalStoreError, Scope
from cms_sync.core.assets import AssetUploadError, AssetUploadPipeline, ProcessingTimeoutError
from cms_sync.core.conflict import ConflictResolver, Resolution, Verdict
from cms_sync.core.records import Asset, Book, Record

logger = logging.getLogger(__name__)


class PushOutcome(str, Enum):
    PUSHED = "pushed"
    RESOLVED_REMOTE = "resolved_remote"
    DELETED = "deleted"
    DEFERRED = "deferred"
    FAILED = "failed"
    SKIPPED = "skipped"


# Outcomes after which the record is no longer dirty
SETTLED = frozenset({PushOutcome.PUSHED, PushOutcome.RESOLVED_REMOTE, PushOutcome.DELETED})


@dataclass
class PushReport:
    """Per-record outcomes of a push."""

    outcomes: dict[tuple[str, str], PushOutcome] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    aborted: bool = False
    start_time: float = 0.0
    end_time: float = 0.0

    def record(self, record: Record, outcome: PushOutcome) -> None:
        self.outcomes[(record.KIND, record.id)] = outcome

    def outcome_of(self, record_id: str, kind: str | None = None) -> PushOutcome | None:
        """Outcome for ``record_id``; pass ``kind`` ("Asset" or "Entry") when ids overlap."""
        if kind is not None:
            return self.outcomes.get((kind, record_id))
        matches = [o for (_, rid), o in self.outcomes.items() if rid == record_id]
        if len(matches) > 1:
            raise ValueError(f"{record_id} was pushed as several kinds, pass kind=")
        return matches[0] if matches else None

    def count(self, outcome: PushOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    @property
    def total(self) -> int:
        return len(self.outcomes)

    @property
    def settled(self) -> int:
        return sum(1 for o in self.outcomes.values() if o in SETTLED)

    @property
    def has_failures(self) -> bool:
        return self.aborted or any(o not in SETTLED for o in self.outcomes.values())

    @property
    def duration_seconds(self) -> float:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return 0.0


class PushEngine:
    """
    Pushes every dirty record and reconciles rejected writes.

    Example:
        engine = PushEngine(store, client, pipeline)
        report = await engine.push()
        print(report.count(PushOutcome.PUSHED), "records pushed")
    """

    def __init__(
        self,
        store: LocalStore,
        client: ContentfulClient,
        pipeline: AssetUploadPipeline,
        resolver: ConflictResolver | None = None,
        auto_publish: bool = True,
        max_concurrency: int = 4,
        locale: str = "en-US",
    ) -> None:
        """
        Initialize the push engine.

        Args:
            store: Local store holding the dirty records
            client: Remote client
            pipeline: Upload pipeline for assets new to the server
            resolver: Conflict policy (latest-wins by default)
            auto_publish: Publish entries and assets after each write
            max_concurrency: Records pushed at the same time
            locale: Locale used for field payloads
        """
        self.store = store
        self.client = client
        self.pipeline = pipeline
        self.resolver = resolver or ConflictResolver()
        self.auto_publish = auto_publish
        self.max_concurrency = max_concurrency
        self.locale = locale
        self.last_report: PushReport | None = None
        self._abort_error: Exception | None = None

    async def push(self) -> PushReport:
        """
        Push all dirty records.

        Raises:
            NetworkUnavailableError: The service became unreachable; records
                not yet started are reported as SKIPPED and stay dirty
            LocalStoreError: A local write failed
        """
        report = PushReport(start_time=time.time())
        self.last_report = report
        self._abort_error = None

        for kind in (Asset, Book):
            records = self.store.fetch(kind, is_dirty=True)
            if not records:
                continue
            if self._abort_error is not None:
                for record in records:
                    report.record(record, PushOutcome.SKIPPED)
                continue
            logger.info("Pushing %d dirty %s record(s)", len(records), kind.TABLE)
            await self._push_batch(records, report)

        report.end_time = time.time()
        if self._abort_error is not None:
            report.aborted = True
            raise self._abort_error

        logger.info(
            "Push finished: %d pushed, %d resolved remote, %d deleted, %d deferred, %d failed",
            report.count(PushOutcome.PUSHED),
            report.count(PushOutcome.RESOLVED_REMOTE),
            report.count(PushOutcome.DELETED),
            report.count(PushOutcome.DEFERRED),
            report.count(PushOutcome.FAILED),
        )
        return report

    async def _push_batch(self, records: list[Record], report: PushReport) -> None:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(record: Record) -> None:
            async with semaphore:
                if self._abort_error is not None:
                    report.record(record, PushOutcome.SKIPPED)
                    return
                report.record(record, await self._push_isolated(record, report))

        await asyncio.gather(*(run(record) for record in records))

    async def _push_isolated(self, record: Record, report: PushReport) -> PushOutcome:
        try:
            return await self._push_record(record)
        except (NetworkUnavailableError, LocalStoreError) as e:
            logger.error("Aborting push at %s %s: %s", record.KIND, record.id, e,
                         extra=_context(record))
            if self._abort_error is None:
                self._abort_error = e
            report.errors.append(f"{record.id}: {e}")
            return PushOutcome.FAILED
        except ProcessingTimeoutError as e:
            logger.warning("%s (will retry next sync)", e, extra=_context(record, e))
            report.errors.append(f"{record.id}: {e}")
            return PushOutcome.FAILED
        except Exception as e:
            logger.warning("Failed to push %s %s: %s", record.KIND, record.id, e,
                           extra=_context(record, e))
            report.errors.append(f"{record.id}: {e}")
            return PushOutcome.FAILED

    async def _push_record(self, record: Record) -> PushOutcome:
        if isinstance(record, Asset):
            return await self._push_asset(record)
        if isinstance(record, Book):
            return await self._push_book(record)
        raise TypeError(f"Unsupported record type: {type(record).__name__}")

    # -------------------------------------------------------------------------
    # Per-kind push
    # -------------------------------------------------------------------------

    async def _push_asset(self, asset: Asset) -> PushOutcome:
        if asset.is_deleted:
            await self.client.delete_asset(asset.id)
            self._drop_local(asset)
            return PushOutcome.DELETED

        if asset.is_new_remotely or asset.needs_upload:
            return await self._upload_asset(asset)

        return await self._write(
            asset,
            put=lambda version: self.client.put_asset(
                asset.id, asset.to_fields(self.locale), version
            ),
            publish=self.client.publish_asset,
            fetch_remote=self._fetch_remote_asset,
            recreate=lambda vanished: self._upload_asset(vanished.copy(contentful_version=0)),
        )

    async def _upload_asset(self, asset: Asset) -> PushOutcome:
        result = await self.pipeline.upload(asset)
        self._mark_clean(
            asset,
            result.version,
            result.updated_at,
            url_string=result.url,
            remote_url=result.url,
            width=result.width,
            height=result.height,
            size=result.size,
        )
        return PushOutcome.PUSHED

    async def _push_book(self, book: Book) -> PushOutcome:
        if book.is_deleted:
            await self.client.delete_entry(book.id)
            self._drop_local(book)
            return PushOutcome.DELETED

        if book.cover_image_id:
            cover = self.store.get(Asset, book.cover_image_id)
            if cover is not None and cover.is_new_remotely:
                logger.info(
                    "Deferring book %s until cover asset %s is uploaded",
                    book.id,
                    cover.id,
                )
                return PushOutcome.DEFERRED

        async def create(record: Book) -> PushOutcome:
            return await self._write(
                record.copy(contentful_version=0),
                put=lambda version: self.client.put_entry(
                    record.id, record.to_fields(self.locale), version
                ),
                publish=self.client.publish_entry,
                fetch_remote=self._fetch_remote_book,
                recreate=None,
                snapshot=record,
            )

        return await self._write(
            book,
            put=lambda version: self.client.put_entry(
                book.id, book.to_fields(self.locale), version
            ),
            publish=self.client.publish_entry,
            fetch_remote=self._fetch_remote_book,
            recreate=create,
        )

    # -------------------------------------------------------------------------
    # Write with conflict handling
    # -------------------------------------------------------------------------

    async def _write(
        self,
        record: Any,
        put: Callable[[int | None], Awaitable[WriteResult]],
        publish: Callable[[str, int], Awaitable[WriteResult]],
        fetch_remote: Callable[[str], Awaitable[Record | None]],
        recreate: Callable[[Any], Awaitable[PushOutcome]] | None,
        snapshot: Record | None = None,
    ) -> PushOutcome:
        """
        Write ``record`` with its optimistic-lock version.

        On a version conflict the resolver decides between retrying with the
        server version (once) and taking the server copy. A 404 on update
        means the record vanished remotely.
        """
        snapshot = snapshot or record
        version: int | None = record.contentful_version or None
        retried = False

        while True:
            try:
                result = await put(version)
            except VersionConflictError as e:
                if retried:
                    logger.warning(
                        "%s %s conflicted again after retry, leaving it dirty",
                        record.KIND,
                        record.id,
                    )
                    return PushOutcome.DEFERRED
                logger.info("Version conflict on %s %s: %s", record.KIND, record.id, e)
                remote = await fetch_remote(record.id)
                resolution = self.resolver.resolve(snapshot, remote)
            except NotFoundError:
                if version is None:
                    raise
                resolution = self.resolver.resolve(snapshot, None)
            else:
                if self.auto_publish:
                    result = await publish(record.id, result.version)
                self._mark_clean(snapshot, result.version, result.updated_at)
                return PushOutcome.PUSHED

            logger.debug("%s %s: %s (%s)", record.KIND, record.id,
                         resolution.verdict.value, resolution.reason)

            if resolution.verdict == Verdict.RETRY_WITH_VERSION:
                version = resolution.version or None
                retried = True
                continue
            if resolution.verdict == Verdict.USE_REMOTE:
                self._apply_remote(snapshot, resolution)
                return PushOutcome.RESOLVED_REMOTE
            if resolution.verdict == Verdict.DROP_LOCAL:
                self._drop_local(snapshot)
                return PushOutcome.DELETED
            if recreate is None:
                raise NotFoundError(f"{record.KIND} {record.id} vanished while being recreated")
            logger.info("%s %s vanished remotely, recreating", record.KIND, record.id)
            return await recreate(snapshot)

    async def _fetch_remote_book(self, book_id: str) -> Record | None:
        resource = await self.client.get_entry(book_id)
        return Book.from_remote(resource, self.locale) if resource else None

    async def _fetch_remote_asset(self, asset_id: str) -> Record | None:
        resource = await self.client.get_asset(asset_id)
        return Asset.from_remote(resource, self.locale) if resource else None

    # -------------------------------------------------------------------------
    # Local bookkeeping
    # -------------------------------------------------------------------------

    def _mark_clean(
        self,
        pushed: Record,
        version: int,
        updated_at: datetime | None,
        **server_fields: Any,
    ) -> None:
        """
        Record a server acknowledgement.

        The row is re-read: if it was edited while the push was in flight it
        keeps its dirty flag (and its newer timestamp) but takes the new
        version so that the next push does not conflict.
        """
        kind = type(pushed)
        with self.store.transaction(Scope.BACKGROUND) as tx:
            current = tx.get(kind, pushed.id)
            if current is None:
                logger.debug("%s %s removed locally during push", pushed.KIND, pushed.id)
                return

            updates: dict[str, Any] = {"contentful_version": version, **server_fields}
            edited = current.changed_fields(pushed)
            if edited:
                logger.debug("%s %s edited during push, staying dirty", pushed.KIND, pushed.id)
                for name in edited:
                    updates.pop(name, None)
            else:
                updates["is_dirty"] = False
                if updated_at is not None:
                    updates["updated_at"] = updated_at
            tx.upsert(current.copy(**updates))

    def _apply_remote(self, pushed: Record, resolution: Resolution) -> None:
        """Replace the local copy with the server's, unless edited mid-push."""
        remote = resolution.remote
        if remote is None:
            raise ValueError(f"No remote copy to apply for {pushed.id}")
        kind = type(pushed)
        with self.store.transaction(Scope.BACKGROUND) as tx:
            current = tx.get(kind, pushed.id)
            if current is not None and current.changed_fields(pushed):
                tx.upsert(current.copy(contentful_version=remote.contentful_version))
                return
            tx.upsert(remote.copy(is_dirty=False, locale=remote.locale or self.locale))
        logger.info("%s %s: remote copy is newer, local edit discarded", pushed.KIND, pushed.id)

    def _drop_local(self, record: Record) -> None:
        with self.store.transaction(Scope.BACKGROUND) as tx:
            tx.delete(type(record), record.id)


def _context(record: Record, error: Exception | None = None) -> dict[str, Any]:
    """Log ``extra`` identifying the record (and upload stage) a message is about."""
    context: dict[str, Any] = {"kind": record.KIND, "record_id": record.id}
    if isinstance(error, AssetUploadError):
        context["asset_state"] = error.state.value
    return context
