"""
Pull Engine - merges remote changes into the local store.

One pull is:
- Read the sync cursor (empty or outdated cursor = initial fetch)
- Fetch the delta (delivery) or a full snapshot (preview)
- In a single background transaction: upsert assets, then books, apply
  deletions, remove orphans (full snapshots only) and write the new cursor

Dirty records are never overwritten or deleted by a pull.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from cms_sync.connectors.cms_client import ContentfulClient, RemoteDelta
from cms_sync.connectors.store import LocalStore, Scope, Transaction
from cms_sync.core.conflict import should_overwrite_on_pull
from cms_sync.core.records import (
    Asset,
    Book,
    MalformedPayloadError,
    Record,
    SyncCursor,
)

logger = logging.getLogger(__name__)


@dataclass
class PullReport:
    """Statistics for a pull."""

    full_snapshot: bool = False
    fetched: int = 0
    upserted: int = 0
    deleted: int = 0
    orphans_removed: int = 0
    skipped_dirty: int = 0
    malformed: list[str] = field(default_factory=list)
    next_token: str | None = None
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration_seconds(self) -> float:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return 0.0


class PullEngine:
    """
    Applies remote changes to the local store.

    Example:
        engine = PullEngine(store, client)
        report = await engine.pull()
        print(f"{report.upserted} records updated")
    """

    def __init__(
        self,
        store: LocalStore,
        client: ContentfulClient,
        locale: str = "en-US",
    ) -> None:
        self.store = store
        self.client = client
        self.locale = locale

    async def pull(self) -> PullReport:
        """
        Fetch and merge remote changes.

        Raises:
            NetworkUnavailableError: The service could not be reached; the
                cursor is left where it was
            ServerError: The service answered with a 5xx; same as above
            LocalStoreError: The merge transaction failed and was rolled back
        """
        report = PullReport(start_time=time.time())

        cursor = self.store.get_cursor()
        token = None if cursor.is_empty else cursor.sync_token
        if token is None:
            logger.info("No usable sync cursor, fetching everything")

        delta = await self.client.fetch_changes(token)
        logger.debug("Fetched %s", summarize_delta(delta))
        report.full_snapshot = delta.is_full_snapshot
        report.fetched = len(delta)
        report.next_token = delta.next_token

        assets, bad_assets = self._parse(delta.assets, Asset.from_remote, report)
        books, bad_books = self._parse(delta.entries, Book.from_remote, report)

        with self.store.transaction(Scope.BACKGROUND) as tx:
            self._merge(tx, assets, report)
            self._merge(tx, books, report)
            self._apply_deletions(tx, Asset, delta.deleted_asset_ids, report)
            self._apply_deletions(tx, Book, delta.deleted_entry_ids, report)

            if delta.is_full_snapshot:
                self._remove_orphans(tx, Asset, {a.id for a in assets} | bad_assets, report)
                self._remove_orphans(tx, Book, {b.id for b in books} | bad_books, report)

            tx.set_cursor(SyncCursor(sync_token=delta.next_token))

        report.end_time = time.time()
        logger.info(
            "Pulled %d changes: %d upserted, %d deleted, %d orphans removed, %d dirty kept",
            report.fetched,
            report.upserted,
            report.deleted,
            report.orphans_removed,
            report.skipped_dirty,
        )
        return report

    def _parse(
        self,
        payloads: Iterable[Any],
        parse: Callable[[Any, str], Record],
        report: PullReport,
    ) -> tuple[list[Record], set[str]]:
        """Turn payloads into records; malformed ones are logged and skipped."""
        records: list[Record] = []
        bad_ids: set[str] = set()
        for payload in payloads:
            try:
                records.append(parse(payload, self.locale))
            except MalformedPayloadError as e:
                logger.warning("Skipping malformed payload: %s", e)
                report.malformed.append(e.resource_id or "<unknown>")
                if e.resource_id:
                    bad_ids.add(e.resource_id)
        return records, bad_ids

    def _merge(self, tx: Transaction, records: list[Record], report: PullReport) -> None:
        for remote in records:
            local = tx.get(type(remote), remote.id)
            if not should_overwrite_on_pull(local, remote):
                logger.debug("Keeping dirty local %s %s", remote.KIND, remote.id)
                report.skipped_dirty += 1
                continue
            tx.upsert(remote)
            report.upserted += 1

    def _apply_deletions(
        self,
        tx: Transaction,
        kind: type[Record],
        record_ids: list[str],
        report: PullReport,
    ) -> None:
        for record_id in record_ids:
            local = tx.get(kind, record_id)
            if local is None:
                continue
            if local.is_dirty:
                logger.debug("Remote deleted dirty %s %s, keeping it", kind.KIND, record_id)
                report.skipped_dirty += 1
                continue
            tx.delete(kind, record_id)
            report.deleted += 1

    def _remove_orphans(
        self,
        tx: Transaction,
        kind: type[Record],
        remote_ids: set[str],
        report: PullReport,
    ) -> None:
        for record_id in sorted(tx.ids(kind) - remote_ids):
            local = tx.get(kind, record_id)
            if local is None or local.is_dirty:
                continue
            tx.delete(kind, record_id)
            report.orphans_removed += 1


def summarize_delta(delta: RemoteDelta) -> str:
    """One-line description of a delta for logs and the CLI."""
    kind = "snapshot" if delta.is_full_snapshot else "delta"
    return (
        f"{kind}: {len(delta.entries)} entries, {len(delta.assets)} assets, "
        f"{len(delta.deleted_entry_ids) + len(delta.deleted_asset_ids)} deletions"
    )
