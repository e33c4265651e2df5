"""
Dirty Tracker - flags user edits for the next push.

Runs as a save hook on the local store. For foreground saves it compares
the stored row with the row being written, restricted to the record type's
syncable fields; any difference stamps ``updated_at`` and sets ``is_dirty``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from cms_sync.connectors.store import LocalStore, Scope
from cms_sync.core.records import Record, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class DirtyTracker:
    """
    Marks foreground edits as unsynced.

    Example:
        tracker = DirtyTracker.install(store)

        book = store.get(Book, "book-1")
        store.save(book.copy(rating=4))   # now is_dirty, updated_at bumped
    """

    def __init__(self, clock: Clock | None = None) -> None:
        """
        Initialize the tracker.

        Args:
            clock: Source of the current time (defaults to UTC now)
        """
        self.clock = clock or utcnow

    @classmethod
    def install(cls, store: LocalStore, clock: Clock | None = None) -> "DirtyTracker":
        """Create a tracker and register it on ``store``."""
        tracker = cls(clock)
        store.add_save_hook(tracker)
        return tracker

    def __call__(self, before: Record | None, after: Record, scope: Scope) -> Record | None:
        if scope != Scope.FOREGROUND:
            return None
        try:
            return self.track(before, after)
        except Exception:
            # The save itself must go through untouched.
            logger.exception("Dirty tracking failed for %s", after.id)
            return None

    def track(self, before: Record | None, after: Record) -> Record | None:
        """
        Return ``after`` stamped as dirty if it carries a user edit.

        Sync-control fields on ``after`` are ignored for existing records;
        the stored values are carried forward.

        Returns:
            The adjusted record, or None when nothing needs changing
        """
        changed = after.changed_fields(before)

        if before is not None:
            # Bookkeeping is owned by the engines; a user save cannot roll it back.
            kept = after.copy(
                created_at=before.created_at,
                updated_at=before.updated_at,
                is_dirty=before.is_dirty,
                contentful_version=before.contentful_version,
            )
            if not changed:
                return kept if kept != after else None
            after = kept
        elif not changed:
            return None

        logger.debug("Local edit on %s %s: %s", after.KIND, after.id, sorted(changed))

        stamp = self.clock()
        if after.updated_at is not None and stamp <= after.updated_at:
            stamp = after.updated_at + timedelta(microseconds=1)

        updates: dict[str, object] = {"updated_at": stamp}
        if not after.is_dirty:
            updates["is_dirty"] = True
        if after.created_at is None:
            updates["created_at"] = stamp
        return after.copy(**updates)
