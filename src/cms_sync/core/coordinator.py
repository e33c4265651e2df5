"""
Sync Coordinator - the single entry point for sync cycles.

Owns the state machine (idle / syncing / resetting), runs pull then push in
one background task, rejects requests while busy, and rebuilds the engines
when the content mode changes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from cms_sync.config import ContentMode, Settings
from cms_sync.connectors.cms_client import ContentfulClient, create_cms_client
from cms_sync.connectors.store import ChangeSet, LocalStore, Scope
from cms_sync.core.assets import AssetUploadPipeline
from cms_sync.core.conflict import ConflictResolver
from cms_sync.core.pull import PullEngine, PullReport
from cms_sync.core.push import PushEngine, PushReport
from cms_sync.core.records import utcnow

logger = logging.getLogger(__name__)

ClientFactory = Callable[[Settings], ContentfulClient]
StateListener = Callable[["SyncCoordinator"], None]


class CoordinatorState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    RESETTING = "resetting"


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    DROPPED = "dropped"
    CANCELLED = "cancelled"


@dataclass
class SyncReport:
    """Outcome of one sync request."""

    reset: bool = False
    status: SyncStatus = SyncStatus.SUCCESS
    pull: PullReport | None = None
    push: PushReport | None = None
    error: str | None = None
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (SyncStatus.SUCCESS, SyncStatus.PARTIAL)

    @property
    def duration_seconds(self) -> float:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return 0.0


class SyncCoordinator:
    """
    Serializes sync and reset requests.

    Example:
        coordinator = SyncCoordinator(store, settings)
        report = await coordinator.sync()
        if not report.ok:
            print("sync failed:", report.error)
    """

    def __init__(
        self,
        store: LocalStore,
        settings: Settings,
        client_factory: ClientFactory = create_cms_client,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            store: Local store (a dirty tracker should already be installed)
            settings: Application settings
            client_factory: Builds a remote client for a settings object
        """
        self.store = store
        self.settings = settings
        self._client_factory = client_factory
        self.client = client_factory(settings)
        self._build_engines()

        self.state = CoordinatorState.IDLE
        self.pending_push_count = store.count_dirty()
        self.last_sync_at: datetime | None = None
        self.last_error: str | None = None
        self.last_report: SyncReport | None = None

        self._task: asyncio.Task[SyncReport] | None = None
        self._cancel_requested = False
        self._listeners: list[StateListener] = []
        self._auto_sync = False
        self._debounce: asyncio.TimerHandle | None = None
        self._auto_task: asyncio.Task[SyncReport] | None = None
        self._unsubscribe_store = store.subscribe(self._on_store_change)

    def _build_engines(self) -> None:
        settings = self.settings
        self.pipeline = AssetUploadPipeline(
            self.client,
            settings.polling,
            auto_publish=settings.auto_publish,
            locale=settings.locale,
        )
        self.pull_engine = PullEngine(self.store, self.client, locale=settings.locale)
        self.push_engine = PushEngine(
            self.store,
            self.client,
            self.pipeline,
            resolver=ConflictResolver(settings.sync.conflict_resolution),
            auto_publish=settings.auto_publish,
            max_concurrency=settings.sync.max_concurrency,
            locale=settings.locale,
        )

    # -------------------------------------------------------------------------
    # Observable state
    # -------------------------------------------------------------------------

    @property
    def is_syncing(self) -> bool:
        return self.state == CoordinatorState.SYNCING

    @property
    def is_resetting(self) -> bool:
        return self.state == CoordinatorState.RESETTING

    @property
    def is_busy(self) -> bool:
        return self.state != CoordinatorState.IDLE

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a callback fired whenever observable state changes.

        Returns:
            A callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("Coordinator listener failed")

    def _set_state(self, state: CoordinatorState) -> None:
        if state != self.state:
            logger.debug("Coordinator %s -> %s", self.state.value, state.value)
            self.state = state
            self._notify()

    def _on_store_change(self, changes: ChangeSet) -> None:
        count = self.store.count_dirty()
        if count != self.pending_push_count:
            self.pending_push_count = count
            self._notify()
        if self._auto_sync and changes.scope == Scope.FOREGROUND and count > 0:
            self._schedule_auto_sync()

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def sync(self) -> SyncReport:
        """Pull then push. Returns DROPPED if a sync or reset is running."""
        return await self._run(reset=False)

    async def reset_and_sync(self) -> SyncReport:
        """Wipe all local records and the cursor, then pull and push."""
        return await self._run(reset=True)

    async def _run(self, reset: bool) -> SyncReport:
        if self.state != CoordinatorState.IDLE:
            logger.info("Sync already in progress (%s), request dropped", self.state.value)
            return SyncReport(reset=reset, status=SyncStatus.DROPPED)

        self._cancel_requested = False
        self._set_state(CoordinatorState.RESETTING if reset else CoordinatorState.SYNCING)
        task = asyncio.create_task(self._execute(reset))
        task.add_done_callback(self._on_task_done)
        self._task = task

        try:
            return await task
        except asyncio.CancelledError:
            if task.cancelled() and self._cancel_requested:
                logger.info("Sync cancelled")
                return SyncReport(reset=reset, status=SyncStatus.CANCELLED, error="cancelled")
            raise

    def _on_task_done(self, task: asyncio.Task[SyncReport]) -> None:
        if self._task is task:
            self._task = None
        self._set_state(CoordinatorState.IDLE)

    async def _execute(self, reset: bool) -> SyncReport:
        report = SyncReport(reset=reset, start_time=time.time())
        try:
            if reset:
                logger.info("Resetting local store")
                with self.store.transaction(Scope.BACKGROUND) as tx:
                    tx.wipe()
            report.pull = await self.pull_engine.pull()
            report.push = await self.push_engine.push()
        except Exception as e:
            logger.error("Sync failed: %s", e)
            report.status = SyncStatus.FAILED
            report.error = str(e) or type(e).__name__
            if report.pull is not None and report.push is None:
                report.push = self.push_engine.last_report
            self.last_error = report.error
        else:
            report.status = SyncStatus.PARTIAL if report.push.has_failures else SyncStatus.SUCCESS
            self.last_error = None
            self.last_sync_at = utcnow()

        report.end_time = time.time()
        self.last_report = report
        self.pending_push_count = self.store.count_dirty()
        logger.info(
            "Sync %s in %.2fs (%d pending)",
            report.status.value,
            report.duration_seconds,
            self.pending_push_count,
        )
        return report

    async def cancel(self) -> None:
        """Cancel the running sync, if any, and wait for it to unwind."""
        task = self._task
        if task is None or task.done():
            return
        self._cancel_requested = True
        task.cancel()
        await asyncio.wait({task})

    async def switch_mode(self, mode: ContentMode) -> None:
        """
        Change content mode (delivery/preview).

        The running sync is cancelled first; the local store keeps whatever
        its last committed transaction left there.
        """
        if mode == self.settings.content_mode:
            return
        logger.info("Switching content mode to %s", mode.value)
        await self.cancel()

        old_client = self.client
        self.settings = self.settings.with_mode(mode)
        self.client = self._client_factory(self.settings)
        self._build_engines()
        await old_client.close()
        self._notify()

    # -------------------------------------------------------------------------
    # Auto sync
    # -------------------------------------------------------------------------

    def enable_auto_sync(self) -> None:
        """Sync automatically once local edits have been quiet for a while."""
        self._auto_sync = True

    def disable_auto_sync(self) -> None:
        self._auto_sync = False
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None

    def _schedule_auto_sync(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, auto-sync skipped")
            return
        if self._debounce is not None:
            self._debounce.cancel()
        self._debounce = loop.call_later(
            self.settings.sync.debounce_seconds, self._fire_auto_sync
        )

    def _fire_auto_sync(self) -> None:
        self._debounce = None
        logger.debug("Auto-sync triggered")
        self._auto_task = asyncio.get_running_loop().create_task(self.sync())

    async def close(self) -> None:
        """Stop auto-sync, cancel running work and release the client."""
        self.disable_auto_sync()
        self._unsubscribe_store()
        await self.cancel()
        if self._auto_task is not None and not self._auto_task.done():
            self._auto_task.cancel()
            await asyncio.wait({self._auto_task})
        await self.client.close()

    async def __aenter__(self) -> "SyncCoordinator":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
