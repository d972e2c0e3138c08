# Sync/scheduler.py
# Description: Drives periodic and event-triggered bidirectional syncs, owns SyncStatus, and applies the
#              retry policy as an explicit state transition.
#
# Imports
import asyncio
import time
from dataclasses import replace
from datetime import timedelta
from typing import Any, Callable, List, Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from ..config import RealTimeSyncConfig
from .cache import LocalCache, transcript_keys
from .conflict import ConflictManager
from .metrics import SyncPerformanceMonitor
from .models import ConflictResolution, SyncDirection, SyncOptions, SyncResult, SyncStatus, utcnow
#
#######################################################################################################################
#
# Functions:

StatusListener = Callable[[SyncStatus], Any]
ResultListener = Callable[[SyncResult], Any]


class SyncScheduler:
    """
    Orchestrates sync attempts against a backend exposing ``bidirectional_sync(options)``.

    States:
        inactive -> active on ``start_sync`` (immediate sync, then every ``sync_interval``)
        active -> syncing while an attempt is in flight; further triggers return None
        active -> inactive on ``stop_sync``, ``close`` or ``handle_offline``

    A failed attempt (raised error or ``success=False``) increments ``retry_count``.
    If the count before the failure was below ``max_retries`` a single retry is
    armed after ``retry_interval``. Past that point nothing runs automatically
    until ``reset_sync`` or ``force_sync``.
    """

    def __init__(
        self,
        backend,
        cache: LocalCache,
        config: Optional[RealTimeSyncConfig] = None,
        conflict_manager: Optional[ConflictManager] = None,
        monitor: Optional[SyncPerformanceMonitor] = None,
        clock: Callable = utcnow,
    ):
        if not hasattr(backend, "bidirectional_sync"):
            raise TypeError("backend must provide bidirectional_sync(options)")
        self.backend = backend
        self.cache = cache
        self.config = config or RealTimeSyncConfig()
        self.conflict_manager = conflict_manager or ConflictManager(clock=clock)
        self.monitor = monitor or SyncPerformanceMonitor()
        self._clock = clock

        self._status = SyncStatus()
        self._interval_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._alive = True
        self._stopped = False
        self._stopped_offline = False
        self._status_listeners: List[StatusListener] = []
        self._result_listeners: List[ResultListener] = []

    # --- Status ---

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def is_closed(self) -> bool:
        return not self._alive

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status observer. Returns a callable that unsubscribes it."""
        self._status_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)
        return unsubscribe

    def on_sync_result(self, listener: ResultListener) -> Callable[[], None]:
        """Register a callback for every completed SyncResult. Async callbacks are awaited."""
        self._result_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._result_listeners:
                self._result_listeners.remove(listener)
        return unsubscribe

    def _set_status(self, **changes) -> None:
        self._status = replace(self._status, **changes)
        for listener in list(self._status_listeners):
            try:
                listener(self._status)
            except Exception as e:
                logger.error(f"Sync status listener raised: {e}")

    def refresh_queue_length(self) -> int:
        queue_length = getattr(self.backend, "queue_length", 0)
        if queue_length != self._status.queue_length:
            self._set_status(queue_length=queue_length)
        return queue_length

    # --- Lifecycle ---

    async def start_sync(self) -> Optional[SyncResult]:
        """Activate the scheduler and run the initial sync. No-op when disabled or already active."""
        if not self._alive:
            logger.warning("start_sync called on a closed scheduler")
            return None
        if not self.config.enabled:
            logger.info("Real-time sync disabled by configuration; not starting")
            return None
        if self._status.is_active:
            return None

        self._stopped = False
        self._stopped_offline = False
        self._set_status(is_active=True, next_sync=self._clock() + timedelta(seconds=self.config.sync_interval))
        self._interval_task = asyncio.create_task(self._interval_loop())
        logger.info(f"Sync scheduler started (interval={self.config.sync_interval}s)")
        return await self.perform_sync()

    def stop_sync(self) -> None:
        """Deactivate the scheduler. A sync already in flight finishes but arms no retry."""
        self._cancel_timers()
        self._stopped = True
        self._stopped_offline = False
        if self._status.is_active or self._status.next_sync is not None:
            self._set_status(is_active=False, next_sync=None)
            logger.info("Sync scheduler stopped")

    async def force_sync(self, **extra_options) -> Optional[SyncResult]:
        """Run the sync routine now with ``force_sync=True``. Returns None if a sync is already running."""
        if not self._status.is_syncing:
            self._stopped = False
        extra_options["force_sync"] = True
        return await self.perform_sync(**extra_options)

    def reset_sync(self) -> None:
        """Clear the recorded error and retry count, and disarm any pending retry."""
        self._cancel_task(self._retry_task)
        self._retry_task = None
        self._set_status(error=None, retry_count=0)

    async def close(self) -> None:
        """Tear down: no continuation writes state after this, and every timer is cancelled."""
        self._alive = False
        pending = [t for t in (self._interval_task, self._retry_task)
                   if t is not None and not t.done() and t is not asyncio.current_task()]
        self.stop_sync()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._status_listeners.clear()
        self._result_listeners.clear()
        logger.info("Sync scheduler closed")

    # --- Environment signals ---

    async def handle_online(self) -> Optional[SyncResult]:
        if not self.config.sync_on_online or not self._alive:
            return None
        if not (self._status.is_active or self._stopped_offline):
            logger.debug("Online event ignored; scheduler was stopped explicitly")
            return None

        logger.info("Connection restored; resuming sync")
        self._set_status(retry_count=0)
        if self._status.is_active:
            return await self.perform_sync()
        return await self.start_sync()

    def handle_offline(self) -> None:
        if not self._status.is_active:
            return
        logger.info("Connection lost; pausing sync")
        self.stop_sync()
        self._stopped_offline = True

    async def handle_focus(self) -> Optional[SyncResult]:
        if not self.config.sync_on_focus or not self._status.is_active:
            return None
        return await self.perform_sync()

    # --- Sync routine ---

    def _base_options(self) -> SyncOptions:
        return SyncOptions(
            direction=SyncDirection.BIDIRECTIONAL,
            validate_data=True,
            conflict_resolution=ConflictResolution(self.config.conflict_resolution),
        )

    async def perform_sync(self, **options) -> Optional[SyncResult]:
        """
        Run one sync attempt.

        Returns:
            The backend's SyncResult, or None when skipped (already syncing, closed)
            or when the backend raised.
        """
        if not self._alive:
            return None
        if self._status.is_syncing:
            logger.debug("Sync trigger ignored; a sync is already in flight")
            return None

        sync_options = self._base_options().merged(**options)
        self._set_status(is_syncing=True, error=None)
        started = time.perf_counter()

        result: Optional[SyncResult] = None
        error: Optional[str] = None
        try:
            result = await self.backend.bidirectional_sync(sync_options)
        except asyncio.CancelledError:
            if self._alive:
                self._set_status(is_syncing=False)
            raise
        except Exception as e:
            logger.error(f"Sync attempt raised {type(e).__name__}: {e}")
            error = str(e) or "Unknown sync error"

        duration_ms = (time.perf_counter() - started) * 1000
        if not self._alive:
            logger.debug("Scheduler closed during sync; discarding result")
            return result

        success = result is not None and result.success
        if result is not None and not result.success:
            error = ", ".join(result.errors) or "Sync failed"

        self.monitor.record_sync_result(success, duration_ms)
        if result is not None:
            self._record_conflicts(result)

        now = self._clock()
        next_sync = now + timedelta(seconds=self.config.sync_interval) if self._status.is_active else None
        if success:
            self._cancel_task(self._retry_task)
            self._retry_task = None
            self._set_status(is_syncing=False, last_sync=now, next_sync=next_sync, error=None, retry_count=0)
            if result.changed_records:
                self.cache.invalidate([transcript_keys.ALL])
        else:
            previous_retries = self._status.retry_count
            self._set_status(
                is_syncing=False,
                last_sync=now,
                next_sync=next_sync,
                error=error,
                retry_count=previous_retries + 1,
            )
            self._arm_retry(previous_retries, options)

        self.refresh_queue_length()
        if result is not None:
            await self._notify_result(result)
        return result

    def _record_conflicts(self, result: SyncResult) -> None:
        for conflict in result.conflicts:
            self.conflict_manager.add_conflict(conflict.record_id, conflict.field, conflict.server_value, conflict.client_value)
            # Policy-resolved conflicts stay inspectable, marked with the policy that settled them
            self.conflict_manager.resolve_conflict(
                conflict.record_id,
                conflict.field,
                conflict.resolution,
                merged_value=conflict.resolved_value if conflict.resolution == ConflictResolution.MERGE else None,
            )

    async def _notify_result(self, result: SyncResult) -> None:
        for listener in list(self._result_listeners):
            try:
                outcome = listener(result)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.error(f"Sync result listener raised: {e}")

    # --- Timers ---

    def _arm_retry(self, previous_retries: int, options: dict) -> None:
        if previous_retries >= self.config.max_retries:
            logger.warning(f"Sync failed {previous_retries + 1} times; automatic retries exhausted")
            return
        if self._stopped:
            logger.debug("Scheduler was stopped; not arming a retry")
            return
        self._cancel_task(self._retry_task)
        self._retry_task = asyncio.create_task(self._retry_after(self.config.retry_interval, dict(options)))
        logger.info(f"Retrying sync in {self.config.retry_interval}s (attempt {previous_retries + 1} of {self.config.max_retries})")

    async def _retry_after(self, delay: float, options: dict) -> None:
        await asyncio.sleep(delay)
        if not self._alive or self._stopped:
            return
        # This task is finished as far as the scheduler is concerned; a new failure may arm the next one
        self._retry_task = None
        await self.perform_sync(**options)

    async def _interval_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sync_interval)
            if not self._alive or not self._status.is_active:
                return
            await self.perform_sync()

    def _cancel_timers(self) -> None:
        self._cancel_task(self._interval_task)
        self._cancel_task(self._retry_task)
        self._interval_task = None
        self._retry_task = None

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()

#
# End of scheduler.py
#######################################################################################################################
