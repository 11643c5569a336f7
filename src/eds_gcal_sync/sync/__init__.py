"""
CalendarSynchronizer, the one-way sync engine.

Backends, state store, logger, filter and obfuscator chains are injected by
the caller (the CLI, or tests with in-memory fakes).
"""

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from datetime import timezone

from eds_gcal_sync.db import StateDatabase
from eds_gcal_sync.filters import FilterChain
from eds_gcal_sync.filters import build_filters
from eds_gcal_sync.interfaces import CalendarSink
from eds_gcal_sync.interfaces import CalendarSource
from eds_gcal_sync.models import CalendarSyncError
from eds_gcal_sync.models import SyncConfig
from eds_gcal_sync.models import SyncError
from eds_gcal_sync.models import SyncInProgressError
from eds_gcal_sync.models import SyncResult
from eds_gcal_sync.models import SyncStatus
from eds_gcal_sync.sanitizer import ObfuscatorChain
from eds_gcal_sync.sanitizer import build_obfuscators
from eds_gcal_sync.sync.diff import compute_diff
from eds_gcal_sync.sync.refresh import perform_clear
from eds_gcal_sync.sync.to_target import run_one_way_to_target
from eds_gcal_sync.sync.utils import call_with_retry
from eds_gcal_sync.sync.utils import compute_window

StatusListener = Callable[[SyncStatus], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CalendarSynchronizer:
    """Main synchronization engine."""

    def __init__(
        self,
        config: SyncConfig,
        source: CalendarSource,
        sink: CalendarSink,
        state_db: StateDatabase,
        logger: logging.Logger | None = None,
        filters: FilterChain | None = None,
        obfuscators: ObfuscatorChain | None = None,
        status_listener: StatusListener | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.config = config
        self.source = source
        self.sink = sink
        self.state_db = state_db
        self.logger = logger or logging.getLogger(__name__)
        self.filters = filters if filters is not None else build_filters(config)
        self.obfuscators = obfuscators if obfuscators is not None else build_obfuscators(config)
        self.status_listener = status_listener
        self.clock = clock
        self.status = SyncStatus.IDLE
        self._lock = threading.Lock()

    def _set_status(self, status: SyncStatus):
        self.status = status
        if self.status_listener is not None:
            self.status_listener(status)

    def _exclusive(self, operation: Callable[[], SyncResult]) -> SyncResult:
        """Run ``operation`` as the single active run, publishing status transitions."""
        if not self._lock.acquire(blocking=False):
            self.logger.warning("Synchronization already in progress; request rejected")
            raise SyncInProgressError("A synchronization run is already in progress")
        try:
            self._set_status(SyncStatus.RUNNING)
            try:
                result = operation()
            except CalendarSyncError as e:
                self._set_status(SyncStatus.FAILED)
                self.logger.error(f"Sync failed: {e}")
                if isinstance(e, SyncError):
                    raise
                raise SyncError(str(e)) from e
            except Exception as e:
                self._set_status(SyncStatus.FAILED)
                self.logger.error(f"Unexpected error: {e}", exc_info=True)
                raise
            self._set_status(SyncStatus.SUCCEEDED)
            return result
        finally:
            self._set_status(SyncStatus.IDLE)
            self._lock.release()

    def run_sync(self) -> SyncResult:
        """Execute one synchronization run.

        Returns the SyncResult on success (individual rejected writes are
        listed in ``result.failed``).  Raises SyncError when the run fails as
        a whole, with the underlying backend or state error as ``__cause__``;
        raises SyncInProgressError if another run is active.
        """
        return self._exclusive(self._run)

    def clear(self) -> SyncResult:
        """Remove all managed events from the target and reset the watermark."""
        return self._exclusive(self._clear)

    def _clear(self) -> SyncResult:
        result = SyncResult(dry_run=self.config.dry_run)
        perform_clear(self.config, result, self.logger, self.sink, self.state_db)
        return result

    def _run(self) -> SyncResult:
        config = self.config
        logger = self.logger
        now = self.clock()
        result = SyncResult(dry_run=config.dry_run, full_resync=config.full_resync)

        logger.info("Loading sync state...")
        last_sync = self.state_db.load()
        if last_sync is None:
            logger.info("No previous sync recorded; synchronizing the full calendar")
        elif config.full_resync:
            logger.info("Full resync requested; ignoring last sync watermark")

        window = compute_window(last_sync, now, config)
        result.window = window

        logger.info(f"Fetching source events in window {window}...")
        source_events = call_with_retry(
            self.source.list_events, window, config=config, logger=logger
        )

        admitted, rejected = self.filters.split(source_events)
        result.filtered = len(rejected)
        for event in rejected:
            logger.debug(f"Filtered out {event.uid} (category: {event.category.value})")
        prepared = [self.obfuscators.apply(event) for event in admitted]

        logger.info("Fetching managed target events...")
        managed = call_with_retry(self.sink.list_managed_events, config=config, logger=logger)

        logger.info(f"Comparing {len(prepared)} source event(s) with {len(managed)} managed...")
        plan = compute_diff(prepared, managed, window, logger)
        if plan.out_of_window:
            logger.debug(
                f"Leaving {len(plan.out_of_window)} managed event(s) outside the window untouched"
            )

        run_one_way_to_target(config, result, logger, plan, self.sink)

        if config.dry_run:
            logger.info("[DRY RUN] Sync state not updated")
        else:
            self.state_db.commit(now)

        logger.info(
            f"Sync complete: {result.created} created, {result.updated} updated, "
            f"{result.deleted} deleted, {result.skipped} unchanged, "
            f"{result.filtered} filtered, {len(result.failed)} failed"
        )
        return result
