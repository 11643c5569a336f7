"""
Clear operation: remove every managed event from the target calendar.
"""

from eds_gcal_sync.db import StateDatabase
from eds_gcal_sync.interfaces import CalendarSink
from eds_gcal_sync.models import BackendProtocolError
from eds_gcal_sync.models import BackendRejected
from eds_gcal_sync.models import EventNotFound
from eds_gcal_sync.models import FailedItem
from eds_gcal_sync.models import SyncConfig
from eds_gcal_sync.models import SyncResult
from eds_gcal_sync.sync.utils import call_with_retry


def perform_clear(
    config: SyncConfig,
    result: SyncResult,
    logger,
    sink: CalendarSink,
    state_db: StateDatabase,
):
    """Delete only events we created in the target calendar, leaving other events untouched.

    The watermark is reset only when every managed event was removed, so a
    partially failed clear can simply be repeated.
    """
    logger.warning("CLEAR MODE: Removing managed events from target calendar...")

    managed = call_with_retry(sink.list_managed_events, config=config, logger=logger)
    if not managed:
        logger.info("No managed events found - target calendar is clean")

    if config.dry_run:
        logger.info(f"[DRY RUN] Would delete {len(managed)} managed events from target calendar")
        logger.info("[DRY RUN] Would reset sync state")
        for event in managed:
            logger.debug(f"[DRY RUN] Would delete: {event.sink_id}")
        result.deleted += len(managed)
        return

    for event in sorted(managed, key=lambda e: e.sink_id or ""):
        try:
            call_with_retry(sink.delete_event, event.sink_id, config=config, logger=logger)
        except EventNotFound:
            logger.debug(f"Managed event {event.sink_id} already gone")
        except (BackendRejected, BackendProtocolError) as e:
            logger.warning(f"Failed to remove {event.sink_id}: {e}")
            result.failed.append(
                FailedItem(uid=event.sink_id or "?", operation="delete", reason=str(e))
            )
            continue
        result.deleted += 1
        logger.debug(f"Deleted managed event: {event.sink_id}")

    if result.failed:
        logger.warning("Some managed events could not be removed; sync state kept")
        return

    state_db.reset()
    logger.info(f"Clear complete: Removed {result.deleted} managed events (other events preserved)")
