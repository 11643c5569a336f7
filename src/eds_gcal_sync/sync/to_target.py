"""
Source→target one-way change application.
"""

from dataclasses import replace

from eds_gcal_sync.interfaces import CalendarSink
from eds_gcal_sync.models import BackendProtocolError
from eds_gcal_sync.models import BackendRejected
from eds_gcal_sync.models import CalendarEvent
from eds_gcal_sync.models import EventNotFound
from eds_gcal_sync.models import FailedItem
from eds_gcal_sync.models import SyncConfig
from eds_gcal_sync.models import SyncResult
from eds_gcal_sync.sync.diff import PlannedUpdate
from eds_gcal_sync.sync.diff import SyncPlan
from eds_gcal_sync.sync.utils import call_with_retry
from eds_gcal_sync.sync.utils import compute_fingerprint
from eds_gcal_sync.sync.utils import decode_source_ref
from eds_gcal_sync.sync.utils import encode_source_ref


def prepare_for_sink(event: CalendarEvent) -> CalendarEvent:
    """Attach the back-reference and content fingerprint the sink must store."""
    return replace(
        event,
        source_ref=encode_source_ref(event.uid),
        synced_fingerprint=compute_fingerprint(event),
    )


def _record_failure(result: SyncResult, logger, uid: str, operation: str, error: Exception):
    if isinstance(error, BackendProtocolError):
        logger.warning(f"Skipping {operation} of {uid}: unexpected response from target: {error}")
    else:
        logger.warning(f"Target rejected {operation} of {uid}: {error}")
    result.failed.append(FailedItem(uid=uid, operation=operation, reason=str(error)))


def _process_creates(
    config: SyncConfig,
    result: SyncResult,
    logger,
    events: list[CalendarEvent],
    sink: CalendarSink,
):
    """Create managed copies of source events the target does not have yet."""
    for event in events:
        if config.dry_run:
            logger.info(f"[DRY RUN] Would CREATE event: {event.uid} ({event.start.isoformat()})")
            result.created += 1
            continue

        try:
            sink_id = call_with_retry(
                sink.create_event, prepare_for_sink(event), config=config, logger=logger
            )
        except (BackendRejected, BackendProtocolError) as e:
            _record_failure(result, logger, event.uid, "create", e)
            continue

        result.created += 1
        logger.debug(f"Created event {event.uid} as {sink_id}")


def _process_updates(
    config: SyncConfig,
    result: SyncResult,
    logger,
    updates: list[PlannedUpdate],
    sink: CalendarSink,
):
    """Overwrite stale managed copies; recreate copies deleted on the target."""
    for planned in updates:
        event, sink_id = planned.source, planned.target.sink_id

        if config.dry_run:
            logger.info(f"[DRY RUN] Would UPDATE event: {event.uid} (target: {sink_id})")
            result.updated += 1
            continue

        prepared = prepare_for_sink(event)
        try:
            call_with_retry(sink.update_event, sink_id, prepared, config=config, logger=logger)
        except EventNotFound:
            # Deleted on the target between listing and writing; put it back.
            logger.debug(f"Target event {sink_id} no longer exists; recreating {event.uid}")
            try:
                sink_id = call_with_retry(
                    sink.create_event, prepared, config=config, logger=logger
                )
            except (BackendRejected, BackendProtocolError) as e:
                _record_failure(result, logger, event.uid, "update", e)
                continue
        except (BackendRejected, BackendProtocolError) as e:
            _record_failure(result, logger, event.uid, "update", e)
            continue

        result.updated += 1
        logger.debug(f"Updated event {event.uid} (target: {sink_id})")


def _process_deletions(
    config: SyncConfig,
    result: SyncResult,
    logger,
    targets: list[CalendarEvent],
    sink: CalendarSink,
    reason: str = "removed from source",
):
    """Delete managed copies whose source event is gone."""
    for target in targets:
        uid = decode_source_ref(target.source_ref or "")

        if config.dry_run:
            logger.info(f"[DRY RUN] Would DELETE event: {uid} (target: {target.sink_id}, {reason})")
            result.deleted += 1
            continue

        try:
            call_with_retry(sink.delete_event, target.sink_id, config=config, logger=logger)
        except EventNotFound:
            logger.debug(f"Target event {target.sink_id} already gone (externally deleted)")
        except (BackendRejected, BackendProtocolError) as e:
            _record_failure(result, logger, uid, "delete", e)
            continue

        result.deleted += 1
        logger.debug(f"Deleted event {uid} (target: {target.sink_id}, {reason})")


def run_one_way_to_target(
    config: SyncConfig,
    result: SyncResult,
    logger,
    plan: SyncPlan,
    sink: CalendarSink,
):
    """Apply a plan: creates and updates strictly before any delete.

    BackendUnavailable that outlives its retries propagates and fails the run.
    """
    if plan.creates:
        logger.info(f"Creating {len(plan.creates)} event(s)...")
    _process_creates(config, result, logger, plan.creates, sink)

    if plan.updates:
        logger.info(f"Updating {len(plan.updates)} event(s)...")
    _process_updates(config, result, logger, plan.updates, sink)

    if plan.deletes or plan.duplicates:
        logger.info(f"Deleting {len(plan.deletes) + len(plan.duplicates)} event(s)...")
    _process_deletions(config, result, logger, plan.deletes, sink)
    _process_deletions(config, result, logger, plan.duplicates, sink, reason="duplicate copy")

    result.skipped += len(plan.unchanged)
