"""
Matching source events against managed sink events and partitioning the result.
"""

import logging
from dataclasses import dataclass
from dataclasses import field

from eds_gcal_sync.models import BackendProtocolError
from eds_gcal_sync.models import CalendarEvent
from eds_gcal_sync.models import TimeRange
from eds_gcal_sync.sync.utils import compute_fingerprint
from eds_gcal_sync.sync.utils import decode_source_ref

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedUpdate:
    source: CalendarEvent
    target: CalendarEvent


@dataclass
class SyncPlan:
    """Create/update/delete/unchanged partition for one run, each sorted by UID."""

    creates: list[CalendarEvent] = field(default_factory=list)
    updates: list[PlannedUpdate] = field(default_factory=list)
    deletes: list[CalendarEvent] = field(default_factory=list)
    unchanged: list[CalendarEvent] = field(default_factory=list)
    # Surplus managed copies of a UID that already has a kept copy.
    duplicates: list[CalendarEvent] = field(default_factory=list)
    # Managed events without a source counterpart that lie outside the window.
    out_of_window: list[CalendarEvent] = field(default_factory=list)
    # Managed events whose source_ref could not be decoded; never touched.
    unreadable: list[CalendarEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.deletes or self.duplicates)


def needs_update(source: CalendarEvent, target: CalendarEvent) -> bool:
    """Return True when the managed copy is stale.

    Stale means the source was modified after the recorded write, or the
    content that would be written now differs from what the sink holds.
    The content check covers sinks that do not round-trip a modification
    time, and policy changes (e.g. privacy settings) that alter the output
    without touching the source.
    """
    if (
        source.last_modified is not None
        and target.last_modified is not None
        and source.last_modified > target.last_modified
    ):
        return True
    target_fingerprint = target.synced_fingerprint or compute_fingerprint(target)
    return compute_fingerprint(source) != target_fingerprint


def index_source_events(source_events: list[CalendarEvent]) -> dict[str, CalendarEvent]:
    """Key source events by UID; a repeated UID means the source broke its contract."""
    by_uid: dict[str, CalendarEvent] = {}
    for event in source_events:
        if event.uid in by_uid:
            raise BackendProtocolError(f"Source returned UID {event.uid!r} more than once")
        by_uid[event.uid] = event
    return by_uid


def index_managed_events(
    managed_events: list[CalendarEvent], plan: SyncPlan, logger=None
) -> dict[str, CalendarEvent]:
    """Key managed events by decoded source UID.

    Undecodable references go to ``plan.unreadable``; when several managed
    events decode to the same UID the one with the lowest sink id is kept and
    the rest go to ``plan.duplicates``.
    """
    logger = logger or _logger
    grouped: dict[str, list[CalendarEvent]] = {}
    for target in managed_events:
        try:
            uid = decode_source_ref(target.source_ref or "")
        except ValueError as e:
            logger.warning(f"Ignoring managed event {target.sink_id}: {e}")
            plan.unreadable.append(target)
            continue
        grouped.setdefault(uid, []).append(target)

    by_uid: dict[str, CalendarEvent] = {}
    for uid in sorted(grouped):
        copies = sorted(grouped[uid], key=lambda e: e.sink_id or "")
        by_uid[uid] = copies[0]
        if len(copies) > 1:
            logger.warning(
                f"Found {len(copies)} managed copies of {uid}; keeping {copies[0].sink_id}"
            )
            plan.duplicates.extend(copies[1:])
    return by_uid


def compute_diff(
    source_events: list[CalendarEvent],
    managed_events: list[CalendarEvent],
    window: TimeRange,
    logger=None,
) -> SyncPlan:
    """Partition filtered, obfuscated source events against managed sink events."""
    logger = logger or _logger
    plan = SyncPlan()
    sources = index_source_events(source_events)
    targets = index_managed_events(managed_events, plan, logger)

    for uid in sorted(sources):
        source = sources[uid]
        target = targets.get(uid)
        if target is None:
            plan.creates.append(source)
        elif needs_update(source, target):
            plan.updates.append(PlannedUpdate(source=source, target=target))
        else:
            plan.unchanged.append(source)

    for uid in sorted(targets):
        if uid in sources:
            continue
        target = targets[uid]
        if window.contains(target.start):
            plan.deletes.append(target)
        else:
            plan.out_of_window.append(target)

    logger.debug(
        f"Diff: {len(plan.creates)} create, {len(plan.updates)} update, "
        f"{len(plan.deletes)} delete, {len(plan.unchanged)} unchanged, "
        f"{len(plan.duplicates)} duplicate, {len(plan.out_of_window)} outside window"
    )
    return plan
