"""
Shared pytest fixtures and event helpers.
"""

import logging
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from eds_gcal_sync.db import StateDatabase
from eds_gcal_sync.models import CalendarEvent
from eds_gcal_sync.models import EventCategory
from eds_gcal_sync.models import SyncConfig

SOURCE_CAL_ID = "groupware-calendar-test"
TARGET_CAL_ID = "primary"

# Fixed "now" for engine tests; events are scheduled relative to it.
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_event(
    uid: str,
    title: str = "Test Event",
    start: datetime | None = None,
    hours: float = 1,
    **overrides,
) -> CalendarEvent:
    """Return a source-side CalendarEvent starting one day after NOW by default."""
    start = start or NOW + timedelta(days=1)
    fields = dict(
        uid=uid,
        title=title,
        start=start,
        end=start + timedelta(hours=hours),
        description=f"Description of {uid}",
        location="Room 1",
        category=EventCategory.APPOINTMENT,
        last_modified=NOW - timedelta(days=1),
    )
    fields.update(overrides)
    return CalendarEvent(**fields)


class Clock:
    """Settable clock injected into CalendarSynchronizer."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path, SOURCE_CAL_ID, TARGET_CAL_ID) as db:
        yield db


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(
        source_calendar_id=SOURCE_CAL_ID,
        target_calendar_id=TARGET_CAL_ID,
        state_db_path=db_path,
        retry_backoff_seconds=0,
        dry_run=False,
        verbose=False,
    )


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def clock():
    return Clock()
