"""
Pure data models (no EDS, Google or sqlite imports).
"""

import enum
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/eds-gcal-sync-state.db"
DEFAULT_CONFIG = Path.home() / ".config/eds-gcal-sync.conf"
DEFAULT_TOKEN_FILE = Path.home() / ".config/eds-gcal-sync-token.json"

SinkId = str


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class ConfigError(CalendarSyncError):
    """The configuration file is missing required values or cannot be parsed."""


class StateStoreError(CalendarSyncError):
    """The sync state could not be loaded or committed."""


class BackendError(CalendarSyncError):
    """Base class for failures reported by a calendar backend."""


class BackendUnavailable(BackendError):
    """Transient failure: network, timeout, auth expiry, rate limiting."""


class BackendProtocolError(BackendError):
    """The backend answered with data we cannot interpret."""


class BackendRejected(BackendError):
    """The backend refused a single write (validation, quota, conflict)."""


class EventNotFound(BackendRejected):
    """The sink no longer has the event (deleted externally between syncs)."""


class SyncError(CalendarSyncError):
    """A synchronization run failed as a whole."""


class SyncInProgressError(SyncError):
    """Another synchronization run is already active."""


class EventCategory(enum.Enum):
    """Groupware entry types used for filtering."""

    APPOINTMENT = "appointment"
    MEETING = "meeting"
    REMINDER = "reminder"
    ANNIVERSARY = "anniversary"
    ALL_DAY_EVENT = "all_day_event"

    @classmethod
    def parse(cls, value: str) -> "EventCategory":
        """Look up a category by value, accepting dashes, spaces and any case."""
        normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown event category: {value!r}") from None


class SyncStatus(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class CalendarEvent:
    """Backend-agnostic calendar entry.

    Source-side events carry ``uid`` and ``last_modified`` as read from the
    groupware calendar.  Sink-side (managed) events additionally carry
    ``source_ref``, ``sink_id`` and, when the sink stored it, the fingerprint
    of the content written on the last sync.  For sink-side events
    ``last_modified`` is the source modification time recorded at that write.
    """

    uid: str
    title: str
    start: datetime
    end: datetime
    description: str = ""
    location: str = ""
    all_day: bool = False
    category: EventCategory = EventCategory.APPOINTMENT
    is_private: bool = False
    last_modified: datetime | None = None
    source_ref: str | None = None
    sink_id: SinkId | None = None
    synced_fingerprint: str | None = None


@dataclass(frozen=True)
class TimeRange:
    """Half-open retrieval window; ``None`` on either side means unbounded."""

    start: datetime | None = None
    end: datetime | None = None

    @property
    def is_unbounded(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, moment: datetime) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment >= self.end:
            return False
        return True

    def __str__(self) -> str:
        lower = self.start.isoformat() if self.start else "-inf"
        upper = self.end.isoformat() if self.end else "+inf"
        return f"[{lower}, {upper})"


@dataclass
class PrivacySettings:
    """What survives obfuscation of a private event."""

    placeholder_title: str = "Private"
    keep_title: bool = False
    keep_description: bool = False
    keep_location: bool = False


@dataclass
class SyncConfig:
    """Configuration for calendar sync operation."""

    source_calendar_id: str
    target_calendar_id: str
    state_db_path: Path
    token_file: Path = DEFAULT_TOKEN_FILE
    allowed_categories: frozenset[EventCategory] = frozenset(EventCategory)
    privacy: PrivacySettings = field(default_factory=PrivacySettings)
    window_margin_minutes: int = 60
    horizon_days: int = 365
    full_resync: bool = False
    max_attempts: int = 3
    retry_backoff_seconds: float = 2.0
    request_timeout_seconds: int = 30
    dry_run: bool = False
    verbose: bool = False
    yes: bool = False  # Auto-confirm without prompting


@dataclass(frozen=True)
class FailedItem:
    uid: str
    operation: str
    reason: str


@dataclass
class SyncResult:
    """Outcome of one synchronization run."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    filtered: int = 0
    failed: list[FailedItem] = field(default_factory=list)
    window: TimeRange | None = None
    dry_run: bool = False
    full_resync: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed_uids(self) -> list[str]:
        return [item.uid for item in self.failed]
