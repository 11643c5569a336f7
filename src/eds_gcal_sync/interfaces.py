"""
Backend contracts the sync engine is written against.
"""

from abc import ABC
from abc import abstractmethod

from eds_gcal_sync.models import CalendarEvent
from eds_gcal_sync.models import SinkId
from eds_gcal_sync.models import TimeRange


class CalendarSource(ABC):
    """Read-only calendar we synchronize from."""

    @abstractmethod
    def list_events(self, window: TimeRange) -> list[CalendarEvent]:
        """Return source events whose start lies inside ``window``.

        Raises BackendUnavailable on connectivity/auth failures and
        BackendProtocolError on malformed data.  Must not modify anything.
        """
        pass


class CalendarSink(ABC):
    """Writable calendar we synchronize into."""

    @abstractmethod
    def list_managed_events(self) -> list[CalendarEvent]:
        """Return only events created by this tool, each with ``source_ref`` and ``sink_id``."""
        pass

    @abstractmethod
    def create_event(self, event: CalendarEvent) -> SinkId:
        """Create a managed copy of ``event`` and return its sink id.

        Must be idempotent per ``event.source_ref``: the engine retries creates
        whose response was lost, and a repeated call has to land on the same
        copy instead of adding a second one.
        """
        pass

    @abstractmethod
    def update_event(self, sink_id: SinkId, event: CalendarEvent) -> None:
        pass

    @abstractmethod
    def delete_event(self, sink_id: SinkId) -> None:
        pass
