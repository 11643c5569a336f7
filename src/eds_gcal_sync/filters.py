"""
Event admission filters.
"""

from abc import ABC
from abc import abstractmethod
from collections.abc import Iterable

from eds_gcal_sync.models import CalendarEvent
from eds_gcal_sync.models import EventCategory
from eds_gcal_sync.models import SyncConfig


class EventFilter(ABC):
    """Decides whether a source event takes part in the sync at all."""

    @abstractmethod
    def accepts(self, event: CalendarEvent) -> bool:
        pass


class EventTypeFilter(EventFilter):
    """Admits only events whose category is in the configured allow-set."""

    def __init__(self, allowed: Iterable[EventCategory]):
        self.allowed = frozenset(allowed)

    def accepts(self, event: CalendarEvent) -> bool:
        return event.category in self.allowed

    def __repr__(self) -> str:
        names = ", ".join(sorted(c.value for c in self.allowed))
        return f"EventTypeFilter({names})"


class FilterChain:
    """Ordered AND of filters; an empty chain admits everything."""

    def __init__(self, filters: Iterable[EventFilter] = ()):
        self.filters = list(filters)

    def accepts(self, event: CalendarEvent) -> bool:
        return all(f.accepts(event) for f in self.filters)

    def split(self, events: Iterable[CalendarEvent]) -> tuple[list, list]:
        """Return (admitted, rejected) preserving input order."""
        admitted, rejected = [], []
        for event in events:
            (admitted if self.accepts(event) else rejected).append(event)
        return admitted, rejected


def build_filters(config: SyncConfig) -> FilterChain:
    return FilterChain([EventTypeFilter(config.allowed_categories)])
