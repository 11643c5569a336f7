"""
Privacy obfuscation: strips sensitive data from private events before syncing.
"""

from abc import ABC
from abc import abstractmethod
from collections.abc import Iterable
from dataclasses import replace

from eds_gcal_sync.models import CalendarEvent
from eds_gcal_sync.models import PrivacySettings
from eds_gcal_sync.models import SyncConfig


class EventObfuscator(ABC):
    """A pure, idempotent transform applied to private events."""

    @abstractmethod
    def transform(self, event: CalendarEvent) -> CalendarEvent:
        pass


class DefaultEventObfuscator(EventObfuscator):
    """Redacts free-text fields of a private event per PrivacySettings.

    Start, end, all-day flag and category are kept so the target calendar
    still shows the user as busy for the right time.
    """

    def __init__(self, privacy: PrivacySettings | None = None):
        self.privacy = privacy or PrivacySettings()

    def transform(self, event: CalendarEvent) -> CalendarEvent:
        changes = {}
        if not self.privacy.keep_title:
            changes["title"] = self.privacy.placeholder_title
        if not self.privacy.keep_description:
            changes["description"] = ""
        if not self.privacy.keep_location:
            changes["location"] = ""
        return replace(event, **changes) if changes else event


class ObfuscatorChain:
    """Applies every obfuscator in order, but only to events flagged private."""

    def __init__(self, obfuscators: Iterable[EventObfuscator] = ()):
        self.obfuscators = list(obfuscators)

    def apply(self, event: CalendarEvent) -> CalendarEvent:
        if not event.is_private:
            return event
        for obfuscator in self.obfuscators:
            event = obfuscator.transform(event)
        return event


def build_obfuscators(config: SyncConfig) -> ObfuscatorChain:
    return ObfuscatorChain([DefaultEventObfuscator(config.privacy)])
