"""
Google Calendar sink.

Managed events are recognised by private extended properties, so events the
user created directly in Google Calendar are never listed or touched.
"""

import base64
import hashlib
import logging
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import timezone
from pathlib import Path

import google_auth_httplib2
import httplib2
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from eds_gcal_sync.interfaces import CalendarSink
from eds_gcal_sync.models import BackendError
from eds_gcal_sync.models import BackendProtocolError
from eds_gcal_sync.models import BackendRejected
from eds_gcal_sync.models import BackendUnavailable
from eds_gcal_sync.models import CalendarEvent
from eds_gcal_sync.models import EventCategory
from eds_gcal_sync.models import EventNotFound
from eds_gcal_sync.models import SinkId

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]

# Private extended property keys (visible only to this OAuth client's user).
MANAGED_KEY = "edsGcalSyncManaged"
SOURCE_REF_KEY = "edsGcalSyncSourceRef"
SOURCE_MODIFIED_KEY = "edsGcalSyncSourceModified"
CATEGORY_KEY = "edsGcalSyncCategory"
FINGERPRINT_KEY = "edsGcalSyncFingerprint"

_PAGE_SIZE = 2500


def load_credentials(token_file: Path) -> Credentials:
    """Load a stored authorized-user token, refreshing it when expired."""
    if not token_file.exists():
        raise BackendUnavailable(
            f"Google token file not found: {token_file} (authorize this application first)"
        )
    try:
        creds = Credentials.from_authorized_user_file(str(token_file), SCOPES)
    except (OSError, ValueError) as e:
        raise BackendUnavailable(f"Cannot read Google token file {token_file}: {e}") from e

    if creds.valid:
        return creds
    if not (creds.expired and creds.refresh_token):
        raise BackendUnavailable(f"Google token in {token_file} is invalid and cannot be refreshed")
    try:
        creds.refresh(Request())
    except GoogleAuthError as e:
        raise BackendUnavailable(f"Failed to refresh Google token: {e}") from e
    token_file.write_text(creds.to_json())
    logger.debug(f"Refreshed Google token stored in {token_file}")
    return creds


def translate_http_error(error: HttpError, action: str) -> BackendError:
    """Map a Google API HTTP error onto the backend error taxonomy."""
    status = int(error.resp.status)
    message = f"Google Calendar could not {action}: HTTP {status} {error.reason}"
    if status in (404, 410):
        return EventNotFound(message)
    if status == 403 and b"ateLimitExceeded" in (error.content or b""):
        return BackendUnavailable(message)
    if status in (401, 408, 429) or status >= 500:
        return BackendUnavailable(message)
    return BackendRejected(message)


def _time_field(moment: datetime, all_day: bool) -> dict:
    if all_day:
        return {"date": moment.date().isoformat()}
    return {"dateTime": moment.isoformat()}


def _parse_datetime(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        raise ValueError(f"dateTime without offset: {value!r}")
    return parsed


def _parse_time_field(field: dict) -> tuple[datetime, bool]:
    if "date" in field:
        day = date.fromisoformat(field["date"])
        return datetime.combine(day, time.min, tzinfo=timezone.utc), True
    if "dateTime" in field:
        return _parse_datetime(field["dateTime"]), False
    raise ValueError(f"time field has neither date nor dateTime: {field!r}")


def event_to_body(event: CalendarEvent) -> dict:
    """Build the Google Calendar API resource for a managed event."""
    if not event.source_ref:
        raise ValueError(f"Event {event.uid} has no source reference")
    end = event.end
    if event.all_day and end.date() <= event.start.date():
        end = event.start + timedelta(days=1)
    private_props = {
        MANAGED_KEY: "1",
        SOURCE_REF_KEY: event.source_ref,
        CATEGORY_KEY: event.category.value,
        SOURCE_MODIFIED_KEY: event.last_modified.isoformat() if event.last_modified else "",
    }
    if event.synced_fingerprint:
        private_props[FINGERPRINT_KEY] = event.synced_fingerprint
    return {
        "summary": event.title,
        "description": event.description,
        "location": event.location,
        "start": _time_field(event.start, event.all_day),
        "end": _time_field(end, event.all_day),
        "visibility": "private" if event.is_private else "default",
        "extendedProperties": {"private": private_props},
    }


def event_id_for(source_ref: str) -> str:
    """Deterministic Google event id for a managed copy.

    Google accepts client-chosen ids made of base32hex characters (a-v, 0-9),
    so a lowercased base32hex SHA-256 of the source reference always qualifies.
    """
    digest = hashlib.sha256(source_ref.encode("utf-8")).digest()
    return base64.b32hexencode(digest).decode("ascii").rstrip("=").lower()


def event_from_item(item: dict) -> CalendarEvent:
    """Convert a Google Calendar API event resource into a sink-side CalendarEvent."""
    try:
        props = (item.get("extendedProperties") or {}).get("private") or {}
        start, all_day = _parse_time_field(item["start"])
        end, _ = _parse_time_field(item["end"])
        try:
            category = EventCategory.parse(props.get(CATEGORY_KEY, ""))
        except ValueError:
            category = EventCategory.APPOINTMENT
        modified = props.get(SOURCE_MODIFIED_KEY)
        return CalendarEvent(
            uid=item["id"],
            sink_id=item["id"],
            title=item.get("summary", ""),
            description=item.get("description", ""),
            location=item.get("location", ""),
            start=start,
            end=end,
            all_day=all_day,
            category=category,
            is_private=item.get("visibility") in ("private", "confidential"),
            last_modified=_parse_datetime(modified) if modified else None,
            source_ref=props.get(SOURCE_REF_KEY),
            synced_fingerprint=props.get(FINGERPRINT_KEY) or None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise BackendProtocolError(f"Malformed Google Calendar event {item.get('id')!r}: {e}") from e


class GoogleCalendarSink(CalendarSink):
    """Writes managed events into one Google calendar."""

    def __init__(self, service, calendar_id: str = "primary"):
        self.service = service
        self.calendar_id = calendar_id

    @classmethod
    def from_token_file(
        cls, token_file: Path, calendar_id: str = "primary", timeout: int = 30
    ) -> "GoogleCalendarSink":
        creds = load_credentials(token_file)
        http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout))
        service = build("calendar", "v3", http=http, cache_discovery=False)
        return cls(service, calendar_id)

    def _execute(self, request, action: str):
        try:
            return request.execute()
        except HttpError as e:
            raise translate_http_error(e, action) from e
        except (httplib2.HttpLib2Error, OSError, GoogleAuthError) as e:
            # OSError includes socket timeouts and ssl.SSLError.
            raise BackendUnavailable(f"Google Calendar could not {action}: {e}") from e

    def list_managed_events(self) -> list[CalendarEvent]:
        events = []
        page_token = None
        while True:
            response = self._execute(
                self.service.events().list(
                    calendarId=self.calendar_id,
                    privateExtendedProperty=f"{MANAGED_KEY}=1",
                    showDeleted=False,
                    singleEvents=False,
                    maxResults=_PAGE_SIZE,
                    pageToken=page_token,
                ),
                "list managed events",
            )
            if not isinstance(response, dict):
                raise BackendProtocolError("Google Calendar returned a non-object event list")
            for item in response.get("items", []):
                if item.get("status") == "cancelled":
                    continue
                events.append(event_from_item(item))
            page_token = response.get("nextPageToken")
            if not page_token:
                break
        logger.debug(f"Found {len(events)} managed events in {self.calendar_id}")
        return events

    def create_event(self, event: CalendarEvent) -> SinkId:
        body = event_to_body(event)
        body["id"] = event_id_for(event.source_ref)
        try:
            created = self._execute(
                self.service.events().insert(calendarId=self.calendar_id, body=body),
                f"create event {event.uid}",
            )
        except BackendRejected as e:
            if not isinstance(e.__cause__, HttpError) or int(e.__cause__.resp.status) != 409:
                raise
            # The id is taken: an earlier attempt whose response was lost, or a
            # copy deleted in Google Calendar. Overwrite it (reviving it if deleted).
            logger.debug(f"Event id {body['id']} already exists; overwriting it for {event.uid}")
            self._execute(
                self.service.events().update(
                    calendarId=self.calendar_id,
                    eventId=body["id"],
                    body={**body, "status": "confirmed"},
                ),
                f"create event {event.uid}",
            )
            return body["id"]
        try:
            return created["id"]
        except (KeyError, TypeError) as e:
            raise BackendProtocolError(f"Created event {event.uid} came back without an id") from e

    def update_event(self, sink_id: SinkId, event: CalendarEvent) -> None:
        self._execute(
            self.service.events().update(
                calendarId=self.calendar_id, eventId=sink_id, body=event_to_body(event)
            ),
            f"update event {sink_id}",
        )

    def delete_event(self, sink_id: SinkId) -> None:
        self._execute(
            self.service.events().delete(calendarId=self.calendar_id, eventId=sink_id),
            f"delete event {sink_id}",
        )
