"""
Stateless helpers shared by the sync modules.
"""

import base64
import binascii
import hashlib
import json
import logging
from datetime import datetime
from datetime import timedelta
from datetime import timezone

from tenacity import Retrying
from tenacity import before_sleep_log
from tenacity import retry_if_exception_type
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from eds_gcal_sync.models import BackendUnavailable
from eds_gcal_sync.models import CalendarEvent
from eds_gcal_sync.models import SyncConfig
from eds_gcal_sync.models import TimeRange

# Versioned so the encoding can change without confusing older managed events.
SOURCE_REF_PREFIX = "eds-gcal-sync:v1:"

# Upper bound for a single backoff sleep, whatever the configured multiplier.
_MAX_BACKOFF_SECONDS = 60


def encode_source_ref(uid: str) -> str:
    """Embed a source UID in an opaque, sink-safe reference string."""
    if not uid:
        raise ValueError("Cannot encode an empty source UID")
    token = base64.urlsafe_b64encode(uid.encode("utf-8")).decode("ascii").rstrip("=")
    return SOURCE_REF_PREFIX + token


def decode_source_ref(source_ref: str) -> str:
    """Recover the source UID from a reference made by encode_source_ref().

    Raises ValueError for anything this tool did not produce.
    """
    if not source_ref or not source_ref.startswith(SOURCE_REF_PREFIX):
        raise ValueError(f"Not a managed source reference: {source_ref!r}")
    token = source_ref[len(SOURCE_REF_PREFIX) :]
    padded = token + "=" * (-len(token) % 4)
    try:
        uid = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError) as e:
        raise ValueError(f"Corrupt source reference {source_ref!r}: {e}") from e
    if not uid:
        raise ValueError(f"Source reference {source_ref!r} decodes to an empty UID")
    return uid


def _moment(value: datetime, all_day: bool) -> str:
    if all_day:
        return value.date().isoformat()
    return value.astimezone(timezone.utc).isoformat()


def compute_fingerprint(event: CalendarEvent) -> str:
    """
    SHA256 over the fields that are actually written to the sink.

    Identity and bookkeeping fields (uid, sink_id, source_ref, last_modified)
    are excluded so a source event and its managed copy fingerprint equally
    when their visible content matches.
    """
    payload = {
        "title": event.title or "",
        "description": event.description or "",
        "location": event.location or "",
        "start": _moment(event.start, event.all_day),
        "end": _moment(event.end, event.all_day),
        "all_day": event.all_day,
        "category": event.category.value,
        "private": event.is_private,
    }
    normalized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def compute_window(last_sync: datetime | None, now: datetime, config: SyncConfig) -> TimeRange:
    """Retrieval window for this run.

    Unbounded on the first run and on a full resync; otherwise from the
    watermark minus the safety margin up to now plus the horizon.
    """
    if last_sync is None or config.full_resync:
        return TimeRange()
    return TimeRange(
        start=last_sync - timedelta(minutes=config.window_margin_minutes),
        end=now + timedelta(days=config.horizon_days),
    )


def call_with_retry(func, *args, config: SyncConfig, logger: logging.Logger, **kwargs):
    """Call a backend operation, retrying only on BackendUnavailable.

    After ``config.max_attempts`` attempts the last BackendUnavailable is
    re-raised unchanged.  Every other exception propagates immediately.
    """
    retryer = Retrying(
        stop=stop_after_attempt(max(1, config.max_attempts)),
        wait=wait_exponential(
            multiplier=config.retry_backoff_seconds, max=_MAX_BACKOFF_SECONDS
        ),
        retry=retry_if_exception_type(BackendUnavailable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retryer(func, *args, **kwargs)
