"""
Configuration file handling.

The config file is an INI file with a single ``[calendar-sync]`` section.
Loading never raises: ``load_settings`` reports success, a parse error, or
that the file was upgraded with newly introduced keys and should be reviewed
before the next sync.
"""

import enum
import logging
from configparser import ConfigParser
from configparser import Error as ConfigParserError
from configparser import SectionProxy
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from eds_gcal_sync.models import DEFAULT_STATE_DB
from eds_gcal_sync.models import DEFAULT_TOKEN_FILE
from eds_gcal_sync.models import ConfigError
from eds_gcal_sync.models import EventCategory
from eds_gcal_sync.models import PrivacySettings
from eds_gcal_sync.models import SyncConfig

logger = logging.getLogger(__name__)

SECTION = "calendar-sync"

DEFAULTS: dict[str, str] = {
    "source_calendar_id": "",
    "target_calendar_id": "primary",
    "google_token_file": str(DEFAULT_TOKEN_FILE),
    "sync_categories": ", ".join(category.value for category in EventCategory),
    "private_title": "Private",
    "keep_private_title": "false",
    "keep_private_description": "false",
    "keep_private_location": "false",
    "window_margin_minutes": "60",
    "horizon_days": "365",
    "max_attempts": "3",
    "retry_backoff_seconds": "2",
    "request_timeout_seconds": "30",
    "full_resync": "false",
}


class ReloadStatus(enum.Enum):
    OK = "ok"
    CONFIG_CHANGED = "config_changed"
    ERROR = "error"


@dataclass
class SettingsReload:
    """Outcome of reading the configuration file."""

    status: ReloadStatus
    config: SyncConfig | None = None
    error: str | None = None
    added_keys: list[str] = field(default_factory=list)


def parse_categories(value: str) -> frozenset[EventCategory]:
    names = [name.strip() for name in value.split(",") if name.strip()]
    if not names:
        raise ConfigError("sync_categories must name at least one event type")
    try:
        return frozenset(EventCategory.parse(name) for name in names)
    except ValueError as e:
        raise ConfigError(str(e)) from None


def _get(section: SectionProxy, getter: str, key: str):
    try:
        return getattr(section, getter)(key)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {key}: {e}") from None


def _at_least(key: str, value, minimum):
    if value < minimum:
        raise ConfigError(f"{key} must be at least {minimum} (got {value})")
    return value


def build_sync_config(section: SectionProxy, state_db_path: Path = DEFAULT_STATE_DB) -> SyncConfig:
    """Build a SyncConfig from a ``[calendar-sync]`` section holding every key in DEFAULTS."""
    privacy = PrivacySettings(
        placeholder_title=section.get("private_title") or DEFAULTS["private_title"],
        keep_title=_get(section, "getboolean", "keep_private_title"),
        keep_description=_get(section, "getboolean", "keep_private_description"),
        keep_location=_get(section, "getboolean", "keep_private_location"),
    )
    return SyncConfig(
        source_calendar_id=section.get("source_calendar_id", "").strip(),
        target_calendar_id=section.get("target_calendar_id", "").strip() or "primary",
        state_db_path=state_db_path,
        token_file=Path(section.get("google_token_file")).expanduser(),
        allowed_categories=parse_categories(section.get("sync_categories", "")),
        privacy=privacy,
        window_margin_minutes=_at_least(
            "window_margin_minutes", _get(section, "getint", "window_margin_minutes"), 0
        ),
        horizon_days=_at_least("horizon_days", _get(section, "getint", "horizon_days"), 1),
        full_resync=_get(section, "getboolean", "full_resync"),
        max_attempts=_at_least("max_attempts", _get(section, "getint", "max_attempts"), 1),
        retry_backoff_seconds=_at_least(
            "retry_backoff_seconds", _get(section, "getfloat", "retry_backoff_seconds"), 0
        ),
        request_timeout_seconds=_at_least(
            "request_timeout_seconds", _get(section, "getint", "request_timeout_seconds"), 1
        ),
    )


def default_config(state_db_path: Path = DEFAULT_STATE_DB) -> SyncConfig:
    """SyncConfig used when no configuration file exists."""
    parser = ConfigParser()
    parser.read_dict({SECTION: DEFAULTS})
    return build_sync_config(parser[SECTION], state_db_path)


def load_settings(
    path: Path, state_db_path: Path = DEFAULT_STATE_DB, write_back: bool = True
) -> SettingsReload:
    """Read the configuration file, adding keys it does not have yet.

    When keys were missing, the file is rewritten with their defaults and
    CONFIG_CHANGED is returned so the caller can ask the user to review the
    new settings instead of syncing with values they have never seen.
    With ``write_back=False`` the file is left alone; the missing keys are
    still reported and filled in from the defaults in memory.
    """
    parser = ConfigParser()
    try:
        found = parser.read(path)
    except ConfigParserError as e:
        return SettingsReload(ReloadStatus.ERROR, error=f"Cannot parse {path}: {e}")
    if not found:
        return SettingsReload(ReloadStatus.ERROR, error=f"Config file not found: {path}")
    if SECTION not in parser:
        return SettingsReload(ReloadStatus.ERROR, error=f"{path} has no [{SECTION}] section")

    section = parser[SECTION]
    added = [key for key in DEFAULTS if key not in section]
    for key in added:
        section[key] = DEFAULTS[key]

    try:
        config = build_sync_config(section, state_db_path)
    except ConfigError as e:
        return SettingsReload(ReloadStatus.ERROR, error=str(e))

    if not added:
        return SettingsReload(ReloadStatus.OK, config=config)
    if not write_back:
        return SettingsReload(ReloadStatus.CONFIG_CHANGED, config=config, added_keys=added)

    try:
        with open(path, "w") as fh:
            parser.write(fh)
    except OSError as e:
        return SettingsReload(ReloadStatus.ERROR, error=f"Cannot upgrade {path}: {e}")
    logger.info(f"Added new settings to {path}: {', '.join(added)}")
    return SettingsReload(ReloadStatus.CONFIG_CHANGED, config=config, added_keys=added)
