"""
Unit tests for configuration loading and upgrade in eds_gcal_sync.settings.
"""

from configparser import ConfigParser
from pathlib import Path

import pytest
from typer.testing import CliRunner

from eds_gcal_sync.cli import app
from eds_gcal_sync.models import ConfigError
from eds_gcal_sync.models import EventCategory
from eds_gcal_sync.settings import DEFAULTS
from eds_gcal_sync.settings import SECTION
from eds_gcal_sync.settings import ReloadStatus
from eds_gcal_sync.settings import default_config
from eds_gcal_sync.settings import load_settings
from eds_gcal_sync.settings import parse_categories


def _write_config(path: Path, values: dict[str, str], fill_defaults: bool = True) -> Path:
    parser = ConfigParser()
    parser[SECTION] = {**DEFAULTS, **values} if fill_defaults else values
    with open(path, "w") as fh:
        parser.write(fh)
    return path


class TestLoadSettings:
    def test_complete_file_loads_ok(self, tmp_path):
        path = _write_config(
            tmp_path / "sync.conf",
            {
                "source_calendar_id": "exchange-cal",
                "target_calendar_id": "work@group.calendar.google.com",
                "sync_categories": "meeting, all-day event",
                "private_title": "Busy",
                "keep_private_location": "yes",
                "max_attempts": "5",
            },
        )

        reload = load_settings(path, tmp_path / "state.db")

        assert reload.status is ReloadStatus.OK
        assert reload.added_keys == []
        cfg = reload.config
        assert cfg.source_calendar_id == "exchange-cal"
        assert cfg.target_calendar_id == "work@group.calendar.google.com"
        assert cfg.allowed_categories == {EventCategory.MEETING, EventCategory.ALL_DAY_EVENT}
        assert cfg.privacy.placeholder_title == "Busy"
        assert cfg.privacy.keep_location
        assert not cfg.privacy.keep_title
        assert cfg.max_attempts == 5
        assert cfg.state_db_path == tmp_path / "state.db"

    def test_missing_keys_are_added_and_reported(self, tmp_path):
        path = _write_config(
            tmp_path / "sync.conf", {"source_calendar_id": "exchange-cal"}, fill_defaults=False
        )

        reload = load_settings(path)

        assert reload.status is ReloadStatus.CONFIG_CHANGED
        assert "horizon_days" in reload.added_keys
        assert "source_calendar_id" not in reload.added_keys
        assert reload.config.source_calendar_id == "exchange-cal"
        assert reload.config.horizon_days == 365

        # The upgraded file is complete, so the next load is plain OK.
        written = ConfigParser()
        written.read(path)
        assert set(DEFAULTS) <= set(written[SECTION])
        assert load_settings(path).status is ReloadStatus.OK

    def test_read_only_load_reports_missing_keys_without_writing(self, tmp_path):
        path = _write_config(
            tmp_path / "sync.conf", {"source_calendar_id": "exchange-cal"}, fill_defaults=False
        )
        before = path.read_text()

        reload = load_settings(path, write_back=False)

        assert reload.status is ReloadStatus.CONFIG_CHANGED
        assert "horizon_days" in reload.added_keys
        assert reload.config.horizon_days == 365
        assert path.read_text() == before

    def test_status_command_leaves_config_untouched(self, tmp_path):
        path = _write_config(
            tmp_path / "sync.conf", {"target_calendar_id": "primary"}, fill_defaults=False
        )
        before = path.read_text()

        result = CliRunner().invoke(
            app, ["--config", str(path), "--state-db", str(tmp_path / "state.db"), "status"]
        )

        assert result.exit_code == 0, result.output
        assert "horizon_days" in result.output
        assert path.read_text() == before

    def test_missing_file_is_error(self, tmp_path):
        reload = load_settings(tmp_path / "absent.conf")
        assert reload.status is ReloadStatus.ERROR
        assert "not found" in reload.error
        assert reload.config is None

    def test_missing_section_is_error(self, tmp_path):
        path = tmp_path / "sync.conf"
        path.write_text("[other]\nkey = value\n")
        assert load_settings(path).status is ReloadStatus.ERROR

    def test_unparseable_file_is_error(self, tmp_path):
        path = tmp_path / "sync.conf"
        path.write_text("this is not an ini file\n")
        assert load_settings(path).status is ReloadStatus.ERROR

    @pytest.mark.parametrize(
        "key, value",
        [
            ("max_attempts", "many"),
            ("max_attempts", "0"),
            ("horizon_days", "0"),
            ("keep_private_title", "perhaps"),
            ("sync_categories", "meeting, holiday"),
            ("sync_categories", " , "),
        ],
    )
    def test_invalid_values_are_errors(self, tmp_path, key, value):
        path = _write_config(tmp_path / "sync.conf", {"source_calendar_id": "cal", key: value})
        reload = load_settings(path)
        assert reload.status is ReloadStatus.ERROR
        assert key in reload.error or "categor" in reload.error

    def test_invalid_file_is_not_rewritten(self, tmp_path):
        path = _write_config(
            tmp_path / "sync.conf", {"max_attempts": "many"}, fill_defaults=False
        )
        before = path.read_text()
        assert load_settings(path).status is ReloadStatus.ERROR
        assert path.read_text() == before


class TestDefaults:
    def test_default_config(self, tmp_path):
        cfg = default_config(tmp_path / "state.db")
        assert cfg.source_calendar_id == ""
        assert cfg.target_calendar_id == "primary"
        assert cfg.allowed_categories == frozenset(EventCategory)
        assert cfg.window_margin_minutes == 60
        assert cfg.horizon_days == 365
        assert cfg.max_attempts == 3
        assert cfg.retry_backoff_seconds == 2.0
        assert cfg.request_timeout_seconds == 30
        assert not cfg.full_resync
        assert cfg.privacy.placeholder_title == "Private"

    def test_parse_categories_accepts_loose_spelling(self):
        assert parse_categories("Meeting,ALL_DAY_EVENT, all day event") == {
            EventCategory.MEETING,
            EventCategory.ALL_DAY_EVENT,
        }

    def test_parse_categories_rejects_empty(self):
        with pytest.raises(ConfigError):
            parse_categories("")
