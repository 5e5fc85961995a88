"""Tests for configuration loading, validation and hot reload."""

import os
from pathlib import Path

import pytest

from tripmail.config import (
    apply_env_overrides,
    build_config,
    config_changes,
    get_config,
    load_config,
    reload_config_if_changed,
    validate_config_file,
)
from tripmail.config_schema import AppConfig, PrivateTerminalConfig, TimezoneConfig
from tripmail.core.errors import ConfigLoadError, ConfigValidationError


def _touch_later(path: Path) -> None:
    """Push a file's mtime forward so a reload check sees a change."""
    stat = path.stat()
    os.utime(path, (stat.st_atime + 10, stat.st_mtime + 10))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_load_valid_file(self, config_file: Path):
        config = load_config(config_file)

        assert config.database.path == "data/test.db"
        assert config.cache.ttl_seconds == 60
        assert config.cache.retry_after_seconds == 30
        assert config.timezone.fallback == "America/New_York"

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigLoadError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("cache: [unclosed")

        with pytest.raises(ConfigLoadError, match="Failed to parse YAML"):
            load_config(path)

    def test_non_mapping(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigLoadError, match="must be a YAML mapping"):
            load_config(path)

    def test_empty_file_uses_defaults(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("")

        assert load_config(path) == AppConfig()

    def test_validation_error_names_field(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("cache:\n  ttl_seconds: 0\n")

        with pytest.raises(ConfigValidationError, match="cache.ttl_seconds"):
            load_config(path)

    def test_newer_schema_version_rejected(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 99\n")

        with pytest.raises(ConfigValidationError, match="newer than"):
            load_config(path)

    def test_env_var_path(self, set_config_env):
        assert load_config().cache.ttl_seconds == 60


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchema:
    def test_defaults(self, sample_config: AppConfig):
        assert sample_config.cache.ttl_seconds == 300
        assert sample_config.classification.default_label == "other"
        assert sample_config.prompts.classification_excerpt_chars == 500
        assert sample_config.timezone.facility_types == ["private_terminal"]
        assert sample_config.private_terminal.arrival_lead_minutes == 180

    def test_invalid_fallback_zone(self):
        with pytest.raises(ValueError, match="Unknown IANA timezone"):
            TimezoneConfig(fallback="America/Atlantis")

    def test_facility_codes_normalized(self):
        config = TimezoneConfig(facility_codes=[" atl", "lax "])
        assert config.facility_codes == ["ATL", "LAX"]

    def test_facility_code_must_be_three_letters(self):
        with pytest.raises(ValueError, match="3-letter"):
            TimezoneConfig(facility_codes=["ATLX"])

    def test_inverted_arrival_window(self):
        with pytest.raises(ValueError, match="must not exceed"):
            PrivateTerminalConfig(
                min_arrival_minutes_before_flight=200, max_arrival_minutes_before_flight=100
            )

    def test_log_level_normalized(self):
        assert AppConfig(logging={"level": "debug"}).logging.level == "DEBUG"
        with pytest.raises(ValueError):
            AppConfig(logging={"level": "verbose"})


# ---------------------------------------------------------------------------
# Singleton and hot reload
# ---------------------------------------------------------------------------


class TestGetConfig:
    def test_singleton(self, set_config_env):
        assert get_config() is get_config()

    def test_reload_without_load(self):
        assert reload_config_if_changed() is False

    def test_reload_when_changed(self, set_config_env, config_file: Path):
        assert get_config().cache.ttl_seconds == 60

        config_file.write_text("cache:\n  ttl_seconds: 120\n")
        _touch_later(config_file)

        assert reload_config_if_changed() is True
        assert get_config().cache.ttl_seconds == 120

    def test_unchanged_file_not_reloaded(self, set_config_env):
        get_config()
        assert reload_config_if_changed() is False

    def test_invalid_change_keeps_previous(self, set_config_env, config_file: Path):
        original = get_config()

        config_file.write_text("cache:\n  ttl_seconds: -5\n")
        _touch_later(config_file)

        assert reload_config_if_changed() is False
        assert get_config() is original


class TestValidateConfigFile:
    def test_valid(self, config_file: Path):
        ok, message = validate_config_file(config_file)

        assert ok
        assert message.startswith("Configuration valid (schema version 1)")
        assert "cache ttl: 60s" in message

    def test_missing(self, tmp_path: Path):
        ok, message = validate_config_file(tmp_path / "nope.yaml")

        assert not ok
        assert message.startswith("Load error:")

    def test_invalid(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("timezone:\n  fallback: Nowhere/Special\n")

        ok, message = validate_config_file(path)

        assert not ok
        assert message.startswith("Validation error:")


# ---------------------------------------------------------------------------
# Environment overrides and change detection
# ---------------------------------------------------------------------------


class TestEnvOverrides:
    def test_override_beats_file(self, config_file: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TRIPMAIL_CACHE_TTL_SECONDS", "45")
        monkeypatch.setenv("TRIPMAIL_TIMEZONE_FALLBACK", "Europe/London")

        config = load_config(config_file)

        assert config.cache.ttl_seconds == 45
        assert config.timezone.fallback == "Europe/London"
        assert config.database.path == "data/test.db"

    def test_override_adds_missing_section(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TRIPMAIL_DATABASE_PATH", "/var/lib/tripmail/rules.db")

        data = apply_env_overrides({"cache": {"ttl_seconds": 60}})

        assert data == {
            "cache": {"ttl_seconds": 60},
            "database": {"path": "/var/lib/tripmail/rules.db"},
        }

    def test_raw_data_not_mutated(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TRIPMAIL_LOG_LEVEL", "debug")
        raw = {"logging": {"level": "INFO"}}

        data = apply_env_overrides(raw)

        assert raw == {"logging": {"level": "INFO"}}
        assert build_config(data).logging.level == "DEBUG"

    def test_invalid_override_rejected(self, config_file: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("TRIPMAIL_CACHE_TTL_SECONDS", "0")

        with pytest.raises(ConfigValidationError, match="cache.ttl_seconds"):
            load_config(config_file)

    def test_timezone_error_carries_hint(self, temp_config_dir: Path):
        path = temp_config_dir / "config.yaml"
        path.write_text("timezone:\n  fallback: Nowhere/Special\n")

        with pytest.raises(ConfigValidationError, match="IANA zone name"):
            load_config(path)


class TestConfigChanges:
    def test_identical(self):
        assert config_changes(AppConfig(), AppConfig()) == []

    def test_reports_dotted_fields(self):
        old = AppConfig()
        new = AppConfig(cache={"ttl_seconds": 10}, timezone={"fallback": "Europe/Madrid"})

        assert config_changes(old, new) == ["cache.ttl_seconds", "timezone.fallback"]

    def test_list_field(self):
        new = AppConfig(timezone={"facility_types": []})

        assert config_changes(AppConfig(), new) == ["timezone.facility_types"]
