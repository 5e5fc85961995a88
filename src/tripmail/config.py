"""Engine configuration: YAML file, environment overrides, hot reload.

Settings resolve in this order (highest first):
1. TRIPMAIL_* environment variables listed in ENV_OVERRIDES
2. config/config.yaml (or the file named by TRIPMAIL_CONFIG_PATH)
3. AppConfig defaults

The process-wide config is read with get_config(). Long-running ingestion
loops call ItineraryEngine.refresh_config() once per batch; it checks the
file's mtime through reload_config_if_changed() and rebuilds the engine's
collaborators when a valid new config appears.

Usage:
    from tripmail.config import get_config, reload_config_if_changed

    config = get_config()
    if reload_config_if_changed():
        config = get_config()
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from tripmail.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from tripmail.core.errors import ConfigLoadError, ConfigValidationError
from tripmail.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "TRIPMAIL_CONFIG_PATH"

# Environment variable -> dotted config field
ENV_OVERRIDES: dict[str, str] = {
    "TRIPMAIL_DATABASE_PATH": "database.path",
    "TRIPMAIL_CACHE_TTL_SECONDS": "cache.ttl_seconds",
    "TRIPMAIL_TIMEZONE_FALLBACK": "timezone.fallback",
    "TRIPMAIL_LOG_LEVEL": "logging.level",
}

# Extra guidance appended to validation errors, by top-level section
_SECTION_HINTS = {
    "timezone": "use an IANA zone name such as America/New_York",
    "private_terminal": "arrival windows are minutes before the flight departs",
    "cache": "ttl_seconds must be between 1 and 3600",
}


@dataclass(frozen=True)
class _LoadedConfig:
    config: AppConfig
    path: Path
    mtime: float


_config_lock = threading.Lock()
_loaded: _LoadedConfig | None = None


def config_path_from_env() -> Path:
    """Config file named by TRIPMAIL_CONFIG_PATH, else config/config.yaml."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def format_validation_errors(error: ValidationError) -> str:
    """Render pydantic errors as one '  - field: problem' line each."""
    lines = []
    for err in error.errors():
        location = [str(part) for part in err["loc"]]
        field_path = ".".join(location)
        if err["type"] == "missing":
            line = f"  - Missing required field '{field_path}'"
        else:
            line = f"  - Field '{field_path}': {err['msg']}"
        hint = _SECTION_HINTS.get(location[0]) if location else None
        if hint:
            line += f" ({hint})"
        lines.append(line)
    return "\n".join(lines)


def load_yaml(path: Path) -> dict[str, Any]:
    """Parse a YAML file that must hold a mapping (empty files give {}).

    Shared by the config loader and the seed loader.

    Raises:
        ConfigLoadError: If the file is missing, unparseable or not a mapping
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"{path} must be a YAML mapping, got {type(data).__name__}")
    return data


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of raw config data with TRIPMAIL_* overrides applied.

    Values stay strings; pydantic coerces them during validation.
    """
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in data.items()}
    for env_var, field_path in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        section, name = field_path.split(".")
        target = merged.get(section)
        if not isinstance(target, dict):
            target = {}
            merged[section] = target
        target[name] = value
        logger.debug("config_env_override", env_var=env_var, field=field_path)
    return merged


def build_config(data: dict[str, Any], source: str = "<defaults>") -> AppConfig:
    """Validate raw config data (overrides already applied).

    Raises:
        ConfigValidationError: If a field is invalid or the schema version is too new
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {source}:\n{format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. Upgrade tripmail or "
            "downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load config from disk, bypassing the singleton.

    Args:
        path: Config file; defaults to config_path_from_env()

    Raises:
        ConfigLoadError: If the file cannot be read
        ConfigValidationError: If validation fails
    """
    config_path = path or config_path_from_env()
    data = apply_env_overrides(load_yaml(config_path))
    config = build_config(data, source=str(config_path))

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        database=config.database.path,
        cache_ttl_seconds=config.cache.ttl_seconds,
        fallback_timezone=config.timezone.fallback,
    )
    return config


def config_changes(old: AppConfig, new: AppConfig) -> list[str]:
    """Dotted names of the fields whose values differ between two configs."""
    old_data = old.model_dump()
    new_data = new.model_dump()
    changed = []
    for section in new_data:
        old_value = old_data.get(section)
        new_value = new_data[section]
        if isinstance(new_value, dict) and isinstance(old_value, dict):
            changed.extend(
                f"{section}.{name}"
                for name in new_value
                if new_value[name] != old_value.get(name)
            )
        elif new_value != old_value:
            changed.append(section)
    return changed


def get_config() -> AppConfig:
    """The process-wide config, loaded on first use.

    Thread-safe. Raises ConfigLoadError or ConfigValidationError on first
    load only; later calls return the cached config.
    """
    global _loaded

    with _config_lock:
        if _loaded is None:
            path = config_path_from_env()
            config = load_config(path)
            _loaded = _LoadedConfig(config=config, path=path, mtime=path.stat().st_mtime)
        return _loaded.config


def reload_config_if_changed() -> bool:
    """Reload the singleton if its file's mtime moved forward.

    An unreadable or invalid new file is logged and skipped; the previous
    config stays in effect and the same file is not retried.

    Returns:
        True if a new config was installed
    """
    global _loaded

    with _config_lock:
        if _loaded is None:
            return False

        try:
            mtime = _loaded.path.stat().st_mtime
        except OSError as e:
            logger.warning("config_mtime_check_failed", path=str(_loaded.path), error=str(e))
            return False

        if mtime <= _loaded.mtime:
            return False

        try:
            config = load_config(_loaded.path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning(
                "config_reload_rejected",
                path=str(_loaded.path),
                error=str(e),
                keeping="previous config",
            )
            _loaded = _LoadedConfig(config=_loaded.config, path=_loaded.path, mtime=mtime)
            return False

        changed = config_changes(_loaded.config, config)
        _loaded = _LoadedConfig(config=config, path=_loaded.path, mtime=mtime)
        logger.info("config_reloaded", path=str(_loaded.path), changed=changed)
        return True


def describe_config(config: AppConfig) -> list[str]:
    """One summary line per setting an operator usually checks."""
    return [
        f"database: {config.database.path}",
        f"cache ttl: {config.cache.ttl_seconds:g}s "
        f"(retry after {config.cache.retry_after_seconds:g}s)",
        f"default label: {config.classification.default_label}",
        f"fallback timezone: {config.timezone.fallback}",
        f"facility types: {', '.join(config.timezone.facility_types) or 'none'}",
        f"private terminal lead: {config.private_terminal.arrival_lead_minutes} min",
    ]


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file without installing it.

    Returns:
        (is_valid, message) where message is a summary or the error
    """
    try:
        config = load_config(path or config_path_from_env())
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    summary = "\n".join(f"  - {line}" for line in describe_config(config))
    return True, f"Configuration valid (schema version {config.schema_version})\n{summary}"


def reset_config() -> None:
    """Drop the singleton. Used by tests."""
    global _loaded
    with _config_lock:
        _loaded = None
