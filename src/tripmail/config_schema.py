"""Pydantic configuration schema for the travel email engine.

This module defines the configuration schema that mirrors config.yaml structure.
Configuration is validated against these models on startup and hot-reload.
`AppConfig()` with no arguments is a complete working configuration, so the
engine can be used as a library without a config file.

Usage:
    from tripmail.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


def validate_iana_zone(value: str) -> str:
    """Ensure a timezone string names a real IANA zone."""
    if not value or not value.strip():
        raise ValueError("Timezone cannot be empty")
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown IANA timezone '{value}'") from e
    return value


class DatabaseConfig(BaseModel):
    """Rule store location."""

    path: str = Field(
        default="data/tripmail.db",
        description="Path to the SQLite rule store",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class CacheConfig(BaseModel):
    """Rule snapshot cache configuration."""

    ttl_seconds: float = Field(
        default=300,
        ge=1,
        le=3600,
        description="How long a loaded rule snapshot is served before reloading",
    )
    retry_after_seconds: float = Field(
        default=30,
        ge=0,
        le=3600,
        description="After a failed reload, serve the stale snapshot this long before retrying",
    )


class ClassificationConfig(BaseModel):
    """Rule matcher configuration."""

    default_label: str = Field(
        default="other",
        description="Label returned when no classification rule matches",
    )


class PromptsConfig(BaseModel):
    """Prompt resolution configuration."""

    classification_excerpt_chars: int = Field(
        default=500,
        ge=50,
        le=20000,
        description="Characters of email body included in classification prompts",
    )
    splice_marker: str = Field(
        default="Return a JSON object with this exact structure",
        description="Base template line before which type-specific fragments are inserted",
    )
    track_usage: bool = Field(
        default=True,
        description="Record prompt usage to the rule store",
    )


class TimezoneConfig(BaseModel):
    """Timezone resolution configuration."""

    fallback: str = Field(
        default="America/New_York",
        description="Zone returned when every other resolution step fails",
    )
    facility_types: list[str] = Field(
        default=["private_terminal"],
        description="Booking types whose clock follows the departure facility",
    )
    facility_codes: list[str] = Field(
        default=["ATL", "LAX", "JFK", "ORD", "DFW", "MIA", "SEA"],
        description="Airport codes recognised as facility identifiers in raw email bodies",
    )

    @field_validator("fallback")
    @classmethod
    def validate_fallback(cls, v: str) -> str:
        """Ensure the global fallback is a valid zone."""
        return validate_iana_zone(v)

    @field_validator("facility_codes")
    @classmethod
    def validate_facility_codes(cls, v: list[str]) -> list[str]:
        """Normalize facility codes to upper-case three-letter codes."""
        codes = []
        for code in v:
            code = code.strip().upper()
            if len(code) != 3 or not code.isalpha():
                raise ValueError(f"Facility code '{code}' must be a 3-letter airport code")
            codes.append(code)
        return codes


class PrivateTerminalConfig(BaseModel):
    """Arrival window policy for private-terminal bookings."""

    arrival_lead_minutes: int = Field(
        default=180,
        ge=0,
        le=720,
        description="Earliest arrival = associated flight departure minus this many minutes",
    )
    min_arrival_minutes_before_flight: int = Field(
        default=30,
        ge=0,
        description="Model-supplied arrival times closer to departure than this are replaced",
    )
    max_arrival_minutes_before_flight: int = Field(
        default=180,
        ge=0,
        description="Model-supplied arrival times earlier than this are replaced",
    )

    @model_validator(mode="after")
    def validate_window(self) -> "PrivateTerminalConfig":
        """Ensure the accepted arrival window is not inverted."""
        if self.min_arrival_minutes_before_flight > self.max_arrival_minutes_before_flight:
            raise ValueError(
                "min_arrival_minutes_before_flight must not exceed "
                "max_arrival_minutes_before_flight"
            )
        return self


class LoggingConfig(BaseModel):
    """Logging output configuration."""

    level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    json_output: bool = Field(default=True, description="JSON logs (False: console renderer)")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Ensure the level is one structlog/stdlib understands."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("Log level must be DEBUG, INFO, WARNING, ERROR or CRITICAL")
        return level


class AppConfig(BaseModel):
    """Root configuration schema for the travel email engine.

    If validation fails on startup, the CLI exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    prompts: PromptsConfig = Field(default_factory=PromptsConfig)
    timezone: TimezoneConfig = Field(default_factory=TimezoneConfig)
    private_terminal: PrivateTerminalConfig = Field(default_factory=PrivateTerminalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
