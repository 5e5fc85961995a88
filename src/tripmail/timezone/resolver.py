"""Authoritative timezone resolution for extracted bookings.

Precedence (first hit wins):
1. Facility override: for facility types (private terminals) the departure
   facility's clock is authoritative. The facility comes from
   `service_details.facility_name`, else `locations.origin`, else a scan of
   the raw body, and is matched against the type's own timezone rules.
2. Display rule: the location named by the type's DisplayRule
   (`origin` or `destination`) is matched against the type's timezone rules.
3. Static table: facility, then display location, in the built-in table.
4. The type's default timezone.
5. The configured global fallback.

Timezone rules are always taken from the booking type being resolved, so
one type's rules can never decide another type's timezone. Missing
configuration skips a step; resolution never fails.

Usage:
    from tripmail.timezone.resolver import TimezoneResolver

    resolver = TimezoneResolver(config.timezone)
    resolution = resolver.resolve(snapshot, "private_terminal", model_output, body)
    print(resolution.timezone, resolution.step)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

import regex

from tripmail.config_schema import TimezoneConfig
from tripmail.core.errors import MissingTypeConfiguration
from tripmail.core.logging import get_logger
from tripmail.db.records import TimezoneRule
from tripmail.timezone.locations import lookup_location

if TYPE_CHECKING:
    from tripmail.db.records import SegmentTypeConfig
    from tripmail.rules.cache import ConfigSnapshot

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

ResolutionStep = Literal[
    "facility_rule", "display_rule", "static_table", "type_default", "fallback"
]


@dataclass(frozen=True)
class TimezoneResolution:
    """Resolved timezone and the step that produced it.

    Attributes:
        timezone: IANA zone id (never empty)
        step: Precedence step that decided
        matched: Facility or location string that matched, if any
    """

    timezone: str
    step: ResolutionStep
    matched: str | None = None


def get_path(data: Any, *keys: str) -> str | None:
    """Read a nested string field, tolerating missing or non-dict levels."""
    current = data
    for key in keys:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    if isinstance(current, str) and current.strip():
        return current.strip()
    return None


def match_timezone_rules(rules: Iterable[TimezoneRule], location: str) -> TimezoneRule | None:
    """First active rule, by descending priority, contained in the location.

    Matching is a case-insensitive substring test; equal priorities keep the
    given order.
    """
    location_lower = location.lower()
    ordered = sorted(
        (r for r in rules if r.is_active and r.location_pattern),
        key=lambda r: r.priority,
        reverse=True,
    )
    for rule in ordered:
        if rule.location_pattern.lower() in location_lower:
            return rule
    return None


class TimezoneResolver:
    """Resolves the authoritative timezone for a booking."""

    def __init__(self, config: TimezoneConfig | None = None):
        self.config = config or TimezoneConfig()
        self._facility_patterns = self._build_facility_patterns(self.config.facility_codes)

    @staticmethod
    def _build_facility_patterns(codes: list[str]) -> list[regex.Pattern]:
        patterns = []
        if codes:
            alternation = "|".join(regex.escape(code) for code in codes)
            patterns.append(regex.compile(rf"\bPS\s+({alternation})\b", regex.IGNORECASE))
            patterns.append(
                regex.compile(
                    rf"Private\s+Terminal\s+.*?\b({alternation})\b", regex.IGNORECASE
                )
            )
        # Any upper-case code after 'PS'; case-sensitive to avoid prose like 'ps the'
        patterns.append(regex.compile(r"\bPS\s+([A-Z]{3})\b"))
        return patterns

    def facility_from_body(self, body: str | None) -> str | None:
        """Scan a raw email body for a facility identifier such as 'PS ATL'."""
        if not body:
            return None
        for pattern in self._facility_patterns:
            try:
                match = pattern.search(body, timeout=REGEX_TIMEOUT)
            except TimeoutError:
                logger.warning("facility_scan_timeout", body_length=len(body))
                return None
            if match:
                return f"PS {match.group(1).upper()}"
        return None

    def extract_facility(self, model_output: Any, raw_body: str | None) -> str | None:
        return (
            get_path(model_output, "service_details", "facility_name")
            or get_path(model_output, "locations", "origin")
            or self.facility_from_body(raw_body)
        )

    def _segment(self, snapshot: ConfigSnapshot, email_type: str) -> SegmentTypeConfig | None:
        try:
            return snapshot.require_segment_type(email_type)
        except MissingTypeConfiguration as e:
            logger.debug("missing_type_configuration", email_type=e.email_type)
            return None

    def resolve(
        self,
        snapshot: ConfigSnapshot,
        email_type: str,
        model_output: Any = None,
        raw_body: str | None = None,
    ) -> TimezoneResolution:
        """Resolve the timezone for one extracted booking.

        Args:
            snapshot: Config snapshot shared with classification
            email_type: Booking type label
            model_output: Structured model output (any shape; only documented
                paths are read)
            raw_body: Raw email body, scanned for facility codes

        Returns:
            TimezoneResolution; never raises for missing data or configuration
        """
        segment = self._segment(snapshot, email_type)
        rules = segment.timezone_rules if segment else ()

        facility = None
        if email_type in self.config.facility_types:
            facility = self.extract_facility(model_output, raw_body)
            if facility:
                rule = match_timezone_rules(rules, facility)
                if rule:
                    return self._resolved(email_type, rule.timezone, "facility_rule", facility)

        location = None
        if segment is not None and segment.display_rule is not None:
            location = get_path(model_output, "locations", segment.display_rule.timezone_source)
            if location:
                rule = match_timezone_rules(rules, location)
                if rule:
                    return self._resolved(email_type, rule.timezone, "display_rule", location)

        for candidate in (facility, location):
            timezone = lookup_location(candidate)
            if timezone:
                return self._resolved(email_type, timezone, "static_table", candidate)

        if segment is not None and segment.default_timezone:
            return self._resolved(email_type, segment.default_timezone, "type_default")

        return self._resolved(email_type, self.config.fallback, "fallback")

    def _resolved(
        self,
        email_type: str,
        timezone: str,
        step: ResolutionStep,
        matched: str | None = None,
    ) -> TimezoneResolution:
        logger.debug(
            "timezone_resolved",
            email_type=email_type,
            timezone=timezone,
            step=step,
            matched=matched,
        )
        return TimezoneResolution(timezone=timezone, step=step, matched=matched)
