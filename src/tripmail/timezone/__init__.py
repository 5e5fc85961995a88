"""Timezone resolution and display formatting.

This package provides:
- The built-in location to timezone table
- The precedence-ordered timezone resolver
- Display-rule formatting, timezone metadata and the private-terminal
  arrival window
"""

from tripmail.timezone.display import (
    apply_arrival_window,
    apply_timezone,
    format_segment,
    parse_datetime,
)
from tripmail.timezone.locations import LOCATION_TIMEZONES, lookup_location
from tripmail.timezone.resolver import (
    TimezoneResolution,
    TimezoneResolver,
    match_timezone_rules,
)

__all__ = [
    # Display
    "apply_arrival_window",
    "apply_timezone",
    "format_segment",
    "parse_datetime",
    # Locations
    "LOCATION_TIMEZONES",
    "lookup_location",
    # Resolver
    "TimezoneResolution",
    "TimezoneResolver",
    "match_timezone_rules",
]
