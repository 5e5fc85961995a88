"""Built-in location to timezone table.

Consulted after a booking type's own timezone rules fail to match. Keys are
lower-case; three-letter airport codes and other short keys only match as
whole words so that e.g. 'den' does not match 'Camden' and 'ord' does not
match 'Oxford'.

Usage:
    from tripmail.timezone.locations import lookup_location

    lookup_location("Madrid, Spain")  # "Europe/Madrid"
"""

from __future__ import annotations

import regex

REGEX_TIMEOUT = 1.0

# Whole-word matching applies to keys up to this length
SHORT_KEY_LENGTH = 3

LOCATION_TIMEZONES: dict[str, str] = {
    # Private terminal facilities (facility clock, not destination)
    "ps atl": "America/New_York",
    "ps lax": "America/Los_Angeles",
    "ps jfk": "America/New_York",
    "ps ord": "America/Chicago",
    "ps dfw": "America/Chicago",
    "ps mia": "America/New_York",
    "ps sea": "America/Los_Angeles",
    # US cities and airports
    "atlanta": "America/New_York",
    "atl": "America/New_York",
    "austin": "America/Chicago",
    "aus": "America/Chicago",
    "new york": "America/New_York",
    "nyc": "America/New_York",
    "jfk": "America/New_York",
    "los angeles": "America/Los_Angeles",
    "lax": "America/Los_Angeles",
    "chicago": "America/Chicago",
    "ord": "America/Chicago",
    "dallas": "America/Chicago",
    "dfw": "America/Chicago",
    "denver": "America/Denver",
    "den": "America/Denver",
    "phoenix": "America/Phoenix",
    "phx": "America/Phoenix",
    "miami": "America/New_York",
    "mia": "America/New_York",
    "seattle": "America/Los_Angeles",
    "sea": "America/Los_Angeles",
    # Europe
    "madrid, spain": "Europe/Madrid",
    "madrid": "Europe/Madrid",
    "mad": "Europe/Madrid",
    "barcelona": "Europe/Madrid",
    "bcn": "Europe/Madrid",
    "spain": "Europe/Madrid",
    "london": "Europe/London",
    "heathrow": "Europe/London",
    "gatwick": "Europe/London",
    "lhr": "Europe/London",
    "lgw": "Europe/London",
    "paris": "Europe/Paris",
    "cdg": "Europe/Paris",
    "orly": "Europe/Paris",
    "amsterdam": "Europe/Amsterdam",
    "ams": "Europe/Amsterdam",
    "frankfurt": "Europe/Berlin",
    "fra": "Europe/Berlin",
    "rome": "Europe/Rome",
    "fco": "Europe/Rome",
    "lisbon": "Europe/Lisbon",
    "lis": "Europe/Lisbon",
    "zurich": "Europe/Zurich",
    "zrh": "Europe/Zurich",
    "vienna": "Europe/Vienna",
    "vie": "Europe/Vienna",
}

# Longest contained key wins
_ORDERED_KEYS = sorted(LOCATION_TIMEZONES, key=len, reverse=True)

_SHORT_KEY_PATTERNS = {
    key: regex.compile(rf"\b{regex.escape(key)}\b")
    for key in LOCATION_TIMEZONES
    if len(key) <= SHORT_KEY_LENGTH
}


def _contains(location: str, key: str) -> bool:
    pattern = _SHORT_KEY_PATTERNS.get(key)
    if pattern is None:
        return key in location
    try:
        return pattern.search(location, timeout=REGEX_TIMEOUT) is not None
    except TimeoutError:
        return False


def lookup_location(location: str | None) -> str | None:
    """Look up a location string in the built-in table.

    Exact (case-insensitive) match first, then the longest key contained in
    the location.

    Returns:
        IANA zone id, or None if nothing matched
    """
    if not location:
        return None
    normalized = location.lower().strip()
    if not normalized:
        return None

    exact = LOCATION_TIMEZONES.get(normalized)
    if exact:
        return exact

    for key in _ORDERED_KEYS:
        if _contains(normalized, key):
            return LOCATION_TIMEZONES[key]
    return None
