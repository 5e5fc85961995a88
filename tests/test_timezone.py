"""Tests for timezone resolution.

Tests cover:
- The private-terminal facility override and where the facility comes from
- Display-rule directed matching against a type's own timezone rules
- The static location table, type default and global fallback steps
- Tolerance of missing configuration and malformed model output
"""

import pytest

from tripmail.config_schema import TimezoneConfig
from tripmail.db.records import DisplayRule, RuleSet, SegmentTypeConfig, TimezoneRule
from tripmail.rules.cache import ConfigSnapshot
from tripmail.timezone.locations import lookup_location
from tripmail.timezone.resolver import TimezoneResolver, get_path, match_timezone_rules


def _tz_rule(rule_id: int, segment: str, pattern: str, tz: str, priority: int = 0):
    return TimezoneRule(
        id=rule_id,
        segment_type_name=segment,
        location_pattern=pattern,
        timezone=tz,
        priority=priority,
    )


def _display(segment: str, source: str) -> DisplayRule:
    return DisplayRule(id=1, segment_type_name=segment, timezone_source=source)


@pytest.fixture
def snapshot() -> ConfigSnapshot:
    return ConfigSnapshot.build(
        RuleSet(
            segment_types=(
                SegmentTypeConfig(
                    name="private_terminal",
                    display_name="Private Terminal",
                    default_timezone="America/New_York",
                    display_rule=_display("private_terminal", "origin"),
                    timezone_rules=(
                        _tz_rule(1, "private_terminal", "PS ATL", "America/New_York", 20),
                        _tz_rule(2, "private_terminal", "PS LAX", "America/Los_Angeles", 20),
                        _tz_rule(3, "private_terminal", "PS JFK", "America/New_York", 20),
                    ),
                ),
                SegmentTypeConfig(
                    name="hotel",
                    display_name="Hotel",
                    default_timezone="America/Denver",
                    display_rule=_display("hotel", "destination"),
                    timezone_rules=(
                        _tz_rule(4, "hotel", "Thompson Austin", "America/Chicago", 10),
                    ),
                ),
                SegmentTypeConfig(
                    name="flight",
                    display_name="Flight",
                    default_timezone="America/New_York",
                    display_rule=_display("flight", "origin"),
                ),
                SegmentTypeConfig(
                    name="event",
                    display_name="Event",
                    default_timezone="America/Phoenix",
                ),
            )
        ),
        loaded_at=0,
    )


@pytest.fixture
def resolver() -> TimezoneResolver:
    return TimezoneResolver(TimezoneConfig())


# ---------------------------------------------------------------------------
# Facility override
# ---------------------------------------------------------------------------


class TestFacilityOverride:
    def test_facility_beats_destination_city(self, resolver, snapshot):
        output = {
            "type": "private_terminal",
            "service_details": {"facility_name": "PS LAX"},
            "locations": {"origin": "PS LAX", "destination": "Austin"},
        }

        resolution = resolver.resolve(snapshot, "private_terminal", output)

        assert resolution.timezone == "America/Los_Angeles"
        assert resolution.step == "facility_rule"
        assert resolution.matched == "PS LAX"

    def test_facility_name_with_extra_text(self, resolver, snapshot):
        output = {"service_details": {"facility_name": "PS ATL - The Salon"}}

        resolution = resolver.resolve(snapshot, "private_terminal", output)

        assert resolution.timezone == "America/New_York"
        assert resolution.step == "facility_rule"

    def test_origin_used_when_facility_name_missing(self, resolver, snapshot):
        output = {"service_details": {}, "locations": {"origin": "PS LAX"}}

        assert resolver.resolve(snapshot, "private_terminal", output).timezone == (
            "America/Los_Angeles"
        )

    def test_facility_scanned_from_body(self, resolver, snapshot):
        body = "UPCOMING: PS | ATL to AUS\nPlan to be at PS LAX no later than 4:45 PM."

        resolution = resolver.resolve(snapshot, "private_terminal", {}, body)

        assert resolution.timezone == "America/Los_Angeles"
        assert resolution.matched == "PS LAX"

    def test_private_terminal_phrase_in_body(self, resolver, snapshot):
        body = "Your Private Terminal experience at JFK is confirmed."

        resolution = resolver.resolve(snapshot, "private_terminal", None, body)

        assert resolution.timezone == "America/New_York"
        assert resolution.matched == "PS JFK"

    def test_unruled_facility_uses_static_table(self, resolver, snapshot):
        output = {"service_details": {"facility_name": "PS SEA"}}

        resolution = resolver.resolve(snapshot, "private_terminal", output)

        assert resolution.timezone == "America/Los_Angeles"
        assert resolution.step == "static_table"

    def test_higher_priority_rule_wins(self, resolver):
        snapshot = ConfigSnapshot.build(
            RuleSet(
                segment_types=(
                    SegmentTypeConfig(
                        name="private_terminal",
                        display_name="Private Terminal",
                        timezone_rules=(
                            _tz_rule(1, "private_terminal", "PS", "America/Denver", 1),
                            _tz_rule(2, "private_terminal", "PS ATL", "America/New_York", 20),
                        ),
                    ),
                )
            ),
            loaded_at=0,
        )
        output = {"service_details": {"facility_name": "PS ATL"}}

        assert resolver.resolve(snapshot, "private_terminal", output).timezone == (
            "America/New_York"
        )

    def test_other_types_do_not_use_facility_override(self, resolver, snapshot):
        output = {"service_details": {"facility_name": "PS LAX"}, "locations": {}}

        resolution = resolver.resolve(snapshot, "flight", output)

        assert resolution.step == "type_default"


# ---------------------------------------------------------------------------
# Display rule, static table, defaults
# ---------------------------------------------------------------------------


class TestPrecedenceChain:
    def test_display_rule_location_matches_type_rule(self, resolver, snapshot):
        output = {"locations": {"destination": "Thompson Austin, 501 E 2nd St"}}

        resolution = resolver.resolve(snapshot, "hotel", output)

        assert resolution.timezone == "America/Chicago"
        assert resolution.step == "display_rule"

    def test_static_table_for_destination(self, resolver, snapshot):
        output = {"locations": {"origin": "Atlanta", "destination": "Madrid"}}

        resolution = resolver.resolve(snapshot, "hotel", output)

        assert resolution.timezone == "Europe/Madrid"
        assert resolution.step == "static_table"

    def test_display_rule_selects_origin(self, resolver, snapshot):
        output = {"locations": {"origin": "LAX", "destination": "Madrid"}}

        assert resolver.resolve(snapshot, "flight", output).timezone == "America/Los_Angeles"

    def test_type_default(self, resolver, snapshot):
        output = {"locations": {"destination": "Somewhere unlisted"}}

        resolution = resolver.resolve(snapshot, "hotel", output)

        assert resolution.timezone == "America/Denver"
        assert resolution.step == "type_default"

    def test_type_without_display_rule_uses_default(self, resolver, snapshot):
        output = {"locations": {"destination": "Madrid"}}

        assert resolver.resolve(snapshot, "event", output).timezone == "America/Phoenix"

    def test_unknown_type_falls_back(self, resolver, snapshot):
        resolution = resolver.resolve(snapshot, "spaceflight", {})

        assert resolution.timezone == "America/New_York"
        assert resolution.step == "fallback"

    def test_configured_fallback(self, snapshot):
        resolver = TimezoneResolver(TimezoneConfig(fallback="Europe/London"))
        assert resolver.resolve(snapshot, "spaceflight", None).timezone == "Europe/London"

    @pytest.mark.parametrize(
        "model_output",
        [None, {}, [], "not json", {"locations": None}, {"locations": {"origin": 42}}],
    )
    def test_never_empty(self, resolver, model_output):
        resolution = resolver.resolve(ConfigSnapshot.empty(), "private_terminal", model_output)
        assert resolution.timezone == "America/New_York"

    def test_type_rules_are_scoped(self, resolver, snapshot):
        # 'PS LAX' only exists as a private_terminal rule
        output = {"locations": {"destination": "PS LAX"}}

        resolution = resolver.resolve(snapshot, "hotel", output)

        assert resolution.step == "static_table"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_get_path(self):
        data = {"a": {"b": " value "}, "c": "", "d": 3}

        assert get_path(data, "a", "b") == "value"
        assert get_path(data, "c") is None
        assert get_path(data, "d") is None
        assert get_path(data, "a", "missing") is None
        assert get_path(None, "a") is None

    def test_match_timezone_rules_ignores_inactive(self):
        rules = [
            TimezoneRule(
                id=1,
                segment_type_name="hotel",
                location_pattern="madrid",
                timezone="Europe/Madrid",
                is_active=False,
            )
        ]
        assert match_timezone_rules(rules, "Madrid") is None

    def test_facility_scan_is_case_sensitive_for_unknown_codes(self, resolver):
        assert resolver.facility_from_body("PS BOS lounge") == "PS BOS"
        assert resolver.facility_from_body("ps the attached map") is None
        assert resolver.facility_from_body("ps atl") == "PS ATL"
        assert resolver.facility_from_body("") is None


class TestLookupLocation:
    @pytest.mark.parametrize(
        ("location", "expected"),
        [
            ("Madrid", "Europe/Madrid"),
            ("Madrid, Spain", "Europe/Madrid"),
            ("Hotel Arts Barcelona", "Europe/Madrid"),
            ("Austin-Bergstrom International", "America/Chicago"),
            ("ATL", "America/New_York"),
            ("PS LAX", "America/Los_Angeles"),
            ("London Heathrow", "Europe/London"),
        ],
    )
    def test_known_locations(self, location, expected):
        assert lookup_location(location) == expected

    @pytest.mark.parametrize("location", ["Oxford", "Camden", "Nomad Hotel", "", None, "   "])
    def test_unknown_locations(self, location):
        assert lookup_location(location) is None
