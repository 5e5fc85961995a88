"""Display formatting and timezone metadata for extracted bookings.

All functions return new dicts; the model output passed in is never mutated.

Usage:
    from tripmail.timezone.display import apply_timezone, format_segment

    data = format_segment(segment, model_output)
    data = apply_timezone(data, "America/New_York")
"""

from __future__ import annotations

import copy
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from tripmail.config_schema import PrivateTerminalConfig
from tripmail.core.logging import get_logger
from tripmail.timezone.resolver import get_path

if TYPE_CHECKING:
    from tripmail.db.records import SegmentTypeConfig

logger = get_logger(__name__)

# Model output datetime format
DATETIME_FORMAT = "%Y-%m-%d %H:%M"


def parse_datetime(value: str | None) -> datetime | None:
    """Parse 'YYYY-MM-DD HH:MM' (or ISO 8601) into a naive local datetime."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


def primary_time(data: dict[str, Any], field_name: str) -> str | None:
    if field_name == "departure":
        return get_path(data, "travel_dates", "departure")
    if field_name == "return":
        return get_path(data, "travel_dates", "return")
    if field_name == "earliest_arrival":
        return get_path(data, "service_details", "earliest_arrival") or get_path(
            data, "travel_dates", "departure"
        )
    return None


def format_route(route_format: str, data: dict[str, Any]) -> str:
    route = route_format
    origin = get_path(data, "locations", "origin")
    destination = get_path(data, "locations", "destination")
    if origin:
        route = route.replace("{origin}", origin)
    if destination:
        route = route.replace("{destination}", destination)
    return route


def format_segment(segment: SegmentTypeConfig | None, data: Any) -> Any:
    """Attach display fields under `_formatted`.

    Types without configuration or without a DisplayRule pass through
    unchanged.
    """
    if segment is None or segment.display_rule is None or not isinstance(data, dict):
        return data

    rule = segment.display_rule
    result = dict(data)
    result["_formatted"] = {
        "primary_time": primary_time(data, rule.primary_time_field),
        "route": format_route(rule.route_format, data),
        "display_name": segment.display_name,
        "timezone_source": rule.timezone_source,
    }
    if rule.custom_fields:
        result["_formatted"]["custom_fields"] = dict(rule.custom_fields)
    return result


def apply_timezone(data: Any, timezone: str, now: datetime | None = None) -> dict[str, Any]:
    """Record the resolved timezone under `_metadata`."""
    result = dict(data) if isinstance(data, dict) else {}
    metadata = dict(result.get("_metadata") or {})
    metadata["inferred_timezone"] = timezone
    metadata["processed_at"] = (now or datetime.now(UTC)).isoformat()
    result["_metadata"] = metadata
    return result


def apply_arrival_window(data: Any, config: PrivateTerminalConfig | None = None) -> Any:
    """Compute the private-terminal earliest arrival from the associated flight.

    Earliest arrival is the flight departure minus `arrival_lead_minutes`.
    A model-supplied `service_details.earliest_arrival` is kept when it lies
    between the configured minimum and maximum minutes before departure;
    otherwise it is replaced. Outputs without a parseable flight departure
    are returned unchanged.
    """
    config = config or PrivateTerminalConfig()
    if not isinstance(data, dict):
        return data

    departure = parse_datetime(get_path(data, "associated_flight", "departure_datetime"))
    if departure is None:
        return data

    result = copy.deepcopy(data)
    details = result.get("service_details")
    if not isinstance(details, dict):
        details = {}
        result["service_details"] = details

    computed = departure - timedelta(minutes=config.arrival_lead_minutes)
    supplied = parse_datetime(get_path(data, "service_details", "earliest_arrival"))

    source = "computed"
    earliest = computed
    if supplied is not None:
        minutes_before = (departure - supplied).total_seconds() / 60
        if (
            config.min_arrival_minutes_before_flight
            <= minutes_before
            <= config.max_arrival_minutes_before_flight
        ):
            source = "model"
            earliest = supplied
        else:
            logger.warning(
                "arrival_window_replaced",
                supplied=get_path(data, "service_details", "earliest_arrival"),
                computed=computed.strftime(DATETIME_FORMAT),
                minutes_before_flight=round(minutes_before),
            )

    details["earliest_arrival"] = earliest.strftime(DATETIME_FORMAT)
    details["arrival_window_source"] = source

    travel_dates = result.get("travel_dates")
    if not isinstance(travel_dates, dict):
        travel_dates = {}
        result["travel_dates"] = travel_dates
    if not get_path(travel_dates, "departure"):
        travel_dates["departure"] = details["earliest_arrival"]

    return result
