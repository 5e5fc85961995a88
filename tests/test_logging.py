"""Tests for the structlog processors and logging setup."""

import logging

import pytest

from tripmail.core.logging import (
    add_correlation_id,
    configure_logging,
    get_correlation_id,
    redact_email_fields,
    redact_header,
    set_correlation_id,
)


@pytest.fixture
def correlation():
    yield
    set_correlation_id(None)


class TestCorrelationId:
    def test_added_when_set(self, correlation):
        set_correlation_id("msg-42")

        event = add_correlation_id(None, "info", {"event": "email_classified"})

        assert event["email_id"] == "msg-42"
        assert get_correlation_id() == "msg-42"

    def test_absent_when_cleared(self, correlation):
        set_correlation_id(None)

        event = add_correlation_id(None, "info", {"event": "email_classified"})

        assert "email_id" not in event

    def test_explicit_email_id_kept(self, correlation):
        set_correlation_id("msg-42")

        event = add_correlation_id(None, "info", {"email_id": "msg-7"})

        assert event["email_id"] == "msg-7"


class TestRedaction:
    def test_body_reduced_to_length(self):
        event = redact_email_fields(None, "info", {"body": "x" * 1200, "email_type": "hotel"})

        assert event == {"body": "<1200 chars>", "email_type": "hotel"}

    def test_header_prefix_and_stable_hash(self):
        subject = "Reservation Details for Your Upcoming Stay at Thompson Austin"

        first = redact_email_fields(None, "info", {"subject": subject})["subject"]
        second = redact_header(subject)

        assert first == second
        assert first.startswith("Reservation Details for ...")
        assert "Thompson" not in first
        assert first.endswith(")")

    def test_short_header_stays_visible(self):
        redacted = redact_header("ps@reserveps.com")

        assert redacted.startswith("ps@reserveps.com (h:")

    def test_empty_and_non_string_values_untouched(self):
        event = redact_email_fields(None, "info", {"sender": "", "body": None, "rules": 3})

        assert event == {"sender": "", "body": None, "rules": 3}


class TestConfigureLogging:
    def test_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging("verbose")

    def test_quiets_aiosqlite_unless_debug(self):
        configure_logging("info", json_output=True)
        assert logging.getLogger("aiosqlite").level == logging.WARNING

        configure_logging("DEBUG", json_output=False)
        assert logging.getLogger("aiosqlite").level == logging.DEBUG
