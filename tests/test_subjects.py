"""Tests for subject line variations used to re-identify emails."""

from tripmail.db.records import SubjectPattern
from tripmail.rules.subjects import subject_variations

PATTERNS = [
    SubjectPattern(
        id=1,
        name="hotel_thompson_pattern",
        email_type="hotel",
        pattern="Reservation Details for Your Upcoming Stay at Thompson Austin",
        variations=("Reservation Details for Your Upcoming Stay", "Thompson Austin"),
    ),
    SubjectPattern(
        id=2,
        name="hotel_generic",
        email_type="hotel",
        pattern="Booking Confirmed",
        variations=("Confirmed",),
    ),
]


class TestSubjectVariations:
    def test_forwarded_subject_with_matching_pattern(self):
        subject = "Fwd: Reservation Details for Your Upcoming Stay at Thompson Austin"

        assert subject_variations(subject, PATTERNS) == [
            subject,
            "Reservation Details for Your Upcoming Stay at Thompson Austin",
            "Reservation Details for Your Upcoming Stay",
            "Thompson Austin",
        ]

    def test_reply_prefix_removed(self):
        variations = subject_variations("Re: Booking Confirmed", PATTERNS)

        assert variations == ["Re: Booking Confirmed", "Booking Confirmed", "Confirmed"]

    def test_pattern_match_is_case_insensitive(self):
        variations = subject_variations("booking confirmed for june", PATTERNS)
        assert "Booking Confirmed" in variations

    def test_no_pattern_match(self):
        assert subject_variations("Your receipt", PATTERNS) == ["Your receipt"]

    def test_inactive_patterns_ignored(self):
        inactive = SubjectPattern(
            id=3, name="off", email_type="hotel", pattern="receipt", is_active=False
        )
        assert subject_variations("Your receipt", [inactive]) == ["Your receipt"]
