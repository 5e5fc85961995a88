"""Record types held by the rule store.

All records are frozen: the store hands out immutable values, and the
config cache shares the same instances across concurrent readers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

RuleType = Literal["keyword", "subject_pattern", "sender_domain", "content_pattern"]
TrustLevel = Literal["trusted", "untrusted"]
TemplateCategory = Literal["classification", "parsing"]
TimezoneSource = Literal["origin", "destination"]
PrimaryTimeField = Literal["departure", "return", "earliest_arrival"]

RULE_TYPES: frozenset[str] = frozenset(
    ("keyword", "subject_pattern", "sender_domain", "content_pattern")
)

# Older rule rows use these names for the same strategies
RULE_TYPE_ALIASES: dict[str, str] = {
    "regex": "content_pattern",
    "sender": "sender_domain",
    "subject": "subject_pattern",
}

BASE_TEMPLATE_TYPE = "base"

# PromptUsage.source for rows reporting how the model call went
OUTCOME_SOURCE = "model_outcome"


@dataclass(frozen=True)
class ClassificationRule:
    """A single classification rule scoped to a booking type."""

    id: int
    name: str
    email_type: str
    rule_type: str
    pattern: str
    priority: int = 0
    is_active: bool = True
    case_insensitive: bool = True
    description: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class SenderRule:
    """Trust information for a sender address pattern."""

    id: int
    name: str
    sender_pattern: str
    email_type: str | None = None
    trust_level: TrustLevel = "trusted"
    metadata: dict[str, Any] = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime | None = None


@dataclass(frozen=True)
class SubjectPattern:
    """Subject line used to re-identify emails of one type."""

    id: int
    name: str
    email_type: str
    pattern: str
    variations: tuple[str, ...] = ()
    is_active: bool = True


@dataclass(frozen=True)
class TimezoneRule:
    """Location substring to IANA zone mapping owned by one booking type."""

    id: int
    segment_type_name: str
    location_pattern: str
    timezone: str
    priority: int = 0
    is_active: bool = True


@dataclass(frozen=True)
class DisplayRule:
    """How a booking type is presented and which location feeds its timezone."""

    id: int
    segment_type_name: str
    primary_time_field: PrimaryTimeField = "departure"
    timezone_source: TimezoneSource = "origin"
    route_format: str = "{origin} → {destination}"
    custom_fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PromptTemplate:
    """One version of a named prompt template.

    Attributes:
        template_type: Booking type identifier, or 'base'
        self_contained: Template carries its own complete output schema and is
            used verbatim instead of being composed with the base template
        footer: Optional schema footer; on a base template, type fragments are
            inserted between `prompt` and `footer`
    """

    id: int
    name: str
    category: TemplateCategory
    template_type: str
    version: int
    prompt: str
    is_active: bool = False
    self_contained: bool = False
    footer: str | None = None
    usage_count: int = 0
    created_at: datetime | None = None


@dataclass(frozen=True)
class SegmentTypeConfig:
    """Configuration for one booking type, with its nested active rules."""

    name: str
    display_name: str
    description: str | None = None
    is_active: bool = True
    default_timezone: str | None = None
    display_config: dict[str, Any] = field(default_factory=dict)
    timezone_rules: tuple[TimezoneRule, ...] = ()
    display_rule: DisplayRule | None = None
    prompt_templates: tuple[PromptTemplate, ...] = ()


@dataclass(frozen=True)
class RuleSet:
    """Every collection the engine reads, loaded in one consistent read."""

    segment_types: tuple[SegmentTypeConfig, ...] = ()
    classification_rules: tuple[ClassificationRule, ...] = ()
    sender_rules: tuple[SenderRule, ...] = ()
    subject_patterns: tuple[SubjectPattern, ...] = ()
    prompt_templates: tuple[PromptTemplate, ...] = ()


@dataclass(frozen=True)
class PromptUsage:
    """One prompt resolution or model outcome, for analytics.

    Resolutions count as a use of the template; model outcomes annotate a use
    already counted and never bump usage counters.
    """

    template_id: int | None
    email_type: str
    success: bool
    source: str = "resolved"
    error_message: str | None = None
    response_ms: int | None = None
    token_usage: int | None = None

    @property
    def counts_as_use(self) -> bool:
        return self.source != OUTCOME_SOURCE
