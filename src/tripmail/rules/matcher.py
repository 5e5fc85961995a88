"""Priority-ordered rule matcher for booking type classification.

Each classification rule is compiled once per snapshot into one of four
match strategies. The matcher evaluates strategies in descending priority
(ties keep store order) and returns the first matching rule's booking type.

All regex operations use the `regex` library with a timeout on every match
call, because content_pattern rules are admin-authored and run against
untrusted email bodies.

Usage:
    from tripmail.rules.matcher import EmailInput, RuleMatcher

    matcher = RuleMatcher(default_label="other")
    result = matcher.classify(email, snapshot.rules)
    print(result.label, result.rule_name)
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

import regex

from tripmail.core.errors import InvalidRulePattern
from tripmail.core.logging import get_logger
from tripmail.db.records import RULE_TYPE_ALIASES, ClassificationRule

if TYPE_CHECKING:
    from tripmail.db.records import SenderRule

logger = get_logger(__name__)

# Regex timeout in seconds for content_pattern rules
REGEX_TIMEOUT = 1.0

DEFAULT_LABEL = "other"


@dataclass(frozen=True)
class EmailInput:
    """Raw email fields supplied by the ingestion pipeline."""

    body: str = ""
    subject: str = ""
    from_address: str = ""


@dataclass(frozen=True)
class MatchSurfaces:
    """The three search surfaces, raw and lower-cased.

    Built once per email and shared by every rule evaluation.
    """

    body: str
    subject: str
    sender: str
    body_lower: str
    subject_lower: str
    sender_lower: str

    @classmethod
    def from_email(cls, email: EmailInput) -> MatchSurfaces:
        body = email.body or ""
        subject = email.subject or ""
        sender = email.from_address or ""
        return cls(
            body=body,
            subject=subject,
            sender=sender,
            body_lower=body.lower(),
            subject_lower=subject.lower(),
            sender_lower=sender.lower(),
        )

    def text(self, surface: str, case_insensitive: bool) -> str:
        if case_insensitive:
            return getattr(self, f"{surface}_lower")
        return getattr(self, surface)


@dataclass(frozen=True)
class SubstringMatcher:
    """Containment test against one surface.

    Attributes:
        pattern: Needle, already lower-cased for case-insensitive rules
        case_insensitive: Whether the lower-cased surface is searched
    """

    surface: ClassVar[str] = "body"
    reason: ClassVar[str] = "body contains"

    pattern: str
    case_insensitive: bool = True

    @classmethod
    def build(cls, pattern: str, case_insensitive: bool) -> SubstringMatcher:
        return cls(pattern.lower() if case_insensitive else pattern, case_insensitive)

    def matches(self, surfaces: MatchSurfaces) -> bool:
        return self.pattern in surfaces.text(self.surface, self.case_insensitive)

    def describe(self) -> str:
        return f"{self.reason} '{self.pattern}'"


class KeywordMatcher(SubstringMatcher):
    """keyword: body contains the pattern."""

    surface = "body"
    reason = "body contains keyword"


class SubjectMatcher(SubstringMatcher):
    """subject_pattern: subject contains the pattern."""

    surface = "subject"
    reason = "subject contains"


class SenderMatcher(SubstringMatcher):
    """sender_domain: sender address contains the pattern."""

    surface = "sender"
    reason = "sender contains"


@dataclass(frozen=True)
class ContentPatternMatcher:
    """content_pattern: regex search over the body.

    When `compiled` is None the pattern failed to compile and the rule
    degrades to substring containment.
    """

    pattern: str
    case_insensitive: bool = True
    compiled: regex.Pattern | None = None
    rule_name: str = ""

    @classmethod
    def build(
        cls, pattern: str, case_insensitive: bool, rule_name: str = ""
    ) -> ContentPatternMatcher:
        try:
            compiled = compile_content_pattern(pattern, case_insensitive, rule_name)
        except InvalidRulePattern as e:
            logger.warning(
                "invalid_rule_pattern",
                rule=e.rule_name,
                pattern=e.pattern,
                error=str(e),
                fallback="substring",
            )
            return cls(
                pattern=pattern.lower() if case_insensitive else pattern,
                case_insensitive=case_insensitive,
                compiled=None,
                rule_name=rule_name,
            )
        return cls(
            pattern=pattern,
            case_insensitive=case_insensitive,
            compiled=compiled,
            rule_name=rule_name,
        )

    def matches(self, surfaces: MatchSurfaces) -> bool:
        if self.compiled is None:
            return self.pattern in surfaces.text("body", self.case_insensitive)
        try:
            return self.compiled.search(surfaces.body, timeout=REGEX_TIMEOUT) is not None
        except TimeoutError:
            logger.warning("rule_pattern_timeout", rule=self.rule_name, pattern=self.pattern)
            return False

    def describe(self) -> str:
        if self.compiled is None:
            return f"body contains '{self.pattern}' (invalid regex)"
        return f"body matches /{self.pattern}/"


MatchStrategy = KeywordMatcher | SubjectMatcher | SenderMatcher | ContentPatternMatcher

_SUBSTRING_STRATEGIES: dict[str, type[SubstringMatcher]] = {
    "keyword": KeywordMatcher,
    "subject_pattern": SubjectMatcher,
    "sender_domain": SenderMatcher,
}


def compile_content_pattern(
    pattern: str, case_insensitive: bool, rule_name: str = ""
) -> regex.Pattern:
    """Compile a content_pattern rule.

    Raises:
        InvalidRulePattern: If the pattern is not a valid regular expression
    """
    flags = regex.IGNORECASE if case_insensitive else 0
    try:
        return regex.compile(pattern, flags)
    except regex.error as e:
        raise InvalidRulePattern(
            f"Rule '{rule_name}' has an invalid regex: {e}", rule_name, pattern
        ) from e


@dataclass(frozen=True)
class CompiledRule:
    """A classification rule paired with its match strategy."""

    rule: ClassificationRule
    strategy: MatchStrategy

    @property
    def name(self) -> str:
        return self.rule.name

    @property
    def email_type(self) -> str:
        return self.rule.email_type


def build_strategy(rule: ClassificationRule) -> MatchStrategy | None:
    """Build the match strategy for one rule, or None for an unknown rule type."""
    rule_type = RULE_TYPE_ALIASES.get(rule.rule_type, rule.rule_type)
    if rule_type == "content_pattern":
        return ContentPatternMatcher.build(rule.pattern, rule.case_insensitive, rule.name)
    strategy_cls = _SUBSTRING_STRATEGIES.get(rule_type)
    if strategy_cls is None:
        return None
    return strategy_cls.build(rule.pattern, rule.case_insensitive)


def compile_rules(rules: Iterable[ClassificationRule]) -> tuple[CompiledRule, ...]:
    """Compile active rules into evaluation order.

    Inactive rules and rules with an unknown type are dropped. The sort is
    stable, so rules with equal priority keep the order they were given in.
    """
    compiled = []
    for rule in rules:
        if not rule.is_active:
            continue
        if not rule.pattern:
            logger.warning("empty_rule_pattern", rule=rule.name)
            continue
        strategy = build_strategy(rule)
        if strategy is None:
            logger.warning("unknown_rule_type", rule=rule.name, rule_type=rule.rule_type)
            continue
        compiled.append(CompiledRule(rule=rule, strategy=strategy))

    compiled.sort(key=lambda c: c.rule.priority, reverse=True)
    return tuple(compiled)


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying one email.

    Attributes:
        label: Booking type label (the default label when nothing matched)
        rule_name: Name of the winning rule, None for the default label
        match_reason: Human-readable explanation of the match
        sender_trust: Trust level of the sender if a sender rule covers it
        degraded: True when the rule store was unavailable
    """

    label: str
    rule_name: str | None = None
    match_reason: str | None = None
    sender_trust: str | None = None
    degraded: bool = False


class RuleMatcher:
    """Evaluates an email against compiled rules; first match wins."""

    def __init__(self, default_label: str = DEFAULT_LABEL):
        self.default_label = default_label

    def classify(
        self,
        email: EmailInput,
        rules: Sequence[CompiledRule],
        sender_rule: SenderRule | None = None,
    ) -> ClassificationResult:
        """Classify an email.

        Args:
            email: Raw email fields
            rules: Compiled rules in evaluation order
            sender_rule: Sender rule covering the from address, if any

        Returns:
            ClassificationResult with the first matching rule's booking type,
            or the default label if no rule matched
        """
        surfaces = MatchSurfaces.from_email(email)
        sender_trust = sender_rule.trust_level if sender_rule else None

        for compiled in rules:
            if compiled.strategy.matches(surfaces):
                logger.debug(
                    "classification_rule_matched",
                    rule=compiled.name,
                    email_type=compiled.email_type,
                    priority=compiled.rule.priority,
                )
                return ClassificationResult(
                    label=compiled.email_type,
                    rule_name=compiled.name,
                    match_reason=f"Rule '{compiled.name}': {compiled.strategy.describe()}",
                    sender_trust=sender_trust,
                )

        return ClassificationResult(label=self.default_label, sender_trust=sender_trust)
