"""Test doubles and record factories shared by the test modules."""

from pathlib import Path
from typing import Any

from tripmail.db.records import ClassificationRule, PromptTemplate, RuleSet

REPO_ROOT = Path(__file__).resolve().parent.parent
SEED_PATH = REPO_ROOT / "config" / "seed.yaml"


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStore:
    """In-memory rule store returning a fixed RuleSet.

    Set `error` to make load_all raise; `loads` counts load_all calls.
    """

    def __init__(self, rule_set: RuleSet | None = None):
        self.rule_set = rule_set or RuleSet()
        self.error: Exception | None = None
        self.loads = 0
        self.usage: list[Any] = []
        self.listeners: list[Any] = []

    async def load_all(self) -> RuleSet:
        self.loads += 1
        if self.error is not None:
            raise self.error
        return self.rule_set

    async def record_prompt_usage(self, usage: Any) -> None:
        self.usage.append(usage)

    def subscribe(self, listener: Any) -> None:
        self.listeners.append(listener)

    def notify(self) -> None:
        for listener in self.listeners:
            listener()


def make_rule(
    name: str,
    email_type: str,
    pattern: str,
    rule_type: str = "keyword",
    priority: int = 0,
    rule_id: int = 1,
    is_active: bool = True,
    case_insensitive: bool = True,
) -> ClassificationRule:
    """Create a ClassificationRule for testing."""
    return ClassificationRule(
        id=rule_id,
        name=name,
        email_type=email_type,
        rule_type=rule_type,
        pattern=pattern,
        priority=priority,
        is_active=is_active,
        case_insensitive=case_insensitive,
    )


def make_template(
    template_id: int,
    template_type: str,
    prompt: str,
    version: int = 1,
    category: str = "parsing",
    self_contained: bool = False,
    footer: str | None = None,
    is_active: bool = True,
) -> PromptTemplate:
    """Create a PromptTemplate for testing."""
    return PromptTemplate(
        id=template_id,
        name=f"{category}_{template_type}",
        category=category,
        template_type=template_type,
        version=version,
        prompt=prompt,
        is_active=is_active,
        self_contained=self_contained,
        footer=footer,
    )


