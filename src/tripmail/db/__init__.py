"""Rule store for the travel email engine.

This module provides SQLite-backed storage for classification rules, sender
rules, subject patterns, segment type configuration and prompt templates.

Usage:
    from tripmail.db import SQLiteRuleStore

    store = SQLiteRuleStore("data/tripmail.db")
    await store.initialize()

    rule = await store.create_classification_rule(
        name="hotel_keyword_hotel",
        email_type="hotel",
        rule_type="keyword",
        pattern="hotel",
        priority=10,
    )
    rule_set = await store.load_all()
"""

from tripmail.db.models import SCHEMA_VERSION, init_database, verify_schema
from tripmail.db.records import (
    BASE_TEMPLATE_TYPE,
    RULE_TYPE_ALIASES,
    RULE_TYPES,
    ClassificationRule,
    DisplayRule,
    PromptTemplate,
    PromptUsage,
    RuleSet,
    SegmentTypeConfig,
    SenderRule,
    SubjectPattern,
    TimezoneRule,
)
from tripmail.db.store import RuleStore, SQLiteRuleStore, normalize_rule_type

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "RuleStore",
    "SQLiteRuleStore",
    "normalize_rule_type",
    # Records
    "BASE_TEMPLATE_TYPE",
    "RULE_TYPES",
    "RULE_TYPE_ALIASES",
    "ClassificationRule",
    "DisplayRule",
    "PromptTemplate",
    "PromptUsage",
    "RuleSet",
    "SegmentTypeConfig",
    "SenderRule",
    "SubjectPattern",
    "TimezoneRule",
]
