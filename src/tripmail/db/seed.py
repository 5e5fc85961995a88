"""Seed file loading and rule store population.

A seed file is YAML validated by the Pydantic models below. Seeding is
repeatable: items whose name already exists are skipped and counted, so
running it twice leaves the store unchanged.

Usage:
    from tripmail.db.seed import load_seed_file, seed_store

    seed = load_seed_file(Path("config/seed.yaml"))
    report = await seed_store(store, seed)
    print(report.created, report.skipped)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from tripmail.config import format_validation_errors, load_yaml
from tripmail.config_schema import validate_iana_zone
from tripmail.core.errors import ConfigLoadError, DatabaseError, SeedError
from tripmail.core.logging import get_logger
from tripmail.db.store import SQLiteRuleStore, normalize_rule_type

logger = get_logger(__name__)

DEFAULT_SEED_PATH = Path("config/seed.yaml")


# =============================================================================
# Seed file schema
# =============================================================================


class DisplayRuleSeed(BaseModel):
    primary_time_field: Literal["departure", "return", "earliest_arrival"] = "departure"
    timezone_source: Literal["origin", "destination"] = "origin"
    route_format: str = "{origin} → {destination}"
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class TimezoneRuleSeed(BaseModel):
    location_pattern: str = Field(min_length=1)
    timezone: str
    priority: int = 0

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return validate_iana_zone(v)


class SegmentTypeSeed(BaseModel):
    """One booking type with its display and timezone rules."""

    name: str = Field(min_length=1)
    display_name: str
    description: str | None = None
    default_timezone: str | None = None
    display_config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    display_rule: DisplayRuleSeed | None = None
    timezone_rules: list[TimezoneRuleSeed] = Field(default_factory=list)

    @field_validator("default_timezone")
    @classmethod
    def validate_default_timezone(cls, v: str | None) -> str | None:
        return validate_iana_zone(v) if v is not None else None


class ClassificationRuleSeed(BaseModel):
    name: str = Field(min_length=1)
    email_type: str
    rule_type: str
    pattern: str = Field(min_length=1)
    priority: int = 0
    case_insensitive: bool = True
    is_active: bool = True
    description: str | None = None

    @field_validator("rule_type")
    @classmethod
    def validate_rule_type(cls, v: str) -> str:
        return normalize_rule_type(v)


class SenderRuleSeed(BaseModel):
    name: str = Field(min_length=1)
    sender_pattern: str = Field(min_length=1)
    email_type: str | None = None
    trust_level: Literal["trusted", "untrusted"] = "trusted"
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubjectPatternSeed(BaseModel):
    name: str = Field(min_length=1)
    email_type: str
    pattern: str = Field(min_length=1)
    variations: list[str] = Field(default_factory=list)


class PromptTemplateSeed(BaseModel):
    name: str = Field(min_length=1)
    category: Literal["classification", "parsing"]
    template_type: str
    prompt: str = Field(min_length=1)
    footer: str | None = None
    self_contained: bool = False
    is_active: bool = True


class SeedData(BaseModel):
    """Root schema of a seed file."""

    segment_types: list[SegmentTypeSeed] = Field(default_factory=list)
    classification_rules: list[ClassificationRuleSeed] = Field(default_factory=list)
    sender_rules: list[SenderRuleSeed] = Field(default_factory=list)
    subject_patterns: list[SubjectPatternSeed] = Field(default_factory=list)
    prompt_templates: list[PromptTemplateSeed] = Field(default_factory=list)


def load_seed_file(path: Path = DEFAULT_SEED_PATH) -> SeedData:
    """Load and validate a seed file.

    Raises:
        SeedError: If the file cannot be read or fails validation
    """
    try:
        data = load_yaml(path)
    except ConfigLoadError as e:
        raise SeedError(f"Cannot load seed file {path}: {e}") from e

    try:
        return SeedData(**data)
    except ValidationError as e:
        raise SeedError(
            f"Seed file validation failed for {path}:\n{format_validation_errors(e)}"
        ) from e


# =============================================================================
# Seeding
# =============================================================================


@dataclass
class SeedReport:
    """Counts of created and skipped items per collection."""

    created: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)

    def add(self, collection: str, created: bool) -> None:
        counts = self.created if created else self.skipped
        counts[collection] = counts.get(collection, 0) + 1

    @property
    def total_created(self) -> int:
        return sum(self.created.values())


async def _seed_segment_types(
    store: SQLiteRuleStore, seeds: list[SegmentTypeSeed], report: SeedReport
) -> None:
    for seed in seeds:
        existing = await store.get_segment_type_config(seed.name)
        await store.upsert_segment_type(
            name=seed.name,
            display_name=seed.display_name,
            description=seed.description,
            default_timezone=seed.default_timezone,
            display_config=seed.display_config,
            is_active=seed.is_active,
        )
        report.add("segment_types", existing is None)

        if seed.display_rule is not None:
            await store.set_display_rule(
                seed.name,
                primary_time_field=seed.display_rule.primary_time_field,
                timezone_source=seed.display_rule.timezone_source,
                route_format=seed.display_rule.route_format,
                custom_fields=seed.display_rule.custom_fields,
            )

        known = set()
        if existing is not None:
            known = {r.location_pattern.lower() for r in existing.timezone_rules}
        for rule in seed.timezone_rules:
            if rule.location_pattern.lower() in known:
                report.add("timezone_rules", False)
                continue
            await store.add_timezone_rule(
                seed.name, rule.location_pattern, rule.timezone, rule.priority
            )
            report.add("timezone_rules", True)


async def seed_store(store: SQLiteRuleStore, seed: SeedData) -> SeedReport:
    """Populate a rule store from seed data.

    Segment types are upserted. Rules and templates that already exist by
    name are skipped.

    Raises:
        DatabaseError: If a segment type or display rule cannot be written
    """
    report = SeedReport()

    await _seed_segment_types(store, seed.segment_types, report)

    for rule in seed.classification_rules:
        try:
            await store.create_classification_rule(
                name=rule.name,
                email_type=rule.email_type,
                rule_type=rule.rule_type,
                pattern=rule.pattern,
                priority=rule.priority,
                case_insensitive=rule.case_insensitive,
                is_active=rule.is_active,
                description=rule.description,
            )
            report.add("classification_rules", True)
        except DatabaseError as e:
            logger.warning(
                "seed_item_skipped", collection="classification_rules", name=rule.name, error=str(e)
            )
            report.add("classification_rules", False)

    for sender in seed.sender_rules:
        try:
            await store.create_sender_rule(
                name=sender.name,
                sender_pattern=sender.sender_pattern,
                email_type=sender.email_type,
                trust_level=sender.trust_level,
                metadata=sender.metadata,
            )
            report.add("sender_rules", True)
        except DatabaseError as e:
            logger.warning(
                "seed_item_skipped", collection="sender_rules", name=sender.name, error=str(e)
            )
            report.add("sender_rules", False)

    for pattern in seed.subject_patterns:
        try:
            await store.create_subject_pattern(
                name=pattern.name,
                email_type=pattern.email_type,
                pattern=pattern.pattern,
                variations=pattern.variations,
            )
            report.add("subject_patterns", True)
        except DatabaseError as e:
            logger.warning(
                "seed_item_skipped", collection="subject_patterns", name=pattern.name, error=str(e)
            )
            report.add("subject_patterns", False)

    for template in seed.prompt_templates:
        if await store.list_prompt_template_versions(template.name):
            report.add("prompt_templates", False)
            continue
        await store.create_prompt_template(
            name=template.name,
            category=template.category,
            template_type=template.template_type,
            prompt=template.prompt,
            footer=template.footer,
            self_contained=template.self_contained,
            activate=template.is_active,
        )
        report.add("prompt_templates", True)

    logger.info("rule_store_seeded", created=report.created, skipped=report.skipped)
    return report
