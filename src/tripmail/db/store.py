"""Rule store with point queries and administrative writes.

This module provides the `RuleStore` protocol the engine reads from and the
`SQLiteRuleStore` implementation built on aiosqlite. The engine never writes
rules; administrative writes live here so they can notify subscribers
(the config cache) synchronously after each commit.

Usage:
    from tripmail.db.store import SQLiteRuleStore

    store = SQLiteRuleStore("data/tripmail.db")
    await store.initialize()

    # Hot path (normally through ConfigCache)
    rule_set = await store.load_all()

    # Administrative writes
    await store.create_classification_rule(
        name="ps_sender_reserveps",
        email_type="private_terminal",
        rule_type="sender_domain",
        pattern="@reserveps.com",
        priority=25,
    )
    template = await store.create_prompt_template(
        name="email_parsing_hotel", category="parsing", template_type="hotel", prompt="..."
    )
    await store.activate_prompt_template(template.id)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from tripmail.config_schema import validate_iana_zone
from tripmail.core.errors import DatabaseError, StoreUnavailable, TemplateNotFoundError
from tripmail.core.logging import get_logger
from tripmail.db.models import init_database
from tripmail.db.records import (
    OUTCOME_SOURCE,
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

logger = get_logger(__name__)

ChangeListener = Callable[[], None]


class RuleStore(Protocol):
    """Read contract the engine depends on.

    Any backend (SQLite, a document store, an in-memory fixture) satisfies the
    engine as long as it implements these operations. Read failures must
    surface as StoreUnavailable.
    """

    async def load_all(self) -> RuleSet: ...

    async def list_active_classification_rules(self) -> list[ClassificationRule]: ...

    async def find_sender_rule(self, address: str) -> SenderRule | None: ...

    async def get_segment_type_config(self, name: str) -> SegmentTypeConfig | None: ...

    async def get_active_prompt_template(
        self, category: str, template_type: str
    ) -> PromptTemplate | None: ...

    async def record_prompt_usage(self, usage: PromptUsage) -> None: ...

    def subscribe(self, listener: ChangeListener) -> None: ...


def normalize_rule_type(rule_type: str) -> str:
    """Map legacy rule type names onto the four match strategies.

    Raises:
        ValueError: If the rule type is not recognised
    """
    normalized = RULE_TYPE_ALIASES.get(rule_type, rule_type)
    if normalized not in RULE_TYPES:
        raise ValueError(
            f"Unknown rule type '{rule_type}'. Expected one of: {', '.join(sorted(RULE_TYPES))}"
        )
    return normalized


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _load_json(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column", value=value[:80])
        return default


class SQLiteRuleStore:
    """aiosqlite implementation of the rule store.

    Attributes:
        db_path: Path to the SQLite database file
        _listeners: Callables invoked after every committed write
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False
        self._listeners: list[ChangeListener] = []

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed."""
        await init_database(self.db_path)
        self._initialized = True

    def subscribe(self, listener: ChangeListener) -> None:
        """Register a callable to run after every committed write."""
        self._listeners.append(listener)

    def _notify_change(self, change: str) -> None:
        logger.debug("rule_store_changed", change=change, listeners=len(self._listeners))
        for listener in self._listeners:
            listener()

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Usage:
            async with self._db() as db:
                await db.execute(...)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Row conversion
    # =========================================================================

    @staticmethod
    def _row_to_classification_rule(row: aiosqlite.Row) -> ClassificationRule:
        return ClassificationRule(
            id=row["id"],
            name=row["name"],
            email_type=row["email_type"],
            rule_type=row["rule_type"],
            pattern=row["pattern"],
            priority=row["priority"] or 0,
            is_active=bool(row["is_active"]),
            case_insensitive=bool(row["case_insensitive"]),
            description=row["description"],
            created_at=_parse_timestamp(row["created_at"]),
        )

    @staticmethod
    def _row_to_sender_rule(row: aiosqlite.Row) -> SenderRule:
        return SenderRule(
            id=row["id"],
            name=row["name"],
            sender_pattern=row["sender_pattern"],
            email_type=row["email_type"],
            trust_level=row["trust_level"] or "trusted",
            metadata=_load_json(row["metadata_json"], {}),
            is_active=bool(row["is_active"]),
            created_at=_parse_timestamp(row["created_at"]),
        )

    @staticmethod
    def _row_to_subject_pattern(row: aiosqlite.Row) -> SubjectPattern:
        return SubjectPattern(
            id=row["id"],
            name=row["name"],
            email_type=row["email_type"],
            pattern=row["pattern"],
            variations=tuple(_load_json(row["variations_json"], [])),
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _row_to_timezone_rule(row: aiosqlite.Row) -> TimezoneRule:
        return TimezoneRule(
            id=row["id"],
            segment_type_name=row["segment_type_name"],
            location_pattern=row["location_pattern"],
            timezone=row["timezone"],
            priority=row["priority"] or 0,
            is_active=bool(row["is_active"]),
        )

    @staticmethod
    def _row_to_display_rule(row: aiosqlite.Row) -> DisplayRule:
        return DisplayRule(
            id=row["id"],
            segment_type_name=row["segment_type_name"],
            primary_time_field=row["primary_time_field"] or "departure",
            timezone_source=row["timezone_source"] or "origin",
            route_format=row["route_format"] or "{origin} → {destination}",
            custom_fields=_load_json(row["custom_fields_json"], {}),
        )

    @staticmethod
    def _row_to_prompt_template(row: aiosqlite.Row) -> PromptTemplate:
        return PromptTemplate(
            id=row["id"],
            name=row["name"],
            category=row["category"],
            template_type=row["type"],
            version=row["version"],
            prompt=row["prompt"],
            is_active=bool(row["is_active"]),
            self_contained=bool(row["self_contained"]),
            footer=row["footer"],
            usage_count=row["usage_count"] or 0,
            created_at=_parse_timestamp(row["created_at"]),
        )

    @staticmethod
    def _build_segment_type(
        row: aiosqlite.Row,
        timezone_rules: list[TimezoneRule],
        display_rule: DisplayRule | None,
        templates: list[PromptTemplate],
    ) -> SegmentTypeConfig:
        return SegmentTypeConfig(
            name=row["name"],
            display_name=row["display_name"],
            description=row["description"],
            is_active=bool(row["is_active"]),
            default_timezone=row["default_timezone"],
            display_config=_load_json(row["display_config_json"], {}),
            timezone_rules=tuple(timezone_rules),
            display_rule=display_rule,
            prompt_templates=tuple(templates),
        )

    # =========================================================================
    # Read operations (hot path; failures surface as StoreUnavailable)
    # =========================================================================

    async def load_all(self) -> RuleSet:
        """Load every collection the engine reads inside one read transaction.

        Returns:
            RuleSet with active segment types (and their nested rules), active
            classification rules, active sender rules (most recent first),
            active subject patterns, and active prompt templates.

        Raises:
            StoreUnavailable: If the database cannot be read
        """
        try:
            async with self._db() as db:
                # One read transaction so the collections agree with each other
                await db.execute("BEGIN")
                try:
                    cursor = await db.execute(
                        "SELECT * FROM classification_rules WHERE is_active = 1 "
                        "ORDER BY priority DESC, id ASC"
                    )
                    rules = [self._row_to_classification_rule(r) for r in await cursor.fetchall()]

                    cursor = await db.execute(
                        "SELECT * FROM sender_rules WHERE is_active = 1 "
                        "ORDER BY created_at DESC, id DESC"
                    )
                    senders = [self._row_to_sender_rule(r) for r in await cursor.fetchall()]

                    cursor = await db.execute(
                        "SELECT * FROM subject_patterns WHERE is_active = 1 ORDER BY id ASC"
                    )
                    subjects = [self._row_to_subject_pattern(r) for r in await cursor.fetchall()]

                    cursor = await db.execute(
                        "SELECT * FROM prompt_templates WHERE is_active = 1 "
                        "ORDER BY category, type, version DESC, id DESC"
                    )
                    templates = [self._row_to_prompt_template(r) for r in await cursor.fetchall()]

                    cursor = await db.execute(
                        "SELECT * FROM timezone_rules WHERE is_active = 1 "
                        "ORDER BY segment_type_name, priority DESC, id ASC"
                    )
                    tz_rules = [self._row_to_timezone_rule(r) for r in await cursor.fetchall()]

                    cursor = await db.execute("SELECT * FROM display_rules")
                    display_rules = {
                        r["segment_type_name"]: self._row_to_display_rule(r)
                        for r in await cursor.fetchall()
                    }

                    cursor = await db.execute(
                        "SELECT * FROM segment_types WHERE is_active = 1 ORDER BY name"
                    )
                    type_rows = await cursor.fetchall()
                finally:
                    await db.rollback()

            segment_types = []
            for row in type_rows:
                name = row["name"]
                segment_types.append(
                    self._build_segment_type(
                        row,
                        [r for r in tz_rules if r.segment_type_name == name],
                        display_rules.get(name),
                        [t for t in templates if t.template_type == name],
                    )
                )

            return RuleSet(
                segment_types=tuple(segment_types),
                classification_rules=tuple(rules),
                sender_rules=tuple(senders),
                subject_patterns=tuple(subjects),
                prompt_templates=tuple(templates),
            )

        except aiosqlite.Error as e:
            logger.error("Failed to load rule set", db_path=str(self.db_path), error=str(e))
            raise StoreUnavailable(f"Failed to load rule set: {e}", operation="load_all") from e

    async def list_active_classification_rules(self) -> list[ClassificationRule]:
        """Return active classification rules, highest priority first.

        Raises:
            StoreUnavailable: If the database cannot be read
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM classification_rules WHERE is_active = 1 "
                    "ORDER BY priority DESC, id ASC"
                )
                return [self._row_to_classification_rule(r) for r in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list classification rules", error=str(e))
            raise StoreUnavailable(
                f"Failed to list classification rules: {e}",
                operation="list_active_classification_rules",
            ) from e

    async def find_sender_rule(self, address: str) -> SenderRule | None:
        """Find the most recently created sender rule matching an address.

        A rule matches when its sender_pattern is a case-insensitive
        substring of the address.

        Raises:
            StoreUnavailable: If the database cannot be read
        """
        address_lower = address.lower()
        for rule in await self.list_sender_rules():
            if rule.sender_pattern.lower() in address_lower:
                return rule
        return None

    async def list_sender_rules(self, trust_level: str | None = None) -> list[SenderRule]:
        """List active sender rules, most recently created first.

        Args:
            trust_level: Only return rules with this trust level

        Raises:
            StoreUnavailable: If the database cannot be read
        """
        query = "SELECT * FROM sender_rules WHERE is_active = 1"
        params: list[Any] = []
        if trust_level is not None:
            query += " AND trust_level = ?"
            params.append(trust_level)
        query += " ORDER BY created_at DESC, id DESC"

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                return [self._row_to_sender_rule(r) for r in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list sender rules", trust_level=trust_level, error=str(e))
            raise StoreUnavailable(
                f"Failed to list sender rules: {e}", operation="list_sender_rules"
            ) from e

    async def list_subject_patterns(self, email_type: str) -> list[SubjectPattern]:
        """List active subject patterns for one booking type.

        Raises:
            StoreUnavailable: If the database cannot be read
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM subject_patterns WHERE email_type = ? AND is_active = 1 "
                    "ORDER BY id ASC",
                    (email_type,),
                )
                return [self._row_to_subject_pattern(r) for r in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list subject patterns", email_type=email_type, error=str(e))
            raise StoreUnavailable(
                f"Failed to list subject patterns: {e}", operation="list_subject_patterns"
            ) from e

    async def get_segment_type_config(self, name: str) -> SegmentTypeConfig | None:
        """Get one segment type with its active timezone rules, display rule and templates.

        Raises:
            StoreUnavailable: If the database cannot be read
        """
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM segment_types WHERE name = ?", (name,))
                row = await cursor.fetchone()
                if not row:
                    return None

                cursor = await db.execute(
                    "SELECT * FROM timezone_rules WHERE segment_type_name = ? AND is_active = 1 "
                    "ORDER BY priority DESC, id ASC",
                    (name,),
                )
                tz_rules = [self._row_to_timezone_rule(r) for r in await cursor.fetchall()]

                cursor = await db.execute(
                    "SELECT * FROM display_rules WHERE segment_type_name = ?", (name,)
                )
                display_row = await cursor.fetchone()

                cursor = await db.execute(
                    "SELECT * FROM prompt_templates WHERE type = ? AND is_active = 1 "
                    "ORDER BY category, version DESC, id DESC",
                    (name,),
                )
                templates = [self._row_to_prompt_template(r) for r in await cursor.fetchall()]

                return self._build_segment_type(
                    row,
                    tz_rules,
                    self._row_to_display_rule(display_row) if display_row else None,
                    templates,
                )

        except aiosqlite.Error as e:
            logger.error("Failed to get segment type", name=name, error=str(e))
            raise StoreUnavailable(
                f"Failed to get segment type {name}: {e}", operation="get_segment_type_config"
            ) from e

    async def get_active_prompt_template(
        self, category: str, template_type: str
    ) -> PromptTemplate | None:
        """Get the active template for (category, type).

        If more than one version is active the highest version wins and a
        warning is logged.

        Raises:
            StoreUnavailable: If the database cannot be read
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM prompt_templates "
                    "WHERE category = ? AND type = ? AND is_active = 1 "
                    "ORDER BY version DESC, id DESC",
                    (category, template_type),
                )
                rows = await cursor.fetchall()

        except aiosqlite.Error as e:
            logger.error(
                "Failed to get prompt template",
                category=category,
                template_type=template_type,
                error=str(e),
            )
            raise StoreUnavailable(
                f"Failed to get prompt template ({category}, {template_type}): {e}",
                operation="get_active_prompt_template",
            ) from e

        if not rows:
            return None
        if len(rows) > 1:
            logger.warning(
                "ambiguous_active_template",
                category=category,
                template_type=template_type,
                versions=[r["version"] for r in rows],
            )
        return self._row_to_prompt_template(rows[0])

    async def list_prompt_template_versions(self, name: str) -> list[PromptTemplate]:
        """List every version of a named template, newest first.

        Raises:
            StoreUnavailable: If the database cannot be read
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM prompt_templates WHERE name = ? ORDER BY version DESC",
                    (name,),
                )
                return [self._row_to_prompt_template(r) for r in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list template versions", name=name, error=str(e))
            raise StoreUnavailable(
                f"Failed to list versions of {name}: {e}",
                operation="list_prompt_template_versions",
            ) from e

    # =========================================================================
    # Administrative writes
    # =========================================================================

    async def create_classification_rule(
        self,
        name: str,
        email_type: str,
        rule_type: str,
        pattern: str,
        priority: int = 0,
        case_insensitive: bool = True,
        is_active: bool = True,
        description: str | None = None,
    ) -> ClassificationRule:
        """Create a classification rule.

        Raises:
            ValueError: If the rule type or pattern is invalid
            DatabaseError: If the insert fails (e.g. duplicate name)
        """
        rule_type = normalize_rule_type(rule_type)
        if not pattern:
            raise ValueError(f"Rule '{name}' has an empty pattern")

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO classification_rules (
                        name, email_type, rule_type, pattern, priority,
                        is_active, case_insensitive, description
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        name,
                        email_type,
                        rule_type,
                        pattern,
                        priority,
                        1 if is_active else 0,
                        1 if case_insensitive else 0,
                        description,
                    ),
                )
                rule_id = cursor.lastrowid
                await db.commit()

                cursor = await db.execute(
                    "SELECT * FROM classification_rules WHERE id = ?", (rule_id,)
                )
                rule = self._row_to_classification_rule(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error("Failed to create classification rule", name=name, error=str(e))
            raise DatabaseError(f"Failed to create classification rule {name}: {e}") from e

        logger.info(
            "Created classification rule",
            name=name,
            email_type=email_type,
            rule_type=rule_type,
            priority=priority,
        )
        self._notify_change("classification_rule_created")
        return rule

    async def set_classification_rule_active(self, name: str, is_active: bool) -> bool:
        """Enable or disable a classification rule.

        Returns:
            True if a rule with that name exists

        Raises:
            DatabaseError: If the update fails
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE classification_rules SET is_active = ? WHERE name = ?",
                    (1 if is_active else 0, name),
                )
                await db.commit()
                updated = cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to update classification rule", name=name, error=str(e))
            raise DatabaseError(f"Failed to update classification rule {name}: {e}") from e

        if updated:
            logger.info("Classification rule toggled", name=name, is_active=is_active)
            self._notify_change("classification_rule_toggled")
        return updated

    async def create_sender_rule(
        self,
        name: str,
        sender_pattern: str,
        email_type: str | None = None,
        trust_level: str = "trusted",
        metadata: dict[str, Any] | None = None,
    ) -> SenderRule:
        """Create a sender trust rule.

        Raises:
            ValueError: If the trust level is invalid
            DatabaseError: If the insert fails
        """
        if trust_level not in ("trusted", "untrusted"):
            raise ValueError(f"Trust level must be 'trusted' or 'untrusted', got '{trust_level}'")

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO sender_rules (
                        name, sender_pattern, email_type, trust_level, metadata_json
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        name,
                        sender_pattern,
                        email_type,
                        trust_level,
                        json.dumps(metadata) if metadata else None,
                    ),
                )
                rule_id = cursor.lastrowid
                await db.commit()

                cursor = await db.execute("SELECT * FROM sender_rules WHERE id = ?", (rule_id,))
                rule = self._row_to_sender_rule(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error("Failed to create sender rule", name=name, error=str(e))
            raise DatabaseError(f"Failed to create sender rule {name}: {e}") from e

        logger.info("Created sender rule", name=name, trust_level=trust_level)
        self._notify_change("sender_rule_created")
        return rule

    async def create_subject_pattern(
        self,
        name: str,
        email_type: str,
        pattern: str,
        variations: list[str] | None = None,
    ) -> SubjectPattern:
        """Create a subject pattern used for email re-identification.

        Raises:
            DatabaseError: If the insert fails
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "INSERT INTO subject_patterns (name, email_type, pattern, variations_json) "
                    "VALUES (?, ?, ?, ?)",
                    (name, email_type, pattern, json.dumps(list(variations or []))),
                )
                pattern_id = cursor.lastrowid
                await db.commit()

                cursor = await db.execute(
                    "SELECT * FROM subject_patterns WHERE id = ?", (pattern_id,)
                )
                subject_pattern = self._row_to_subject_pattern(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error("Failed to create subject pattern", name=name, error=str(e))
            raise DatabaseError(f"Failed to create subject pattern {name}: {e}") from e

        logger.info("Created subject pattern", name=name, email_type=email_type)
        self._notify_change("subject_pattern_created")
        return subject_pattern

    async def upsert_segment_type(
        self,
        name: str,
        display_name: str,
        description: str | None = None,
        default_timezone: str | None = None,
        display_config: dict[str, Any] | None = None,
        is_active: bool = True,
    ) -> None:
        """Create or update a segment type configuration.

        Raises:
            ValueError: If default_timezone is not a valid IANA zone
            DatabaseError: If the write fails
        """
        if default_timezone is not None:
            validate_iana_zone(default_timezone)

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO segment_types (
                        name, display_name, description, is_active,
                        default_timezone, display_config_json
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        display_name = excluded.display_name,
                        description = excluded.description,
                        is_active = excluded.is_active,
                        default_timezone = excluded.default_timezone,
                        display_config_json = excluded.display_config_json,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (
                        name,
                        display_name,
                        description,
                        1 if is_active else 0,
                        default_timezone,
                        json.dumps(display_config) if display_config else None,
                    ),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to upsert segment type", name=name, error=str(e))
            raise DatabaseError(f"Failed to upsert segment type {name}: {e}") from e

        logger.info("Segment type saved", name=name, default_timezone=default_timezone)
        self._notify_change("segment_type_saved")

    async def add_timezone_rule(
        self,
        segment_type_name: str,
        location_pattern: str,
        timezone: str,
        priority: int = 0,
    ) -> TimezoneRule:
        """Add a timezone rule to a segment type.

        Raises:
            ValueError: If timezone is not a valid IANA zone
            DatabaseError: If the insert fails (e.g. unknown segment type)
        """
        validate_iana_zone(timezone)

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "INSERT INTO timezone_rules "
                    "(segment_type_name, location_pattern, timezone, priority) "
                    "VALUES (?, ?, ?, ?)",
                    (segment_type_name, location_pattern, timezone, priority),
                )
                rule_id = cursor.lastrowid
                await db.commit()

                cursor = await db.execute("SELECT * FROM timezone_rules WHERE id = ?", (rule_id,))
                rule = self._row_to_timezone_rule(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error(
                "Failed to add timezone rule",
                segment_type=segment_type_name,
                pattern=location_pattern,
                error=str(e),
            )
            raise DatabaseError(
                f"Failed to add timezone rule for {segment_type_name}: {e}"
            ) from e

        logger.info(
            "Added timezone rule",
            segment_type=segment_type_name,
            pattern=location_pattern,
            timezone=timezone,
            priority=priority,
        )
        self._notify_change("timezone_rule_added")
        return rule

    async def set_display_rule(
        self,
        segment_type_name: str,
        primary_time_field: str = "departure",
        timezone_source: str = "origin",
        route_format: str = "{origin} → {destination}",
        custom_fields: dict[str, Any] | None = None,
    ) -> DisplayRule:
        """Create or replace the display rule for a segment type.

        Raises:
            ValueError: If a field value is not recognised
            DatabaseError: If the write fails
        """
        if primary_time_field not in ("departure", "return", "earliest_arrival"):
            raise ValueError(f"Unknown primary time field '{primary_time_field}'")
        if timezone_source not in ("origin", "destination"):
            raise ValueError(
                f"Timezone source must be origin or destination, not '{timezone_source}'"
            )

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO display_rules (
                        segment_type_name, primary_time_field, timezone_source,
                        route_format, custom_fields_json
                    ) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(segment_type_name) DO UPDATE SET
                        primary_time_field = excluded.primary_time_field,
                        timezone_source = excluded.timezone_source,
                        route_format = excluded.route_format,
                        custom_fields_json = excluded.custom_fields_json,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (
                        segment_type_name,
                        primary_time_field,
                        timezone_source,
                        route_format,
                        json.dumps(custom_fields) if custom_fields else None,
                    ),
                )
                await db.commit()

                cursor = await db.execute(
                    "SELECT * FROM display_rules WHERE segment_type_name = ?",
                    (segment_type_name,),
                )
                rule = self._row_to_display_rule(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error("Failed to set display rule", segment_type=segment_type_name, error=str(e))
            raise DatabaseError(f"Failed to set display rule for {segment_type_name}: {e}") from e

        self._notify_change("display_rule_set")
        return rule

    async def create_prompt_template(
        self,
        name: str,
        category: str,
        template_type: str,
        prompt: str,
        footer: str | None = None,
        self_contained: bool = False,
        activate: bool | None = None,
    ) -> PromptTemplate:
        """Create a prompt template, or a new version of an existing one.

        Edits never mutate a stored version: re-using a name creates version
        max+1. New versions start inactive unless `activate` is True; a
        brand-new name starts active unless `activate` is False.

        Raises:
            ValueError: If the category is not recognised
            DatabaseError: If the write fails
        """
        if category not in ("classification", "parsing"):
            raise ValueError(
                f"Template category must be classification or parsing, not '{category}'"
            )

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT MAX(version) FROM prompt_templates WHERE name = ?", (name,)
                )
                current = (await cursor.fetchone())[0]
                version = (current or 0) + 1
                is_active = activate if activate is not None else current is None

                cursor = await db.execute(
                    """
                    INSERT INTO prompt_templates (
                        name, category, type, version, prompt, footer,
                        self_contained, is_active
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        name,
                        category,
                        template_type,
                        version,
                        prompt,
                        footer,
                        1 if self_contained else 0,
                        1 if is_active else 0,
                    ),
                )
                template_id = cursor.lastrowid
                if is_active:
                    await db.execute(
                        "UPDATE prompt_templates SET is_active = 0 WHERE name = ? AND id != ?",
                        (name, template_id),
                    )
                await db.commit()

                cursor = await db.execute(
                    "SELECT * FROM prompt_templates WHERE id = ?", (template_id,)
                )
                template = self._row_to_prompt_template(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error("Failed to create prompt template", name=name, error=str(e))
            raise DatabaseError(f"Failed to create prompt template {name}: {e}") from e

        logger.info(
            "Created prompt template",
            name=name,
            version=template.version,
            is_active=template.is_active,
        )
        self._notify_change("prompt_template_created")
        return template

    async def activate_prompt_template(self, template_id: int) -> PromptTemplate:
        """Activate one template version and deactivate all its siblings.

        A single UPDATE flips every version of the name, so no reader ever
        observes zero or two active versions from this write.

        Raises:
            TemplateNotFoundError: If no template has this id
            DatabaseError: If the write fails
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT name FROM prompt_templates WHERE id = ?", (template_id,)
                )
                row = await cursor.fetchone()
                if not row:
                    raise TemplateNotFoundError(template_id)

                await db.execute(
                    "UPDATE prompt_templates SET is_active = CASE WHEN id = ? THEN 1 ELSE 0 END "
                    "WHERE name = ?",
                    (template_id, row["name"]),
                )
                await db.commit()

                cursor = await db.execute(
                    "SELECT * FROM prompt_templates WHERE id = ?", (template_id,)
                )
                template = self._row_to_prompt_template(await cursor.fetchone())

        except aiosqlite.Error as e:
            logger.error(
                "Failed to activate prompt template", template_id=template_id, error=str(e)
            )
            raise DatabaseError(f"Failed to activate prompt template {template_id}: {e}") from e

        logger.info("Activated prompt template", name=template.name, version=template.version)
        self._notify_change("prompt_template_activated")
        return template

    # =========================================================================
    # Usage analytics
    # =========================================================================

    async def record_prompt_usage(self, usage: PromptUsage) -> None:
        """Insert a usage record and bump the template's usage counter.

        The counter is incremented in SQL, so concurrent writers never lose
        updates. Model outcome rows are stored without touching the counter.

        Raises:
            DatabaseError: If the write fails
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO prompt_usage (
                        template_id, email_type, source, success,
                        error_message, response_ms, token_usage
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        usage.template_id,
                        usage.email_type,
                        usage.source,
                        1 if usage.success else 0,
                        usage.error_message,
                        usage.response_ms,
                        usage.token_usage,
                    ),
                )
                if usage.template_id is not None and usage.counts_as_use:
                    await db.execute(
                        "UPDATE prompt_templates SET usage_count = usage_count + 1 WHERE id = ?",
                        (usage.template_id,),
                    )
                await db.commit()

        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to record prompt usage: {e}") from e

    async def get_prompt_usage_stats(self, template_id: int | None = None) -> dict[str, Any]:
        """Summarize prompt usage records.

        Args:
            template_id: Restrict to one template; None covers all records

        Returns:
            Dict with total (all rows), uses (resolutions only), successes,
            failures and avg_response_ms
        """
        query = (
            "SELECT COUNT(*) AS total, "
            "COALESCE(SUM(CASE WHEN source = ? THEN 0 ELSE 1 END), 0) AS uses, "
            "COALESCE(SUM(success), 0) AS successes, "
            "AVG(response_ms) AS avg_response_ms "
            "FROM prompt_usage"
        )
        params: tuple[Any, ...] = (OUTCOME_SOURCE,)
        if template_id is not None:
            query += " WHERE template_id = ?"
            params = (OUTCOME_SOURCE, template_id)

        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()

        except aiosqlite.Error as e:
            raise StoreUnavailable(
                f"Failed to read prompt usage: {e}", operation="get_prompt_usage_stats"
            ) from e

        total = row["total"] or 0
        successes = row["successes"] or 0
        return {
            "total": total,
            "uses": row["uses"] or 0,
            "successes": successes,
            "failures": total - successes,
            "avg_response_ms": row["avg_response_ms"],
        }
