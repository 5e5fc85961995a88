"""SQLite database schema and initialization for the rule store.

This module defines the database schema:
- segment_types: One row per booking type (flight, hotel, private_terminal, ...)
- classification_rules: Priority-ordered rules mapping emails to booking types
- sender_rules: Sender address patterns with trust levels
- subject_patterns: Subject lines used to re-identify emails for reprocessing
- timezone_rules: Location pattern to IANA zone mappings, scoped per type
- display_rules: Presentation + timezone source, at most one per type
- prompt_templates: Versioned extraction / classification prompts
- prompt_usage: Analytics records for prompt resolution and model outcomes

Usage:
    from tripmail.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/tripmail.db")
"""

import stat
from pathlib import Path

import aiosqlite

from tripmail.core.errors import DatabaseError
from tripmail.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS segment_types (
    name TEXT PRIMARY KEY,                  -- 'flight', 'hotel', 'private_terminal', ...
    display_name TEXT NOT NULL,
    description TEXT,
    is_active INTEGER DEFAULT 1,
    default_timezone TEXT,                  -- IANA zone id
    display_config_json TEXT,               -- Free-form presentation settings
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS classification_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,   -- Creation order breaks priority ties
    name TEXT UNIQUE NOT NULL,
    email_type TEXT NOT NULL,
    rule_type TEXT NOT NULL,                -- 'keyword', 'subject_pattern', 'sender_domain',
                                            -- 'content_pattern'
    pattern TEXT NOT NULL,
    priority INTEGER DEFAULT 0,             -- Higher is evaluated first
    is_active INTEGER DEFAULT 1,
    case_insensitive INTEGER DEFAULT 1,
    description TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_classification_rules_active_priority
    ON classification_rules(is_active, priority DESC, id);

CREATE TABLE IF NOT EXISTS sender_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    sender_pattern TEXT NOT NULL,           -- Substring or domain, e.g. '@reserveps.com'
    email_type TEXT,                        -- NULL = applies to any type
    trust_level TEXT DEFAULT 'trusted',     -- 'trusted', 'untrusted'
    metadata_json TEXT,
    is_active INTEGER DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sender_rules_trust ON sender_rules(trust_level);

CREATE TABLE IF NOT EXISTS subject_patterns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    email_type TEXT NOT NULL,
    pattern TEXT NOT NULL,
    variations_json TEXT,                   -- Ordered list of alternate substrings
    is_active INTEGER DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_subject_patterns_type ON subject_patterns(email_type);

CREATE TABLE IF NOT EXISTS timezone_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_type_name TEXT NOT NULL REFERENCES segment_types(name) ON DELETE CASCADE,
    location_pattern TEXT NOT NULL,
    timezone TEXT NOT NULL,
    priority INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_timezone_rules_type
    ON timezone_rules(segment_type_name, priority DESC);

CREATE TABLE IF NOT EXISTS display_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    segment_type_name TEXT UNIQUE NOT NULL REFERENCES segment_types(name) ON DELETE CASCADE,
    primary_time_field TEXT DEFAULT 'departure',  -- 'departure', 'return', 'earliest_arrival'
    timezone_source TEXT DEFAULT 'origin',        -- 'origin', 'destination'
    route_format TEXT DEFAULT '{origin} → {destination}',
    custom_fields_json TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS prompt_templates (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    category TEXT NOT NULL,                 -- 'classification', 'parsing'
    type TEXT NOT NULL,                     -- booking type or 'base'
    version INTEGER NOT NULL DEFAULT 1,
    prompt TEXT NOT NULL,                   -- Text with {{variable}} placeholders
    footer TEXT,                            -- Schema footer (base templates)
    self_contained INTEGER DEFAULT 0,       -- 1 = used verbatim, never composed
    is_active INTEGER DEFAULT 0,
    usage_count INTEGER DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(name, version)
);

CREATE INDEX IF NOT EXISTS idx_prompt_templates_lookup
    ON prompt_templates(category, type, is_active, version DESC);

CREATE TABLE IF NOT EXISTS prompt_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    template_id INTEGER,                    -- NULL for hardcoded fallback prompts
    email_type TEXT,
    source TEXT,                            -- 'resolved' or 'model_outcome'
    success INTEGER,
    error_message TEXT,
    response_ms INTEGER,
    token_usage INTEGER
);

CREATE INDEX IF NOT EXISTS idx_prompt_usage_template ON prompt_usage(template_id);
CREATE INDEX IF NOT EXISTS idx_prompt_usage_timestamp ON prompt_usage(timestamp);
"""

REQUIRED_TABLES = [
    "segment_types",
    "classification_rules",
    "sender_rules",
    "subject_patterns",
    "timezone_rules",
    "display_rules",
    "prompt_templates",
    "prompt_usage",
]


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode for
    concurrent access, and creates all tables and indexes.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Rule store is admin-editable configuration: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("Database initialization failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that the database has every required table.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning(
                    "Missing database tables",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False

            return True

    except aiosqlite.Error as e:
        logger.error("Schema verification failed", db_path=str(db_path), error=str(e))
        return False
