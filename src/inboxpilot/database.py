"""SQLite database connection and schema management."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from inboxpilot.config import Config, load_config

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"

TABLES = [
    "workspaces", "email_provider_configs", "email_import_jobs",
    "email_import_queue", "email_thread_analysis", "pipeline_runs",
    "pipeline_incidents", "pipeline_job_audit", "conversations", "messages",
    "sender_rules", "classification_corrections", "voice_profiles",
    "voice_drift_log", "competitor_research_jobs", "competitor_sites",
    "competitor_pages", "competitor_faqs_raw", "faq_database", "drafts",
    "draft_verifications", "draft_edits",
]


def iso(dt: datetime) -> str:
    """Format a datetime the way every timestamp column stores it (UTC, second precision)."""
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def utcnow() -> str:
    return iso(datetime.now(timezone.utc))


def get_db(config: Config | None = None, db_path: str | None = None) -> sqlite3.Connection:
    """Return a configured SQLite connection.

    Uses WAL mode and row_factory=sqlite3.Row for dict-like access.
    Connections may be handed to a worker thread, so same-thread checking is off;
    each dispatch still opens its own connection.
    """
    if db_path is None:
        if config is None:
            config = load_config()
        db_path = config.storage.sqlite_path

    conn = sqlite3.connect(db_path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables from schema.sql."""
    schema = _SCHEMA_PATH.read_text()
    conn.executescript(schema)


def reset_db(config: Config | None = None) -> sqlite3.Connection:
    """Drop and recreate the database. Returns a fresh connection."""
    if config is None:
        config = load_config()

    db_path = Path(config.storage.sqlite_path)
    if db_path.exists():
        db_path.unlink()

    conn = get_db(config)
    init_db(conn)
    return conn


def migrate_db(conn: sqlite3.Connection) -> list[str]:
    """Add columns that may be missing from databases created by older releases.

    Returns the list of migration actions taken.
    """
    migrations: list[str] = []

    expected_columns = [
        ("email_import_queue", "snippet", "TEXT"),
        ("email_import_jobs", "conversations_classified", "INTEGER DEFAULT 0"),
        ("email_provider_configs", "aliases", "TEXT DEFAULT '[]'"),
        ("conversations", "triage_reason", "TEXT"),
        ("competitor_research_jobs", "current_scraping_domain", "TEXT"),
        ("pipeline_runs", "retry_count", "INTEGER DEFAULT 0"),
    ]

    for table, column, col_type in expected_columns:
        existing = conn.execute(f"PRAGMA table_info({table})").fetchall()
        existing_names = {row["name"] for row in existing}
        if existing_names and column not in existing_names:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
            migrations.append(f"Added {table}.{column} ({col_type})")

    if migrations:
        conn.commit()

    return migrations


def db_stats(conn: sqlite3.Connection) -> dict[str, int]:
    """Return row counts for all tables."""
    stats = {}
    for table in TABLES:
        try:
            row = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}").fetchone()
            stats[table] = row["cnt"]
        except sqlite3.OperationalError:
            stats[table] = -1  # table doesn't exist
    return stats
