"""
Database schema initialization for Topic Digest.

Two tables back every subscription actor:
- actor_storage: per-subscription key/value pairs (JSON encoded values)
- actor_alarms: at most one pending wake-up per subscription
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from topicdigest.observability.logging import get_logger

logger = get_logger(__name__)

EXPECTED_TABLES = ("actor_storage", "actor_alarms")


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Side Effects:
    - Creates the parent directory if needed
    - Creates tables and indexes if they don't exist
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS actor_storage (
                subscription_id TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (subscription_id, key)
            );

            CREATE TABLE IF NOT EXISTS actor_alarms (
                subscription_id TEXT PRIMARY KEY,
                fire_at_ms INTEGER NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_actor_alarms_fire_at
                ON actor_alarms (fire_at_ms);
        """)
        conn.commit()
    finally:
        conn.close()

    logger.info("Database schema ready at %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected tables

    Raises:
        ValueError: If tables are missing
    """
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    present = {row[0] for row in rows}
    missing = [table for table in EXPECTED_TABLES if table not in present]
    if missing:
        raise ValueError(f"Missing tables: {', '.join(missing)}")
    return True
