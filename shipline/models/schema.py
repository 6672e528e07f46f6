# shipline/models/schema.py
"""
Database schema definition for SQLite run persistence.

Provides DDL for tables, indexes, and schema initialization.
"""

import logging

import aiosqlite

logger = logging.getLogger(__name__)

# Schema version for future migrations
SCHEMA_VERSION = 1

RUNS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    pipeline TEXT NOT NULL,
    definition_path TEXT,
    definition_json TEXT NOT NULL,
    branch TEXT,
    state TEXT NOT NULL CHECK(state IN ('queued', 'running', 'succeeded', 'failed', 'rolled_back', 'rollback_failed', 'interrupted')),
    progress REAL DEFAULT 0.0 CHECK(progress >= 0.0 AND progress <= 1.0),
    current_stage TEXT,
    error TEXT,
    failed_stage TEXT,
    pipeline_state TEXT,
    stage_results_json TEXT,
    resume INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""

# Index for efficient FIFO queue queries (state + created_at)
RUNS_STATE_INDEX_SQL = "CREATE INDEX IF NOT EXISTS idx_runs_state_created ON runs(state, created_at)"

# Index for last-known-good lookups
RUNS_PIPELINE_INDEX_SQL = (
    "CREATE INDEX IF NOT EXISTS idx_runs_pipeline_state ON runs(pipeline, state, updated_at)"
)


async def _get_schema_version(db: aiosqlite.Connection) -> int:
    """Get current schema version from database (0 if no version table exists)."""
    try:
        cursor = await db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return row[0] if row else 0
    except aiosqlite.OperationalError:
        return 0


async def _set_schema_version(db: aiosqlite.Connection, version: int) -> None:
    await db.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER)")
    await db.execute("DELETE FROM schema_version")
    await db.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))


async def init_db(db_path: str) -> None:
    """
    Initialize database schema with WAL mode.

    Creates tables and indexes if they don't exist and records the schema
    version.

    Args:
        db_path: Path to SQLite database file

    Raises:
        RuntimeError: If the database was created by a newer shipline
    """
    async with aiosqlite.connect(db_path) as db:
        # Enable WAL mode for concurrent access
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA synchronous=NORMAL")

        # Retry on database busy (5 seconds)
        await db.execute("PRAGMA busy_timeout=5000")

        current_version = await _get_schema_version(db)
        if current_version > SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{current_version} is newer than supported v{SCHEMA_VERSION}"
            )

        await db.execute(RUNS_TABLE_SQL)
        await db.execute(RUNS_STATE_INDEX_SQL)
        await db.execute(RUNS_PIPELINE_INDEX_SQL)

        if current_version < SCHEMA_VERSION:
            await _set_schema_version(db, SCHEMA_VERSION)
            logger.info(f"Initialized schema v{SCHEMA_VERSION} at {db_path}")

        await db.commit()
