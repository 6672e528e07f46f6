# shipline/models/sqlite_store.py
"""
SQLite-backed run persistence.

Provides async CRUD operations with WAL mode and IMMEDIATE transactions
for crash recovery and concurrent access safety.
"""

import logging
from datetime import datetime, timezone

import aiosqlite

from shipline.models.runs import UPDATABLE_FIELDS, RunRecord, RunState
from shipline.models.schema import init_db
from shipline.models.store import RunStore

logger = logging.getLogger(__name__)

# RunRecord field -> column name (only where they differ)
_COLUMN_NAMES = {"run_id": "id"}


class SQLiteRunStore(RunStore):
    """
    Async SQLite-backed run storage.

    Features:
        - WAL mode for concurrent reads/writes
        - IMMEDIATE transactions for write safety
        - Crash recovery (running → interrupted on startup)
        - No persistent connections (avoids resource leaks)
    """

    def __init__(self, db_path: str) -> None:
        """
        Initialize SQLite run store.

        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        logger.info(f"Created SQLiteRunStore with path: {db_path}")

    @property
    def db_path(self) -> str:
        return self._db_path

    async def initialize(self, recover: bool = True) -> None:
        """
        Initialize database schema and perform crash recovery.

        Crash recovery: Mark any runs with state='running' as 'interrupted'
        and flag them to resume from their checkpoint.

        Args:
            recover: Run crash recovery (only the process that owns the
                worker may do this; read-only clients pass False)
        """
        await init_db(self._db_path)
        if not recover:
            return

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                "UPDATE runs SET state = ?, error = ?, resume = 1, updated_at = ? WHERE state = ?",
                (
                    RunState.INTERRUPTED.value,
                    "Runner stopped during execution",
                    datetime.now(timezone.utc).isoformat(),
                    RunState.RUNNING.value,
                ),
            )
            recovered = cursor.rowcount
            await db.commit()

            if recovered > 0:
                logger.warning(
                    f"Crash recovery: marked {recovered} running run(s) as interrupted"
                )

    async def add(self, record: RunRecord) -> None:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")

            try:
                cursor = await db.execute("SELECT id FROM runs WHERE id = ?", (record.run_id,))
                if await cursor.fetchone():
                    raise ValueError(f"Run {record.run_id} already exists")

                updated_at = record.updated_at or datetime.now(timezone.utc)

                await db.execute(
                    """
                    INSERT INTO runs (
                        id, pipeline, definition_path, definition_json, branch,
                        state, progress, current_stage, error, failed_stage,
                        pipeline_state, stage_results_json, resume,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.run_id,
                        record.pipeline,
                        record.definition_path,
                        record.definition_json,
                        record.branch,
                        record.state.value,
                        record.progress,
                        record.current_stage,
                        record.error,
                        record.failed_stage,
                        record.pipeline_state,
                        record.stage_results_json,
                        1 if record.resume else 0,
                        record.created_at.isoformat(),
                        updated_at.isoformat(),
                    ),
                )

                await db.commit()
                logger.info(f"Added run {record.run_id} to SQLite store")

            except Exception:
                await db.rollback()
                raise

    async def get(self, run_id: str) -> RunRecord | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM runs WHERE id = ?", (run_id,))
            row = await cursor.fetchone()

            if not row:
                return None

            return self._row_to_record(row)

    async def list_all(self, pipeline: str | None = None) -> list[RunRecord]:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            if pipeline is None:
                cursor = await db.execute("SELECT * FROM runs ORDER BY created_at DESC")
            else:
                cursor = await db.execute(
                    "SELECT * FROM runs WHERE pipeline = ? ORDER BY created_at DESC",
                    (pipeline,),
                )
            rows = await cursor.fetchall()

            return [self._row_to_record(row) for row in rows]

    async def update(self, run_id: str, **kwargs) -> None:
        invalid = set(kwargs.keys()) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Invalid field names: {invalid}")

        if not kwargs:
            return

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")

            try:
                cursor = await db.execute("SELECT id FROM runs WHERE id = ?", (run_id,))
                if not await cursor.fetchone():
                    raise ValueError(f"Run {run_id} not found")

                set_parts = []
                values = []

                for key, value in kwargs.items():
                    if isinstance(value, RunState):
                        value = value.value
                    elif isinstance(value, datetime):
                        value = value.isoformat()
                    elif isinstance(value, bool):
                        value = 1 if value else 0

                    set_parts.append(f"{_COLUMN_NAMES.get(key, key)} = ?")
                    values.append(value)

                # Always update updated_at
                if "updated_at" not in kwargs:
                    set_parts.append("updated_at = ?")
                    values.append(datetime.now(timezone.utc).isoformat())

                values.append(run_id)

                sql = f"UPDATE runs SET {', '.join(set_parts)} WHERE id = ?"
                await db.execute(sql, values)

                await db.commit()
                logger.debug(f"Updated run {run_id}: {list(kwargs.keys())}")

            except Exception:
                await db.rollback()
                raise

    async def get_next_queued(self) -> RunRecord | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM runs WHERE state = ? ORDER BY created_at ASC LIMIT 1",
                (RunState.QUEUED.value,),
            )
            row = await cursor.fetchone()

            if not row:
                return None

            return self._row_to_record(row)

    async def claim(self, run_id: str) -> bool:
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                cursor = await db.execute(
                    "UPDATE runs SET state = ?, updated_at = ? WHERE id = ? AND state = ?",
                    (
                        RunState.RUNNING.value,
                        datetime.now(timezone.utc).isoformat(),
                        run_id,
                        RunState.QUEUED.value,
                    ),
                )
                claimed = cursor.rowcount == 1
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.debug(f"Claim of run {run_id}: {'taken' if claimed else 'not queued'}")
        return claimed

    async def get_last_successful(self, pipeline: str) -> RunRecord | None:
        async with aiosqlite.connect(self._db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM runs WHERE pipeline = ? AND state = ? "
                "ORDER BY updated_at DESC LIMIT 1",
                (pipeline, RunState.SUCCEEDED.value),
            )
            row = await cursor.fetchone()

            if not row:
                return None

            return self._row_to_record(row)

    async def close(self) -> None:
        """
        Checkpoint WAL and close database.

        Truncates WAL file to avoid unbounded growth.
        """
        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                logger.debug("WAL checkpoint completed")
        except Exception as e:
            logger.warning(f"WAL checkpoint failed: {e}")

    def _row_to_record(self, row: aiosqlite.Row) -> RunRecord:
        return RunRecord(
            run_id=row["id"],
            pipeline=row["pipeline"],
            definition_path=row["definition_path"],
            definition_json=row["definition_json"],
            branch=row["branch"],
            state=RunState(row["state"]),
            progress=row["progress"],
            current_stage=row["current_stage"],
            error=row["error"],
            failed_stage=row["failed_stage"],
            pipeline_state=row["pipeline_state"],
            stage_results_json=row["stage_results_json"],
            resume=bool(row["resume"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"])
            if row["updated_at"]
            else None,
        )
