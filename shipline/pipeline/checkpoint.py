# shipline/pipeline/checkpoint.py
"""
Checkpoint management for idempotent resume.

Persists completed stage outputs to the SQLite runs.pipeline_state column,
so a resumed run skips every stage that already completed.
"""

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)

STALE_HOURS = 24


class CheckpointManager:
    """
    Manages run checkpoint persistence via SQLite.

    Stores completed stage outputs in the runs.pipeline_state column.
    Secrets are never part of stage outputs, so nothing sensitive is written.
    """

    def __init__(self, db_path: str) -> None:
        """
        Initialize checkpoint manager.

        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        logger.debug(f"Created CheckpointManager with db: {db_path}")

    async def _read_state(self, db: aiosqlite.Connection, run_id: str) -> dict[str, Any]:
        cursor = await db.execute("SELECT pipeline_state FROM runs WHERE id = ?", (run_id,))
        row = await cursor.fetchone()

        if not row:
            raise ValueError(f"Run {run_id} not found")

        return json.loads(row[0]) if row[0] else {}

    async def save_stage(
        self, run_id: str, stage_name: str, stage_output: dict[str, Any]
    ) -> None:
        """
        Save a completed stage's outputs as a checkpoint.

        Raises:
            ValueError: If run_id doesn't exist
        """
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")

            try:
                existing_state = await self._read_state(db, run_id)

                existing_state[stage_name] = {
                    "output": stage_output,
                    "completed_at": datetime.now(timezone.utc).isoformat(),
                }

                await db.execute(
                    "UPDATE runs SET pipeline_state = ? WHERE id = ?",
                    (json.dumps(existing_state), run_id),
                )

                await db.commit()
                logger.info(f"Saved checkpoint for stage '{stage_name}' in run {run_id}")

            except Exception:
                await db.rollback()
                raise

    async def load_checkpoint(self, run_id: str) -> dict[str, dict[str, Any]]:
        """
        Load all completed stage outputs for a run.

        Returns:
            Dictionary mapping stage_name -> outputs, in completion order
            (empty dict if no checkpoint exists)

        Raises:
            ValueError: If run_id doesn't exist
        """
        async with aiosqlite.connect(self._db_path) as db:
            checkpoint = await self._read_state(db, run_id)

        if not checkpoint:
            logger.info(f"No checkpoint found for run {run_id}")
            return {}

        logger.info(f"Loaded checkpoint for run {run_id}: {list(checkpoint.keys())}")

        unwrapped = {}
        for key, val in checkpoint.items():
            try:
                completed = datetime.fromisoformat(val["completed_at"])
                age_hours = (datetime.now(timezone.utc) - completed).total_seconds() / 3600
                if age_hours > STALE_HOURS:
                    logger.warning(
                        f"Checkpoint '{key}' is {age_hours:.0f}h old (>{STALE_HOURS}h)"
                    )
            except (KeyError, ValueError, TypeError):
                logger.warning(f"Checkpoint '{key}' has no valid completion timestamp")
            unwrapped[key] = val.get("output", {}) if isinstance(val, dict) else {}
        return unwrapped

    async def remove_stages(self, run_id: str, stage_names: Iterable[str]) -> None:
        """
        Drop stages from a run's checkpoint (e.g. after they were rolled back).

        Raises:
            ValueError: If run_id doesn't exist
        """
        names = set(stage_names)
        if not names:
            return

        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")

            try:
                existing_state = await self._read_state(db, run_id)
                remaining = {k: v for k, v in existing_state.items() if k not in names}

                await db.execute(
                    "UPDATE runs SET pipeline_state = ? WHERE id = ?",
                    (json.dumps(remaining) if remaining else None, run_id),
                )

                await db.commit()
                logger.info(f"Removed {sorted(names)} from checkpoint of run {run_id}")

            except Exception:
                await db.rollback()
                raise

    async def clear_checkpoint(self, run_id: str) -> None:
        """
        Clear all checkpoint data for a run.

        Used when starting a run from scratch (not resuming).

        Raises:
            ValueError: If run_id doesn't exist
        """
        async with aiosqlite.connect(self._db_path) as db:
            await db.execute("BEGIN IMMEDIATE")

            try:
                cursor = await db.execute("SELECT id FROM runs WHERE id = ?", (run_id,))
                if not await cursor.fetchone():
                    raise ValueError(f"Run {run_id} not found")

                await db.execute(
                    "UPDATE runs SET pipeline_state = NULL WHERE id = ?", (run_id,)
                )

                await db.commit()
                logger.info(f"Cleared checkpoint for run {run_id}")

            except Exception:
                await db.rollback()
                raise
