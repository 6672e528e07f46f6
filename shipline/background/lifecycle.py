# shipline/background/lifecycle.py
"""
Runner lifecycle management.

Coordinates startup (DB initialization + crash recovery + worker) and shutdown.
"""

import asyncio
import logging

from shipline.background.signals import setup_signal_handlers
from shipline.background.worker import BackgroundWorker
from shipline.config.schema import ShiplineConfig
from shipline.models.runs import RunState
from shipline.models.sqlite_store import SQLiteRunStore

logger = logging.getLogger(__name__)


class ServerLifecycle:
    """
    Runner lifecycle coordinator.

    Manages:
        - Database initialization and crash recovery on startup
        - Background worker lifecycle
        - Signal handler registration
        - Graceful shutdown
    """

    def __init__(
        self,
        db_path: str,
        config: ShiplineConfig | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        """
        Initialize lifecycle manager.

        Args:
            db_path: Path to SQLite database file
            config: ShiplineConfig passed to the worker
            poll_interval: Seconds between queue checks
        """
        self._store = SQLiteRunStore(db_path)
        self._config = config or ShiplineConfig()
        self._worker = BackgroundWorker(
            self._store, config=self._config, poll_interval=poll_interval
        )
        self._stopped = asyncio.Event()
        logger.info(f"Created ServerLifecycle with db_path={db_path}")

    @property
    def store(self) -> SQLiteRunStore:
        """Get the run store (for server.py to pass to tools)."""
        return self._store

    @property
    def worker(self) -> BackgroundWorker:
        """Get the background worker (for inspection/testing)."""
        return self._worker

    @property
    def config(self) -> ShiplineConfig:
        return self._config

    async def startup(self, handle_signals: bool = True) -> None:
        """
        Start the lifecycle.

        Steps:
            1. Initialize database schema
            2. Run crash recovery (mark running → interrupted)
            3. Register signal handlers for graceful shutdown
            4. Start background worker
        """
        logger.info("Starting runner lifecycle...")

        await self._store.initialize()

        interrupted = [
            run for run in await self._store.list_all() if run.state == RunState.INTERRUPTED
        ]
        if interrupted:
            logger.warning(f"Found {len(interrupted)} interrupted run(s) from previous session")
            for run in interrupted:
                logger.warning(f"  - {run.run_id}: {run.pipeline} (stage: {run.current_stage})")

        if handle_signals:
            setup_signal_handlers(self._worker, self._store, on_shutdown=self._stopped)

        await self._worker.start()

        logger.info("Runner lifecycle started: worker running")

    async def wait_stopped(self) -> None:
        """Block until a signal-triggered shutdown has completed."""
        await self._stopped.wait()

    async def shutdown(self) -> None:
        """
        Shut down gracefully.

        Steps:
            1. Stop background worker (marks running run as interrupted)
            2. Close database (WAL checkpoint)
        """
        logger.info("Shutting down runner lifecycle...")

        await self._worker.stop()
        await self._store.close()
        self._stopped.set()

        logger.info("Runner lifecycle shutdown complete")
