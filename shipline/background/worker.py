# shipline/background/worker.py
"""
Background worker for sequential run processing.

Polls the run queue, executes release runs one at a time, and handles
graceful shutdown.
"""

import asyncio
import logging
import traceback
from collections.abc import Callable
from typing import Any

from shipline.config.schema import ShiplineConfig
from shipline.errors import RunClaimError
from shipline.models.runs import RunRecord, RunState, dump_results
from shipline.models.store import RunStore
from shipline.pipeline.checkpoint import CheckpointManager
from shipline.pipeline.definition import PipelineDefinition, parse_definition
from shipline.pipeline.executor import CommandExecutor
from shipline.pipeline.orchestrator import PipelineResult, ReleasePipeline
from shipline.pipeline.rollback import RollbackController
from shipline.pipeline.secrets import SecretStore, create_secret_store
from shipline.pipeline.stages import StageResult, StageStatus, create_stages

logger = logging.getLogger(__name__)


def final_state(result: PipelineResult) -> RunState:
    """Map a pipeline result to the run's terminal state."""
    if result.success:
        return RunState.SUCCEEDED
    if result.rollback_failed:
        return RunState.ROLLBACK_FAILED
    if result.rolled_back:
        return RunState.ROLLED_BACK
    return RunState.FAILED


class BackgroundWorker:
    """
    Sequential background run processor.

    Features:
        - Polls queue for next QUEUED run (FIFO)
        - Processes runs one at a time (one runner, no parallel releases)
        - Marks running run as INTERRUPTED on shutdown (via CancelledError)
        - Handles unexpected exceptions and marks runs as FAILED
    """

    def __init__(
        self,
        store: RunStore,
        config: ShiplineConfig | None = None,
        poll_interval: float = 1.0,
        secret_store: SecretStore | None = None,
    ) -> None:
        """
        Initialize background worker.

        Args:
            store: Run store implementation (SQLite or in-memory)
            config: ShiplineConfig for executor, retry and rollback settings
            poll_interval: Seconds between queue checks (default: 1.0)
            secret_store: Secret store (default: built from config.secrets)
        """
        self._store = store
        self._config = config or ShiplineConfig()
        self._poll_interval = poll_interval
        self._secrets = secret_store or create_secret_store(self._config.secrets)
        self._current_run_id: str | None = None
        self._task: asyncio.Task | None = None

        self._executor = CommandExecutor(
            shell=self._config.executor.shell,
            logs_dir=self._config.executor.logs_dir,
            max_output_chars=self._config.executor.max_output_chars,
            secret_env_prefix=self._config.secrets.env_prefix,
        )

        # Checkpointing needs the SQLite runs table
        db_path = getattr(store, "db_path", None)
        if db_path:
            self._checkpoint_mgr: CheckpointManager | None = CheckpointManager(db_path)
        else:
            self._checkpoint_mgr = None
            logger.warning("Store does not support checkpointing (no db_path); resume disabled")

        logger.info(
            f"Initialized BackgroundWorker (poll_interval={poll_interval}s, "
            f"checkpoints={'on' if self._checkpoint_mgr else 'off'})"
        )

    @property
    def current_run_id(self) -> str | None:
        """Get the currently processing run ID (None if idle)."""
        return self._current_run_id

    @property
    def executor(self) -> CommandExecutor:
        return self._executor

    async def start(self) -> None:
        """
        Start the background worker loop.

        Creates an asyncio task that polls for queued runs.
        """
        if self._task is not None:
            logger.warning("Worker already started")
            return

        self._task = asyncio.create_task(self._run_loop())
        logger.info("Background worker started")

    async def stop(self) -> None:
        """
        Stop the background worker gracefully.

        Cancels the worker task and waits for it to finish.
        If a run is in progress, it will be marked as INTERRUPTED.
        """
        if self._task is None:
            logger.warning("Worker not running")
            return

        logger.info("Stopping background worker...")
        self._task.cancel()

        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Worker task cancelled")

        self._task = None
        logger.info("Background worker stopped")

    async def _run_loop(self) -> None:
        """
        Main worker loop: poll queue, process runs sequentially.

        Handles CancelledError for graceful shutdown.
        """
        logger.info("Worker loop started")

        try:
            while True:
                run = await self._store.get_next_queued()

                if run is None:
                    await asyncio.sleep(self._poll_interval)
                    continue

                logger.info(f"Picked up run {run.run_id} ({run.pipeline}) for processing")
                try:
                    await self.process_run(run)
                except asyncio.CancelledError:
                    raise
                except RunClaimError:
                    logger.info(f"Run {run.run_id} was taken by another runner, skipping")
                except Exception as e:
                    # Already recorded on the run by process_run
                    logger.debug(f"Continuing after failed run {run.run_id}: {e}")

        except asyncio.CancelledError:
            logger.info("Worker loop cancelled")
            raise

    def build_pipeline(self, definition: PipelineDefinition) -> ReleasePipeline:
        """Build a ReleasePipeline for a definition using this worker's settings."""
        stages = create_stages(definition, self._executor, self._config)
        return ReleasePipeline(
            stages,
            checkpoint_manager=self._checkpoint_mgr,
            rollback_controller=RollbackController(),
            fail_fast=definition.fail_fast,
            rollback_on_failure=definition.rollback_on_failure and self._config.rollback.enabled,
        )

    async def _last_good(self, run: RunRecord) -> tuple[dict[str, dict[str, Any]], str | None]:
        last = await self._store.get_last_successful(run.pipeline)
        if last is None or last.run_id == run.run_id:
            return {}, None
        logger.info(f"Last-known-good for {run.pipeline}: run {last.run_id}")
        return last.stage_outputs, last.run_id

    async def process_run(
        self,
        run: RunRecord,
        resume: bool | None = None,
        progress_callback: Callable[[float, str], Any] | None = None,
    ) -> PipelineResult:
        """
        Execute a run and record its outcome.

        Handles state transitions (RUNNING → SUCCEEDED/FAILED/ROLLED_BACK/
        ROLLBACK_FAILED, or INTERRUPTED on cancellation).

        Args:
            run: RunRecord to process
            resume: Resume from checkpoint (None = use run.resume)
            progress_callback: Extra callback(progress, phase) for live display

        Returns:
            PipelineResult of the execution

        Raises:
            RunClaimError: If the run is no longer queued (nothing is executed)
            asyncio.CancelledError: After marking the run INTERRUPTED
            Exception: Re-raises any unexpected error after marking the run FAILED
        """
        if not await self._store.claim(run.run_id):
            raise RunClaimError(run.run_id)

        resume = run.resume if resume is None else resume
        self._current_run_id = run.run_id

        async def on_progress(progress: float, phase: str) -> None:
            await self._store.update(run.run_id, progress=progress, current_stage=phase)
            if progress_callback is not None:
                result_or_coro = progress_callback(progress, phase)
                if hasattr(result_or_coro, "__await__"):
                    await result_or_coro

        try:
            if resume:
                await self._store.update(
                    run.run_id, state=RunState.RUNNING, current_stage="resuming", error=None
                )
            else:
                await self._store.update(
                    run.run_id,
                    state=RunState.RUNNING,
                    progress=0.0,
                    current_stage="starting",
                    error=None,
                    failed_stage=None,
                )

            definition = parse_definition(run.definition, source=run.definition_path or run.run_id)
            pipeline = self.build_pipeline(definition)
            last_good, last_good_run_id = await self._last_good(run)

            result = await pipeline.execute(
                run.run_id,
                resume=resume,
                progress_callback=on_progress,
                pipeline_env=definition.env,
                last_good=last_good,
                last_good_run_id=last_good_run_id,
                secrets=self._secrets,
            )

            state = final_state(result)
            rollbacks = run.rollback_results + [r.to_dict() for r in result.rollback_results]
            await self._store.update(
                run.run_id,
                state=state,
                progress=1.0,
                current_stage=None,
                failed_stage=result.failed_stage,
                error=result.error,
                resume=False,
                stage_results_json=dump_results(
                    [r.to_dict() for r in result.stage_results], rollbacks
                ),
            )
            log = logger.info if result.success else logger.error
            log(f"Run {run.run_id} finished: {state.value}")
            return result

        except asyncio.CancelledError:
            logger.warning(f"Run {run.run_id} interrupted by shutdown")
            try:
                await self._store.update(
                    run.run_id,
                    state=RunState.INTERRUPTED,
                    error="Runner shutdown during execution",
                    resume=True,
                )
            except Exception as e:
                logger.error(f"Failed to mark run as interrupted: {e}")
            raise

        except Exception as e:
            error_msg = f"{type(e).__name__}: {str(e)}"
            tb_lines = traceback.format_exception(type(e), e, e.__traceback__)
            tb_snippet = "".join(tb_lines[-3:])

            await self._store.update(
                run.run_id,
                state=RunState.FAILED,
                current_stage=None,
                error=f"{error_msg}\n\n{tb_snippet}",
            )
            logger.error(f"Run {run.run_id} failed: {error_msg}")
            raise

        finally:
            self._current_run_id = None

    async def process_run_direct(
        self,
        run_id: str,
        resume: bool | None = None,
        progress_callback: Callable[[float, str], Any] | None = None,
    ) -> PipelineResult:
        """
        Process a single run directly (for inline CLI execution).

        Unlike the polling loop, this method processes one specific run and returns.

        Raises:
            ValueError: If run not found
        """
        run = await self._store.get(run_id)
        if not run:
            raise ValueError(f"Run {run_id} not found")
        return await self.process_run(run, resume=resume, progress_callback=progress_callback)

    async def _completed_outputs(self, run: RunRecord) -> dict[str, dict[str, Any]]:
        if self._checkpoint_mgr is not None:
            checkpoint = await self._checkpoint_mgr.load_checkpoint(run.run_id)
            if checkpoint:
                return checkpoint
        reverted = {
            r["stage_name"] for r in run.rollback_results if r.get("status") == "rolled_back"
        }
        return {name: out for name, out in run.stage_outputs.items() if name not in reverted}

    async def rollback_run(self, run_id: str) -> list[StageResult]:
        """
        Manually roll back the completed stages of a run.

        Returns:
            Rollback results (empty if no completed stage declares a rollback)

        Raises:
            ValueError: If run not found
        """
        run = await self._store.get(run_id)
        if not run:
            raise ValueError(f"Run {run_id} not found")

        definition = parse_definition(run.definition, source=run.definition_path or run.run_id)
        pipeline = self.build_pipeline(definition)
        completed = await self._completed_outputs(run)
        last_good, last_good_run_id = await self._last_good(run)

        logger.info(f"Manual rollback of run {run_id}: {list(completed)}")
        await self._store.update(run_id, current_stage="rollback")
        try:
            results = await pipeline.rollback_completed(
                run_id,
                completed,
                pipeline_env=definition.env,
                last_good=last_good,
                last_good_run_id=last_good_run_id,
                secrets=self._secrets,
            )
        finally:
            await self._store.update(run_id, current_stage=None)

        if not results:
            return []

        failed = any(r.status is StageStatus.ROLLBACK_FAILED for r in results)
        await self._store.update(
            run_id,
            state=RunState.ROLLBACK_FAILED if failed else RunState.ROLLED_BACK,
            stage_results_json=dump_results(
                run.stage_results, run.rollback_results + [r.to_dict() for r in results]
            ),
        )
        return results
