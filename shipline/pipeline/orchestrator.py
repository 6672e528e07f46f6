# shipline/pipeline/orchestrator.py
"""
Multi-stage release pipeline orchestrator.

Executes stages sequentially in dependency order, passes outputs forward,
checkpoints progress, applies partial-failure rules and triggers rollback.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from shipline.errors import GraphError
from shipline.pipeline.checkpoint import CheckpointManager
from shipline.pipeline.rollback import RollbackController, notify
from shipline.pipeline.secrets import SecretStore
from shipline.pipeline.stages.base import PipelineStage, StageContext, StageResult, StageStatus

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """
    Result of executing the full release pipeline.

    Attributes:
        success: Whether the release succeeded (allowed failures don't count)
        outputs: Dictionary mapping stage_name -> stage outputs
        stage_results: One StageResult per stage, in execution order
        failed_stage: Name of the first blocking failure (if success=False)
        error: Error message of that failure
        rollback_results: Results of rollback commands, in rollback order
        rolled_back: Rollback ran and every rollback succeeded
        rollback_failed: At least one rollback failed
    """

    success: bool
    outputs: dict[str, dict[str, Any]]
    stage_results: list[StageResult] = field(default_factory=list)
    failed_stage: str | None = None
    error: str | None = None
    rollback_results: list[StageResult] = field(default_factory=list)
    rolled_back: bool = False
    rollback_failed: bool = False

    def result_for(self, stage_name: str) -> StageResult | None:
        for result in self.stage_results:
            if result.stage_name == stage_name:
                return result
        return None


class ReleasePipeline:
    """
    Multi-stage release pipeline orchestrator.

    Executes stages one at a time in the order given (which must be a
    topological order), with each stage receiving the outputs of the stages
    that completed before it. Supports idempotent resume via checkpoints.

    Workflow:
    1. Load checkpoint (resume) or clear it (fresh run)
    2. Execute each runnable stage; skip stages whose dependencies failed
    3. Save checkpoint after each successful stage
    4. On a blocking failure, roll back completed stages

    Example:
        stages = create_stages(definition, executor, config)
        pipeline = ReleasePipeline(stages, checkpoint_mgr, RollbackController())
        result = await pipeline.execute(run_id)
    """

    def __init__(
        self,
        stages: list[PipelineStage],
        checkpoint_manager: CheckpointManager | None = None,
        rollback_controller: RollbackController | None = None,
        fail_fast: bool = True,
        rollback_on_failure: bool = True,
    ) -> None:
        """
        Initialize release pipeline.

        Args:
            stages: Stages in topological order
            checkpoint_manager: CheckpointManager for persistence (None = no checkpoints)
            rollback_controller: RollbackController (None = never roll back)
            fail_fast: Skip every remaining stage after the first blocking failure
            rollback_on_failure: Roll back completed stages when the release fails

        Raises:
            GraphError: If names repeat or a stage needs a stage not listed before it
        """
        seen: set[str] = set()
        for stage in stages:
            if stage.name in seen:
                raise GraphError(f"duplicate stage name '{stage.name}'")
            for dep in stage.needs:
                if dep not in seen:
                    raise GraphError(
                        f"stage '{stage.name}' needs '{dep}', which is not scheduled before it"
                    )
            seen.add(stage.name)

        self._stages = stages
        self._checkpoint_mgr = checkpoint_manager
        self._rollback = rollback_controller
        self._fail_fast = fail_fast
        self._rollback_on_failure = rollback_on_failure
        logger.info(f"Created ReleasePipeline with {len(stages)} stages")

    @property
    def stages(self) -> list[PipelineStage]:
        return list(self._stages)

    def _dependency_ok(self, dep_result: StageResult, stage: PipelineStage) -> bool:
        if dep_result.ok:
            return True
        # An allowed failure only blocks stages that read its outputs
        return (
            dep_result.status is StageStatus.FAILED
            and dep_result.allowed_failure
            and dep_result.stage_name not in stage.consumes
        )

    async def execute(
        self,
        run_id: str,
        resume: bool = False,
        progress_callback: Callable[[float, str], Any] | None = None,
        pipeline_env: dict[str, str] | None = None,
        last_good: dict[str, dict[str, Any]] | None = None,
        last_good_run_id: str | None = None,
        secrets: SecretStore | None = None,
    ) -> PipelineResult:
        """
        Execute the release pipeline.

        Args:
            run_id: Run identifier (for checkpointing and log paths)
            resume: If True, skip stages recorded in the checkpoint
            progress_callback: Optional callback(progress, phase), sync or async
            pipeline_env: Environment shared by all stages
            last_good: Outputs of the last successful run (for rollbacks)
            last_good_run_id: Run ID of the last successful run
            secrets: Secret store for stage-boundary resolution

        Returns:
            PipelineResult (stage failures are reported, not raised)
        """
        total = len(self._stages)
        results: dict[str, StageResult] = {}
        outputs: dict[str, dict[str, Any]] = {}
        completed: list[tuple[PipelineStage, dict[str, Any]]] = []

        if resume and self._checkpoint_mgr is not None:
            prior = await self._checkpoint_mgr.load_checkpoint(run_id)
            known = {stage.name for stage in self._stages}
            for name in prior:
                if name not in known:
                    logger.warning(f"Ignoring checkpoint for unknown stage '{name}'")
            for stage in self._stages:
                if stage.name in prior:
                    results[stage.name] = StageResult(
                        stage_name=stage.name,
                        status=StageStatus.CACHED,
                        outputs=prior[stage.name],
                    )
                    outputs[stage.name] = prior[stage.name]
                    completed.append((stage, prior[stage.name]))
            logger.info(f"Resuming run {run_id}: {len(completed)}/{total} stage(s) already complete")
        elif self._checkpoint_mgr is not None:
            await self._checkpoint_mgr.clear_checkpoint(run_id)
            logger.info(f"Starting fresh pipeline for run {run_id}")

        def context() -> StageContext:
            return StageContext(
                run_id=run_id,
                pipeline_env=dict(pipeline_env or {}),
                upstream_outputs=dict(outputs),
                last_good=dict(last_good or {}),
                last_good_run_id=last_good_run_id,
                secrets=secrets,
            )

        blocking: StageResult | None = None

        for index, stage in enumerate(self._stages):
            done_progress = (index + 1) / total

            if stage.name in results:
                await notify(progress_callback, done_progress, f"{stage.name}_complete")
                continue

            if self._fail_fast and blocking is not None:
                results[stage.name] = StageResult(
                    stage_name=stage.name,
                    status=StageStatus.SKIPPED,
                    error=f"Skipped: stage '{blocking.stage_name}' failed (fail_fast)",
                )
                logger.info(f"[{stage.name}] Skipped (fail_fast)")
                continue

            blocked = [dep for dep in stage.needs if not self._dependency_ok(results[dep], stage)]
            if blocked:
                results[stage.name] = StageResult(
                    stage_name=stage.name,
                    status=StageStatus.SKIPPED,
                    error=f"Skipped: upstream stage(s) did not succeed: {', '.join(blocked)}",
                )
                logger.info(f"[{stage.name}] Skipped (upstream {blocked})")
                await notify(progress_callback, done_progress, f"{stage.name}_skipped")
                continue

            logger.info(f"Executing stage: {stage.name}")
            await notify(progress_callback, index / total, stage.name)

            result = await stage.execute(context())
            results[stage.name] = result

            if result.ok:
                if self._checkpoint_mgr is not None:
                    await self._checkpoint_mgr.save_stage(run_id, stage.name, result.outputs)
                outputs[stage.name] = result.outputs
                completed.append((stage, result.outputs))
                await notify(progress_callback, done_progress, f"{stage.name}_complete")
                logger.info(f"Stage '{stage.name}' completed successfully")
            elif stage.allow_failure:
                logger.warning(f"[{stage.name}] Failed, but failure is allowed: {result.error}")
                await notify(progress_callback, done_progress, f"{stage.name}_failed")
            else:
                logger.error(f"[{stage.name}] Stage failed: {result.error}")
                await notify(progress_callback, done_progress, f"{stage.name}_failed")
                if blocking is None:
                    blocking = result

        stage_results = [results[stage.name] for stage in self._stages]

        if blocking is None:
            logger.info(f"Run {run_id}: all stages completed")
            return PipelineResult(success=True, outputs=outputs, stage_results=stage_results)

        rollback_results: list[StageResult] = []
        if self._rollback_on_failure and self._rollback is not None and completed:
            rollback_results = await self._rollback.rollback(
                completed, context(), progress_callback=progress_callback
            )
            reverted = [r.stage_name for r in rollback_results if r.status is StageStatus.ROLLED_BACK]
            if reverted and self._checkpoint_mgr is not None:
                await self._checkpoint_mgr.remove_stages(run_id, reverted)

        rollback_failed = any(r.status is StageStatus.ROLLBACK_FAILED for r in rollback_results)
        return PipelineResult(
            success=False,
            outputs=outputs,
            stage_results=stage_results,
            failed_stage=blocking.stage_name,
            error=blocking.error,
            rollback_results=rollback_results,
            rolled_back=bool(rollback_results) and not rollback_failed,
            rollback_failed=rollback_failed,
        )

    async def rollback_completed(
        self,
        run_id: str,
        completed_outputs: dict[str, dict[str, Any]],
        pipeline_env: dict[str, str] | None = None,
        last_good: dict[str, dict[str, Any]] | None = None,
        last_good_run_id: str | None = None,
        secrets: SecretStore | None = None,
    ) -> list[StageResult]:
        """
        Roll back a previously executed run from its checkpointed outputs.

        Used for manual rollback of a failed run that was not rolled back.

        Args:
            completed_outputs: stage name -> outputs, in completion order
        """
        if self._rollback is None:
            raise RuntimeError("No rollback controller configured")

        by_name = {stage.name: stage for stage in self._stages}
        completed = [
            (by_name[name], stage_outputs)
            for name, stage_outputs in completed_outputs.items()
            if name in by_name
        ]
        context = StageContext(
            run_id=run_id,
            pipeline_env=dict(pipeline_env or {}),
            upstream_outputs=dict(completed_outputs),
            last_good=dict(last_good or {}),
            last_good_run_id=last_good_run_id,
            secrets=secrets,
        )
        results = await self._rollback.rollback(completed, context)

        reverted = [r.stage_name for r in results if r.status is StageStatus.ROLLED_BACK]
        if reverted and self._checkpoint_mgr is not None:
            await self._checkpoint_mgr.remove_stages(run_id, reverted)
        return results

    def get_progress(self, completed_stages: set[str]) -> float:
        """
        Calculate overall pipeline progress from completed stages.

        Args:
            completed_stages: Set of completed stage names

        Returns:
            Progress from 0.0 to 1.0
        """
        if not self._stages:
            return 0.0
        done = sum(1 for stage in self._stages if stage.name in completed_stages)
        return done / len(self._stages)
