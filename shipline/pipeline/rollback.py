# shipline/pipeline/rollback.py
"""
Rollback controller.

Reverts completed stages of a failed release, newest first, handing each
rollback command the last-known-good outputs of the pipeline.
"""

import logging
from collections.abc import Callable
from typing import Any

from shipline.pipeline.stages.base import PipelineStage, StageContext, StageResult, StageStatus

logger = logging.getLogger(__name__)


async def notify(callback: Callable[[float, str], Any] | None, progress: float, phase: str) -> None:
    """Invoke a sync or async progress callback."""
    if callback is None:
        return
    result_or_coro = callback(progress, phase)
    if hasattr(result_or_coro, "__await__"):
        await result_or_coro


class RollbackController:
    """
    Reverts completed stages in reverse completion order.

    A failing rollback does not stop the others: every stage that declares a
    rollback gets its chance, and each one yields a StageResult.
    """

    async def rollback(
        self,
        completed: list[tuple[PipelineStage, dict[str, Any]]],
        context: StageContext,
        progress_callback: Callable[[float, str], Any] | None = None,
        progress: float = 1.0,
    ) -> list[StageResult]:
        """
        Roll back completed stages.

        Args:
            completed: (stage, outputs) pairs in completion order
            context: Run context (upstream outputs, last-known-good, secrets)
            progress_callback: Optional callback(progress, phase)
            progress: Progress value reported with rollback phases

        Returns:
            One StageResult per stage that declares a rollback, in rollback order
        """
        candidates = [(stage, outputs) for stage, outputs in reversed(completed) if stage.has_rollback]
        if not candidates:
            logger.info("Nothing to roll back (no completed stage declares a rollback)")
            return []

        logger.warning(
            f"Rolling back {len(candidates)} stage(s) for run {context.run_id}: "
            f"{[stage.name for stage, _ in candidates]}"
        )
        await notify(progress_callback, progress, "rollback")

        results: list[StageResult] = []
        for stage, outputs in candidates:
            await notify(progress_callback, progress, f"rollback:{stage.name}")
            try:
                result = await stage.rollback(context, outputs)
            except Exception as e:
                logger.exception(f"[{stage.name}] Rollback raised unexpectedly")
                result = StageResult(
                    stage_name=stage.name,
                    status=StageStatus.ROLLBACK_FAILED,
                    error=f"{type(e).__name__}: {e}",
                )
            results.append(result)

        failed = [r.stage_name for r in results if r.status is StageStatus.ROLLBACK_FAILED]
        if failed:
            logger.error(f"Rollback incomplete for run {context.run_id}: failed for {failed}")
        else:
            logger.info(f"Rollback complete for run {context.run_id}")
        return results
