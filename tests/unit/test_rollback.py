# tests/unit/test_rollback.py
"""Tests for RollbackController using real CommandStages."""

from pathlib import Path
from typing import Any

import pytest

from shipline.pipeline.definition import StageSpec
from shipline.pipeline.executor import CommandExecutor
from shipline.pipeline.rollback import RollbackController, notify
from shipline.pipeline.stages import CommandStage, PipelineStage, StageContext, StageResult, StageStatus


class ExplodingStage(PipelineStage):
    """Stage whose rollback raises instead of returning a result."""

    @property
    def name(self) -> str:
        return "explode"

    @property
    def has_rollback(self) -> bool:
        return True

    async def execute(self, context: StageContext) -> StageResult:
        return StageResult(stage_name=self.name, status=StageStatus.SUCCEEDED)

    async def rollback(self, context: StageContext, outputs: dict[str, Any]) -> StageResult:
        raise RuntimeError("boom")


@pytest.fixture
def executor(tmp_path: Path) -> CommandExecutor:
    return CommandExecutor(logs_dir=tmp_path / "logs")


def _stage(executor: CommandExecutor, name: str, rollback: str | None, workdir: Path) -> CommandStage:
    return CommandStage(
        StageSpec(name=name, run="true", rollback=rollback, working_dir=str(workdir)), executor
    )


@pytest.mark.asyncio
async def test_reverse_order_and_stages_without_rollback_skipped(executor, tmp_path):
    journal = "echo $SHIPLINE_STAGE >> journal.txt"
    completed = [
        (_stage(executor, "publish", journal, tmp_path), {}),
        (_stage(executor, "verify", None, tmp_path), {}),
        (_stage(executor, "deploy", journal, tmp_path), {}),
    ]

    results = await RollbackController().rollback(completed, StageContext(run_id="run-0001"))

    assert [r.stage_name for r in results] == ["deploy", "publish"]
    assert all(r.status is StageStatus.ROLLED_BACK for r in results)
    assert (tmp_path / "journal.txt").read_text().split() == ["deploy", "publish"]


@pytest.mark.asyncio
async def test_failure_does_not_stop_remaining_rollbacks(executor, tmp_path):
    completed = [
        (_stage(executor, "publish", "echo done > publish.txt", tmp_path), {}),
        (ExplodingStage(), {}),
        (_stage(executor, "deploy", "exit 3", tmp_path), {}),
    ]

    results = await RollbackController().rollback(completed, StageContext(run_id="run-0001"))

    assert [(r.stage_name, r.status) for r in results] == [
        ("deploy", StageStatus.ROLLBACK_FAILED),
        ("explode", StageStatus.ROLLBACK_FAILED),
        ("publish", StageStatus.ROLLED_BACK),
    ]
    assert results[1].error == "RuntimeError: boom"
    assert (tmp_path / "publish.txt").exists()


@pytest.mark.asyncio
async def test_nothing_to_roll_back(executor, tmp_path):
    phases: list[str] = []
    completed = [(_stage(executor, "build", None, tmp_path), {})]

    results = await RollbackController().rollback(
        completed, StageContext(run_id="run-0001"), progress_callback=lambda p, phase: phases.append(phase)
    )

    assert results == []
    assert phases == []


@pytest.mark.asyncio
async def test_last_good_outputs_reach_rollback_command(executor, tmp_path):
    context = StageContext(
        run_id="run-0002",
        last_good={"build": {"artifact": "webapp-1.4.war"}},
        last_good_run_id="run-0001",
    )
    stage = _stage(
        executor,
        "deploy",
        'echo "$SHIPLINE_LAST_GOOD_BUILD_ARTIFACT from $SHIPLINE_LAST_GOOD_RUN_ID" > redeploy.txt',
        tmp_path,
    )

    results = await RollbackController().rollback([(stage, {})], context)

    assert results[0].status is StageStatus.ROLLED_BACK
    assert (tmp_path / "redeploy.txt").read_text().strip() == "webapp-1.4.war from run-0001"


@pytest.mark.asyncio
async def test_notify_handles_sync_async_and_missing_callbacks():
    seen: list[tuple[float, str]] = []

    async def async_callback(progress: float, phase: str) -> None:
        seen.append((progress, phase))

    await notify(None, 0.5, "ignored")
    await notify(lambda p, phase: seen.append((p, phase)), 0.25, "sync")
    await notify(async_callback, 0.75, "async")

    assert seen == [(0.25, "sync"), (0.75, "async")]
