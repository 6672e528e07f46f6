# tests/unit/test_worker.py
"""
Tests for background worker and lifecycle management.

Tests cover:
    - Run execution with real shell stages (success, failure, rollback)
    - Last-known-good outputs handed to rollbacks
    - Resume from checkpoint
    - Graceful shutdown with run interruption
    - Lifecycle startup crash recovery
    - Manual rollback of a failed run
"""

import asyncio
import json
import os
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from shipline.background.lifecycle import ServerLifecycle
from shipline.background.signals import SHUTDOWN_SIGNALS, setup_signal_handlers
from shipline.background.worker import BackgroundWorker, final_state
from shipline.config.schema import ShiplineConfig
from shipline.errors import DefinitionError, RunClaimError
from shipline.models.runs import InMemoryRunStore, RunRecord, RunState, TERMINAL_STATES, generate_run_id
from shipline.models.sqlite_store import SQLiteRunStore
from shipline.pipeline.definition import parse_definition
from shipline.pipeline.orchestrator import PipelineResult
from shipline.pipeline.secrets import EnvSecretStore
from shipline.tools.retry_run import retry_run


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> SQLiteRunStore:
    """Create a temporary SQLite store for testing."""
    store = SQLiteRunStore(str(tmp_path / "test_worker.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def config(tmp_path: Path) -> ShiplineConfig:
    return ShiplineConfig(executor={"logs_dir": str(tmp_path / "logs")})


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


def _definition(workdir: Path, stages: list[dict[str, Any]], **extra) -> dict[str, Any]:
    for stage in stages:
        stage.setdefault("working_dir", str(workdir))
    return {"name": "webapp-release", "stages": stages, **extra}


async def _queue(store, data: dict[str, Any], run_id: str | None = None) -> str:
    definition = parse_definition(data)
    run_id = run_id or generate_run_id()
    await store.add(
        RunRecord(
            run_id=run_id,
            pipeline=definition.name,
            definition_path=None,
            definition_json=json.dumps(definition.model_dump(mode="json")),
            state=RunState.QUEUED,
            created_at=datetime.now(timezone.utc),
        )
    )
    return run_id


async def _wait_for(store, run_id: str, predicate, timeout: float = 10.0) -> RunRecord:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        record = await store.get(run_id)
        if predicate(record):
            return record
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Timed out waiting for run {run_id}: {record.state}")
        await asyncio.sleep(0.05)


def test_final_state_mapping():
    assert final_state(PipelineResult(success=True, outputs={})) == RunState.SUCCEEDED
    assert final_state(PipelineResult(success=False, outputs={})) == RunState.FAILED
    assert final_state(PipelineResult(success=False, outputs={}, rolled_back=True)) == RunState.ROLLED_BACK
    assert (
        final_state(PipelineResult(success=False, outputs={}, rollback_failed=True))
        == RunState.ROLLBACK_FAILED
    )


@pytest.mark.asyncio
async def test_successful_run(store, config, workdir):
    run_id = await _queue(
        store,
        _definition(
            workdir,
            [
                {"name": "build", "run": 'echo "artifact=app.war" >> "$SHIPLINE_OUTPUT"', "outputs": ["artifact"]},
                {"name": "deploy", "needs": ["build"], "inputs": {"WAR": "build.artifact"},
                 "run": 'echo "$WAR" > deployed.txt'},
            ],
        ),
    )
    phases: list[str] = []
    worker = BackgroundWorker(store, config=config)

    result = await worker.process_run_direct(run_id, progress_callback=lambda p, phase: phases.append(phase))

    assert result.success
    record = await store.get(run_id)
    assert record.state == RunState.SUCCEEDED
    assert record.progress == 1.0
    assert record.current_stage is None
    assert record.error is None
    assert record.stage_outputs == {"build": {"artifact": "app.war"}, "deploy": {}}
    assert [r["status"] for r in record.stage_results] == ["succeeded", "succeeded"]
    assert (workdir / "deployed.txt").read_text().strip() == "app.war"
    assert phases == ["build", "build_complete", "deploy", "deploy_complete"]
    assert worker.current_run_id is None


@pytest.mark.asyncio
async def test_failed_run_is_rolled_back(store, config, workdir):
    run_id = await _queue(
        store,
        _definition(
            workdir,
            [
                {"name": "publish", "run": "true", "rollback": "touch unpublished"},
                {"name": "deploy", "needs": ["publish"], "run": "exit 4"},
            ],
        ),
    )
    worker = BackgroundWorker(store, config=config)

    await worker.process_run_direct(run_id)

    record = await store.get(run_id)
    assert record.state == RunState.ROLLED_BACK
    assert record.failed_stage == "deploy"
    assert record.error == "StageCommandError: Command exited with status 4"
    assert [r["stage_name"] for r in record.rollback_results] == ["publish"]
    assert (workdir / "unpublished").exists()


@pytest.mark.asyncio
async def test_failed_rollback_state(store, config, workdir):
    run_id = await _queue(
        store,
        _definition(
            workdir,
            [
                {"name": "publish", "run": "true", "rollback": "exit 1"},
                {"name": "deploy", "needs": ["publish"], "run": "exit 1"},
            ],
        ),
    )

    await BackgroundWorker(store, config=config).process_run_direct(run_id)

    record = await store.get(run_id)
    assert record.state == RunState.ROLLBACK_FAILED
    assert record.rollback_results[0]["status"] == "rollback_failed"


@pytest.mark.asyncio
async def test_rollback_disabled_by_config(store, tmp_path, workdir):
    config = ShiplineConfig(executor={"logs_dir": str(tmp_path / "logs")}, rollback={"enabled": False})
    run_id = await _queue(
        store,
        _definition(
            workdir,
            [
                {"name": "publish", "run": "true", "rollback": "touch unpublished"},
                {"name": "deploy", "needs": ["publish"], "run": "exit 1"},
            ],
        ),
    )

    await BackgroundWorker(store, config=config).process_run_direct(run_id)

    record = await store.get(run_id)
    assert record.state == RunState.FAILED
    assert record.rollback_results == []
    assert not (workdir / "unpublished").exists()


@pytest.mark.asyncio
async def test_rollback_receives_last_known_good_outputs(store, config, workdir):
    stages = [
        {"name": "build", "run": 'echo "artifact=app-$SHIPLINE_RUN_ID.war" >> "$SHIPLINE_OUTPUT"',
         "outputs": ["artifact"]},
        {"name": "deploy", "needs": ["build"], "run": "true",
         "rollback": 'echo "$SHIPLINE_LAST_GOOD_BUILD_ARTIFACT $SHIPLINE_LAST_GOOD_RUN_ID" > restored.txt'},
        {"name": "smoke", "needs": ["deploy"], "run": "[ ! -f broken ]"},
    ]
    worker = BackgroundWorker(store, config=config)
    good_run = await _queue(store, _definition(workdir, [dict(s) for s in stages]), run_id="run-good-0001")
    await worker.process_run_direct(good_run)

    (workdir / "broken").touch()
    bad_run = await _queue(store, _definition(workdir, [dict(s) for s in stages]), run_id="run-bad-00001")
    await worker.process_run_direct(bad_run)

    assert (await store.get(bad_run)).state == RunState.ROLLED_BACK
    restored = (workdir / "restored.txt").read_text().split()
    assert restored == ["app-run-good-0001.war", "run-good-0001"]


@pytest.mark.asyncio
async def test_resume_skips_completed_stages(store, config, workdir):
    run_id = await _queue(
        store,
        _definition(
            workdir,
            [
                {"name": "build", "run": 'echo build >> journal.txt; echo "artifact=a.war" >> "$SHIPLINE_OUTPUT"',
                 "outputs": ["artifact"]},
                {"name": "deploy", "needs": ["build"], "inputs": {"WAR": "build.artifact"},
                 "run": 'echo "deploy $WAR" >> journal.txt; [ -f fixed ]'},
            ],
        ),
    )
    worker = BackgroundWorker(store, config=config)

    await worker.process_run_direct(run_id)
    assert (await store.get(run_id)).state == RunState.FAILED

    (workdir / "fixed").touch()
    await retry_run(run_id, store=store, resume=True)
    result = await worker.process_run_direct(run_id)

    assert result.success
    assert (workdir / "journal.txt").read_text().splitlines() == ["build", "deploy a.war", "deploy a.war"]
    record = await store.get(run_id)
    assert record.state == RunState.SUCCEEDED
    assert [r["status"] for r in record.stage_results] == ["cached", "succeeded"]
    assert record.resume is False


@pytest.mark.asyncio
async def test_missing_secret_fails_run(store, config, workdir):
    run_id = await _queue(
        store,
        _definition(workdir, [{"name": "deploy", "run": "true", "secrets": ["DEPLOY_KEY"]}]),
    )
    worker = BackgroundWorker(store, config=config, secret_store=EnvSecretStore(environ={}))

    await worker.process_run_direct(run_id)

    record = await store.get(run_id)
    assert record.state == RunState.FAILED
    assert record.error == "SecretNotFoundError: Missing secrets: DEPLOY_KEY"


@pytest.mark.asyncio
async def test_invalid_snapshot_marks_run_failed(store, config):
    await store.add(
        RunRecord(
            run_id="broken-run",
            pipeline="webapp-release",
            definition_path=None,
            definition_json=json.dumps({"name": "webapp-release", "stages": []}),
            state=RunState.QUEUED,
            created_at=datetime.now(timezone.utc),
        )
    )

    with pytest.raises(DefinitionError):
        await BackgroundWorker(store, config=config).process_run_direct("broken-run")

    record = await store.get("broken-run")
    assert record.state == RunState.FAILED
    assert record.error.startswith("DefinitionError:")
    assert "\n\n" in record.error


@pytest.mark.asyncio
async def test_process_run_direct_unknown_run(store, config):
    with pytest.raises(ValueError, match="not found"):
        await BackgroundWorker(store, config=config).process_run_direct("missing-run")


@pytest.mark.asyncio
async def test_run_taken_by_another_runner_is_not_executed(store, config, workdir):
    run_id = await _queue(store, _definition(workdir, [{"name": "build", "run": "touch built"}]))
    record = await store.get(run_id)
    assert await store.claim(run_id)

    with pytest.raises(RunClaimError, match=run_id):
        await BackgroundWorker(store, config=config).process_run(record)

    assert not (workdir / "built").exists()
    after = await store.get(run_id)
    assert after.state == RunState.RUNNING
    assert after.error is None


@pytest.mark.asyncio
async def test_two_workers_execute_a_run_once(store, config, workdir):
    run_id = await _queue(store, _definition(workdir, [{"name": "build", "run": "echo run >> journal.txt"}]))
    record = await store.get(run_id)
    first = BackgroundWorker(store, config=config)
    second = BackgroundWorker(store, config=config)

    outcomes = await asyncio.gather(
        first.process_run(record), second.process_run(record), return_exceptions=True
    )

    assert sum(isinstance(o, RunClaimError) for o in outcomes) == 1
    assert (workdir / "journal.txt").read_text().split() == ["run"]
    assert (await store.get(run_id)).state == RunState.SUCCEEDED

@pytest.mark.asyncio
async def test_worker_processes_queue_in_fifo_order(store, config, workdir):
    first = await _queue(store, _definition(workdir, [{"name": "a", "run": "echo first >> order.txt"}]))
    await asyncio.sleep(0.01)
    second = await _queue(store, _definition(workdir, [{"name": "a", "run": "echo second >> order.txt"}]))

    worker = BackgroundWorker(store, config=config, poll_interval=0.05)
    await worker.start()
    try:
        await _wait_for(store, second, lambda r: r.state in TERMINAL_STATES)
    finally:
        await worker.stop()

    assert (await store.get(first)).state == RunState.SUCCEEDED
    assert (workdir / "order.txt").read_text().split() == ["first", "second"]


@pytest.mark.asyncio
async def test_worker_handles_empty_queue(store, config):
    worker = BackgroundWorker(store, config=config, poll_interval=0.05)
    await worker.start()
    await asyncio.sleep(0.2)
    await worker.stop()

    assert worker.current_run_id is None


@pytest.mark.asyncio
async def test_stop_marks_running_run_interrupted(store, config, workdir):
    run_id = await _queue(
        store,
        _definition(workdir, [{"name": "build", "run": "true"}, {"name": "slow", "needs": ["build"], "run": "sleep 30"}]),
    )
    worker = BackgroundWorker(store, config=config, poll_interval=0.05)
    await worker.start()

    await _wait_for(store, run_id, lambda r: r.current_stage == "slow")
    await asyncio.sleep(0.2)
    await worker.stop()

    record = await store.get(run_id)
    assert record.state == RunState.INTERRUPTED
    assert record.error == "Runner shutdown during execution"
    assert record.resume is True


@pytest.mark.asyncio
async def test_in_memory_store_runs_without_checkpoints(config, workdir):
    store = InMemoryRunStore()
    run_id = await _queue(store, _definition(workdir, [{"name": "build", "run": "true"}]))

    result = await BackgroundWorker(store, config=config).process_run_direct(run_id)

    assert result.success
    assert (await store.get(run_id)).state == RunState.SUCCEEDED


@pytest.mark.asyncio
async def test_manual_rollback_of_failed_run(store, tmp_path, workdir):
    config = ShiplineConfig(executor={"logs_dir": str(tmp_path / "logs")}, rollback={"enabled": False})
    run_id = await _queue(
        store,
        _definition(
            workdir,
            [
                {"name": "publish", "run": "true", "rollback": "echo publish >> reverted.txt"},
                {"name": "deploy", "needs": ["publish"], "run": "true", "rollback": "echo deploy >> reverted.txt"},
                {"name": "smoke", "needs": ["deploy"], "run": "exit 1"},
            ],
        ),
    )
    worker = BackgroundWorker(store, config=config)
    await worker.process_run_direct(run_id)
    assert (await store.get(run_id)).state == RunState.FAILED

    results = await worker.rollback_run(run_id)

    assert [r.stage_name for r in results] == ["deploy", "publish"]
    assert (workdir / "reverted.txt").read_text().split() == ["deploy", "publish"]
    record = await store.get(run_id)
    assert record.state == RunState.ROLLED_BACK
    assert record.current_stage is None
    assert len(record.rollback_results) == 2
    assert [r["stage_name"] for r in record.stage_results] == ["publish", "deploy", "smoke"]


@pytest.mark.asyncio
async def test_manual_rollback_with_nothing_to_revert(store, config, workdir):
    run_id = await _queue(store, _definition(workdir, [{"name": "build", "run": "exit 1"}]))
    worker = BackgroundWorker(store, config=config)
    await worker.process_run_direct(run_id)

    assert await worker.rollback_run(run_id) == []
    assert (await store.get(run_id)).state == RunState.FAILED


@pytest.mark.asyncio
async def test_lifecycle_startup_recovery(tmp_path: Path, config):
    """Runs left running by a dead runner are interrupted on startup."""
    db_path = str(tmp_path / "lifecycle.db")
    store = SQLiteRunStore(db_path)
    await store.initialize()
    await store.add(
        RunRecord(
            run_id="stale-run",
            pipeline="webapp-release",
            definition_path=None,
            definition_json=json.dumps({"name": "webapp-release", "stages": [{"name": "a", "run": "true"}]}),
            state=RunState.RUNNING,
            created_at=datetime.now(timezone.utc),
        )
    )

    lifecycle = ServerLifecycle(db_path, config=config, poll_interval=0.05)
    await lifecycle.startup(handle_signals=False)
    try:
        record = await lifecycle.store.get("stale-run")
        assert record.state == RunState.INTERRUPTED
        assert record.resume is True
    finally:
        await lifecycle.shutdown()

    await asyncio.wait_for(lifecycle.wait_stopped(), timeout=1)


@pytest.mark.asyncio
async def test_sigterm_stops_worker_once_and_closes_store():
    worker = AsyncMock()
    worker.current_run_id = "run-000001"
    run_store = AsyncMock()
    done = asyncio.Event()
    loop = asyncio.get_running_loop()

    setup_signal_handlers(worker, run_store, on_shutdown=done)
    try:
        os.kill(os.getpid(), signal.SIGTERM)
        await asyncio.wait_for(done.wait(), timeout=5)
        os.kill(os.getpid(), signal.SIGINT)
        await asyncio.sleep(0.1)
    finally:
        for sig in SHUTDOWN_SIGNALS:
            loop.remove_signal_handler(sig)

    worker.stop.assert_awaited_once()
    run_store.close.assert_awaited_once()
