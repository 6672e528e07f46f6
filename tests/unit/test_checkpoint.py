# tests/unit/test_checkpoint.py
"""
Unit tests for CheckpointManager.

Checkpoints live in the runs.pipeline_state column, so every test runs
against a real SQLite store in tmp_path.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from shipline.models.runs import RunRecord, RunState
from shipline.models.sqlite_store import SQLiteRunStore
from shipline.pipeline.checkpoint import CheckpointManager


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> SQLiteRunStore:
    store = SQLiteRunStore(str(tmp_path / "runs.db"))
    await store.initialize()
    await store.add(
        RunRecord(
            run_id="run-0001",
            pipeline="release",
            definition_path=None,
            definition_json="{}",
            state=RunState.RUNNING,
            created_at=datetime.now(timezone.utc),
        )
    )
    return store


@pytest.fixture
def manager(store: SQLiteRunStore) -> CheckpointManager:
    return CheckpointManager(store.db_path)


@pytest.mark.asyncio
async def test_empty_checkpoint(manager: CheckpointManager):
    assert await manager.load_checkpoint("run-0001") == {}


@pytest.mark.asyncio
async def test_save_and_load_preserves_completion_order(manager: CheckpointManager):
    await manager.save_stage("run-0001", "build", {"artifact": "app.war"})
    await manager.save_stage("run-0001", "test", {})
    await manager.save_stage("run-0001", "deploy", {"url": "http://app"})

    checkpoint = await manager.load_checkpoint("run-0001")

    assert list(checkpoint) == ["build", "test", "deploy"]
    assert checkpoint["build"] == {"artifact": "app.war"}
    assert checkpoint["deploy"] == {"url": "http://app"}


@pytest.mark.asyncio
async def test_checkpoint_is_stored_on_the_run(manager: CheckpointManager, store: SQLiteRunStore):
    await manager.save_stage("run-0001", "build", {"artifact": "app.war"})

    record = await store.get("run-0001")
    state = json.loads(record.pipeline_state)

    assert state["build"]["output"] == {"artifact": "app.war"}
    assert "completed_at" in state["build"]


@pytest.mark.asyncio
async def test_remove_stages(manager: CheckpointManager, store: SQLiteRunStore):
    await manager.save_stage("run-0001", "build", {"artifact": "app.war"})
    await manager.save_stage("run-0001", "deploy", {})

    await manager.remove_stages("run-0001", ["deploy"])
    assert list(await manager.load_checkpoint("run-0001")) == ["build"]

    await manager.remove_stages("run-0001", ["build"])
    assert await manager.load_checkpoint("run-0001") == {}
    assert (await store.get("run-0001")).pipeline_state is None


@pytest.mark.asyncio
async def test_clear_checkpoint(manager: CheckpointManager):
    await manager.save_stage("run-0001", "build", {"artifact": "app.war"})

    await manager.clear_checkpoint("run-0001")

    assert await manager.load_checkpoint("run-0001") == {}


@pytest.mark.asyncio
async def test_stale_checkpoint_still_loads(manager: CheckpointManager, store: SQLiteRunStore):
    old = (datetime.now(timezone.utc) - timedelta(hours=48)).isoformat()
    await store.update(
        "run-0001",
        pipeline_state=json.dumps({"build": {"output": {"a": "1"}, "completed_at": old}}),
    )

    assert await manager.load_checkpoint("run-0001") == {"build": {"a": "1"}}


@pytest.mark.asyncio
async def test_unknown_run_raises(manager: CheckpointManager):
    with pytest.raises(ValueError, match="not found"):
        await manager.save_stage("missing-run", "build", {})
    with pytest.raises(ValueError, match="not found"):
        await manager.load_checkpoint("missing-run")
    with pytest.raises(ValueError, match="not found"):
        await manager.clear_checkpoint("missing-run")
