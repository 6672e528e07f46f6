# tests/unit/test_sqlite_store.py
"""
Unit tests for SQLiteRunStore persistence.

Tests CRUD operations, crash recovery, FIFO ordering, last-known-good
lookups and result serialization.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from shipline.models.runs import (
    InMemoryRunStore,
    RunRecord,
    RunState,
    dump_results,
    generate_run_id,
)
from shipline.models.schema import SCHEMA_VERSION, init_db
from shipline.models.sqlite_store import SQLiteRunStore

BASE_TIME = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)


def _record(run_id: str, state: RunState = RunState.QUEUED, minutes: int = 0, **kwargs) -> RunRecord:
    return RunRecord(
        run_id=run_id,
        pipeline=kwargs.pop("pipeline", "webapp-release"),
        definition_path=kwargs.pop("definition_path", "/srv/pipeline.yaml"),
        definition_json=kwargs.pop("definition_json", '{"name": "webapp-release"}'),
        state=state,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **kwargs,
    )


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> SQLiteRunStore:
    """Create and initialize a test SQLite store."""
    store = SQLiteRunStore(str(tmp_path / "test_runs.db"))
    await store.initialize()
    return store


@pytest.mark.asyncio
async def test_add_and_get_roundtrip(store: SQLiteRunStore):
    """Adding a run and reading it back preserves all fields."""
    record = _record(
        "run-000001",
        branch="main",
        progress=0.25,
        current_stage="build",
        error=None,
        resume=True,
    )
    await store.add(record)

    retrieved = await store.get("run-000001")

    assert retrieved is not None
    assert retrieved.run_id == record.run_id
    assert retrieved.pipeline == "webapp-release"
    assert retrieved.definition_path == "/srv/pipeline.yaml"
    assert retrieved.definition == {"name": "webapp-release"}
    assert retrieved.branch == "main"
    assert retrieved.state == RunState.QUEUED
    assert retrieved.progress == 0.25
    assert retrieved.current_stage == "build"
    assert retrieved.resume is True
    assert retrieved.created_at == record.created_at
    assert retrieved.updated_at is not None  # Auto-set on add


@pytest.mark.asyncio
async def test_add_duplicate_raises_error(store: SQLiteRunStore):
    await store.add(_record("run-000001"))

    with pytest.raises(ValueError, match="already exists"):
        await store.add(_record("run-000001"))


@pytest.mark.asyncio
async def test_get_returns_none_for_nonexistent_run(store: SQLiteRunStore):
    assert await store.get("nonexistent-run") is None


@pytest.mark.asyncio
async def test_list_all_newest_first_with_pipeline_filter(store: SQLiteRunStore):
    await store.add(_record("run-000001", minutes=0))
    await store.add(_record("run-000002", minutes=10, pipeline="api-release"))
    await store.add(_record("run-000003", minutes=20))

    all_runs = await store.list_all()
    webapp_runs = await store.list_all(pipeline="webapp-release")

    assert [r.run_id for r in all_runs] == ["run-000003", "run-000002", "run-000001"]
    assert [r.run_id for r in webapp_runs] == ["run-000003", "run-000001"]


@pytest.mark.asyncio
async def test_update_changes_fields_and_sets_updated_at(store: SQLiteRunStore):
    await store.add(_record("run-000001"))

    await store.update(
        "run-000001",
        state=RunState.FAILED,
        progress=0.5,
        failed_stage="deploy",
        error="StageCommandError: Command exited with status 1",
        resume=False,
    )

    updated = await store.get("run-000001")

    assert updated.state == RunState.FAILED
    assert updated.progress == 0.5
    assert updated.failed_stage == "deploy"
    assert updated.error.startswith("StageCommandError")
    assert updated.resume is False
    assert updated.updated_at > updated.created_at


@pytest.mark.asyncio
async def test_update_nonexistent_run_raises_error(store: SQLiteRunStore):
    with pytest.raises(ValueError, match="not found"):
        await store.update("nonexistent-run", state=RunState.FAILED)


@pytest.mark.asyncio
async def test_update_invalid_field_raises_error(store: SQLiteRunStore):
    await store.add(_record("run-000001"))

    with pytest.raises(ValueError, match="Invalid field names"):
        await store.update("run-000001", invalid_field="value")
    with pytest.raises(ValueError, match="Invalid field names"):
        await store.update("run-000001", run_id="other")


@pytest.mark.asyncio
async def test_get_next_queued_is_fifo(store: SQLiteRunStore):
    await store.add(_record("queued-0001", minutes=0))
    await store.add(_record("running-0001", RunState.RUNNING, minutes=5))
    await store.add(_record("queued-0002", minutes=10))

    next_run = await store.get_next_queued()

    assert next_run.run_id == "queued-0001"


@pytest.mark.asyncio
async def test_get_next_queued_returns_none_when_nothing_queued(store: SQLiteRunStore):
    await store.add(_record("running-0001", RunState.RUNNING))

    assert await store.get_next_queued() is None


@pytest.mark.asyncio
async def test_claim_lets_exactly_one_runner_take_a_run(store: SQLiteRunStore, tmp_path: Path):
    await store.add(_record("run-000001"))
    other = SQLiteRunStore(str(tmp_path / "test_runs.db"))

    claims = await asyncio.gather(store.claim("run-000001"), other.claim("run-000001"))

    assert sorted(claims) == [False, True]
    assert (await store.get("run-000001")).state == RunState.RUNNING
    assert await store.get_next_queued() is None


@pytest.mark.asyncio
async def test_claim_refuses_runs_that_are_not_queued(store: SQLiteRunStore):
    await store.add(_record("run-000001", RunState.FAILED))

    assert await store.claim("run-000001") is False
    assert await store.claim("missing") is False
    assert (await store.get("run-000001")).state == RunState.FAILED

@pytest.mark.asyncio
async def test_get_last_successful_is_per_pipeline(store: SQLiteRunStore):
    await store.add(_record("run-000001", RunState.SUCCEEDED, minutes=0))
    await store.add(_record("run-000002", RunState.FAILED, minutes=10))
    await store.add(_record("run-000003", RunState.SUCCEEDED, minutes=20, pipeline="api-release"))
    await store.update("run-000001", progress=1.0)

    last_good = await store.get_last_successful("webapp-release")

    assert last_good.run_id == "run-000001"
    assert await store.get_last_successful("unknown-pipeline") is None


@pytest.mark.asyncio
async def test_crash_recovery_marks_running_runs_as_interrupted(tmp_path: Path):
    """Runs left 'running' by a dead process become 'interrupted' and resumable."""
    db_path = str(tmp_path / "crash_test.db")

    store1 = SQLiteRunStore(db_path)
    await store1.initialize()
    await store1.add(_record("running-run", RunState.RUNNING, progress=0.7, current_stage="deploy"))
    await store1.add(_record("queued-run", RunState.QUEUED))
    await store1.close()

    store2 = SQLiteRunStore(db_path)
    await store2.initialize()

    recovered = await store2.get("running-run")
    untouched = await store2.get("queued-run")

    assert recovered.state == RunState.INTERRUPTED
    assert recovered.error == "Runner stopped during execution"
    assert recovered.resume is True
    assert untouched.state == RunState.QUEUED

    await store2.close()


@pytest.mark.asyncio
async def test_initialize_without_recovery_leaves_running_runs(tmp_path: Path):
    db_path = str(tmp_path / "reader.db")
    owner = SQLiteRunStore(db_path)
    await owner.initialize()
    await owner.add(_record("running-run", RunState.RUNNING))

    reader = SQLiteRunStore(db_path)
    await reader.initialize(recover=False)

    assert (await reader.get("running-run")).state == RunState.RUNNING


@pytest.mark.asyncio
async def test_stage_results_serialization(store: SQLiteRunStore):
    stages = [
        {"stage_name": "build", "status": "succeeded", "outputs": {"artifact": "app.war"}},
        {"stage_name": "test", "status": "cached", "outputs": {}},
        {"stage_name": "deploy", "status": "failed", "outputs": {}, "error": "boom"},
    ]
    rollbacks = [{"stage_name": "build", "status": "rolled_back", "outputs": {}}]
    await store.add(_record("run-000001", stage_results_json=dump_results(stages, rollbacks)))

    retrieved = await store.get("run-000001")

    assert retrieved.stage_results == stages
    assert retrieved.rollback_results == rollbacks
    assert retrieved.stage_outputs == {"build": {"artifact": "app.war"}, "test": {}}


def test_record_without_results():
    record = _record("run-000001")

    assert record.stage_results == []
    assert record.rollback_results == []
    assert record.stage_outputs == {}


def test_generate_run_id():
    run_id = generate_run_id()

    assert len(run_id) == 12
    assert run_id != generate_run_id()
    int(run_id, 16)


class TestInMemoryRunStore:
    """The in-memory store honours the same contract."""

    @pytest.mark.asyncio
    async def test_crud_and_queries(self):
        store = InMemoryRunStore()
        await store.add(_record("run-000001", minutes=0))
        await store.add(_record("run-000002", RunState.SUCCEEDED, minutes=10))

        with pytest.raises(ValueError, match="already exists"):
            await store.add(_record("run-000001"))

        assert [r.run_id for r in await store.list_all()] == ["run-000002", "run-000001"]
        assert (await store.get_next_queued()).run_id == "run-000001"
        assert (await store.get_last_successful("webapp-release")).run_id == "run-000002"

        assert await store.claim("run-000001") is True
        assert await store.claim("run-000001") is False
        assert await store.claim("run-000002") is False
        assert (await store.get("run-000001")).state == RunState.RUNNING
        assert await store.get_next_queued() is None

        with pytest.raises(ValueError, match="Invalid field names"):
            await store.update("run-000001", bogus=1)
        with pytest.raises(ValueError, match="not found"):
            await store.update("missing", state=RunState.FAILED)


class TestSchema:
    @pytest.mark.asyncio
    async def test_init_db_enables_wal_and_records_version(self, tmp_path: Path):
        db_path = str(tmp_path / "schema.db")

        await init_db(db_path)
        await init_db(db_path)  # idempotent

        async with aiosqlite.connect(db_path) as db:
            mode = await (await db.execute("PRAGMA journal_mode")).fetchone()
            version = await (await db.execute("SELECT version FROM schema_version")).fetchall()

        assert mode[0] == "wal"
        assert version == [(SCHEMA_VERSION,)]

    @pytest.mark.asyncio
    async def test_newer_schema_is_rejected(self, tmp_path: Path):
        db_path = str(tmp_path / "future.db")
        async with aiosqlite.connect(db_path) as db:
            await db.execute("CREATE TABLE schema_version (version INTEGER)")
            await db.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION + 1,))
            await db.commit()

        with pytest.raises(RuntimeError, match="newer than supported"):
            await init_db(db_path)
