"""Integration tests for database persistence layer.

Tests the SQLAlchemy models, repositories and the run store using an async
SQLite database file, so that every session of the store sees the same data.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from litestar_ci.core.types import EventKind, FailureReason, JobStatus, RunStatus, StepStatus
from litestar_ci.db.models import JobExecutionModel, RunModel
from litestar_ci.db.repositories import JobExecutionRepository, RunRepository
from litestar_ci.db.store import SQLAlchemyRunStore
from tests.conftest import CHAIN_WORKFLOW, complete, push_event

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
async def async_engine(tmp_path: Path):
    """Create an async SQLite engine on a temporary file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ci.db'}", echo=False)

    # Enable foreign keys for SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(RunModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory the run store uses."""
    return async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def async_session(session_maker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Create an async session for testing."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def sql_store(session_maker: async_sessionmaker[AsyncSession]) -> SQLAlchemyRunStore:
    """Create a run store over the test database."""
    return SQLAlchemyRunStore(session_maker)


def run_model(workflow_name: str = "ci", number: int = 1, **kwargs) -> RunModel:
    return RunModel(
        id=uuid4(),
        workflow_name=workflow_name,
        number=number,
        event_kind=EventKind.PUSH,
        ref="refs/heads/main",
        **kwargs,
    )


# =============================================================================
# Run Store Tests
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
class TestSQLAlchemyRunStore:
    """Tests for saving runs from the coordinator."""

    async def test_coordinator_saves_progress(
        self, make_coordinator, workflow_store, runner_client, sql_store: SQLAlchemyRunStore
    ) -> None:
        coordinator = make_coordinator(persistence=sql_store)
        workflow_store.load(CHAIN_WORKFLOW)
        await coordinator.register_runner("r1", {"linux"}, runner_client)
        run = (await coordinator.handle_event(push_event()))[0]

        model, executions = await sql_store.load(run.id)
        assert model is not None
        assert model.status == RunStatus.RUNNING
        assert [record.status for record in executions] == [JobStatus.RUNNING, JobStatus.PENDING]

        await complete(coordinator, runner_client.last, output="yes")
        await complete(coordinator, runner_client.last)

        model, executions = await sql_store.load(run.id)
        assert model is not None
        assert model.status == RunStatus.SUCCEEDED
        assert model.workflow_name == "chain"
        assert model.number == 1
        assert model.event_kind == EventKind.PUSH
        assert model.actor == "octocat"
        assert model.completed_at is not None
        assert model.display_title == "chain"
        first, second = executions
        assert (first.node_id, second.node_id) == ("a", "b")
        assert first.status == JobStatus.SUCCEEDED
        assert first.runner_id == "r1"
        assert first.labels == ["linux"]
        assert first.outputs == {"output": "yes"}
        assert first.steps[0]["status"] == str(StepStatus.SUCCEEDED)
        assert first.steps[0]["name"] == "echo a"

    async def test_failure_reason_is_saved(
        self, make_coordinator, workflow_store, runner_client, sql_store: SQLAlchemyRunStore
    ) -> None:
        coordinator = make_coordinator(persistence=sql_store)
        workflow_store.load(CHAIN_WORKFLOW)
        await coordinator.register_runner("r1", {"linux"}, runner_client)
        run = (await coordinator.handle_event(push_event()))[0]

        await complete(coordinator, runner_client.last, StepStatus.FAILED)

        model, executions = await sql_store.load(run.id)
        assert model is not None
        assert model.status == RunStatus.FAILED
        assert model.reason == FailureReason.STEP_FAILED
        assert executions[1].reason == FailureReason.DEPENDENCY_FAILED

    async def test_load_unknown_run(self, sql_store: SQLAlchemyRunStore) -> None:
        assert await sql_store.load(uuid4()) == (None, [])


# =============================================================================
# Repository Tests
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
class TestRunRepository:
    """Tests for RunRepository queries."""

    async def test_find_by_workflow(self, async_session: AsyncSession) -> None:
        repo = RunRepository(session=async_session)
        await repo.add(run_model(number=1, status=RunStatus.SUCCEEDED))
        await repo.add(run_model(number=2, status=RunStatus.FAILED))
        await repo.add(run_model("nightly", number=1))

        runs, total = await repo.find_by_workflow("ci")
        assert total == 2
        assert {run.number for run in runs} == {1, 2}

        failed, total = await repo.find_by_workflow("ci", status=RunStatus.FAILED)
        assert total == 1
        assert failed[0].number == 2

    async def test_find_active(self, async_session: AsyncSession) -> None:
        repo = RunRepository(session=async_session)
        await repo.add(run_model(number=1, status=RunStatus.SUCCEEDED))
        await repo.add(run_model(number=2, status=RunStatus.RUNNING))
        await repo.add(run_model(number=3, status=RunStatus.PENDING))

        active = await repo.find_active()

        assert sorted(run.number for run in active) == [2, 3]

    async def test_find_by_concurrency_key(self, async_session: AsyncSession) -> None:
        repo = RunRepository(session=async_session)
        await repo.add(run_model(number=1, status=RunStatus.CANCELLED, concurrency_key="deploy-main"))
        await repo.add(run_model(number=2, status=RunStatus.RUNNING, concurrency_key="deploy-main"))
        await repo.add(run_model(number=3, status=RunStatus.RUNNING, concurrency_key="deploy-dev"))

        active = await repo.find_by_concurrency_key("deploy-main")
        every = await repo.find_by_concurrency_key("deploy-main", active_only=False)

        assert [run.number for run in active] == [2]
        assert sorted(run.number for run in every) == [1, 2]


@pytest.mark.integration
@pytest.mark.asyncio
class TestJobExecutionRepository:
    """Tests for JobExecutionRepository queries."""

    async def test_find_by_run_and_failed(self, async_session: AsyncSession) -> None:
        runs = RunRepository(session=async_session)
        repo = JobExecutionRepository(session=async_session)
        run = await runs.add(run_model())
        other = await runs.add(run_model(number=2))

        for node_id, status, run_id in [
            ("test (3.12)", JobStatus.FAILED, run.id),
            ("build", JobStatus.SUCCEEDED, run.id),
            ("build", JobStatus.FAILED, other.id),
        ]:
            await repo.add(
                JobExecutionModel(
                    id=uuid4(),
                    run_id=run_id,
                    node_id=node_id,
                    job_id=node_id.split(" ")[0],
                    status=status,
                    timeout=60.0,
                )
            )

        executions = await repo.find_by_run(run.id)
        assert [execution.node_id for execution in executions] == ["build", "test (3.12)"]

        assert len(await repo.find_failed()) == 2
        failed = await repo.find_failed(run.id)
        assert [execution.node_id for execution in failed] == ["test (3.12)"]
