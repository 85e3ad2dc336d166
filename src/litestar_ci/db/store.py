"""Run store backed by SQLAlchemy.

:class:`SQLAlchemyRunStore` implements the coordinator's persistence protocol.
The coordinator calls :meth:`SQLAlchemyRunStore.save_run` after every state
change; each call uses its own session and commits, so the saved state is
always the latest known state of the run.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from litestar_ci.db.models import JobExecutionModel, RunModel
from litestar_ci.db.repositories import JobExecutionRepository, RunRepository

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from litestar_ci.core.models import JobExecution, Run, StepResult

__all__ = ["SQLAlchemyRunStore"]

logger = logging.getLogger(__name__)


def _step_data(step: StepResult) -> dict[str, Any]:
    return {
        "index": step.index,
        "name": step.name,
        "status": str(step.status),
        "exit_code": step.exit_code,
        "outputs": dict(step.outputs),
        "error": step.error,
        "step_id": step.step_id,
        "started_at": step.started_at.isoformat() if step.started_at else None,
        "completed_at": step.completed_at.isoformat() if step.completed_at else None,
    }


class SQLAlchemyRunStore:
    """Persists runs and their job executions.

    Attributes:
        session_maker: Factory of the sessions each save uses.

    Example:
        >>> engine = create_async_engine("sqlite+aiosqlite:///ci.db")
        >>> store = SQLAlchemyRunStore(async_sessionmaker(engine, expire_on_commit=False))
        >>> coordinator = ExecutionCoordinator(workflows, persistence=store)
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def save_run(self, run: Run) -> None:
        """Insert or update ``run`` and every one of its job executions."""
        async with self.session_maker() as session:
            runs = RunRepository(session=session)
            executions = JobExecutionRepository(session=session)

            model = await runs.get_one_or_none(id=run.id)
            if model is None:
                model = RunModel(id=run.id, created_at=run.created_at)
                self._apply_run(model, run)
                await runs.add(model)
            else:
                self._apply_run(model, run)
                await runs.update(model)

            for execution in run.executions.values():
                record = await executions.get_one_or_none(id=execution.id)
                if record is None:
                    record = JobExecutionModel(id=execution.id, run_id=run.id)
                    self._apply_execution(record, execution)
                    await executions.add(record)
                else:
                    self._apply_execution(record, execution)
                    await executions.update(record)

            await session.commit()
        logger.debug("Saved run %s (%s)", run.id, run.status)

    async def load(self, run_id: UUID) -> tuple[RunModel | None, Sequence[JobExecutionModel]]:
        """Read back a saved run and its job executions."""
        async with self.session_maker() as session:
            model = await RunRepository(session=session).get_one_or_none(id=run_id)
            if model is None:
                return None, []
            return model, await JobExecutionRepository(session=session).find_by_run(run_id)

    @staticmethod
    def _apply_run(model: RunModel, run: Run) -> None:
        model.workflow_name = run.workflow_name
        model.number = run.number
        model.status = run.status
        model.reason = run.reason
        model.event_kind = run.event.kind
        model.ref = run.event.ref
        model.sha = run.event.sha
        model.actor = run.event.actor
        model.concurrency_key = run.concurrency_key
        model.display_title = run.display_title
        model.inputs = dict(run.inputs)
        model.approvals = dict(run.approvals)
        model.rejections = dict(run.rejections)
        model.started_at = run.started_at
        model.completed_at = run.completed_at

    @staticmethod
    def _apply_execution(record: JobExecutionModel, execution: JobExecution) -> None:
        record.node_id = execution.node_id
        record.job_id = execution.job_id
        record.status = execution.status
        record.reason = execution.reason
        record.runner_id = execution.runner_id
        record.attempt = execution.attempt
        record.labels = sorted(execution.labels)
        record.matrix = dict(execution.matrix)
        record.timeout = execution.timeout
        record.steps = [_step_data(step) for step in execution.steps]
        record.outputs = dict(execution.outputs)
        record.error = execution.error
        record.queued_at = execution.queued_at
        record.started_at = execution.started_at
        record.completed_at = execution.completed_at
