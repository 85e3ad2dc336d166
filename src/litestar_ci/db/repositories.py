"""Repository implementations for run persistence.

This module provides async repositories for CRUD operations on run models
using advanced-alchemy's repository pattern.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from advanced_alchemy.filters import LimitOffset, OrderBy
from advanced_alchemy.repository import SQLAlchemyAsyncRepository
from sqlalchemy import and_, select

from litestar_ci.core.types import JobStatus, RunStatus
from litestar_ci.db.models import JobExecutionModel, RunModel

if TYPE_CHECKING:
    from collections.abc import Sequence
    from uuid import UUID

__all__ = ["JobExecutionRepository", "RunRepository"]


class RunRepository(SQLAlchemyAsyncRepository[RunModel]):
    """Repository for run CRUD operations.

    Provides methods for querying runs by workflow, status and concurrency group.
    """

    model_type = RunModel

    async def find_by_workflow(
        self,
        workflow_name: str,
        status: RunStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[Sequence[RunModel], int]:
        """Find runs of a workflow with optional status filter.

        Args:
            workflow_name: The workflow name to filter by.
            status: Optional status filter.
            limit: Maximum number of results.
            offset: Number of results to skip.

        Returns:
            Tuple of (runs, total_count), newest first.
        """
        conditions = [RunModel.workflow_name == workflow_name]

        if status:
            conditions.append(RunModel.status == status)

        return await self.list_and_count(
            *conditions,
            LimitOffset(limit=limit, offset=offset),
            OrderBy(field_name="created_at", sort_order="desc"),
        )

    async def find_active(self) -> Sequence[RunModel]:
        """Find all pending or running runs, oldest first."""
        stmt = (
            select(RunModel)
            .where(RunModel.status.in_([RunStatus.PENDING, RunStatus.RUNNING]))
            .order_by(RunModel.created_at)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_by_concurrency_key(
        self,
        concurrency_key: str,
        active_only: bool = True,
    ) -> Sequence[RunModel]:
        """Find the runs of a concurrency group.

        Args:
            concurrency_key: Rendered concurrency group key.
            active_only: If True, only return pending or running runs.

        Returns:
            List of runs, oldest first.
        """
        conditions = [RunModel.concurrency_key == concurrency_key]

        if active_only:
            conditions.append(RunModel.status.in_([RunStatus.PENDING, RunStatus.RUNNING]))

        stmt = select(RunModel).where(and_(*conditions)).order_by(RunModel.created_at)
        result = await self.session.execute(stmt)
        return result.scalars().all()


class JobExecutionRepository(SQLAlchemyAsyncRepository[JobExecutionModel]):
    """Repository for job execution CRUD operations."""

    model_type = JobExecutionModel

    async def find_by_run(self, run_id: UUID) -> Sequence[JobExecutionModel]:
        """Find every job execution of a run, ordered by node id.

        Args:
            run_id: The run ID.

        Returns:
            List of job executions.
        """
        stmt = select(JobExecutionModel).where(JobExecutionModel.run_id == run_id).order_by(JobExecutionModel.node_id)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def find_failed(self, run_id: UUID | None = None) -> Sequence[JobExecutionModel]:
        """Find failed job executions.

        Args:
            run_id: Optional run ID filter.

        Returns:
            List of failed job executions, most recent first.
        """
        conditions = [JobExecutionModel.status == JobStatus.FAILED]

        if run_id:
            conditions.append(JobExecutionModel.run_id == run_id)

        stmt = select(JobExecutionModel).where(and_(*conditions)).order_by(JobExecutionModel.completed_at.desc())
        result = await self.session.execute(stmt)
        return result.scalars().all()
