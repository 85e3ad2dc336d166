"""SQLAlchemy models for run persistence.

This module defines the database models for persisting run state:
- RunModel: One workflow run, with its triggering event and final status
- JobExecutionModel: One execution of a job node (a matrix leg counts as one)

Secret values are never part of either model.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from advanced_alchemy.base import UUIDAuditBase
from sqlalchemy import JSON, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from litestar_ci.core.types import EventKind, FailureReason, JobStatus, RunStatus

__all__ = ["JobExecutionModel", "RunModel"]


# Cross-database JSON type: uses JSONB for PostgreSQL, JSON for others (SQLite, MySQL, etc.)
JSONType = JSON().with_variant(JSONB, "postgresql")


class RunModel(UUIDAuditBase):
    """Persisted workflow run.

    The primary key is the id of the in-memory run, so saving the same run
    again updates the row.

    Attributes:
        workflow_name: Name of the workflow the run executes.
        number: Per-workflow run number.
        status: Current run status.
        reason: Why the run did not succeed, if it did not.
        event_kind: Kind of the triggering event.
        ref: Git ref of the triggering event.
        sha: Commit of the triggering event.
        actor: Who caused the triggering event.
        concurrency_key: Rendered concurrency group, if the workflow declares one.
        display_title: Rendered run name.
        inputs: Manual dispatch inputs.
        approvals: Approved gates and who approved them.
        rejections: Rejected gates and who rejected them.
        started_at: When the run was admitted.
        completed_at: When the run reached a terminal status.
        executions: Job executions of the run.
    """

    __tablename__ = "ci_runs"
    __table_args__ = (
        Index("ix_ci_runs_workflow_name", "workflow_name"),
        Index("ix_ci_runs_status", "status"),
        Index("ix_ci_runs_concurrency_key", "concurrency_key"),
    )

    workflow_name: Mapped[str] = mapped_column(String(255))
    number: Mapped[int] = mapped_column(Integer)
    status: Mapped[RunStatus] = mapped_column(
        Enum(RunStatus, native_enum=False, length=50),
        default=RunStatus.PENDING,
    )
    reason: Mapped[FailureReason | None] = mapped_column(
        Enum(FailureReason, native_enum=False, length=50),
        nullable=True,
    )
    event_kind: Mapped[EventKind] = mapped_column(Enum(EventKind, native_enum=False, length=50))
    ref: Mapped[str] = mapped_column(String(255), default="")
    sha: Mapped[str] = mapped_column(String(64), default="")
    actor: Mapped[str] = mapped_column(String(255), default="")
    concurrency_key: Mapped[str | None] = mapped_column(String(500), nullable=True)
    display_title: Mapped[str] = mapped_column(String(500), default="")
    inputs: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    approvals: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    rejections: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    executions: Mapped[list[JobExecutionModel]] = relationship(
        back_populates="run",
        lazy="noload",
        order_by="JobExecutionModel.node_id",
    )


class JobExecutionModel(UUIDAuditBase):
    """Persisted job execution.

    Attributes:
        run_id: Foreign key to the run.
        node_id: Graph node id, e.g. ``test (3.12, linux)``.
        job_id: Id of the job definition.
        status: Current job status.
        reason: Why the execution did not succeed, if it did not.
        runner_id: Runner the execution was dispatched to.
        attempt: Attempt number.
        labels: Labels the runner had to advertise.
        matrix: Matrix values of the leg.
        timeout: Job timeout in seconds.
        steps: Reported step results.
        outputs: Job outputs.
        error: Error message, if any.
        queued_at: When the execution entered the dispatch queue.
        started_at: When the execution was dispatched.
        completed_at: When the execution reached a terminal status.
    """

    __tablename__ = "ci_job_executions"
    __table_args__ = (
        Index("ix_ci_job_executions_run_id", "run_id"),
        Index("ix_ci_job_executions_status", "status"),
    )

    run_id: Mapped[UUID] = mapped_column(ForeignKey("ci_runs.id", ondelete="CASCADE"))
    node_id: Mapped[str] = mapped_column(String(500))
    job_id: Mapped[str] = mapped_column(String(255))
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, length=50),
        default=JobStatus.PENDING,
    )
    reason: Mapped[FailureReason | None] = mapped_column(
        Enum(FailureReason, native_enum=False, length=50),
        nullable=True,
    )
    runner_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    labels: Mapped[list[str]] = mapped_column(JSONType, default=list)
    matrix: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    timeout: Mapped[float] = mapped_column(Float)
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    outputs: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped[RunModel] = relationship(back_populates="executions")
