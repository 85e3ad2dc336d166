"""Reporting events for the run and job lifecycle.

This module defines the event types the coordinator emits while runs progress.
Observers subscribe to them through :class:`~litestar_ci.engine.bus.EventBus` for
logging, monitoring or notification integrations; they never influence the run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar
from uuid import UUID

from litestar_ci.core.models import utcnow
from litestar_ci.core.types import FailureReason, JobStatus, RunStatus, StepStatus

__all__ = [
    "ApprovalRecorded",
    "CIEvent",
    "JobCompleted",
    "JobQueued",
    "JobSkipped",
    "JobStarted",
    "RunCompleted",
    "RunQueued",
    "RunStarted",
    "RunnerRegistered",
    "RunnerRemoved",
    "StepReported",
]


@dataclass(kw_only=True)
class CIEvent:
    """Base class for all reporting events.

    Attributes:
        timestamp: When the event occurred.
    """

    event_type: ClassVar[str] = "event"

    timestamp: datetime = field(default_factory=utcnow)


@dataclass(kw_only=True)
class RunQueued(CIEvent):
    """Emitted when a run is created, before it is admitted by its concurrency group.

    Example:
        >>> event = RunQueued(run_id=uuid4(), workflow="ci", number=1, event_kind="push")
    """

    event_type: ClassVar[str] = "run.queued"

    run_id: UUID
    workflow: str
    number: int
    event_kind: str
    concurrency_key: str | None = None


@dataclass(kw_only=True)
class RunStarted(CIEvent):
    """Emitted when a run is admitted and its jobs start being evaluated."""

    event_type: ClassVar[str] = "run.started"

    run_id: UUID
    workflow: str
    number: int


@dataclass(kw_only=True)
class RunCompleted(CIEvent):
    """Emitted when a run reaches a terminal status.

    Attributes:
        status: Final status of the run.
        reason: Why the run did not succeed, if it did not.
        duration_seconds: Time between admission and completion.
    """

    event_type: ClassVar[str] = "run.completed"

    run_id: UUID
    workflow: str
    number: int
    status: RunStatus
    reason: FailureReason | None = None
    duration_seconds: float | None = None


@dataclass(kw_only=True)
class JobQueued(CIEvent):
    """Emitted when a job execution becomes ready and enters the dispatch queue."""

    event_type: ClassVar[str] = "job.queued"

    run_id: UUID
    execution_id: UUID
    node_id: str
    labels: frozenset[str]
    attempt: int = 1


@dataclass(kw_only=True)
class JobStarted(CIEvent):
    """Emitted when a job execution is dispatched to a runner."""

    event_type: ClassVar[str] = "job.started"

    run_id: UUID
    execution_id: UUID
    node_id: str
    runner_id: str
    attempt: int = 1


@dataclass(kw_only=True)
class JobCompleted(CIEvent):
    """Emitted when a job execution reaches succeeded, failed or cancelled."""

    event_type: ClassVar[str] = "job.completed"

    run_id: UUID
    execution_id: UUID
    node_id: str
    status: JobStatus
    reason: FailureReason | None = None
    runner_id: str | None = None


@dataclass(kw_only=True)
class JobSkipped(CIEvent):
    """Emitted when a job execution is skipped."""

    event_type: ClassVar[str] = "job.skipped"

    run_id: UUID
    execution_id: UUID
    node_id: str
    reason: FailureReason


@dataclass(kw_only=True)
class StepReported(CIEvent):
    """Emitted for every step result a runner reports."""

    event_type: ClassVar[str] = "step.reported"

    run_id: UUID
    execution_id: UUID
    node_id: str
    step_index: int
    step_name: str
    status: StepStatus


@dataclass(kw_only=True)
class ApprovalRecorded(CIEvent):
    """Emitted when an approval gate is approved or rejected."""

    event_type: ClassVar[str] = "approval.recorded"

    run_id: UUID
    gate: str
    actor: str
    approved: bool


@dataclass(kw_only=True)
class RunnerRegistered(CIEvent):
    """Emitted when a runner joins the pool."""

    event_type: ClassVar[str] = "runner.registered"

    runner_id: str
    labels: frozenset[str]


@dataclass(kw_only=True)
class RunnerRemoved(CIEvent):
    """Emitted when a runner leaves the pool, deliberately or by losing its heartbeat."""

    event_type: ClassVar[str] = "runner.removed"

    runner_id: str
    reason: str = "deregistered"
