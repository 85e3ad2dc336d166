"""Runtime data models for litestar-ci.

This module provides the mutable dataclasses the coordinator tracks while a run
is in flight: the triggering event, runs, job executions and step results. State
changes go through ``transition()``, which enforces the state machines declared in
:mod:`litestar_ci.core.types`.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from litestar_ci.core.types import (
    JOB_TERMINAL_STATUSES,
    JOB_TRANSITIONS,
    RUN_TERMINAL_STATUSES,
    RUN_TRANSITIONS,
    EventKind,
    FailureReason,
    JobStatus,
    RunStatus,
    StepStatus,
)
from litestar_ci.exceptions import InvalidTransitionError, JobExecutionNotFoundError

if TYPE_CHECKING:
    from litestar_ci.core.definition import WorkflowDefinition

__all__ = [
    "ConcurrencyGroup",
    "DispatchRequest",
    "DispatchStep",
    "Event",
    "JobExecution",
    "JobResult",
    "Run",
    "StepResult",
    "utcnow",
]

_HEADS = "refs/heads/"
_TAGS = "refs/tags/"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


@dataclass
class Event:
    """A repository event arriving from source control or the scheduler.

    Attributes:
        kind: Kind of event.
        ref: Full git ref, e.g. ``refs/heads/main`` or ``refs/tags/v1.0``.
        actor: Who caused the event.
        paths: Paths changed by the event, if known.
        action: Activity type (``opened``, ``published``, ...), if any.
        repository: Repository the event belongs to.
        sha: Commit the event points at.
        base_ref: Base branch of a pull request.
        payload: Raw event payload, exposed to expressions as ``github.event``.
        workflow: Target workflow of a manual dispatch.
        inputs: Inputs of a manual dispatch.
        id: Unique identifier of the event.
        received_at: When the event arrived.
    """

    kind: EventKind
    ref: str = ""
    actor: str = ""
    paths: tuple[str, ...] = ()
    action: str | None = None
    repository: str = ""
    sha: str = ""
    base_ref: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    workflow: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    received_at: datetime = field(default_factory=utcnow)

    @property
    def branch(self) -> str | None:
        """Branch name for branch refs, None otherwise."""
        return self.ref[len(_HEADS) :] if self.ref.startswith(_HEADS) else None

    @property
    def tag(self) -> str | None:
        """Tag name for tag refs, None otherwise."""
        return self.ref[len(_TAGS) :] if self.ref.startswith(_TAGS) else None

    @property
    def ref_name(self) -> str:
        """Short name of the ref."""
        return self.branch or self.tag or self.ref

    @property
    def base_branch(self) -> str | None:
        """Base branch name of a pull request, with any ``refs/heads/`` prefix removed."""
        if self.base_ref is None:
            return None
        return self.base_ref[len(_HEADS) :] if self.base_ref.startswith(_HEADS) else self.base_ref


@dataclass
class StepResult:
    """Outcome of one step, as reported by a runner.

    Attributes:
        index: Position of the step within the job.
        name: Display name of the step.
        status: Step outcome.
        exit_code: Process exit code, if the step ran a command.
        outputs: Outputs the step produced.
        error: Error message, if the step failed.
        step_id: The step's ``id``, if it declares one.
        started_at: When the step started.
        completed_at: When the step finished.
    """

    index: int
    name: str
    status: StepStatus
    exit_code: int | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    step_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class JobResult:
    """Completion report of a job, sent by the runner that executed it.

    Attributes:
        steps: Result of every step, in order.
        outputs: Job outputs.
        error: Error message, if the job failed outside of a step.
    """

    steps: list[StepResult] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    error: str | None = None


@dataclass
class JobExecution:
    """One execution of a job node within a run.

    A matrix job yields one execution per leg. Executions are created pending
    and move through the job state machine via :meth:`transition`.

    Attributes:
        run_id: Run the execution belongs to.
        node_id: Graph node id (the job id, or ``"job (a, b)"`` for a matrix leg).
        job_id: Id of the job definition.
        labels: Labels the runner must advertise.
        timeout: Job timeout in seconds.
        matrix: Matrix values of the leg.
        continue_on_error: Whether a failure is tolerated by the run.
        status: Current status.
        reason: Why the execution did not succeed, if it did not.
        runner_id: Runner the execution is assigned to, if any.
        attempt: Current attempt number, starting at 1.
        steps: Step results reported so far.
        outputs: Job outputs.
        error: Error message, if any.
        cancel_requested: Whether a cancel signal was sent to the runner.
        id: Unique identifier of the execution.
        queued_at: When the execution entered the queue.
        started_at: When the execution was dispatched.
        completed_at: When the execution reached a terminal status.
    """

    run_id: UUID
    node_id: str
    job_id: str
    labels: frozenset[str]
    timeout: float
    matrix: dict[str, Any] = field(default_factory=dict)
    continue_on_error: bool = False
    status: JobStatus = JobStatus.PENDING
    reason: FailureReason | None = None
    runner_id: str | None = None
    attempt: int = 1
    steps: list[StepResult] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    cancel_requested: bool = False
    id: UUID = field(default_factory=uuid4)
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in JOB_TERMINAL_STATUSES

    @property
    def tolerated(self) -> bool:
        """True for a failed optional job: its failure does not fail the run."""
        return self.status == JobStatus.FAILED and self.continue_on_error

    @property
    def succeeded(self) -> bool:
        """True when the execution succeeded or its failure is tolerated."""
        return self.status == JobStatus.SUCCEEDED or self.tolerated

    def can_transition(self, to_status: JobStatus) -> bool:
        return to_status in JOB_TRANSITIONS.get(self.status, frozenset())

    def transition(
        self,
        to_status: JobStatus,
        reason: FailureReason | None = None,
        now: datetime | None = None,
    ) -> None:
        """Move the execution to ``to_status``.

        Moving a running execution back to queued starts a new attempt.

        Args:
            to_status: The requested status.
            reason: Failure reason for terminal statuses other than succeeded.
            now: Timestamp of the transition; defaults to the current time.

        Raises:
            InvalidTransitionError: If the job state machine forbids the move.
        """
        if not self.can_transition(to_status):
            raise InvalidTransitionError(self.node_id, self.status, to_status)

        now = now or utcnow()
        previous = self.status
        self.status = to_status

        if to_status == JobStatus.QUEUED:
            self.queued_at = now
            if previous == JobStatus.RUNNING:
                self.attempt += 1
                self.runner_id = None
                self.steps = []
                self.outputs = {}
                self.error = None
                self.started_at = None
                self.cancel_requested = False
        elif to_status == JobStatus.RUNNING:
            self.started_at = now
        else:
            self.completed_at = now
            self.reason = reason if to_status != JobStatus.SUCCEEDED else None


@dataclass
class Run:
    """One execution of a workflow triggered by an event.

    Attributes:
        number: Run number, increasing per workflow.
        definition: Snapshot of the workflow definition the run was created from.
        event: The triggering event.
        executions: Job executions keyed by node id, in graph order.
        status: Current run status.
        reason: Why the run was cancelled or failed, if it was.
        concurrency_key: Rendered concurrency group key, if any.
        display_title: Rendered ``run-name``, or the workflow name when it has none.
        inputs: Inputs of a manual dispatch, merged with declared defaults.
        approvals: Approved gates and who approved them.
        rejections: Rejected gates and who rejected them.
        cancel_requested: Whether the run was cancelled.
        id: Unique identifier of the run.
        created_at: When the run was created.
        started_at: When the run was admitted.
        completed_at: When the run reached a terminal status.
    """

    number: int
    definition: WorkflowDefinition
    event: Event
    executions: dict[str, JobExecution] = field(default_factory=dict)
    status: RunStatus = RunStatus.PENDING
    reason: FailureReason | None = None
    concurrency_key: str | None = None
    display_title: str = ""
    inputs: dict[str, Any] = field(default_factory=dict)
    approvals: dict[str, str] = field(default_factory=dict)
    rejections: dict[str, str] = field(default_factory=dict)
    cancel_requested: bool = False
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def workflow_name(self) -> str:
        return self.definition.name

    @property
    def is_terminal(self) -> bool:
        return self.status in RUN_TERMINAL_STATUSES

    @property
    def duration(self) -> float | None:
        """Seconds between admission and completion, if both happened."""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def get_execution(self, execution_id: UUID) -> JobExecution:
        """Return the execution with ``execution_id``.

        Raises:
            JobExecutionNotFoundError: If the run holds no such execution.
        """
        for execution in self.executions.values():
            if execution.id == execution_id:
                return execution
        raise JobExecutionNotFoundError(execution_id)

    def executions_for_job(self, job_id: str) -> list[JobExecution]:
        """Return every execution (matrix leg) of ``job_id``."""
        return [execution for execution in self.executions.values() if execution.job_id == job_id]

    def active_executions(self) -> list[JobExecution]:
        return [execution for execution in self.executions.values() if not execution.is_terminal]

    def transition(
        self,
        to_status: RunStatus,
        reason: FailureReason | None = None,
        now: datetime | None = None,
    ) -> None:
        """Move the run to ``to_status``.

        Raises:
            InvalidTransitionError: If the run state machine forbids the move.
        """
        if to_status not in RUN_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(str(self.id), self.status, to_status)

        now = now or utcnow()
        self.status = to_status
        if to_status == RunStatus.RUNNING:
            self.started_at = now
        else:
            self.completed_at = now
            self.reason = reason


@dataclass
class ConcurrencyGroup:
    """Book-keeping of one concurrency group.

    Attributes:
        key: Rendered group key.
        cancel_in_progress: Whether new runs supersede the active one.
        active: The run currently admitted, if any.
        waiting: Runs waiting for admission, oldest first.
    """

    key: str
    cancel_in_progress: bool = False
    active: UUID | None = None
    waiting: deque[UUID] = field(default_factory=deque)

    @property
    def is_idle(self) -> bool:
        return self.active is None and not self.waiting


@dataclass(frozen=True)
class DispatchStep:
    """A step as handed to a runner, with every template already rendered.

    Attributes:
        index: Position of the step within the job.
        name: Display name of the step.
        uses: Action reference, for action steps.
        run: Rendered shell command, for command steps.
        inputs: Rendered ``with:`` values.
        env: Rendered step environment.
        condition: The step's ``if:`` text, evaluated by the runner.
        id: The step's ``id``, if any.
        continue_on_error: Whether a failure of this step is tolerated.
        timeout: Step timeout in seconds, if any.
        shell: Shell override, if any.
        working_directory: Working directory override, if any.
    """

    index: int
    name: str
    uses: str | None = None
    run: str | None = None
    inputs: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    condition: str | None = None
    id: str | None = None
    continue_on_error: bool = False
    timeout: float | None = None
    shell: str | None = None
    working_directory: str | None = None


@dataclass(frozen=True)
class DispatchRequest:
    """Everything a runner needs to execute one job execution.

    Secret values only ever live here; ``masks`` lists them so the runner can
    redact its logs.

    Attributes:
        execution_id: Job execution being dispatched.
        run_id: Run the execution belongs to.
        workflow: Workflow name.
        node_id: Graph node id.
        job_id: Job id.
        attempt: Attempt number.
        runner_id: Runner the job was assigned to.
        steps: Rendered steps, in order.
        env: Merged workflow and job environment, rendered.
        context: Read-only expression contexts for step conditions.
        timeout: Job timeout in seconds.
        masks: Secret values to redact from output.
    """

    execution_id: UUID
    run_id: UUID
    workflow: str
    node_id: str
    job_id: str
    attempt: int
    runner_id: str
    steps: tuple[DispatchStep, ...]
    env: dict[str, str] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    timeout: float = 0.0
    masks: tuple[str, ...] = ()
