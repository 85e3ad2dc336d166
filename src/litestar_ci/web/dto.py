"""Data Transfer Objects for the CI web API.

This module defines DTOs for serializing and deserializing workflows, runs,
job executions and runners in REST API requests and responses, together with
the functions building them from engine objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from litestar_ci.core.models import JobResult, StepResult
from litestar_ci.core.types import StepStatus

if TYPE_CHECKING:
    from litestar_ci.core.definition import WorkflowDefinition
    from litestar_ci.core.models import JobExecution, Run
    from litestar_ci.engine.runners import RunnerRecord

__all__ = [
    "ApprovalDTO",
    "DispatchWorkflowDTO",
    "EventDTO",
    "GraphDTO",
    "JobExecutionDTO",
    "JobResultDTO",
    "RegisterRunnerDTO",
    "RunDTO",
    "RunDetailDTO",
    "RunnerDTO",
    "StepResultDTO",
    "WorkflowDTO",
    "execution_to_dto",
    "run_to_detail_dto",
    "run_to_dto",
    "runner_to_dto",
    "workflow_to_dto",
]


@dataclass
class DispatchWorkflowDTO:
    """DTO for starting a workflow manually.

    Attributes:
        ref: Git ref to run on; defaults to the default branch.
        inputs: Values for the workflow's ``workflow_dispatch`` inputs.
        actor: Who started the run.
    """

    ref: str | None = None
    inputs: dict[str, Any] | None = None
    actor: str = ""


@dataclass
class EventDTO:
    """DTO for an incoming repository event.

    Attributes:
        kind: Event kind (``push``, ``pull_request``, ``release``, ``workflow_dispatch``).
        ref: Full git ref.
        actor: Who caused the event.
        paths: Changed paths, if known.
        action: Activity type, e.g. ``opened``.
        repository: Repository name.
        sha: Commit the event points at.
        base_ref: Base branch of a pull request.
        payload: Raw event payload.
        workflow: Target workflow of a manual dispatch.
        inputs: Inputs of a manual dispatch.
    """

    kind: str
    ref: str = ""
    actor: str = ""
    paths: list[str] | None = None
    action: str | None = None
    repository: str = ""
    sha: str = ""
    base_ref: str | None = None
    payload: dict[str, Any] | None = None
    workflow: str | None = None
    inputs: dict[str, Any] | None = None


@dataclass
class ApprovalDTO:
    """DTO for deciding an approval gate.

    Attributes:
        approved: True to approve, False to reject.
        actor: Who decided.
    """

    approved: bool = True
    actor: str = ""


@dataclass
class RegisterRunnerDTO:
    """DTO for registering a runner.

    Attributes:
        id: Runner id.
        labels: Labels the runner advertises.
        callback_url: URL the agent receives jobs on. Without it the agent polls
            ``GET /runners/{id}/messages``.
    """

    id: str
    labels: list[str]
    callback_url: str | None = None


@dataclass
class StepResultDTO:
    """DTO for one step result.

    Attributes:
        index: Position of the step within the job.
        name: Step name.
        status: Step status.
        exit_code: Process exit code, if any.
        outputs: Step outputs.
        error: Error message, if the step failed.
        step_id: The step's ``id``, if any.
        started_at: When the step started.
        completed_at: When the step finished.
    """

    index: int
    name: str
    status: str
    exit_code: int | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    step_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_result(self) -> StepResult:
        return StepResult(
            index=self.index,
            name=self.name,
            status=StepStatus(self.status),
            exit_code=self.exit_code,
            outputs=dict(self.outputs),
            error=self.error,
            step_id=self.step_id,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


@dataclass
class JobResultDTO:
    """DTO for the completion report of a job.

    Attributes:
        steps: Every step result.
        outputs: Job outputs.
        error: Error outside of any step, if any.
    """

    steps: list[StepResultDTO] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    def to_result(self) -> JobResult:
        return JobResult(steps=[step.to_result() for step in self.steps], outputs=dict(self.outputs), error=self.error)


@dataclass
class WorkflowDTO:
    """DTO for a workflow definition.

    Attributes:
        name: Workflow name.
        source: File the workflow was loaded from, if any.
        triggers: Event kinds the workflow reacts to.
        jobs: Job ids mapped to the job ids they need.
        schedules: Cron expressions of schedule triggers.
        concurrency: Concurrency group template, if any.
    """

    name: str
    source: str | None
    triggers: list[str]
    jobs: dict[str, list[str]]
    schedules: list[str]
    concurrency: str | None = None


@dataclass
class GraphDTO:
    """DTO for graph visualization data.

    Attributes:
        mermaid_source: MermaidJS graph definition.
        nodes: List of node objects for custom rendering.
        edges: List of edge objects for custom rendering.
    """

    mermaid_source: str
    nodes: list[dict[str, Any]]
    edges: list[dict[str, Any]]


@dataclass
class JobExecutionDTO:
    """DTO for one job execution.

    Attributes:
        id: Execution id.
        node_id: Graph node id.
        job_id: Job id.
        status: Current status.
        reason: Failure reason, if any.
        runner_id: Runner the execution ran on.
        attempt: Attempt number.
        labels: Required runner labels.
        matrix: Matrix values of the leg.
        steps: Reported step results.
        outputs: Job outputs.
        error: Error message, if any.
        queued_at: When the execution was queued.
        started_at: When the execution was dispatched.
        completed_at: When the execution finished.
    """

    id: UUID
    node_id: str
    job_id: str
    status: str
    reason: str | None
    runner_id: str | None
    attempt: int
    labels: list[str]
    matrix: dict[str, Any]
    steps: list[StepResultDTO]
    outputs: dict[str, str]
    error: str | None = None
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class RunDTO:
    """DTO for a run summary.

    Attributes:
        id: Run id.
        workflow: Workflow name.
        number: Run number.
        status: Current status.
        reason: Failure or cancellation reason, if any.
        event_kind: Kind of the triggering event.
        ref: Git ref of the triggering event.
        actor: Who caused the triggering event.
        concurrency_key: Rendered concurrency group, if any.
        display_title: Rendered run name.
        created_at: When the run was created.
        started_at: When the run was admitted.
        completed_at: When the run finished.
    """

    id: UUID
    workflow: str
    number: int
    status: str
    reason: str | None
    event_kind: str
    ref: str
    actor: str
    concurrency_key: str | None
    display_title: str
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class RunDetailDTO(RunDTO):
    """DTO for a run with its job executions.

    Attributes:
        inputs: Dispatch inputs.
        approvals: Approved gates and who approved them.
        rejections: Rejected gates and who rejected them.
        jobs: Every job execution, in graph order.
    """

    inputs: dict[str, Any] = field(default_factory=dict)
    approvals: dict[str, str] = field(default_factory=dict)
    rejections: dict[str, str] = field(default_factory=dict)
    jobs: list[JobExecutionDTO] = field(default_factory=list)


@dataclass
class RunnerDTO:
    """DTO for a registered runner.

    Attributes:
        id: Runner id.
        labels: Advertised labels.
        busy: Whether the runner is executing a job.
        execution_id: The job execution it is busy with.
        registered_at: When the runner registered.
        last_heartbeat: When the runner last reported in.
    """

    id: str
    labels: list[str]
    busy: bool
    execution_id: UUID | None
    registered_at: datetime
    last_heartbeat: datetime


def workflow_to_dto(definition: WorkflowDefinition) -> WorkflowDTO:
    return WorkflowDTO(
        name=definition.name,
        source=definition.source,
        triggers=[str(trigger.kind) for trigger in definition.triggers],
        jobs={job_id: list(job.needs) for job_id, job in definition.jobs.items()},
        schedules=list(definition.schedules),
        concurrency=definition.concurrency.group if definition.concurrency else None,
    )


def _step_to_dto(step: StepResult) -> StepResultDTO:
    return StepResultDTO(
        index=step.index,
        name=step.name,
        status=str(step.status),
        exit_code=step.exit_code,
        outputs=dict(step.outputs),
        error=step.error,
        step_id=step.step_id,
        started_at=step.started_at,
        completed_at=step.completed_at,
    )


def execution_to_dto(execution: JobExecution) -> JobExecutionDTO:
    return JobExecutionDTO(
        id=execution.id,
        node_id=execution.node_id,
        job_id=execution.job_id,
        status=str(execution.status),
        reason=str(execution.reason) if execution.reason else None,
        runner_id=execution.runner_id,
        attempt=execution.attempt,
        labels=sorted(execution.labels),
        matrix=dict(execution.matrix),
        steps=[_step_to_dto(step) for step in execution.steps],
        outputs=dict(execution.outputs),
        error=execution.error,
        queued_at=execution.queued_at,
        started_at=execution.started_at,
        completed_at=execution.completed_at,
    )


def _run_fields(run: Run) -> dict[str, Any]:
    return {
        "id": run.id,
        "workflow": run.workflow_name,
        "number": run.number,
        "status": str(run.status),
        "reason": str(run.reason) if run.reason else None,
        "event_kind": str(run.event.kind),
        "ref": run.event.ref,
        "actor": run.event.actor,
        "concurrency_key": run.concurrency_key,
        "display_title": run.display_title,
        "created_at": run.created_at,
        "started_at": run.started_at,
        "completed_at": run.completed_at,
    }


def run_to_dto(run: Run) -> RunDTO:
    return RunDTO(**_run_fields(run))


def run_to_detail_dto(run: Run) -> RunDetailDTO:
    return RunDetailDTO(
        **_run_fields(run),
        inputs=dict(run.inputs),
        approvals=dict(run.approvals),
        rejections=dict(run.rejections),
        jobs=[execution_to_dto(execution) for execution in run.executions.values()],
    )


def runner_to_dto(record: RunnerRecord) -> RunnerDTO:
    return RunnerDTO(
        id=record.id,
        labels=sorted(record.labels),
        busy=not record.idle,
        execution_id=record.execution_id,
        registered_at=record.registered_at,
        last_heartbeat=record.last_heartbeat,
    )
