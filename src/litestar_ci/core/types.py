"""Core type definitions for litestar-ci.

This module defines the enums and state-machine tables used
throughout the engine.
"""

from __future__ import annotations

from enum import StrEnum, auto
__all__ = [
    "JOB_TERMINAL_STATUSES",
    "JOB_TRANSITIONS",
    "RUN_TERMINAL_STATUSES",
    "RUN_TRANSITIONS",
    "EventKind",
    "FailureReason",
    "JobStatus",
    "RunStatus",
    "StepStatus",
]


class EventKind(StrEnum):
    """Kind of repository event a workflow can be triggered by.

    Attributes:
        PUSH: Commits pushed to a branch or a tag.
        PULL_REQUEST: Pull request activity against a base branch.
        SCHEDULE: Time-based trigger, raised by the schedule poller only.
        RELEASE: Release activity (published, created, ...).
        WORKFLOW_DISPATCH: Manual dispatch of a single workflow.
    """

    PUSH = auto()
    PULL_REQUEST = auto()
    SCHEDULE = auto()
    RELEASE = auto()
    WORKFLOW_DISPATCH = auto()


class JobStatus(StrEnum):
    """Runtime status of one job execution within a run.

    Attributes:
        PENDING: Waiting for dependencies, conditions or an approval gate.
        QUEUED: Ready, waiting for a runner with matching labels.
        RUNNING: Dispatched to a runner.
        SUCCEEDED: Every required step succeeded.
        FAILED: A step failed, the job timed out or its runner was lost.
        CANCELLED: Cancelled with its run or by matrix fail-fast.
        SKIPPED: Condition false or a dependency did not succeed.
    """

    PENDING = auto()
    QUEUED = auto()
    RUNNING = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    CANCELLED = auto()
    SKIPPED = auto()


class RunStatus(StrEnum):
    """Overall status of a run.

    Attributes:
        PENDING: Created, waiting for its concurrency group.
        RUNNING: Admitted; jobs are being evaluated and dispatched.
        SUCCEEDED: Every required job succeeded or was skipped.
        FAILED: A required job failed.
        CANCELLED: The run was cancelled before completion.
    """

    PENDING = auto()
    RUNNING = auto()
    SUCCEEDED = auto()
    FAILED = auto()
    CANCELLED = auto()


class StepStatus(StrEnum):
    """Outcome of a single step, as reported by a runner."""

    SUCCEEDED = auto()
    FAILED = auto()
    SKIPPED = auto()
    CANCELLED = auto()


class FailureReason(StrEnum):
    """Why a job execution or run ended the way it did.

    Every terminal job execution that did not succeed carries one of these.
    """

    STEP_FAILED = "StepFailed"
    TIMEOUT = "Timeout"
    RUNNER_LOST = "RunnerLost"
    CANCELLED_BY_GROUP = "CancelledByGroup"
    CANCELLED = "Cancelled"
    DEPENDENCY_FAILED = "DependencyFailed"
    CONDITION_NOT_MET = "ConditionNotMet"
    APPROVAL_REJECTED = "ApprovalRejected"
    DISPATCH_FAILED = "DispatchFailed"
    DISPATCH_TIMEOUT = "DispatchTimeout"
    MATRIX_FAIL_FAST = "MatrixFailFast"


JOB_TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SKIPPED}
)
"""Job statuses no transition can leave."""

RUN_TERMINAL_STATUSES = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED})
"""Run statuses no transition can leave."""

JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.SKIPPED, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED}),
    # running -> queued is a retry
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.QUEUED}),
}
"""Legal job transitions, keyed by the current status."""

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}),
}
"""Legal run transitions, keyed by the current status."""
