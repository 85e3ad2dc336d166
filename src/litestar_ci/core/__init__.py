"""Core domain module for litestar-ci.

This module exports the fundamental building blocks: types, definitions, the
expression language, runtime models, reporting events and protocols.
"""

from __future__ import annotations

from litestar_ci.core.definition import (
    ConcurrencySpec,
    Job,
    MatrixStrategy,
    RetryPolicy,
    Step,
    Trigger,
    WorkflowDefinition,
)
from litestar_ci.core.events import (
    ApprovalRecorded,
    CIEvent,
    JobCompleted,
    JobQueued,
    JobSkipped,
    JobStarted,
    RunCompleted,
    RunnerRegistered,
    RunnerRemoved,
    RunQueued,
    RunStarted,
    StepReported,
)
from litestar_ci.core.expressions import evaluate, parse_expression, render_template
from litestar_ci.core.models import (
    ConcurrencyGroup,
    DispatchRequest,
    DispatchStep,
    Event,
    JobExecution,
    JobResult,
    Run,
    StepResult,
)
from litestar_ci.core.parser import parse_workflow, parse_workflow_yaml
from litestar_ci.core.protocols import RunnerClient, RunStore, SecretProvider
from litestar_ci.core.types import EventKind, FailureReason, JobStatus, RunStatus, StepStatus

__all__ = [
    "ApprovalRecorded",
    "CIEvent",
    "ConcurrencyGroup",
    "ConcurrencySpec",
    "DispatchRequest",
    "DispatchStep",
    "Event",
    "EventKind",
    "FailureReason",
    "Job",
    "JobCompleted",
    "JobExecution",
    "JobQueued",
    "JobResult",
    "JobSkipped",
    "JobStarted",
    "JobStatus",
    "MatrixStrategy",
    "RetryPolicy",
    "Run",
    "RunCompleted",
    "RunQueued",
    "RunStarted",
    "RunStatus",
    "RunStore",
    "RunnerClient",
    "RunnerRegistered",
    "RunnerRemoved",
    "SecretProvider",
    "Step",
    "StepReported",
    "StepResult",
    "StepStatus",
    "Trigger",
    "WorkflowDefinition",
    "evaluate",
    "parse_expression",
    "parse_workflow",
    "parse_workflow_yaml",
    "render_template",
]
