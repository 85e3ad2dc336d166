"""litestar-ci - GitHub Actions style CI orchestration for Litestar.

This package loads declarative workflow files, matches repository events against
their triggers, expands jobs into a dependency graph (matrix legs included) and
dispatches ready jobs to labelled runners, honouring timeouts, cancellation,
concurrency groups and approval gates.

Example:
    >>> from litestar_ci import Event, EventKind, ExecutionCoordinator, WorkflowStore
    >>>
    >>> store = WorkflowStore()
    >>> store.load_directory(".github/workflows")
    >>> coordinator = ExecutionCoordinator(store)
    >>> runs = await coordinator.handle_event(
    ...     Event(kind=EventKind.PUSH, ref="refs/heads/main", actor="octocat")
    ... )
"""

from __future__ import annotations

from litestar_ci.__metadata__ import __project__, __version__
from litestar_ci.config import EngineConfig
from litestar_ci.core.definition import WorkflowDefinition
from litestar_ci.core.models import Event, JobResult, Run, StepResult
from litestar_ci.core.parser import parse_workflow, parse_workflow_yaml
from litestar_ci.core.types import EventKind, FailureReason, JobStatus, RunStatus, StepStatus
from litestar_ci.engine.coordinator import ExecutionCoordinator
from litestar_ci.engine.registry import WorkflowStore
from litestar_ci.exceptions import (
    ApprovalGateNotFoundError,
    CIError,
    DefinitionError,
    DispatchError,
    ExpressionError,
    InvalidTransitionError,
    JobExecutionNotFoundError,
    RunAlreadyCompletedError,
    RunNotFoundError,
    RunnerNotFoundError,
    StaleRunnerError,
    TriggerMismatch,
    WorkflowNotFoundError,
)
from litestar_ci.plugin import CIPlugin, CIPluginConfig

__all__ = (
    "ApprovalGateNotFoundError",
    "CIError",
    "CIPlugin",
    "CIPluginConfig",
    "DefinitionError",
    "DispatchError",
    "EngineConfig",
    "Event",
    "EventKind",
    "ExecutionCoordinator",
    "ExpressionError",
    "FailureReason",
    "InvalidTransitionError",
    "JobExecutionNotFoundError",
    "JobResult",
    "JobStatus",
    "Run",
    "RunAlreadyCompletedError",
    "RunNotFoundError",
    "RunStatus",
    "RunnerNotFoundError",
    "StaleRunnerError",
    "StepResult",
    "StepStatus",
    "TriggerMismatch",
    "WorkflowDefinition",
    "WorkflowNotFoundError",
    "WorkflowStore",
    "__project__",
    "__version__",
    "parse_workflow",
    "parse_workflow_yaml",
)
