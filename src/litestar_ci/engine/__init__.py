"""Execution engine for litestar-ci.

This module provides the coordinator that drives runs, together with the
components it is built from: the workflow store, trigger matching, matrix
expansion, the dependency graph, the runner pool, the dispatch scheduler,
concurrency groups, the schedule poller, secret providers and the event bus.
"""

from __future__ import annotations

from litestar_ci.engine.bus import EventBus
from litestar_ci.engine.concurrency import Admission, ConcurrencyGroupManager
from litestar_ci.engine.coordinator import ExecutionCoordinator
from litestar_ci.engine.graph import Decision, DependencyGraph, Readiness, evaluate_readiness
from litestar_ci.engine.matrix import JobNode, build_plan, expand_matrix
from litestar_ci.engine.registry import ReloadReport, WorkflowStore
from litestar_ci.engine.runners import RunnerPool, RunnerRecord
from litestar_ci.engine.schedule import CronExpression, SchedulePoller
from litestar_ci.engine.scheduler import Assignment, Scheduler
from litestar_ci.engine.secrets import EnvironmentSecretProvider, StaticSecretProvider, resolve_secrets
from litestar_ci.engine.triggers import TriggerMatcher

__all__ = [
    "Admission",
    "Assignment",
    "ConcurrencyGroupManager",
    "CronExpression",
    "Decision",
    "DependencyGraph",
    "EnvironmentSecretProvider",
    "EventBus",
    "ExecutionCoordinator",
    "JobNode",
    "ReloadReport",
    "Readiness",
    "RunnerPool",
    "RunnerRecord",
    "SchedulePoller",
    "Scheduler",
    "StaticSecretProvider",
    "TriggerMatcher",
    "WorkflowStore",
    "build_plan",
    "expand_matrix",
    "evaluate_readiness",
    "resolve_secrets",
]
