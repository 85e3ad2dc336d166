"""Shared test fixtures for litestar-ci test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from litestar_ci.config import EngineConfig
from litestar_ci.core.models import Event, JobExecution, JobResult, Run, StepResult
from litestar_ci.core.parser import parse_workflow_yaml
from litestar_ci.core.types import EventKind, StepStatus
from litestar_ci.engine.coordinator import ExecutionCoordinator
from litestar_ci.engine.matrix import build_plan
from litestar_ci.engine.registry import WorkflowStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from uuid import UUID

    from litestar_ci.core.definition import WorkflowDefinition
    from litestar_ci.core.models import DispatchRequest


CI_WORKFLOW = """
name: ci
on:
  push:
    branches: [main, "releases/**"]
  pull_request:
    branches: [main]
  workflow_dispatch:
    inputs:
      level:
        default: fast
jobs:
  build:
    runs-on: [linux]
    steps:
      - uses: actions/checkout@v4
      - run: make build
  test:
    needs: build
    runs-on: [linux]
    strategy:
      matrix:
        python: ["3.11", "3.12"]
    steps:
      - run: make test PYTHON=${{ matrix.python }}
  deploy:
    needs: test
    if: github.ref == 'refs/heads/main'
    runs-on: [linux, deploy]
    environment:
      name: production
      requires-approval: true
    steps:
      - run: ./deploy.sh --token ${{ secrets.DEPLOY_TOKEN }}
"""
"""A three stage workflow: build, a matrix of tests, then a gated deploy."""

CHAIN_WORKFLOW = """
name: chain
on: push
jobs:
  a:
    runs-on: linux
    steps:
      - run: echo a
  b:
    needs: a
    runs-on: linux
    steps:
      - run: echo b
"""
"""Two jobs, ``b`` needs ``a``."""


class FakeRunnerClient:
    """Runner client recording what the coordinator sends it."""

    def __init__(self, fail_dispatch: bool = False) -> None:
        self.dispatched: list[DispatchRequest] = []
        self.cancelled: list[tuple[UUID, str]] = []
        self.fail_dispatch = fail_dispatch

    async def dispatch(self, request: DispatchRequest) -> None:
        if self.fail_dispatch:
            msg = "runner unreachable"
            raise ConnectionError(msg)
        self.dispatched.append(request)

    async def cancel(self, execution_id: UUID, reason: str) -> None:
        self.cancelled.append((execution_id, reason))

    @property
    def last(self) -> DispatchRequest:
        return self.dispatched[-1]


class ClosableRunnerClient(FakeRunnerClient):
    """Recording runner client that also counts ``aclose`` calls."""

    def __init__(self) -> None:
        super().__init__()
        self.closed = 0

    async def aclose(self) -> None:
        self.closed += 1


class RecordingRunStore:
    """Persistence double keeping the number of saves per run."""

    def __init__(self) -> None:
        self.saves: dict[UUID, int] = {}
        self.statuses: dict[UUID, list[str]] = {}

    async def save_run(self, run: Run) -> None:
        self.saves[run.id] = self.saves.get(run.id, 0) + 1
        self.statuses.setdefault(run.id, []).append(str(run.status))


def push_event(ref: str = "refs/heads/main", **kwargs: Any) -> Event:
    """Build a push event."""
    return Event(kind=EventKind.PUSH, ref=ref, actor=kwargs.pop("actor", "octocat"), **kwargs)


def job_result(request: DispatchRequest, status: StepStatus = StepStatus.SUCCEEDED, **outputs: str) -> JobResult:
    """Build a job result reporting every step of ``request`` with ``status``."""
    return JobResult(
        steps=[StepResult(index=step.index, name=step.name, status=status) for step in request.steps],
        outputs=dict(outputs),
    )


async def complete(
    coordinator: ExecutionCoordinator,
    request: DispatchRequest,
    status: StepStatus = StepStatus.SUCCEEDED,
    **outputs: str,
) -> JobExecution:
    """Report ``request`` as finished from the runner it was dispatched to."""
    return await coordinator.report_job_result(
        request.runner_id, request.execution_id, job_result(request, status, **outputs)
    )


def make_run(definition: WorkflowDefinition, event: Event | None = None) -> Run:
    """Create a run with one pending execution per graph node, without a coordinator."""
    run = Run(number=1, definition=definition, event=event or push_event())
    for node in build_plan(definition).values():
        run.executions[node.id] = JobExecution(
            run_id=run.id,
            node_id=node.id,
            job_id=node.job.id,
            labels=node.labels,
            timeout=node.job.timeout,
            matrix=dict(node.matrix),
            continue_on_error=node.job.continue_on_error,
        )
    return run


@pytest.fixture
def ci_definition() -> WorkflowDefinition:
    """The parsed CI workflow."""
    return parse_workflow_yaml(CI_WORKFLOW)


@pytest.fixture
def workflow_store() -> WorkflowStore:
    """Create an empty workflow store.

    Returns:
        WorkflowStore instance
    """
    return WorkflowStore()


@pytest.fixture
def runner_client() -> FakeRunnerClient:
    """Create a recording runner client."""
    return FakeRunnerClient()


@pytest.fixture
def run_store() -> RecordingRunStore:
    """Create a recording persistence double."""
    return RecordingRunStore()


@pytest.fixture
async def make_coordinator(
    workflow_store: WorkflowStore,
) -> AsyncIterator[Callable[..., ExecutionCoordinator]]:
    """Factory of coordinators over ``workflow_store``; every one is stopped on teardown.

    Keyword arguments are passed to :class:`EngineConfig`, except ``persistence``
    and ``secrets`` which go to the coordinator.
    """
    created: list[ExecutionCoordinator] = []

    def factory(**kwargs: Any) -> ExecutionCoordinator:
        persistence = kwargs.pop("persistence", None)
        secrets = kwargs.pop("secrets", None)
        coordinator = ExecutionCoordinator(
            workflow_store,
            secrets=secrets,
            persistence=persistence,
            config=EngineConfig(**kwargs),
        )
        created.append(coordinator)
        return coordinator

    yield factory

    for coordinator in created:
        await coordinator.stop()


@pytest.fixture
def coordinator(make_coordinator: Callable[..., ExecutionCoordinator]) -> ExecutionCoordinator:
    """Create a coordinator with the default configuration."""
    return make_coordinator()


# Pytest configuration
def pytest_configure(config: Any) -> None:
    """Configure pytest with custom markers.

    Args:
        config: Pytest config object
    """
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Tests that take more than 1 second")
