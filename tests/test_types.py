"""Tests for core types and runtime models."""

from __future__ import annotations

from uuid import uuid4

import pytest

from litestar_ci.core.models import Event, JobExecution, Run
from litestar_ci.core.types import (
    JOB_TERMINAL_STATUSES,
    RUN_TERMINAL_STATUSES,
    EventKind,
    FailureReason,
    JobStatus,
    RunStatus,
)
from litestar_ci.exceptions import InvalidTransitionError


def make_execution(**kwargs) -> JobExecution:
    defaults = {
        "run_id": uuid4(),
        "node_id": "build",
        "job_id": "build",
        "labels": frozenset({"linux"}),
        "timeout": 60.0,
    }
    return JobExecution(**{**defaults, **kwargs})


@pytest.mark.unit
class TestEnums:
    """Tests for the enum values exchanged with runners and the API."""

    def test_event_kinds_use_workflow_keys(self) -> None:
        assert EventKind.PULL_REQUEST == "pull_request"
        assert EventKind.WORKFLOW_DISPATCH == "workflow_dispatch"
        assert EventKind("push") is EventKind.PUSH

    def test_failure_reasons(self) -> None:
        assert FailureReason.RUNNER_LOST == "RunnerLost"
        assert FailureReason.CANCELLED_BY_GROUP == "CancelledByGroup"
        assert str(FailureReason.TIMEOUT) == "Timeout"

    def test_terminal_sets(self) -> None:
        assert JobStatus.RUNNING not in JOB_TERMINAL_STATUSES
        assert JobStatus.SKIPPED in JOB_TERMINAL_STATUSES
        assert RUN_TERMINAL_STATUSES == {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}


@pytest.mark.unit
class TestEvent:
    """Tests for Event ref helpers."""

    def test_branch_ref(self) -> None:
        event = Event(kind=EventKind.PUSH, ref="refs/heads/releases/v1")

        assert event.branch == "releases/v1"
        assert event.tag is None
        assert event.ref_name == "releases/v1"

    def test_tag_ref(self) -> None:
        event = Event(kind=EventKind.PUSH, ref="refs/tags/v1.0.0")

        assert event.branch is None
        assert event.tag == "v1.0.0"
        assert event.ref_name == "v1.0.0"

    def test_base_branch_strips_prefix(self) -> None:
        assert Event(kind=EventKind.PULL_REQUEST, base_ref="refs/heads/main").base_branch == "main"
        assert Event(kind=EventKind.PULL_REQUEST, base_ref="main").base_branch == "main"
        assert Event(kind=EventKind.PULL_REQUEST).base_branch is None


@pytest.mark.unit
class TestJobExecutionTransitions:
    """Tests for the job state machine."""

    def test_happy_path(self) -> None:
        execution = make_execution()

        execution.transition(JobStatus.QUEUED)
        execution.transition(JobStatus.RUNNING)
        execution.transition(JobStatus.SUCCEEDED, FailureReason.STEP_FAILED)

        assert execution.is_terminal
        assert execution.reason is None
        assert execution.queued_at is not None
        assert execution.started_at is not None
        assert execution.completed_at is not None

    def test_pending_cannot_run(self) -> None:
        execution = make_execution()

        with pytest.raises(InvalidTransitionError) as exc_info:
            execution.transition(JobStatus.RUNNING)

        assert exc_info.value.from_status == JobStatus.PENDING
        assert exc_info.value.to_status == JobStatus.RUNNING

    def test_terminal_is_final(self) -> None:
        execution = make_execution()
        execution.transition(JobStatus.SKIPPED, FailureReason.CONDITION_NOT_MET)

        for status in JobStatus:
            assert not execution.can_transition(status)

    def test_requeue_starts_new_attempt(self) -> None:
        execution = make_execution()
        execution.transition(JobStatus.QUEUED)
        execution.transition(JobStatus.RUNNING)
        execution.runner_id = "r1"
        execution.outputs = {"a": "1"}

        execution.transition(JobStatus.QUEUED)

        assert execution.attempt == 2
        assert execution.runner_id is None
        assert execution.outputs == {}
        assert execution.started_at is None

    def test_tolerated_failure(self) -> None:
        execution = make_execution(continue_on_error=True)
        execution.transition(JobStatus.FAILED, FailureReason.STEP_FAILED)

        assert execution.tolerated
        assert execution.succeeded


@pytest.mark.unit
class TestRunTransitions:
    """Tests for the run state machine."""

    def test_run_lifecycle(self, ci_definition) -> None:
        run = Run(number=1, definition=ci_definition, event=Event(kind=EventKind.PUSH))

        run.transition(RunStatus.RUNNING)
        run.transition(RunStatus.FAILED, FailureReason.TIMEOUT)

        assert run.is_terminal
        assert run.reason == FailureReason.TIMEOUT
        assert run.duration is not None
        assert run.workflow_name == "ci"

    def test_pending_run_can_be_cancelled(self, ci_definition) -> None:
        run = Run(number=1, definition=ci_definition, event=Event(kind=EventKind.PUSH))

        run.transition(RunStatus.CANCELLED, FailureReason.CANCELLED_BY_GROUP)

        assert run.status == RunStatus.CANCELLED
        assert run.started_at is None
        assert run.duration is None

    def test_pending_run_cannot_succeed(self, ci_definition) -> None:
        run = Run(number=1, definition=ci_definition, event=Event(kind=EventKind.PUSH))

        with pytest.raises(InvalidTransitionError):
            run.transition(RunStatus.SUCCEEDED)

    def test_get_execution_unknown(self, ci_definition) -> None:
        from litestar_ci.exceptions import JobExecutionNotFoundError

        run = Run(number=1, definition=ci_definition, event=Event(kind=EventKind.PUSH))

        with pytest.raises(JobExecutionNotFoundError):
            run.get_execution(uuid4())
