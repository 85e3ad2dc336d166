"""Tests for the runner clients."""

from __future__ import annotations

import asyncio
import json
import os
from typing import TYPE_CHECKING
from uuid import uuid4

import httpx
import pytest

from litestar_ci.agents import (
    ActionRegistry,
    HttpRunnerClient,
    MailboxRunnerClient,
    StepStatusView,
    SubprocessRunner,
    redact,
)
from litestar_ci.core.models import DispatchRequest, DispatchStep, StepResult
from litestar_ci.core.types import FailureReason, JobStatus, RunStatus, StepStatus
from litestar_ci.engine.secrets import StaticSecretProvider
from tests.conftest import CHAIN_WORKFLOW, push_event

if TYPE_CHECKING:
    from pathlib import Path

    from litestar_ci.engine.coordinator import ExecutionCoordinator
    from litestar_ci.engine.registry import WorkflowStore

posix_only = pytest.mark.skipif(os.name != "posix", reason="steps run in a POSIX shell")

OUTPUTS_WORKFLOW = """
name: local
on: push
env:
  GREETING: hello
jobs:
  produce:
    runs-on: linux
    steps:
      - id: meta
        run: echo "version=1.2.3" >> "$GITHUB_OUTPUT"
      - run: echo "$GREETING token=${{ secrets.TOKEN }}"
  consume:
    needs: produce
    runs-on: linux
    steps:
      - run: test "${{ needs.produce.outputs.version }}" = "1.2.3"
"""

FAILING_WORKFLOW = """
name: failing
on: push
jobs:
  flaky:
    runs-on: linux
    steps:
      - run: exit 3
        continue-on-error: true
      - run: exit 1
      - run: echo never
      - if: failure()
        run: echo cleanup
"""

ACTION_WORKFLOW = """
name: actions
on: push
jobs:
  checkout:
    runs-on: linux
    steps:
      - id: co
        uses: actions/checkout@v4
      - if: steps.co.outputs.ref == 'refs/heads/main'
        run: echo checked out
      - uses: acme/missing@v1
"""


def make_request(**kwargs) -> DispatchRequest:
    return DispatchRequest(
        execution_id=uuid4(),
        run_id=uuid4(),
        workflow="ci",
        node_id="build",
        job_id="build",
        attempt=1,
        runner_id="agent-1",
        steps=(DispatchStep(index=0, name="make build", run="make build"),),
        **kwargs,
    )


async def run_locally(
    coordinator: ExecutionCoordinator, workflow_store: WorkflowStore, workflow: str, tmp_path: Path, **kwargs
):
    workflow_store.load(workflow)
    runner = SubprocessRunner(coordinator, "local", labels={"linux"}, workdir=tmp_path, **kwargs)
    await runner.register()
    runs = await coordinator.handle_event(push_event())
    await asyncio.wait_for(runner.wait(), timeout=10)
    await runner.close()
    return runner, runs[0]


@pytest.mark.unit
class TestRedaction:
    """Tests for secret masking."""

    def test_masks_every_occurrence(self) -> None:
        assert redact("token=abc, again abc", ["abc"]) == "token=***, again ***"

    def test_longest_mask_first(self) -> None:
        assert redact("secretive secret", ["secret", "secretive"]) == "*** ***"

    def test_empty_masks_are_ignored(self) -> None:
        assert redact("plain", ["", "x"]) == "plain"


@pytest.mark.unit
class TestStepStatusView:
    """Tests for step-level status functions."""

    def test_tolerated_failure_keeps_success(self) -> None:
        results = [StepResult(index=0, name="lint", status=StepStatus.FAILED)]

        assert StepStatusView(results, {0: True}).success()
        assert StepStatusView(results, {0: False}).failure()

    def test_cancelled(self) -> None:
        view = StepStatusView([], {}, cancel_requested=True)

        assert view.cancelled()
        assert not view.success()


@pytest.mark.unit
class TestActionRegistry:
    """Tests for the action handler registry."""

    def test_lookup_ignores_ref(self) -> None:
        actions = ActionRegistry()

        @actions.register("actions/checkout@v4")
        async def checkout(step, request):
            return None

        assert actions.get("actions/checkout@main") is checkout
        assert "actions/checkout" in actions
        assert "actions/setup-python@v5" not in actions
        assert actions.get("actions/setup-python@v5") is None


@posix_only
@pytest.mark.integration
@pytest.mark.asyncio
class TestSubprocessRunner:
    """Tests running real workflows through local subprocesses."""

    async def test_outputs_env_and_masking(
        self, make_coordinator, workflow_store: WorkflowStore, tmp_path: Path
    ) -> None:
        coordinator = make_coordinator(secrets=StaticSecretProvider({"TOKEN": "s3cr3t"}))

        runner, run = await run_locally(coordinator, workflow_store, OUTPUTS_WORKFLOW, tmp_path)

        assert run.status == RunStatus.SUCCEEDED
        produce = run.executions["produce"]
        assert produce.outputs == {"version": "1.2.3"}
        assert [step.exit_code for step in produce.steps] == [0, 0]
        logs = "".join(runner.logs[produce.id])
        assert "hello token=***" in logs
        assert "s3cr3t" not in logs
        assert run.executions["consume"].status == JobStatus.SUCCEEDED

    async def test_failure_handling(
        self, coordinator: ExecutionCoordinator, workflow_store: WorkflowStore, tmp_path: Path
    ) -> None:
        runner, run = await run_locally(coordinator, workflow_store, FAILING_WORKFLOW, tmp_path)

        execution = run.executions["flaky"]
        assert [step.status for step in execution.steps] == [
            StepStatus.FAILED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
            StepStatus.SUCCEEDED,
        ]
        assert execution.steps[0].exit_code == 3
        assert execution.steps[1].error == "Process completed with exit code 1"
        assert execution.status == JobStatus.FAILED
        assert execution.reason == FailureReason.STEP_FAILED
        assert "cleanup" in "".join(runner.logs[execution.id])

    async def test_actions(
        self, coordinator: ExecutionCoordinator, workflow_store: WorkflowStore, tmp_path: Path
    ) -> None:
        actions = ActionRegistry()

        @actions.register("actions/checkout")
        async def checkout(step, request):
            return {"ref": request.context["github"]["ref"]}

        _, run = await run_locally(coordinator, workflow_store, ACTION_WORKFLOW, tmp_path, actions=actions)

        steps = run.executions["checkout"].steps
        assert steps[0].outputs == {"ref": "refs/heads/main"}
        assert steps[1].status == StepStatus.SUCCEEDED
        assert steps[2].status == StepStatus.FAILED
        assert steps[2].error == "No handler for action 'acme/missing@v1'"
        assert run.status == RunStatus.FAILED

    async def test_cancel_kills_running_step(
        self, coordinator: ExecutionCoordinator, workflow_store: WorkflowStore, tmp_path: Path
    ) -> None:
        workflow_store.load(CHAIN_WORKFLOW.replace("echo a", "sleep 30"))
        runner = SubprocessRunner(coordinator, "local", labels={"linux"}, workdir=tmp_path)
        await runner.register()
        run = (await coordinator.handle_event(push_event()))[0]
        await asyncio.sleep(0.3)

        await coordinator.cancel_run(run.id)
        await asyncio.wait_for(runner.wait(), timeout=10)

        execution = run.executions["a"]
        assert execution.status == JobStatus.CANCELLED
        assert execution.steps[0].status == StepStatus.CANCELLED
        assert coordinator.pool.get("local").idle

    async def test_cancel_of_unknown_job_is_ignored(self, coordinator: ExecutionCoordinator, tmp_path: Path) -> None:
        runner = SubprocessRunner(coordinator, "local", workdir=tmp_path)

        await runner.cancel(uuid4(), "cancelled")

        assert runner.labels == frozenset({"self-hosted"})

    async def test_only_recent_logs_are_kept(
        self, coordinator: ExecutionCoordinator, workflow_store: WorkflowStore, tmp_path: Path
    ) -> None:
        runner, run = await run_locally(coordinator, workflow_store, CHAIN_WORKFLOW, tmp_path, keep_logs=1)

        assert run.status == RunStatus.SUCCEEDED
        assert list(runner.logs) == [run.executions["b"].id]
        assert "b" in "".join(runner.logs[run.executions["b"].id])

    async def test_heartbeats_keep_runner_registered(self, make_coordinator, tmp_path: Path) -> None:
        coordinator = make_coordinator(runner_heartbeat_ttl=0.4)
        runner = SubprocessRunner(coordinator, "local", workdir=tmp_path, heartbeat_interval=0.05)
        await runner.register()

        await asyncio.sleep(0.6)
        await coordinator.maintain()
        assert "local" in coordinator.pool

        await runner.close()
        await asyncio.sleep(0.6)
        await coordinator.maintain()
        assert "local" not in coordinator.pool


@pytest.mark.unit
@pytest.mark.asyncio
class TestHttpRunnerClient:
    """Tests for pushing jobs to remote agents."""

    async def test_dispatch_and_cancel(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = HttpRunnerClient("http://agent-1:8080/", client=http, headers={"Authorization": "Bearer t"})
        request = make_request(masks=("hunter2",))

        await client.dispatch(request)
        await client.cancel(request.execution_id, "timeout")

        dispatch, cancel = seen
        assert str(dispatch.url) == "http://agent-1:8080/jobs"
        assert dispatch.headers["Authorization"] == "Bearer t"
        body = json.loads(dispatch.content)
        assert body["node_id"] == "build"
        assert body["execution_id"] == str(request.execution_id)
        assert body["steps"][0]["run"] == "make build"
        assert body["masks"] == ["hunter2"]
        assert str(cancel.url) == f"http://agent-1:8080/jobs/{request.execution_id}/cancel"
        assert json.loads(cancel.content) == {"reason": "timeout"}

        await client.aclose()
        assert not http.is_closed
        await http.aclose()

    async def test_error_status_raises(self) -> None:
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        client = HttpRunnerClient("http://agent-1:8080", client=http)

        with pytest.raises(httpx.HTTPStatusError):
            await client.dispatch(make_request())

        await http.aclose()

    async def test_unreachable_agent_is_lost(
        self, coordinator: ExecutionCoordinator, workflow_store: WorkflowStore
    ) -> None:
        workflow_store.load(CHAIN_WORKFLOW)
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        run = (await coordinator.handle_event(push_event()))[0]

        await coordinator.register_runner("agent-1", {"linux"}, HttpRunnerClient("http://agent-1", client=http))

        assert "agent-1" not in coordinator.pool
        assert run.executions["a"].reason == FailureReason.RUNNER_LOST
        await http.aclose()

    async def test_private_client_closed_with_runner(self, coordinator: ExecutionCoordinator) -> None:
        first = HttpRunnerClient("http://agent-1")
        second = HttpRunnerClient("http://agent-1")
        await coordinator.register_runner("agent-1", {"linux"}, first)

        await coordinator.register_runner("agent-1", {"linux"}, second)

        assert first._client.is_closed
        assert not second._client.is_closed

        await coordinator.deregister_runner("agent-1")

        assert second._client.is_closed

    async def test_private_client_closed_on_stop(self, coordinator: ExecutionCoordinator) -> None:
        client = HttpRunnerClient("http://agent-1")
        await coordinator.register_runner("agent-1", {"linux"}, client)

        await coordinator.stop()

        assert client._client.is_closed


@pytest.mark.unit
@pytest.mark.asyncio
class TestMailboxRunnerClient:
    """Tests for the polling mailbox."""

    async def test_messages_in_order(self) -> None:
        mailbox = MailboxRunnerClient()
        request = make_request()

        await mailbox.dispatch(request)
        await mailbox.cancel(request.execution_id, FailureReason.CANCELLED)

        assert len(mailbox) == 2
        dispatch, cancel = mailbox.drain()
        assert dispatch["type"] == "dispatch"
        assert dispatch["request"]["node_id"] == "build"
        assert dispatch["request"]["steps"][0]["name"] == "make build"
        assert cancel == {"type": "cancel", "execution_id": request.execution_id, "reason": str(FailureReason.CANCELLED)}
        assert mailbox.drain() == []
