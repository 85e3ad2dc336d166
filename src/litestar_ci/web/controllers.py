"""REST API controllers for CI orchestration.

This module provides four controller classes:
- WorkflowController: List workflows, render their graphs and dispatch them manually
- EventController: Ingest repository events
- RunController: Inspect, cancel and approve runs
- RunnerController: Runner registration, heartbeats and job reports
"""

from __future__ import annotations

from typing import ClassVar
from uuid import UUID

from litestar import Controller, delete, get, post
from litestar.exceptions import ClientException, HTTPException, NotFoundException
from litestar.params import Parameter
from litestar.status_codes import HTTP_409_CONFLICT

from litestar_ci.agents.http import HttpRunnerClient, MailboxRunnerClient
from litestar_ci.core.models import Event
from litestar_ci.core.types import EventKind, RunStatus
from litestar_ci.engine.coordinator import ExecutionCoordinator  # noqa: TC001 - needed for DI
from litestar_ci.engine.registry import WorkflowStore  # noqa: TC001 - needed for DI
from litestar_ci.exceptions import (
    ApprovalGateNotFoundError,
    JobExecutionNotFoundError,
    RunAlreadyCompletedError,
    RunNotFoundError,
    RunnerNotFoundError,
    StaleRunnerError,
    TriggerMismatch,
    WorkflowNotFoundError,
)
from litestar_ci.web.dto import (
    ApprovalDTO,
    DispatchWorkflowDTO,
    EventDTO,
    GraphDTO,
    JobExecutionDTO,
    JobResultDTO,
    RegisterRunnerDTO,
    RunDetailDTO,
    RunDTO,
    RunnerDTO,
    StepResultDTO,
    WorkflowDTO,
    execution_to_dto,
    run_to_detail_dto,
    run_to_dto,
    runner_to_dto,
    workflow_to_dto,
)
from litestar_ci.web.graph import job_statuses, parse_graph_to_dict

__all__ = [
    "EventController",
    "RunController",
    "RunnerController",
    "WorkflowController",
]


class WorkflowController(Controller):
    """API controller for workflow definitions.

    Tags: Workflows
    """

    path = "/workflows"
    tags: ClassVar[list[str]] = ["Workflows"]

    @get("/")
    async def list_workflows(self, workflow_store: WorkflowStore) -> list[WorkflowDTO]:
        """List every loaded workflow definition.

        Args:
            workflow_store: Injected workflow store.

        Returns:
            List of workflow DTOs.
        """
        return [workflow_to_dto(definition) for definition in workflow_store.list_definitions()]

    @get("/{name:str}")
    async def get_workflow(self, name: str, workflow_store: WorkflowStore) -> WorkflowDTO:
        """Get a workflow definition by name.

        Raises:
            NotFoundException: If the workflow is not loaded.
        """
        try:
            return workflow_to_dto(workflow_store.get(name))
        except WorkflowNotFoundError as e:
            raise NotFoundException(detail=f"Workflow '{name}' not found") from e

    @get("/{name:str}/graph")
    async def get_workflow_graph(
        self,
        name: str,
        workflow_store: WorkflowStore,
        graph_format: str = Parameter(
            default="mermaid",
            description="Graph format: 'mermaid' or 'json'",
        ),
    ) -> GraphDTO:
        """Get the job graph of a workflow, as MermaidJS source or as JSON.

        Raises:
            NotFoundException: If the workflow or the format is unknown.
        """
        try:
            definition = workflow_store.get(name)
        except WorkflowNotFoundError as e:
            raise NotFoundException(detail=f"Workflow '{name}' not found") from e

        graph_dict = parse_graph_to_dict(definition)
        if graph_format == "mermaid":
            return GraphDTO(mermaid_source=definition.to_mermaid(), nodes=graph_dict["nodes"], edges=graph_dict["edges"])
        if graph_format == "json":
            return GraphDTO(mermaid_source="", nodes=graph_dict["nodes"], edges=graph_dict["edges"])
        raise NotFoundException(detail=f"Unknown format: {graph_format}")

    @post("/{name:str}/dispatch")
    async def dispatch_workflow(
        self,
        name: str,
        data: DispatchWorkflowDTO,
        ci_coordinator: ExecutionCoordinator,
    ) -> RunDetailDTO:
        """Start a workflow manually.

        Args:
            name: The workflow name.
            data: Ref, inputs and actor of the manual run.
            ci_coordinator: Injected coordinator.

        Returns:
            The created run.

        Raises:
            NotFoundException: If the workflow is not loaded.
            ClientException: If the workflow cannot be dispatched manually.
        """
        try:
            run = await ci_coordinator.dispatch_workflow(name, ref=data.ref, inputs=data.inputs, actor=data.actor)
        except WorkflowNotFoundError as e:
            raise NotFoundException(detail=f"Workflow '{name}' not found") from e
        except TriggerMismatch as e:
            raise ClientException(detail=str(e)) from e
        return run_to_detail_dto(run)


class EventController(Controller):
    """API controller for repository events.

    Tags: Events
    """

    path = "/events"
    tags: ClassVar[list[str]] = ["Events"]

    @post("/")
    async def ingest_event(self, data: EventDTO, ci_coordinator: ExecutionCoordinator) -> list[RunDTO]:
        """Start a run for every workflow the event triggers.

        Args:
            data: The repository event.
            ci_coordinator: Injected coordinator.

        Returns:
            The created runs, possibly none.

        Raises:
            ClientException: If the event kind is unknown.
        """
        try:
            kind = EventKind(data.kind)
        except ValueError as e:
            raise ClientException(detail=f"Unknown event kind '{data.kind}'") from e

        event = Event(
            kind=kind,
            ref=data.ref,
            actor=data.actor,
            paths=tuple(data.paths or ()),
            action=data.action,
            repository=data.repository,
            sha=data.sha,
            base_ref=data.base_ref,
            payload=dict(data.payload or {}),
            workflow=data.workflow,
            inputs=dict(data.inputs or {}),
        )
        runs = await ci_coordinator.handle_event(event)
        return [run_to_dto(run) for run in runs]


class RunController(Controller):
    """API controller for runs.

    Tags: Runs
    """

    path = "/runs"
    tags: ClassVar[list[str]] = ["Runs"]

    @get("/")
    async def list_runs(
        self,
        ci_coordinator: ExecutionCoordinator,
        workflow: str | None = Parameter(default=None, description="Filter by workflow name"),
        status: RunStatus | None = Parameter(default=None, description="Filter by run status"),
    ) -> list[RunDTO]:
        """List runs, newest first."""
        return [run_to_dto(run) for run in ci_coordinator.list_runs(workflow=workflow, status=status)]

    @get("/{run_id:uuid}")
    async def get_run(self, run_id: UUID, ci_coordinator: ExecutionCoordinator) -> RunDetailDTO:
        """Get a run with all its job executions.

        Raises:
            NotFoundException: If the run is unknown.
        """
        try:
            return run_to_detail_dto(ci_coordinator.get_run(run_id))
        except RunNotFoundError as e:
            raise NotFoundException(detail=f"Run {run_id} not found") from e

    @get("/{run_id:uuid}/graph")
    async def get_run_graph(self, run_id: UUID, ci_coordinator: ExecutionCoordinator) -> GraphDTO:
        """Get the job graph of a run, styled with the current job statuses.

        Raises:
            NotFoundException: If the run is unknown.
        """
        try:
            run = ci_coordinator.get_run(run_id)
        except RunNotFoundError as e:
            raise NotFoundException(detail=f"Run {run_id} not found") from e

        graph_dict = parse_graph_to_dict(run.definition, run)
        return GraphDTO(
            mermaid_source=run.definition.to_mermaid_with_state(job_statuses(run)),
            nodes=graph_dict["nodes"],
            edges=graph_dict["edges"],
        )

    @post("/{run_id:uuid}/cancel")
    async def cancel_run(self, run_id: UUID, ci_coordinator: ExecutionCoordinator) -> RunDetailDTO:
        """Cancel a run.

        Raises:
            NotFoundException: If the run is unknown.
            HTTPException: 409 if the run already finished.
        """
        try:
            run = await ci_coordinator.cancel_run(run_id)
        except RunNotFoundError as e:
            raise NotFoundException(detail=f"Run {run_id} not found") from e
        except RunAlreadyCompletedError as e:
            raise HTTPException(status_code=HTTP_409_CONFLICT, detail=str(e)) from e
        return run_to_detail_dto(run)

    @post("/{run_id:uuid}/approvals/{gate:str}")
    async def decide_gate(
        self,
        run_id: UUID,
        gate: str,
        data: ApprovalDTO,
        ci_coordinator: ExecutionCoordinator,
    ) -> RunDetailDTO:
        """Approve or reject an approval gate of a run.

        Raises:
            NotFoundException: If the run or the gate is unknown.
            HTTPException: 409 if the run already finished.
        """
        decide = ci_coordinator.approve if data.approved else ci_coordinator.reject
        try:
            run = await decide(run_id, gate, actor=data.actor)
        except (RunNotFoundError, ApprovalGateNotFoundError) as e:
            raise NotFoundException(detail=str(e)) from e
        except RunAlreadyCompletedError as e:
            raise HTTPException(status_code=HTTP_409_CONFLICT, detail=str(e)) from e
        return run_to_detail_dto(run)


class RunnerController(Controller):
    """API controller for runners and the reports they send.

    Tags: Runners
    """

    path = "/runners"
    tags: ClassVar[list[str]] = ["Runners"]

    @post("/")
    async def register_runner(self, data: RegisterRunnerDTO, ci_coordinator: ExecutionCoordinator) -> RunnerDTO:
        """Register a runner.

        A runner with a callback URL receives jobs by HTTP; any other runner polls
        ``GET /runners/{id}/messages``.
        """
        client = HttpRunnerClient(data.callback_url) if data.callback_url else MailboxRunnerClient()
        record = await ci_coordinator.register_runner(data.id, set(data.labels), client)
        return runner_to_dto(record)

    @get("/")
    async def list_runners(self, ci_coordinator: ExecutionCoordinator) -> list[RunnerDTO]:
        """List every registered runner."""
        return [runner_to_dto(record) for record in ci_coordinator.pool]

    @delete("/{runner_id:str}")
    async def deregister_runner(self, runner_id: str, ci_coordinator: ExecutionCoordinator) -> None:
        """Remove a runner; the job it was running fails with ``RunnerLost``.

        Raises:
            NotFoundException: If the runner is not registered.
        """
        try:
            await ci_coordinator.deregister_runner(runner_id)
        except RunnerNotFoundError as e:
            raise NotFoundException(detail=str(e)) from e

    @post("/{runner_id:str}/heartbeat")
    async def heartbeat(self, runner_id: str, ci_coordinator: ExecutionCoordinator) -> RunnerDTO:
        """Record that a runner is alive.

        Raises:
            NotFoundException: If the runner is not registered.
        """
        try:
            ci_coordinator.heartbeat(runner_id)
            return runner_to_dto(ci_coordinator.pool.get(runner_id))
        except RunnerNotFoundError as e:
            raise NotFoundException(detail=str(e)) from e

    @get("/{runner_id:str}/messages")
    async def poll_messages(self, runner_id: str, ci_coordinator: ExecutionCoordinator) -> list[dict[str, object]]:
        """Fetch the dispatch requests and cancel signals waiting for a polling runner.

        Polling counts as a heartbeat.

        Raises:
            NotFoundException: If the runner is not registered.
            ClientException: If the runner receives jobs through a callback URL.
        """
        try:
            record = ci_coordinator.pool.get(runner_id)
        except RunnerNotFoundError as e:
            raise NotFoundException(detail=str(e)) from e
        if not isinstance(record.client, MailboxRunnerClient):
            raise ClientException(detail=f"Runner '{runner_id}' does not poll for jobs")
        ci_coordinator.heartbeat(runner_id)
        return record.client.drain()

    @post("/{runner_id:str}/jobs/{execution_id:uuid}/steps")
    async def report_step(
        self,
        runner_id: str,
        execution_id: UUID,
        data: StepResultDTO,
        ci_coordinator: ExecutionCoordinator,
    ) -> JobExecutionDTO:
        """Report the result of one step.

        Raises:
            NotFoundException: If the job execution is unknown.
            ClientException: If the step status is invalid.
            HTTPException: 409 if the runner is not the one running the job.
        """
        try:
            step = data.to_result()
        except ValueError as e:
            raise ClientException(detail=f"Invalid step status '{data.status}'") from e
        try:
            execution = await ci_coordinator.report_step(runner_id, execution_id, step)
        except JobExecutionNotFoundError as e:
            raise NotFoundException(detail=str(e)) from e
        except StaleRunnerError as e:
            raise HTTPException(status_code=HTTP_409_CONFLICT, detail=str(e)) from e
        return execution_to_dto(execution)

    @post("/{runner_id:str}/jobs/{execution_id:uuid}/result")
    async def report_result(
        self,
        runner_id: str,
        execution_id: UUID,
        data: JobResultDTO,
        ci_coordinator: ExecutionCoordinator,
    ) -> JobExecutionDTO:
        """Report the completion of a job.

        Raises:
            NotFoundException: If the job execution is unknown.
            ClientException: If a step status is invalid.
            HTTPException: 409 if the runner is not the one running the job.
        """
        try:
            result = data.to_result()
        except ValueError as e:
            raise ClientException(detail="Invalid step status in job result") from e
        try:
            execution = await ci_coordinator.report_job_result(runner_id, execution_id, result)
        except JobExecutionNotFoundError as e:
            raise NotFoundException(detail=str(e)) from e
        except StaleRunnerError as e:
            raise HTTPException(status_code=HTTP_409_CONFLICT, detail=str(e)) from e
        return execution_to_dto(execution)

    @post("/{runner_id:str}/jobs/{execution_id:uuid}/cancelled")
    async def acknowledge_cancel(
        self,
        runner_id: str,
        execution_id: UUID,
        ci_coordinator: ExecutionCoordinator,
    ) -> JobExecutionDTO:
        """Confirm that the runner stopped a job it was asked to cancel.

        Raises:
            NotFoundException: If the job execution is unknown.
        """
        try:
            execution = await ci_coordinator.acknowledge_cancel(runner_id, execution_id)
        except JobExecutionNotFoundError as e:
            raise NotFoundException(detail=str(e)) from e
        return execution_to_dto(execution)
