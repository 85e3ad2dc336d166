"""Execution coordinator.

The coordinator owns every run in flight. It creates runs for matching events,
admits them through their concurrency group, re-evaluates job readiness after
every terminal transition, hands ready jobs to the scheduler and dispatches the
resulting assignments to runners. Runner callbacks (step reports, job results,
cancel acknowledgements) and runner loss come back through it as well.

Every mutation of a run happens under that run's ``asyncio.Lock``. Calls out to
runners (dispatch and cancel signals) and to event observers are made after the
lock is released, so both may call straight back into the coordinator.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

from litestar_ci.config import EngineConfig
from litestar_ci.core.events import (
    ApprovalRecorded,
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
from litestar_ci.core.expressions import parse_template, referenced_secrets, render_template, to_string
from litestar_ci.core.models import DispatchRequest, DispatchStep, Event, JobExecution, Run
from litestar_ci.core.types import EventKind, FailureReason, JobStatus, RunStatus, StepStatus
from litestar_ci.engine.bus import EventBus
from litestar_ci.engine.concurrency import ConcurrencyGroupManager
from litestar_ci.engine.context import expression_values, github_context
from litestar_ci.engine.graph import Decision, evaluate_readiness
from litestar_ci.engine.matrix import build_plan
from litestar_ci.engine.runners import RunnerPool
from litestar_ci.engine.schedule import SchedulePoller
from litestar_ci.engine.scheduler import Scheduler
from litestar_ci.engine.secrets import resolve_secrets
from litestar_ci.engine.triggers import TriggerMatcher
from litestar_ci.exceptions import (
    ApprovalGateNotFoundError,
    JobExecutionNotFoundError,
    RunAlreadyCompletedError,
    RunNotFoundError,
    RunnerNotFoundError,
    StaleRunnerError,
)

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_ci.core.definition import Job, WorkflowDefinition
    from litestar_ci.core.events import CIEvent
    from litestar_ci.core.models import JobResult, StepResult
    from litestar_ci.core.protocols import RunnerClient, RunStore, SecretProvider
    from litestar_ci.engine.registry import WorkflowStore
    from litestar_ci.engine.runners import RunnerRecord
    from litestar_ci.engine.scheduler import Assignment

__all__ = ["ExecutionCoordinator"]

logger = logging.getLogger(__name__)


@dataclass
class _Effects:
    """Work collected under a run lock and carried out after it is released."""

    cancels: list[tuple[RunnerClient, UUID, FailureReason]] = field(default_factory=list)
    admit: list[UUID] = field(default_factory=list)


class ExecutionCoordinator:
    """Runs workflows: from event to finished run.

    Attributes:
        store: Source of workflow definitions.
        pool: Registered runners.
        scheduler: Dispatch queue and timeout watchdogs.
        concurrency: Concurrency group book-keeping.
        secrets: Optional secret provider, consulted only at dispatch time.
        event_bus: Observers of reporting events.
        persistence: Optional store called with every changed run.
        matcher: Trigger matcher deciding which workflows an event starts.
        poller: Schedule poller starting scheduled runs.
        config: Engine configuration.
    """

    def __init__(
        self,
        store: WorkflowStore,
        pool: RunnerPool | None = None,
        scheduler: Scheduler | None = None,
        concurrency: ConcurrencyGroupManager | None = None,
        secrets: SecretProvider | None = None,
        event_bus: EventBus | None = None,
        persistence: RunStore | None = None,
        config: EngineConfig | None = None,
        matcher: TriggerMatcher | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Source of workflow definitions.
            pool: Runner pool; a new one is created when omitted.
            scheduler: Scheduler over ``pool``; created when omitted.
            concurrency: Concurrency group manager; created when omitted.
            secrets: Optional secret provider.
            event_bus: Event bus; created when omitted.
            persistence: Optional persistence layer implementing ``save_run``.
            config: Engine configuration.
            matcher: Trigger matcher; created when omitted.
        """
        self.config = config or EngineConfig()
        self.store = store
        self.pool = pool or RunnerPool()
        self.scheduler = scheduler or Scheduler(self.pool, queue_timeout=self.config.queue_timeout)
        self.concurrency = concurrency or ConcurrencyGroupManager()
        self.secrets = secrets
        self.event_bus = event_bus or EventBus()
        self.persistence = persistence
        self.matcher = matcher or TriggerMatcher()
        self.poller = SchedulePoller(
            store,
            self,
            interval=self.config.schedule_interval,
            default_branch=self.config.default_branch,
            repository=self.config.repository,
        )
        self._runs: dict[UUID, Run] = {}
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._executions: dict[UUID, UUID] = {}
        self._numbers: dict[str, int] = {}
        self._cancel_reasons: dict[UUID, FailureReason] = {}
        self._draining: dict[UUID, str] = {}
        self._outbox: deque[CIEvent] = deque()
        self._finished: deque[UUID] = deque()
        self._maintenance: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run(self, run_id: UUID) -> Run:
        """Retrieve a run.

        Raises:
            RunNotFoundError: If the run is unknown.
        """
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFoundError(run_id) from None

    def list_runs(self, workflow: str | None = None, status: RunStatus | None = None) -> list[Run]:
        """List runs, newest first, optionally filtered by workflow and status."""
        runs = [
            run
            for run in self._runs.values()
            if (workflow is None or run.workflow_name == workflow) and (status is None or run.status == status)
        ]
        return sorted(runs, key=lambda run: run.created_at, reverse=True)

    def run_for_execution(self, execution_id: UUID) -> Run:
        """Return the run holding a job execution.

        Raises:
            JobExecutionNotFoundError: If the execution is unknown.
        """
        run_id = self._executions.get(execution_id)
        if run_id is None:
            raise JobExecutionNotFoundError(execution_id)
        return self._runs[run_id]

    # ------------------------------------------------------------------
    # Run creation
    # ------------------------------------------------------------------

    async def handle_event(self, event: Event) -> list[Run]:
        """Start a run for every workflow whose triggers ``event`` satisfies.

        Args:
            event: The arriving event.

        Returns:
            The runs created, possibly none.

        Example:
            >>> runs = await coordinator.handle_event(
            ...     Event(kind=EventKind.PUSH, ref="refs/heads/main", actor="octocat")
            ... )
        """
        runs: list[Run] = []
        for definition in self.matcher.match(event, self.store.list_definitions()):
            runs.append(await self.start_run(definition, event))
        return runs

    async def dispatch_workflow(
        self,
        name: str,
        ref: str | None = None,
        inputs: dict[str, Any] | None = None,
        actor: str = "",
    ) -> Run:
        """Start a workflow manually.

        Raises:
            WorkflowNotFoundError: If the workflow is unknown.
            TriggerMismatch: If the workflow has no ``workflow_dispatch`` trigger.
        """
        definition = self.store.get(name)
        event = Event(
            kind=EventKind.WORKFLOW_DISPATCH,
            ref=ref or f"refs/heads/{self.config.default_branch}",
            actor=actor,
            repository=self.config.repository,
            workflow=name,
            inputs=dict(inputs or {}),
        )
        self.matcher.require(definition, event)
        return await self.start_run(definition, event)

    async def start_run(self, definition: WorkflowDefinition, event: Event) -> Run:
        """Create a run of ``definition`` and admit it through its concurrency group.

        The definition is snapshotted into the run and expanded into job
        executions right away. Runs of a group with ``cancel-in-progress``
        supersede the group's older runs, which are cancelled before this returns.

        Args:
            definition: The workflow to run.
            event: The triggering event.

        Returns:
            The created run.
        """
        number = self._numbers.get(definition.name, 0) + 1
        self._numbers[definition.name] = number

        run = Run(number=number, definition=definition, event=event, inputs=self._inputs(definition, event))
        for node in build_plan(definition).values():
            execution = JobExecution(
                run_id=run.id,
                node_id=node.id,
                job_id=node.job.id,
                labels=node.labels,
                timeout=node.job.timeout,
                matrix=dict(node.matrix),
                continue_on_error=node.job.continue_on_error,
            )
            run.executions[node.id] = execution
            self._executions[execution.id] = run.id
        self._runs[run.id] = run
        self._locks[run.id] = asyncio.Lock()
        run.display_title = (
            self._render_for_run(run, definition.run_name, "run name") if definition.run_name else definition.name
        )
        if definition.concurrency is not None:
            run.concurrency_key = self._render_for_run(run, definition.concurrency.group, "concurrency group")

        logger.info(
            "Created run #%d of '%s' (%s) for %s %s", number, definition.name, run.id, event.kind, event.ref
        )
        self._emit(
            RunQueued(
                run_id=run.id,
                workflow=definition.name,
                number=number,
                event_kind=event.kind,
                concurrency_key=run.concurrency_key,
            )
        )
        await self._save(run)

        effects = _Effects()
        if definition.concurrency is None or run.concurrency_key is None:
            effects.admit.append(run.id)
        else:
            admission = self.concurrency.admit(run.id, run.concurrency_key, definition.concurrency.cancel_in_progress)
            for superseded in admission.superseded:
                await self._cancel(superseded, FailureReason.CANCELLED_BY_GROUP, effects)
            if admission.admitted:
                effects.admit.append(run.id)
        await self._apply(effects)
        return run

    @staticmethod
    def _inputs(definition: WorkflowDefinition, event: Event) -> dict[str, Any]:
        trigger = definition.get_trigger(EventKind.WORKFLOW_DISPATCH)
        defaults = dict(trigger.inputs) if trigger is not None else {}
        return {**defaults, **event.inputs}

    @staticmethod
    def _render_for_run(run: Run, template: str, what: str) -> str:
        """Render a run-level template; a template that fails to render is used verbatim."""
        values = {"github": github_context(run), "inputs": run.inputs, "env": dict(run.definition.env)}
        try:
            return render_template(template, values)
        except ValueError as e:
            logger.warning("Could not render %s of run %s, using it verbatim: %s", what, run.id, e)
            return template

    # ------------------------------------------------------------------
    # Internal plumbing
    # ------------------------------------------------------------------

    def _lock(self, run_id: UUID) -> asyncio.Lock:
        return self._locks.setdefault(run_id, asyncio.Lock())

    def _emit(self, event: CIEvent) -> None:
        self._outbox.append(event)

    async def _flush(self) -> None:
        """Deliver queued events to observers; never called while a run lock is held."""
        while self._outbox:
            await self.event_bus.emit(self._outbox.popleft())

    async def _save(self, run: Run) -> None:
        if self.persistence is not None:
            await self.persistence.save_run(run)

    async def _apply(self, effects: _Effects) -> None:
        """Carry out work collected under run locks, then dispatch what became ready."""
        while effects.cancels or effects.admit:
            cancels, effects.cancels = effects.cancels, []
            for client, execution_id, reason in cancels:
                try:
                    await client.cancel(execution_id, reason)
                except Exception:
                    logger.warning("Cancel signal for job execution %s failed", execution_id, exc_info=True)

            admit, effects.admit = effects.admit, []
            for run_id in admit:
                run = self._runs[run_id]
                async with self._lock(run_id):
                    if run.status != RunStatus.PENDING:
                        continue
                    run.transition(RunStatus.RUNNING)
                    logger.info("Run #%d of '%s' (%s) started", run.number, run.workflow_name, run.id)
                    self._emit(RunStarted(run_id=run.id, workflow=run.workflow_name, number=run.number))
                    await self._advance(run, effects)
                    await self._save(run)
        await self.pump()
        self._evict()

    def _evict(self) -> None:
        """Forget the oldest finished runs beyond ``retain_finished_runs``.

        A run is kept while one of its jobs still waits for a runner to confirm a
        cancel, or while its lock is held.
        """
        limit = self.config.retain_finished_runs
        if limit is None:
            return
        excess = len(self._finished) - limit
        for run_id in list(self._finished):
            if excess <= 0:
                break
            run = self._runs[run_id]
            if run.active_executions() or self._lock(run_id).locked():
                continue
            if any(self._executions.get(execution_id) == run_id for execution_id in self._draining):
                continue
            self._finished.remove(run_id)
            del self._runs[run_id]
            self._locks.pop(run_id, None)
            for execution in run.executions.values():
                self._executions.pop(execution.id, None)
            excess -= 1
            logger.debug("Forgot finished run %s", run_id)

    async def _advance(self, run: Run, effects: _Effects) -> None:
        """Apply readiness decisions until nothing changes, then finalise the run if it is done."""
        if run.status != RunStatus.RUNNING:
            return
        progressed = True
        while progressed:
            progressed = False
            for readiness in evaluate_readiness(run):
                execution = run.executions[readiness.node_id]
                if readiness.decision == Decision.READY:
                    job = run.definition.jobs[execution.job_id]
                    execution.transition(JobStatus.QUEUED)
                    self.scheduler.enqueue(execution, job.matrix.max_parallel if job.matrix else None)
                    self._emit(
                        JobQueued(
                            run_id=run.id,
                            execution_id=execution.id,
                            node_id=execution.node_id,
                            labels=execution.labels,
                            attempt=execution.attempt,
                        )
                    )
                elif readiness.decision == Decision.SKIP:
                    assert readiness.reason is not None
                    execution.transition(JobStatus.SKIPPED, readiness.reason)
                    logger.info("Skipped %s of run %s: %s", execution.node_id, run.id, readiness.reason)
                    self._emit(
                        JobSkipped(
                            run_id=run.id,
                            execution_id=execution.id,
                            node_id=execution.node_id,
                            reason=readiness.reason,
                        )
                    )
                    progressed = True
                elif readiness.decision == Decision.FAIL:
                    execution.transition(JobStatus.FAILED, readiness.reason)
                    logger.info("Failed %s of run %s: %s", execution.node_id, run.id, readiness.reason)
                    self._emit_completed(run, execution)
                    progressed = True
        await self._finalize(run, effects)

    async def _finalize(self, run: Run, effects: _Effects) -> None:
        if run.status != RunStatus.RUNNING or run.active_executions():
            return

        executions = list(run.executions.values())
        failed = [execution for execution in executions if execution.status == JobStatus.FAILED and not execution.tolerated]
        cancelled = [execution for execution in executions if execution.status == JobStatus.CANCELLED]
        if failed:
            run.transition(RunStatus.FAILED, failed[0].reason)
        elif cancelled:
            run.transition(RunStatus.CANCELLED, cancelled[0].reason)
        else:
            run.transition(RunStatus.SUCCEEDED)

        self._finished.append(run.id)
        logger.info("Run #%d of '%s' (%s) %s", run.number, run.workflow_name, run.id, run.status)
        self._emit(
            RunCompleted(
                run_id=run.id,
                workflow=run.workflow_name,
                number=run.number,
                status=run.status,
                reason=run.reason,
                duration_seconds=run.duration,
            )
        )
        next_run = self.concurrency.release(run.id)
        if next_run is not None:
            effects.admit.append(next_run)

    def _emit_completed(self, run: Run, execution: JobExecution) -> None:
        self._emit(
            JobCompleted(
                run_id=run.id,
                execution_id=execution.id,
                node_id=execution.node_id,
                status=execution.status,
                reason=execution.reason,
                runner_id=execution.runner_id,
            )
        )

    async def _finish(
        self,
        run: Run,
        execution: JobExecution,
        status: JobStatus,
        reason: FailureReason | None,
        effects: _Effects,
        release_runner: bool = True,
    ) -> None:
        """Move a queued or running execution to a terminal status, or retry it."""
        self.scheduler.disarm_timeout(("timeout", execution.id))
        self.scheduler.disarm_timeout(("grace", execution.id))
        self.scheduler.remove(execution.id)
        self._cancel_reasons.pop(execution.id, None)

        was_running = execution.status == JobStatus.RUNNING
        if was_running:
            self.scheduler.finished(execution)
            if release_runner and execution.runner_id is not None:
                self.pool.release(execution.runner_id, execution.id)

        job = run.definition.jobs[execution.job_id]
        if (
            was_running
            and status == JobStatus.FAILED
            and not run.cancel_requested
            and job.retry.should_retry(execution.attempt, reason)
        ):
            logger.info(
                "Retrying %s of run %s after %s (attempt %d of %d)",
                execution.node_id,
                run.id,
                reason,
                execution.attempt + 1,
                job.retry.max_attempts,
            )
            execution.transition(JobStatus.QUEUED)
            self.scheduler.enqueue(execution, job.matrix.max_parallel if job.matrix else None)
            self._emit(
                JobQueued(
                    run_id=run.id,
                    execution_id=execution.id,
                    node_id=execution.node_id,
                    labels=execution.labels,
                    attempt=execution.attempt,
                )
            )
            return

        execution.transition(status, reason)
        logger.info("Job %s of run %s %s%s", execution.node_id, run.id, status, f" ({reason})" if reason else "")
        self._emit_completed(run, execution)

        if status == JobStatus.FAILED and job.matrix is not None and job.matrix.fail_fast and not job.continue_on_error:
            for sibling in run.executions_for_job(job.id):
                if sibling is not execution:
                    await self._cancel_execution(run, sibling, FailureReason.MATRIX_FAIL_FAST, effects)

        await self._advance(run, effects)

    async def _cancel_execution(
        self, run: Run, execution: JobExecution, reason: FailureReason, effects: _Effects
    ) -> None:
        """Cancel pending and queued executions now; signal running ones to stop."""
        if execution.status in (JobStatus.PENDING, JobStatus.QUEUED):
            self.scheduler.remove(execution.id)
            execution.transition(JobStatus.CANCELLED, reason)
            self._emit_completed(run, execution)
        elif execution.status == JobStatus.RUNNING and not execution.cancel_requested:
            execution.cancel_requested = True
            self._cancel_reasons[execution.id] = reason
            if execution.runner_id is not None and execution.runner_id in self.pool:
                effects.cancels.append((self.pool.get(execution.runner_id).client, execution.id, reason))
            self.scheduler.arm_timeout(
                ("grace", execution.id),
                self.config.cancel_grace_period,
                partial(self._on_cancel_grace, run.id, execution.id, execution.attempt),
            )

    async def _cancel(self, run_id: UUID, reason: FailureReason, effects: _Effects) -> bool:
        run = self.get_run(run_id)
        async with self._lock(run_id):
            if run.is_terminal:
                return False
            run.cancel_requested = True
            for execution in list(run.executions.values()):
                await self._cancel_execution(run, execution, reason, effects)
            run.transition(RunStatus.CANCELLED, reason)
            self._finished.append(run.id)
            logger.info("Run #%d of '%s' (%s) cancelled: %s", run.number, run.workflow_name, run.id, reason)
            self._emit(
                RunCompleted(
                    run_id=run.id,
                    workflow=run.workflow_name,
                    number=run.number,
                    status=run.status,
                    reason=reason,
                    duration_seconds=run.duration,
                )
            )
            await self._save(run)
            next_run = self.concurrency.release(run.id)
            if next_run is not None:
                effects.admit.append(next_run)
            return True

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def pump(self) -> int:
        """Dispatch every queued execution an idle runner can take.

        Returns:
            Number of executions handed to runners.
        """
        dispatched = 0
        for assignment in self.scheduler.plan():
            if await self._dispatch(assignment):
                dispatched += 1
        await self._flush()
        return dispatched

    async def _dispatch(self, assignment: Assignment) -> bool:
        execution, runner = assignment.execution, assignment.runner
        run = self._runs[execution.run_id]
        effects = _Effects()
        request: DispatchRequest | None = None

        async with self._lock(run.id):
            if execution.status != JobStatus.QUEUED or run.is_terminal:
                self.pool.release(runner.id, execution.id)
                self.scheduler.finished(execution)
                return False
            job = run.definition.jobs[execution.job_id]
            try:
                request = await self._build_request(run, execution, job, runner.id)
            except Exception:
                logger.exception("Could not build the dispatch request of %s in run %s", execution.node_id, run.id)
                self.pool.release(runner.id, execution.id)
                self.scheduler.finished(execution)
                await self._finish(run, execution, JobStatus.FAILED, FailureReason.DISPATCH_FAILED, effects)
            else:
                execution.runner_id = runner.id
                execution.transition(JobStatus.RUNNING)
                self.scheduler.arm_timeout(
                    ("timeout", execution.id),
                    execution.timeout,
                    partial(self._on_timeout, run.id, execution.id, execution.attempt),
                )
                logger.info(
                    "Dispatching %s of run %s to runner '%s' (attempt %d)",
                    execution.node_id,
                    run.id,
                    runner.id,
                    execution.attempt,
                )
                self._emit(
                    JobStarted(
                        run_id=run.id,
                        execution_id=execution.id,
                        node_id=execution.node_id,
                        runner_id=runner.id,
                        attempt=execution.attempt,
                    )
                )
            await self._save(run)

        if request is None:
            await self._apply(effects)
            return False

        try:
            await runner.client.dispatch(request)
        except Exception:
            logger.warning("Dispatch of %s to runner '%s' failed", execution.node_id, runner.id, exc_info=True)
            await self._dispatch_failed(run, execution.id, runner.id, request.attempt)
            return False
        return True

    async def _build_request(self, run: Run, execution: JobExecution, job: Job, runner_id: str) -> DispatchRequest:
        """Resolve secrets and render every template of the job's steps."""
        expressions = job.expressions()
        for value in run.definition.env.values():
            expressions.extend(parse_template(value).expressions)
        secrets = await resolve_secrets(self.secrets, referenced_secrets(expressions))

        values = expression_values(run, execution)
        values["secrets"] = secrets
        env = {name: render_template(value, values) for name, value in {**run.definition.env, **job.env}.items()}
        values["env"] = env

        steps = tuple(
            DispatchStep(
                index=index,
                name=render_template(step.name, values),
                uses=step.uses,
                run=render_template(step.run, values) if step.run is not None else None,
                inputs={name: render_template(to_string(value), values) for name, value in step.inputs.items()},
                env={name: render_template(value, values) for name, value in step.env.items()},
                condition=step.condition_source,
                id=step.id,
                continue_on_error=step.continue_on_error,
                timeout=step.timeout,
                shell=step.shell,
                working_directory=step.working_directory,
            )
            for index, step in enumerate(job.steps)
        )
        return DispatchRequest(
            execution_id=execution.id,
            run_id=run.id,
            workflow=run.workflow_name,
            node_id=execution.node_id,
            job_id=execution.job_id,
            attempt=execution.attempt,
            runner_id=runner_id,
            steps=steps,
            env=env,
            context={name: value for name, value in values.items() if name != "secrets"},
            timeout=execution.timeout,
            masks=tuple(sorted({value for value in secrets.values() if value})),
        )

    async def _dispatch_failed(self, run: Run, execution_id: UUID, runner_id: str, attempt: int) -> None:
        with contextlib.suppress(RunnerNotFoundError):
            record = self.pool.deregister(runner_id)
            self._emit(RunnerRemoved(runner_id=runner_id, reason="dispatch failed"))
            await self._close_client(record.client)
        effects = _Effects()
        async with self._lock(run.id):
            execution = run.get_execution(execution_id)
            if (
                execution.status == JobStatus.RUNNING
                and execution.runner_id == runner_id
                and execution.attempt == attempt
            ):
                await self._finish(
                    run, execution, JobStatus.FAILED, FailureReason.RUNNER_LOST, effects, release_runner=False
                )
                await self._save(run)
        await self._apply(effects)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def _on_timeout(self, run_id: UUID, execution_id: UUID, attempt: int) -> None:
        run = self._runs[run_id]
        effects = _Effects()
        async with self._lock(run_id):
            execution = run.get_execution(execution_id)
            if execution.status != JobStatus.RUNNING or execution.attempt != attempt:
                return
            logger.warning(
                "Job %s of run %s timed out after %.0f seconds", execution.node_id, run.id, execution.timeout
            )
            runner_id = execution.runner_id
            draining = False
            if runner_id is not None and runner_id in self.pool:
                draining = True
                # the runner stays reserved until it confirms the stop
                self._draining[execution.id] = runner_id
                effects.cancels.append((self.pool.get(runner_id).client, execution.id, FailureReason.TIMEOUT))
                self.scheduler.arm_timeout(
                    ("drain", execution.id),
                    self.config.cancel_grace_period,
                    partial(self._on_drain_expired, execution.id, runner_id),
                )
            await self._finish(
                run, execution, JobStatus.FAILED, FailureReason.TIMEOUT, effects, release_runner=not draining
            )
            await self._save(run)
        await self._apply(effects)

    async def _on_drain_expired(self, execution_id: UUID, runner_id: str) -> None:
        if self._draining.get(execution_id) != runner_id:
            return
        del self._draining[execution_id]
        logger.warning("Runner '%s' did not confirm stopping job execution %s", runner_id, execution_id)
        self.pool.release(runner_id, execution_id)
        await self.pump()

    async def _on_cancel_grace(self, run_id: UUID, execution_id: UUID, attempt: int) -> None:
        run = self._runs[run_id]
        effects = _Effects()
        async with self._lock(run_id):
            execution = run.get_execution(execution_id)
            if execution.status != JobStatus.RUNNING or execution.attempt != attempt:
                return
            logger.warning(
                "Runner '%s' did not acknowledge cancelling %s within %.0f seconds",
                execution.runner_id,
                execution.node_id,
                self.config.cancel_grace_period,
            )
            reason = self._cancel_reasons.get(execution.id, FailureReason.CANCELLED)
            await self._finish(run, execution, JobStatus.CANCELLED, reason, effects)
            await self._save(run)
        await self._apply(effects)

    # ------------------------------------------------------------------
    # Runner callbacks
    # ------------------------------------------------------------------

    async def report_step(self, runner_id: str, execution_id: UUID, step: StepResult) -> JobExecution:
        """Record a step result reported by a runner.

        Reports for executions that are no longer running are logged and ignored.

        Raises:
            JobExecutionNotFoundError: If the execution is unknown.
            StaleRunnerError: If the runner is not the one running the execution.
        """
        run = self.run_for_execution(execution_id)
        async with self._lock(run.id):
            execution = run.get_execution(execution_id)
            if execution.status != JobStatus.RUNNING:
                logger.warning(
                    "Ignoring step report from runner '%s' for %s, which is %s",
                    runner_id,
                    execution.node_id,
                    execution.status,
                )
                return execution
            if execution.runner_id != runner_id:
                raise StaleRunnerError(runner_id, execution_id)
            execution.steps = sorted(
                [existing for existing in execution.steps if existing.index != step.index] + [step],
                key=lambda result: result.index,
            )
            self._emit(
                StepReported(
                    run_id=run.id,
                    execution_id=execution.id,
                    node_id=execution.node_id,
                    step_index=step.index,
                    step_name=step.name,
                    status=step.status,
                )
            )
            await self._save(run)
        await self._flush()
        return execution

    @staticmethod
    def _job_failed(job: Job, result: JobResult) -> bool:
        if result.error is not None:
            return True
        for step in result.steps:
            if step.status not in (StepStatus.FAILED, StepStatus.CANCELLED):
                continue
            tolerated = 0 <= step.index < len(job.steps) and job.steps[step.index].continue_on_error
            if not tolerated:
                return True
        return False

    async def report_job_result(self, runner_id: str, execution_id: UUID, result: JobResult) -> JobExecution:
        """Complete a running execution with the runner's report.

        The execution succeeds unless the report carries an error or a step failed
        without ``continue-on-error``. A result for an execution that was asked to
        cancel completes it as cancelled. Results for executions that are no longer
        running (timed out, lost, cancelled) are logged and ignored.

        Raises:
            JobExecutionNotFoundError: If the execution is unknown.
            StaleRunnerError: If the runner is not the one running the execution.
        """
        run = self.run_for_execution(execution_id)
        effects = _Effects()
        async with self._lock(run.id):
            execution = run.get_execution(execution_id)
            if execution.status != JobStatus.RUNNING:
                logger.warning(
                    "Ignoring late result from runner '%s' for %s, which is %s",
                    runner_id,
                    execution.node_id,
                    execution.status,
                )
                return execution
            if execution.runner_id != runner_id:
                raise StaleRunnerError(runner_id, execution_id)

            execution.steps = sorted(result.steps, key=lambda step: step.index)
            execution.outputs = dict(result.outputs)
            execution.error = result.error

            status: JobStatus
            reason: FailureReason | None
            if execution.cancel_requested:
                status = JobStatus.CANCELLED
                reason = self._cancel_reasons.get(execution.id, FailureReason.CANCELLED)
            elif self._job_failed(run.definition.jobs[execution.job_id], result):
                status, reason = JobStatus.FAILED, FailureReason.STEP_FAILED
            else:
                status, reason = JobStatus.SUCCEEDED, None
            await self._finish(run, execution, status, reason, effects)
            await self._save(run)
        await self._apply(effects)
        return execution

    async def acknowledge_cancel(self, runner_id: str, execution_id: UUID) -> JobExecution:
        """Confirm that a runner stopped an execution.

        Raises:
            JobExecutionNotFoundError: If the execution is unknown.
        """
        run = self.run_for_execution(execution_id)
        effects = _Effects()
        async with self._lock(run.id):
            execution = run.get_execution(execution_id)
            if self._draining.get(execution_id) == runner_id:
                del self._draining[execution_id]
                self.scheduler.disarm_timeout(("drain", execution_id))
                self.pool.release(runner_id, execution_id)
            elif execution.status == JobStatus.RUNNING and execution.runner_id == runner_id:
                reason = self._cancel_reasons.get(execution.id, FailureReason.CANCELLED)
                await self._finish(run, execution, JobStatus.CANCELLED, reason, effects)
                await self._save(run)
            else:
                logger.warning(
                    "Ignoring cancel acknowledgement from runner '%s' for %s, which is %s",
                    runner_id,
                    execution.node_id,
                    execution.status,
                )
        await self._apply(effects)
        return execution

    # ------------------------------------------------------------------
    # Runners
    # ------------------------------------------------------------------

    async def register_runner(
        self, runner_id: str, labels: frozenset[str] | set[str], client: RunnerClient
    ) -> RunnerRecord:
        """Add a runner to the pool and dispatch whatever it can take.

        A runner registering again with a new client has its previous client closed.
        """
        previous = self.pool.get(runner_id).client if runner_id in self.pool else None
        record = self.pool.register(runner_id, labels, client)
        if previous is not None and previous is not client:
            await self._close_client(previous)
        self._emit(RunnerRegistered(runner_id=runner_id, labels=record.labels))
        await self.pump()
        return record

    def heartbeat(self, runner_id: str) -> None:
        """Record a runner heartbeat.

        Raises:
            RunnerNotFoundError: If the runner is not registered.
        """
        self.pool.heartbeat(runner_id)

    async def deregister_runner(self, runner_id: str) -> None:
        """Remove a runner; the job it was running fails with ``RunnerLost``.

        Raises:
            RunnerNotFoundError: If the runner is not registered.
        """
        record = self.pool.deregister(runner_id)
        await self._runner_gone(record, "deregistered")

    async def runner_lost(self, runner_id: str) -> None:
        """Handle a runner that vanished; unknown runners are ignored."""
        try:
            record = self.pool.deregister(runner_id)
        except RunnerNotFoundError:
            return
        await self._runner_gone(record, "lost")

    async def _runner_gone(self, record: RunnerRecord, reason: str) -> None:
        self._emit(RunnerRemoved(runner_id=record.id, reason=reason))
        for execution_id, draining_runner in list(self._draining.items()):
            if draining_runner == record.id:
                del self._draining[execution_id]
                self.scheduler.disarm_timeout(("drain", execution_id))

        effects = _Effects()
        run_id = self._executions.get(record.execution_id) if record.execution_id is not None else None
        if run_id is not None and record.execution_id is not None:
            run = self._runs[run_id]
            async with self._lock(run_id):
                execution = run.get_execution(record.execution_id)
                if execution.status == JobStatus.RUNNING and execution.runner_id == record.id:
                    if execution.cancel_requested:
                        status = JobStatus.CANCELLED
                        why = self._cancel_reasons.get(execution.id, FailureReason.CANCELLED)
                    else:
                        status, why = JobStatus.FAILED, FailureReason.RUNNER_LOST
                    logger.warning("Runner '%s' %s while running %s of run %s", record.id, reason, execution.node_id, run.id)
                    await self._finish(run, execution, status, why, effects, release_runner=False)
                    await self._save(run)
        await self._apply(effects)
        await self._close_client(record.client)

    async def _close_client(self, client: RunnerClient) -> None:
        close = getattr(client, "aclose", None)
        if close is None:
            return
        try:
            await close()
        except Exception:
            logger.warning("Closing the client of a removed runner failed", exc_info=True)

    # ------------------------------------------------------------------
    # Cancellation and approvals
    # ------------------------------------------------------------------

    async def cancel_run(self, run_id: UUID, reason: FailureReason = FailureReason.CANCELLED) -> Run:
        """Cancel a run.

        Pending and queued jobs are cancelled immediately; running jobs are
        signalled and become cancelled once their runner acknowledges, or after
        the grace period. The run itself is cancelled right away.

        Raises:
            RunNotFoundError: If the run is unknown.
            RunAlreadyCompletedError: If the run already finished.
        """
        run = self.get_run(run_id)
        if run.is_terminal:
            raise RunAlreadyCompletedError(run.id, run.status)
        effects = _Effects()
        await self._cancel(run_id, reason, effects)
        await self._apply(effects)
        return run

    async def approve(self, run_id: UUID, gate: str, actor: str = "") -> Run:
        """Approve a gate; jobs waiting on it become ready.

        Raises:
            RunNotFoundError: If the run is unknown.
            RunAlreadyCompletedError: If the run already finished.
            ApprovalGateNotFoundError: If no job of the run waits on ``gate``.
        """
        return await self._decide_gate(run_id, gate, actor, approved=True)

    async def reject(self, run_id: UUID, gate: str, actor: str = "") -> Run:
        """Reject a gate; jobs waiting on it fail with ``ApprovalRejected``.

        Raises:
            RunNotFoundError: If the run is unknown.
            RunAlreadyCompletedError: If the run already finished.
            ApprovalGateNotFoundError: If no job of the run waits on ``gate``.
        """
        return await self._decide_gate(run_id, gate, actor, approved=False)

    async def _decide_gate(self, run_id: UUID, gate: str, actor: str, approved: bool) -> Run:
        run = self.get_run(run_id)
        effects = _Effects()
        async with self._lock(run_id):
            if run.is_terminal:
                raise RunAlreadyCompletedError(run.id, run.status)
            gates = {job.approval_gate for job in run.definition.jobs.values() if job.approval_gate}
            if gate not in gates:
                raise ApprovalGateNotFoundError(run.id, gate)
            if approved:
                run.approvals[gate] = actor
                run.rejections.pop(gate, None)
            else:
                run.rejections[gate] = actor
                run.approvals.pop(gate, None)
            logger.info("Gate '%s' of run %s %s by '%s'", gate, run.id, "approved" if approved else "rejected", actor)
            self._emit(ApprovalRecorded(run_id=run.id, gate=gate, actor=actor, approved=approved))
            await self._advance(run, effects)
            await self._save(run)
        await self._apply(effects)
        return run

    # ------------------------------------------------------------------
    # Background loops
    # ------------------------------------------------------------------

    async def maintain(self) -> None:
        """One maintenance pass: expire silent runners, fail executions that
        waited too long for a runner, reload changed workflow files and dispatch."""
        for record in self.pool.expire(self.config.runner_heartbeat_ttl):
            await self._runner_gone(record, "missed its heartbeat")

        for execution in self.scheduler.expired():
            run = self._runs[execution.run_id]
            effects = _Effects()
            async with self._lock(run.id):
                if execution.status != JobStatus.QUEUED:
                    continue
                logger.warning("No runner took %s of run %s in time", execution.node_id, run.id)
                await self._finish(run, execution, JobStatus.FAILED, FailureReason.DISPATCH_TIMEOUT, effects)
                await self._save(run)
            await self._apply(effects)

        if self.config.reload_workflows:
            self.store.reload_changed()
        await self.pump()

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.maintenance_interval)
            try:
                await self.maintain()
            except Exception:
                logger.exception("Maintenance pass failed")

    def start(self, schedule: bool = True) -> None:
        """Start the maintenance loop and, unless disabled, the schedule poller."""
        if self._maintenance is None or self._maintenance.done():
            self._maintenance = asyncio.create_task(self._maintenance_loop(), name="litestar-ci-maintenance")
        if schedule:
            self.poller.start()

    async def stop(self) -> None:
        """Stop the background loops and every pending timer, and close runner clients."""
        if self._maintenance is not None:
            self._maintenance.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._maintenance
            self._maintenance = None
        await self.poller.stop()
        await self.scheduler.close()
        for record in list(self.pool):
            await self._close_client(record.client)
