"""In-process runner executing steps as local subprocesses.

:class:`SubprocessRunner` implements the runner client protocol for the machine
the coordinator runs on. Steps of a job run strictly one after another: ``run:``
steps in a shell, ``uses:`` steps through an :class:`ActionRegistry`. Each step
result is reported as soon as it is known and the job result once every step
ran. Captured output has every secret value of the request replaced by ``***``.

A step writes outputs by appending ``name=value`` lines to the file named by the
``GITHUB_OUTPUT`` environment variable.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shlex
import signal
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from litestar_ci.core.expressions import evaluate_condition, parse_expression
from litestar_ci.core.models import JobResult, StepResult, utcnow
from litestar_ci.core.types import StepStatus
from litestar_ci.exceptions import CIError, ExpressionError, RunnerNotFoundError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Mapping
    from uuid import UUID

    from litestar_ci.core.models import DispatchRequest, DispatchStep
    from litestar_ci.engine.coordinator import ExecutionCoordinator
    from litestar_ci.engine.runners import RunnerRecord

    ActionHandler = Callable[[DispatchStep, DispatchRequest], Awaitable[Mapping[str, str] | None]]

__all__ = ["ActionRegistry", "StepStatusView", "SubprocessRunner", "redact"]

logger = logging.getLogger(__name__)

MASK = "***"
_POSIX = os.name == "posix"

_OUTCOMES = {
    StepStatus.SUCCEEDED: "success",
    StepStatus.FAILED: "failure",
    StepStatus.SKIPPED: "skipped",
    StepStatus.CANCELLED: "cancelled",
}


def redact(text: str, masks: Iterable[str]) -> str:
    """Replace every occurrence of each mask in ``text`` with ``***``.

    Longer masks are replaced first, so a secret containing another one is
    hidden completely.
    """
    for mask in sorted((mask for mask in masks if mask), key=len, reverse=True):
        text = text.replace(mask, MASK)
    return text


class ActionRegistry:
    """Handlers serving ``uses:`` steps, keyed by action name without its ``@ref``.

    Example:
        >>> actions = ActionRegistry()
        >>> @actions.register("actions/checkout")
        ... async def checkout(step, request):
        ...     return {"ref": request.context["github"]["ref"]}
    """

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    def __contains__(self, uses: object) -> bool:
        return isinstance(uses, str) and self._key(uses) in self._handlers

    @staticmethod
    def _key(uses: str) -> str:
        return uses.split("@", 1)[0]

    def register(self, uses: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator registering a handler for ``uses``."""

        def decorator(handler: ActionHandler) -> ActionHandler:
            self._handlers[self._key(uses)] = handler
            return handler

        return decorator

    def get(self, uses: str) -> ActionHandler | None:
        return self._handlers.get(self._key(uses))


@dataclass
class StepStatusView:
    """Status functions for a step condition, answered from the steps before it."""

    results: list[StepResult]
    continue_on_error: Mapping[int, bool]
    cancel_requested: bool = False

    def success(self) -> bool:
        return not self.cancel_requested and not self.failure()

    def failure(self) -> bool:
        return any(
            result.status in (StepStatus.FAILED, StepStatus.CANCELLED)
            and not self.continue_on_error.get(result.index, False)
            for result in self.results
        )

    def cancelled(self) -> bool:
        return self.cancel_requested

    def approved(self, gate: str) -> bool:
        return False


@dataclass
class _Job:
    request: DispatchRequest
    cancel_requested: bool = False
    process: asyncio.subprocess.Process | None = None
    logs: list[str] = field(default_factory=list)


class SubprocessRunner:
    """Runner executing jobs on the local machine.

    Attributes:
        coordinator: Coordinator the runner reports to.
        runner_id: Id the runner registers under.
        labels: Labels the runner advertises.
        workdir: Directory steps run in, unless they set ``working-directory``.
        actions: Handlers for ``uses:`` steps.
        logs: Redacted output of every step, per job execution, for the most
            recent ``keep_logs`` jobs.
        heartbeat_interval: Seconds between heartbeats, a third of the coordinator's
            heartbeat TTL by default.
        keep_logs: Number of most recent jobs whose logs are kept.
    """

    def __init__(
        self,
        coordinator: ExecutionCoordinator,
        runner_id: str,
        labels: Iterable[str] = ("self-hosted",),
        workdir: str | Path | None = None,
        actions: ActionRegistry | None = None,
        heartbeat_interval: float | None = None,
        keep_logs: int = 100,
    ) -> None:
        self.coordinator = coordinator
        self.runner_id = runner_id
        self.labels = frozenset(labels)
        self.workdir = Path(workdir) if workdir is not None else Path.cwd()
        self.actions = actions or ActionRegistry()
        self.logs: dict[UUID, list[str]] = {}
        self.keep_logs = keep_logs
        self._jobs: dict[UUID, _Job] = {}
        self.heartbeat_interval = heartbeat_interval or coordinator.config.runner_heartbeat_ttl / 3
        self._tasks: set[asyncio.Task[None]] = set()
        self._heartbeat: asyncio.Task[None] | None = None

    async def register(self) -> RunnerRecord:
        """Register with the coordinator and keep sending heartbeats until closed."""
        record = await self.coordinator.register_runner(self.runner_id, self.labels, self)
        if self._heartbeat is None or self._heartbeat.done():
            self._heartbeat = asyncio.create_task(self._beat(), name=f"litestar-ci-heartbeat-{self.runner_id}")
        return record

    async def close(self) -> None:
        """Stop sending heartbeats."""
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat
            self._heartbeat = None

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                self.coordinator.heartbeat(self.runner_id)
            except RunnerNotFoundError:
                logger.info("Runner '%s' is no longer registered, heartbeats stopped", self.runner_id)
                return

    async def dispatch(self, request: DispatchRequest) -> None:
        """Accept a job and run it in the background."""
        job = _Job(request=request)
        self._jobs[request.execution_id] = job
        self.logs[request.execution_id] = job.logs
        while len(self.logs) > self.keep_logs:
            del self.logs[next(iter(self.logs))]
        task = asyncio.create_task(self._execute(job), name=f"litestar-ci-job-{request.execution_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def cancel(self, execution_id: UUID, reason: str) -> None:
        """Stop a job: the running step is killed and no further step starts."""
        job = self._jobs.get(execution_id)
        if job is None:
            logger.debug("Cancel for unknown job execution %s ignored", execution_id)
            return
        logger.info("Cancelling %s: %s", job.request.node_id, reason)
        job.cancel_requested = True
        if job.process is not None and job.process.returncode is None:
            _kill(job.process)

    async def wait(self) -> None:
        """Wait until every accepted job has been reported."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _execute(self, job: _Job) -> None:
        request = job.request
        results: list[StepResult] = []
        outputs: dict[str, str] = {}
        error: str | None = None
        try:
            for step in request.steps:
                if job.cancel_requested:
                    break
                result = await self._run_step(job, step, results)
                results.append(result)
                outputs.update(result.outputs)
                await self.coordinator.report_step(self.runner_id, request.execution_id, result)
        except Exception as e:
            logger.exception("Job %s failed on runner '%s'", request.node_id, self.runner_id)
            error = redact(str(e), request.masks)
        finally:
            self._jobs.pop(request.execution_id, None)

        try:
            if job.cancel_requested:
                await self.coordinator.acknowledge_cancel(self.runner_id, request.execution_id)
            else:
                await self.coordinator.report_job_result(
                    self.runner_id, request.execution_id, JobResult(steps=results, outputs=outputs, error=error)
                )
        except CIError:
            logger.warning("Coordinator rejected the report of %s", request.node_id, exc_info=True)

    def _values(self, request: DispatchRequest, step: DispatchStep, results: list[StepResult]) -> dict[str, Any]:
        by_index = {candidate.index: candidate for candidate in request.steps}
        steps: dict[str, Any] = {}
        for result in results:
            declared = by_index.get(result.index)
            if declared is None or declared.id is None:
                continue
            outcome = _OUTCOMES[result.status]
            steps[declared.id] = {
                "outputs": dict(result.outputs),
                "outcome": outcome,
                "conclusion": "success" if outcome == "failure" and declared.continue_on_error else outcome,
            }
        return {**request.context, "env": {**request.env, **step.env}, "steps": steps}

    async def _run_step(self, job: _Job, step: DispatchStep, results: list[StepResult]) -> StepResult:
        request = job.request
        started = utcnow()
        view = StepStatusView(
            results=results,
            continue_on_error={candidate.index: candidate.continue_on_error for candidate in request.steps},
            cancel_requested=job.cancel_requested,
        )
        try:
            condition = parse_expression(step.condition) if step.condition else None
            should_run = evaluate_condition(condition, self._values(request, step, results), view)
        except (ExpressionError, ValueError) as e:
            return StepResult(
                index=step.index,
                name=step.name,
                status=StepStatus.FAILED,
                error=f"Invalid condition: {e}",
                step_id=step.id,
                started_at=started,
                completed_at=utcnow(),
            )
        if not should_run:
            logger.debug("Skipping step '%s' of %s", step.name, request.node_id)
            return StepResult(index=step.index, name=step.name, status=StepStatus.SKIPPED, step_id=step.id)

        if step.uses is not None:
            result = await self._run_action(request, step)
        else:
            result = await self._run_command(job, step)
        result.started_at = started
        result.completed_at = utcnow()
        return result

    async def _run_action(self, request: DispatchRequest, step: DispatchStep) -> StepResult:
        assert step.uses is not None
        handler = self.actions.get(step.uses)
        if handler is None:
            return StepResult(
                index=step.index,
                name=step.name,
                status=StepStatus.FAILED,
                error=f"No handler for action '{step.uses}'",
                step_id=step.id,
            )
        try:
            outputs = await handler(step, request)
        except Exception as e:
            logger.warning("Action '%s' failed in %s", step.uses, request.node_id, exc_info=True)
            return StepResult(
                index=step.index,
                name=step.name,
                status=StepStatus.FAILED,
                error=redact(str(e), request.masks),
                step_id=step.id,
            )
        return StepResult(
            index=step.index,
            name=step.name,
            status=StepStatus.SUCCEEDED,
            outputs=dict(outputs or {}),
            step_id=step.id,
        )

    async def _run_command(self, job: _Job, step: DispatchStep) -> StepResult:
        request = job.request
        assert step.run is not None
        cwd = self.workdir / step.working_directory if step.working_directory else self.workdir

        with tempfile.TemporaryDirectory(prefix="litestar-ci-") as scratch:
            output_file = Path(scratch) / "output"
            output_file.touch()
            env = {**os.environ, **request.env, **step.env, "GITHUB_OUTPUT": str(output_file)}

            if step.shell:
                process = await asyncio.create_subprocess_exec(
                    *shlex.split(step.shell),
                    "-c",
                    step.run,
                    cwd=cwd,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=_POSIX,
                )
            else:
                process = await asyncio.create_subprocess_shell(
                    step.run,
                    cwd=cwd,
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=_POSIX,
                )
            job.process = process
            if job.cancel_requested:
                _kill(process)
            timed_out = False
            try:
                stdout, _ = await asyncio.wait_for(process.communicate(), timeout=step.timeout)
            except TimeoutError:
                timed_out = True
                _kill(process)
                stdout, _ = await process.communicate()
            finally:
                job.process = None

            output = redact(stdout.decode(errors="replace"), request.masks)
            job.logs.append(output)
            outputs = _read_outputs(output_file)

        if job.cancel_requested:
            status, error = StepStatus.CANCELLED, "Cancelled"
        elif timed_out:
            status, error = StepStatus.FAILED, f"Step timed out after {step.timeout:.0f} seconds"
        elif process.returncode != 0:
            status, error = StepStatus.FAILED, f"Process completed with exit code {process.returncode}"
        else:
            status, error = StepStatus.SUCCEEDED, None
        return StepResult(
            index=step.index,
            name=step.name,
            status=status,
            exit_code=process.returncode,
            outputs=outputs,
            error=error,
            step_id=step.id,
        )


def _kill(process: asyncio.subprocess.Process) -> None:
    # steps run in their own session; the whole process group is killed
    with contextlib.suppress(ProcessLookupError):
        if _POSIX:
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()


def _read_outputs(path: Path) -> dict[str, str]:
    outputs: dict[str, str] = {}
    for line in path.read_text().splitlines():
        name, sep, value = line.partition("=")
        if sep and name.strip():
            outputs[name.strip()] = value
    return outputs
