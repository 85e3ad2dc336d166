"""Dispatch queue and timeout watchdogs.

The scheduler holds job executions that are ready to run, in the order they
became ready. :meth:`Scheduler.plan` makes one first-fit pass over the queue and
pairs executions with idle runners; an execution no runner can take stays queued
and never blocks the ones behind it. There is no preemption.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from litestar_ci.core.models import utcnow
from litestar_ci.core.types import JobStatus
from litestar_ci.exceptions import DispatchError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Hashable
    from uuid import UUID

    from litestar_ci.core.models import JobExecution
    from litestar_ci.engine.runners import RunnerPool, RunnerRecord

__all__ = ["Assignment", "Scheduler", "call_later"]

logger = logging.getLogger(__name__)


def call_later(delay: float, callback: Callable[[], Awaitable[Any]], name: str | None = None) -> asyncio.Task[None]:
    """Run ``callback`` once ``delay`` seconds have passed, unless the task is cancelled first."""

    async def fire() -> None:
        await asyncio.sleep(delay)
        try:
            await callback()
        except Exception:
            logger.exception("Timer callback %s failed", name or callback)

    return asyncio.create_task(fire(), name=name)


@dataclass(frozen=True)
class Assignment:
    """An execution paired with the runner acquired for it."""

    execution: JobExecution
    runner: RunnerRecord


@dataclass
class _Entry:
    execution: JobExecution
    max_parallel: int | None
    enqueued_at: datetime


class Scheduler:
    """FIFO dispatch queue over a runner pool.

    Attributes:
        pool: Runner pool assignments are made from.
        queue_timeout: Seconds an execution may wait for a runner, None for no limit.
    """

    def __init__(self, pool: RunnerPool, queue_timeout: float | None = None) -> None:
        self.pool = pool
        self.queue_timeout = queue_timeout
        self._queue: dict[UUID, _Entry] = {}
        self._running: dict[tuple[UUID, str], set[UUID]] = {}
        self._timeouts: dict[Hashable, asyncio.Task[None]] = {}

    def __len__(self) -> int:
        return len(self._queue)

    def __contains__(self, execution_id: object) -> bool:
        return execution_id in self._queue

    def queued(self) -> list[JobExecution]:
        """Queued executions, oldest first."""
        return [entry.execution for entry in self._queue.values()]

    def enqueue(self, execution: JobExecution, max_parallel: int | None = None, now: datetime | None = None) -> None:
        """Append a queued execution.

        Args:
            execution: Execution in the queued status.
            max_parallel: Limit of running legs of the same job in the same run.
            now: Enqueue time, used by the queue timeout.
        """
        self._queue[execution.id] = _Entry(execution, max_parallel, now or utcnow())
        logger.debug("Queued %s for labels %s", execution.node_id, sorted(execution.labels))

    def remove(self, execution_id: UUID) -> bool:
        """Drop an execution from the queue; returns whether it was queued."""
        return self._queue.pop(execution_id, None) is not None

    def finished(self, execution: JobExecution) -> None:
        """Forget a dispatched execution that left the running status."""
        key = (execution.run_id, execution.job_id)
        running = self._running.get(key)
        if running is not None:
            running.discard(execution.id)
            if not running:
                del self._running[key]

    def running_count(self, run_id: UUID, job_id: str) -> int:
        return len(self._running.get((run_id, job_id), ()))

    def plan(self) -> list[Assignment]:
        """Pair queued executions with idle runners, first fit in queue order.

        Each returned assignment already holds its runner and is removed from the
        queue. Executions blocked by ``max_parallel`` or without an idle runner
        advertising their labels stay queued.
        """
        assignments: list[Assignment] = []
        for entry in list(self._queue.values()):
            execution = entry.execution
            if execution.status != JobStatus.QUEUED:
                del self._queue[execution.id]
                continue
            key = (execution.run_id, execution.job_id)
            if entry.max_parallel is not None and len(self._running.get(key, ())) >= entry.max_parallel:
                continue
            try:
                runner = self.pool.acquire(execution.labels, execution.id)
            except DispatchError:
                logger.debug("No idle runner for %s %s", execution.node_id, sorted(execution.labels))
                continue
            del self._queue[execution.id]
            self._running.setdefault(key, set()).add(execution.id)
            assignments.append(Assignment(execution=execution, runner=runner))
        return assignments

    def expired(self, now: datetime | None = None) -> list[JobExecution]:
        """Executions that waited longer than the queue timeout."""
        if self.queue_timeout is None:
            return []
        cutoff = (now or utcnow()) - timedelta(seconds=self.queue_timeout)
        return [entry.execution for entry in self._queue.values() if entry.enqueued_at <= cutoff]

    def arm_timeout(self, key: Hashable, seconds: float, callback: Callable[[], Awaitable[Any]]) -> None:
        """Call ``callback`` after ``seconds`` unless disarmed first; re-arming replaces the timer."""
        self.disarm_timeout(key)

        async def fire() -> None:
            # disarm before running so the callback may re-arm or disarm freely
            self._timeouts.pop(key, None)
            await callback()

        self._timeouts[key] = call_later(seconds, fire, name=f"litestar-ci-timeout-{key}")

    def disarm_timeout(self, key: Hashable) -> bool:
        """Cancel a pending timer; returns whether one was armed."""
        task = self._timeouts.pop(key, None)
        if task is None:
            return False
        task.cancel()
        return True

    def armed(self, key: Hashable) -> bool:
        return key in self._timeouts

    async def close(self) -> None:
        """Cancel every pending timer."""
        tasks = list(self._timeouts.values())
        self._timeouts.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
