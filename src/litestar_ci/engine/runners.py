"""Runner pool.

The pool is the single owned registry of runners: which labels each advertises,
which client reaches it, whether it is busy and when it last sent a heartbeat.
Acquisition is first-fit in registration order among idle runners whose labels
are a superset of the job's labels.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from litestar_ci.core.models import utcnow
from litestar_ci.exceptions import DispatchError, RunnerNotFoundError

if TYPE_CHECKING:
    from collections.abc import Iterator
    from uuid import UUID

    from litestar_ci.core.protocols import RunnerClient

__all__ = ["RunnerPool", "RunnerRecord"]

logger = logging.getLogger(__name__)


@dataclass
class RunnerRecord:
    """A runner known to the pool.

    Attributes:
        id: Runner id.
        labels: Labels the runner advertises.
        client: Transport used to dispatch to and cancel on the runner.
        execution_id: Job execution the runner is busy with, if any.
        registered_at: When the runner registered.
        last_heartbeat: When the runner last reported in.
    """

    id: str
    labels: frozenset[str]
    client: RunnerClient
    execution_id: UUID | None = None
    registered_at: datetime = field(default_factory=utcnow)
    last_heartbeat: datetime = field(default_factory=utcnow)

    @property
    def idle(self) -> bool:
        return self.execution_id is None

    def accepts(self, labels: frozenset[str]) -> bool:
        """Whether the runner advertises every label in ``labels``."""
        return labels <= self.labels


class RunnerPool:
    """Registry of runners and their assignments."""

    def __init__(self) -> None:
        self._runners: dict[str, RunnerRecord] = {}

    def __len__(self) -> int:
        return len(self._runners)

    def __iter__(self) -> Iterator[RunnerRecord]:
        return iter(list(self._runners.values()))

    def __contains__(self, runner_id: object) -> bool:
        return runner_id in self._runners

    def register(
        self,
        runner_id: str,
        labels: frozenset[str] | set[str],
        client: RunnerClient,
        now: datetime | None = None,
    ) -> RunnerRecord:
        """Add a runner, or refresh the labels and client of a known one.

        A runner registering again keeps its current assignment.
        """
        now = now or utcnow()
        record = self._runners.get(runner_id)
        if record is None:
            record = RunnerRecord(
                id=runner_id, labels=frozenset(labels), client=client, registered_at=now, last_heartbeat=now
            )
            self._runners[runner_id] = record
            logger.info("Runner '%s' registered with labels %s", runner_id, sorted(record.labels))
        else:
            record.labels = frozenset(labels)
            record.client = client
            record.last_heartbeat = now
        return record

    def get(self, runner_id: str) -> RunnerRecord:
        """Retrieve a runner.

        Raises:
            RunnerNotFoundError: If the runner is not registered.
        """
        try:
            return self._runners[runner_id]
        except KeyError:
            raise RunnerNotFoundError(runner_id) from None

    def deregister(self, runner_id: str) -> RunnerRecord:
        """Remove a runner from the pool.

        Raises:
            RunnerNotFoundError: If the runner is not registered.
        """
        record = self.get(runner_id)
        del self._runners[runner_id]
        logger.info("Runner '%s' deregistered", runner_id)
        return record

    def heartbeat(self, runner_id: str, now: datetime | None = None) -> None:
        """Record that a runner is alive.

        Raises:
            RunnerNotFoundError: If the runner is not registered.
        """
        self.get(runner_id).last_heartbeat = now or utcnow()

    def eligible(self, labels: frozenset[str]) -> list[RunnerRecord]:
        """Every runner, busy or idle, that could take a job with ``labels``."""
        return [record for record in self._runners.values() if record.accepts(labels)]

    def acquire(self, labels: frozenset[str], execution_id: UUID) -> RunnerRecord:
        """Assign the first idle runner advertising ``labels`` to an execution.

        Args:
            labels: Labels the job requires.
            execution_id: The job execution taking the runner.

        Returns:
            The acquired runner.

        Raises:
            DispatchError: If no idle runner advertises the labels.
        """
        for record in self._runners.values():
            if record.idle and record.accepts(labels):
                record.execution_id = execution_id
                return record
        raise DispatchError(labels)

    def release(self, runner_id: str, execution_id: UUID | None = None) -> None:
        """Mark a runner idle.

        When ``execution_id`` is given the runner is only released if it is still
        assigned to that execution. Unknown runners are ignored.
        """
        record = self._runners.get(runner_id)
        if record is None:
            return
        if execution_id is None or record.execution_id == execution_id:
            record.execution_id = None

    def expire(self, ttl: float, now: datetime | None = None) -> list[RunnerRecord]:
        """Remove runners whose last heartbeat is older than ``ttl`` seconds.

        Returns:
            The removed runners, including the execution each was busy with.
        """
        cutoff = (now or utcnow()) - timedelta(seconds=ttl)
        stale = [record for record in self._runners.values() if record.last_heartbeat < cutoff]
        for record in stale:
            del self._runners[record.id]
            logger.warning("Runner '%s' missed its heartbeat since %s", record.id, record.last_heartbeat)
        return stale
