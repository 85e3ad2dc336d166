"""Job dependency graph and readiness evaluation.

This module provides graph operations over the jobs of a workflow definition
(validation, cycle detection, ordering) and the pure readiness evaluation the
coordinator runs after every terminal transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum, auto
from typing import TYPE_CHECKING

from litestar_ci.core.expressions import evaluate_condition
from litestar_ci.core.types import FailureReason, JobStatus
from litestar_ci.engine.context import JobStatusView, expression_values
from litestar_ci.exceptions import DefinitionError

if TYPE_CHECKING:
    from litestar_ci.core.definition import WorkflowDefinition
    from litestar_ci.core.models import JobExecution, Run

__all__ = ["Decision", "DependencyGraph", "Readiness", "evaluate_readiness"]

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Graph representation of a workflow's jobs and their ``needs``.

    Attributes:
        definition: The workflow definition this graph represents.
        _dependencies: Job id to the ids it needs, restricted to known jobs.
        _dependents: Job id to the ids that need it.
    """

    def __init__(self, definition: WorkflowDefinition) -> None:
        """Initialize a dependency graph from a definition.

        Args:
            definition: The workflow definition to represent as a graph.
        """
        self.definition = definition
        self._dependencies: dict[str, list[str]] = {}
        self._dependents: dict[str, list[str]] = {job_id: [] for job_id in definition.jobs}
        for job_id, job in definition.jobs.items():
            self._dependencies[job_id] = [need for need in job.needs if need in definition.jobs]
            for need in self._dependencies[job_id]:
                self._dependents[need].append(job_id)

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> DependencyGraph:
        return cls(definition)

    def get_dependencies(self, job_id: str) -> list[str]:
        """Get the jobs ``job_id`` directly needs.

        Example:
            >>> graph.get_dependencies("deploy")
            ['build', 'test']
        """
        return list(self._dependencies.get(job_id, []))

    def get_dependents(self, job_id: str) -> list[str]:
        """Get the jobs that directly need ``job_id``."""
        return list(self._dependents.get(job_id, []))

    def get_all_dependents(self, job_id: str) -> set[str]:
        """Get every job that transitively needs ``job_id``."""
        found: set[str] = set()
        to_visit = list(self._dependents.get(job_id, []))
        while to_visit:
            current = to_visit.pop()
            if current in found:
                continue
            found.add(current)
            to_visit.extend(self._dependents.get(current, []))
        return found

    def roots(self) -> list[str]:
        """Jobs without dependencies, in definition order."""
        return [job_id for job_id, needs in self._dependencies.items() if not needs]

    def find_cycle(self) -> list[str] | None:
        """Find a dependency cycle.

        Returns:
            The cycle as a path whose first and last element are the same job,
            e.g. ``["a", "b", "a"]``, or None when the graph is acyclic.
        """
        visiting: list[str] = []
        done: set[str] = set()

        def visit(job_id: str) -> list[str] | None:
            if job_id in done:
                return None
            if job_id in visiting:
                return [*visiting[visiting.index(job_id) :], job_id]
            visiting.append(job_id)
            for need in self._dependencies[job_id]:
                cycle = visit(need)
                if cycle:
                    return cycle
            visiting.pop()
            done.add(job_id)
            return None

        for job_id in self._dependencies:
            cycle = visit(job_id)
            if cycle:
                # report in dependency direction: a -> b means b needs a
                return list(reversed(cycle))
        return None

    def validate(self) -> list[str]:
        """Validate the graph structure.

        Returns:
            List of validation error messages. Empty list if valid.
        """
        errors: list[str] = []
        for job_id, job in self.definition.jobs.items():
            for need in job.needs:
                if need not in self.definition.jobs:
                    errors.append(f"Job '{job_id}' needs unknown job '{need}'")
        cycle = self.find_cycle()
        if cycle:
            errors.append(f"cycle detected: {' -> '.join(cycle)}")
        return errors

    def topological_order(self) -> list[str]:
        """Order the jobs so every job comes after the jobs it needs.

        Ties keep definition order.

        Raises:
            DefinitionError: If the graph contains a cycle.
        """
        return [job_id for level in self.levels() for job_id in level]

    def levels(self) -> list[list[str]]:
        """Group jobs into levels: every job's dependencies sit in earlier levels.

        Raises:
            DefinitionError: If the graph contains a cycle.
        """
        remaining = {job_id: set(needs) for job_id, needs in self._dependencies.items()}
        levels: list[list[str]] = []
        placed: set[str] = set()
        while remaining:
            level = [job_id for job_id, needs in remaining.items() if needs <= placed]
            if not level:
                cycle = self.find_cycle() or list(remaining)
                msg = f"cycle detected: {' -> '.join(cycle)}"
                raise DefinitionError(msg, workflow=self.definition.name)
            for job_id in level:
                del remaining[job_id]
            placed.update(level)
            levels.append(level)
        return levels


class Decision(StrEnum):
    """Readiness decision for a pending job execution."""

    WAIT = auto()
    READY = auto()
    SKIP = auto()
    FAIL = auto()


@dataclass(frozen=True)
class Readiness:
    """Readiness of one pending job execution.

    Attributes:
        node_id: The execution's node id.
        decision: Wait, move to the queue, skip or fail.
        reason: Why the execution is skipped or failed.
    """

    node_id: str
    decision: Decision
    reason: FailureReason | None = None


def _dependencies(run: Run, execution: JobExecution) -> tuple[JobExecution, ...]:
    job = run.definition.jobs[execution.job_id]
    return tuple(leg for need in job.needs for leg in run.executions_for_job(need))


def _decide(run: Run, execution: JobExecution) -> Readiness:
    job = run.definition.jobs[execution.job_id]
    dependencies = _dependencies(run, execution)
    if any(not dependency.is_terminal for dependency in dependencies):
        return Readiness(execution.node_id, Decision.WAIT)

    status = JobStatusView(run, dependencies)
    try:
        proceed = evaluate_condition(job.condition, expression_values(run, execution), status)
    except ValueError as e:
        logger.warning("Condition of %s in run %s failed to evaluate: %s", execution.node_id, run.id, e)
        proceed = False

    if not proceed:
        reason = (
            FailureReason.DEPENDENCY_FAILED
            if any(not dependency.succeeded for dependency in dependencies)
            else FailureReason.CONDITION_NOT_MET
        )
        return Readiness(execution.node_id, Decision.SKIP, reason)

    gate = job.approval_gate
    if gate is not None:
        if gate in run.rejections:
            return Readiness(execution.node_id, Decision.FAIL, FailureReason.APPROVAL_REJECTED)
        if gate not in run.approvals:
            return Readiness(execution.node_id, Decision.WAIT)
    return Readiness(execution.node_id, Decision.READY)


def evaluate_readiness(run: Run) -> list[Readiness]:
    """Decide, for every pending execution of a run, whether it can proceed.

    An execution waits while any execution of a job it needs is not terminal, or
    while its approval gate is open. Once its dependencies are terminal its
    condition is evaluated (implicitly ``success()`` when it has none, and
    ``success() && <condition>`` when the condition calls no status function): a
    false condition skips the execution, with ``DependencyFailed`` when a
    dependency did not succeed and ``ConditionNotMet`` otherwise.

    The evaluation is pure: it reads the run and mutates nothing, so evaluating
    an unchanged run again yields the same decisions.

    Args:
        run: The run to evaluate.

    Returns:
        One decision per pending execution, in graph order.
    """
    return [
        _decide(run, execution) for execution in run.executions.values() if execution.status == JobStatus.PENDING
    ]
