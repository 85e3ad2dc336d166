"""Matrix expansion of jobs into graph nodes.

A matrix job is expanded into independent legs before anything is scheduled, so
the scheduler, the readiness evaluation and the coordinator only ever see plain
nodes. A dependency on a matrix job is a dependency on every one of its legs.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from litestar_ci.core.expressions import render_template, to_string

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar_ci.core.definition import Job, WorkflowDefinition

__all__ = ["JobNode", "build_plan", "expand_matrix", "leg_labels", "node_id"]


@dataclass(frozen=True)
class JobNode:
    """One schedulable node of the job graph.

    Attributes:
        id: Node id: the job id, or ``"job (v1, v2)"`` for a matrix leg.
        job: The job definition.
        matrix: Matrix values of the leg, empty for plain jobs.
        dependencies: Node ids this node waits for.
        labels: Runner labels of the leg, ``runs-on`` rendered with its matrix values.
    """

    id: str
    job: Job
    matrix: Mapping[str, Any] = field(default_factory=dict)
    dependencies: tuple[str, ...] = ()
    labels: frozenset[str] = frozenset()


def _matches(combination: Mapping[str, Any], partial: Mapping[str, Any]) -> bool:
    return all(key in combination and combination[key] == value for key, value in partial.items())


def expand_matrix(job: Job) -> list[dict[str, Any]]:
    """Expand a job's matrix into its combinations.

    The cartesian product of the axes is computed in axis order, combinations
    matching an ``exclude`` entry on every key of that entry are removed, then
    every ``include`` entry is merged into each combination whose axis values it
    agrees with. An include entry agreeing with no combination becomes a
    combination of its own.

    Args:
        job: The job to expand.

    Returns:
        The combinations, one per leg. A job without a matrix yields a single
        empty combination.

    Example:
        >>> expand_matrix(job)  # axes {"python": ["3.11", "3.12"], "os": ["linux"]}
        [{'python': '3.11', 'os': 'linux'}, {'python': '3.12', 'os': 'linux'}]
    """
    strategy = job.matrix
    if strategy is None:
        return [{}]

    axes = list(strategy.axes)
    combinations: list[dict[str, Any]] = []
    if axes:
        for values in itertools.product(*strategy.axes.values()):
            combination = dict(zip(axes, values, strict=True))
            if not any(_matches(combination, entry) for entry in strategy.exclude):
                combinations.append(combination)

    original = list(combinations)
    for entry in strategy.include:
        axis_values = {key: value for key, value in entry.items() if key in strategy.axes}
        extra = {key: value for key, value in entry.items() if key not in strategy.axes}
        targets = [combination for combination in original if _matches(combination, axis_values)] if original else []
        if targets:
            for combination in targets:
                combination.update(extra)
        else:
            combinations.append(dict(entry))
    return combinations


def node_id(job: Job, combination: Mapping[str, Any]) -> str:
    """Return the node id of one leg of ``job``."""
    if job.matrix is None:
        return job.id
    return f"{job.id} ({', '.join(to_string(value) for value in combination.values())})"


def leg_labels(job: Job, combination: Mapping[str, Any]) -> frozenset[str]:
    """Return the ``runs-on`` labels of one leg, ``${{ matrix.* }}`` placeholders rendered."""
    return frozenset(render_template(label, {"matrix": dict(combination)}) for label in job.runs_on)


def build_plan(definition: WorkflowDefinition) -> dict[str, JobNode]:
    """Expand every job of a definition into graph nodes.

    Args:
        definition: A validated workflow definition.

    Returns:
        Nodes keyed by node id, in topological order of their jobs.
    """
    from litestar_ci.engine.graph import DependencyGraph

    legs: dict[str, list[tuple[str, dict[str, Any]]]] = {}
    for job_id in DependencyGraph(definition).topological_order():
        job = definition.jobs[job_id]
        seen: set[str] = set()
        legs[job_id] = []
        for combination in expand_matrix(job):
            identifier = node_id(job, combination)
            suffix = 2
            base = identifier
            while identifier in seen:
                identifier = f"{base} #{suffix}"
                suffix += 1
            seen.add(identifier)
            legs[job_id].append((identifier, combination))

    plan: dict[str, JobNode] = {}
    for job_id, job_legs in legs.items():
        job = definition.jobs[job_id]
        dependencies = tuple(identifier for need in job.needs for identifier, _ in legs[need])
        for identifier, combination in job_legs:
            plan[identifier] = JobNode(
                id=identifier,
                job=job,
                matrix=combination,
                dependencies=dependencies,
                labels=leg_labels(job, combination),
            )
    return plan
