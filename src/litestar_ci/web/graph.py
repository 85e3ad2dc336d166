"""Graph visualization utilities for workflows and runs.

This module provides utilities for generating visual representations of the
job graph of a workflow, as MermaidJS source or as plain nodes and edges.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from litestar_ci.core.types import JobStatus

if TYPE_CHECKING:
    from litestar_ci.core.definition import WorkflowDefinition
    from litestar_ci.core.models import Run

__all__ = ["job_statuses", "parse_graph_to_dict"]

# Most significant first: the status a job with several legs is drawn with.
_PRECEDENCE = (
    JobStatus.FAILED,
    JobStatus.RUNNING,
    JobStatus.QUEUED,
    JobStatus.PENDING,
    JobStatus.CANCELLED,
    JobStatus.SUCCEEDED,
    JobStatus.SKIPPED,
)


def job_statuses(run: Run) -> dict[str, JobStatus]:
    """Collapse the legs of every job of ``run`` into one status per job id.

    Example:
        >>> job_statuses(run)
        {'build': <JobStatus.SUCCEEDED: 'succeeded'>, 'test': <JobStatus.RUNNING: 'running'>}
    """
    statuses: dict[str, JobStatus] = {}
    for job_id in run.definition.jobs:
        legs = {execution.status for execution in run.executions_for_job(job_id)}
        statuses[job_id] = next((status for status in _PRECEDENCE if status in legs), JobStatus.PENDING)
    return statuses


def parse_graph_to_dict(definition: WorkflowDefinition, run: Run | None = None) -> dict[str, Any]:
    """Parse a workflow definition into a dictionary representation.

    This function extracts nodes and edges from a workflow definition into a
    structured dictionary suitable for JSON serialization. When ``run`` is given
    every node also carries the job's aggregated status in that run.

    Args:
        definition: The workflow definition to parse.
        run: Optional run whose job statuses are included.

    Returns:
        A dictionary containing nodes and edges lists.

    Example:
        >>> parse_graph_to_dict(definition)["nodes"]
        [{'id': 'build', 'label': 'build', 'type': 'job', 'runs_on': ['linux'], ...}]
    """
    statuses = job_statuses(run) if run is not None else {}

    nodes = []
    for job_id, job in definition.jobs.items():
        node_type = "job"
        if job.requires_approval:
            node_type = "approval"
        elif job.matrix is not None:
            node_type = "matrix"

        node: dict[str, Any] = {
            "id": job_id,
            "label": job.name,
            "type": node_type,
            "runs_on": sorted(job.runs_on),
            "is_root": not job.needs,
        }
        if run is not None:
            node["status"] = str(statuses[job_id])
            node["legs"] = [execution.node_id for execution in run.executions_for_job(job_id)]
        nodes.append(node)

    edges = []
    for job_id, job in definition.jobs.items():
        for need in job.needs:
            edge = {"source": need, "target": job_id}
            if job.condition_source is not None:
                edge["condition"] = job.condition_source
            edges.append(edge)

    return {
        "nodes": nodes,
        "edges": edges,
    }
