"""Expression contexts and status views for runs.

Conditions and templates are evaluated against a handful of read-only contexts
built from the run: ``github`` (event metadata), ``env``, ``matrix``, ``needs``
and ``inputs``. Secret values are only added at dispatch time and never end up in
these contexts otherwise.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from litestar_ci.core.types import JobStatus

if TYPE_CHECKING:
    from litestar_ci.core.models import JobExecution, Run

__all__ = ["JobStatusView", "aggregate_result", "expression_values", "github_context", "needs_context"]

_RESULTS = {
    JobStatus.SUCCEEDED: "success",
    JobStatus.FAILED: "failure",
    JobStatus.CANCELLED: "cancelled",
    JobStatus.SKIPPED: "skipped",
}


def github_context(run: Run) -> dict[str, Any]:
    """Build the ``github`` context of a run."""
    event = run.event
    head = event.payload.get("pull_request", {}).get("head", {}) if isinstance(event.payload, dict) else {}
    return {
        "event_name": str(event.kind),
        "event": event.payload,
        "ref": event.ref,
        "ref_name": event.ref_name,
        "ref_type": "tag" if event.tag is not None else "branch",
        "sha": event.sha,
        "actor": event.actor,
        "repository": event.repository,
        "base_ref": event.base_branch or "",
        "head_ref": head.get("ref", "") if isinstance(head, dict) else "",
        "workflow": run.definition.name,
        "run_id": str(run.id),
        "run_number": run.number,
    }


def aggregate_result(executions: list[JobExecution]) -> str:
    """Collapse the legs of one job into a single ``needs.<job>.result`` value.

    A failed optional leg counts as success. Any other failure wins, then any
    cancellation; a job whose legs were all skipped is skipped.
    """
    if any(execution.status == JobStatus.FAILED and not execution.tolerated for execution in executions):
        return "failure"
    if any(execution.status == JobStatus.CANCELLED for execution in executions):
        return "cancelled"
    if executions and all(execution.status == JobStatus.SKIPPED for execution in executions):
        return "skipped"
    if all(execution.succeeded or execution.status == JobStatus.SKIPPED for execution in executions):
        return "success"
    return ""


def needs_context(run: Run, needs: tuple[str, ...]) -> dict[str, Any]:
    """Build the ``needs`` context from the direct dependencies of a job."""
    context: dict[str, Any] = {}
    for need in needs:
        legs = run.executions_for_job(need)
        outputs: dict[str, str] = {}
        for leg in legs:
            outputs.update(leg.outputs)
        context[need] = {"result": aggregate_result(legs), "outputs": outputs}
    return context


def expression_values(run: Run, execution: JobExecution) -> dict[str, Any]:
    """Build every context available to the job behind ``execution``."""
    job = run.definition.jobs[execution.job_id]
    return {
        "github": github_context(run),
        "env": {**run.definition.env, **job.env},
        "matrix": dict(execution.matrix),
        "needs": needs_context(run, job.needs),
        "inputs": dict(run.inputs),
        "job": {"status": _RESULTS.get(execution.status, str(execution.status))},
        "strategy": {
            "fail-fast": job.matrix.fail_fast if job.matrix else True,
            "max-parallel": job.matrix.max_parallel if job.matrix else None,
        },
    }


@dataclass(frozen=True)
class JobStatusView:
    """Status functions for a job condition, answered from its direct dependencies.

    Attributes:
        run: The run the job belongs to.
        dependencies: Executions of every leg of every direct dependency.
    """

    run: Run
    dependencies: tuple[JobExecution, ...]

    def success(self) -> bool:
        return not self.run.cancel_requested and all(execution.succeeded for execution in self.dependencies)

    def failure(self) -> bool:
        return any(execution.status == JobStatus.FAILED and not execution.tolerated for execution in self.dependencies)

    def cancelled(self) -> bool:
        return self.run.cancel_requested

    def approved(self, gate: str) -> bool:
        return gate in self.run.approvals
