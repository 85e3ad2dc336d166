"""Workflow definition structures.

This module provides the immutable data structures a parsed workflow document is
turned into: steps, jobs, triggers, matrix strategies and the complete workflow
definition. Definitions are snapshotted into every run, so a reload of the
document never changes a run that is already in flight.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from litestar_ci.core.types import EventKind, FailureReason, JobStatus

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar_ci.core.expressions import Expression

__all__ = [
    "DEFAULT_CONCURRENCY_GROUP",
    "DEFAULT_JOB_TIMEOUT",
    "ConcurrencySpec",
    "Job",
    "MatrixStrategy",
    "RetryPolicy",
    "Step",
    "Trigger",
    "WorkflowDefinition",
]

DEFAULT_JOB_TIMEOUT: float = 360 * 60.0
"""Default job timeout in seconds (360 minutes)."""

DEFAULT_CONCURRENCY_GROUP = "${{ github.workflow }}-${{ github.ref }}"
"""Group template used when ``concurrency`` omits ``group``."""


@dataclass(frozen=True)
class Step:
    """A single step of a job, executed by the runner in order.

    Exactly one of ``uses`` and ``run`` is set.

    Attributes:
        name: Display name of the step.
        uses: Action reference such as ``actions/checkout@v4``.
        run: Inline shell command.
        inputs: The ``with:`` mapping passed to the action.
        env: Step-level environment variables.
        condition: Parsed ``if:`` expression, if any.
        condition_source: The ``if:`` text as written.
        id: Optional step id, used to address its outputs.
        continue_on_error: Whether a failure of this step is tolerated by the job.
        timeout: Step timeout in seconds, if any.
        shell: Shell used for ``run`` steps, if overridden.
        working_directory: Working directory for ``run`` steps, if overridden.
    """

    name: str
    uses: str | None = None
    run: str | None = None
    inputs: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    condition: Expression | None = None
    condition_source: str | None = None
    id: str | None = None
    continue_on_error: bool = False
    timeout: float | None = None
    shell: str | None = None
    working_directory: str | None = None


@dataclass(frozen=True)
class MatrixStrategy:
    """Matrix expansion of a job into independent legs.

    Attributes:
        axes: Ordered mapping of axis name to its values.
        include: Extra combinations, or values merged into matching combinations.
        exclude: Partial combinations removed from the product.
        fail_fast: Cancel sibling legs when one leg fails.
        max_parallel: Maximum number of legs running at once, None for unlimited.
    """

    axes: Mapping[str, tuple[Any, ...]] = field(default_factory=dict)
    include: tuple[Mapping[str, Any], ...] = ()
    exclude: tuple[Mapping[str, Any], ...] = ()
    fail_fast: bool = True
    max_parallel: int | None = None


@dataclass(frozen=True)
class RetryPolicy:
    """Automatic retry of a job execution.

    Retry is opt-in: the default of one attempt means a failure is final.

    Attributes:
        max_attempts: Total number of attempts, including the first.
        retry_on: Failure reasons that trigger another attempt.
    """

    max_attempts: int = 1
    retry_on: frozenset[FailureReason] = frozenset({FailureReason.RUNNER_LOST})

    def should_retry(self, attempt: int, reason: FailureReason | None) -> bool:
        """Return whether a failure on ``attempt`` earns another attempt."""
        return reason is not None and reason in self.retry_on and attempt < self.max_attempts


@dataclass(frozen=True)
class Job:
    """A unit of work executed on one runner.

    Attributes:
        id: Job id, unique within the workflow.
        name: Display name, defaults to the id.
        runs_on: Labels a runner must advertise to take the job.
        steps: Ordered steps.
        needs: Ids of the jobs this job depends on.
        condition: Parsed ``if:`` expression, if any.
        condition_source: The ``if:`` text as written.
        timeout: Job timeout in seconds.
        permissions: Token permissions requested by the job.
        env: Job-level environment variables.
        matrix: Matrix strategy, if the job fans out.
        retry: Retry policy.
        continue_on_error: Whether the job is optional: its failure neither fails
            the run nor skips its dependents.
        environment: Deployment environment name, if any.
        requires_approval: Whether the job waits for ``environment`` to be approved.
    """

    id: str
    name: str
    runs_on: frozenset[str]
    steps: tuple[Step, ...]
    needs: tuple[str, ...] = ()
    condition: Expression | None = None
    condition_source: str | None = None
    timeout: float = DEFAULT_JOB_TIMEOUT
    permissions: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    matrix: MatrixStrategy | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    continue_on_error: bool = False
    environment: str | None = None
    requires_approval: bool = False

    @property
    def approval_gate(self) -> str | None:
        """Name of the approval gate guarding this job, if any."""
        if not self.requires_approval:
            return None
        return self.environment or self.id

    def expressions(self) -> list[Expression]:
        """Return every expression this job evaluates, conditions and templates alike."""
        from litestar_ci.core.expressions import parse_template

        found: list[Expression] = []
        if self.condition is not None:
            found.append(self.condition)
        texts: list[str] = list(self.env.values())
        for step in self.steps:
            if step.condition is not None:
                found.append(step.condition)
            if step.run:
                texts.append(step.run)
            texts.extend(str(value) for value in step.inputs.values())
            texts.extend(step.env.values())
        for text in texts:
            found.extend(parse_template(text).expressions)
        return found


@dataclass(frozen=True)
class Trigger:
    """One entry of a workflow's ``on:`` section.

    Attributes:
        kind: Event kind this trigger reacts to.
        branches: Branch filters (base branch for pull requests).
        branches_ignore: Branch filters that exclude.
        tags: Tag filters (push only).
        tags_ignore: Tag filters that exclude.
        paths: Path filters; at least one changed path must match.
        paths_ignore: Path filters; the event is skipped if every changed path matches.
        types: Activity types (pull request and release actions).
        cron: Cron expressions (schedule only).
        inputs: Declared inputs and their defaults (manual dispatch only).
    """

    kind: EventKind
    branches: tuple[str, ...] = ()
    branches_ignore: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    tags_ignore: tuple[str, ...] = ()
    paths: tuple[str, ...] = ()
    paths_ignore: tuple[str, ...] = ()
    types: tuple[str, ...] = ()
    cron: tuple[str, ...] = ()
    inputs: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConcurrencySpec:
    """Concurrency group of a workflow.

    Attributes:
        group: Template for the group key, rendered against the triggering event.
        cancel_in_progress: Cancel the active run of the group when a new run arrives.
    """

    group: str = DEFAULT_CONCURRENCY_GROUP
    cancel_in_progress: bool = False


@dataclass(frozen=True)
class WorkflowDefinition:
    """Declarative workflow structure.

    The WorkflowDefinition captures everything a workflow document declares. It
    serves as the blueprint every run is created from.

    Attributes:
        name: Unique name of the workflow.
        triggers: Events that start the workflow.
        jobs: Ordered mapping of job id to job.
        env: Workflow-level environment variables.
        concurrency: Concurrency group, if any.
        source: Path of the document the definition was loaded from.
        run_name: Optional template for the display name of runs.

    Example:
        >>> definition = WorkflowDefinition(
        ...     name="ci",
        ...     triggers=(Trigger(kind=EventKind.PUSH, branches=("main",)),),
        ...     jobs={
        ...         "build": Job(id="build", name="build", runs_on=frozenset({"linux"}), steps=(Step(name="make", run="make"),)),
        ...         "test": Job(id="test", name="test", runs_on=frozenset({"linux"}), steps=(Step(name="test", run="make test"),), needs=("build",)),
        ...     },
        ... )
    """

    name: str
    triggers: tuple[Trigger, ...]
    jobs: Mapping[str, Job]
    env: Mapping[str, str] = field(default_factory=dict)
    concurrency: ConcurrencySpec | None = None
    source: str | None = None
    run_name: str | None = None

    def get_trigger(self, kind: EventKind) -> Trigger | None:
        """Return the trigger for ``kind``, if the workflow declares one."""
        return next((trigger for trigger in self.triggers if trigger.kind == kind), None)

    @property
    def schedules(self) -> tuple[str, ...]:
        """Every cron expression of the workflow's schedule trigger."""
        trigger = self.get_trigger(EventKind.SCHEDULE)
        return trigger.cron if trigger else ()

    def validate(self) -> list[str]:
        """Validate the workflow definition for common issues.

        Returns:
            List of validation error messages. Empty list if valid.

        Example:
            >>> errors = definition.validate()
            >>> if errors:
            ...     print("Validation errors:", errors)
        """
        from litestar_ci.engine.graph import DependencyGraph
        from litestar_ci.engine.matrix import expand_matrix

        errors: list[str] = []

        if not self.name:
            errors.append("Workflow name must not be empty")
        if not self.triggers:
            errors.append("Workflow declares no triggers")
        if not self.jobs:
            errors.append("Workflow declares no jobs")

        for job_id, job in self.jobs.items():
            if job.id != job_id:
                errors.append(f"Job key '{job_id}' does not match job id '{job.id}'")
            if not job.runs_on:
                errors.append(f"Job '{job_id}': runs-on must name at least one label")
            if not job.steps:
                errors.append(f"Job '{job_id}': has no steps")
            if job.timeout <= 0:
                errors.append(f"Job '{job_id}': timeout must be positive")
            if job.retry.max_attempts < 1:
                errors.append(f"Job '{job_id}': retry max-attempts must be at least 1")
            if len(set(job.needs)) != len(job.needs):
                errors.append(f"Job '{job_id}': duplicate entries in needs")
            for need in job.needs:
                if need == job_id:
                    errors.append(f"Job '{job_id}' depends on itself")
                elif need not in self.jobs:
                    errors.append(f"Job '{job_id}' needs unknown job '{need}'")
            for index, step in enumerate(job.steps):
                if (step.uses is None) == (step.run is None):
                    errors.append(f"Job '{job_id}' step {index}: exactly one of 'uses' and 'run' is required")
            step_ids = [step.id for step in job.steps if step.id]
            if len(set(step_ids)) != len(step_ids):
                errors.append(f"Job '{job_id}': duplicate step ids")
            if job.matrix is not None:
                if job.matrix.max_parallel is not None and job.matrix.max_parallel < 1:
                    errors.append(f"Job '{job_id}': max-parallel must be at least 1")
                if not job.matrix.axes and not job.matrix.include:
                    errors.append(f"Job '{job_id}': matrix has no axes")
                for axis, values in job.matrix.axes.items():
                    if not values:
                        errors.append(f"Job '{job_id}': matrix axis '{axis}' has no values")
                if job.matrix.axes and not expand_matrix(job):
                    errors.append(f"Job '{job_id}': matrix yields no combinations")

        if not errors:
            cycle = DependencyGraph(self).find_cycle()
            if cycle:
                errors.append(f"cycle detected: {' -> '.join(cycle)}")

        return errors

    def to_mermaid(self) -> str:
        """Generate a MermaidJS graph representation of the job graph.

        Matrix jobs are drawn as subroutines, approval-gated jobs as hexagons.

        Returns:
            MermaidJS graph definition as a string.

        Example:
            >>> print(definition.to_mermaid())
            graph TD
                build[build]
                test[test]
                build --> test
        """
        lines = ["graph TD"]

        for job_id, job in self.jobs.items():
            # Quotes break mermaid labels
            label = job.name.replace('"', "").replace("'", "")
            if job.requires_approval:
                lines.append(f"    {job_id}{{{{{label}}}}}")
            elif job.matrix is not None:
                lines.append(f"    {job_id}[[{label}]]")
            else:
                lines.append(f"    {job_id}[{label}]")

        for job_id, job in self.jobs.items():
            label = "|if|" if job.condition is not None else ""
            for need in job.needs:
                lines.append(f"    {need} -->{label} {job_id}")

        return "\n".join(lines)

    def to_mermaid_with_state(self, statuses: Mapping[str, JobStatus]) -> str:
        """Generate a MermaidJS graph with execution state highlighting.

        Args:
            statuses: Aggregated status per job id.

        Returns:
            MermaidJS graph definition with state styling.
        """
        styles = {
            JobStatus.SUCCEEDED: "fill:#90EE90,stroke:#006400,stroke-width:2px",
            JobStatus.FAILED: "fill:#FFB6C1,stroke:#8B0000,stroke-width:2px",
            JobStatus.RUNNING: "fill:#FFD700,stroke:#FFA500,stroke-width:3px",
            JobStatus.CANCELLED: "fill:#D3D3D3,stroke:#696969,stroke-width:2px",
            JobStatus.SKIPPED: "fill:#F5F5F5,stroke:#A9A9A9,stroke-dasharray:5 5",
        }
        lines = self.to_mermaid().split("\n")
        for job_id, status in statuses.items():
            if job_id in self.jobs and status in styles:
                lines.append(f"    style {job_id} {styles[status]}")
        return "\n".join(lines)
