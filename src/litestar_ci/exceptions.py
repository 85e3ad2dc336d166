"""Exception hierarchy for litestar-ci."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID

__all__ = (
    "ApprovalGateNotFoundError",
    "CIError",
    "DefinitionError",
    "DispatchError",
    "ExpressionError",
    "InvalidTransitionError",
    "JobExecutionNotFoundError",
    "RunAlreadyCompletedError",
    "RunNotFoundError",
    "RunnerNotFoundError",
    "StaleRunnerError",
    "TriggerMismatch",
    "WorkflowNotFoundError",
)


class CIError(Exception):
    """Base exception for all litestar-ci errors.

    All exceptions raised by litestar-ci inherit from this class, so callers can
    catch every engine error with a single except clause.
    """


class DefinitionError(CIError):
    """Raised when a workflow definition is malformed or cyclic.

    Definitions failing validation are rejected at load time; no run is ever
    created from them.

    Attributes:
        errors: Every validation problem found in the definition.
        workflow: Name of the offending workflow, when known.
    """

    def __init__(self, errors: list[str] | str, workflow: str | None = None) -> None:
        """Initialize the exception with the validation problems.

        Args:
            errors: A single message or the list of validation messages.
            workflow: Name of the offending workflow, when known.
        """
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        self.workflow = workflow
        prefix = f"Workflow '{workflow}' is invalid" if workflow else "Invalid workflow definition"
        super().__init__(f"{prefix}: {'; '.join(self.errors)}")


class ExpressionError(DefinitionError):
    """Raised when a condition or template expression cannot be parsed.

    Attributes:
        expression: The source text of the expression.
        position: Character offset where parsing failed, if known.
    """

    def __init__(self, expression: str, message: str, position: int | None = None) -> None:
        """Initialize the exception with parser details.

        Args:
            expression: The source text of the expression.
            message: What went wrong.
            position: Character offset where parsing failed, if known.
        """
        self.expression = expression
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Invalid expression '{expression}'{where}: {message}")


class TriggerMismatch(CIError):
    """Raised when an event does not satisfy a workflow's triggers.

    A mismatch is a no-op rather than a failure: no run is created.

    Attributes:
        workflow: Name of the workflow that was checked.
        event_kind: Kind of the event that did not match.
    """

    def __init__(self, workflow: str, event_kind: str) -> None:
        """Initialize the exception with trigger details.

        Args:
            workflow: Name of the workflow that was checked.
            event_kind: Kind of the event that did not match.
        """
        self.workflow = workflow
        self.event_kind = event_kind
        super().__init__(f"Workflow '{workflow}' is not triggered by '{event_kind}' event")


class DispatchError(CIError):
    """Raised when no idle runner advertises the labels a job requires.

    The job stays queued; this never fails a job by itself.

    Attributes:
        labels: The label set that could not be satisfied.
    """

    def __init__(self, labels: frozenset[str] | set[str]) -> None:
        """Initialize the exception with the unsatisfied labels.

        Args:
            labels: The label set that could not be satisfied.
        """
        self.labels = frozenset(labels)
        super().__init__(f"No idle runner advertises labels {sorted(self.labels)}")


class InvalidTransitionError(CIError):
    """Raised when a run or job is moved to a state its state machine forbids.

    Attributes:
        subject: Identifier of the run or job execution.
        from_status: The current status.
        to_status: The requested status.
    """

    def __init__(self, subject: str, from_status: str, to_status: str) -> None:
        """Initialize the exception with transition details.

        Args:
            subject: Identifier of the run or job execution.
            from_status: The current status.
            to_status: The requested status.
        """
        self.subject = subject
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition for '{subject}' from '{from_status}' to '{to_status}'")


class WorkflowNotFoundError(CIError):
    """Raised when a workflow definition is not registered in the store.

    Attributes:
        name: The name of the workflow that was not found.
    """

    def __init__(self, name: str) -> None:
        """Initialize the exception with workflow details.

        Args:
            name: The name of the workflow that was not found.
        """
        self.name = name
        super().__init__(f"Workflow '{name}' not found")


class RunNotFoundError(CIError):
    """Raised when a run is not known to the coordinator.

    Attributes:
        run_id: The ID of the run that was not found.
    """

    def __init__(self, run_id: str | UUID) -> None:
        """Initialize the exception with run details.

        Args:
            run_id: The ID of the run that was not found.
        """
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found")


class JobExecutionNotFoundError(CIError):
    """Raised when a job execution is not known to the coordinator.

    Attributes:
        execution_id: The ID of the job execution that was not found.
    """

    def __init__(self, execution_id: str | UUID) -> None:
        """Initialize the exception with execution details.

        Args:
            execution_id: The ID of the job execution that was not found.
        """
        self.execution_id = execution_id
        super().__init__(f"Job execution '{execution_id}' not found")


class RunnerNotFoundError(CIError):
    """Raised when a runner is not registered in the runner pool.

    Attributes:
        runner_id: The ID of the runner that was not found.
    """

    def __init__(self, runner_id: str) -> None:
        """Initialize the exception with runner details.

        Args:
            runner_id: The ID of the runner that was not found.
        """
        self.runner_id = runner_id
        super().__init__(f"Runner '{runner_id}' not found")


class RunAlreadyCompletedError(CIError):
    """Raised when trying to modify a run that reached a terminal state.

    Attributes:
        run_id: The ID of the run.
        status: The terminal status of the run.
    """

    def __init__(self, run_id: str | UUID, status: str) -> None:
        """Initialize the exception with run state details.

        Args:
            run_id: The ID of the run.
            status: The terminal status of the run.
        """
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run '{run_id}' is already {status}")


class StaleRunnerError(CIError):
    """Raised when a runner reports on a job it is no longer assigned to.

    Attributes:
        runner_id: The reporting runner.
        execution_id: The job execution it reported on.
    """

    def __init__(self, runner_id: str, execution_id: str | UUID) -> None:
        """Initialize the exception with assignment details.

        Args:
            runner_id: The reporting runner.
            execution_id: The job execution it reported on.
        """
        self.runner_id = runner_id
        self.execution_id = execution_id
        super().__init__(f"Runner '{runner_id}' is not assigned to job execution '{execution_id}'")


class ApprovalGateNotFoundError(CIError):
    """Raised when approving or rejecting a gate no job of the run waits on.

    Attributes:
        run_id: The ID of the run.
        gate: The gate that was addressed.
    """

    def __init__(self, run_id: str | UUID, gate: str) -> None:
        """Initialize the exception with gate details.

        Args:
            run_id: The ID of the run.
            gate: The gate that was addressed.
        """
        self.run_id = run_id
        self.gate = gate
        super().__init__(f"Run '{run_id}' has no approval gate '{gate}'")
