"""Core protocols for litestar-ci.

This module defines the Protocol-based interfaces the engine talks to: runner
clients that receive dispatched jobs, secret providers and the optional
persistence layer. Using Protocol keeps the engine free of transport and storage
concerns while maintaining type safety.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_ci.core.models import DispatchRequest, Run

__all__ = ["RunStore", "RunnerClient", "SecretProvider"]


@runtime_checkable
class RunnerClient(Protocol):
    """Transport to one runner.

    The coordinator calls these methods outside of any run lock; a client may
    call back into the coordinator (``report_step``, ``report_job_result``,
    ``acknowledge_cancel``) from within them.

    A client may also define ``async def aclose()``. The coordinator awaits it once
    the client is no longer in use: its runner left the pool or re-registered with
    another client, or the coordinator stopped.

    Example:
        >>> class PrintingRunner:
        ...     async def dispatch(self, request: DispatchRequest) -> None:
        ...         print(f"running {request.node_id}")
        ...
        ...     async def cancel(self, execution_id: UUID, reason: str) -> None:
        ...         print(f"cancelling {execution_id}: {reason}")
    """

    async def dispatch(self, request: DispatchRequest) -> None:
        """Hand a job to the runner.

        Args:
            request: Fully rendered job, including secret masks.

        Raises:
            Exception: Any exception marks the job failed with ``RunnerLost``.
        """
        ...

    async def cancel(self, execution_id: UUID, reason: str) -> None:
        """Ask the runner to stop a job it is executing.

        The runner confirms through ``acknowledge_cancel`` once the job stopped.

        Args:
            execution_id: The job execution to stop.
            reason: Failure reason value explaining the cancellation.
        """
        ...


@runtime_checkable
class SecretProvider(Protocol):
    """External source of secret values."""

    async def get_secret(self, name: str) -> str | None:
        """Return the value of ``name``, or None when the secret is not defined."""
        ...


@runtime_checkable
class RunStore(Protocol):
    """Persistence of run state.

    ``save_run`` is called after every state change of a run; implementations
    must never store secret values, which are not part of ``Run`` anyway.
    """

    async def save_run(self, run: Run) -> None:
        """Persist the current state of ``run`` and its job executions."""
        ...
