"""Engine configuration."""

from __future__ import annotations

from dataclasses import dataclass

from litestar_ci.core.definition import DEFAULT_JOB_TIMEOUT

__all__ = ["EngineConfig"]


@dataclass
class EngineConfig:
    """Tunables of the execution coordinator and its background loops.

    Attributes:
        default_job_timeout: Timeout in seconds for jobs without ``timeout-minutes``.
        cancel_grace_period: Seconds a runner has to acknowledge a cancel before the
            job is marked cancelled anyway.
        queue_timeout: Seconds a job may wait for a runner before it fails with
            ``DispatchTimeout``. None waits forever.
        runner_heartbeat_ttl: Seconds without heartbeat after which a runner is lost.
        maintenance_interval: Seconds between two maintenance passes (runner expiry,
            queue timeouts, workflow reload).
        schedule_interval: Seconds between two checks of schedule triggers.
        reload_workflows: Re-read changed workflow files during maintenance.
        default_branch: Branch scheduled and manually dispatched runs use.
        repository: Repository name reported in the ``github`` context of
            scheduled runs.
        retain_finished_runs: Finished runs kept in memory; older ones are forgotten
            once no runner still owes a report for them. None keeps every run.

    Example:
        >>> config = EngineConfig(cancel_grace_period=10.0, queue_timeout=3600.0)
    """

    default_job_timeout: float = DEFAULT_JOB_TIMEOUT
    cancel_grace_period: float = 30.0
    queue_timeout: float | None = None
    runner_heartbeat_ttl: float = 120.0
    maintenance_interval: float = 5.0
    schedule_interval: float = 30.0
    reload_workflows: bool = False
    default_branch: str = "main"
    repository: str = ""
    retain_finished_runs: int | None = 1000
