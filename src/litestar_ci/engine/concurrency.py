"""Concurrency group manager.

Runs sharing a concurrency key are serialised. Without ``cancel-in-progress`` a
new run waits behind the active one, first in first out. With it, the new run is
admitted at once and every older run of the group (active or waiting) is
returned as superseded, for the coordinator to cancel with ``CancelledByGroup``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from litestar_ci.core.models import ConcurrencyGroup

if TYPE_CHECKING:
    from uuid import UUID

__all__ = ["Admission", "ConcurrencyGroupManager"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    """Outcome of :meth:`ConcurrencyGroupManager.admit`.

    Attributes:
        admitted: Whether the run may start now.
        superseded: Older runs of the group that must be cancelled.
    """

    admitted: bool
    superseded: tuple[UUID, ...] = ()


class ConcurrencyGroupManager:
    """Tracks the active and waiting runs of every concurrency group."""

    def __init__(self) -> None:
        self._groups: dict[str, ConcurrencyGroup] = {}
        self._keys: dict[UUID, str] = {}

    def __len__(self) -> int:
        return len(self._groups)

    def get(self, key: str) -> ConcurrencyGroup | None:
        return self._groups.get(key)

    def key_of(self, run_id: UUID) -> str | None:
        return self._keys.get(run_id)

    def groups(self) -> list[ConcurrencyGroup]:
        return list(self._groups.values())

    def admit(self, run_id: UUID, key: str, cancel_in_progress: bool = False) -> Admission:
        """Place a run in its group.

        Args:
            run_id: The new run.
            key: Rendered concurrency key.
            cancel_in_progress: Whether the new run supersedes the group's older runs.

        Returns:
            Whether the run starts now and which runs it supersedes.
        """
        group = self._groups.setdefault(key, ConcurrencyGroup(key=key))
        group.cancel_in_progress = cancel_in_progress
        self._keys[run_id] = key

        if cancel_in_progress:
            superseded = ([group.active] if group.active is not None else []) + list(group.waiting)
            group.waiting.clear()
            group.active = run_id
            if superseded:
                logger.info("Run %s supersedes %d run(s) in group '%s'", run_id, len(superseded), key)
            return Admission(admitted=True, superseded=tuple(superseded))

        if group.active is None:
            group.active = run_id
            return Admission(admitted=True)
        group.waiting.append(run_id)
        logger.info("Run %s waits for run %s in group '%s'", run_id, group.active, key)
        return Admission(admitted=False)

    def release(self, run_id: UUID) -> UUID | None:
        """Remove a finished or cancelled run from its group.

        Returns:
            The next run to admit, when the released run was the active one and
            another run was waiting.
        """
        key = self._keys.pop(run_id, None)
        if key is None:
            return None
        group = self._groups[key]

        next_run: UUID | None = None
        if group.active == run_id:
            group.active = group.waiting.popleft() if group.waiting else None
            next_run = group.active
        elif run_id in group.waiting:
            group.waiting.remove(run_id)

        if group.is_idle:
            del self._groups[key]
        return next_run
