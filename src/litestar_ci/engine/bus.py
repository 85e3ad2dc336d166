"""In-process event bus for reporting events.

Observers are plain or async callables. They are called in subscription order;
an observer raising is logged and never prevents the others from being called or
the run from progressing.
"""

from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from litestar_ci.core.events import CIEvent

    Observer = Callable[[CIEvent], Awaitable[Any] | Any]

__all__ = ["EventBus"]

logger = logging.getLogger(__name__)


class EventBus:
    """Fan-out of reporting events to observers."""

    def __init__(self) -> None:
        self._observers: list[tuple[Observer, tuple[type[CIEvent], ...] | None]] = []

    def __len__(self) -> int:
        return len(self._observers)

    def subscribe(
        self,
        observer: Observer,
        event_types: Iterable[type[CIEvent]] | None = None,
    ) -> Callable[[], None]:
        """Register an observer.

        Args:
            observer: Callable receiving each event; may be async.
            event_types: Only deliver these event classes (and subclasses).

        Returns:
            A callable that unsubscribes the observer.

        Example:
            >>> bus = EventBus()
            >>> unsubscribe = bus.subscribe(print, [RunCompleted])
        """
        entry = (observer, tuple(event_types) if event_types is not None else None)
        self._observers.append(entry)

        def unsubscribe() -> None:
            if entry in self._observers:
                self._observers.remove(entry)

        return unsubscribe

    async def emit(self, event: CIEvent) -> None:
        """Deliver ``event`` to every interested observer."""
        for observer, event_types in list(self._observers):
            if event_types is not None and not isinstance(event, event_types):
                continue
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Observer %r failed on %s", observer, event.event_type)
