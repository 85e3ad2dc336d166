"""Cron expressions and the schedule poller.

Schedule triggers are time based: they never match arriving events. A
:class:`SchedulePoller` checks the registered definitions periodically and starts
one run per ``(workflow, cron)`` pair that is due in the current minute.

Cron expressions use the classic five fields (minute, hour, day of month, month,
day of week) with lists, ranges, steps and month / weekday names. When both day
fields are restricted a day matches if either of them matches.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import TYPE_CHECKING

from litestar_ci.core.models import Event, utcnow
from litestar_ci.core.types import EventKind
from litestar_ci.exceptions import DefinitionError

if TYPE_CHECKING:
    from litestar_ci.core.models import Run
    from litestar_ci.engine.coordinator import ExecutionCoordinator
    from litestar_ci.engine.registry import WorkflowStore

__all__ = ["CronExpression", "SchedulePoller"]

logger = logging.getLogger(__name__)

_MONTHS = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], start=1
    )
}
_WEEKDAYS = {name: index for index, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# (name, lowest, highest, aliases)
_FIELDS: tuple[tuple[str, int, int, dict[str, int]], ...] = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day of month", 1, 31, {}),
    ("month", 1, 12, _MONTHS),
    ("day of week", 0, 7, _WEEKDAYS),
)


def _value(token: str, low: int, high: int, aliases: dict[str, int], field: str) -> int:
    lowered = token.lower()
    if lowered in aliases:
        return aliases[lowered]
    if not token.isdigit():
        msg = f"invalid {field} value '{token}'"
        raise ValueError(msg)
    number = int(token)
    if not low <= number <= high:
        msg = f"{field} value {number} is out of range {low}-{high}"
        raise ValueError(msg)
    return number


def _parse_field(text: str, low: int, high: int, aliases: dict[str, int], field: str) -> frozenset[int]:
    values: set[int] = set()
    for item in text.split(","):
        expression, _, step_text = item.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                msg = f"invalid {field} step '{step_text}'"
                raise ValueError(msg)
            step = int(step_text)
        if expression == "*":
            start, end = low, high
        elif "-" in expression:
            first, _, last = expression.partition("-")
            start = _value(first, low, high, aliases, field)
            end = _value(last, low, high, aliases, field)
            if start > end:
                msg = f"invalid {field} range '{expression}'"
                raise ValueError(msg)
        else:
            start = _value(expression, low, high, aliases, field)
            end = high if step_text else start
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """A parsed five-field cron expression.

    Attributes:
        source: The expression as written.
        minutes: Matching minutes.
        hours: Matching hours.
        days: Matching days of the month.
        months: Matching months.
        weekdays: Matching weekdays, Sunday is 0.
        days_restricted: Whether the day-of-month field is not ``*``.
        weekdays_restricted: Whether the day-of-week field is not ``*``.
    """

    source: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    days_restricted: bool
    weekdays_restricted: bool

    @classmethod
    @lru_cache(maxsize=256)
    def parse(cls, text: str) -> CronExpression:
        """Parse a cron expression.

        Example:
            >>> CronExpression.parse("30 5 * * 1,3").matches(datetime(2024, 1, 1, 5, 30))
            True

        Raises:
            DefinitionError: If the expression is malformed.
        """
        fields = text.split()
        if len(fields) != 5:
            msg = f"Invalid cron expression '{text}': expected 5 fields, got {len(fields)}"
            raise DefinitionError(msg)
        try:
            parsed = [
                _parse_field(value, low, high, aliases, name)
                for value, (name, low, high, aliases) in zip(fields, _FIELDS, strict=True)
            ]
        except ValueError as e:
            msg = f"Invalid cron expression '{text}': {e}"
            raise DefinitionError(msg) from e

        # 7 is an alias for Sunday
        weekdays = frozenset(day % 7 for day in parsed[4])
        return cls(
            source=text,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            days_restricted=not fields[2].startswith("*"),
            weekdays_restricted=not fields[4].startswith("*"),
        )

    def _day_matches(self, moment: datetime) -> bool:
        day = moment.day in self.days
        weekday = (moment.weekday() + 1) % 7 in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return day or weekday
        return day and weekday

    def matches(self, moment: datetime) -> bool:
        """Check whether the minute of ``moment`` is due."""
        return (
            moment.minute in self.minutes
            and moment.hour in self.hours
            and moment.month in self.months
            and self._day_matches(moment)
        )

    def next_after(self, moment: datetime) -> datetime:
        """Return the first due minute strictly after ``moment``.

        Raises:
            ValueError: If the expression can never fire (e.g. ``0 0 31 2 *``).
        """
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = candidate + timedelta(days=366 * 5)
        while candidate < limit:
            if candidate.month not in self.months:
                candidate = (candidate.replace(day=1) + timedelta(days=32)).replace(day=1, hour=0, minute=0)
            elif not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
            elif candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
            elif candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
            else:
                return candidate
        msg = f"Cron expression '{self.source}' never fires"
        raise ValueError(msg)


class SchedulePoller:
    """Starts runs for schedule triggers.

    Attributes:
        store: Source of workflow definitions.
        coordinator: Coordinator that creates the runs.
        interval: Seconds between two checks; must stay below one minute.
        default_branch: Branch scheduled runs are started on.
    """

    def __init__(
        self,
        store: WorkflowStore,
        coordinator: ExecutionCoordinator,
        interval: float = 30.0,
        default_branch: str = "main",
        repository: str = "",
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.interval = interval
        self.default_branch = default_branch
        self.repository = repository
        self._fired: dict[tuple[str, str], datetime] = {}
        self._task: asyncio.Task[None] | None = None

    async def tick(self, now: datetime | None = None) -> list[Run]:
        """Start a run for every schedule due in the current minute.

        Each ``(workflow, cron)`` pair fires at most once per minute, however
        often ``tick`` is called.

        Args:
            now: Current time; defaults to the current UTC time.

        Returns:
            The runs started.
        """
        minute = (now or utcnow()).replace(second=0, microsecond=0)
        started: list[Run] = []
        seen: set[tuple[str, str]] = set()

        for definition in self.store.list_definitions():
            for cron in definition.schedules:
                key = (definition.name, cron)
                seen.add(key)
                if self._fired.get(key) == minute or not CronExpression.parse(cron).matches(minute):
                    continue
                self._fired[key] = minute
                event = Event(
                    kind=EventKind.SCHEDULE,
                    ref=f"refs/heads/{self.default_branch}",
                    actor="scheduler",
                    repository=self.repository,
                    payload={"schedule": cron},
                    received_at=minute,
                )
                logger.info("Schedule '%s' of workflow '%s' is due", cron, definition.name)
                started.append(await self.coordinator.start_run(definition, event))

        for key in set(self._fired) - seen:
            del self._fired[key]
        return started

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Schedule poller tick failed")
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start polling in a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="litestar-ci-schedule")

    async def stop(self) -> None:
        """Stop the background task, if running."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
