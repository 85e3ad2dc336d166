"""Matching of repository events against workflow triggers.

Filters use GitHub's glob syntax:

* ``*`` matches any run of characters except ``/``
* ``**`` matches any run of characters
* ``?`` and ``+`` make the preceding character optional or repeatable
* ``[...]`` matches one character of a set or range
* a leading ``!`` negates a pattern; patterns are applied in order and the last
  match wins

Matching has no side effects: it only decides which definitions an event starts.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from typing import TYPE_CHECKING

from litestar_ci.core.types import EventKind
from litestar_ci.exceptions import TriggerMismatch

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from litestar_ci.core.definition import Trigger, WorkflowDefinition
    from litestar_ci.core.models import Event

__all__ = ["DEFAULT_PULL_REQUEST_TYPES", "TriggerMatcher", "compile_glob", "match_patterns"]

logger = logging.getLogger(__name__)

DEFAULT_PULL_REQUEST_TYPES = ("opened", "synchronize", "reopened")
"""Pull request activity types matched when a trigger declares none."""


@lru_cache(maxsize=512)
def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile one filter pattern (without its ``!`` prefix) into a regex."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**/", i):
            parts.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif char == "*":
            parts.append("[^/]*")
            i += 1
        elif char in "?+" and parts:
            parts.append(char)
            i += 1
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                parts.append(re.escape(char))
                i += 1
            else:
                parts.append("[" + pattern[i + 1 : end].replace("\\", "\\\\") + "]")
                i = end + 1
        else:
            parts.append(re.escape(char))
            i += 1
    return re.compile("".join(parts) + r"\Z")


def match_patterns(value: str, patterns: Sequence[str]) -> bool:
    """Apply an ordered list of filter patterns to ``value``.

    Args:
        value: Branch, tag or path to test.
        patterns: Patterns in declaration order; ``!`` negates.

    Returns:
        Whether the last pattern matching ``value`` was a positive one.

    Example:
        >>> match_patterns("releases/v1-beta", ["releases/**", "!releases/**-beta"])
        False
    """
    matched = False
    for pattern in patterns:
        negated = pattern.startswith("!")
        if compile_glob(pattern[1:] if negated else pattern).match(value):
            matched = not negated
    return matched


def _filter(value: str, include: Sequence[str], exclude: Sequence[str]) -> bool:
    if include:
        return match_patterns(value, include)
    if exclude:
        return not match_patterns(value, exclude)
    return True


def _paths_match(trigger: Trigger, paths: Sequence[str]) -> bool:
    if trigger.paths:
        return any(match_patterns(path, trigger.paths) for path in paths)
    if trigger.paths_ignore and paths:
        return not all(match_patterns(path, trigger.paths_ignore) for path in paths)
    return True


class TriggerMatcher:
    """Decides which workflow definitions an event starts."""

    def matches(self, definition: WorkflowDefinition, event: Event) -> bool:
        """Check whether ``event`` satisfies one of ``definition``'s triggers.

        Schedule triggers never match arriving events; the schedule poller raises
        scheduled runs on its own.

        Args:
            definition: The workflow definition.
            event: The arriving event.

        Returns:
            True when a run should be created.
        """
        if event.kind == EventKind.SCHEDULE:
            return False
        trigger = definition.get_trigger(event.kind)
        if trigger is None:
            return False

        if event.kind == EventKind.PUSH:
            return self._match_push(trigger, event)
        if event.kind == EventKind.PULL_REQUEST:
            return self._match_pull_request(trigger, event)
        if event.kind == EventKind.RELEASE:
            return not trigger.types or (event.action or "") in trigger.types
        if event.kind == EventKind.WORKFLOW_DISPATCH:
            return event.workflow is None or event.workflow == definition.name
        return False  # pragma: no cover

    @staticmethod
    def _match_push(trigger: Trigger, event: Event) -> bool:
        has_branch_filters = bool(trigger.branches or trigger.branches_ignore)
        has_tag_filters = bool(trigger.tags or trigger.tags_ignore)

        if event.tag is not None:
            if has_tag_filters:
                return _filter(event.tag, trigger.tags, trigger.tags_ignore)
            # path filters never apply to tag pushes
            return not has_branch_filters

        if event.branch is None:
            return False
        if has_branch_filters:
            if not _filter(event.branch, trigger.branches, trigger.branches_ignore):
                return False
        elif has_tag_filters:
            return False
        return _paths_match(trigger, event.paths)

    @staticmethod
    def _match_pull_request(trigger: Trigger, event: Event) -> bool:
        types = trigger.types or DEFAULT_PULL_REQUEST_TYPES
        if (event.action or "") not in types:
            return False
        base = event.base_branch
        if base is None:
            if trigger.branches or trigger.branches_ignore:
                return False
        elif not _filter(base, trigger.branches, trigger.branches_ignore):
            return False
        return _paths_match(trigger, event.paths)

    def match(self, event: Event, definitions: Iterable[WorkflowDefinition]) -> list[WorkflowDefinition]:
        """Return the definitions ``event`` starts, in the order given."""
        matched = [definition for definition in definitions if self.matches(definition, event)]
        logger.debug(
            "Event %s (%s %s) matched %d workflow(s)", event.id, event.kind, event.ref, len(matched)
        )
        return matched

    def require(self, definition: WorkflowDefinition, event: Event) -> None:
        """Raise unless ``event`` satisfies ``definition``'s triggers.

        Raises:
            TriggerMismatch: If the event does not match.
        """
        if not self.matches(definition, event):
            raise TriggerMismatch(definition.name, event.kind)
