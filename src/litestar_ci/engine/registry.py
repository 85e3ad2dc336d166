"""Workflow definition store.

This module provides the store holding the current workflow definitions. It loads
documents from mappings, YAML text, files or whole directories, validates them
before they become visible and reloads files that changed on disk. Runs keep the
definition snapshot they were created from, so a reload never touches a run that
is in flight.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from litestar_ci.core.definition import DEFAULT_JOB_TIMEOUT
from litestar_ci.core.parser import parse_workflow, parse_workflow_yaml
from litestar_ci.engine.schedule import CronExpression
from litestar_ci.exceptions import DefinitionError, WorkflowNotFoundError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar_ci.core.definition import WorkflowDefinition

__all__ = ["ReloadReport", "WorkflowStore"]

logger = logging.getLogger(__name__)

WORKFLOW_FILE_PATTERNS = ("*.yml", "*.yaml")


@dataclass
class _TrackedFile:
    mtime: float
    name: str | None


@dataclass
class ReloadReport:
    """What :meth:`WorkflowStore.reload_changed` did.

    Attributes:
        loaded: Names of definitions added or replaced.
        removed: Names of definitions dropped because their file disappeared.
        failed: Paths whose new content was rejected, with the errors.
    """

    loaded: list[str]
    removed: list[str]
    failed: dict[str, list[str]]

    @property
    def changed(self) -> bool:
        return bool(self.loaded or self.removed or self.failed)


class WorkflowStore:
    """Store for validated workflow definitions, keyed by workflow name.

    Attributes:
        default_timeout: Timeout in seconds for jobs without ``timeout-minutes``.
        errors: Validation errors of documents that were rejected, keyed by path.
    """

    def __init__(self, default_timeout: float = DEFAULT_JOB_TIMEOUT) -> None:
        """Initialize an empty store.

        Args:
            default_timeout: Timeout in seconds for jobs without ``timeout-minutes``.
        """
        self.default_timeout = default_timeout
        self.errors: dict[str, list[str]] = {}
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._files: dict[Path, _TrackedFile] = {}
        self._directories: list[Path] = []

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions

    def check(self, definition: WorkflowDefinition) -> list[str]:
        """Return every problem that would prevent ``definition`` from registering."""
        errors = definition.validate()
        for cron in definition.schedules:
            try:
                CronExpression.parse(cron)
            except DefinitionError as e:
                errors.extend(e.errors)

        existing = self._definitions.get(definition.name)
        if existing is not None and existing.source != definition.source and existing.source and definition.source:
            errors.append(f"Workflow name '{definition.name}' is already defined in '{existing.source}'")
        return errors

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and register a definition, replacing one of the same name.

        Args:
            definition: The definition to register.

        Returns:
            The registered definition.

        Raises:
            DefinitionError: On unresolved ``needs``, cycles, bad cron expressions
                or a name already taken by another file.

        Example:
            >>> store = WorkflowStore()
            >>> store.register(parse_workflow_yaml(text))
        """
        errors = self.check(definition)
        if errors:
            raise DefinitionError(errors, workflow=definition.name)
        self._definitions[definition.name] = definition
        logger.info("Registered workflow '%s' with %d job(s)", definition.name, len(definition.jobs))
        return definition

    def load(self, document: Mapping[Any, Any] | str, source: str | None = None) -> WorkflowDefinition:
        """Parse and register a document given as a mapping or YAML text.

        Raises:
            DefinitionError: If the document is invalid.
        """
        if isinstance(document, str):
            definition = parse_workflow_yaml(document, source=source, default_timeout=self.default_timeout)
        else:
            definition = parse_workflow(document, source=source, default_timeout=self.default_timeout)
        return self.register(definition)

    def load_file(self, path: str | Path) -> WorkflowDefinition:
        """Load one workflow file and track it for :meth:`reload_changed`.

        Raises:
            DefinitionError: If the file cannot be read or holds an invalid document.
        """
        path = Path(path).resolve()
        try:
            mtime = path.stat().st_mtime
        except OSError as e:
            raise self._unreadable(path, e) from e
        tracked = self._files.setdefault(path, _TrackedFile(mtime=mtime, name=None))
        tracked.mtime = mtime
        try:
            definition = self.load(path.read_text(encoding="utf-8"), source=str(path))
        except (OSError, UnicodeDecodeError) as e:
            raise self._unreadable(path, e) from e
        except DefinitionError as e:
            self.errors[str(path)] = e.errors
            raise

        self.errors.pop(str(path), None)
        if tracked.name is not None and tracked.name != definition.name:
            self._definitions.pop(tracked.name, None)
        tracked.name = definition.name
        return definition

    def _unreadable(self, path: Path, error: Exception) -> DefinitionError:
        message = f"could not read {path}: {error}"
        self.errors[str(path)] = [message]
        return DefinitionError(message)

    def load_directory(self, path: str | Path) -> list[WorkflowDefinition]:
        """Load every ``*.yml`` / ``*.yaml`` file of a directory.

        Invalid files are logged and recorded in :attr:`errors`; they do not stop
        the others from loading. The directory is remembered so that
        :meth:`reload_changed` picks up files added later.

        Returns:
            The definitions that loaded.
        """
        directory = Path(path).resolve()
        if directory not in self._directories:
            self._directories.append(directory)

        loaded: list[WorkflowDefinition] = []
        for file in self._workflow_files(directory):
            try:
                loaded.append(self.load_file(file))
            except DefinitionError as e:
                logger.warning("Rejected workflow file %s: %s", file, e)
        return loaded

    @staticmethod
    def _workflow_files(directory: Path) -> list[Path]:
        files: set[Path] = set()
        for pattern in WORKFLOW_FILE_PATTERNS:
            files.update(file.resolve() for file in directory.glob(pattern) if file.is_file())
        return sorted(files)

    def reload_changed(self) -> ReloadReport:
        """Re-read tracked files that changed on disk.

        Files whose modification time changed are parsed again; a file that now
        holds an invalid document keeps its previous definition and its errors are
        recorded in :attr:`errors`. Definitions whose file disappeared are dropped.
        New files in loaded directories are picked up.

        Returns:
            A report of what changed.
        """
        report = ReloadReport(loaded=[], removed=[], failed={})

        for path, tracked in list(self._files.items()):
            if not path.exists():
                del self._files[path]
                self.errors.pop(str(path), None)
                if tracked.name is not None and self._definitions.pop(tracked.name, None) is not None:
                    logger.info("Workflow '%s' removed with %s", tracked.name, path)
                    report.removed.append(tracked.name)
                continue
            if path.stat().st_mtime == tracked.mtime:
                continue
            self._reload(path, report)

        for directory in self._directories:
            if not directory.is_dir():
                continue
            for file in self._workflow_files(directory):
                if file not in self._files:
                    self._reload(file, report)

        return report

    def _reload(self, path: Path, report: ReloadReport) -> None:
        try:
            definition = self.load_file(path)
        except DefinitionError as e:
            logger.warning("Keeping previous definition for %s, reload rejected: %s", path, e)
            report.failed[str(path)] = e.errors
            return
        report.loaded.append(definition.name)

    def get(self, name: str) -> WorkflowDefinition:
        """Retrieve a workflow definition by name.

        Raises:
            WorkflowNotFoundError: If no workflow of that name is registered.
        """
        try:
            return self._definitions[name]
        except KeyError:
            raise WorkflowNotFoundError(name) from None

    def list_definitions(self) -> list[WorkflowDefinition]:
        """List all registered workflow definitions, in registration order."""
        return list(self._definitions.values())

    def has_workflow(self, name: str) -> bool:
        return name in self._definitions

    def unregister(self, name: str) -> None:
        """Remove a workflow from the store; unknown names are ignored."""
        definition = self._definitions.pop(name, None)
        if definition is None:
            return
        for tracked in self._files.values():
            if tracked.name == name:
                tracked.name = None
        logger.info("Unregistered workflow '%s'", name)
