"""Parsing of workflow documents into definitions.

Workflow documents follow the GitHub Actions shape::

    name: ci
    on:
      push:
        branches: [main]
    jobs:
      build:
        runs-on: [linux, docker]
        steps:
          - uses: actions/checkout@v4
          - run: make test

The parser collects every problem it finds and raises a single
:class:`~litestar_ci.exceptions.DefinitionError` listing all of them, so a broken
document is reported in one pass.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from litestar_ci.core.definition import (
    DEFAULT_CONCURRENCY_GROUP,
    DEFAULT_JOB_TIMEOUT,
    ConcurrencySpec,
    Job,
    MatrixStrategy,
    RetryPolicy,
    Step,
    Trigger,
    WorkflowDefinition,
)
from litestar_ci.core.expressions import parse_expression, parse_template, referenced_contexts
from litestar_ci.core.types import EventKind, FailureReason
from litestar_ci.exceptions import DefinitionError, ExpressionError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from litestar_ci.core.expressions import Expression

__all__ = ["JOB_ID_PATTERN", "parse_workflow", "parse_workflow_yaml"]

JOB_ID_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
"""Job ids must start with a letter or ``_`` and contain only alphanumerics, ``-`` or ``_``."""

_PERMISSION_LEVELS = frozenset({"read", "write", "none"})
_TOP_LEVEL_KEYS = frozenset({"name", "on", True, "run-name", "env", "concurrency", "jobs", "permissions", "defaults"})


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _Parser:
    """Walks one document, accumulating errors instead of stopping at the first."""

    def __init__(self, document: Mapping[Any, Any], source: str | None, default_timeout: float) -> None:
        self.document = document
        self.source = source
        self.default_timeout = default_timeout
        self.errors: list[str] = []

    # -- helpers ---------------------------------------------------------

    def _string_list(self, value: Any, where: str) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        if isinstance(value, list) and all(isinstance(item, (str, int, float)) for item in value):
            return tuple(_as_str(item) for item in value)
        self.errors.append(f"{where}: expected a string or a list of strings")
        return ()

    def _env(self, value: Any, where: str) -> dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            self.errors.append(f"{where}: env must be a mapping")
            return {}
        env = {str(key): _as_str(item) for key, item in value.items()}
        for text in env.values():
            self._template(text, where)
        return env

    def _condition(self, value: Any, where: str) -> tuple[Expression | None, str | None]:
        if value is None:
            return None, None
        if isinstance(value, bool):
            value = "true" if value else "false"
        if not isinstance(value, str):
            self.errors.append(f"{where}: 'if' must be a string")
            return None, None
        try:
            return parse_expression(value), value
        except ExpressionError as e:
            self.errors.append(f"{where}: {e.errors[0]}")
            return None, value

    def _template(self, text: str, where: str) -> None:
        try:
            parse_template(text)
        except ExpressionError as e:
            self.errors.append(f"{where}: {e.errors[0]}")

    def _timeout(self, value: Any, where: str, default: float | None) -> float | None:
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            self.errors.append(f"{where}: timeout-minutes must be a positive number")
            return default
        return float(value) * 60.0

    def _bool(self, value: Any, where: str, key: str) -> bool:
        if value is None:
            return False
        if not isinstance(value, bool):
            self.errors.append(f"{where}: '{key}' must be a boolean")
            return False
        return value

    # -- workflow --------------------------------------------------------

    def parse(self) -> WorkflowDefinition:
        name = self.document.get("name")
        if name is None and self.source:
            name = Path(self.source).stem
        if not isinstance(name, str) or not name:
            self.errors.append("Workflow requires a 'name'")
            name = ""

        # YAML 1.1 reads a bare `on` key as boolean True
        on = self.document["on"] if "on" in self.document else self.document.get(True)
        triggers = self._triggers(on)

        run_name = self.document.get("run-name")
        if run_name is not None:
            run_name = _as_str(run_name)
            self._template(run_name, "run-name")

        env = self._env(self.document.get("env"), "Workflow")
        concurrency = self._concurrency(self.document.get("concurrency"), "Workflow")
        jobs = self._jobs(self.document.get("jobs"))

        for key in sorted(str(key) for key in self.document if key not in _TOP_LEVEL_KEYS):
            self.errors.append(f"Unknown top-level key '{key}'")

        definition = WorkflowDefinition(
            name=name,
            triggers=triggers,
            jobs=jobs,
            env=env,
            concurrency=concurrency,
            source=self.source,
            run_name=run_name,
        )
        if not self.errors:
            self.errors.extend(definition.validate())
        if self.errors:
            raise DefinitionError(self.errors, workflow=name or self.source)
        return definition

    def _triggers(self, on: Any) -> tuple[Trigger, ...]:
        if on is None:
            self.errors.append("Workflow requires an 'on' section")
            return ()
        if isinstance(on, str):
            on = {on: None}
        elif isinstance(on, list):
            if not all(isinstance(item, str) for item in on):
                self.errors.append("'on' list must contain event names")
                return ()
            on = dict.fromkeys(on)
        elif not isinstance(on, dict):
            self.errors.append("'on' must be a string, a list or a mapping")
            return ()

        triggers: list[Trigger] = []
        for raw_kind, config in on.items():
            try:
                kind = EventKind(str(raw_kind))
            except ValueError:
                self.errors.append(f"Unsupported event '{raw_kind}'")
                continue
            trigger = self._trigger(kind, config)
            if trigger is not None:
                triggers.append(trigger)
        return tuple(triggers)

    def _trigger(self, kind: EventKind, config: Any) -> Trigger | None:
        where = f"on.{kind}"
        if kind == EventKind.SCHEDULE:
            if not isinstance(config, list) or not config:
                self.errors.append(f"{where}: expected a list of {{cron: ...}} entries")
                return None
            crons: list[str] = []
            for entry in config:
                if not isinstance(entry, dict) or not isinstance(entry.get("cron"), str):
                    self.errors.append(f"{where}: every entry needs a 'cron' string")
                    continue
                crons.append(entry["cron"])
            return Trigger(kind=kind, cron=tuple(crons))

        if config is None:
            return Trigger(kind=kind)
        if not isinstance(config, dict):
            self.errors.append(f"{where}: expected a mapping")
            return None

        allowed = {
            EventKind.PUSH: {"branches", "branches-ignore", "tags", "tags-ignore", "paths", "paths-ignore"},
            EventKind.PULL_REQUEST: {"branches", "branches-ignore", "paths", "paths-ignore", "types"},
            EventKind.RELEASE: {"types"},
            EventKind.WORKFLOW_DISPATCH: {"inputs"},
        }[kind]
        for key in config:
            if key not in allowed:
                self.errors.append(f"{where}: unknown filter '{key}'")

        for include, exclude in (("branches", "branches-ignore"), ("tags", "tags-ignore"), ("paths", "paths-ignore")):
            if include in config and exclude in config:
                self.errors.append(f"{where}: '{include}' and '{exclude}' cannot be combined")

        inputs: dict[str, Any] = {}
        raw_inputs = config.get("inputs")
        if raw_inputs is not None:
            if not isinstance(raw_inputs, dict):
                self.errors.append(f"{where}: inputs must be a mapping")
            else:
                for input_name, spec in raw_inputs.items():
                    inputs[str(input_name)] = spec.get("default") if isinstance(spec, dict) else None

        return Trigger(
            kind=kind,
            branches=self._string_list(config.get("branches"), f"{where}.branches"),
            branches_ignore=self._string_list(config.get("branches-ignore"), f"{where}.branches-ignore"),
            tags=self._string_list(config.get("tags"), f"{where}.tags"),
            tags_ignore=self._string_list(config.get("tags-ignore"), f"{where}.tags-ignore"),
            paths=self._string_list(config.get("paths"), f"{where}.paths"),
            paths_ignore=self._string_list(config.get("paths-ignore"), f"{where}.paths-ignore"),
            types=self._string_list(config.get("types"), f"{where}.types"),
            inputs=inputs,
        )

    def _concurrency(self, value: Any, where: str) -> ConcurrencySpec | None:
        if value is None:
            return None
        if isinstance(value, str):
            self._template(value, f"{where} concurrency")
            return ConcurrencySpec(group=value)
        if not isinstance(value, dict):
            self.errors.append(f"{where}: concurrency must be a string or a mapping")
            return None
        group = _as_str(value.get("group")) or DEFAULT_CONCURRENCY_GROUP
        self._template(group, f"{where} concurrency")
        return ConcurrencySpec(
            group=group,
            cancel_in_progress=self._bool(value.get("cancel-in-progress"), f"{where} concurrency", "cancel-in-progress"),
        )

    # -- jobs ------------------------------------------------------------

    def _jobs(self, value: Any) -> dict[str, Job]:
        if not isinstance(value, dict) or not value:
            self.errors.append("Workflow requires a non-empty 'jobs' mapping")
            return {}
        jobs: dict[str, Job] = {}
        for raw_id, config in value.items():
            job_id = str(raw_id)
            if not JOB_ID_PATTERN.match(job_id):
                self.errors.append(f"Invalid job id '{job_id}'")
                continue
            if not isinstance(config, dict):
                self.errors.append(f"Job '{job_id}': expected a mapping")
                continue
            job = self._job(job_id, config)
            if job is not None:
                jobs[job_id] = job
        return jobs

    def _job(self, job_id: str, config: Mapping[str, Any]) -> Job | None:
        where = f"Job '{job_id}'"
        runs_on = self._string_list(config.get("runs-on"), f"{where} runs-on")
        if "runs-on" not in config:
            self.errors.append(f"{where}: 'runs-on' is required")

        condition, condition_source = self._condition(config.get("if"), where)
        environment, requires_approval = self._environment(config.get("environment"), where)

        raw_steps = config.get("steps")
        steps: list[Step] = []
        if not isinstance(raw_steps, list) or not raw_steps:
            self.errors.append(f"{where}: 'steps' must be a non-empty list")
        else:
            for index, raw_step in enumerate(raw_steps):
                step = self._step(f"{where} step {index}", raw_step, index)
                if step is not None:
                    steps.append(step)

        name = config.get("name")
        if name is not None:
            self._template(_as_str(name), where)

        timeout = self._timeout(config.get("timeout-minutes"), where, self.default_timeout)
        matrix = self._strategy(config.get("strategy"), where)
        self._runs_on_templates(runs_on, matrix is not None, where)
        return Job(
            id=job_id,
            name=_as_str(name) if name is not None else job_id,
            runs_on=frozenset(runs_on),
            steps=tuple(steps),
            needs=self._string_list(config.get("needs"), f"{where} needs"),
            condition=condition,
            condition_source=condition_source,
            timeout=timeout if timeout is not None else DEFAULT_JOB_TIMEOUT,
            permissions=self._permissions(config.get("permissions"), where),
            env=self._env(config.get("env"), where),
            matrix=matrix,
            retry=self._retry(config.get("retry"), where),
            continue_on_error=self._bool(config.get("continue-on-error"), where, "continue-on-error"),
            environment=environment,
            requires_approval=requires_approval,
        )

    def _runs_on_templates(self, labels: tuple[str, ...], has_matrix: bool, where: str) -> None:
        """Labels may be templated on the matrix only; they are rendered per leg."""
        for label in labels:
            try:
                template = parse_template(label)
            except ExpressionError as e:
                self.errors.append(f"{where} runs-on: {e.errors[0]}")
                continue
            contexts = referenced_contexts(template.expressions)
            if contexts - {"matrix"}:
                unsupported = ", ".join(sorted(contexts - {"matrix"}))
                self.errors.append(f"{where}: runs-on may only reference the matrix context, not {unsupported}")
            elif contexts and not has_matrix:
                self.errors.append(f"{where}: runs-on references the matrix but the job has no strategy.matrix")

    def _environment(self, value: Any, where: str) -> tuple[str | None, bool]:
        if value is None:
            return None, False
        if isinstance(value, str):
            return value, False
        if isinstance(value, dict) and isinstance(value.get("name"), str):
            return value["name"], self._bool(value.get("requires-approval"), where, "requires-approval")
        self.errors.append(f"{where}: environment must be a name or a mapping with a 'name'")
        return None, False

    def _permissions(self, value: Any, where: str) -> dict[str, str]:
        if value is None:
            return {}
        if value == "read-all":
            return {"*": "read"}
        if value == "write-all":
            return {"*": "write"}
        if not isinstance(value, dict):
            self.errors.append(f"{where}: permissions must be 'read-all', 'write-all' or a mapping")
            return {}
        permissions: dict[str, str] = {}
        for scope, level in value.items():
            if level not in _PERMISSION_LEVELS:
                self.errors.append(f"{where}: permission '{scope}' must be one of read, write or none")
                continue
            permissions[str(scope)] = level
        return permissions

    def _strategy(self, value: Any, where: str) -> MatrixStrategy | None:
        if value is None:
            return None
        if not isinstance(value, dict) or not isinstance(value.get("matrix"), dict):
            self.errors.append(f"{where}: strategy requires a 'matrix' mapping")
            return None

        axes: dict[str, tuple[Any, ...]] = {}
        include: list[dict[str, Any]] = []
        exclude: list[dict[str, Any]] = []
        for key, values in value["matrix"].items():
            if key in ("include", "exclude"):
                target = include if key == "include" else exclude
                if not isinstance(values, list) or not all(isinstance(item, dict) for item in values):
                    self.errors.append(f"{where}: matrix {key} must be a list of mappings")
                    continue
                target.extend(dict(item) for item in values)
            elif isinstance(values, list):
                axes[str(key)] = tuple(values)
            else:
                self.errors.append(f"{where}: matrix axis '{key}' must be a list")

        for entry in exclude:
            for key in entry:
                if key not in axes:
                    self.errors.append(f"{where}: matrix exclude refers to unknown axis '{key}'")

        max_parallel = value.get("max-parallel")
        if max_parallel is not None and (isinstance(max_parallel, bool) or not isinstance(max_parallel, int)):
            self.errors.append(f"{where}: max-parallel must be an integer")
            max_parallel = None

        fail_fast = value.get("fail-fast", True)
        if not isinstance(fail_fast, bool):
            self.errors.append(f"{where}: 'fail-fast' must be a boolean")
            fail_fast = True

        return MatrixStrategy(
            axes=axes,
            include=tuple(include),
            exclude=tuple(exclude),
            fail_fast=fail_fast,
            max_parallel=max_parallel,
        )

    def _retry(self, value: Any, where: str) -> RetryPolicy:
        if value is None:
            return RetryPolicy()
        if not isinstance(value, dict):
            self.errors.append(f"{where}: retry must be a mapping")
            return RetryPolicy()

        max_attempts = value.get("max-attempts", 1)
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            self.errors.append(f"{where}: retry max-attempts must be a positive integer")
            max_attempts = 1

        # YAML 1.1 reads a bare `on` key as boolean True
        if "on" in value:
            raw_on = value["on"]
        elif True in value:
            raw_on = value[True]
        else:
            return RetryPolicy(max_attempts=max_attempts)

        reasons: set[FailureReason] = set()
        lookup = {reason.value.lower(): reason for reason in FailureReason}
        for raw in self._string_list(raw_on, f"{where} retry.on"):
            reason = lookup.get(raw.replace("-", "").replace("_", "").lower())
            if reason is None:
                self.errors.append(f"{where}: unknown retry reason '{raw}'")
                continue
            reasons.add(reason)
        return RetryPolicy(max_attempts=max_attempts, retry_on=frozenset(reasons))

    def _step(self, where: str, config: Any, index: int) -> Step | None:
        if not isinstance(config, dict):
            self.errors.append(f"{where}: expected a mapping")
            return None

        uses = config.get("uses")
        run = config.get("run")
        if (uses is None) == (run is None):
            self.errors.append(f"{where}: exactly one of 'uses' and 'run' is required")
            return None
        if run is not None:
            run = _as_str(run)
            self._template(run, where)

        inputs = config.get("with") or {}
        if not isinstance(inputs, dict):
            self.errors.append(f"{where}: 'with' must be a mapping")
            inputs = {}
        inputs = {str(key): _as_str(item) for key, item in inputs.items()}
        for text in inputs.values():
            self._template(text, where)

        condition, condition_source = self._condition(config.get("if"), where)
        name = config.get("name")
        if name is None and uses:
            name = f"Run {uses}"
        elif name is None:
            lines = run.strip().splitlines() if run else []
            name = lines[0] if lines else f"Step {index + 1}"

        step_id = config.get("id")
        if step_id is not None and not JOB_ID_PATTERN.match(str(step_id)):
            self.errors.append(f"{where}: invalid step id '{step_id}'")

        return Step(
            name=_as_str(name),
            uses=_as_str(uses) if uses is not None else None,
            run=run,
            inputs=inputs,
            env=self._env(config.get("env"), where),
            condition=condition,
            condition_source=condition_source,
            id=str(step_id) if step_id is not None else None,
            continue_on_error=self._bool(config.get("continue-on-error"), where, "continue-on-error"),
            timeout=self._timeout(config.get("timeout-minutes"), where, None),
            shell=config.get("shell"),
            working_directory=config.get("working-directory"),
        )


def parse_workflow(
    document: Mapping[Any, Any],
    source: str | None = None,
    default_timeout: float = DEFAULT_JOB_TIMEOUT,
) -> WorkflowDefinition:
    """Turn a workflow document into a validated definition.

    Args:
        document: The decoded document.
        source: Path the document was read from, if any. Used as the name when the
            document has none.
        default_timeout: Timeout in seconds for jobs without ``timeout-minutes``.

    Returns:
        The workflow definition.

    Raises:
        DefinitionError: Listing every problem found in the document.
    """
    if not isinstance(document, dict):
        raise DefinitionError("Workflow document must be a mapping", workflow=source)
    return _Parser(document, source, default_timeout).parse()


def parse_workflow_yaml(
    text: str,
    source: str | None = None,
    default_timeout: float = DEFAULT_JOB_TIMEOUT,
) -> WorkflowDefinition:
    """Parse a YAML workflow document.

    Raises:
        DefinitionError: If the text is not valid YAML or not a valid workflow.
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML: {e}", workflow=source) from e
    return parse_workflow(document, source=source, default_timeout=default_timeout)
