"""Tests for the dependency graph, matrix expansion and readiness evaluation."""

from __future__ import annotations

import pytest

from litestar_ci.core.models import Event
from litestar_ci.core.parser import parse_workflow, parse_workflow_yaml
from litestar_ci.core.types import EventKind, FailureReason, JobStatus
from litestar_ci.engine.context import aggregate_result, expression_values, github_context, needs_context
from litestar_ci.engine.graph import Decision, DependencyGraph, evaluate_readiness
from litestar_ci.engine.matrix import build_plan, expand_matrix, node_id
from litestar_ci.exceptions import DefinitionError
from tests.conftest import make_run, push_event

DIAMOND = """
name: diamond
on: push
jobs:
  setup:
    runs-on: linux
    steps: [{run: setup}]
  lint:
    needs: setup
    runs-on: linux
    steps: [{run: lint}]
  test:
    needs: setup
    runs-on: linux
    steps: [{run: test}]
  report:
    needs: [lint, test]
    if: always()
    runs-on: linux
    steps: [{run: report}]
"""


def finish(execution, status: JobStatus, reason: FailureReason | None = None) -> None:
    execution.transition(JobStatus.QUEUED)
    execution.transition(JobStatus.RUNNING)
    execution.transition(status, reason)


def matrix_job(strategy: dict):
    definition = parse_workflow(
        {"name": "m", "on": "push", "jobs": {"t": {"runs-on": "l", "strategy": strategy, "steps": [{"run": "x"}]}}}
    )
    return definition.jobs["t"]


@pytest.fixture
def diamond():
    return parse_workflow_yaml(DIAMOND)


@pytest.mark.unit
class TestDependencyGraph:
    """Tests for graph queries."""

    def test_dependencies_and_dependents(self, diamond) -> None:
        graph = DependencyGraph(diamond)

        assert graph.get_dependencies("report") == ["lint", "test"]
        assert graph.get_dependents("setup") == ["lint", "test"]
        assert graph.get_all_dependents("setup") == {"lint", "test", "report"}
        assert graph.roots() == ["setup"]

    def test_levels_and_order(self, diamond) -> None:
        graph = DependencyGraph.from_definition(diamond)

        assert graph.levels() == [["setup"], ["lint", "test"], ["report"]]
        assert graph.topological_order() == ["setup", "lint", "test", "report"]
        assert graph.validate() == []

    def test_cycle_in_handwritten_definition(self, diamond) -> None:
        from dataclasses import replace

        jobs = dict(diamond.jobs)
        jobs["setup"] = replace(jobs["setup"], needs=("report",))
        cyclic = replace(diamond, jobs=jobs)
        graph = DependencyGraph(cyclic)

        cycle = graph.find_cycle()
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert any(error.startswith("cycle detected") for error in graph.validate())
        with pytest.raises(DefinitionError, match="cycle detected"):
            graph.levels()


@pytest.mark.unit
class TestMatrix:
    """Tests for matrix expansion."""

    def test_job_without_matrix(self, diamond) -> None:
        assert expand_matrix(diamond.jobs["setup"]) == [{}]
        assert node_id(diamond.jobs["setup"], {}) == "setup"

    def test_product_in_axis_order(self) -> None:
        job = matrix_job({"matrix": {"python": ["3.11", "3.12"], "os": ["linux", "macos"]}})

        assert expand_matrix(job) == [
            {"python": "3.11", "os": "linux"},
            {"python": "3.11", "os": "macos"},
            {"python": "3.12", "os": "linux"},
            {"python": "3.12", "os": "macos"},
        ]

    def test_exclude_and_include(self) -> None:
        job = matrix_job(
            {
                "matrix": {
                    "python": ["3.11", "3.12"],
                    "os": ["linux", "macos"],
                    "exclude": [{"python": "3.11", "os": "macos"}],
                    "include": [
                        {"os": "linux", "experimental": True},
                        {"python": "3.13", "os": "linux"},
                    ],
                }
            }
        )

        assert expand_matrix(job) == [
            {"python": "3.11", "os": "linux", "experimental": True},
            {"python": "3.12", "os": "linux", "experimental": True},
            {"python": "3.12", "os": "macos"},
            {"python": "3.13", "os": "linux"},
        ]

    def test_include_only_matrix(self) -> None:
        job = matrix_job({"matrix": {"include": [{"target": "arm"}, {"target": "x86"}]}})

        assert expand_matrix(job) == [{"target": "arm"}, {"target": "x86"}]

    def test_node_ids(self) -> None:
        job = matrix_job({"matrix": {"python": ["3.11"], "os": ["linux"]}})

        assert node_id(job, {"python": "3.11", "os": "linux"}) == "t (3.11, linux)"

    def test_build_plan(self, ci_definition) -> None:
        plan = build_plan(ci_definition)

        assert list(plan) == ["build", "test (3.11)", "test (3.12)", "deploy"]
        assert plan["test (3.11)"].dependencies == ("build",)
        assert plan["test (3.11)"].matrix == {"python": "3.11"}
        assert plan["deploy"].dependencies == ("test (3.11)", "test (3.12)")
        assert plan["test (3.11)"].labels == frozenset({"linux"})

    def test_runs_on_rendered_per_leg(self) -> None:
        definition = parse_workflow(
            {
                "name": "m",
                "on": "push",
                "jobs": {
                    "t": {
                        "runs-on": ["self-hosted", "${{ matrix.os }}"],
                        "strategy": {"matrix": {"os": ["linux", "macos"]}},
                        "steps": [{"run": "x"}],
                    }
                },
            }
        )

        plan = build_plan(definition)

        assert plan["t (linux)"].labels == frozenset({"self-hosted", "linux"})
        assert plan["t (macos)"].labels == frozenset({"self-hosted", "macos"})


@pytest.mark.unit
class TestContexts:
    """Tests for the expression contexts built from a run."""

    def test_github_context(self, ci_definition) -> None:
        run = make_run(ci_definition, push_event("refs/tags/v1", sha="abc", repository="acme/app"))

        github = github_context(run)

        assert github["event_name"] == "push"
        assert github["ref_name"] == "v1"
        assert github["ref_type"] == "tag"
        assert github["sha"] == "abc"
        assert github["workflow"] == "ci"
        assert github["run_number"] == 1

    def test_aggregate_result(self, ci_definition) -> None:
        run = make_run(ci_definition)
        legs = run.executions_for_job("test")

        finish(legs[0], JobStatus.SUCCEEDED)
        finish(legs[1], JobStatus.SUCCEEDED)
        assert aggregate_result(legs) == "success"

        legs[1].status = JobStatus.CANCELLED
        assert aggregate_result(legs) == "cancelled"

        legs[0].status = JobStatus.FAILED
        assert aggregate_result(legs) == "failure"

    def test_aggregate_all_skipped(self, ci_definition) -> None:
        run = make_run(ci_definition)
        deploy = run.executions_for_job("deploy")
        deploy[0].transition(JobStatus.SKIPPED, FailureReason.CONDITION_NOT_MET)

        assert aggregate_result(deploy) == "skipped"

    def test_needs_context_merges_leg_outputs(self, ci_definition) -> None:
        run = make_run(ci_definition)
        first, second = run.executions_for_job("test")
        finish(first, JobStatus.SUCCEEDED)
        first.outputs = {"coverage": "90"}
        finish(second, JobStatus.SUCCEEDED)
        second.outputs = {"wheel": "pkg.whl"}

        assert needs_context(run, ("test",)) == {
            "test": {"result": "success", "outputs": {"coverage": "90", "wheel": "pkg.whl"}}
        }

    def test_expression_values(self, ci_definition) -> None:
        run = make_run(ci_definition)
        run.inputs = {"level": "fast"}
        leg = run.executions["test (3.12)"]

        values = expression_values(run, leg)

        assert values["matrix"] == {"python": "3.12"}
        assert values["inputs"] == {"level": "fast"}
        assert values["needs"] == {"build": {"result": "", "outputs": {}}}
        assert values["strategy"]["fail-fast"] is True
        assert "secrets" not in values


@pytest.mark.unit
class TestReadiness:
    """Tests for the pure readiness evaluation."""

    def decisions(self, run) -> dict[str, tuple[Decision, FailureReason | None]]:
        return {readiness.node_id: (readiness.decision, readiness.reason) for readiness in evaluate_readiness(run)}

    def test_roots_are_ready(self, diamond) -> None:
        run = make_run(diamond)

        assert self.decisions(run) == {
            "setup": (Decision.READY, None),
            "lint": (Decision.WAIT, None),
            "test": (Decision.WAIT, None),
            "report": (Decision.WAIT, None),
        }

    def test_evaluation_is_pure(self, diamond) -> None:
        run = make_run(diamond)

        first = evaluate_readiness(run)

        assert evaluate_readiness(run) == first
        assert all(execution.status == JobStatus.PENDING for execution in run.executions.values())

    def test_failed_dependency_skips_dependents(self, diamond) -> None:
        run = make_run(diamond)
        finish(run.executions["setup"], JobStatus.FAILED, FailureReason.STEP_FAILED)

        decisions = self.decisions(run)

        assert decisions["lint"] == (Decision.SKIP, FailureReason.DEPENDENCY_FAILED)
        assert decisions["test"] == (Decision.SKIP, FailureReason.DEPENDENCY_FAILED)
        assert decisions["report"] == (Decision.WAIT, None)

    def test_always_runs_after_failure(self, diamond) -> None:
        run = make_run(diamond)
        finish(run.executions["setup"], JobStatus.SUCCEEDED)
        finish(run.executions["lint"], JobStatus.FAILED, FailureReason.STEP_FAILED)
        finish(run.executions["test"], JobStatus.SUCCEEDED)

        assert self.decisions(run) == {"report": (Decision.READY, None)}

    def test_optional_failure_counts_as_success(self, diamond) -> None:
        run = make_run(diamond)
        setup = run.executions["setup"]
        setup.continue_on_error = True
        finish(setup, JobStatus.FAILED, FailureReason.STEP_FAILED)

        decisions = self.decisions(run)

        assert decisions["lint"] == (Decision.READY, None)

    def test_false_condition(self, ci_definition) -> None:
        run = make_run(ci_definition, push_event("refs/heads/releases/v1"))
        finish(run.executions["build"], JobStatus.SUCCEEDED)
        finish(run.executions["test (3.11)"], JobStatus.SUCCEEDED)
        finish(run.executions["test (3.12)"], JobStatus.SUCCEEDED)

        assert self.decisions(run) == {"deploy": (Decision.SKIP, FailureReason.CONDITION_NOT_MET)}

    def test_matrix_dependency_waits_for_every_leg(self, ci_definition) -> None:
        run = make_run(ci_definition)
        finish(run.executions["build"], JobStatus.SUCCEEDED)
        finish(run.executions["test (3.11)"], JobStatus.SUCCEEDED)

        assert self.decisions(run)["deploy"] == (Decision.WAIT, None)

    def test_approval_gate(self, ci_definition) -> None:
        run = make_run(ci_definition)
        for node in ("build", "test (3.11)", "test (3.12)"):
            finish(run.executions[node], JobStatus.SUCCEEDED)

        assert self.decisions(run)["deploy"] == (Decision.WAIT, None)

        run.approvals["production"] = "alice"
        assert self.decisions(run)["deploy"] == (Decision.READY, None)

        del run.approvals["production"]
        run.rejections["production"] = "bob"
        assert self.decisions(run)["deploy"] == (Decision.FAIL, FailureReason.APPROVAL_REJECTED)

    def test_cancelled_run_skips_pending(self, diamond) -> None:
        run = make_run(diamond)
        run.cancel_requested = True

        assert self.decisions(run)["setup"] == (Decision.SKIP, FailureReason.CONDITION_NOT_MET)

    def test_condition_error_skips(self) -> None:
        definition = parse_workflow(
            {
                "name": "x",
                "on": "push",
                "jobs": {"a": {"runs-on": "l", "if": "format('{3}') == 'x'", "steps": [{"run": "x"}]}},
            }
        )
        run = make_run(definition, Event(kind=EventKind.PUSH, ref="refs/heads/main"))

        assert self.decisions(run)["a"] == (Decision.SKIP, FailureReason.CONDITION_NOT_MET)
