"""Tests for the workflow definition store."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from litestar_ci.core.parser import parse_workflow_yaml
from litestar_ci.engine.registry import WorkflowStore
from litestar_ci.exceptions import DefinitionError, WorkflowNotFoundError
from tests.conftest import CHAIN_WORKFLOW, CI_WORKFLOW

if TYPE_CHECKING:
    from pathlib import Path

BROKEN = """
name: broken
on: push
jobs:
  a:
    runs-on: linux
    needs: ghost
    steps:
      - run: make
"""


def touch_later(path: Path, text: str) -> None:
    """Rewrite ``path`` and move its mtime forward so a reload notices."""
    previous = path.stat().st_mtime
    path.write_text(text)
    os.utime(path, (previous + 10, previous + 10))


@pytest.mark.unit
class TestRegistration:
    """Tests for registering definitions directly."""

    def test_load_yaml_text(self, workflow_store: WorkflowStore) -> None:
        definition = workflow_store.load(CI_WORKFLOW)

        assert workflow_store.get("ci") is definition
        assert "ci" in workflow_store
        assert workflow_store.has_workflow("ci")
        assert len(workflow_store) == 1

    def test_load_mapping(self, workflow_store: WorkflowStore) -> None:
        workflow_store.load({"name": "m", "on": "push", "jobs": {"a": {"runs-on": "l", "steps": [{"run": "x"}]}}})

        assert [definition.name for definition in workflow_store.list_definitions()] == ["m"]

    def test_default_timeout_applies(self) -> None:
        store = WorkflowStore(default_timeout=120.0)

        assert store.load(CHAIN_WORKFLOW).jobs["a"].timeout == 120.0

    def test_get_unknown(self, workflow_store: WorkflowStore) -> None:
        with pytest.raises(WorkflowNotFoundError):
            workflow_store.get("missing")

    def test_register_replaces_same_name(self, workflow_store: WorkflowStore) -> None:
        first = workflow_store.load(CHAIN_WORKFLOW)
        second = workflow_store.load(CHAIN_WORKFLOW.replace("echo b", "echo c"))

        assert first is not second
        assert workflow_store.get("chain") is second
        assert len(workflow_store) == 1

    def test_bad_cron_is_rejected(self, workflow_store: WorkflowStore) -> None:
        with pytest.raises(DefinitionError, match="Invalid cron expression '61 \\* \\* \\* \\*'"):
            workflow_store.load(
                {
                    "name": "s",
                    "on": {"schedule": [{"cron": "61 * * * *"}]},
                    "jobs": {"a": {"runs-on": "l", "steps": [{"run": "x"}]}},
                }
            )

        assert "s" not in workflow_store

    def test_name_taken_by_another_file(self, workflow_store: WorkflowStore) -> None:
        workflow_store.register(parse_workflow_yaml(CHAIN_WORKFLOW, source="/a/chain.yml"))

        with pytest.raises(DefinitionError, match="already defined in '/a/chain.yml'"):
            workflow_store.register(parse_workflow_yaml(CHAIN_WORKFLOW, source="/b/chain.yml"))

    def test_unregister(self, workflow_store: WorkflowStore) -> None:
        workflow_store.load(CHAIN_WORKFLOW)

        workflow_store.unregister("chain")
        workflow_store.unregister("chain")

        assert "chain" not in workflow_store


@pytest.mark.unit
class TestFiles:
    """Tests for loading and reloading files."""

    def test_load_directory_skips_invalid_files(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        (tmp_path / "ci.yml").write_text(CI_WORKFLOW)
        (tmp_path / "chain.yaml").write_text(CHAIN_WORKFLOW)
        (tmp_path / "broken.yml").write_text(BROKEN)
        (tmp_path / "notes.txt").write_text("not a workflow")

        loaded = workflow_store.load_directory(tmp_path)

        assert sorted(definition.name for definition in loaded) == ["chain", "ci"]
        broken = str((tmp_path / "broken.yml").resolve())
        assert workflow_store.errors[broken] == ["Job 'a' needs unknown job 'ghost'"]
        assert "broken" not in workflow_store

    def test_load_directory_skips_undecodable_files(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        (tmp_path / "chain.yml").write_text(CHAIN_WORKFLOW)
        (tmp_path / "latin1.yml").write_bytes(b"\xff\xfename: caf\xe9\n")

        loaded = workflow_store.load_directory(tmp_path)

        assert [definition.name for definition in loaded] == ["chain"]
        (message,) = workflow_store.errors[str((tmp_path / "latin1.yml").resolve())]
        assert message.startswith("could not read")

    def test_reload_survives_undecodable_file(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        (tmp_path / "chain.yml").write_text(CHAIN_WORKFLOW)
        workflow_store.load_directory(tmp_path)

        (tmp_path / "latin1.yml").write_bytes(b"\xff\xfename: caf\xe9\n")
        report = workflow_store.reload_changed()

        assert list(report.failed) == [str((tmp_path / "latin1.yml").resolve())]
        assert "chain" in workflow_store
        assert not workflow_store.reload_changed().failed

    def test_load_file_raises_for_missing(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        with pytest.raises(DefinitionError):
            workflow_store.load_file(tmp_path / "missing.yml")

    def test_load_file_records_source(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        path = tmp_path / "release.yml"
        path.write_text(CHAIN_WORKFLOW.replace("name: chain\n", ""))

        definition = workflow_store.load_file(path)

        assert definition.name == "release"
        assert definition.source == str(path.resolve())

    def test_load_file_raises_for_invalid(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        path = tmp_path / "broken.yml"
        path.write_text(BROKEN)

        with pytest.raises(DefinitionError):
            workflow_store.load_file(path)

    def test_reload_picks_up_changes(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        path = tmp_path / "chain.yml"
        path.write_text(CHAIN_WORKFLOW)
        workflow_store.load_directory(tmp_path)
        before = workflow_store.get("chain")

        assert not workflow_store.reload_changed().changed

        touch_later(path, CHAIN_WORKFLOW.replace("echo b", "echo changed"))
        report = workflow_store.reload_changed()

        assert report.loaded == ["chain"]
        after = workflow_store.get("chain")
        assert after is not before
        assert after.jobs["b"].steps[0].run == "echo changed"

    def test_reload_keeps_previous_on_error(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        path = tmp_path / "chain.yml"
        path.write_text(CHAIN_WORKFLOW)
        workflow_store.load_directory(tmp_path)
        before = workflow_store.get("chain")

        touch_later(path, CHAIN_WORKFLOW.replace("needs: a", "needs: nope"))
        report = workflow_store.reload_changed()

        assert str(path.resolve()) in report.failed
        assert workflow_store.get("chain") is before

    def test_reload_removes_deleted_and_adds_new(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        (tmp_path / "chain.yml").write_text(CHAIN_WORKFLOW)
        workflow_store.load_directory(tmp_path)

        (tmp_path / "chain.yml").unlink()
        (tmp_path / "ci.yml").write_text(CI_WORKFLOW)
        report = workflow_store.reload_changed()

        assert report.removed == ["chain"]
        assert report.loaded == ["ci"]
        assert [definition.name for definition in workflow_store.list_definitions()] == ["ci"]

    def test_rename_inside_file_drops_old_name(self, workflow_store: WorkflowStore, tmp_path: Path) -> None:
        path = tmp_path / "chain.yml"
        path.write_text(CHAIN_WORKFLOW)
        workflow_store.load_file(path)

        touch_later(path, CHAIN_WORKFLOW.replace("name: chain", "name: renamed"))
        workflow_store.reload_changed()

        assert "chain" not in workflow_store
        assert "renamed" in workflow_store
