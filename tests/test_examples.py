"""Integration tests for example applications.

Tests the minimal and full example apps using Litestar's test client. Both
register local runners on startup, so the runs they start execute real shell
steps.
"""

from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING

import pytest
from litestar.testing import AsyncTestClient

from examples.full.app import create_app, github_event
from litestar_ci import EventKind, RunStatus

if TYPE_CHECKING:
    from pathlib import Path

    from litestar import Litestar

pytestmark = pytest.mark.skipif(os.name != "posix", reason="example runners execute POSIX shell steps")

TERMINAL = [str(RunStatus.SUCCEEDED), str(RunStatus.FAILED), str(RunStatus.CANCELLED)]

PUSH_PAYLOAD = {
    "ref": "refs/heads/main",
    "after": "4f2a9c1",
    "pusher": {"name": "octocat"},
    "sender": {"login": "octocat"},
    "repository": {"full_name": "acme/ml-service"},
    "commits": [{"added": ["src/model.py"], "modified": ["README.md"], "removed": []}],
}

RELEASE_PAYLOAD = {
    "action": "published",
    "release": {"tag_name": "v1.0.0", "target_commitish": "9b1e7d0"},
    "sender": {"login": "maintainer"},
    "repository": {"full_name": "acme/ml-service"},
}


async def wait_for_status(
    client: AsyncTestClient,
    run_id: str,
    expected_statuses: list[str],
    timeout: float = 20.0,
    poll_interval: float = 0.1,
) -> dict:
    """Poll run status until it reaches expected state or timeout.

    Args:
        client: Test client to use.
        run_id: Run ID to check.
        expected_statuses: List of acceptable final statuses.
        timeout: Maximum time to wait in seconds.
        poll_interval: Time between polls in seconds.

    Returns:
        Run data dict.
    """
    elapsed = 0.0
    while elapsed < timeout:
        response = await client.get(f"/ci/runs/{run_id}")
        data = response.json()
        if data["status"] in expected_statuses:
            return data
        await asyncio.sleep(poll_interval)
        elapsed += poll_interval
    return data  # Return last data even if not in expected state


def jobs_by_node(run: dict) -> dict[str, dict]:
    return {job["node_id"]: job for job in run["jobs"]}


# =============================================================================
# Minimal App Tests
# =============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
class TestMinimalApp:
    """Integration tests for the minimal example app."""

    @pytest.fixture
    def minimal_app(self) -> Litestar:
        """Import and return the minimal example app."""
        from examples.minimal.app import app

        return app

    async def test_health_check(self, minimal_app: Litestar) -> None:
        async with AsyncTestClient(app=minimal_app) as client:
            response = await client.get("/health")

            assert response.status_code == 200
            assert response.json()["status"] == "healthy"

    async def test_workflows_and_runner(self, minimal_app: Litestar) -> None:
        async with AsyncTestClient(app=minimal_app) as client:
            response = await client.get("/ci/workflows")
            assert [workflow["name"] for workflow in response.json()] == ["ci"]

            response = await client.get("/ci/runners")
            assert [runner["id"] for runner in response.json()] == ["local"]

    async def test_push_runs_pipeline(self, minimal_app: Litestar) -> None:
        async with AsyncTestClient(app=minimal_app) as client:
            response = await client.post(
                "/ci/events", json={"kind": "push", "ref": "refs/heads/main", "actor": "octocat"}
            )
            assert response.status_code == 201
            (run,) = response.json()

            data = await wait_for_status(client, run["id"], TERMINAL)

            assert data["status"] == "succeeded"
            jobs = jobs_by_node(data)
            assert set(jobs) == {"build", "test (3.11)", "test (3.12)", "report"}
            assert jobs["build"]["outputs"]["version"] == f"1.0.{data['number']}"
            assert all(job["status"] == "succeeded" for job in jobs.values())

    async def test_push_to_other_branch_is_ignored(self, minimal_app: Litestar) -> None:
        async with AsyncTestClient(app=minimal_app) as client:
            response = await client.post("/ci/events", json={"kind": "push", "ref": "refs/heads/feature"})

            assert response.json() == []

    async def test_manual_dispatch(self, minimal_app: Litestar) -> None:
        async with AsyncTestClient(app=minimal_app) as client:
            response = await client.post("/ci/workflows/ci/dispatch", json={"inputs": {"greeting": "hi"}})
            assert response.status_code == 201

            data = await wait_for_status(client, response.json()["id"], TERMINAL)

            assert data["status"] == "succeeded"
            assert data["inputs"] == {"greeting": "hi"}
            assert data["event_kind"] == "workflow_dispatch"


# =============================================================================
# Full App Tests
# =============================================================================


@pytest.mark.unit
class TestGitHubEvents:
    """Tests for translating webhook deliveries."""

    def test_push(self) -> None:
        event = github_event("push", PUSH_PAYLOAD)

        assert event is not None
        assert event.kind == EventKind.PUSH
        assert event.branch == "main"
        assert event.actor == "octocat"
        assert event.sha == "4f2a9c1"
        assert event.repository == "acme/ml-service"
        assert event.paths == ("README.md", "src/model.py")

    def test_pull_request(self) -> None:
        event = github_event(
            "pull_request",
            {
                "action": "opened",
                "number": 42,
                "pull_request": {"head": {"sha": "abc"}, "base": {"ref": "develop"}},
                "sender": {"login": "contributor"},
            },
        )

        assert event is not None
        assert event.kind == EventKind.PULL_REQUEST
        assert event.ref == "refs/pull/42/merge"
        assert event.base_ref == "develop"
        assert event.action == "opened"
        assert event.actor == "contributor"

    def test_release(self) -> None:
        event = github_event("release", RELEASE_PAYLOAD)

        assert event is not None
        assert event.kind == EventKind.RELEASE
        assert event.tag == "v1.0.0"
        assert event.action == "published"

    def test_ignored_delivery(self) -> None:
        assert github_event("ping", {"zen": "Keep it logically awesome."}) is None


@pytest.mark.integration
@pytest.mark.asyncio
class TestFullApp:
    """Integration tests for the full example app."""

    @pytest.fixture
    def full_app(self, tmp_path: Path) -> Litestar:
        """Create the full example app over a temporary database."""
        return create_app(database_url=f"sqlite+aiosqlite:///{tmp_path / 'ci.db'}")

    async def test_health_and_index(self, full_app: Litestar) -> None:
        async with AsyncTestClient(app=full_app) as client:
            response = await client.get("/health")
            assert response.json() == {"status": "healthy", "service": "litestar-ci-example"}

            response = await client.get("/")
            assert response.json()["endpoints"]["webhook"] == "/hooks/github"

            response = await client.get("/ci/workflows")
            assert sorted(workflow["name"] for workflow in response.json()) == ["nightly", "pipeline"]

            response = await client.get("/ci/workflows/nightly")
            assert response.json()["schedules"] == ["0 3 * * *"]

    async def test_ignored_webhook(self, full_app: Litestar) -> None:
        async with AsyncTestClient(app=full_app) as client:
            response = await client.post("/hooks/github", json={"zen": "hi"}, headers={"X-GitHub-Event": "ping"})

            assert response.status_code == 202
            assert response.json() == []

    async def test_push_runs_pipeline_and_persists(self, full_app: Litestar) -> None:
        async with AsyncTestClient(app=full_app) as client:
            response = await client.post("/hooks/github", json=PUSH_PAYLOAD, headers={"X-GitHub-Event": "push"})
            assert response.status_code == 202
            (run,) = response.json()
            assert run["workflow"] == "pipeline"

            data = await wait_for_status(client, run["id"], TERMINAL)

            assert data["status"] == "succeeded"
            assert data["concurrency_key"] == "pipeline-refs/heads/main"
            jobs = jobs_by_node(data)
            assert len(jobs) == 8
            assert jobs["tests (3.12, integration)"]["status"] == "succeeded"
            assert jobs["tests (3.12, integration)"]["outputs"]["coverage"] == "87"
            assert jobs["code-analysis (3.11)"]["outputs"]["python-version"] == "3.11"
            assert jobs["docker-build"]["outputs"]["image"] == "registry.example.com/acme/ml-service:4f2a9c1"
            assert jobs["release"]["status"] == "skipped"

            history: dict = {}
            for _ in range(50):
                history = (await client.get("/history/pipeline")).json()
                if history["total"] and history["runs"][0]["status"] == "succeeded":
                    break
                await asyncio.sleep(0.1)
            assert history["total"] == 1
            assert history["runs"][0]["id"] == run["id"]
            assert history["runs"][0]["status"] == "succeeded"

    async def test_release_waits_for_approval(self, full_app: Litestar) -> None:
        async with AsyncTestClient(app=full_app) as client:
            response = await client.post(
                "/hooks/github", json=RELEASE_PAYLOAD, headers={"X-GitHub-Event": "release"}
            )
            (run,) = response.json()

            response = await client.post(
                f"/ci/runs/{run['id']}/approvals/pypi", json={"approved": True, "actor": "maintainer"}
            )
            assert response.status_code == 201

            data = await wait_for_status(client, run["id"], TERMINAL)

            assert data["status"] == "succeeded"
            assert data["approvals"] == {"pypi": "maintainer"}
            release = jobs_by_node(data)["release"]
            assert release["status"] == "succeeded"
            assert release["steps"][-1]["status"] == "succeeded"
