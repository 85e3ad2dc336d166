"""Full example demonstrating litestar-ci with a GitHub webhook, local runners and persistence.

This example shows:
- A pipeline with matrix jobs, a concurrency group and a release gated by approval
- A nightly workflow started by the cron scheduler
- Translating GitHub webhook deliveries into events
- Actions served in-process through an action registry
- Secrets read from ``CI_SECRET_*`` environment variables
- SQLite persistence of every run through advanced-alchemy

Run with:
    cd examples/full
    uv run litestar run --port 8001

Or:
    uv run uvicorn app:app --reload --port 8001

API Endpoints (auto-enabled):
    Workflows:
        GET  /ci/workflows                              - List workflows
        GET  /ci/workflows/{name}                       - Get workflow details
        GET  /ci/workflows/{name}/graph                 - Get MermaidJS graph
        POST /ci/workflows/{name}/dispatch              - Start a manual run

    Runs:
        GET  /ci/runs                                   - List runs
        GET  /ci/runs/{id}                              - Get run details
        GET  /ci/runs/{id}/graph                        - Get run graph with state
        POST /ci/runs/{id}/cancel                       - Cancel a run
        POST /ci/runs/{id}/approvals/{environment}      - Approve or reject a gate

    Example:
        POST /hooks/github                              - GitHub webhook receiver
        GET  /history/{workflow}                        - Persisted runs of a workflow

Example API Usage:
    # Simulate a push to main
    curl -X POST http://localhost:8001/hooks/github \\
        -H "Content-Type: application/json" \\
        -H "X-GitHub-Event: push" \\
        -d '{"ref": "refs/heads/main", "after": "4f2a9c1", "pusher": {"name": "octocat"},
             "repository": {"full_name": "acme/ml-service"}}'

    # Approve the release of a published release run
    curl -X POST http://localhost:8001/ci/runs/{run_id}/approvals/pypi \\
        -H "Content-Type: application/json" \\
        -d '{"approved": true, "actor": "maintainer"}'
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

from litestar import Litestar, get, post
from litestar.di import Provide
from litestar.openapi import OpenAPIConfig
from litestar.params import Parameter
from litestar.plugins.sqlalchemy import SQLAlchemyAsyncConfig, SQLAlchemyPlugin
from litestar.status_codes import HTTP_202_ACCEPTED
from sqlalchemy.ext.asyncio import AsyncSession

from litestar_ci import CIPlugin, CIPluginConfig, EngineConfig, Event, EventKind, ExecutionCoordinator
from litestar_ci.agents import ActionRegistry, SubprocessRunner
from litestar_ci.core.events import CIEvent, RunCompleted
from litestar_ci.db.models import RunModel
from litestar_ci.db.repositories import RunRepository
from litestar_ci.db.store import SQLAlchemyRunStore
from litestar_ci.engine.secrets import EnvironmentSecretProvider

if TYPE_CHECKING:
    from litestar_ci.core.models import DispatchRequest, DispatchStep, Run

logger = logging.getLogger("examples.full")

WORKFLOWS = Path(__file__).parent / "workflows"
RUNNER_LABELS = ("self-hosted", "linux", "docker")
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./ci.db"

# =============================================================================
# Actions
# =============================================================================

actions = ActionRegistry()


@actions.register("actions/checkout")
async def checkout(step: DispatchStep, request: DispatchRequest) -> dict[str, str]:
    """Pretend to check out the commit the run was started for."""
    github = request.context["github"]
    return {"ref": github["ref"], "commit": github["sha"]}


@actions.register("actions/setup-python")
async def setup_python(step: DispatchStep, request: DispatchRequest) -> dict[str, str]:
    """Report the requested interpreter as installed."""
    return {"python-version": step.inputs.get("python-version", "3.12")}


# =============================================================================
# GitHub Webhooks
# =============================================================================


def github_event(name: str, payload: dict[str, Any]) -> Event | None:
    """Translate a GitHub webhook delivery into an event, None for deliveries CI ignores."""
    repository = payload.get("repository", {}).get("full_name", "")
    sender = payload.get("sender", {}).get("login", "")

    if name == "push":
        paths = {
            path
            for commit in payload.get("commits", [])
            for key in ("added", "modified", "removed")
            for path in commit.get(key, [])
        }
        return Event(
            kind=EventKind.PUSH,
            ref=payload.get("ref", ""),
            actor=payload.get("pusher", {}).get("name", sender),
            paths=tuple(sorted(paths)),
            repository=repository,
            sha=payload.get("after", ""),
            payload=payload,
        )
    if name == "pull_request":
        pull_request = payload.get("pull_request", {})
        return Event(
            kind=EventKind.PULL_REQUEST,
            ref=f"refs/pull/{payload.get('number')}/merge",
            actor=sender,
            action=payload.get("action"),
            repository=repository,
            sha=pull_request.get("head", {}).get("sha", ""),
            base_ref=pull_request.get("base", {}).get("ref"),
            payload=payload,
        )
    if name == "release":
        release = payload.get("release", {})
        return Event(
            kind=EventKind.RELEASE,
            ref=f"refs/tags/{release.get('tag_name', '')}",
            actor=sender,
            action=payload.get("action"),
            repository=repository,
            sha=release.get("target_commitish", ""),
            payload=payload,
        )
    return None


@post("/hooks/github", status_code=HTTP_202_ACCEPTED)
async def github_webhook(
    data: dict[str, Any],
    event_name: Annotated[str, Parameter(header="X-GitHub-Event")],
    ci_coordinator: ExecutionCoordinator,
) -> list[dict[str, Any]]:
    """Start the runs a GitHub delivery triggers."""
    event = github_event(event_name, data)
    if event is None:
        logger.info("Ignoring GitHub '%s' delivery", event_name)
        return []
    runs: list[Run] = await ci_coordinator.handle_event(event)
    return [{"id": str(run.id), "workflow": run.definition.name, "number": run.number} for run in runs]


# =============================================================================
# History
# =============================================================================


async def provide_run_repo(db_session: AsyncSession) -> RunRepository:
    """Provide RunRepository with database session."""
    return RunRepository(session=db_session)


@get("/history/{workflow:str}", dependencies={"run_repo": Provide(provide_run_repo)})
async def run_history(workflow: str, run_repo: RunRepository) -> dict[str, Any]:
    """List the persisted runs of a workflow, newest first."""
    runs, total = await run_repo.find_by_workflow(workflow)
    return {
        "total": total,
        "runs": [
            {
                "id": str(run.id),
                "number": run.number,
                "status": str(run.status),
                "reason": str(run.reason) if run.reason else None,
                "ref": run.ref,
            }
            for run in runs
        ],
    }


# =============================================================================
# Application Setup
# =============================================================================


def log_completion(event: CIEvent) -> None:
    """Observer logging every finished run."""
    if isinstance(event, RunCompleted):
        logger.info("Run %s finished: %s", event.run_id, event.status)


@get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "litestar-ci-example"}


@get("/")
async def index() -> dict[str, Any]:
    """API documentation index."""
    return {
        "name": "Litestar CI Example",
        "description": "Full example with webhooks, local runners and persistence",
        "endpoints": {
            "openapi": "/schema",
            "health": "/health",
            "webhook": "/hooks/github",
            "history": "/history/{workflow}",
            "ci": {
                "workflows": "/ci/workflows",
                "runs": "/ci/runs",
                "runners": "/ci/runners",
            },
        },
    }


def create_app(database_url: str | None = None, runners: int = 2) -> Litestar:
    """Create the example application.

    Args:
        database_url: Database to persist runs in, defaults to ``CI_DATABASE_URL`` or a local SQLite file.
        runners: Number of local runners to register on startup.
    """
    # SQLite for simplicity, use PostgreSQL or another production database otherwise
    sqlalchemy_config = SQLAlchemyAsyncConfig(
        connection_string=database_url or os.environ.get("CI_DATABASE_URL", DEFAULT_DATABASE_URL),
        metadata=RunModel.metadata,
        create_all=True,
    )
    ci_plugin = CIPlugin(
        config=CIPluginConfig(
            workflow_paths=[WORKFLOWS],
            engine_config=EngineConfig(cancel_grace_period=10.0, queue_timeout=3600.0),
            secrets=EnvironmentSecretProvider(),
            persistence=SQLAlchemyRunStore(sqlalchemy_config.create_session_maker()),
            observers=[log_completion],
        )
    )

    local_runners: list[SubprocessRunner] = []

    async def start_runners(app: Litestar) -> None:
        for number in range(runners):
            runner = SubprocessRunner(ci_plugin.coordinator, f"local-{number}", labels=RUNNER_LABELS, actions=actions)
            await runner.register()
            local_runners.append(runner)

    async def stop_runners(app: Litestar) -> None:
        for runner in local_runners:
            await runner.close()
        local_runners.clear()

    return Litestar(
        route_handlers=[health_check, index, github_webhook, run_history],
        plugins=[SQLAlchemyPlugin(config=sqlalchemy_config), ci_plugin],
        on_startup=[start_runners],
        on_shutdown=[stop_runners],
        openapi_config=OpenAPIConfig(
            title="Litestar CI - Full Example",
            version="1.0.0",
            description="Full example demonstrating litestar-ci with webhooks, local runners and persistence.",
        ),
        debug=True,
    )


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    print("\n" + "=" * 80)
    print("Litestar CI - Full Example")
    print("=" * 80)
    print("\nStarting server on http://localhost:8001")
    print("\nKey endpoints:")
    print("  - http://localhost:8001/          - API index")
    print("  - http://localhost:8001/schema    - OpenAPI documentation")
    print("  - http://localhost:8001/health    - Health check")
    print("\nCI API:")
    print("  - POST /hooks/github              - GitHub webhook receiver")
    print("  - GET  /ci/runs                   - List runs")
    print("  - GET  /ci/runners                - List runners")
    print("=" * 80 + "\n")

    uvicorn.run(app, host="0.0.0.0", port=8001)
