"""Minimal example of litestar-ci integration.

This example loads the workflows in ``workflows/`` and runs their jobs on a
single local runner that executes steps as shell commands.

Run with:
    cd examples/minimal
    litestar run

Or:
    uvicorn app:app --reload

Then trigger a run:
    curl -X POST localhost:8000/ci/events -H 'Content-Type: application/json' \\
        -d '{"kind": "push", "ref": "refs/heads/main", "actor": "octocat"}'
"""

from __future__ import annotations

import logging
from pathlib import Path

from litestar import Litestar, get

from litestar_ci import CIPlugin, CIPluginConfig
from litestar_ci.agents import SubprocessRunner

WORKFLOWS = Path(__file__).parent / "workflows"

# =============================================================================
# Application
# =============================================================================

ci_plugin = CIPlugin(config=CIPluginConfig(workflow_paths=[WORKFLOWS]))


async def start_runner(app: Litestar) -> None:
    """Register a runner that executes jobs on this machine."""
    app.state.runner = SubprocessRunner(ci_plugin.coordinator, "local")
    await app.state.runner.register()


async def stop_runner(app: Litestar) -> None:
    await app.state.runner.close()


# =============================================================================
# Health Check (for testing)
# =============================================================================


@get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


app = Litestar(
    route_handlers=[health_check],
    plugins=[ci_plugin],
    on_startup=[start_runner],
    on_shutdown=[stop_runner],
    debug=True,
)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
