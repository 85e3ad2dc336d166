"""REST API for litestar-ci.

This module provides the controllers :class:`~litestar_ci.plugin.CIPlugin` mounts
under its API prefix, the DTOs they exchange and graph visualization helpers.

Example:
    Basic usage through the plugin::

        from litestar import Litestar
        from litestar_ci import CIPlugin, CIPluginConfig

        app = Litestar(
            plugins=[
                CIPlugin(
                    config=CIPluginConfig(
                        workflow_paths=[".github/workflows"],
                        api_path_prefix="/ci",
                    )
                ),
            ],
        )

    With authentication guards::

        config = CIPluginConfig(api_guards=[require_auth_guard])
"""

from __future__ import annotations

from litestar_ci.web.controllers import EventController, RunController, RunnerController, WorkflowController
from litestar_ci.web.dto import (
    ApprovalDTO,
    DispatchWorkflowDTO,
    EventDTO,
    GraphDTO,
    JobExecutionDTO,
    JobResultDTO,
    RegisterRunnerDTO,
    RunDetailDTO,
    RunDTO,
    RunnerDTO,
    StepResultDTO,
    WorkflowDTO,
)
from litestar_ci.web.graph import job_statuses, parse_graph_to_dict

__all__ = [
    "ApprovalDTO",
    "DispatchWorkflowDTO",
    "EventController",
    "EventDTO",
    "GraphDTO",
    "JobExecutionDTO",
    "JobResultDTO",
    "RegisterRunnerDTO",
    "RunController",
    "RunDTO",
    "RunDetailDTO",
    "RunnerController",
    "RunnerDTO",
    "StepResultDTO",
    "WorkflowController",
    "WorkflowDTO",
    "job_statuses",
    "parse_graph_to_dict",
]
