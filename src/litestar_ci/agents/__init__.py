"""Runner clients.

This module provides the transports the coordinator dispatches through: an
in-process subprocess runner, an HTTP client for remote agents and a mailbox for
agents polling the API.
"""

from __future__ import annotations

from litestar_ci.agents.http import HttpRunnerClient, MailboxRunnerClient
from litestar_ci.agents.local import ActionRegistry, StepStatusView, SubprocessRunner, redact

__all__ = [
    "ActionRegistry",
    "HttpRunnerClient",
    "MailboxRunnerClient",
    "StepStatusView",
    "SubprocessRunner",
    "redact",
]
