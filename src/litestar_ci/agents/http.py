"""Runner clients for agents reached over HTTP.

:class:`HttpRunnerClient` pushes dispatch requests and cancel signals to an agent
that registered a callback URL. :class:`MailboxRunnerClient` keeps them for an
agent that polls the API instead.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

import httpx
from litestar.serialization import encode_json

if TYPE_CHECKING:
    from uuid import UUID

    from litestar_ci.core.models import DispatchRequest

__all__ = ["HttpRunnerClient", "MailboxRunnerClient"]

logger = logging.getLogger(__name__)


class HttpRunnerClient:
    """Sends jobs to a remote agent.

    The agent exposes ``POST {base_url}/jobs`` taking a serialized
    :class:`~litestar_ci.core.models.DispatchRequest` and
    ``POST {base_url}/jobs/{execution_id}/cancel``. Any transport error or non
    2xx answer raises, which the coordinator treats as losing the runner.

    Example:
        >>> client = HttpRunnerClient("http://agent-1.internal:8080")
        >>> await coordinator.register_runner("agent-1", {"linux"}, client)
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Root URL of the agent.
            client: Shared ``httpx.AsyncClient``; a private one is created when omitted.
            timeout: Request timeout in seconds for the private client.
            headers: Extra headers sent with every request, e.g. authentication.
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._headers = {"Content-Type": "application/json", **(headers or {})}

    async def dispatch(self, request: DispatchRequest) -> None:
        response = await self._client.post(
            f"{self.base_url}/jobs", content=encode_json(request), headers=self._headers
        )
        response.raise_for_status()
        logger.debug("Agent at %s accepted %s", self.base_url, request.node_id)

    async def cancel(self, execution_id: UUID, reason: str) -> None:
        response = await self._client.post(
            f"{self.base_url}/jobs/{execution_id}/cancel",
            content=encode_json({"reason": reason}),
            headers=self._headers,
        )
        response.raise_for_status()

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()


class MailboxRunnerClient:
    """Holds dispatch requests and cancel signals until the agent polls for them.

    Messages are plain dictionaries of the form ``{"type": "dispatch", "request": {...}}``
    or ``{"type": "cancel", "execution_id": ..., "reason": ...}``.
    """

    def __init__(self) -> None:
        self._messages: deque[dict[str, Any]] = deque()

    def __len__(self) -> int:
        return len(self._messages)

    async def dispatch(self, request: DispatchRequest) -> None:
        self._messages.append({"type": "dispatch", "request": asdict(request)})

    async def cancel(self, execution_id: UUID, reason: str) -> None:
        self._messages.append({"type": "cancel", "execution_id": execution_id, "reason": str(reason)})

    def drain(self) -> list[dict[str, Any]]:
        """Return and forget every pending message, oldest first."""
        messages = list(self._messages)
        self._messages.clear()
        return messages
