"""Secret providers.

Secrets are stored outside of litestar-ci. A provider is asked for the names a
job references (``${{ secrets.NAME }}``) only when its dispatch request is built;
values never reach run state or persistence.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from litestar_ci.core.protocols import SecretProvider

__all__ = ["EnvironmentSecretProvider", "StaticSecretProvider", "resolve_secrets"]

logger = logging.getLogger(__name__)


class StaticSecretProvider:
    """Serves secrets from a fixed mapping. Useful for tests and local setups."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    async def get_secret(self, name: str) -> str | None:
        return self._secrets.get(name)


class EnvironmentSecretProvider:
    """Serves secrets from environment variables.

    Example:
        >>> provider = EnvironmentSecretProvider(prefix="CI_SECRET_")
        >>> await provider.get_secret("DEPLOY_TOKEN")  # reads CI_SECRET_DEPLOY_TOKEN
    """

    def __init__(self, prefix: str = "CI_SECRET_", environ: Mapping[str, str] | None = None) -> None:
        self.prefix = prefix
        self._environ = environ if environ is not None else os.environ

    async def get_secret(self, name: str) -> str | None:
        return self._environ.get(f"{self.prefix}{name}")


async def resolve_secrets(provider: SecretProvider | None, names: Iterable[str]) -> dict[str, str]:
    """Fetch every secret in ``names``; undefined secrets resolve to an empty string."""
    resolved: dict[str, str] = {}
    for name in sorted(set(names)):
        value = await provider.get_secret(name) if provider is not None else None
        if value is None:
            logger.debug("Secret '%s' is not defined", name)
            value = ""
        resolved[name] = value
    return resolved
