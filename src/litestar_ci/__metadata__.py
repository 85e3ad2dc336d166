"""Distribution metadata of litestar-ci, read from the installed package."""

from __future__ import annotations

from importlib.metadata import metadata, version

__all__ = ("__project__", "__version__")

_DISTRIBUTION = "litestar-ci"

__version__ = version(_DISTRIBUTION)
"""Installed version."""
__project__ = metadata(_DISTRIBUTION)["Name"]
"""Distribution name."""
