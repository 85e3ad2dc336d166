"""Database persistence layer for litestar-ci.

This module provides SQLAlchemy models, repositories and the run store the
coordinator saves run state through.

Requires the [db] extra:
    pip install litestar-ci[db]
"""

from __future__ import annotations

from litestar_ci.db.models import JobExecutionModel, RunModel
from litestar_ci.db.repositories import JobExecutionRepository, RunRepository
from litestar_ci.db.store import SQLAlchemyRunStore

__all__ = [
    "JobExecutionModel",
    "JobExecutionRepository",
    "RunModel",
    "RunRepository",
    "SQLAlchemyRunStore",
]
