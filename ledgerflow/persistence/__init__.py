"""Persistence layer for workflow runs and agent executions."""

from __future__ import annotations

from typing import Optional

from ..config import LedgerflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import WorkflowRepository
from .sql import SQLWorkflowRepository

_repository_instance: WorkflowRepository | None = None

_SUPPORTED_PREFIXES = ("sqlite", "postgres://", "postgresql")


def get_repository(
    database_url: Optional[str] = None, config: Optional[LedgerflowConfig] = None
) -> WorkflowRepository:
    """Factory function to obtain a repository.

    The backend is selected from ``database_url``, which can be provided
    explicitly or come from the loaded configuration (where the
    ``LEDGERFLOW_DATABASE_URL``/``DATABASE_URL`` environment variables
    already apply). ``sqlite://`` and ``postgres(ql)://`` URLs are mapped to
    their async drivers. When no database is configured, an in-memory
    repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
    elif database_url.startswith(_SUPPORTED_PREFIXES):
        _repository_instance = SQLWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "WorkflowRepository",
    "InMemoryWorkflowRepository",
    "SQLWorkflowRepository",
    "get_repository",
]
