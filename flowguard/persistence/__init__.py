"""Persistence layer for flowguard workflows and executions."""

from __future__ import annotations

from typing import Optional

from ..config import FlowguardConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .postgres import PostgresExecutionRepository
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository

_repository_instance: ExecutionRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowguardConfig] = None
) -> ExecutionRepository:
    """Factory function to obtain an execution repository.

    The backend is selected from ``database_url``, which can be provided
    explicitly or through the loaded configuration (``load_config`` already
    applies ``FLOWGUARD_DATABASE_URL`` and ``DATABASE_URL``). When no database
    is configured an in-memory repository is returned. The repository is
    cached for the process.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = database_url or config.database_url

    if not database_url:
        _repository_instance = InMemoryExecutionRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteExecutionRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _repository_instance = PostgresExecutionRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "PostgresExecutionRepository",
    "SQLiteExecutionRepository",
    "get_repository",
]
