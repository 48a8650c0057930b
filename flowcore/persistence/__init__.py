"""Durable store for workflow instances, transition history and job records.

Backends are picked by URL scheme:

* no URL or ``memory://``: :class:`InMemoryWorkflowRepository`, lost on exit
* ``sqlite://<path>``: :class:`SQLiteWorkflowRepository`, one host
* ``postgres://`` / ``postgresql://``: :class:`PostgresWorkflowRepository`,
  shared by several orchestrator processes
"""

from __future__ import annotations

import os
from typing import Callable, Dict, Optional

from ..config import FlowcoreConfig, load_config
from ..errors import ConfigError
from .inmemory import InMemoryWorkflowRepository
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None

_BACKENDS: Dict[str, Callable[[str], WorkflowRepository]] = {
    "memory": lambda url: InMemoryWorkflowRepository(),
    "sqlite": lambda url: SQLiteWorkflowRepository(url.split("://", 1)[1]),
    "postgres": PostgresWorkflowRepository,
    "postgresql": PostgresWorkflowRepository,
}


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowcoreConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow repository.

    The URL comes from ``database_url``, then ``FLOWCORE_DATABASE_URL`` or
    ``DATABASE_URL``, then ``config.database_url``. Without arguments a
    repository built earlier is reused, so the engine, queue and CLI share
    one store.

    Raises:
        ConfigError: the URL scheme names no known backend.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    url = (
        database_url
        or os.getenv("FLOWCORE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
        or "memory://"
    )
    scheme = url.split("://", 1)[0].lower() if "://" in url else ""
    factory = _BACKENDS.get(scheme)
    if factory is None:
        raise ConfigError(f"Unsupported database backend: {url}")

    _repository_instance = factory(url)
    return _repository_instance


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
