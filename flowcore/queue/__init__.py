"""Job queue factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowcoreConfig, load_config
from ..monitoring import EventSink
from ..persistence import WorkflowRepository, get_repository
from .base import BaseJobQueue
from .inmemory import InMemoryJobQueue


def get_queue(
    backend: Optional[str] = None,
    config: Optional[FlowcoreConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    sink: Optional[EventSink] = None,
) -> BaseJobQueue:
    """Factory function to get the configured job queue."""

    config = config or load_config()
    repository = repository or get_repository()
    backend = (backend or os.getenv("FLOWCORE_QUEUE") or config.queue.backend).lower()

    if backend == "inmemory":
        return InMemoryJobQueue(repository, max_depth=config.queue.max_depth, sink=sink)
    elif backend == "redis":
        from .redis import RedisJobQueue

        redis_conf = config.queue.redis
        return RedisJobQueue(
            repository,
            max_depth=config.queue.max_depth,
            sink=sink,
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=redis_conf.key_prefix,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = ["BaseJobQueue", "InMemoryJobQueue", "get_queue"]
