from __future__ import annotations

import os
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for the Redis job queue."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "flowcore"


class QueueConfig(BaseModel):
    """Job queue settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    max_depth: int = 10_000
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Backoff and retry ceiling for failed jobs."""

    base_delay: float = 1.0
    rate_limit_base_delay: float = 60.0
    max_delay: float = 300.0
    jitter: float = 0.1
    max_attempts: int = 3
    breaker_threshold: int = 5
    breaker_reset: float = 60.0


class DispatcherConfig(BaseModel):
    """Heartbeat and polling settings for the dispatcher loop."""

    poll_interval: float = 0.5
    heartbeat_interval: float = 5.0
    degraded_after_missed: int = 2
    heartbeat_timeout: float = 30.0
    remove_after: float = 300.0


class WorkerConfig(BaseModel):
    """Worker pool sizing."""

    pool_size: int = 4
    job_timeout: float = 120.0


class MonitoringConfig(BaseModel):
    """Rolling metrics and alert thresholds."""

    window_seconds: float = 300.0
    buffer_size: int = 10_000
    long_execution_threshold: float = 300.0
    max_events: int = 1_000
    max_alerts: int = 1_000


class ScheduleConfig(BaseModel):
    """A timer trigger that fires an event every ``interval`` seconds."""

    name: str
    type: str
    interval: float
    payload: Dict[str, Any] = Field(default_factory=dict)


class IngressConfig(BaseModel):
    """Trigger normalization settings."""

    webhook_secrets: Dict[str, str] = Field(default_factory=dict)
    standalone_kinds: Dict[str, str] = Field(default_factory=dict)
    standalone_priority: int = 0
    schedules: List[ScheduleConfig] = Field(default_factory=list)


class ApiConfig(BaseModel):
    """HTTP surface settings."""

    host: str = "127.0.0.1"
    port: int = 8080


class FlowcoreConfig(BaseModel):
    """Top-level configuration model."""

    queue: QueueConfig = QueueConfig()
    retry: RetryConfig = RetryConfig()
    dispatcher: DispatcherConfig = DispatcherConfig()
    worker: WorkerConfig = WorkerConfig()
    monitoring: MonitoringConfig = MonitoringConfig()
    ingress: IngressConfig = IngressConfig()
    api: ApiConfig = ApiConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"
    workflows: List[Dict[str, Any]] = Field(default_factory=list)


def load_config(path: Optional[str] = None) -> FlowcoreConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWCORE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWCORE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowcoreConfig(**data)
    else:
        config = FlowcoreConfig()

    env_db_url = os.getenv("FLOWCORE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_queue = os.getenv("FLOWCORE_QUEUE")
    if env_queue:
        config.queue.backend = env_queue.lower()
    env_log_level = os.getenv("FLOWCORE_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
