"""Tests for configuration loading."""

from flowcore.config import load_config
from flowcore.queue import get_queue
from flowcore.queue.redis import RedisJobQueue


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "flowcore.yaml"
    config_path.write_text(
        """
queue:
  backend: redis
  max_depth: 50
  redis:
    host: testhost
    port: 1234
retry:
  max_attempts: 5
ingress:
  webhook_secrets:
    github: s3cret
  schedules:
    - name: nightly
      type: content-publish
      interval: 3600
"""
    )
    monkeypatch.setenv("FLOWCORE_CONFIG", str(config_path))

    config = load_config()
    assert config.queue.backend == "redis"
    assert config.queue.max_depth == 50
    assert config.queue.redis.host == "testhost"
    assert config.queue.redis.port == 1234
    assert config.retry.max_attempts == 5
    assert config.ingress.webhook_secrets == {"github": "s3cret"}
    assert config.ingress.schedules[0].interval == 3600


def test_defaults_without_file():
    config = load_config("missing.yaml")
    assert config.queue.backend == "inmemory"
    assert config.retry.base_delay == 1.0
    assert config.retry.rate_limit_base_delay == 60.0
    assert config.retry.max_delay == 300.0
    assert config.monitoring.long_execution_threshold == 300.0
    assert config.database_url is None


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("FLOWCORE_DATABASE_URL", f"sqlite://{tmp_path / 'wf.db'}")
    monkeypatch.setenv("FLOWCORE_QUEUE", "REDIS")
    monkeypatch.setenv("FLOWCORE_LOG_LEVEL", "debug")

    config = load_config()
    assert config.database_url.startswith("sqlite://")
    assert config.queue.backend == "redis"
    assert config.log_level == "DEBUG"


def test_get_queue_uses_config(tmp_path, repo):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
queue:
  backend: redis
  redis:
    host: confighost
    port: 6380
    key_prefix: jobs
"""
    )
    config = load_config(str(config_path))

    queue = get_queue(config=config, repository=repo)
    assert isinstance(queue, RedisJobQueue)
    assert queue.host == "confighost"
    assert queue.port == 6380
    assert queue.durable_index
