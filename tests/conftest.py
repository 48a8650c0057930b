import pytest

import flowcore.persistence as persistence
from flowcore.collaborators import clear_collaborators
from flowcore.config import FlowcoreConfig
from flowcore.persistence import InMemoryWorkflowRepository
from flowcore.queue import InMemoryJobQueue


@pytest.fixture(autouse=True)
def _isolate(monkeypatch, tmp_path):
    """Keep tests away from a developer's config file and shared singletons."""
    monkeypatch.chdir(tmp_path)
    for var in ("FLOWCORE_CONFIG", "FLOWCORE_DATABASE_URL", "DATABASE_URL", "FLOWCORE_QUEUE"):
        monkeypatch.delenv(var, raising=False)
    persistence._repository_instance = None
    clear_collaborators()
    yield
    persistence._repository_instance = None
    clear_collaborators()


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def queue(repo):
    q = InMemoryJobQueue(repo, max_depth=1000)
    q.poll_interval = 0.01
    return q


@pytest.fixture
def config():
    cfg = FlowcoreConfig()
    cfg.dispatcher.poll_interval = 0.01
    cfg.dispatcher.heartbeat_interval = 1.0
    cfg.retry.base_delay = 0.01
    cfg.retry.jitter = 0.0
    cfg.worker.pool_size = 2
    cfg.worker.job_timeout = 2.0
    return cfg
