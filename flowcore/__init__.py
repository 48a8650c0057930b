"""flowcore: workflow orchestration and queue processing core."""

__version__ = "0.1.0"

from .collaborators import (
    CallableCollaborator,
    HttpCollaborator,
    collaborator,
    register_collaborator,
)
from .contracts import Job, JobStatus, TriggerEvent, WorkflowInstance
from .dispatch import Dispatcher
from .engine import StateMachineEngine
from .execute import JobWorker, WorkerPool
from .ingress import EventBus, EventIngress
from .monitoring import MetricsAggregator
from .persistence import get_repository
from .queue import get_queue
from .registry import REGISTRY
from .retry import RetryManager
from .runtime import Runtime

__all__ = [
    "CallableCollaborator",
    "Dispatcher",
    "EventBus",
    "EventIngress",
    "HttpCollaborator",
    "Job",
    "JobStatus",
    "JobWorker",
    "MetricsAggregator",
    "REGISTRY",
    "RetryManager",
    "Runtime",
    "StateMachineEngine",
    "TriggerEvent",
    "WorkerPool",
    "WorkflowInstance",
    "collaborator",
    "get_queue",
    "get_repository",
    "register_collaborator",
]
