"""Core record contracts for the flowcore orchestration system."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, model_validator


COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
TERMINAL_STATES = frozenset({COMPLETED, FAILED, CANCELLED})

# Outcomes produced by job results and the control API.
SUCCEEDED = "succeeded"
CANCEL = "cancel"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TransitionOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class JobStatus(str, Enum):
    QUEUED = "queued"
    ASSIGNED = "assigned"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEADLETTERED = "deadlettered"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.DEADLETTERED})


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class TriggerEvent(BaseModel):
    """Canonical record of an inbound trigger. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    source: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)


class WorkflowInstance(BaseModel):
    """One running execution of a workflow type."""

    id: str = Field(default_factory=new_id)
    workflow_type: str
    current_state: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    context: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    version: int = 1
    trigger_event_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.current_state in TERMINAL_STATES


class StateTransition(BaseModel):
    """Append-only audit record of one applied transition."""

    workflow_id: str
    sequence: int
    from_state: str
    to_state: str
    signal: str
    outcome: TransitionOutcome
    triggered_by: str
    timestamp: datetime = Field(default_factory=utcnow)
    reason: Optional[str] = None


class Job(BaseModel):
    """A unit of queued work, optionally tied to a workflow step."""

    id: str = Field(default_factory=new_id)
    workflow_id: Optional[str] = None
    kind: str
    step: Optional[str] = None
    step_version: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    enqueued_at: datetime = Field(default_factory=utcnow)
    attempt: int = 0
    status: JobStatus = JobStatus.QUEUED
    idempotency_key: str = ""
    worker_id: Optional[str] = None
    not_before: Optional[datetime] = None
    last_error: Optional[str] = None
    output: Any = None
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _default_idempotency_key(self) -> "Job":
        if not self.idempotency_key:
            owner = self.workflow_id or self.id
            self.idempotency_key = f"{owner}:{self.step or '-'}:{self.kind}"
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Job":
        return cls.model_validate_json(data)


class Worker(BaseModel):
    """A logical execution slot tracked by the dispatcher."""

    id: str = Field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    status: WorkerStatus = WorkerStatus.IDLE
    current_job_id: Optional[str] = None
    capabilities: Set[str] = Field(default_factory=set)
    last_heartbeat: datetime = Field(default_factory=utcnow)
    last_assigned_at: Optional[datetime] = None
    missed_heartbeats: int = 0
    offline_since: Optional[datetime] = None

    def can_run(self, kind: str) -> bool:
        return not self.capabilities or kind in self.capabilities


class JobResult(BaseModel):
    """Outcome reported by a worker after executing a job."""

    job_id: str
    worker_id: Optional[str] = None
    success: bool
    reason: Optional[str] = None
    # None: the failure carried no classification of its own.
    transient: Optional[bool] = None
    output: Any = None
    elapsed: float = 0.0


class WorkflowStatus(BaseModel):
    """Durable view of a workflow returned to status queries."""

    workflow: WorkflowInstance
    transitions: List[StateTransition] = Field(default_factory=list)
    jobs: List[Job] = Field(default_factory=list)
