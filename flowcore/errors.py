"""Exception hierarchy for the flowcore orchestration core."""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class FlowcoreError(Exception):
    """Base exception for all flowcore errors."""


class ConfigError(FlowcoreError):
    """Configuration or workflow definition is invalid."""


class UnsupportedWorkflow(FlowcoreError):
    """Trigger refers to a workflow type with no registered transition table."""

    def __init__(self, workflow_type: str) -> None:
        self.workflow_type = workflow_type
        super().__init__(f"Unsupported workflow type: {workflow_type}")


class WorkflowNotFound(FlowcoreError):
    """No workflow instance exists with the given id."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")


class IllegalTransition(FlowcoreError):
    """The outcome has no defined transition from the current state."""

    def __init__(self, workflow_id: str, state: str, outcome: str) -> None:
        self.workflow_id = workflow_id
        self.state = state
        self.outcome = outcome
        super().__init__(
            f"Illegal transition for workflow {workflow_id}: "
            f"no transition for outcome '{outcome}' from state '{state}'"
        )


class ConcurrentModification(FlowcoreError):
    """A conditional write lost against a concurrent writer."""


class QueueSaturated(FlowcoreError):
    """Queue depth reached the configured ceiling; retry later."""

    def __init__(self, depth: int, max_depth: int, retry_after: float = 1.0) -> None:
        self.depth = depth
        self.max_depth = max_depth
        self.retry_after = retry_after
        super().__init__(f"Queue saturated: depth {depth} >= {max_depth}")


class ExecutionFailure(FlowcoreError):
    """A job failed while executing.

    ``transient`` is ``None`` when the raiser did not say; the retry manager
    then classifies the failure by its message.
    """

    transient: Optional[bool] = None


class TransientExecutionFailure(ExecutionFailure):
    """Failure that is expected to succeed on retry (rate limits, timeouts)."""

    transient = True


class FatalExecutionFailure(ExecutionFailure):
    """Failure that retrying cannot fix (malformed payload, auth)."""

    transient = False


class WorkerTimeout(FlowcoreError):
    """A worker missed its heartbeat deadline; recorded when it goes offline."""

    def __init__(
        self,
        worker_id: str,
        job_id: Optional[str] = None,
        last_heartbeat: Optional[datetime] = None,
    ) -> None:
        self.worker_id = worker_id
        self.job_id = job_id
        self.last_heartbeat = last_heartbeat
        super().__init__(
            f"Worker {worker_id} missed its heartbeat deadline "
            f"(job={job_id}, last heartbeat {last_heartbeat})"
        )


class StoreUnavailable(FlowcoreError):
    """The durable store could not be reached; dispatch must halt."""


class InvalidSignature(FlowcoreError):
    """Webhook signature verification failed."""

    def __init__(self, source: str) -> None:
        self.source = source
        super().__init__(f"Invalid webhook signature for source '{source}'")


class InvalidEvent(FlowcoreError):
    """An inbound trigger could not be parsed into an event."""
