"""Repository abstraction for durable workflow, transition and job records."""

from __future__ import annotations

from typing import Any, Collection, Optional, Protocol

from ..contracts import (
    Job,
    JobStatus,
    StateTransition,
    TriggerEvent,
    WorkflowInstance,
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    All mutations of shared records are conditional writes: callers state
    the version or status they observed and the write only lands if the
    record still matches.
    """

    async def record_trigger(self, event: TriggerEvent) -> bool:
        """Persist a trigger event. Returns ``False`` if its id was already seen."""

    async def get_trigger(self, event_id: str) -> TriggerEvent | None:
        """Retrieve a recorded trigger event."""

    async def create_workflow(self, instance: WorkflowInstance) -> bool:
        """Insert a new instance.

        Returns ``False`` without writing when another instance was already
        created from the same ``trigger_event_id``.
        """

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        """Retrieve the workflow instance by id."""

    async def find_workflow_by_trigger(self, event_id: str) -> WorkflowInstance | None:
        """Return the instance created from ``event_id`` if any."""

    async def list_workflows(self, state: Optional[str] = None) -> list[WorkflowInstance]:
        """Return persisted workflows, optionally filtered by current state."""

    async def apply_transition(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        transition: StateTransition,
    ) -> bool:
        """Atomically replace the instance and append ``transition``.

        The write succeeds only if the stored version equals
        ``expected_version``; ``instance.version`` must be the new version.
        """

    async def list_transitions(self, workflow_id: str) -> list[StateTransition]:
        """Return the transition history ordered by sequence."""

    async def save_job(self, job: Job) -> None:
        """Insert or overwrite a job record."""

    async def get_job(self, job_id: str) -> Job | None:
        """Retrieve a job by id."""

    async def compare_and_set_job(
        self, job_id: str, expected: Collection[JobStatus], **changes: Any
    ) -> Job | None:
        """Apply ``changes`` if the job's status is in ``expected``.

        Returns the updated job, or ``None`` when the job is missing or its
        status no longer matches.
        """

    async def list_jobs(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Collection[JobStatus]] = None,
    ) -> list[Job]:
        """Return jobs filtered by workflow and/or status, oldest first."""

    async def close(self) -> None:
        """Release backend resources."""
