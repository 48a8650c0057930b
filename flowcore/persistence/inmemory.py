"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import threading
from typing import Any, Collection, Dict, List, Optional

from ..contracts import (
    Job,
    JobStatus,
    StateTransition,
    TriggerEvent,
    WorkflowInstance,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. A lock makes every conditional write
    atomic even when producers run on separate threads.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._triggers: Dict[str, TriggerEvent] = {}
        self._workflows: Dict[str, WorkflowInstance] = {}
        self._by_trigger: Dict[str, str] = {}
        self._transitions: Dict[str, List[StateTransition]] = {}
        self._jobs: Dict[str, Job] = {}

    # ------------------------------------------------------------------
    async def record_trigger(self, event: TriggerEvent) -> bool:
        with self._lock:
            if event.id in self._triggers:
                return False
            self._triggers[event.id] = event
            return True

    async def get_trigger(self, event_id: str) -> TriggerEvent | None:
        return self._triggers.get(event_id)

    async def create_workflow(self, instance: WorkflowInstance) -> bool:
        with self._lock:
            trigger_id = instance.trigger_event_id
            if trigger_id and trigger_id in self._by_trigger:
                return False
            self._workflows[instance.id] = instance.model_copy(deep=True)
            self._transitions.setdefault(instance.id, [])
            if trigger_id:
                self._by_trigger[trigger_id] = instance.id
            return True

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def find_workflow_by_trigger(self, event_id: str) -> WorkflowInstance | None:
        workflow_id = self._by_trigger.get(event_id)
        return await self.get_workflow(workflow_id) if workflow_id else None

    async def list_workflows(self, state: Optional[str] = None) -> list[WorkflowInstance]:
        with self._lock:
            return [
                wf.model_copy(deep=True)
                for wf in self._workflows.values()
                if state is None or wf.current_state == state
            ]

    async def apply_transition(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        transition: StateTransition,
    ) -> bool:
        with self._lock:
            current = self._workflows.get(instance.id)
            if current is None or current.version != expected_version:
                return False
            self._workflows[instance.id] = instance.model_copy(deep=True)
            self._transitions.setdefault(instance.id, []).append(transition)
            return True

    async def list_transitions(self, workflow_id: str) -> list[StateTransition]:
        with self._lock:
            return list(self._transitions.get(workflow_id, []))

    # ------------------------------------------------------------------
    async def save_job(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def compare_and_set_job(
        self, job_id: str, expected: Collection[JobStatus], **changes: Any
    ) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in expected:
                return None
            if "status" in changes:
                changes["status"] = JobStatus(changes["status"])
            updated = job.model_copy(update={**changes, "updated_at": utcnow()})
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    async def list_jobs(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Collection[JobStatus]] = None,
    ) -> list[Job]:
        with self._lock:
            jobs = [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if (workflow_id is None or job.workflow_id == workflow_id)
                and (statuses is None or job.status in statuses)
            ]
        return sorted(jobs, key=lambda j: j.enqueued_at)

    async def close(self) -> None:
        pass
