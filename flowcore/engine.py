"""State machine engine: turns triggers and job outcomes into transitions."""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any, Dict, List, Optional, Tuple

from .contracts import (
    CANCEL,
    CANCELLED,
    FAILED,
    SUCCEEDED,
    Job,
    JobStatus,
    StateTransition,
    TransitionOutcome,
    TriggerEvent,
    WorkflowInstance,
    WorkflowStatus,
    utcnow,
)
from .errors import ConcurrentModification, IllegalTransition, WorkflowNotFound
from .monitoring import EventSink, EventType, MonitoringEvent, NullSink
from .persistence import WorkflowRepository
from .registry import REGISTRY, TransitionTable, WorkflowRegistry

logger = logging.getLogger(__name__)

_OPEN_JOB_STATUSES = frozenset(
    {JobStatus.QUEUED, JobStatus.ASSIGNED, JobStatus.RUNNING, JobStatus.FAILED}
)


class StateMachineEngine:
    """Applies transition tables to workflow instances.

    Writes for one workflow are serialized twice: by an ``asyncio.Lock``
    held for the read-modify-write, and by the repository's version check,
    which keeps two engine processes sharing a store from both winning.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        registry: WorkflowRegistry = REGISTRY,
        sink: Optional[EventSink] = None,
        max_cas_retries: int = 5,
    ) -> None:
        self._repository = repository
        self.registry = registry
        self._sink = sink or NullSink()
        self.max_cas_retries = max_cas_retries
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Triggers
    async def submit(self, event: TriggerEvent) -> Tuple[WorkflowInstance, List[Job]]:
        """Create the workflow instance for ``event`` and its initial jobs.

        Replaying an event id returns the existing instance. Jobs are only
        returned again when none were ever recorded for the current state,
        which happens when the first attempt hit a saturated queue.

        Raises:
            UnsupportedWorkflow: no transition table for ``event.type``.
        """
        table = self.registry.get(event.type)
        lock = self._lock_for(f"trigger:{event.id}")
        async with lock:
            existing = await self._repository.find_workflow_by_trigger(event.id)
            if existing is None:
                instance = WorkflowInstance(
                    workflow_type=table.workflow_type,
                    current_state=table.initial_state,
                    context=dict(event.payload),
                    priority=self._priority_for(event, table),
                    trigger_event_id=event.id,
                )
                if await self._repository.create_workflow(instance):
                    logger.info(
                        f"Created workflow {instance.id} type={instance.workflow_type} "
                        f"state={instance.current_state} event_id={event.id}"
                    )
                    self._publish(
                        EventType.WORKFLOW_CREATED,
                        instance.id,
                        workflow_type=instance.workflow_type,
                        state=instance.current_state,
                        event_id=event.id,
                    )
                    return instance, self._jobs_for(instance, table)
                existing = await self._repository.find_workflow_by_trigger(event.id)
                if existing is None:
                    raise ConcurrentModification(
                        f"Workflow for event {event.id} vanished during creation"
                    )

            logger.info(f"Event {event.id} replayed; workflow {existing.id} already exists")
            return existing, await self._missing_jobs(existing, table)

    @staticmethod
    def _priority_for(event: TriggerEvent, table: TransitionTable) -> int:
        priority = event.payload.get("priority")
        if isinstance(priority, int) and not isinstance(priority, bool):
            return priority
        return table.default_priority

    async def _missing_jobs(
        self, instance: WorkflowInstance, table: TransitionTable
    ) -> List[Job]:
        if instance.is_terminal:
            return []
        recorded = await self._repository.list_jobs(instance.id)
        if any(
            j.step == instance.current_state and j.step_version == instance.version
            for j in recorded
        ):
            return []
        return self._jobs_for(instance, table)

    async def owed_jobs(self, workflow_id: str, triggered_by: str = "recovery") -> List[Job]:
        """Restart a workflow that a crashed process left waiting on nothing.

        Covers a stop between persisting a transition and enqueueing its
        jobs (the jobs are built again), and a stop between storing a job's
        final status and applying it (the step is joined or failed now). A
        fan-out state with nothing to fan out over is advanced past, as
        :meth:`advance` does. Returns the jobs to enqueue.
        """
        async with self._lock_for(workflow_id):
            instance = await self._load(workflow_id)
            table = self.registry.get(instance.workflow_type)
            state = instance.current_state
            if instance.is_terminal or not table.steps_for(state):
                return []

            recorded = [
                j
                for j in await self._repository.list_jobs(workflow_id)
                if j.step == state and j.step_version == instance.version
            ]
            if not recorded:
                jobs = self._jobs_for(instance, table)
                if jobs:
                    logger.warning(
                        f"Workflow {workflow_id} in {state} had no jobs recorded; "
                        f"re-creating {len(jobs)}"
                    )
                    return jobs
                _, jobs = await self._advance_locked(
                    workflow_id,
                    SUCCEEDED,
                    triggered_by,
                    reason=f"no work items for {state}",
                    skipped=True,
                )
                return jobs

            dead = [j for j in recorded if j.status == JobStatus.DEADLETTERED]
            if dead:
                logger.warning(f"Workflow {workflow_id} missed the failure of job {dead[0].id}")
                _, jobs = await self._advance_locked(
                    workflow_id,
                    FAILED,
                    triggered_by,
                    reason=dead[0].last_error or f"job {dead[0].id} ({dead[0].kind}) failed",
                )
                return jobs
            if any(j.status in _OPEN_JOB_STATUSES for j in recorded):
                return []
            logger.warning(f"Workflow {workflow_id} missed the results of {state}; joining")
            _, jobs = await self._join_locked(workflow_id, state, recorded, triggered_by)
            return jobs

    def _jobs_for(self, instance: WorkflowInstance, table: TransitionTable) -> List[Job]:
        """Build the jobs a workflow owes on entering its current state."""
        state = instance.current_state
        jobs: List[Job] = []
        for spec in table.steps_for(state):
            if spec.for_each:
                items = instance.context.get(spec.for_each) or []
                if not isinstance(items, list):
                    items = [items]
            else:
                items = [None]
            for index, item in enumerate(items):
                payload: Dict[str, Any] = {
                    **spec.payload,
                    "workflow_id": instance.id,
                    "workflow_type": instance.workflow_type,
                    "context": dict(instance.context),
                }
                key = f"{instance.id}:{state}:{instance.version}:{spec.kind}"
                if spec.for_each:
                    payload[spec.item_key] = item
                    key = f"{key}:{index}"
                priority = (
                    spec.priority_override
                    if spec.priority_override is not None
                    else instance.priority
                )
                jobs.append(
                    Job(
                        workflow_id=instance.id,
                        kind=spec.kind,
                        step=state,
                        step_version=instance.version,
                        payload=payload,
                        priority=priority,
                        idempotency_key=key,
                    )
                )
        return jobs

    # ------------------------------------------------------------------
    # Transitions
    async def advance(
        self,
        workflow_id: str,
        outcome: str,
        triggered_by: str = "manual",
        context_update: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> Tuple[str, List[Job]]:
        """Apply ``outcome`` to the workflow and return the new state and jobs.

        A terminal workflow is left untouched and ``(state, [])`` returned.

        Raises:
            WorkflowNotFound: unknown ``workflow_id``.
            IllegalTransition: the table has no entry for the outcome; the
                instance is not modified.
        """
        async with self._lock_for(workflow_id):
            return await self._advance_locked(
                workflow_id, outcome, triggered_by, context_update, reason
            )

    async def _advance_locked(
        self,
        workflow_id: str,
        outcome: str,
        triggered_by: str,
        context_update: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None,
        skipped: bool = False,
    ) -> Tuple[str, List[Job]]:
        for _ in range(self.max_cas_retries):
            instance = await self._load(workflow_id)
            table = self.registry.get(instance.workflow_type)
            if table.is_terminal(instance.current_state):
                logger.info(
                    f"Ignoring outcome '{outcome}' for terminal workflow {workflow_id} "
                    f"(state={instance.current_state})"
                )
                return instance.current_state, []

            next_state = table.next_state(instance.current_state, outcome)
            if next_state is None:
                error = IllegalTransition(workflow_id, instance.current_state, outcome)
                logger.error(str(error))
                self._publish(
                    EventType.TRANSITION_REJECTED,
                    workflow_id,
                    state=instance.current_state,
                    outcome=outcome,
                    triggered_by=triggered_by,
                    error=str(error),
                )
                raise error

            if next_state == FAILED:
                result = TransitionOutcome.FAILURE
            elif skipped:
                result = TransitionOutcome.SKIPPED
            else:
                result = TransitionOutcome.SUCCESS
            updated = await self._apply(
                instance, next_state, outcome, result, triggered_by, reason, context_update
            )
            if updated is None:
                continue

            if table.is_terminal(next_state):
                return next_state, []
            jobs = self._jobs_for(updated, table)
            if not jobs and table.steps_for(next_state):
                # Fan-out over an empty list: nothing to wait for.
                return await self._advance_locked(
                    workflow_id,
                    SUCCEEDED,
                    triggered_by,
                    reason=f"no work items for {next_state}",
                    skipped=True,
                )
            return next_state, jobs

        raise ConcurrentModification(
            f"Workflow {workflow_id} kept changing; gave up after "
            f"{self.max_cas_retries} attempts"
        )

    async def _apply(
        self,
        instance: WorkflowInstance,
        next_state: str,
        signal: str,
        outcome: TransitionOutcome,
        triggered_by: str,
        reason: Optional[str],
        context_update: Optional[Dict[str, Any]],
    ) -> Optional[WorkflowInstance]:
        """Persist one transition; ``None`` means the version check lost."""
        changes: Dict[str, Any] = {
            "current_state": next_state,
            "version": instance.version + 1,
            "updated_at": utcnow(),
        }
        if context_update:
            changes["context"] = {**instance.context, **context_update}
        updated = instance.model_copy(update=changes)
        transition = StateTransition(
            workflow_id=instance.id,
            sequence=instance.version,
            from_state=instance.current_state,
            to_state=next_state,
            signal=signal,
            outcome=outcome,
            triggered_by=triggered_by,
            reason=reason,
        )
        if not await self._repository.apply_transition(updated, instance.version, transition):
            logger.debug(
                f"Version check lost for workflow {instance.id} at v{instance.version}; retrying"
            )
            return None

        logger.info(
            f"Workflow {instance.id}: {instance.current_state} -> {next_state} "
            f"on '{signal}' by {triggered_by}"
        )
        self._publish(
            EventType.TRANSITION_APPLIED,
            instance.id,
            from_state=instance.current_state,
            to_state=next_state,
            signal=signal,
            outcome=outcome.value,
            triggered_by=triggered_by,
        )
        return updated

    async def cancel(
        self,
        workflow_id: str,
        triggered_by: str = "manual",
        reason: Optional[str] = None,
    ) -> WorkflowInstance:
        """Move a non-terminal workflow to ``cancelled``.

        Queued jobs of the workflow are deadlettered immediately; results of
        jobs already running are discarded when they arrive.

        Raises:
            WorkflowNotFound: unknown ``workflow_id``.
            IllegalTransition: the workflow is already terminal.
        """
        async with self._lock_for(workflow_id):
            for _ in range(self.max_cas_retries):
                instance = await self._load(workflow_id)
                if instance.is_terminal:
                    raise IllegalTransition(workflow_id, instance.current_state, CANCEL)
                updated = await self._apply(
                    instance,
                    CANCELLED,
                    CANCEL,
                    TransitionOutcome.SKIPPED,
                    triggered_by,
                    reason or "cancelled",
                    None,
                )
                if updated is not None:
                    break
            else:
                raise ConcurrentModification(f"Could not cancel workflow {workflow_id}")

        for job in await self._repository.list_jobs(
            workflow_id, statuses={JobStatus.QUEUED, JobStatus.FAILED}
        ):
            dead = await self._repository.compare_and_set_job(
                job.id,
                {job.status},
                status=JobStatus.DEADLETTERED,
                last_error="workflow cancelled",
            )
            if dead is not None:
                self._publish(
                    EventType.JOB_DEADLETTERED,
                    workflow_id,
                    job_id=job.id,
                    reason="workflow cancelled",
                )
        return updated

    async def on_job_result(
        self,
        job: Job,
        succeeded: bool,
        reason: Optional[str] = None,
        triggered_by: str = "worker",
    ) -> Tuple[Optional[str], List[Job]]:
        """Feed the final outcome of a workflow job back into its workflow.

        ``job`` must already be stored as ``succeeded`` or ``deadlettered``.
        A successful job only advances the workflow once every sibling job
        of the same step has succeeded; a deadlettered one fails it.
        Results for a state the workflow has already left are discarded.
        """
        if job.workflow_id is None:
            return None, []
        workflow_id = job.workflow_id
        async with self._lock_for(workflow_id):
            instance = await self._load(workflow_id)
            if (
                instance.is_terminal
                or instance.current_state != job.step
                or instance.version != job.step_version
            ):
                logger.info(
                    f"Discarding result of job {job.id} for workflow {workflow_id} "
                    f"(state={instance.current_state})"
                )
                return instance.current_state, []

            if not succeeded:
                return await self._advance_locked(
                    workflow_id,
                    FAILED,
                    triggered_by,
                    reason=reason or f"job {job.id} ({job.kind}) failed",
                )

            siblings = [
                j
                for j in await self._repository.list_jobs(workflow_id)
                if j.step == job.step and j.step_version == job.step_version
            ]
            pending = [j for j in siblings if j.id != job.id and j.status in _OPEN_JOB_STATUSES]
            if pending:
                logger.debug(
                    f"Workflow {workflow_id} waiting on {len(pending)} job(s) in {job.step}"
                )
                return instance.current_state, []

            finished = [job if j.id == job.id else j for j in siblings]
            return await self._join_locked(workflow_id, job.step, finished, triggered_by)

    async def _join_locked(
        self, workflow_id: str, step: str, siblings: List[Job], triggered_by: str
    ) -> Tuple[str, List[Job]]:
        """Advance past ``step`` once all of its jobs have succeeded."""
        outputs = [
            j.output
            for j in siblings
            if j.status == JobStatus.SUCCEEDED and j.output is not None
        ]
        context_update = None
        if outputs:
            context_update = {f"{step}_output": outputs[0] if len(outputs) == 1 else outputs}
        return await self._advance_locked(
            workflow_id, SUCCEEDED, triggered_by, context_update=context_update
        )

    # ------------------------------------------------------------------
    # Queries
    async def _load(self, workflow_id: str) -> WorkflowInstance:
        instance = await self._repository.get_workflow(workflow_id)
        if instance is None:
            raise WorkflowNotFound(workflow_id)
        return instance

    async def get_status(
        self, workflow_id: str
    ) -> Tuple[WorkflowInstance, List[StateTransition]]:
        """Return the stored instance and its transition history."""
        instance = await self._load(workflow_id)
        return instance, await self._repository.list_transitions(workflow_id)

    async def describe(self, workflow_id: str) -> WorkflowStatus:
        instance, transitions = await self.get_status(workflow_id)
        jobs = await self._repository.list_jobs(workflow_id)
        return WorkflowStatus(workflow=instance, transitions=transitions, jobs=jobs)

    async def list_workflows(self, state: Optional[str] = None) -> List[WorkflowInstance]:
        return await self._repository.list_workflows(state=state)

    def _publish(self, event_type: EventType, workflow_id: str, job_id=None, **data) -> None:
        self._sink.publish(
            MonitoringEvent(type=event_type, workflow_id=workflow_id, job_id=job_id, data=data)
        )
