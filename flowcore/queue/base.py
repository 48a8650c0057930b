"""Base job queue interface shared by all queue backends."""

from __future__ import annotations

import abc
import asyncio
import logging
import time
from typing import Collection, List, Optional

from ..contracts import Job, JobStatus
from ..errors import QueueSaturated
from ..monitoring import EventSink, EventType, MonitoringEvent, NullSink
from ..persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class BaseJobQueue(metaclass=abc.ABCMeta):
    """Priority queue of job ids backed by durable job records.

    Ordering is priority descending, then ``enqueued_at`` ascending. The
    queue index only holds ids; the job record in the repository is the
    authority on status, and a dequeue only succeeds if the repository
    accepts the ``queued -> assigned`` conditional write.
    """

    poll_interval: float = 0.05
    # True when the index survives a process restart.
    durable_index: bool = False

    def __init__(
        self,
        repository: WorkflowRepository,
        max_depth: int = 10_000,
        sink: Optional[EventSink] = None,
    ) -> None:
        self._repository = repository
        self.max_depth = max_depth
        self._sink = sink or NullSink()

    async def connect(self) -> None:
        """Open connection to the queue backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the queue backend (no-op by default)."""
        pass

    # ------------------------------------------------------------------
    async def enqueue(self, job: Job, force: bool = False) -> Job:
        """Persist ``job`` as queued and index it.

        ``force`` skips the depth ceiling; it is used for work of workflows
        that were already admitted.

        Raises:
            QueueSaturated: depth reached ``max_depth``. Nothing is written,
                so the caller can retry the same job later.
        """
        if not force:
            await self._check_capacity(1)
        return await self._index(job, EventType.JOB_ENQUEUED)

    async def enqueue_many(self, jobs: List[Job], force: bool = False) -> List[Job]:
        """Enqueue ``jobs`` all or nothing with respect to the ceiling."""
        if not jobs:
            return []
        if not force:
            await self._check_capacity(len(jobs))
        return [await self._index(job, EventType.JOB_ENQUEUED) for job in jobs]

    async def _check_capacity(self, count: int) -> None:
        depth = await self.peek_depth()
        if depth + count > self.max_depth:
            depth -= await self.prune_stale()
            if depth + count > self.max_depth:
                raise QueueSaturated(depth, self.max_depth)

    async def _is_stale(self, job_id: str) -> bool:
        job = await self._repository.get_job(job_id)
        return job is None or job.status != JobStatus.QUEUED

    async def requeue(self, job: Job) -> Job:
        """Put already accepted work back in the queue, ignoring the ceiling."""
        return await self._index(job, EventType.JOB_REQUEUED)

    async def _index(self, job: Job, event_type: EventType) -> Job:
        job = job.model_copy(update={"status": JobStatus.QUEUED, "worker_id": None})
        await self._repository.save_job(job)
        await self._push(job)
        logger.debug(
            f"Queued job {job.id} kind={job.kind} priority={job.priority} "
            f"workflow_id={job.workflow_id}"
        )
        self._sink.publish(
            MonitoringEvent(
                type=event_type,
                job_id=job.id,
                workflow_id=job.workflow_id,
                data={"priority": job.priority, "kind": job.kind, "attempt": job.attempt},
            )
        )
        return job

    async def dequeue_next(
        self,
        capabilities: Optional[Collection[str]] = None,
        timeout: Optional[float] = None,
    ) -> Optional[Job]:
        """Claim the best queued job the caller can run.

        Blocks until a job is available or ``timeout`` seconds elapse
        (``None`` returns immediately when nothing is ready). The returned
        job is already ``assigned``; no other caller can receive it.
        """
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            job = await self._claim(capabilities)
            if job is not None:
                return job
            if deadline is None or time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    async def _claim(self, capabilities: Optional[Collection[str]]) -> Optional[Job]:
        while True:
            job_id = await self._pop(capabilities)
            if job_id is None:
                return None
            job = await self._repository.compare_and_set_job(
                job_id, {JobStatus.QUEUED}, status=JobStatus.ASSIGNED
            )
            if job is not None:
                return job
            logger.debug(f"Skipping stale queue entry for job {job_id}")

    # ------------------------------------------------------------------
    @abc.abstractmethod
    async def _push(self, job: Job) -> None:
        """Add ``job`` to the index (delayed if ``not_before`` is in the future)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def _pop(self, capabilities: Optional[Collection[str]]) -> Optional[str]:
        """Atomically remove and return the best ready entry the caller can run."""
        raise NotImplementedError

    @abc.abstractmethod
    async def peek_depth(self) -> int:
        """Number of indexed jobs, ready or delayed.

        Entries of jobs that left ``queued`` without going through the queue
        (deadlettered by a cancellation) count until popped or pruned.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def prune_stale(self) -> int:
        """Drop entries whose job record is no longer queued. Returns the count."""
        raise NotImplementedError

    @abc.abstractmethod
    async def remove_workflow(self, workflow_id: str) -> int:
        """Drop every indexed entry of ``workflow_id``. Returns the count."""
        raise NotImplementedError
