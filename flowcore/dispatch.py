"""Load balancer that hands queued jobs to healthy workers."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .config import DispatcherConfig
from .contracts import Job, JobStatus, Worker, WorkerStatus, utcnow
from .errors import StoreUnavailable, WorkerTimeout
from .monitoring import EventSink, EventType, MonitoringEvent, NullSink
from .persistence import WorkflowRepository
from .queue import BaseJobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[str, Job], Awaitable[Any]]


class Dispatcher:
    """Single dispatch loop over a registry of workers.

    Idle workers are served least-recently-assigned first. Degraded and
    offline workers never receive work; a worker that misses its heartbeat
    deadline goes offline and its job is put back in the queue with the
    same ``attempt``.
    """

    def __init__(
        self,
        queue: BaseJobQueue,
        repository: WorkflowRepository,
        handler: Optional[JobHandler] = None,
        config: Optional[DispatcherConfig] = None,
        sink: Optional[EventSink] = None,
    ) -> None:
        self.queue = queue
        self._repository = repository
        self._handler = handler
        self.config = config or DispatcherConfig()
        self._sink = sink or NullSink()
        self._workers: Dict[str, Worker] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()
        self._last_health_check = 0.0
        self.halted = False
        self.halt_reason: Optional[str] = None
        self._halt_error: Optional[BaseException] = None

    def set_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    # ------------------------------------------------------------------
    # Worker registry
    def register_worker(
        self,
        worker_id: Optional[str] = None,
        capabilities: Optional[Iterable[str]] = None,
    ) -> Worker:
        worker = Worker(capabilities=set(capabilities or ()))
        if worker_id:
            worker.id = worker_id
        self._workers[worker.id] = worker
        logger.info(f"Registered worker {worker.id} capabilities={sorted(worker.capabilities) or 'any'}")
        self._publish_health(worker)
        return worker

    def deregister_worker(self, worker_id: str) -> None:
        if self._workers.pop(worker_id, None) is not None:
            logger.info(f"Deregistered worker {worker_id}")

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        return self._workers.get(worker_id)

    @property
    def workers(self) -> List[Worker]:
        return list(self._workers.values())

    def heartbeat(self, worker_id: str, now: Optional[datetime] = None) -> None:
        """Record liveness; a degraded worker returns to service."""
        worker = self._workers.get(worker_id)
        if worker is None or worker.status == WorkerStatus.OFFLINE:
            return
        worker.last_heartbeat = now or utcnow()
        worker.missed_heartbeats = 0
        if worker.status == WorkerStatus.DEGRADED:
            worker.status = WorkerStatus.BUSY if worker.current_job_id else WorkerStatus.IDLE
            logger.info(f"Worker {worker_id} recovered ({worker.status.value})")
            self._publish_health(worker)

    # ------------------------------------------------------------------
    # Health
    async def check_health(self, now: Optional[datetime] = None) -> None:
        """Degrade, take offline, and drop workers based on heartbeat age."""
        now = now or utcnow()
        cfg = self.config
        for worker in list(self._workers.values()):
            if worker.status == WorkerStatus.OFFLINE:
                if (
                    worker.offline_since is not None
                    and (now - worker.offline_since).total_seconds() > cfg.remove_after
                ):
                    logger.info(f"Removing worker {worker.id}, offline since {worker.offline_since}")
                    del self._workers[worker.id]
                continue

            elapsed = (now - worker.last_heartbeat).total_seconds()
            worker.missed_heartbeats = int(elapsed // cfg.heartbeat_interval)
            if elapsed > cfg.heartbeat_timeout:
                await self._take_offline(worker, now)
            elif (
                worker.missed_heartbeats >= cfg.degraded_after_missed
                and worker.status != WorkerStatus.DEGRADED
            ):
                worker.status = WorkerStatus.DEGRADED
                logger.warning(
                    f"Worker {worker.id} degraded after {worker.missed_heartbeats} missed heartbeats"
                )
                self._publish_health(worker)

    async def _take_offline(self, worker: Worker, now: datetime) -> None:
        job_id = worker.current_job_id
        worker.status = WorkerStatus.OFFLINE
        worker.offline_since = now
        worker.current_job_id = None
        timeout = WorkerTimeout(worker.id, job_id, worker.last_heartbeat)
        logger.error(str(timeout))
        self._publish_health(worker, job_id=job_id, error=str(timeout))

        task = self._inflight.pop(worker.id, None)
        if task is not None:
            task.cancel()
        if job_id is None:
            return
        job = await self._repository.compare_and_set_job(
            job_id,
            {JobStatus.ASSIGNED, JobStatus.RUNNING},
            status=JobStatus.QUEUED,
            worker_id=None,
        )
        if job is not None:
            await self.queue.requeue(job)
            logger.info(f"Requeued job {job_id} from offline worker {worker.id} (attempt {job.attempt})")

    # ------------------------------------------------------------------
    # Dispatch
    def idle_workers(self) -> List[Worker]:
        """Idle workers, least recently assigned first."""
        idle = [w for w in self._workers.values() if w.status == WorkerStatus.IDLE]
        return sorted(
            idle,
            key=lambda w: (w.last_assigned_at is not None, w.last_assigned_at or w.last_heartbeat),
        )

    async def dispatch_once(self) -> Optional[Job]:
        """Try to hand one job to one idle worker. Returns the started job."""
        for worker in self.idle_workers():
            job = await self.queue.dequeue_next(capabilities=worker.capabilities or None)
            if job is not None:
                started = await self._assign(worker, job)
                if started is not None:
                    return started
        return None

    async def _assign(self, worker: Worker, job: Job) -> Optional[Job]:
        running = await self._repository.compare_and_set_job(
            job.id, {JobStatus.ASSIGNED}, status=JobStatus.RUNNING, worker_id=worker.id
        )
        if running is None:
            logger.debug(f"Job {job.id} changed before it could start; skipping")
            return None
        worker.status = WorkerStatus.BUSY
        worker.current_job_id = running.id
        worker.last_assigned_at = utcnow()
        logger.info(f"Assigned job {running.id} kind={running.kind} to worker {worker.id}")
        self._sink.publish(
            MonitoringEvent(
                type=EventType.JOB_ASSIGNED,
                job_id=running.id,
                workflow_id=running.workflow_id,
                worker_id=worker.id,
                data={"kind": running.kind, "priority": running.priority, "attempt": running.attempt},
            )
        )
        if self._handler is not None:
            self._inflight[worker.id] = asyncio.create_task(
                self._handler(worker.id, running), name=f"job-{running.id}"
            )
        return running

    def complete(self, worker_id: str, job_id: str) -> None:
        """Free ``worker_id`` after it reported on ``job_id``."""
        worker = self._workers.get(worker_id)
        if worker is not None and worker.current_job_id != job_id:
            # Stale: the worker was taken offline and may hold newer work.
            return
        self._inflight.pop(worker_id, None)
        if worker is None:
            return
        worker.current_job_id = None
        if worker.status == WorkerStatus.BUSY:
            worker.status = WorkerStatus.IDLE

    async def run(self) -> None:
        """Dispatch until :meth:`stop`; a store failure halts and re-raises."""
        logger.info(f"Dispatcher started with {len(self._workers)} worker(s)")
        self._stopping.clear()
        try:
            while not self._stopping.is_set():
                if self._halt_error is not None:
                    raise self._halt_error
                await self._periodic()
                job = await self.dispatch_once()
                if job is None:
                    try:
                        await asyncio.wait_for(
                            self._stopping.wait(), timeout=self.config.poll_interval
                        )
                    except asyncio.TimeoutError:
                        pass
        except StoreUnavailable as e:
            self.halt(e)
            raise
        logger.info("Dispatcher stopped")

    async def _periodic(self) -> None:
        now = time.monotonic()
        if now - self._last_health_check < min(1.0, self.config.heartbeat_interval):
            return
        self._last_health_check = now
        await self.check_health()
        signal = await self.scaling_signal()
        self._sink.publish(
            MonitoringEvent(
                type=EventType.QUEUE_STATS,
                data={
                    "depth": signal["queue_depth"],
                    "utilization": signal["utilization"],
                    "workers": signal["workers"],
                },
            )
        )

    def halt(self, error: BaseException) -> None:
        """Stop dispatching after an infrastructure failure."""
        if self.halted:
            return
        self.halted = True
        self.halt_reason = str(error)
        self._halt_error = error
        logger.critical(f"Dispatch halted: {error}")
        self._sink.publish(
            MonitoringEvent(type=EventType.DISPATCH_HALTED, data={"error": str(error)})
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop and wait up to ``timeout`` for in-flight jobs."""
        self._stopping.set()
        tasks = list(self._inflight.values())
        if tasks:
            await asyncio.wait(tasks, timeout=timeout)

    async def scaling_signal(self) -> Dict[str, Any]:
        """Queue depth and worker counts for external autoscaling."""
        counts = Counter(w.status.value for w in self._workers.values())
        live = sum(n for status, n in counts.items() if status != WorkerStatus.OFFLINE.value)
        busy = counts.get(WorkerStatus.BUSY.value, 0)
        depth = await self.queue.peek_depth()
        return {
            "queue_depth": depth,
            "workers": {s.value: counts.get(s.value, 0) for s in WorkerStatus},
            "utilization": busy / live if live else 0.0,
            "backlog_per_worker": depth / live if live else float(depth),
        }

    def _publish_health(
        self, worker: Worker, job_id: Optional[str] = None, error: Optional[str] = None
    ) -> None:
        data: Dict[str, Any] = {"status": worker.status.value, "missed": worker.missed_heartbeats}
        if error:
            data["error"] = error
        self._sink.publish(
            MonitoringEvent(
                type=EventType.WORKER_HEALTH,
                worker_id=worker.id,
                job_id=job_id or worker.current_job_id,
                data=data,
            )
        )
