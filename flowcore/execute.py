"""Job execution: workers that run collaborators under a timeout."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from .collaborators import Collaborator, get_collaborator
from .contracts import Job, JobResult, WorkerStatus, new_id
from .dispatch import Dispatcher
from .errors import ExecutionFailure

logger = logging.getLogger(__name__)

Resolver = Callable[[str], Optional[Collaborator]]


class JobWorker:
    """Executes one job at a time and keeps its dispatcher heartbeat fresh."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        worker_id: Optional[str] = None,
        job_timeout: float = 120.0,
        heartbeat_interval: float = 5.0,
        resolver: Resolver = get_collaborator,
        capabilities: Optional[Iterable[str]] = None,
    ) -> None:
        self.id = worker_id or f"worker-{new_id()[:8]}"
        self._dispatcher = dispatcher
        self.job_timeout = job_timeout
        self.heartbeat_interval = heartbeat_interval
        self.capabilities = set(capabilities or ())
        self._resolve = resolver
        self._heartbeat_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(), name=f"heartbeat-{self.id}"
            )

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            registered = self._dispatcher.get_worker(self.id)
            if registered is None or registered.status == WorkerStatus.OFFLINE:
                # Taken offline or dropped while the loop was stalled.
                logger.warning(f"Worker {self.id} rejoining the dispatcher")
                self._dispatcher.register_worker(self.id, self.capabilities)
            self._dispatcher.heartbeat(self.id)
            await asyncio.sleep(self.heartbeat_interval)

    async def execute(self, job: Job) -> JobResult:
        """Run ``job`` through its collaborator and report the outcome.

        Never raises for collaborator errors; they become failed results
        whose ``transient`` flag mirrors the type of :class:`ExecutionFailure`
        raised, or stays ``None`` for untyped errors.
        """
        started = time.monotonic()
        self._dispatcher.heartbeat(self.id)
        collaborator = self._resolve(job.kind)
        if collaborator is None:
            logger.error(f"No collaborator registered for job kind '{job.kind}' (job {job.id})")
            return JobResult(
                job_id=job.id,
                worker_id=self.id,
                success=False,
                transient=False,
                reason=f"validation: no collaborator for job kind '{job.kind}'",
            )

        logger.info(
            f"Worker {self.id} executing job {job.id} kind={job.kind} attempt={job.attempt}"
        )
        try:
            result = await asyncio.wait_for(
                collaborator.invoke(job.payload, job.idempotency_key),
                timeout=self.job_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Job {job.id} timed out after {self.job_timeout}s")
            return self._failure(job, "timeout", started, transient=True)
        except ExecutionFailure as e:
            return self._failure(job, str(e), started, transient=e.transient)
        except Exception as e:
            logger.exception(f"Job {job.id} raised an unexpected error")
            return self._failure(job, f"{type(e).__name__}: {e}", started)
        finally:
            self._dispatcher.heartbeat(self.id)

        elapsed = time.monotonic() - started
        logger.info(f"Job {job.id} succeeded in {elapsed:.3f}s")
        return JobResult(
            job_id=job.id,
            worker_id=self.id,
            success=True,
            output=result.output,
            elapsed=elapsed,
        )

    def _failure(
        self, job: Job, reason: str, started: float, transient: Optional[bool] = None
    ) -> JobResult:
        logger.warning(f"Job {job.id} failed (transient={transient}): {reason}")
        return JobResult(
            job_id=job.id,
            worker_id=self.id,
            success=False,
            reason=reason,
            transient=transient,
            elapsed=time.monotonic() - started,
        )


class WorkerPool:
    """Fixed-size set of :class:`JobWorker` registered with a dispatcher."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        size: int = 4,
        job_timeout: float = 120.0,
        heartbeat_interval: float = 5.0,
        capabilities: Optional[Iterable[str]] = None,
        resolver: Resolver = get_collaborator,
    ) -> None:
        self._dispatcher = dispatcher
        self.size = size
        self.job_timeout = job_timeout
        self.heartbeat_interval = heartbeat_interval
        self.capabilities = set(capabilities or ())
        self._resolver = resolver
        self._workers: Dict[str, JobWorker] = {}

    @property
    def workers(self) -> List[JobWorker]:
        return list(self._workers.values())

    async def start(self) -> None:
        for _ in range(self.size):
            worker = JobWorker(
                self._dispatcher,
                job_timeout=self.job_timeout,
                heartbeat_interval=self.heartbeat_interval,
                resolver=self._resolver,
                capabilities=self.capabilities,
            )
            self._dispatcher.register_worker(worker.id, self.capabilities)
            worker.start()
            self._workers[worker.id] = worker
        logger.info(f"Worker pool started with {self.size} worker(s)")

    async def stop(self) -> None:
        for worker in list(self._workers.values()):
            await worker.stop()
            self._dispatcher.deregister_worker(worker.id)
        self._workers.clear()
        logger.info("Worker pool stopped")

    async def run_job(self, worker_id: str, job: Job) -> JobResult:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise KeyError(f"Unknown worker {worker_id}")
        return await worker.execute(job)
