"""Wires ingress, engine, queue, dispatcher, workers and monitoring together."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from .config import FlowcoreConfig, load_config
from .contracts import Job, JobResult, JobStatus, TriggerEvent, WorkflowInstance
from .dispatch import Dispatcher
from .engine import StateMachineEngine
from .errors import FlowcoreError, StoreUnavailable, UnsupportedWorkflow
from .execute import WorkerPool
from .ingress import EventBus, EventIngress, IngestResult
from .monitoring import EventType, MetricsAggregator, MonitoringEvent
from .persistence import WorkflowRepository, get_repository
from .queue import BaseJobQueue, get_queue
from .registry import WorkflowRegistry, default_registry
from .retry import RetryAction, RetryManager
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class Runtime:
    """One orchestration process.

    Job results flow back through :meth:`handle_result`: successes feed the
    engine, failures go through the retry manager, and a deadlettered job
    fails its workflow.
    """

    def __init__(
        self,
        config: Optional[FlowcoreConfig] = None,
        repository: Optional[WorkflowRepository] = None,
        queue: Optional[BaseJobQueue] = None,
        registry: Optional[WorkflowRegistry] = None,
        aggregator: Optional[MetricsAggregator] = None,
    ) -> None:
        self.config = config or load_config()
        cfg = self.config
        self.repository = repository or get_repository(config=cfg)
        self.aggregator = aggregator or MetricsAggregator(
            window_seconds=cfg.monitoring.window_seconds,
            buffer_size=cfg.monitoring.buffer_size,
            long_execution_threshold=cfg.monitoring.long_execution_threshold,
            max_events=cfg.monitoring.max_events,
            max_alerts=cfg.monitoring.max_alerts,
        )
        self.registry = registry or default_registry(cfg.workflows)
        self.queue = queue or get_queue(
            config=cfg, repository=self.repository, sink=self.aggregator
        )
        self.engine = StateMachineEngine(self.repository, self.registry, sink=self.aggregator)
        self.retry = RetryManager.from_config(cfg.retry)
        self.dispatcher = Dispatcher(
            self.queue,
            self.repository,
            handler=self._run_job,
            config=cfg.dispatcher,
            sink=self.aggregator,
        )
        self.pool = WorkerPool(
            self.dispatcher,
            size=cfg.worker.pool_size,
            job_timeout=cfg.worker.job_timeout,
            heartbeat_interval=cfg.dispatcher.heartbeat_interval,
        )
        self.bus = EventBus()
        self.ingress = EventIngress(self.repository, self.bus, cfg.ingress, sink=self.aggregator)
        self.scheduler = Scheduler(self.ingress, cfg.ingress.schedules)
        self._dispatch_task: Optional[asyncio.Task] = None
        self._replay_task: Optional[asyncio.Task] = None
        self._subscribe_handlers()

    def _subscribe_handlers(self) -> None:
        for workflow_type in self.registry.types():
            self.bus.subscribe(workflow_type, self._start_workflow)
        for event_type in self.config.ingress.standalone_kinds:
            self.bus.subscribe(event_type, self._start_standalone)

    # ------------------------------------------------------------------
    # Lifecycle
    async def start(self) -> None:
        await self.aggregator.start()
        await self.queue.connect()
        await self.recover()
        await self.pool.start()
        self._dispatch_task = asyncio.create_task(self.dispatcher.run(), name="dispatcher")
        await self.scheduler.start()
        self._replay_task = asyncio.create_task(self._replay_loop(), name="event-replay")
        logger.info(
            f"Runtime started: {len(self.registry)} workflow type(s), "
            f"{self.pool.size} worker(s), queue={type(self.queue).__name__}"
        )

    async def stop(self, timeout: float = 10.0) -> None:
        await self.scheduler.stop()
        if self._replay_task is not None:
            self._replay_task.cancel()
            await asyncio.gather(self._replay_task, return_exceptions=True)
            self._replay_task = None
        await self.dispatcher.stop(timeout=timeout)
        if self._dispatch_task is not None:
            try:
                await self._dispatch_task
            except StoreUnavailable as e:
                logger.warning(f"Dispatcher had halted: {e}")
            self._dispatch_task = None
        await self.pool.stop()
        await self.queue.disconnect()
        await self.aggregator.stop()
        logger.info("Runtime stopped")

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    @property
    def healthy(self) -> bool:
        return not self.dispatcher.halted

    async def recover(self) -> int:
        """Put work orphaned by a previous process back in the queue.

        Jobs left ``assigned`` or ``running`` are reset to ``queued`` with the
        same attempt. Queued jobs are re-indexed when the queue index does
        not survive restarts. Workflows whose current state never got its
        jobs recorded have them created and enqueued.
        """
        recovered = 0
        for job in await self.repository.list_jobs(
            statuses={JobStatus.ASSIGNED, JobStatus.RUNNING}
        ):
            reset = await self.repository.compare_and_set_job(
                job.id, {job.status}, status=JobStatus.QUEUED, worker_id=None
            )
            if reset is not None:
                await self.queue.requeue(reset)
                recovered += 1
        if not self.queue.durable_index and await self.queue.peek_depth() == 0:
            for job in await self.repository.list_jobs(statuses={JobStatus.QUEUED}):
                await self.queue.requeue(job)
                recovered += 1
        for instance in await self.repository.list_workflows():
            if instance.is_terminal:
                continue
            try:
                owed = await self.engine.owed_jobs(instance.id)
            except UnsupportedWorkflow as e:
                logger.warning(f"Cannot resume workflow {instance.id}: {e}")
                continue
            recovered += len(await self.queue.enqueue_many(owed, force=True))
        if recovered:
            logger.info(f"Recovered {recovered} job(s) from the store")
        return recovered

    async def _replay_loop(self) -> None:
        while True:
            await asyncio.sleep(max(self.config.dispatcher.poll_interval, 0.1))
            if not self.ingress.pending:
                continue
            try:
                await self.ingress.replay_pending()
            except StoreUnavailable as e:
                self.dispatcher.halt(e)
                return

    # ------------------------------------------------------------------
    # Bus subscribers
    async def _start_workflow(self, event: TriggerEvent) -> IngestResult:
        instance, jobs = await self.engine.submit(event)
        queued = await self.queue.enqueue_many(jobs)
        return IngestResult(
            event_id=event.id,
            workflow_id=instance.id,
            job_ids=[j.id for j in queued],
        )

    async def _start_standalone(self, event: TriggerEvent) -> IngestResult:
        kind = self.config.ingress.standalone_kinds[event.type]
        job_id = f"event-{event.id}"
        if await self.repository.get_job(job_id) is not None:
            return IngestResult(event_id=event.id, job_ids=[job_id], duplicate=True)
        priority = event.payload.get("priority")
        if not isinstance(priority, int) or isinstance(priority, bool):
            priority = self.config.ingress.standalone_priority
        job = Job(
            id=job_id,
            kind=kind,
            payload={**event.payload, "event_id": event.id},
            priority=priority,
            idempotency_key=f"event:{event.id}:{kind}",
        )
        await self.queue.enqueue(job)
        return IngestResult(event_id=event.id, job_ids=[job.id])

    # ------------------------------------------------------------------
    # Control operations
    async def submit_event(
        self,
        source: str,
        type: str,
        payload: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> IngestResult:
        return await self.ingress.manual(source, type, payload, event_id)

    async def cancel_workflow(
        self, workflow_id: str, triggered_by: str = "manual", reason: Optional[str] = None
    ) -> WorkflowInstance:
        instance = await self.engine.cancel(workflow_id, triggered_by, reason)
        removed = await self.queue.remove_workflow(workflow_id)
        logger.info(f"Cancelled workflow {workflow_id}; removed {removed} queued job(s)")
        return instance

    async def apply_outcome(
        self,
        workflow_id: str,
        outcome: str,
        triggered_by: str = "manual",
        context_update: Optional[Dict[str, Any]] = None,
    ) -> Tuple[str, List[Job]]:
        state, jobs = await self.engine.advance(
            workflow_id, outcome, triggered_by, context_update=context_update
        )
        await self.queue.enqueue_many(jobs, force=True)
        return state, jobs

    async def metrics(self) -> Dict[str, Any]:
        return {
            **self.aggregator.snapshot(),
            "scaling": await self.dispatcher.scaling_signal(),
            "pending_events": len(self.ingress.pending),
            "dispatch_halted": self.dispatcher.halted,
        }

    # ------------------------------------------------------------------
    # Results
    async def _run_job(self, worker_id: str, job: Job) -> None:
        try:
            result = await self.pool.run_job(worker_id, job)
            await self.handle_result(job, result)
        except StoreUnavailable as e:
            self.dispatcher.halt(e)
        except FlowcoreError as e:
            logger.error(f"Could not process result of job {job.id}: {e}")
        finally:
            self.dispatcher.complete(worker_id, job.id)

    async def handle_result(self, job: Job, result: JobResult) -> None:
        """Apply a worker's result to the job record and its workflow."""
        stored = await self.repository.get_job(job.id)
        if (
            stored is None
            or stored.status != JobStatus.RUNNING
            or stored.worker_id != result.worker_id
        ):
            logger.info(f"Ignoring stale result for job {job.id} from {result.worker_id}")
            return

        self.aggregator.publish(
            MonitoringEvent(
                type=EventType.JOB_SUCCEEDED if result.success else EventType.JOB_FAILED,
                job_id=stored.id,
                workflow_id=stored.workflow_id,
                worker_id=result.worker_id,
                data={"elapsed": result.elapsed, "kind": stored.kind, "reason": result.reason},
            )
        )

        if stored.workflow_id is not None:
            instance = await self.repository.get_workflow(stored.workflow_id)
            if instance is not None and instance.is_terminal:
                await self._deadletter(stored, f"workflow {instance.current_state}")
                return

        if result.success:
            self.retry.on_success(stored)
            done = await self.repository.compare_and_set_job(
                stored.id,
                {JobStatus.RUNNING},
                status=JobStatus.SUCCEEDED,
                output=result.output,
                last_error=None,
            )
            if done is not None:
                await self._feed_engine(done, True)
            return

        decision = self.retry.on_failure(stored, result.reason, transient=result.transient)
        if decision.action == RetryAction.RETRY:
            retried = await self.repository.compare_and_set_job(
                stored.id,
                {JobStatus.RUNNING},
                status=JobStatus.QUEUED,
                attempt=decision.job.attempt,
                not_before=decision.job.not_before,
                last_error=decision.reason,
                worker_id=None,
            )
            if retried is not None:
                await self.queue.requeue(retried)
                self.aggregator.publish(
                    MonitoringEvent(
                        type=EventType.JOB_RETRY_SCHEDULED,
                        job_id=retried.id,
                        workflow_id=retried.workflow_id,
                        data={
                            "attempt": retried.attempt,
                            "delay": decision.delay,
                            "category": decision.classification.category.value,
                        },
                    )
                )
            return

        dead = await self._deadletter(stored, decision.reason or "failed")
        if dead is not None:
            await self._feed_engine(dead, False, decision.reason)

    async def _deadletter(self, job: Job, reason: str) -> Optional[Job]:
        dead = await self.repository.compare_and_set_job(
            job.id, {JobStatus.RUNNING}, status=JobStatus.DEADLETTERED, last_error=reason
        )
        if dead is not None:
            self.aggregator.publish(
                MonitoringEvent(
                    type=EventType.JOB_DEADLETTERED,
                    job_id=dead.id,
                    workflow_id=dead.workflow_id,
                    data={"reason": reason, "kind": dead.kind, "attempt": dead.attempt},
                )
            )
        return dead

    async def _feed_engine(self, job: Job, succeeded: bool, reason: Optional[str] = None) -> None:
        if job.workflow_id is None:
            return
        _, jobs = await self.engine.on_job_result(job, succeeded, reason)
        await self.queue.enqueue_many(jobs, force=True)


def build_runtime(config_path: Optional[str] = None) -> Runtime:
    return Runtime(load_config(config_path))
