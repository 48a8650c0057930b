"""Tests for worker selection, heartbeats and the dispatch loop."""

import asyncio
from datetime import timedelta

import pytest

from flowcore.config import DispatcherConfig
from flowcore.contracts import Job, JobStatus, WorkerStatus
from flowcore.dispatch import Dispatcher
from flowcore.errors import StoreUnavailable
from flowcore.monitoring import EventType, MetricsAggregator


@pytest.mark.asyncio
async def test_least_recently_assigned_worker_goes_first(queue, repo):
    dispatcher = Dispatcher(queue, repo)
    first = dispatcher.register_worker("w1")
    second = dispatcher.register_worker("w2")
    second.last_heartbeat = first.last_heartbeat + timedelta(seconds=1)
    for _ in range(3):
        await queue.enqueue(Job(kind="k"))

    job = await dispatcher.dispatch_once()
    assert job.worker_id == "w1"
    dispatcher.complete("w1", job.id)

    # w2 has never been assigned, so it is ahead of w1 now.
    job = await dispatcher.dispatch_once()
    assert job.worker_id == "w2"
    dispatcher.complete("w2", job.id)

    job = await dispatcher.dispatch_once()
    assert job.worker_id == "w1"


@pytest.mark.asyncio
async def test_assigned_job_is_running_and_worker_busy(queue, repo):
    dispatcher = Dispatcher(queue, repo)
    dispatcher.register_worker("w1")
    queued = await queue.enqueue(Job(kind="k"))

    job = await dispatcher.dispatch_once()
    assert job.id == queued.id
    stored = await repo.get_job(job.id)
    assert stored.status == JobStatus.RUNNING
    assert stored.worker_id == "w1"
    worker = dispatcher.get_worker("w1")
    assert worker.status == WorkerStatus.BUSY
    assert worker.current_job_id == job.id

    # No idle worker left.
    await queue.enqueue(Job(kind="k"))
    assert await dispatcher.dispatch_once() is None

    dispatcher.complete("w1", job.id)
    assert worker.status == WorkerStatus.IDLE


@pytest.mark.asyncio
async def test_capabilities_route_jobs(queue, repo):
    dispatcher = Dispatcher(queue, repo)
    dispatcher.register_worker("publisher", capabilities={"publish_post"})
    await queue.enqueue(Job(kind="generate_content", priority=9))
    publish = await queue.enqueue(Job(kind="publish_post", priority=1))

    job = await dispatcher.dispatch_once()
    assert job.id == publish.id
    assert job.worker_id == "publisher"
    assert await queue.peek_depth() == 1


@pytest.mark.asyncio
async def test_missed_heartbeats_degrade_then_recover(queue, repo):
    dispatcher = Dispatcher(queue, repo, config=DispatcherConfig(heartbeat_interval=5))
    worker = dispatcher.register_worker("w1")
    start = worker.last_heartbeat

    await dispatcher.check_health(now=start + timedelta(seconds=6))
    assert worker.status == WorkerStatus.IDLE

    await dispatcher.check_health(now=start + timedelta(seconds=11))
    assert worker.status == WorkerStatus.DEGRADED
    assert worker.missed_heartbeats == 2

    await queue.enqueue(Job(kind="k"))
    assert await dispatcher.dispatch_once() is None

    dispatcher.heartbeat("w1", now=start + timedelta(seconds=12))
    assert worker.status == WorkerStatus.IDLE
    assert (await dispatcher.dispatch_once()) is not None


@pytest.mark.asyncio
async def test_offline_worker_job_is_requeued_with_same_attempt(queue, repo):
    aggregator = MetricsAggregator()
    dispatcher = Dispatcher(
        queue, repo, config=DispatcherConfig(heartbeat_timeout=30, remove_after=300), sink=aggregator
    )
    worker = dispatcher.register_worker("w1")
    await queue.enqueue(Job(kind="k", attempt=1))
    job = await dispatcher.dispatch_once()

    offline_at = worker.last_heartbeat + timedelta(seconds=31)
    await dispatcher.check_health(now=offline_at)
    assert worker.status == WorkerStatus.OFFLINE
    assert worker.current_job_id is None

    stored = await repo.get_job(job.id)
    assert stored.status == JobStatus.QUEUED
    assert stored.attempt == 1
    assert stored.worker_id is None
    assert await queue.peek_depth() == 1

    # Late heartbeats do not revive an offline worker.
    dispatcher.heartbeat("w1")
    assert worker.status == WorkerStatus.OFFLINE

    await dispatcher.check_health(now=offline_at + timedelta(seconds=301))
    assert dispatcher.get_worker("w1") is None

    aggregator.flush()
    (alert,) = [a for a in aggregator.alerts() if a.alert_type == "worker_offline"]
    assert alert.message.startswith("Worker w1 missed its heartbeat deadline")
    assert f"job={job.id}" in alert.message


@pytest.mark.asyncio
async def test_offline_worker_task_is_cancelled(queue, repo):
    started = asyncio.Event()

    async def hang(worker_id, job):
        started.set()
        await asyncio.sleep(60)

    dispatcher = Dispatcher(queue, repo, handler=hang)
    worker = dispatcher.register_worker("w1")
    await queue.enqueue(Job(kind="k"))
    await dispatcher.dispatch_once()
    await started.wait()
    task = dispatcher._inflight["w1"]

    await dispatcher.check_health(now=worker.last_heartbeat + timedelta(seconds=60))
    await asyncio.gather(task, return_exceptions=True)
    assert task.cancelled()


@pytest.mark.asyncio
async def test_run_loop_hands_out_jobs(queue, repo):
    handled = []

    async def handler(worker_id, job):
        handled.append(job.id)
        dispatcher.complete(worker_id, job.id)

    dispatcher = Dispatcher(queue, repo, handler=handler, config=DispatcherConfig(poll_interval=0.01))
    dispatcher.register_worker("w1")
    dispatcher.register_worker("w2")
    jobs = [await queue.enqueue(Job(kind="k")) for _ in range(5)]

    runner = asyncio.create_task(dispatcher.run())
    for _ in range(200):
        if len(handled) == 5:
            break
        await asyncio.sleep(0.01)
    await dispatcher.stop(timeout=1)
    await runner
    assert sorted(handled) == sorted(j.id for j in jobs)


@pytest.mark.asyncio
async def test_scaling_signal(queue, repo):
    dispatcher = Dispatcher(queue, repo)
    dispatcher.register_worker("w1")
    dispatcher.register_worker("w2")
    for _ in range(4):
        await queue.enqueue(Job(kind="k"))
    await dispatcher.dispatch_once()

    signal = await dispatcher.scaling_signal()
    assert signal["queue_depth"] == 3
    assert signal["workers"]["busy"] == 1
    assert signal["workers"]["idle"] == 1
    assert signal["utilization"] == 0.5
    assert signal["backlog_per_worker"] == 1.5


class _BrokenQueue:
    async def peek_depth(self):
        raise StoreUnavailable("redis down")

    async def dequeue_next(self, capabilities=None, timeout=None):
        raise StoreUnavailable("redis down")


@pytest.mark.asyncio
async def test_store_failure_halts_dispatch(repo):
    aggregator = MetricsAggregator()
    dispatcher = Dispatcher(_BrokenQueue(), repo, sink=aggregator)
    dispatcher.register_worker("w1")

    with pytest.raises(StoreUnavailable):
        await dispatcher.run()
    assert dispatcher.halted
    assert dispatcher.halt_reason == "redis down"

    aggregator.flush()
    assert EventType.DISPATCH_HALTED in {e.type for e in aggregator.recent_events()}
    assert aggregator.system_health() == "critical"
