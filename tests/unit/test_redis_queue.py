import os

import pytest

from flowcore.contracts import Job, JobStatus
from flowcore.errors import StoreUnavailable
from flowcore.queue.redis import RedisJobQueue


def test_member_round_trip_keeps_ordering_fields():
    job = Job(id="a|b", kind="publish_post", workflow_id="wf-1", priority=7)
    member = RedisJobQueue._member(job)
    assert RedisJobQueue._parse(member) == ("a|b", "publish_post", "wf-1", 7)

    later = Job(kind="k", enqueued_at=job.enqueued_at.replace(year=job.enqueued_at.year + 1))
    assert RedisJobQueue._member(job) < RedisJobQueue._member(later)


@pytest.mark.asyncio
async def test_redis_queue_against_server(repo):
    queue = RedisJobQueue(
        repo,
        host=os.getenv("TEST_REDIS_HOST", "localhost"),
        key_prefix="flowcore-test",
    )
    try:
        await queue.connect()
    except StoreUnavailable:
        pytest.skip("Redis server not available")
    client = await queue._client()
    await client.delete(queue.ready_key, queue.delayed_key)

    low = await queue.enqueue(Job(kind="k", priority=1, workflow_id="wf-1"))
    high = await queue.enqueue(Job(kind="k", priority=9, workflow_id="wf-2"))
    assert await queue.peek_depth() == 2

    claimed = await queue.dequeue_next()
    assert claimed.id == high.id
    assert claimed.status == JobStatus.ASSIGNED

    assert await queue.remove_workflow("wf-1") == 1
    assert await queue.dequeue_next() is None
    assert (await repo.get_job(low.id)).status == JobStatus.QUEUED
    await queue.disconnect()
