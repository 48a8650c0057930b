import asyncio

import pytest

from flowcore.contracts import (
    Job,
    JobStatus,
    StateTransition,
    TransitionOutcome,
    TriggerEvent,
    WorkflowInstance,
)
from flowcore.errors import ConfigError
from flowcore.persistence import (
    InMemoryWorkflowRepository,
    SQLiteWorkflowRepository,
    get_repository,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorkflowRepository()
    return SQLiteWorkflowRepository(tmp_path / "wf.db")


def _advance(instance, to_state, sequence):
    updated = instance.model_copy(
        update={"current_state": to_state, "version": instance.version + 1}
    )
    transition = StateTransition(
        workflow_id=instance.id,
        sequence=sequence,
        from_state=instance.current_state,
        to_state=to_state,
        signal="succeeded",
        outcome=TransitionOutcome.SUCCESS,
        triggered_by="test",
    )
    return updated, transition


@pytest.mark.asyncio
async def test_trigger_recorded_once(store):
    event = TriggerEvent(id="evt-1", source="webhook", type="content-publish", payload={"a": 1})
    assert await store.record_trigger(event) is True
    assert await store.record_trigger(event) is False
    stored = await store.get_trigger("evt-1")
    assert stored.payload == {"a": 1}
    assert await store.get_trigger("missing") is None


@pytest.mark.asyncio
async def test_workflow_crud(store):
    instance = WorkflowInstance(
        workflow_type="content-publish",
        current_state="pending_generation",
        context={"topic": "launch"},
        priority=5,
        trigger_event_id="evt-1",
    )
    assert await store.create_workflow(instance) is True

    wf = await store.get_workflow(instance.id)
    assert wf.context == {"topic": "launch"}
    assert wf.version == 1
    assert (await store.find_workflow_by_trigger("evt-1")).id == instance.id
    assert await store.get_workflow("missing") is None

    duplicate = WorkflowInstance(
        workflow_type="content-publish",
        current_state="pending_generation",
        trigger_event_id="evt-1",
    )
    assert await store.create_workflow(duplicate) is False
    assert [w.id for w in await store.list_workflows()] == [instance.id]
    assert await store.list_workflows(state="completed") == []


@pytest.mark.asyncio
async def test_transition_requires_expected_version(store):
    instance = WorkflowInstance(workflow_type="t", current_state="a")
    await store.create_workflow(instance)

    updated, transition = _advance(instance, "b", sequence=1)
    assert await store.apply_transition(updated, 1, transition) is True

    # A writer that still holds version 1 loses.
    stale, stale_transition = _advance(instance, "c", sequence=1)
    assert await store.apply_transition(stale, 1, stale_transition) is False

    wf = await store.get_workflow(instance.id)
    assert wf.current_state == "b"
    assert wf.version == 2
    history = await store.list_transitions(instance.id)
    assert [(t.from_state, t.to_state) for t in history] == [("a", "b")]


@pytest.mark.asyncio
async def test_transitions_listed_in_sequence_order(store):
    instance = WorkflowInstance(workflow_type="t", current_state="s0")
    await store.create_workflow(instance)
    current = instance
    for n in range(1, 5):
        updated, transition = _advance(current, f"s{n}", sequence=n)
        assert await store.apply_transition(updated, current.version, transition)
        current = updated
    assert [t.sequence for t in await store.list_transitions(instance.id)] == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_job_compare_and_set(store):
    job = Job(kind="generate_content", workflow_id="wf-1", payload={"x": 1})
    await store.save_job(job)

    claimed = await store.compare_and_set_job(
        job.id, {JobStatus.QUEUED}, status=JobStatus.ASSIGNED, worker_id="w1"
    )
    assert claimed.status == JobStatus.ASSIGNED
    assert claimed.worker_id == "w1"
    assert await store.compare_and_set_job(job.id, {JobStatus.QUEUED}, status="assigned") is None
    assert await store.compare_and_set_job("missing", {JobStatus.QUEUED}) is None

    done = await store.compare_and_set_job(
        job.id, {JobStatus.ASSIGNED}, status="succeeded", output={"text": "hi"}
    )
    assert done.status == JobStatus.SUCCEEDED
    assert (await store.get_job(job.id)).output == {"text": "hi"}


@pytest.mark.asyncio
async def test_list_jobs_filters(store):
    first = Job(kind="a", workflow_id="wf-1")
    second = Job(kind="b", workflow_id="wf-1", status=JobStatus.DEADLETTERED)
    other = Job(kind="c", workflow_id="wf-2")
    for job in (first, second, other):
        await store.save_job(job)

    assert [j.id for j in await store.list_jobs("wf-1")] == [first.id, second.id]
    queued = await store.list_jobs(statuses={JobStatus.QUEUED})
    assert {j.id for j in queued} == {first.id, other.id}
    assert await store.list_jobs(statuses=set()) == []


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(store):
    job = Job(kind="k")
    await store.save_job(job)
    results = await asyncio.gather(
        *(
            store.compare_and_set_job(job.id, {JobStatus.QUEUED}, status="assigned", worker_id=f"w{i}")
            for i in range(10)
        )
    )
    assert sum(1 for r in results if r is not None) == 1


@pytest.mark.asyncio
async def test_sqlite_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(path)
    instance = WorkflowInstance(workflow_type="t", current_state="a")
    await repo.create_workflow(instance)
    await repo.save_job(Job(kind="k", workflow_id=instance.id))
    await repo.close()

    reopened = SQLiteWorkflowRepository(path)
    assert (await reopened.get_workflow(instance.id)).current_state == "a"
    assert len(await reopened.list_jobs(instance.id)) == 1


def test_get_repository_uses_env(monkeypatch, tmp_path):
    monkeypatch.setenv("FLOWCORE_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    assert isinstance(get_repository(), SQLiteWorkflowRepository)


def test_get_repository_defaults_to_memory():
    repo = get_repository()
    assert isinstance(repo, InMemoryWorkflowRepository)
    assert get_repository() is repo


def test_get_repository_rejects_unknown_backend():
    with pytest.raises(ConfigError):
        get_repository("mysql://localhost/db")
    with pytest.raises(ConfigError):
        get_repository("just-a-path.db")


def test_get_repository_memory_url_replaces_cached_store():
    first = get_repository()
    second = get_repository("memory://")
    assert isinstance(second, InMemoryWorkflowRepository)
    assert second is not first
    assert get_repository() is second
