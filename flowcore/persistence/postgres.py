"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from typing import Any, Collection, Optional

import asyncpg

from ..contracts import (
    Job,
    JobStatus,
    StateTransition,
    TriggerEvent,
    WorkflowInstance,
    utcnow,
)
from ..errors import StoreUnavailable
from .repository import WorkflowRepository

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS flowcore_triggers (
        id TEXT PRIMARY KEY,
        data JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flowcore_workflows (
        id TEXT PRIMARY KEY,
        trigger_event_id TEXT UNIQUE,
        current_state TEXT NOT NULL,
        version INTEGER NOT NULL,
        data JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flowcore_transitions (
        workflow_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        data JSONB NOT NULL,
        PRIMARY KEY (workflow_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS flowcore_jobs (
        id TEXT PRIMARY KEY,
        workflow_id TEXT,
        status TEXT NOT NULL,
        enqueued_at TIMESTAMPTZ NOT NULL,
        data JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS flowcore_jobs_workflow_idx ON flowcore_jobs (workflow_id)",
]


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self._dsn, min_size=self._min_size, max_size=self._max_size
                )
                async with self._pool.acquire() as conn:
                    for statement in _SCHEMA:
                        await conn.execute(statement)
            except (OSError, asyncpg.PostgresError) as e:
                self._pool = None
                raise StoreUnavailable(f"Cannot connect to postgres: {e}") from e
        return self._pool

    async def _execute(self, query: str, *params: Any) -> str:
        pool = await self._get_pool()
        try:
            return await pool.execute(query, *params)
        except asyncpg.UniqueViolationError:
            raise
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreUnavailable(f"postgres write failed: {e}") from e

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        pool = await self._get_pool()
        try:
            return await pool.fetchrow(query, *params)
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreUnavailable(f"postgres read failed: {e}") from e

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        try:
            return await pool.fetch(query, *params)
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreUnavailable(f"postgres read failed: {e}") from e

    # ------------------------------------------------------------------
    async def record_trigger(self, event: TriggerEvent) -> bool:
        try:
            await self._execute(
                "INSERT INTO flowcore_triggers (id, data) VALUES ($1, $2)",
                event.id,
                event.model_dump_json(),
            )
        except asyncpg.UniqueViolationError:
            return False
        return True

    async def get_trigger(self, event_id: str) -> TriggerEvent | None:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM flowcore_triggers WHERE id = $1", event_id
        )
        return TriggerEvent.model_validate_json(row["data"]) if row else None

    async def create_workflow(self, instance: WorkflowInstance) -> bool:
        try:
            await self._execute(
                "INSERT INTO flowcore_workflows "
                "(id, trigger_event_id, current_state, version, data) "
                "VALUES ($1, $2, $3, $4, $5)",
                instance.id,
                instance.trigger_event_id,
                instance.current_state,
                instance.version,
                instance.model_dump_json(),
            )
        except asyncpg.UniqueViolationError:
            return False
        return True

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM flowcore_workflows WHERE id = $1", workflow_id
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def find_workflow_by_trigger(self, event_id: str) -> WorkflowInstance | None:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM flowcore_workflows WHERE trigger_event_id = $1",
            event_id,
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def list_workflows(self, state: Optional[str] = None) -> list[WorkflowInstance]:
        if state is None:
            rows = await self._fetch("SELECT data::text AS data FROM flowcore_workflows")
        else:
            rows = await self._fetch(
                "SELECT data::text AS data FROM flowcore_workflows WHERE current_state = $1",
                state,
            )
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    async def apply_transition(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        transition: StateTransition,
    ) -> bool:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    status = await conn.execute(
                        "UPDATE flowcore_workflows "
                        "SET current_state = $1, version = $2, data = $3 "
                        "WHERE id = $4 AND version = $5",
                        instance.current_state,
                        instance.version,
                        instance.model_dump_json(),
                        instance.id,
                        expected_version,
                    )
                    if status != "UPDATE 1":
                        return False
                    await conn.execute(
                        "INSERT INTO flowcore_transitions (workflow_id, sequence, data) "
                        "VALUES ($1, $2, $3)",
                        transition.workflow_id,
                        transition.sequence,
                        transition.model_dump_json(),
                    )
        except asyncpg.UniqueViolationError:
            return False
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreUnavailable(f"postgres transition write failed: {e}") from e
        return True

    async def list_transitions(self, workflow_id: str) -> list[StateTransition]:
        rows = await self._fetch(
            "SELECT data::text AS data FROM flowcore_transitions "
            "WHERE workflow_id = $1 ORDER BY sequence",
            workflow_id,
        )
        return [StateTransition.model_validate_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    async def save_job(self, job: Job) -> None:
        await self._execute(
            "INSERT INTO flowcore_jobs (id, workflow_id, status, enqueued_at, data) "
            "VALUES ($1, $2, $3, $4, $5) "
            "ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status, data = EXCLUDED.data",
            job.id,
            job.workflow_id,
            job.status.value,
            job.enqueued_at,
            job.model_dump_json(),
        )

    async def get_job(self, job_id: str) -> Job | None:
        row = await self._fetchrow(
            "SELECT data::text AS data FROM flowcore_jobs WHERE id = $1", job_id
        )
        return Job.model_validate_json(row["data"]) if row else None

    async def compare_and_set_job(
        self, job_id: str, expected: Collection[JobStatus], **changes: Any
    ) -> Job | None:
        pool = await self._get_pool()
        if "status" in changes:
            changes["status"] = JobStatus(changes["status"])
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        "SELECT data::text AS data FROM flowcore_jobs WHERE id = $1 FOR UPDATE",
                        job_id,
                    )
                    if row is None:
                        return None
                    job = Job.model_validate_json(row["data"])
                    if job.status not in expected:
                        return None
                    updated = job.model_copy(update={**changes, "updated_at": utcnow()})
                    await conn.execute(
                        "UPDATE flowcore_jobs SET status = $1, data = $2 WHERE id = $3",
                        updated.status.value,
                        updated.model_dump_json(),
                        job_id,
                    )
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreUnavailable(f"postgres job update failed: {e}") from e
        return updated

    async def list_jobs(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Collection[JobStatus]] = None,
    ) -> list[Job]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if statuses is not None:
            params.append([JobStatus(s).value for s in statuses])
            clauses.append(f"status = ANY(${len(params)}::text[])")
        query = "SELECT data::text AS data FROM flowcore_jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY enqueued_at"
        rows = await self._fetch(query, *params)
        return [Job.model_validate_json(r["data"]) for r in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
