"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Collection, Optional

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


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Each record is stored as a JSON document next to the columns used for
    lookups and conditional writes (``version`` for workflows, ``status``
    for jobs).
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open sqlite database {self.db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS triggers (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    trigger_event_id TEXT UNIQUE,
                    current_state TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS transitions (
                    workflow_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (workflow_id, sequence)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT,
                    status TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS jobs_workflow_idx ON jobs (workflow_id)")
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                self._conn.commit()
                return cur.rowcount
            except sqlite3.IntegrityError:
                self._conn.rollback()
                raise
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreUnavailable(f"sqlite write failed: {e}") from e

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchone()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"sqlite read failed: {e}") from e

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"sqlite read failed: {e}") from e

    def _apply_transition(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        transition: StateTransition,
    ) -> bool:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(
                    "UPDATE workflows SET current_state = ?, version = ?, data = ? "
                    "WHERE id = ? AND version = ?",
                    (
                        instance.current_state,
                        instance.version,
                        instance.model_dump_json(),
                        instance.id,
                        expected_version,
                    ),
                )
                if cur.rowcount != 1:
                    self._conn.rollback()
                    return False
                cur.execute(
                    "INSERT INTO transitions (workflow_id, sequence, data) VALUES (?, ?, ?)",
                    (transition.workflow_id, transition.sequence, transition.model_dump_json()),
                )
                self._conn.commit()
                return True
            except sqlite3.IntegrityError:
                self._conn.rollback()
                return False
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreUnavailable(f"sqlite transition write failed: {e}") from e

    def _compare_and_set_job(
        self, job_id: str, expected: Collection[JobStatus], changes: dict[str, Any]
    ) -> Job | None:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute("SELECT status, data FROM jobs WHERE id = ?", (job_id,))
                row = cur.fetchone()
                if row is None:
                    return None
                job = Job.model_validate_json(row["data"])
                if job.status not in expected:
                    return None
                if "status" in changes:
                    changes = {**changes, "status": JobStatus(changes["status"])}
                updated = job.model_copy(update={**changes, "updated_at": utcnow()})
                cur.execute(
                    "UPDATE jobs SET status = ?, data = ? WHERE id = ? AND status = ?",
                    (updated.status.value, updated.model_dump_json(), job_id, row["status"]),
                )
                if cur.rowcount != 1:
                    self._conn.rollback()
                    return None
                self._conn.commit()
                return updated
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreUnavailable(f"sqlite job update failed: {e}") from e

    # ------------------------------------------------------------------
    # Repository API
    async def record_trigger(self, event: TriggerEvent) -> bool:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO triggers (id, data) VALUES (?, ?)",
                event.id,
                event.model_dump_json(),
            )
        except sqlite3.IntegrityError:
            return False
        return True

    async def get_trigger(self, event_id: str) -> TriggerEvent | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM triggers WHERE id = ?", event_id
        )
        return TriggerEvent.model_validate_json(row["data"]) if row else None

    async def create_workflow(self, instance: WorkflowInstance) -> bool:
        try:
            await asyncio.to_thread(
                self._execute,
                "INSERT INTO workflows (id, trigger_event_id, current_state, version, data) "
                "VALUES (?, ?, ?, ?, ?)",
                instance.id,
                instance.trigger_event_id,
                instance.current_state,
                instance.version,
                instance.model_dump_json(),
            )
        except sqlite3.IntegrityError:
            return False
        return True

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflows WHERE id = ?", workflow_id
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def find_workflow_by_trigger(self, event_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflows WHERE trigger_event_id = ?",
            event_id,
        )
        return WorkflowInstance.model_validate_json(row["data"]) if row else None

    async def list_workflows(self, state: Optional[str] = None) -> list[WorkflowInstance]:
        if state is None:
            rows = await asyncio.to_thread(self._fetchall, "SELECT data FROM workflows")
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT data FROM workflows WHERE current_state = ?",
                state,
            )
        return [WorkflowInstance.model_validate_json(r["data"]) for r in rows]

    async def apply_transition(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        transition: StateTransition,
    ) -> bool:
        return await asyncio.to_thread(
            self._apply_transition, instance, expected_version, transition
        )

    async def list_transitions(self, workflow_id: str) -> list[StateTransition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM transitions WHERE workflow_id = ? ORDER BY sequence",
            workflow_id,
        )
        return [StateTransition.model_validate_json(r["data"]) for r in rows]

    async def save_job(self, job: Job) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO jobs (id, workflow_id, status, enqueued_at, data) "
            "VALUES (?, ?, ?, ?, ?)",
            job.id,
            job.workflow_id,
            job.status.value,
            job.enqueued_at.isoformat(),
            job.model_dump_json(),
        )

    async def get_job(self, job_id: str) -> Job | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM jobs WHERE id = ?", job_id
        )
        return Job.model_validate_json(row["data"]) if row else None

    async def compare_and_set_job(
        self, job_id: str, expected: Collection[JobStatus], **changes: Any
    ) -> Job | None:
        return await asyncio.to_thread(
            self._compare_and_set_job, job_id, expected, changes
        )

    async def list_jobs(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Collection[JobStatus]] = None,
    ) -> list[Job]:
        query = "SELECT data FROM jobs"
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if statuses is not None:
            if not statuses:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(JobStatus(s).value for s in statuses)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY enqueued_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Job.model_validate_json(r["data"]) for r in rows]

    async def close(self) -> None:
        with self._lock:
            self._conn.close()
