"""In-memory job queue for single-process deployments and tests."""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from typing import Collection, List, Optional, Tuple

from ..contracts import Job, utcnow
from .base import BaseJobQueue

# (-priority, enqueued_at, seq, job_id, kind, workflow_id)
_Entry = Tuple[int, float, int, str, str, Optional[str]]


class InMemoryJobQueue(BaseJobQueue):
    """Heap-ordered queue guarded by a lock.

    The lock makes push/pop safe for producers on other threads; a blocking
    dequeue polls rather than waiting on a loop-bound condition.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._lock = threading.Lock()
        self._ready: List[_Entry] = []
        self._delayed: List[Tuple[float, int, _Entry]] = []
        self._seq = itertools.count()

    async def _push(self, job: Job) -> None:
        with self._lock:
            seq = next(self._seq)
            entry: _Entry = (
                -job.priority,
                job.enqueued_at.timestamp(),
                seq,
                job.id,
                job.kind,
                job.workflow_id,
            )
            if job.not_before is not None and job.not_before > utcnow():
                heapq.heappush(self._delayed, (job.not_before.timestamp(), seq, entry))
            else:
                heapq.heappush(self._ready, entry)

    def _promote_due(self) -> None:
        now = time.time()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, entry = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, entry)

    async def _pop(self, capabilities: Optional[Collection[str]]) -> Optional[str]:
        with self._lock:
            self._promote_due()
            skipped: List[_Entry] = []
            found: Optional[_Entry] = None
            while self._ready:
                entry = heapq.heappop(self._ready)
                if not capabilities or entry[4] in capabilities:
                    found = entry
                    break
                skipped.append(entry)
            for entry in skipped:
                heapq.heappush(self._ready, entry)
            return found[3] if found else None

    async def peek_depth(self) -> int:
        with self._lock:
            return len(self._ready) + len(self._delayed)

    async def prune_stale(self) -> int:
        with self._lock:
            ids = [e[3] for e in self._ready] + [d[2][3] for d in self._delayed]
        stale = set()
        for job_id in ids:
            if await self._is_stale(job_id):
                stale.add(job_id)
        if not stale:
            return 0
        with self._lock:
            before = len(self._ready) + len(self._delayed)
            self._ready = [e for e in self._ready if e[3] not in stale]
            self._delayed = [d for d in self._delayed if d[2][3] not in stale]
            heapq.heapify(self._ready)
            heapq.heapify(self._delayed)
            return before - len(self._ready) - len(self._delayed)

    async def remove_workflow(self, workflow_id: str) -> int:
        with self._lock:
            before = len(self._ready) + len(self._delayed)
            self._ready = [e for e in self._ready if e[5] != workflow_id]
            self._delayed = [d for d in self._delayed if d[2][5] != workflow_id]
            heapq.heapify(self._ready)
            heapq.heapify(self._delayed)
            return before - len(self._ready) - len(self._delayed)

    def snapshot(self) -> List[str]:
        """Ready job ids in dequeue order (for inspection)."""
        with self._lock:
            return [e[3] for e in sorted(self._ready)]
