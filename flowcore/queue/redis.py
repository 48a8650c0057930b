"""Redis-backed job queue for multi-process dispatch."""

from __future__ import annotations

import logging
import time
from typing import Any, Collection, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..contracts import Job, utcnow
from ..errors import StoreUnavailable
from .base import BaseJobQueue

logger = logging.getLogger(__name__)

_SCAN_WINDOW = 50


class RedisJobQueue(BaseJobQueue):
    """Sorted-set queue.

    Ready entries live in ``<prefix>:ready`` scored by ``-priority``; equal
    scores are ordered by member, and members start with the zero-padded
    enqueue time so ties dequeue FIFO. ``ZREM`` succeeds for exactly one
    caller, which is what makes a claim atomic across processes. Delayed
    retries wait in ``<prefix>:delayed`` scored by their ready time.
    """

    durable_index = True

    def __init__(
        self,
        *args: Any,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "flowcore",
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.ready_key = f"{key_prefix}:ready"
        self.delayed_key = f"{key_prefix}:delayed"
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        try:
            await self._redis.ping()
        except RedisError as e:
            raise StoreUnavailable(f"Cannot reach redis at {self.host}:{self.port}: {e}") from e

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    @staticmethod
    def _member(job: Job) -> str:
        micros = int(job.enqueued_at.timestamp() * 1_000_000)
        return f"{micros:020d}|{job.id}|{job.kind}|{job.workflow_id or ''}|{job.priority}"

    @staticmethod
    def _parse(member: str) -> tuple[str, str, str, int]:
        parts = member.split("|")
        job_id = "|".join(parts[1:-3])
        return job_id, parts[-3], parts[-2], int(parts[-1])

    async def _push(self, job: Job) -> None:
        client = await self._client()
        member = self._member(job)
        try:
            if job.not_before is not None and job.not_before > utcnow():
                await client.zadd(self.delayed_key, {member: job.not_before.timestamp()})
            else:
                await client.zadd(self.ready_key, {member: -job.priority})
        except RedisError as e:
            raise StoreUnavailable(f"redis enqueue failed: {e}") from e

    async def _promote_due(self, client: Any) -> None:
        due = await client.zrangebyscore(self.delayed_key, "-inf", time.time())
        for member in due:
            if await client.zrem(self.delayed_key, member):
                _, _, _, priority = self._parse(member)
                await client.zadd(self.ready_key, {member: -priority})

    async def _pop(self, capabilities: Optional[Collection[str]]) -> Optional[str]:
        client = await self._client()
        try:
            await self._promote_due(client)
            start = 0
            while True:
                members = await client.zrange(self.ready_key, start, start + _SCAN_WINDOW - 1)
                if not members:
                    return None
                for member in members:
                    job_id, kind, _, _ = self._parse(member)
                    if capabilities and kind not in capabilities:
                        continue
                    if await client.zrem(self.ready_key, member):
                        return job_id
                    logger.debug(f"Lost claim race for job {job_id}")
                start += _SCAN_WINDOW
        except RedisError as e:
            raise StoreUnavailable(f"redis dequeue failed: {e}") from e

    async def peek_depth(self) -> int:
        client = await self._client()
        try:
            return await client.zcard(self.ready_key) + await client.zcard(self.delayed_key)
        except RedisError as e:
            raise StoreUnavailable(f"redis depth query failed: {e}") from e

    async def remove_workflow(self, workflow_id: str) -> int:
        client = await self._client()
        removed = 0
        try:
            for key in (self.ready_key, self.delayed_key):
                for member in await client.zrange(key, 0, -1):
                    if self._parse(member)[2] == workflow_id:
                        removed += await client.zrem(key, member)
        except RedisError as e:
            raise StoreUnavailable(f"redis removal failed: {e}") from e
        return removed

    async def prune_stale(self) -> int:
        client = await self._client()
        removed = 0
        try:
            for key in (self.ready_key, self.delayed_key):
                for member in await client.zrange(key, 0, -1):
                    if await self._is_stale(self._parse(member)[0]):
                        removed += await client.zrem(key, member)
        except RedisError as e:
            raise StoreUnavailable(f"redis prune failed: {e}") from e
        return removed
