"""
Single-instance lock for batch jobs.

The lock is a Redis key set with ``SET NX EX`` and an ownership token,
released only by the process that holds the token. When no Redis client
is available the lock falls back to a process-local ``asyncio.Lock`` per
job name, which still keeps two runs in the same process apart.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Dict, Optional

import redis.asyncio as redis
import structlog

from libs.common.errors import JobAlreadyRunningError

logger = structlog.get_logger(__name__)

LOCK_KEY_PREFIX = "jobs:lock:"

_local_locks: Dict[str, asyncio.Lock] = {}


def _local_lock(job_name: str) -> asyncio.Lock:
    lock = _local_locks.get(job_name)
    if lock is None:
        lock = _local_locks[job_name] = asyncio.Lock()
    return lock


class JobLock:
    """
    Async context manager guarding one batch job.

    Usage:
        async with JobLock("feedback-learning", redis_client, ttl_seconds=3600):
            await processor.run()

    Raises:
        JobAlreadyRunningError: on enter, if another run holds the lock.
    """

    def __init__(self, job_name: str, client: Optional[redis.Redis] = None, ttl_seconds: int = 3600):
        self.job_name = job_name
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.key = f"{LOCK_KEY_PREFIX}{job_name}"
        self._token = uuid.uuid4().hex
        self._held_local: Optional[asyncio.Lock] = None

    async def acquire(self) -> None:
        if self.client is None:
            lock = _local_lock(self.job_name)
            if lock.locked():
                raise JobAlreadyRunningError(self.job_name)
            await lock.acquire()
            self._held_local = lock
            logger.info("Job lock acquired", job=self.job_name, backend="local")
            return

        acquired = await self.client.set(self.key, self._token, nx=True, ex=self.ttl_seconds)
        if not acquired:
            logger.warning("Job lock held by another run", job=self.job_name, key=self.key)
            raise JobAlreadyRunningError(self.job_name)
        logger.info("Job lock acquired", job=self.job_name, backend="redis", ttl_seconds=self.ttl_seconds)

    async def release(self) -> None:
        if self._held_local is not None:
            self._held_local.release()
            self._held_local = None
            logger.info("Job lock released", job=self.job_name, backend="local")
            return

        if self.client is None:
            return
        released = await self._release_if_owner()
        if released:
            logger.info("Job lock released", job=self.job_name, backend="redis")
        else:
            logger.warning("Job lock expired or taken over before release", job=self.job_name, key=self.key)

    async def _release_if_owner(self) -> bool:
        """Delete the key only while it still holds our token."""
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self.key)
                if await pipe.get(self.key) != self._token:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(self.key)
                await pipe.execute()
            except redis.WatchError:
                return False
        return True

    async def __aenter__(self) -> "JobLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
