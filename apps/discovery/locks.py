# apps/discovery/locks.py
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.exceptions import RedisError

from errors import AssignmentLockTimeout, StorageError

log = logging.getLogger("locks")

LOCK_TTL_MS = 5000
LOCK_WAIT_MS = 2000
RETRY_INTERVAL_MS = 25


def assignment_lock_key(experiment_id, user_id) -> str:
    return f"lock:assignment:{experiment_id}:{user_id}"


class RedisAssignmentLock:
    """Advisory lock serializing first assignment per (experiment, user).

    Only needed when the repository cannot do an atomic insert-if-absent.
    """

    def __init__(
        self,
        client,
        *,
        ttl_ms: int = LOCK_TTL_MS,
        wait_ms: int = LOCK_WAIT_MS,
        retry_interval_ms: int = RETRY_INTERVAL_MS,
    ):
        self.client = client
        self.ttl_ms = ttl_ms
        self.wait_ms = wait_ms
        self.retry_interval_ms = retry_interval_ms

    async def acquire(self, key: str, token: str) -> bool:
        try:
            ok = await self.client.set(key, token, nx=True, px=self.ttl_ms)
        except RedisError as exc:
            log.warning("assignment_lock_acquire_failed key=%s: %s", key, exc)
            raise StorageError("assignment_lock", key) from exc
        return bool(ok)

    async def release(self, key: str, token: str) -> None:
        try:
            val = await self.client.get(key)
            if val == token:
                await self.client.delete(key)
        except RedisError as exc:
            # lock expires on its own after ttl_ms
            log.warning("assignment_lock_release_failed key=%s: %s", key, exc)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.wait_ms / 1000.0
        attempts = 0
        while not await self.acquire(key, token):
            attempts += 1
            if time.monotonic() >= deadline:
                raise AssignmentLockTimeout(key)
            await asyncio.sleep(self.retry_interval_ms / 1000.0)
        if attempts:
            log.info("assignment_lock_contended key=%s attempts=%d", key, attempts)
        try:
            yield
        finally:
            await self.release(key, token)
