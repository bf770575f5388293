"""
Redis-based distributed locks for redundant settlement workers.

Row latches (processed, final_pool_calculated) are enough for a single
worker. When several workers poll the same database they additionally claim:

- lock:prizeflow:tick                      # one scheduler tick across instances
- lock:prizeflow:settlement:{tournament}   # one settlement per tournament

Prize pool finalization needs no lock: its conditional UPDATE on
final_pool_calculated already lets only one worker write the pool.

Acquire is SET NX PX; release is an owner-checked Lua script so an expired
lock taken over by another worker is never deleted by the old owner.
"""

import asyncio
import hashlib
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncGenerator, Optional, Set
from uuid import uuid4

import redis.asyncio as redis

from prizeflow.logging_config import get_logger

logger = get_logger(__name__)


class LockScope(Enum):
    """What a lock protects."""

    TICK = "tick"
    SETTLEMENT = "settlement"


@dataclass
class LockInfo:
    """Lock metadata."""

    lock_key: str
    owner_id: str
    acquired_at: float
    expires_at: float
    scope: LockScope


class DistributedLockError(Exception):
    """Base lock error."""

    pass


class LockAcquisitionError(DistributedLockError):
    """Failed to acquire lock within timeout."""

    pass


class DistributedLockManager:
    """Redis lock manager shared by the scheduler and the settlement jobs."""

    RELEASE_LOCK_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    KEY_PREFIX = "lock:prizeflow"

    def __init__(
        self,
        redis_client: redis.Redis,
        default_lock_timeout_ms: int = 300_000,
        default_acquire_timeout_ms: int = 0,
        retry_interval_ms: int = 50,
    ):
        self.redis = redis_client
        self.default_lock_timeout_ms = default_lock_timeout_ms
        self.default_acquire_timeout_ms = default_acquire_timeout_ms
        self.retry_interval_ms = retry_interval_ms

        self._instance_id = str(uuid4())
        self._held_locks: Set[str] = set()

        self._release_script = self.redis.register_script(self.RELEASE_LOCK_SCRIPT)

    def make_lock_key(self, scope: LockScope, resource_id: Optional[str] = None) -> str:
        if resource_id is None:
            return f"{self.KEY_PREFIX}:{scope.value}"
        return f"{self.KEY_PREFIX}:{scope.value}:{resource_id}"

    def _make_owner_token(self) -> str:
        """Unique token per acquisition: instance, time and a random suffix."""
        raw = f"{self._instance_id}:{time.time_ns()}:{uuid4().hex[:8]}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    async def acquire(
        self,
        scope: LockScope,
        resource_id: Optional[str] = None,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> LockInfo:
        """Acquire a lock, retrying until acquire_timeout_ms elapses.

        An acquire timeout of 0 makes a single attempt.

        Raises:
            LockAcquisitionError: If the lock is held elsewhere past the timeout
        """
        lock_timeout = (
            self.default_lock_timeout_ms if lock_timeout_ms is None else lock_timeout_ms
        )
        acquire_timeout = (
            self.default_acquire_timeout_ms
            if acquire_timeout_ms is None
            else acquire_timeout_ms
        )

        lock_key = self.make_lock_key(scope, resource_id)
        owner_token = self._make_owner_token()
        start_time = time.monotonic() * 1000

        while True:
            acquired = await self.redis.set(
                lock_key,
                owner_token,
                nx=True,
                px=lock_timeout,
            )

            if acquired:
                now = time.time()
                self._held_locks.add(lock_key)
                return LockInfo(
                    lock_key=lock_key,
                    owner_id=owner_token,
                    acquired_at=now,
                    expires_at=now + (lock_timeout / 1000),
                    scope=scope,
                )

            elapsed = (time.monotonic() * 1000) - start_time
            if elapsed >= acquire_timeout:
                raise LockAcquisitionError(
                    f"Failed to acquire lock {lock_key} within {acquire_timeout}ms. "
                    f"Lock is held by another worker."
                )

            await asyncio.sleep(self.retry_interval_ms / 1000)

    async def release(self, lock_info: LockInfo) -> bool:
        """Release a lock if this owner still holds it.

        Returns:
            True if released, False if it had expired or changed hands
        """
        result = await self._release_script(
            keys=[lock_info.lock_key],
            args=[lock_info.owner_id],
        )
        self._held_locks.discard(lock_info.lock_key)
        return result == 1

    async def is_locked(self, scope: LockScope, resource_id: Optional[str] = None) -> bool:
        return await self.redis.exists(self.make_lock_key(scope, resource_id)) == 1

    @asynccontextmanager
    async def lock(
        self,
        scope: LockScope,
        resource_id: Optional[str] = None,
        lock_timeout_ms: Optional[int] = None,
        acquire_timeout_ms: Optional[int] = None,
    ) -> AsyncGenerator[LockInfo, None]:
        """Acquire on entry, release on exit (also on error).

        Usage:
            async with lock_manager.lock(LockScope.SETTLEMENT, tournament_id):
                await settle(tournament_id)
        """
        lock_info = await self.acquire(scope, resource_id, lock_timeout_ms, acquire_timeout_ms)
        try:
            yield lock_info
        finally:
            released = await self.release(lock_info)
            if not released:
                logger.warning("lock_expired_before_release", lock_key=lock_info.lock_key)

    async def cleanup_all(self) -> int:
        """Release every lock still tracked by this instance (shutdown)."""
        released = 0
        for lock_key in list(self._held_locks):
            try:
                await self.redis.delete(lock_key)
                released += 1
            except redis.RedisError as e:
                logger.warning("lock_cleanup_failed", lock_key=lock_key, error=str(e))
            self._held_locks.discard(lock_key)
        return released
