"""
Per-group merge locks.

Merge and unmerge of one carpool group must not interleave.  The database
already refuses a second claim through the conditional status update; the
lock keeps a concurrent caller from even starting the route synthesis.

* ``DistributedLock`` -- Redis ``SET NX EX`` acquire plus a Lua script for
  atomic check-and-delete on release.  Works across processes.
* ``NullLock``        -- no-op, used when Redis is not configured.
"""

from __future__ import annotations

import uuid
from typing import Optional

import redis.asyncio as aioredis

from carpool.domain.errors import ConflictError

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def release(self) -> None:
        """Release only if we still own the lock (atomic via Lua)."""
        await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token)

    async def __aenter__(self):
        if not await self.acquire():
            raise ConflictError(
                "Another merge operation is in progress for this carpool group"
            )
        return self

    async def __aexit__(self, *args):
        await self.release()


class NullLock:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return None


class GroupLockFactory:
    """Hands out the lock guarding one carpool group."""

    def __init__(self, client: Optional[aioredis.Redis] = None, ttl_seconds: int = 30):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def for_group(self, group_id: int):
        if self.client is None:
            return NullLock()
        return DistributedLock(
            self.client, f"carpool-group:{group_id}", ttl_seconds=self.ttl_seconds
        )
