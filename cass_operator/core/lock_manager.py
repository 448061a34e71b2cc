"""
Per-datacenter reconcile lock in Redis.

At most one pass runs per datacenter across all operator replicas. The lock
is a plain key set with NX and an expiry, so a replica that dies mid-pass
blocks its datacenter for at most ``lock_timeout_seconds``.

Usage:
    >>> locks = LockManager(redis_client)
    >>> async with locks.hold("dse/dc1", "operator-a1b2") as acquired:
    ...     if acquired:
    ...         await reconcile()
"""
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as aioredis

from cass_operator.config.logging import get_logger
from cass_operator.config.settings import settings

logger = get_logger(__name__)

LOCK_KEY_PREFIX = "datacenter_lock"

# Compare-and-delete: KEYS[1] is removed only while it still holds ARGV[1]
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class LockManager:
    """Owner-tracked, expiring locks keyed by ``namespace/name``."""

    def __init__(self, redis_client: aioredis.Redis):
        self.redis = redis_client

    @staticmethod
    def lock_key(datacenter_key: str) -> str:
        return f"{LOCK_KEY_PREFIX}:{datacenter_key}"

    async def acquire_lock(
        self,
        datacenter_key: str,
        owner_id: str,
        timeout: Optional[int] = None,
    ) -> bool:
        """
        Take the lock of a datacenter if nobody holds it.

        Args:
            datacenter_key: ``namespace/name`` of the datacenter
            owner_id: Identity of the operator instance
            timeout: Expiry in seconds (defaults to settings.lock_timeout_seconds)

        Returns:
            True if this owner now holds the lock
        """
        timeout = timeout or settings.lock_timeout_seconds
        value = json.dumps(
            {"owner_id": owner_id, "acquired_at": datetime.now(timezone.utc).isoformat()}
        )

        if await self.redis.set(self.lock_key(datacenter_key), value, ex=timeout, nx=True):
            logger.debug("lock_acquired", datacenter=datacenter_key, owner_id=owner_id)
            return True

        holder = await self.get_lock_info(datacenter_key) or {}
        logger.info(
            "datacenter_locked_elsewhere",
            datacenter=datacenter_key,
            owner_id=owner_id,
            holder=holder.get("owner_id"),
            expires_in_seconds=holder.get("ttl_seconds"),
        )
        return False

    async def release_lock(self, datacenter_key: str, owner_id: str) -> bool:
        """
        Drop the lock if ``owner_id`` holds it.

        Returns:
            False if the lock expired or another owner holds it
        """
        key = self.lock_key(datacenter_key)
        raw = await self.redis.get(key)
        holder = json.loads(raw).get("owner_id") if raw else None

        # The delete only happens if the value read above is still in place
        deleted = 0
        if holder == owner_id:
            deleted = await self.redis.eval(RELEASE_SCRIPT, 1, key, raw)

        if not deleted:
            # Expired mid-pass; another replica may already be working on it
            logger.warning(
                "lock_lost_before_release",
                datacenter=datacenter_key,
                owner_id=owner_id,
                holder=holder,
            )
            return False

        logger.debug("lock_released", datacenter=datacenter_key, owner_id=owner_id)
        return True

    async def get_lock_info(self, datacenter_key: str) -> Optional[Dict[str, Any]]:
        """Lock document plus ``ttl_seconds``, or None if unlocked."""
        key = self.lock_key(datacenter_key)
        raw = await self.redis.get(key)
        if not raw:
            return None

        info = json.loads(raw)
        info["ttl_seconds"] = await self.redis.ttl(key)
        return info

    @asynccontextmanager
    async def hold(self, datacenter_key: str, owner_id: str) -> AsyncIterator[bool]:
        """Yield whether the lock was taken; release it on exit if it was."""
        acquired = await self.acquire_lock(datacenter_key, owner_id)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release_lock(datacenter_key, owner_id)
