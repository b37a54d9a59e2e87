"""Redis-based distributed lock so only one mutating pipeline run executes at a time."""

import asyncio
import json
import logging
import time
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import redis.asyncio as redis

from quality_pipeline.config import settings

logger = logging.getLogger(__name__)

LOCK_KEY = "quality:pipeline:lock"
HEARTBEAT_KEY = "quality:pipeline:heartbeat"

# Delete lock + heartbeat only when run_id and token match.
# Returns 0 = no lock, 1 = released, 2 = held by someone else
_UNLOCK_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end
local ok, data = pcall(cjson.decode, lock_value)
if not ok then
    return 2
end
if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('DEL', KEYS[1])
    redis.call('DEL', KEYS[2])
    return 1
end
return 2
"""

# Extend the TTL and stamp the heartbeat when run_id and token match.
# Returns 0 = no lock, 1 = refreshed, 2 = held by someone else
_REFRESH_SCRIPT = """
local lock_value = redis.call('GET', KEYS[1])
if not lock_value then
    return 0
end
local ok, data = pcall(cjson.decode, lock_value)
if not ok then
    return 0
end
if data.run_id == ARGV[1] and data.token == ARGV[2] then
    redis.call('EXPIRE', KEYS[1], ARGV[3])
    redis.call('SET', KEYS[2], ARGV[4], 'EX', ARGV[3])
    return 1
end
return 2
"""


class RunLockManager:
    """
    Distributed run lock backed by Redis.

    Features:
    - SET NX EX acquisition with a TTL (4 hours default)
    - Token-verified release and refresh (Lua, atomic)
    - Heartbeat key recording the last refresh
    - Lock info for the admin API and diagnostics
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> bool:
        """True when Redis answers."""
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except (redis.RedisError, OSError) as e:
            logger.debug(f"Redis ping failed: {e}")
            return False

    async def acquire(self, run_id: str, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Acquire the run lock.

        Args:
            run_id: Run identifier (UUID hex)
            ttl_seconds: Lock TTL (defaults to settings)

        Returns:
            Token string if acquired, None if another run holds the lock
        """
        client = await self._get_redis()
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        token = uuid4().hex
        value = json.dumps({
            "run_id": run_id,
            "token": token,
            "started_at": datetime.utcnow().isoformat(),
        })

        acquired = await client.set(LOCK_KEY, value, nx=True, ex=ttl)
        if not acquired:
            holder = await self.get_lock_info()
            logger.debug(f"Run lock already held: {holder}")
            return None

        await client.set(HEARTBEAT_KEY, str(time.time()), ex=ttl)
        logger.info(f"Acquired run lock for run_id: {run_id[:16]}...")
        return token

    async def release(self, run_id: str, token: Optional[str]) -> bool:
        """
        Release the lock if this run still owns it.

        Returns:
            True if released (or already gone), False if owned by another run
        """
        if not token:
            logger.warning("Release requested without token; refusing (use force_unlock for recovery)")
            return False

        client = await self._get_redis()
        result = await client.eval(_UNLOCK_SCRIPT, 2, LOCK_KEY, HEARTBEAT_KEY, run_id, token)
        if result == 1:
            logger.info(f"Released run lock for run_id: {run_id[:16]}...")
            return True
        if result == 0:
            logger.debug("Run lock already released")
            return True
        logger.warning(f"Refusing to release run lock held by another run (requested={run_id[:16]}...)")
        return False

    async def refresh(self, run_id: str, token: str, ttl_seconds: Optional[int] = None) -> bool:
        """Extend the lock TTL (heartbeat). False if the lock was lost."""
        client = await self._get_redis()
        ttl = ttl_seconds or settings.run_lock_ttl_seconds
        result = await client.eval(
            _REFRESH_SCRIPT,
            2,
            LOCK_KEY,
            HEARTBEAT_KEY,
            run_id,
            token,
            str(ttl),
            str(time.time()),
        )
        if result == 1:
            return True
        if result == 2:
            logger.warning(f"Run lock for {run_id[:16]}... is now held by another run")
        else:
            logger.debug("Run lock not found (may have expired)")
        return False

    async def force_unlock(self) -> bool:
        """Clear the lock without token verification (operator recovery)."""
        client = await self._get_redis()
        await client.delete(LOCK_KEY, HEARTBEAT_KEY)
        logger.warning("Force-cleared run lock and heartbeat keys")
        return True

    async def get_lock_info(self) -> Optional[dict[str, Any]]:
        """
        Current lock holder.

        Returns:
            Dict with run_id, started_at and ttl_seconds, or None if unlocked
        """
        client = await self._get_redis()
        value = await client.get(LOCK_KEY)
        if not value:
            return None
        ttl = await client.ttl(LOCK_KEY)

        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            logger.error(f"Invalid run lock value: {value!r}")
            return {"raw_value": value, "ttl_seconds": ttl if ttl > 0 else None}
        return {
            "run_id": data.get("run_id"),
            "started_at": data.get("started_at"),
            "ttl_seconds": ttl if ttl > 0 else None,
        }

    async def get_heartbeat_age(self) -> Optional[float]:
        """Seconds since the last heartbeat, or None if missing."""
        client = await self._get_redis()
        value = await client.get(HEARTBEAT_KEY)
        if not value:
            return None
        try:
            return max(0.0, time.time() - float(value))
        except (TypeError, ValueError):
            return None


async def refresh_lock_heartbeat(
    lock_manager: RunLockManager,
    run_id: str,
    token: str,
    interval: Optional[int] = None,
    ttl: Optional[int] = None,
) -> None:
    """
    Background task refreshing the lock TTL until cancelled.

    Stops after three consecutive failed refreshes.
    """
    interval = interval or settings.run_lock_heartbeat_interval_seconds
    failures = 0

    try:
        while True:
            await asyncio.sleep(interval)
            try:
                refreshed = await lock_manager.refresh(run_id, token, ttl)
            except redis.RedisError as e:
                logger.warning(f"Heartbeat refresh error: {e}")
                refreshed = False

            if refreshed:
                failures = 0
                continue
            failures += 1
            logger.warning(
                f"Heartbeat failed for run_id: {run_id[:16]}... (consecutive failures: {failures})"
            )
            if failures >= 3:
                logger.error(f"Heartbeat stopping after {failures} failures for run_id: {run_id[:16]}...")
                break
    except asyncio.CancelledError:
        logger.debug(f"Heartbeat cancelled for run_id: {run_id[:16]}...")
        raise


# Global lock manager instance
run_lock_manager = RunLockManager()
