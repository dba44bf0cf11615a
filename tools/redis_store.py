import os
import time
from collections import deque
from typing import Deque, Dict, Optional

import redis.asyncio as redis
from loguru import logger


class RedisStore:
    """Redis-backed key/value state with an in-memory fallback.

    Holds the change-detection map (last seen ``updated_at`` per lead) and the
    per-operator sliding-window rate limit. When Redis is not configured or
    unreachable, everything lives in process memory for the process lifetime.
    """

    def __init__(self, url: Optional[str] = None, prefix: str = "triage"):
        self.url = url or os.getenv("REDIS_URL")
        self.prefix = prefix
        self.r = None
        self._memory_hashes: Dict[str, Dict[str, int]] = {}
        self._memory_windows: Dict[str, Deque[float]] = {}

    async def connect(self) -> None:
        """Open the connection; on any failure fall back to in-memory storage."""
        if not self.url:
            logger.warning("No Redis URL provided, using in-memory storage")
            return
        try:
            client = redis.from_url(self.url)
            await client.ping()
            self.r = client
            logger.info("Redis connection established successfully")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            # Fallback to in-memory storage (not recommended for production)
            self.r = None

    async def close(self) -> None:
        if self.r is not None:
            await self.r.aclose()
            self.r = None

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    async def get_int(self, name: str, field: str) -> int:
        """Read an integer field of a hash; missing fields read as 0."""
        if self.r is not None:
            try:
                value = await self.r.hget(self._key(name), field)
                return int(value) if value is not None else 0
            except Exception as e:
                logger.error(f"Redis read failed for {name}:{field}: {e}")
        return self._memory_hashes.get(name, {}).get(field, 0)

    async def set_int(self, name: str, field: str, value: int) -> None:
        # Memory copy is always kept so a Redis outage mid-run does not lose progress
        self._memory_hashes.setdefault(name, {})[field] = value
        if self.r is not None:
            try:
                await self.r.hset(self._key(name), field, value)
            except Exception as e:
                logger.error(f"Redis write failed for {name}:{field}: {e}")

    async def allow(self, key: str, limit: int, window: int) -> bool:
        """
        Sliding-window rate limit check.

        Args:
            key: Bucket identifier (e.g. the operator id)
            limit: Maximum hits allowed inside the window
            window: Window length in seconds

        Returns:
            True if this hit is within the limit. Fails open on Redis errors.
        """
        now = time.time()

        if self.r is not None:
            redis_key = self._key(f"ratelimit:{key}")
            try:
                pipe = self.r.pipeline()
                pipe.zremrangebyscore(redis_key, 0, now - window)
                pipe.zadd(redis_key, {str(now): now})
                pipe.zcard(redis_key)
                pipe.expire(redis_key, window + 1)
                results = await pipe.execute()
                if results[2] > limit:
                    logger.warning(f"Rate limit exceeded: key={key} count={results[2]} limit={limit}")
                    return False
                return True
            except Exception as e:
                logger.warning(f"Rate limiter Redis error: {e}. Allowing request.")
                return True

        hits = self._memory_windows.setdefault(key, deque())
        while hits and hits[0] <= now - window:
            hits.popleft()
        if len(hits) >= limit:
            logger.warning(f"Rate limit exceeded: key={key} count={len(hits)} limit={limit}")
            return False
        hits.append(now)
        return True
