from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Shared token buckets so every API worker sees the same auth limits."""

    # KEYS[1] bucket hash; ARGV now_ms, capacity, window_ms, cost.
    # Returns {allowed, remaining, retry_after_ms}.
    _BUCKET_SCRIPT = """
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local per_ms = capacity / window

local level = tonumber(redis.call('HGET', KEYS[1], 'level') or capacity)
local stamp = tonumber(redis.call('HGET', KEYS[1], 'stamp') or now)
level = math.min(capacity, level + math.max(0, now - stamp) * per_ms)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / per_ms)
end

redis.call('HSET', KEYS[1], 'level', tostring(level), 'stamp', tostring(now))
redis.call('PEXPIRE', KEYS[1], window)
return {allowed, math.floor(level), wait}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(self._BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Ping with a throwaway sync client; raises if Redis is unreachable."""
        # The async pool must not get bound to whichever loop runs startup
        with Redis.from_url(self.redis_url, socket_connect_timeout=2) as probe:
            probe.ping()

    @staticmethod
    def bucket_key(key: str) -> str:
        # Client-supplied parts (IPs, user ids) are hashed into a fixed-shape key
        return "personachat:rl:" + hashlib.sha256(key.encode("utf-8")).hexdigest()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        allowed, remaining, wait_ms = await self._bucket(
            keys=[self.bucket_key(key)],
            args=[int(time.time() * 1000), limit, window_seconds * 1000, max(1, cost)],
        )
        reset_after = -(-int(wait_ms) // 1000)
        return bool(int(allowed)), max(0, int(remaining)), reset_after

    async def close(self) -> None:
        await self.client.aclose()
