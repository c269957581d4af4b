from __future__ import annotations

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from personachat.config import get_settings, reset_settings_cache
from personachat.logging import get_logger
from personachat.service.auth import AuthService
from personachat.service.email import EmailService
from personachat.storage.memory import MemoryStore
from personachat.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


@dataclass
class _LocalBucket:
    capacity: float
    level: float
    stamp: float

    def take(self, cost: int, window_seconds: int) -> Tuple[bool, int, int]:
        now = time.monotonic()
        per_second = self.capacity / window_seconds
        self.level = min(self.capacity, self.level + (now - self.stamp) * per_second)
        self.stamp = now
        if self.level >= cost:
            self.level -= cost
            return True, int(self.level), 0
        return False, int(self.level), math.ceil((cost - self.level) / per_second)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        try:
            self.store = MemoryStore(self.settings.data_dir, self.settings.db_filename)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                # Rate limits stay per-process; everything else is unaffected
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.auth = AuthService(self.store, self.settings)
        self.email = EmailService.from_settings(self.settings)
        self._local_rate_limits: Dict[str, _LocalBucket] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            db_path=str(self.settings.db_path),
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        previous = runtime
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if previous is not None and previous.cache is not None:
            try:
                asyncio.get_running_loop().create_task(previous.cache.close())
            except RuntimeError:
                asyncio.run(previous.cache.close())
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit; Redis when available, else per-process.

    A bucket holds ``limit`` tokens and refills completely over
    ``window_seconds``. Returns (allowed, remaining, reset_after_seconds).
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    async with runtime._local_rate_limit_lock:
        bucket = runtime._local_rate_limits.get(key)
        if bucket is None:
            bucket = runtime._local_rate_limits[key] = _LocalBucket(
                capacity=float(limit), level=float(limit), stamp=time.monotonic()
            )
        return bucket.take(cost, window_seconds)
