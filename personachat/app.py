from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from personachat.api.error_handling import register_exception_handlers
from personachat.api.routes import router
from personachat.config import get_settings
from personachat.logging import get_logger, set_correlation_id
from personachat.service.auth import AuthService

logger = get_logger(__name__)

__version__ = "1.0.0"

_settings = get_settings()

_cleanup_task: asyncio.Task | None = None


async def _run_token_cleanup(auth: AuthService, interval_seconds: int) -> None:
    """Background loop that purges expired and spent tokens."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(auth.cleanup_expired_tokens)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("token_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("token_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Sweep tokens once on startup, then on the configured interval."""
    global _cleanup_task
    from personachat.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await asyncio.to_thread(runtime.auth.cleanup_expired_tokens)
    except Exception as exc:
        logger.error("startup_token_cleanup_failed", error=str(exc))
    if runtime.settings.token_cleanup_interval_seconds > 0:
        _cleanup_task = asyncio.create_task(
            _run_token_cleanup(runtime.auth, runtime.settings.token_cleanup_interval_seconds)
        )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
            _cleanup_task = None
        if runtime.cache is not None:
            await runtime.cache.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="PersonaChat API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev frontends; no wildcard since credentials are allowed
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind X-Request-ID (client supplied or generated) to logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/auth"):
        # Token-bearing responses must never sit in a shared cache
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from personachat.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {"store": {"status": "healthy", "type": "json"}}
    healthy = True
    if runtime.cache is not None:
        try:
            await asyncio.wait_for(asyncio.to_thread(runtime.cache.verify_connection), 3)
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "unhealthy", "degraded": True}
            healthy = False
    else:
        checks["redis"] = {"status": "not_configured"}
    return {
        "status": "healthy" if healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
