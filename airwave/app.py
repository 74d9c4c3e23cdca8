from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from airwave.api.error_handling import register_exception_handlers
from airwave.api.routes import router
from airwave.api.schemas import Envelope
from airwave.config import get_settings
from airwave.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from airwave.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", environment=runtime.settings.environment)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AirWAVE Auth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-CSRF-Token",
        "X-Request-ID",
        "X-Client-Fingerprint",
    ],
    # Browsers only let scripts read the CSRF token if it is exposed
    expose_headers=["X-CSRF-Token", "X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation ID to the request context and echo it back.

    Clients may supply their own through ``X-Request-ID``; otherwise a new
    UUID is generated.
    """
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
    # Token-bearing responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and get_settings().is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=Envelope)
async def health() -> Envelope:
    """Report store and key-value availability.

    The service stays up when Redis is down (caches degrade), so a failed
    ping marks the check as degraded instead of failing the whole probe.
    """
    from airwave.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        kv_ok = await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="kv", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        kv_ok = False
    checks["kv"] = {"status": "healthy" if kv_ok else "unhealthy", "degraded": not kv_ok}
    checks["store"] = {"status": "healthy", "type": type(runtime.store).__name__}

    return Envelope(
        status="ok",
        data={
            "status": "healthy" if kv_ok else "degraded",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app
