"""
api/main.py -- FastAPI application entry point for PostureWatch.

Exposes the scan engine, target history, the alert inbox and the job
triggers over HTTP.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the object graph once (store -> alert engine -> scan
service -> scheduler, digest dispatcher) and tears it down symmetrically.
When SCHEDULER_INTERVAL_SECONDS > 0 it also starts an in-process loop that
runs a scheduler pass and a digest pass on that interval; otherwise an
external cron calls POST /api/v1/jobs/*.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from alerts.digest import DigestDispatcher
from alerts.engine import AlertEngine
from alerts.notifier import notifier_from_settings
from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.alerts import router as alerts_router
from api.routes.v1.jobs import router as jobs_router
from api.routes.v1.preferences import router as preferences_router
from api.routes.v1.scans import router as scans_router
from api.routes.v1.targets import router as targets_router
from core.config import get_settings
from core.pipeline import ScanService
from monitor.scheduler import Scheduler
from monitor.store import MonitorStore

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("posturewatch.api")

# ---------------------------------------------------------------------------
# Background scheduler loop
# ---------------------------------------------------------------------------


async def _scheduler_loop(app: FastAPI, interval: int) -> None:
    """Run a scheduler pass and a digest pass every `interval` seconds.

    Both passes block on network and database I/O, so they run in a worker
    thread. A failing pass is logged and the loop keeps going; the next pass
    retries whatever was left undone.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(app.state.scheduler.run_due)
            await asyncio.to_thread(app.state.dispatcher.dispatch)
        except Exception:
            logger.exception("Background scheduler pass failed")


def build_services(app: FastAPI, store: MonitorStore, notifier=None) -> None:
    """Wire the service graph onto app.state. Shared by lifespan and tests."""
    settings = get_settings()
    app.state.store = store
    app.state.alert_engine = AlertEngine(store, settings.improvement_cooldown_hours)
    app.state.scan_service = ScanService(store, app.state.alert_engine, settings)
    app.state.scheduler = Scheduler(store, app.state.scan_service, settings.scheduler_max_workers)
    app.state.dispatcher = DigestDispatcher(
        store, notifier or notifier_from_settings(settings), settings.dashboard_url
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Everything before yield runs on startup; everything after on shutdown."""
    settings = get_settings()
    logger.info("PostureWatch API starting up")
    build_services(app, MonitorStore(settings.database_url))
    logger.info("Store initialized")

    app.state.scheduler_task = None
    if settings.scheduler_interval_seconds > 0:
        app.state.scheduler_task = asyncio.create_task(
            _scheduler_loop(app, settings.scheduler_interval_seconds)
        )
        logger.info("In-process scheduler every %ds", settings.scheduler_interval_seconds)

    yield

    if app.state.scheduler_task is not None:
        app.state.scheduler_task.cancel()
    app.state.store.close()
    logger.info("PostureWatch API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="PostureWatch API",
    description="Passive website security posture monitoring: TLS, security headers, fingerprints, drift alerts.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Job-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(scans_router, prefix="/api/v1", tags=["Scans"])
app.include_router(targets_router, prefix="/api/v1", tags=["Targets"])
app.include_router(alerts_router, prefix="/api/v1", tags=["Alerts"])
app.include_router(preferences_router, prefix="/api/v1", tags=["Preferences"])
app.include_router(jobs_router, prefix="/api/v1", tags=["Jobs"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and Retry-After."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for HTTPException. A dict detail is used as the error field as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected errors. The traceback goes to the log, never to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. No rate limit and
# no auth: load balancers must not be throttled or challenged.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database round-trip check."""
    components = {"app": "ok"}
    try:
        request.app.state.store.ping()
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=VERSION, components=components)
