"""
Vettly — FastAPI application

``create_app()`` wires together:

* structlog (JSON lines, one ``request_id`` bound per request)
* the ``/api/v1`` routers and the match-workflow error handler
* CORS, request timeout and request logging middleware
* a lifespan that warms the DB pool, connects Redis, runs the weekly tip
  and match expiry scheduler, and drains in-flight requests on shutdown
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from app.api.deps import workflow_error_handler
from app.api.router import router as api_router
from app.cache import close_redis, connect_redis, get_redis
from app.config import Settings, get_settings
from app.database import async_session_factory, engine
from app.scheduler import create_scheduler
from app.services.match_approval_service import MatchWorkflowError


def configure_logging(level: str) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(get_settings().LOG_LEVEL)
logger = structlog.get_logger("vettly")


# ---------------------------------------------------------------------------
# In-flight request tracking
# ---------------------------------------------------------------------------

class RequestTracker:
    """Counts in-flight requests so shutdown can wait for them."""

    def __init__(self) -> None:
        self.active = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def started(self) -> None:
        self.active += 1
        self._idle.clear()

    def finished(self) -> None:
        self.active -= 1
        if self.active <= 0:
            self.active = 0
            self._idle.set()

    async def drain(self, timeout: float) -> bool:
        """Wait for in-flight requests; ``False`` if the timeout hit first."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("drain_timeout_exceeded", remaining_requests=self.active)
            return False


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    logger.info("startup_begin", environment=settings.ENVIRONMENT)

    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("database_pool_initialised")

    await connect_redis()

    app.state.scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = create_scheduler()
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("scheduler_started", jobs=[job.id for job in scheduler.get_jobs()])

    logger.info("startup_complete")
    yield

    logger.info("shutdown_begin")
    if app.state.scheduler is not None:
        # Running jobs finish on their own sessions; no new ones start.
        app.state.scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    await app.state.requests.drain(settings.SHUTDOWN_DRAIN_SECONDS)
    await close_redis()
    await engine.dispose()
    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class TimeoutMiddleware(BaseHTTPMiddleware):
    """Return 504 when a request exceeds ``timeout_seconds``.

    LLM calls have their own tighter bound; this catches everything else.
    """

    def __init__(self, app, timeout_seconds: float) -> None:
        super().__init__(app)
        self.timeout_seconds = timeout_seconds

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "request_timeout",
                method=request.method,
                path=request.url.path,
                timeout=self.timeout_seconds,
            )
            return JSONResponse(status_code=504, content={"detail": "Request timed out"})


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Bind a request id, track the request and log its outcome."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        tracker: RequestTracker = request.app.state.requests
        start = time.perf_counter()
        tracker.started()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise
        finally:
            tracker.finished()

        logger.info(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

async def health_liveness() -> dict:
    return {"status": "healthy"}


async def health_deep(request: Request) -> dict:
    """Readiness: database, Redis and scheduler state."""
    result: dict = {"status": "healthy", "database": "connected", "redis": "connected"}

    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_db_failure", error=str(exc))
        result["database"] = f"error: {exc}"
        result["status"] = "degraded"

    redis = get_redis()
    if redis is None:
        result["redis"] = "not configured"
        result["status"] = "degraded"
    else:
        try:
            await redis.ping()
        except Exception as exc:
            logger.error("health_redis_failure", error=str(exc))
            result["redis"] = f"error: {exc}"
            result["status"] = "degraded"

    scheduler = getattr(request.app.state, "scheduler", None)
    result["scheduler"] = "running" if scheduler is not None and scheduler.running else "stopped"
    return result


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    application = FastAPI(
        title="Vettly",
        description="Matchmaker-curated matching, approvals and weekly tips",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )
    application.state.settings = settings
    application.state.requests = RequestTracker()
    application.state.scheduler = None

    application.add_exception_handler(MatchWorkflowError, workflow_error_handler)

    # Last added runs first: CORS, then timeout, then logging.
    application.add_middleware(StructuredLoggingMiddleware)
    application.add_middleware(TimeoutMiddleware, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_api_route("/health", health_liveness, methods=["GET"], tags=["health"])
    application.add_api_route("/health/deep", health_deep, methods=["GET"], tags=["health"])
    application.include_router(api_router, prefix="/api/v1")
    return application


app = create_app()
