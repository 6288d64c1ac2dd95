"""
Main Application - FastAPI ops surface.

Serves service info, Prometheus metrics, dependency status and the admin
API. When the scheduler is enabled it also runs the maintenance and sync
passes in the background for the lifetime of the app.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from displex.api.admin_routes import router as admin_router
from displex.api.status_routes import router as status_router
from displex.config import settings
from displex.db.migration_runner import run_migrations
from displex.db.session import close_engine
from displex.observability import get_logger, metrics, setup_logging, setup_tracing
from displex.observability.tracing import instrument_fastapi
from displex.services.scheduler import PeriodicScheduler
from displex.tasks import build_scheduler

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "application_starting",
        service=settings.application_name,
        version=settings.application_version,
        scheduler_enabled=settings.scheduler_enabled,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )
    await asyncio.to_thread(run_migrations)

    scheduler: PeriodicScheduler | None = None
    scheduler_task: asyncio.Task[None] | None = None
    if settings.scheduler_enabled:
        scheduler = build_scheduler()
        scheduler_task = asyncio.create_task(scheduler.run())

    yield

    logger.info("application_shutting_down")
    if scheduler is not None and scheduler_task is not None:
        scheduler.shutdown.set()
        with suppress(asyncio.CancelledError):
            await scheduler_task
    await close_engine()
    logger.info("database_engine_closed")


app = FastAPI(
    title=settings.application_name,
    version=settings.application_version,
    description="Discord linked-role metadata for Plex subscribers",
    lifespan=lifespan,
)

setup_tracing()
instrument_fastapi(app)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()
    try:
        response = await call_next(request)
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)

        logger.info(
            "request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            request_id=request_id,
        )
        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")

        logger.error(
            "request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


app.include_router(status_router)
app.include_router(admin_router)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "service": settings.application_name,
        "version": settings.application_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """Prometheus metrics in text format."""
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)
    return PlainTextResponse(generate_latest())
