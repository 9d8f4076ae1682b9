"""
TutorChat FastAPI Application.

Chat threads, streamed replies and the job surface backing them.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tutorchat.api.routes import jobs, paths, threads
from tutorchat.config import settings
from tutorchat.exceptions import (
    AuthMismatchError,
    ChatEngineError,
    DependencyUnavailableError,
    InputInvalidError,
    NotFoundError,
    ThreadBusyError,
)
from tutorchat.logging_config import setup_logging
from tutorchat.sse.hub import ChatNotifier, EventPublisher, SSEHub
from tutorchat.startup import run_all_startup_checks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI application.

    Runs startup checks, creates the SSE hub, attaches it to the Redis bus when
    REDIS_URL is set and starts the in-process job worker when enabled.
    """
    setup_logging(context="api")

    logger.info("Running startup checks...")
    run_all_startup_checks()
    logger.info("✓ Startup checks passed")

    hub = SSEHub()
    app.state.sse_hub = hub
    app.state.sse_bus = None
    publisher: EventPublisher = hub

    bus_subscriber = None
    if settings.redis_url:
        from tutorchat.sse.bus import BusSubscriber, RedisEventBus

        bus = RedisEventBus(settings.redis_url)
        app.state.sse_bus = bus
        publisher = bus
        bus_subscriber = BusSubscriber(bus, hub)
        bus_subscriber.start()
        logger.info(f"✓ SSE bus attached ({settings.sse_bus_channel})")

    worker_started = False
    if settings.worker_enabled:
        from tutorchat.jobs.worker import JobWorker, start_worker

        start_worker(JobWorker(notifier=ChatNotifier(publisher)))
        worker_started = True
        logger.info("✓ Job worker started")

    logger.info("Application startup complete")

    yield

    logger.info("Application shutdown initiated...")
    if worker_started:
        from tutorchat.jobs.worker import stop_worker

        stop_worker(timeout=10)
    if bus_subscriber is not None:
        bus_subscriber.stop()
        app.state.sse_bus.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    lifespan=lifespan,
    title="TutorChat API",
    description="Streaming tutoring chat with a retrieval-grounded memory",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, exc: ChatEngineError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "kind": exc.kind},
    )


@app.exception_handler(InputInvalidError)
async def input_invalid_handler(request: Request, exc: InputInvalidError) -> JSONResponse:
    return _error_response(status.HTTP_400_BAD_REQUEST, exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error_response(status.HTTP_404_NOT_FOUND, exc)


@app.exception_handler(AuthMismatchError)
async def auth_mismatch_handler(request: Request, exc: AuthMismatchError) -> JSONResponse:
    # Foreign rows read as missing
    logger.warning(f"Ownership mismatch on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": f"{exc.resource} not found", "kind": NotFoundError.kind},
    )


@app.exception_handler(ThreadBusyError)
async def thread_busy_handler(request: Request, exc: ThreadBusyError) -> JSONResponse:
    return _error_response(status.HTTP_409_CONFLICT, exc)


@app.exception_handler(DependencyUnavailableError)
async def dependency_handler(
    request: Request, exc: DependencyUnavailableError
) -> JSONResponse:
    logger.error(f"Dependency unavailable on {request.url.path}: {exc.message}")
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, exc)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint - API health check."""
    return {
        "status": "ok",
        "message": "TutorChat API is running",
        "version": "0.1.0",
    }


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    from tutorchat.db.connection import check_connection

    db_status = "healthy" if check_connection() else "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "database": db_status,
    }


@app.get("/ready")
async def ready():
    """
    Readiness probe endpoint for load balancers.

    Returns 200 OK if ready to serve requests, 503 Service Unavailable otherwise.
    """
    from tutorchat.startup import check_readiness

    is_ready, details = check_readiness()

    if not is_ready:
        return JSONResponse(
            content=details,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return details


app.include_router(threads.router, prefix="/threads", tags=["threads"])
app.include_router(paths.router, prefix="/paths", tags=["paths"])
app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
