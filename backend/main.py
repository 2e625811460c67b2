"""
FastAPI backend for the multi-scene video orchestrator
"""

import asyncio
import time
from contextlib import asynccontextmanager
from typing import Set

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import configure_logging, settings
from pipeline.error_handler import PipelineError

configure_logging()

logger = structlog.get_logger()


# Compositing tasks spawned by the sequencer; held here so they are not
# garbage-collected mid-flight and can be drained on shutdown
_background_tasks: Set[asyncio.Task] = set()


def _spawn(coro) -> asyncio.Task:
    """Run a coroutine in the background and log it if it crashes."""
    task = asyncio.create_task(coro)
    _background_tasks.add(task)

    def _done(t: asyncio.Task) -> None:
        _background_tasks.discard(t)
        if not t.cancelled() and t.exception() is not None:
            logger.error("background_task_failed", error=str(t.exception()))

    task.add_done_callback(_done)
    return task


async def _drain_background_tasks(timeout: float) -> None:
    """
    Give running background tasks `timeout` seconds to finish, then cancel
    the rest. Jobs whose compositing is cancelled stay in encoding and are
    resumed by the status poller's stall sweep.
    """
    if not _background_tasks:
        return

    logger.info("background_tasks_draining", count=len(_background_tasks), timeout=timeout)
    _, pending = await asyncio.wait(set(_background_tasks), timeout=timeout)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
        logger.warning("background_tasks_cancelled", count=len(pending))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("application_startup", message="FastAPI application starting up")

    from database import init_db
    from services.job_store import JobStore
    from services.replicate_client import get_replicate_client
    from workers.scene_sequencer import SceneSequencer
    from workers.status_poller import StatusPoller
    from redis_client import redis_client

    # Initialize database
    try:
        init_db()
        logger.info("database_tables_created", message="Database initialized successfully")
    except Exception as e:
        logger.error("database_init_error", error=str(e))
        raise

    # Validate configuration
    try:
        gateway = get_replicate_client()
    except ValueError as e:
        logger.error("config_validation_failed", error=str(e))
        raise

    if not settings.REPLICATE_WEBHOOK_SECRET:
        logger.warning("webhook_secret_missing", message="Webhook deliveries will be rejected; relying on polling")

    store = JobStore()
    sequencer = SceneSequencer(store, gateway, spawn=_spawn)
    app.state.job_store = store
    app.state.sequencer = sequencer

    poller = None
    poller_task = None
    if settings.POLLER_ENABLED:
        poller = StatusPoller(store, gateway, sequencer)
        poller_task = asyncio.create_task(poller.run_forever())

    yield

    logger.info("application_shutdown", message="FastAPI application shutting down")
    if poller is not None:
        poller.stop()
        await poller_task
    await _drain_background_tasks(settings.SHUTDOWN_GRACE_SECONDS)
    redis_client.close()


# Initialize FastAPI app
app = FastAPI(
    title="Scene Orchestrator API",
    description="Generates multi-scene videos one prediction at a time and composes them into a single MP4",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all incoming requests"""
    start_time = time.time()

    logger.info(
        "request_started",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None
    )

    try:
        response = await call_next(request)
        process_time = time.time() - start_time

        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=f"{process_time:.3f}s"
        )

        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            "request_failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            process_time=f"{process_time:.3f}s"
        )
        raise


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    """Map pipeline errors onto their HTTP status with the standard error body"""
    logger.warning(
        "pipeline_error_response",
        path=request.url.path,
        error_code=exc.code.value,
        status_code=exc.http_status,
        message=exc.message
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle all unhandled exceptions"""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_type=type(exc).__name__
    )

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_ERROR",
            "message": "An unexpected error occurred. Please try again later.",
            "details": str(exc) if settings.DEBUG else None
        }
    )


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint

    Returns:
        dict: Health status of the API
    """
    from redis_client import redis_client

    return {
        "status": "healthy",
        "service": "scene-orchestrator",
        "version": "1.0.0",
        "redis": redis_client.ping(),
        "poller_enabled": settings.POLLER_ENABLED
    }


# Include routers
from routers import jobs, webhooks

app.include_router(jobs.router)
app.include_router(webhooks.router)


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "message": "Scene Orchestrator API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "create_job": "/api/jobs",
            "job_status": "/api/jobs/{job_id}",
            "cancel_job": "/api/jobs/{job_id}/cancel",
            "replicate_webhook": "/api/webhooks/replicate"
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
