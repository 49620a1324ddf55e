"""
FastAPI application for MP3 Maker
"""

import asyncio
import time
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from mp3maker.config import settings
from mp3maker.logging_config import configure_logging
from mp3maker.services.broadcaster import ProgressBroadcaster
from mp3maker.services.log_hub import LogHub
from mp3maker.services.orchestrator import DownloadOrchestrator, cleanup_orphans
from mp3maker.services.process_supervisor import ProcessSupervisor
from mp3maker.services.session_registry import SessionRegistry

log_hub = LogHub(max_history=settings.LOG_HISTORY_SIZE)
configure_logging(log_hub, debug=settings.DEBUG)

logger = structlog.get_logger()


async def sweep_sessions(orchestrator: DownloadOrchestrator, interval: float, ttl: float) -> None:
    """Periodically evict sessions nobody came back for."""
    while True:
        await asyncio.sleep(interval)
        try:
            orchestrator.evict_expired(ttl)
        except Exception as e:
            logger.error("session_sweep_failed", error=str(e), exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("application_startup", message="MP3 Maker starting up")

    temp_dir = Path(settings.TEMP_DIR)
    cleanup_orphans(temp_dir)

    registry = SessionRegistry(max_sessions=settings.MAX_SESSIONS)
    broadcaster = ProgressBroadcaster(registry)
    orchestrator = DownloadOrchestrator(registry, broadcaster, ProcessSupervisor(), temp_dir)

    app.state.started_at = time.monotonic()
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.orchestrator = orchestrator
    app.state.log_hub = log_hub

    sweeper = asyncio.create_task(
        sweep_sessions(orchestrator, settings.SESSION_SWEEP_INTERVAL, settings.SESSION_TTL)
    )

    logger.info("server_running", url=f"http://localhost:{settings.PORT}{settings.BASE_PATH}",
                production=settings.is_production)
    logger.info("supported_platforms", platforms="YouTube, SoundCloud & Bandcamp")
    logger.info("output_format", format=f"CBR {settings.AUDIO_QUALITY} {settings.AUDIO_FORMAT.upper()}")

    yield

    logger.info("application_shutdown", message="MP3 Maker shutting down")
    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)
    await orchestrator.shutdown()
    log_hub.close()


# Initialize FastAPI app
app = FastAPI(
    title="MP3 Maker API",
    description="Converts YouTube, SoundCloud and Bandcamp links to MP3 with live progress",
    version="1.0.0",
    lifespan=lifespan,
)

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

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request_failed",
            method=request.method,
            path=request.url.path,
            error=str(e),
            process_time=f"{time.time() - start_time:.3f}s"
        )
        raise

    # Streaming endpoints would flood the log on every keepalive reconnect
    streaming = response.headers.get("content-type", "").startswith("text/event-stream")
    log = logger.debug if streaming else logger.info
    log(
        "request_completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        process_time=f"{time.time() - start_time:.3f}s"
    )
    return response


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
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
            "details": str(exc) if settings.DEBUG else None
        }
    )


@app.get(f"{settings.BASE_PATH}/health", tags=["Health"])
async def health_check(request: Request):
    """
    Health check endpoint

    Returns:
        dict: Health status and uptime in seconds
    """
    return {
        "status": "ok",
        "uptime": time.monotonic() - request.app.state.started_at,
        "activeSessions": len(request.app.state.registry),
    }


# Include routers
from mp3maker.routers import admin, download

app.include_router(download.router, prefix=settings.BASE_PATH)
app.include_router(admin.router, prefix=settings.BASE_PATH)

# Static UI, mounted last so API routes take precedence
if Path(settings.PUBLIC_DIR).is_dir():
    app.mount(settings.BASE_PATH or "/", StaticFiles(directory=settings.PUBLIC_DIR, html=True), name="public")
else:
    logger.warning("public_dir_missing", path=settings.PUBLIC_DIR)


def run():
    """Console entry point"""
    import uvicorn
    uvicorn.run(
        "mp3maker.main:app",
        host=settings.API_HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )


if __name__ == "__main__":
    run()
