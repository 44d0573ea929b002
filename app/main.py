"""Main FastAPI application entry point.

Composition root of the offline SCORM runtime: wires the database, the sync
processor and its timer, and the package, runtime and sync routers.
"""

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os
import pathlib
import subprocess
from datetime import datetime

from app.db.config import SessionLocal, close_db, engine, init_models
from app.exceptions import ScormRuntimeError
from app.routers import health, packages, scorm, sync
from app.services.sync_processor import SyncProcessor
from app.services.sync_scheduler import SyncScheduler
from app.services.sync_sink import HttpSyncSink
from app.utils.feature_flags import is_feature_enabled
from app.utils.settings import get_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

BACKEND_DIR = pathlib.Path(__file__).parent.parent

# Application metadata
APP_NAME = "Offline SCORM Runtime API"
VERSION = "1.0.0"
DESCRIPTION = """
Offline SCORM Runtime API

## Features

* **Packages**: Upload, list, delete and serve SCORM packages
* **Runtime**: Initialize / Commit / Terminate / GetValue / SetValue
* **Offline Sync**: Durable action queue with retries and a sync timer
* **Health Check**: Monitor application status
"""

# Initialize FastAPI app
app = FastAPI(
    title=APP_NAME,
    description=DESCRIPTION,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# CORS middleware configuration
cors_origins = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


def _error_response(request, status_code: int, error) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": error,
            "timestamp": datetime.utcnow().isoformat(),
            "path": str(request.url)
        }
    )


# Global exception handlers


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    """Handle HTTP exceptions with consistent error format"""
    return _error_response(request, exc.status_code, exc.detail)


@app.exception_handler(ScormRuntimeError)
async def runtime_exception_handler(request, exc):
    """Map domain errors onto the status code carried by their class"""
    if exc.status_code >= 500:
        logger.warning(f"{exc.__class__.__name__}: {exc.message}")
    return _error_response(request, exc.status_code, exc.message)


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Handle general exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(request, 500, "Internal server error")


# Include routers
app.include_router(health.router, prefix="/api/v1", tags=["Health"])
app.include_router(packages.router, prefix="/api/v1")
app.include_router(scorm.router, prefix="/api/v1")
app.include_router(sync.router, prefix="/api/v1")


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information"""
    return {
        "name": APP_NAME,
        "version": VERSION,
        "status": "running",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "timestamp": datetime.utcnow().isoformat(),
        "docs": "/docs",
        "health": "/api/v1/health"
    }


def build_scheduler(session_factory=SessionLocal, settings=None) -> SyncScheduler:
    """Create the sync processor and timer for the configured mode."""
    settings = settings or get_settings()
    sink = None
    if is_feature_enabled("external_sync") and settings.sync_sink_url:
        sink = HttpSyncSink(settings.sync_sink_url, settings.sync_sink_timeout)
    processor = SyncProcessor(
        session_factory,
        batch_size=settings.sync_batch_size,
        max_retries=settings.sync_max_retries,
        sink=sink,
        sink_timeout=settings.sync_sink_timeout,
    )
    return SyncScheduler(processor, settings.sync_interval_seconds)


def run_migrations() -> bool:
    """Run ``alembic upgrade head`` from the project root."""
    logger.info("AUTO_MIGRATE enabled: running 'alembic upgrade head'")
    try:
        result = subprocess.run(
            ["alembic", "upgrade", "head"],
            cwd=str(BACKEND_DIR),
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        logger.error(
            "Alembic not found - ensure it's installed in the environment"
        )
        return False
    if result.returncode != 0:
        logger.error(
            "Alembic upgrade failed (code %s): %s\n%s",
            result.returncode,
            result.stdout,
            result.stderr,
        )
        return False
    logger.info("Alembic migration applied successfully")
    return True


# Application startup event


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info(f"Starting {APP_NAME} v{VERSION}")
    logger.info(f"Environment: {os.getenv('ENVIRONMENT', 'development')}")
    logger.info(f"CORS Origins: {cors_origins}")
    if os.getenv("AUTO_MIGRATE", "false").lower() in {"1", "true", "yes"}:
        if not run_migrations():
            await init_models(engine)
    else:
        await init_models(engine)

    settings = get_settings()
    settings.packages_dir.mkdir(parents=True, exist_ok=True)
    scheduler = build_scheduler(SessionLocal, settings)
    app.state.sync_scheduler = scheduler
    logger.info(f"Sync processor running in {scheduler.processor.mode} mode")
    if is_feature_enabled("auto_sync"):
        scheduler.start()


# Application shutdown event


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown tasks"""
    logger.info(f"Shutting down {APP_NAME}")
    scheduler = getattr(app.state, "sync_scheduler", None)
    if scheduler is not None:
        await scheduler.aclose()
    await close_db(engine)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    host = os.getenv("HOST", "0.0.0.0")

    uvicorn.run(
        "app.main:app",
        host=host,
        port=port,
        reload=True,
        log_level="info"
    )
