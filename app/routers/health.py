"""
Health Check Router

Provides health check endpoints for monitoring application status,
including database reachability and the state of the sync processor.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
import logging
import time
import os
import sys
from datetime import datetime

from app.db.config import get_session
from app.routers.sync import get_sync_scheduler
from app.services.sync_scheduler import SyncScheduler
from app.utils.feature_flags import feature_flags

logger = logging.getLogger(__name__)

# Initialize router
router = APIRouter()

# Application start time for uptime calculation
_start_time = time.time()


async def _database_ok(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")
        return False


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """
    Basic health check endpoint

    Returns application status, version, and environment information.
    This endpoint is used by load balancers and monitoring systems.
    """
    return {
        "status": "healthy",
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "environment": os.getenv("ENVIRONMENT", "development"),
        "timestamp": datetime.utcnow().isoformat(),
        "uptime": time.time() - _start_time,
    }


@router.get("/health/detailed", summary="Detailed Health Check")
async def detailed_health_check(
    db: AsyncSession = Depends(get_session),
    scheduler: SyncScheduler = Depends(get_sync_scheduler),
):
    """
    Detailed health check with dependency validation

    Checks the database connection, sync queue depth and the feature flags
    active in this environment.
    """
    database_ok = await _database_ok(db)
    queue = await scheduler.processor.queue_status() if database_ok else None

    return {
        "status": "healthy" if database_ok else "degraded",
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "environment": os.getenv("ENVIRONMENT", "development"),
        "timestamp": datetime.utcnow().isoformat(),
        "uptime": time.time() - _start_time,
        "components": {
            "database": {"connected": database_ok},
            "sync": {**scheduler.status(), "queue": queue},
            "features": feature_flags.get_environment_info(),
        },
        "details": {
            "cors_origins": os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
            "python_version": sys.version,
            "startup_time": datetime.fromtimestamp(_start_time).isoformat()
        }
    }


@router.get("/health/ready", summary="Readiness Check")
async def readiness_check(db: AsyncSession = Depends(get_session)):
    """
    Kubernetes-style readiness probe

    Returns 200 if the database answers, 503 otherwise.
    """
    if not await _database_ok(db):
        raise HTTPException(
            status_code=503,
            detail="Application not ready: database unavailable"
        )
    return {"status": "ready", "timestamp": datetime.utcnow().isoformat()}


@router.get("/health/live", summary="Liveness Check")
async def liveness_check():
    """
    Kubernetes-style liveness probe
    """
    return {
        "status": "alive",
        "timestamp": datetime.utcnow().isoformat(),
        "pid": os.getpid()
    }
