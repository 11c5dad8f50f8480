from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from billsync.config import settings
from billsync.core.database import check_database_health

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
async def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
async def readiness_check():
    """Readiness check including database connectivity and PayPal credentials."""
    db_status = await check_database_health()

    if not db_status:
        raise HTTPException(status_code=503, detail="Database is not available")

    missing = settings.missing_sync_settings()
    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if settings.database_url else "not configured",
        "paypal": "configured" if not missing else "missing " + ", ".join(missing),
    }
