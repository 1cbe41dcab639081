from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from leadsignal.config import settings
from leadsignal.core.database import check_database_health
from leadsignal.services.pipeline import Pipeline, get_pipeline

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("")
def health_check():
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/ready")
def readiness_check(pipeline: Pipeline = Depends(get_pipeline)):
    """Readiness check endpoint that includes database connectivity."""
    if not check_database_health(pipeline.repository.engine):
        raise HTTPException(status_code=503, detail="Database is not available")

    return {
        "status": "ready",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected",
    }
