"""Health check API router."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy import text

from zapflow import __version__
from zapflow.api.deps import get_sync_service
from zapflow.infra.database import get_db
from zapflow.infra.metrics import get_metrics_response
from zapflow.services.sync_service import SyncService

router = APIRouter()


@router.get("/health", tags=["Health"])
async def health_check(sync: SyncService = Depends(get_sync_service)):
    """Process health plus a summary of the gateway sync."""
    status = sync.status()
    return {
        "status": "ok",
        "service": "zapflow-hub",
        "version": __version__,
        "gateway_configured": sync.transport is not None,
        "socket_running": status["socket_running"],
        "last_sync_error": status["last_error"],
    }


@router.get("/health/live", tags=["Health"])
async def liveness_check():
    return {"status": "alive"}


@router.get("/health/ready", tags=["Health"])
async def readiness_check(db: Session = Depends(get_db)):
    """Ready once the store answers; gateway outages are retried, not fatal."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return JSONResponse(status_code=503, content={"status": "not_ready", "store": "unreachable"})
    return {"status": "ready"}


@router.get("/metrics", tags=["Health"])
async def metrics():
    """Prometheus metrics endpoint."""
    return get_metrics_response()
