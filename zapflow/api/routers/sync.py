"""Manual sync trigger and sync status."""

from fastapi import APIRouter, Depends

from zapflow.api.deps import get_sync_service
from zapflow.api.models import SyncStatusResponse, SyncTriggerResponse
from zapflow.services.sync_service import SyncService

router = APIRouter()


@router.post("/sync", tags=["Sync"], response_model=SyncTriggerResponse)
async def trigger_sync(sync: SyncService = Depends(get_sync_service)):
    """Poll the gateway now and re-arm the push socket if it gave up reconnecting."""
    return SyncTriggerResponse(**await sync.trigger())


@router.get("/sync/status", tags=["Sync"], response_model=SyncStatusResponse)
async def sync_status(sync: SyncService = Depends(get_sync_service)):
    return SyncStatusResponse(**sync.status())
