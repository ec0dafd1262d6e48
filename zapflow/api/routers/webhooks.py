"""Webhooks API router."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from zapflow.api.deps import get_sync_service
from zapflow.api.models import WebhookResponse
from zapflow.services.sync_service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _apply_event(payload: Dict[str, Any], sync: SyncService, event: Optional[str] = None) -> WebhookResponse:
    if event and "event" not in payload:
        payload = {**payload, "event": event}
    applied = await sync.handle_event(payload)
    logger.info("Gateway webhook processed", extra={"event": payload.get("event"), "messages": applied})
    return WebhookResponse(status="success", messages=applied)


@router.post("/webhooks/evolution", tags=["Webhooks"], response_model=WebhookResponse)
async def handle_evolution_webhook(
    payload: Dict[str, Any],
    sync: SyncService = Depends(get_sync_service),
):
    """
    Receive a gateway event (``{"event", "instance", "data"}``).

    Malformed events are acknowledged and skipped so the gateway does not
    keep retrying them.
    """
    return await _apply_event(payload, sync)


@router.post("/webhooks/evolution/{event}", tags=["Webhooks"], response_model=WebhookResponse)
async def handle_evolution_webhook_by_event(
    event: str,
    payload: Dict[str, Any],
    sync: SyncService = Depends(get_sync_service),
):
    """Per-event webhook urls (``.../messages-upsert``) carry the event name in the path."""
    return await _apply_event(payload, sync, event.replace("-", "."))
