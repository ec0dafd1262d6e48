"""Chats API router."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from zapflow.api.deps import get_dispatcher, get_storage, get_sync_service
from zapflow.api.models import (
    AssumeChatRequest, ChatListResponse, CloseChatRequest, RefreshResponse,
    SendMessageRequest, StartWorkflowRequest, TransferChatRequest,
)
from zapflow.models.chat import Chat, ChatStatus
from zapflow.models.directory import Workflow
from zapflow.services.live_update import LiveUpdateDispatcher, UnknownChatError
from zapflow.services.storage_service import StorageService
from zapflow.services.sync_service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter()


def _chat_or_404(dispatcher: LiveUpdateDispatcher, chat_id: str) -> Chat:
    try:
        return dispatcher.get(chat_id)
    except UnknownChatError as e:
        raise HTTPException(status_code=404, detail=str(e))


def _workflow_or_404(storage: StorageService, workflow_id: str) -> Workflow:
    workflow = next((w for w in storage.load_workflows() if w.id == workflow_id), None)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow not found: {workflow_id}")
    return workflow


@router.get("/chats", tags=["Chats"], response_model=ChatListResponse)
async def list_chats(
    status: Optional[ChatStatus] = Query(None, description="Filter by status: 'open', 'pending', 'closed'"),
    department_id: Optional[str] = Query(None, description="Filter by department ID"),
    unassigned: bool = Query(False, description="Only chats without a department"),
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
):
    """List chats, most recent activity first."""
    chats = dispatcher.snapshot()
    if status is not None:
        chats = [c for c in chats if c.status == status]
    if department_id:
        chats = [c for c in chats if c.department_id == department_id]
    if unassigned:
        chats = [c for c in chats if c.department_id is None]
    return ChatListResponse(items=chats, count=len(chats))


@router.get("/chats/{chat_id}", tags=["Chats"], response_model=Chat)
async def get_chat(
    chat_id: str,
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
):
    """Get a chat by id, alias or phone number."""
    return _chat_or_404(dispatcher, chat_id)


@router.post("/chats/{chat_id}/messages", tags=["Chats"], response_model=Chat)
async def send_message(
    chat_id: str,
    request: SendMessageRequest,
    sync: SyncService = Depends(get_sync_service),
):
    """
    Send an agent message.

    The message is appended optimistically; a failed send leaves it in the
    chat with status ``error``.
    """
    try:
        return await sync.send_agent_message(chat_id, request.text)
    except UnknownChatError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/chats/{chat_id}/close", tags=["Chats"], response_model=Chat)
async def close_chat(
    chat_id: str,
    request: Optional[CloseChatRequest] = None,
    sync: SyncService = Depends(get_sync_service),
):
    """Close a chat, optionally sending the satisfaction survey."""
    with_survey = request.with_survey if request is not None else True
    try:
        return await sync.close_chat(chat_id, with_survey)
    except UnknownChatError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/chats/{chat_id}/assume", tags=["Chats"], response_model=Chat)
async def assume_chat(
    chat_id: str,
    request: AssumeChatRequest,
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    sync: SyncService = Depends(get_sync_service),
):
    _chat_or_404(dispatcher, chat_id)
    chat = dispatcher.assume_chat(chat_id, request.user_id, request.user_name, sync.clock())
    sync.persist()
    return chat


@router.post("/chats/{chat_id}/transfer", tags=["Chats"], response_model=Chat)
async def transfer_chat(
    chat_id: str,
    request: TransferChatRequest,
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    storage: StorageService = Depends(get_storage),
    sync: SyncService = Depends(get_sync_service),
):
    """Move a chat to another department."""
    _chat_or_404(dispatcher, chat_id)
    departments = storage.load_departments()
    if not any(d.id == request.department_id for d in departments):
        raise HTTPException(status_code=400, detail=f"Unknown department: {request.department_id}")
    chat = dispatcher.transfer_chat(chat_id, request.department_id, sync.clock(), departments)
    sync.persist()
    logger.info("Chat transferred", extra={"chat_id": chat.id, "department_id": request.department_id})
    return chat


@router.post("/chats/{chat_id}/read", tags=["Chats"], response_model=Chat)
async def mark_read(
    chat_id: str,
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    sync: SyncService = Depends(get_sync_service),
):
    _chat_or_404(dispatcher, chat_id)
    chat = dispatcher.mark_read(chat_id)
    sync.persist()
    return chat


@router.post("/chats/{chat_id}/refresh", tags=["Chats"], response_model=RefreshResponse)
async def refresh_chat(
    chat_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500, description="Messages to fetch"),
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    sync: SyncService = Depends(get_sync_service),
):
    """Re-fetch a chat's recent messages from the gateway (throttled per chat)."""
    _chat_or_404(dispatcher, chat_id)
    refreshed = await sync.refresh_chat(chat_id, limit)
    return RefreshResponse(refreshed=refreshed, chat=_chat_or_404(dispatcher, chat_id))


@router.post("/chats/{chat_id}/workflow", tags=["Chats"], response_model=Chat)
async def start_workflow(
    chat_id: str,
    request: StartWorkflowRequest,
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    storage: StorageService = Depends(get_storage),
    sync: SyncService = Depends(get_sync_service),
):
    _chat_or_404(dispatcher, chat_id)
    chat = dispatcher.start_workflow(chat_id, _workflow_or_404(storage, request.workflow_id))
    sync.persist()
    return chat


@router.delete("/chats/{chat_id}/workflow", tags=["Chats"], response_model=Chat)
async def cancel_workflow(
    chat_id: str,
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    sync: SyncService = Depends(get_sync_service),
):
    _chat_or_404(dispatcher, chat_id)
    chat = dispatcher.cancel_workflow(chat_id)
    sync.persist()
    return chat


@router.post("/chats/{chat_id}/workflow/steps/{step_id}", tags=["Chats"], response_model=Chat)
async def toggle_workflow_step(
    chat_id: str,
    step_id: str,
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    storage: StorageService = Depends(get_storage),
    sync: SyncService = Depends(get_sync_service),
):
    """Toggle one step of the chat's active workflow."""
    chat = _chat_or_404(dispatcher, chat_id)
    if chat.active_workflow is None:
        raise HTTPException(status_code=400, detail="Chat has no active workflow")
    workflow = _workflow_or_404(storage, chat.active_workflow.workflow_id)
    if not any(step.id == step_id for step in workflow.steps):
        raise HTTPException(status_code=404, detail=f"Workflow step not found: {step_id}")
    chat = dispatcher.toggle_workflow_step(chat_id, workflow, step_id, sync.clock(), storage.load_departments())
    sync.persist()
    return chat
