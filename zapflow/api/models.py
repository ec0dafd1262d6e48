"""API request/response models."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from zapflow.models.chat import Chat


# ============================================================================
# Data (key-value) Models
# ============================================================================

class DataItemRequest(BaseModel):
    """Create or replace one stored value."""
    key: str = Field(..., min_length=1, description="Entity key")
    value: Any = Field(..., description="JSON value")


class DataValueRequest(BaseModel):
    value: Any = Field(..., description="JSON value")


class DataBatchRequest(BaseModel):
    items: Dict[str, Any] = Field(..., description="Values by key")


class DataItemResponse(BaseModel):
    key: str
    value: Any


class DataListResponse(BaseModel):
    items: Dict[str, Any]
    count: int


class DataWriteResponse(BaseModel):
    status: str = Field(..., example="success")
    count: int = 1


# ============================================================================
# Chat Models
# ============================================================================

class ChatListResponse(BaseModel):
    items: List[Chat]
    count: int


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Message text")


class CloseChatRequest(BaseModel):
    with_survey: bool = Field(True, description="Send the satisfaction survey")


class AssumeChatRequest(BaseModel):
    user_id: str
    user_name: str


class TransferChatRequest(BaseModel):
    department_id: str


class StartWorkflowRequest(BaseModel):
    workflow_id: str


class RefreshResponse(BaseModel):
    refreshed: bool
    chat: Chat


# ============================================================================
# Webhook / Sync Models
# ============================================================================

class WebhookResponse(BaseModel):
    status: str = Field(..., example="success")
    messages: int = Field(0, description="Messages applied from the event")


class SyncTriggerResponse(BaseModel):
    polled: bool
    socket_restarted: bool


class SyncStatusResponse(BaseModel):
    polling: bool
    socket_running: bool
    socket_gave_up: bool
    last_poll_at: Optional[str] = None
    last_error: Optional[str] = None
    chats: int
