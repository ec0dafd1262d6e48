"""Chat and message models held by the live dispatcher and persisted as JSON."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class SenderRole(str, Enum):
    """Who authored a message."""
    USER = "user"  # customer
    AGENT = "agent"  # service agent (fromMe on the gateway)
    SYSTEM = "system"  # local bookkeeping notes


class DeliveryStatus(str, Enum):
    """Delivery status, ordered from least to most advanced."""
    ERROR = "error"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


DELIVERY_RANK = {
    DeliveryStatus.ERROR: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
}


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"
    VIDEO = "video"
    STICKER = "sticker"


class ChatStatus(str, Enum):
    """Chat lifecycle states."""
    OPEN = "open"  # active, unassigned or assigned
    PENDING = "pending"  # assigned to a department, awaiting agent
    CLOSED = "closed"  # resolved, possibly awaiting a rating


class ReplyReference(BaseModel):
    """Non-owning pointer to the message being replied to (lookup by id only)."""
    id: str
    content: str = ""
    sender: SenderRole = SenderRole.USER
    remote_id: Optional[str] = None


class Message(BaseModel):
    """A single chat message."""
    id: str = Field(..., description="Local or gateway-assigned id")
    content: str = ""
    sender: SenderRole
    timestamp: datetime
    status: DeliveryStatus = DeliveryStatus.SENT
    type: MessageType = MessageType.TEXT
    media_url: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    author: Optional[str] = Field(None, description="Raw JID of whoever sent it")
    remote_id: Optional[str] = Field(None, description="Gateway message id (key.id), assigned after send")
    reply_to: Optional[ReplyReference] = None


class ActiveWorkflow(BaseModel):
    """Workflow running on a chat."""
    workflow_id: str
    completed_step_ids: List[str] = Field(default_factory=list)


class Chat(BaseModel):
    """A logical conversation with one contact."""
    id: str = Field(..., description="Chat key: phone JID once resolved, otherwise the alias")
    contact_key: Optional[str] = Field(None, description="Canonical phone key, None while unresolved")
    remote_jid: Optional[str] = Field(None, description="Raw identifier last reported by the gateway")
    contact_name: str = ""
    contact_avatar: Optional[str] = None
    client_code: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    department_id: Optional[str] = None
    assigned_to: Optional[str] = None
    status: ChatStatus = ChatStatus.OPEN

    messages: List[Message] = Field(default_factory=list)
    last_message: str = ""
    last_message_time: Optional[datetime] = None
    unread_count: int = 0

    rating: Optional[int] = None
    awaiting_rating: bool = False
    ended_at: Optional[datetime] = None

    awaiting_department_selection: bool = False
    department_selection_sent: bool = False
    # Department ids in the order the outstanding menu presented them
    department_menu: List[str] = Field(default_factory=list)
    greeting_sent: bool = False
    away_sent: bool = False
    active_workflow: Optional[ActiveWorkflow] = None

    # Gateway ids of control input (menu replies) removed from the visible list
    suppressed_message_ids: List[str] = Field(default_factory=list)
