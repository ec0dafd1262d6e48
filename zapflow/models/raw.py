"""Internal boundary types produced by the gateway parser.

Every gateway payload shape is normalized into these before any
reconciliation logic runs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from zapflow.models.chat import DeliveryStatus, MessageType


@dataclass
class RawMessage:
    """One message as reported by the gateway."""
    remote_id: str  # key.id
    chat_jid: str  # key.remoteJid: phone JID, alias (@lid) or group
    from_me: bool
    timestamp: datetime
    content: str = ""
    type: MessageType = MessageType.TEXT
    chat_jid_alt: Optional[str] = None  # key.remoteJidAlt, the phone JID behind an alias
    sender_jid: Optional[str] = None  # key.participant, or the chat jid for direct chats
    sender_alt: Optional[str] = None  # key.senderPn / participantAlt
    push_name: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.SENT
    media_url: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    quoted_remote_id: Optional[str] = None
    quoted_content: Optional[str] = None


@dataclass
class RawChat:
    """One chat record as reported by the gateway."""
    remote_jid: str
    alt_jid: Optional[str] = None
    name: Optional[str] = None
    avatar: Optional[str] = None
    unread_count: int = 0
    messages: List[RawMessage] = field(default_factory=list)


@dataclass
class StatusUpdate:
    """Delivery acknowledgement for an already known message."""
    remote_id: str
    status: DeliveryStatus
