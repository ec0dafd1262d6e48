from .chat import (
    ActiveWorkflow,
    Chat,
    ChatStatus,
    DeliveryStatus,
    Message,
    MessageType,
    ReplyReference,
    SenderRole,
)
from .directory import (
    BusinessHours,
    ChatbotConfig,
    Contact,
    ContactSource,
    Department,
    QuickReply,
    User,
    UserRole,
    Workflow,
    WorkflowStep,
)
from .raw import RawChat, RawMessage, StatusUpdate

__all__ = [
    "ActiveWorkflow",
    "Chat",
    "ChatStatus",
    "DeliveryStatus",
    "Message",
    "MessageType",
    "ReplyReference",
    "SenderRole",
    "BusinessHours",
    "ChatbotConfig",
    "Contact",
    "ContactSource",
    "Department",
    "QuickReply",
    "User",
    "UserRole",
    "Workflow",
    "WorkflowStep",
    "RawChat",
    "RawMessage",
    "StatusUpdate",
]
