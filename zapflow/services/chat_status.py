"""Chat lifecycle state machine.

open --(department selected)--> pending
open/pending --(agent closes)--> closed
closed --(customer message, not a rating)--> open   (re-triage)
closed --(rating 1-5 while awaiting rating)--> closed

Anything else is ignored rather than raised.
"""

import logging
import re
import uuid
from datetime import datetime
from typing import Optional

from zapflow.infra.metrics import status_transitions_total
from zapflow.models.chat import Chat, ChatStatus, DeliveryStatus, Message, MessageType, SenderRole

logger = logging.getLogger(__name__)

RATING_PATTERN = re.compile(r"^[1-5]$")

ALLOWED_TRANSITIONS = {
    (ChatStatus.OPEN, ChatStatus.PENDING),
    (ChatStatus.OPEN, ChatStatus.CLOSED),
    (ChatStatus.PENDING, ChatStatus.CLOSED),
    (ChatStatus.CLOSED, ChatStatus.OPEN),
    (ChatStatus.CLOSED, ChatStatus.CLOSED),
}

SURVEY_CLOSE_NOTE = "Atendimento finalizado. Enviamos uma pesquisa de satisfação para o cliente."
PLAIN_CLOSE_NOTE = "Atendimento finalizado pelo agente."


def can_transition(source: ChatStatus, target: ChatStatus) -> bool:
    return (source, target) in ALLOWED_TRANSITIONS


def system_note(content: str, now: datetime) -> Message:
    """Local bookkeeping message shown in the conversation."""
    return Message(
        id=f"sys_{uuid.uuid4().hex}",
        content=content,
        sender=SenderRole.SYSTEM,
        timestamp=now,
        status=DeliveryStatus.READ,
        type=MessageType.TEXT,
    )


def _ignored(chat: Chat, target: ChatStatus, reason: str) -> Chat:
    logger.info(
        "Ignoring status transition",
        extra={"chat_id": chat.id, "from_status": chat.status.value, "to_status": target.value, "reason": reason},
    )
    return chat


def _record(source: ChatStatus, target: ChatStatus) -> None:
    if not can_transition(source, target):
        logger.warning("Unexpected status edge", extra={"from_status": source.value, "to_status": target.value})
    status_transitions_total.labels(from_status=source.value, to_status=target.value).inc()


def select_department(chat: Chat, department_id: str, control_message: Optional[Message] = None) -> Chat:
    """
    open -> pending.

    ``control_message`` is the numeric reply that made the choice; it is
    control input, so it is removed from the visible list and its gateway id
    remembered so later fetches do not bring it back.
    """
    if chat.status != ChatStatus.OPEN:
        return _ignored(chat, ChatStatus.PENDING, "department selection only applies to open chats")

    messages = chat.messages
    suppressed = list(chat.suppressed_message_ids)
    if control_message is not None:
        messages = [
            m for m in messages
            if m.id != control_message.id
            and not (control_message.remote_id and m.remote_id == control_message.remote_id)
        ]
        if control_message.remote_id and control_message.remote_id not in suppressed:
            suppressed.append(control_message.remote_id)

    _record(chat.status, ChatStatus.PENDING)
    return chat.model_copy(update={
        "status": ChatStatus.PENDING,
        "department_id": department_id,
        "awaiting_department_selection": False,
        "messages": messages,
        "suppressed_message_ids": suppressed,
    })


def close_chat(chat: Chat, now: datetime, with_survey: bool = True) -> Chat:
    """open/pending -> closed; clears assignment and any running workflow."""
    if chat.status not in (ChatStatus.OPEN, ChatStatus.PENDING):
        return _ignored(chat, ChatStatus.CLOSED, "chat is already closed")

    note = system_note(SURVEY_CLOSE_NOTE if with_survey else PLAIN_CLOSE_NOTE, now)
    _record(chat.status, ChatStatus.CLOSED)
    return chat.model_copy(update={
        "status": ChatStatus.CLOSED,
        "ended_at": now,
        "rating": None,
        "awaiting_rating": with_survey,
        "assigned_to": None,
        "active_workflow": None,
        "messages": chat.messages + [note],
    })


def reopen_chat(chat: Chat) -> Chat:
    """closed -> open for re-triage: routing and rating flags are cleared."""
    if chat.status != ChatStatus.CLOSED:
        return _ignored(chat, ChatStatus.OPEN, "only closed chats reopen")

    _record(chat.status, ChatStatus.OPEN)
    return chat.model_copy(update={
        "status": ChatStatus.OPEN,
        "department_id": None,
        "assigned_to": None,
        "awaiting_rating": False,
        "rating": None,
        "ended_at": None,
        "awaiting_department_selection": False,
        "department_selection_sent": False,
    })


def record_rating(chat: Chat, rating: int) -> Chat:
    """closed -> closed with the customer's 1-5 rating."""
    if chat.status != ChatStatus.CLOSED or not chat.awaiting_rating:
        return _ignored(chat, ChatStatus.CLOSED, "no rating is pending")
    if not 1 <= rating <= 5:
        return _ignored(chat, ChatStatus.CLOSED, "rating out of range")

    _record(chat.status, ChatStatus.CLOSED)
    return chat.model_copy(update={"rating": rating, "awaiting_rating": False})


def apply_customer_message(chat: Chat, text: str) -> Chat:
    """
    Apply a new customer message to a closed chat.

    A lone digit 1-5 while a rating is pending is the rating; any other
    message reopens the chat. Open and pending chats are returned unchanged.
    """
    if chat.status != ChatStatus.CLOSED:
        return chat

    stripped = (text or "").strip()
    if chat.awaiting_rating and RATING_PATTERN.match(stripped):
        return record_rating(chat, int(stripped))
    return reopen_chat(chat)


def assume_chat(chat: Chat, user_id: str, user_name: str, now: datetime) -> Chat:
    """Agent takes the chat; assignment only, no status edge."""
    if chat.status == ChatStatus.CLOSED:
        return _ignored(chat, chat.status, "closed chats cannot be assumed")
    note = system_note(f"Atendimento assumido por {user_name}", now)
    return chat.model_copy(update={"assigned_to": user_id, "messages": chat.messages + [note]})


def transfer_chat(chat: Chat, department_id: str, now: datetime, department_name: Optional[str] = None) -> Chat:
    """Move the chat to a department; open chats take the open -> pending edge."""
    if chat.status == ChatStatus.CLOSED:
        return _ignored(chat, ChatStatus.PENDING, "closed chats cannot be transferred")

    label = department_name or department_id
    note = system_note(f"Atendimento transferido para {label}", now)
    if chat.status == ChatStatus.OPEN:
        moved = select_department(chat, department_id)
    else:
        moved = chat.model_copy(update={"department_id": department_id})
    return moved.model_copy(update={"assigned_to": None, "messages": moved.messages + [note]})
