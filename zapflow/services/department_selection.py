"""Department selection menu and numeric reply handling."""

import logging
import re
from datetime import datetime
from typing import List, Optional, Sequence

from zapflow.infra.metrics import department_selections_total
from zapflow.models.chat import Chat, ChatStatus, Message, SenderRole
from zapflow.models.directory import Department
from zapflow.services.chat_status import select_department, system_note

logger = logging.getLogger(__name__)

DEPARTMENT_REPLY_PATTERN = re.compile(r"^[1-9][0-9]*$")

PROMPT_SENT_NOTE = "department_selection_sent - Mensagem de seleção de departamento enviada"


def greeting_for(hour: int) -> str:
    """Time-of-day greeting: 05-11 morning, 12-17 afternoon, otherwise evening."""
    if 5 <= hour < 12:
        return "Bom dia"
    if 12 <= hour < 18:
        return "Boa tarde"
    return "Boa noite"


def ordered_departments(departments: Sequence[Department]) -> List[Department]:
    """Menu order: by position, ties kept in the given order."""
    return sorted(departments, key=lambda d: d.position)


def compose_department_menu(departments: Sequence[Department], now: datetime) -> str:
    """Greeting followed by a 1..N numbered list of department names."""
    lines = [
        f"{greeting_for(now.hour)}! Para direcionarmos seu atendimento, escolha o setor desejado:",
        "",
    ]
    for index, department in enumerate(ordered_departments(departments), start=1):
        lines.append(f"{index} - {department.name}")
    lines.append("")
    lines.append("Responda apenas com o número do setor.")
    return "\n".join(lines)


def is_first_customer_message(chat: Chat, message: Message) -> bool:
    customer = [m for m in chat.messages if m.sender == SenderRole.USER]
    return bool(customer) and customer[0].id == message.id


def needs_department_prompt(chat: Chat, departments: Sequence[Department]) -> bool:
    """An open, unrouted, unassigned chat that has not been prompted yet."""
    return (
        bool(departments)
        and chat.status == ChatStatus.OPEN
        and chat.department_id is None
        and not chat.assigned_to
        and not chat.department_selection_sent
    )


def mark_prompt_sent(chat: Chat, departments: Sequence[Department], now: datetime) -> Chat:
    """Record the outstanding menu so a reply maps onto the order the customer saw."""
    return chat.model_copy(update={
        "department_selection_sent": True,
        "awaiting_department_selection": True,
        "department_menu": [d.id for d in ordered_departments(departments)],
        "messages": chat.messages + [system_note(PROMPT_SENT_NOTE, now)],
    })


def unmark_prompt_sent(chat: Chat) -> Chat:
    """Roll back ``mark_prompt_sent`` after a failed send so a later trigger may retry."""
    return chat.model_copy(update={
        "department_selection_sent": False,
        "awaiting_department_selection": False,
        "department_menu": [],
        "messages": [m for m in chat.messages if m.content != PROMPT_SENT_NOTE],
    })


def parse_department_reply(
    text: str,
    departments: Sequence[Department],
    menu: Optional[Sequence[str]] = None,
) -> Optional[Department]:
    """
    Map a numeric reply onto a department.

    Args:
        text: Customer reply
        departments: Current departments
        menu: Department ids in the order the outstanding prompt listed them

    Returns:
        The chosen department, or None for non-numeric, out-of-range or
        since-deleted choices
    """
    stripped = (text or "").strip()
    if not DEPARTMENT_REPLY_PATTERN.match(stripped):
        department_selections_total.labels(result="ignored").inc()
        return None

    if menu:
        by_id = {d.id: d for d in departments}
        choices = [by_id.get(dept_id) for dept_id in menu]
    else:
        choices = ordered_departments(departments)

    index = int(stripped)
    if index > len(choices) or choices[index - 1] is None:
        department_selections_total.labels(result="out_of_range").inc()
        return None

    department_selections_total.labels(result="selected").inc()
    return choices[index - 1]


def apply_department_reply(chat: Chat, message: Message, departments: Sequence[Department]) -> Chat:
    """Select a department when ``message`` answers an outstanding menu; otherwise no change."""
    if (
        chat.status != ChatStatus.OPEN
        or chat.department_id is not None
        or not chat.awaiting_department_selection
        or message.sender != SenderRole.USER
    ):
        return chat

    department = parse_department_reply(message.content, departments, chat.department_menu)
    if department is None:
        logger.info("Reply did not select a department", extra={"chat_id": chat.id})
        return chat

    logger.info("Department selected", extra={"chat_id": chat.id, "department_id": department.id})
    selected = select_department(chat, department.id, control_message=message)
    return selected.model_copy(update={"department_menu": []})
