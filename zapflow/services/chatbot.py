"""Chatbot auto-replies: greeting inside business hours, away message outside."""

from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from zapflow.models.chat import Chat
from zapflow.models.directory import BusinessHours, ChatbotConfig


class AutoReplyKind(str, Enum):
    GREETING = "greeting"
    AWAY = "away"


def day_of_week(moment: datetime) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (moment.weekday() + 1) % 7


def hours_for(config: ChatbotConfig, moment: datetime) -> Optional[BusinessHours]:
    today = day_of_week(moment)
    return next((bh for bh in config.business_hours if bh.day_of_week == today), None)


def is_within_business_hours(config: ChatbotConfig, moment: datetime) -> bool:
    """
    Whether ``moment`` (local time) falls inside the configured hours.

    No configured hours means always open; a day without an entry, or marked
    closed, is closed. Bounds are inclusive ``HH:MM`` comparisons.
    """
    if not config.business_hours:
        return True

    today = hours_for(config, moment)
    if today is None or not today.is_open:
        return False

    current = moment.strftime("%H:%M")
    return today.open_time <= current <= today.close_time


def pick_auto_reply(config: Optional[ChatbotConfig], chat: Chat, moment: datetime) -> Optional[Tuple[AutoReplyKind, str]]:
    """
    Auto-reply owed to ``chat`` at ``moment``, if any.

    Returns:
        ``(kind, text)`` or None when the bot is off, the text is empty or
        that reply was already sent
    """
    if config is None or not config.is_enabled:
        return None

    if is_within_business_hours(config, moment):
        if config.greeting_message and not chat.greeting_sent:
            return AutoReplyKind.GREETING, config.greeting_message
        return None

    if config.away_message and not chat.away_sent:
        return AutoReplyKind.AWAY, config.away_message
    return None


def mark_auto_reply(chat: Chat, kind: AutoReplyKind, sent: bool = True) -> Chat:
    field_name = "greeting_sent" if kind == AutoReplyKind.GREETING else "away_sent"
    return chat.model_copy(update={field_name: sent})
