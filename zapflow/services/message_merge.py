"""Deduplicating merge of message lists.

Messages for one chat arrive from three places: the periodic gateway fetch,
push events and local optimistic sends. ``merge_messages`` folds any two such
lists into one duplicate-free, time-ordered list. The merge is idempotent, so
overlapping triggers can re-merge the same data without locks.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from zapflow.infra.config import config
from zapflow.infra.metrics import messages_merged_total, duplicate_messages_total
from zapflow.models.chat import DELIVERY_RANK, Message, SenderRole

logger = logging.getLogger(__name__)

# Metadata copied from the discarded copy when the kept copy lacks it
_FILLABLE_FIELDS = ("remote_id", "media_url", "file_name", "mime_type", "author", "reply_to")


@dataclass(frozen=True)
class MergeSettings:
    """Heuristic windows, in seconds."""
    agent_dedup_window: float = 30.0  # gateway confirms agent sends with delay
    dedup_window: float = 10.0
    agent_first_window: float = 10.0

    @classmethod
    def from_config(cls) -> "MergeSettings":
        return cls(
            agent_dedup_window=config.AGENT_DEDUP_WINDOW_SECONDS,
            dedup_window=config.DEDUP_WINDOW_SECONDS,
            agent_first_window=config.AGENT_FIRST_WINDOW_SECONDS,
        )


DEFAULT_SETTINGS = MergeSettings()


def _seconds_apart(a: Message, b: Message) -> float:
    return abs((a.timestamp - b.timestamp).total_seconds())


def is_duplicate(a: Message, b: Message, settings: MergeSettings = DEFAULT_SETTINGS) -> bool:
    """
    Decide whether two messages are copies of the same message.

    Checked in priority order: gateway id, local id, then same sender with
    equal trimmed content inside a sender-dependent time window. Two messages
    with different gateway ids are always distinct.
    """
    if a.remote_id and b.remote_id:
        return a.remote_id == b.remote_id

    if a.id == b.id:
        return True
    # A copy built from the gateway uses the gateway id as its own id
    if (a.remote_id and a.remote_id == b.id) or (b.remote_id and b.remote_id == a.id):
        return True

    if a.sender != b.sender:
        return False

    content = a.content.strip()
    if not content or content != b.content.strip():
        return False

    window = settings.agent_dedup_window if a.sender == SenderRole.AGENT else settings.dedup_window
    return _seconds_apart(a, b) <= window


def _fill_missing(primary: Message, secondary: Message) -> Message:
    update = {}
    for field_name in _FILLABLE_FIELDS:
        if getattr(primary, field_name) is None and getattr(secondary, field_name) is not None:
            update[field_name] = getattr(secondary, field_name)
    if DELIVERY_RANK[secondary.status] > DELIVERY_RANK[primary.status]:
        update["status"] = secondary.status
    if not update:
        return primary
    return primary.model_copy(update=update)


def prefer(existing: Message, candidate: Message) -> Message:
    """Pick the copy to keep: the one with a gateway id, else the most recent."""
    if bool(existing.remote_id) != bool(candidate.remote_id):
        primary, secondary = (existing, candidate) if existing.remote_id else (candidate, existing)
    elif candidate.timestamp > existing.timestamp:
        primary, secondary = candidate, existing
    else:
        primary, secondary = existing, candidate
    return _fill_missing(primary, secondary)


def _collapse(messages: Iterable[Message], settings: MergeSettings) -> Tuple[List[Message], int]:
    result: List[Message] = []
    dropped = 0
    for candidate in messages:
        for idx, existing in enumerate(result):
            if is_duplicate(existing, candidate, settings):
                result[idx] = prefer(existing, candidate)
                dropped += 1
                break
        else:
            result.append(candidate)
    return result, dropped


def order_messages(messages: Iterable[Message], settings: MergeSettings = DEFAULT_SETTINGS) -> List[Message]:
    """
    Order by timestamp ascending, with agent replies first inside the skew window.

    An agent message within ``agent_first_window`` seconds of a customer
    message is placed before it, so a local optimistic timestamp that trails
    the gateway clock never pushes the agent's reply below the customer's
    next message.
    """
    ordered = sorted(
        messages,
        key=lambda m: (m.timestamp, 0 if m.sender == SenderRole.AGENT else 1, m.id),
    )
    window = settings.agent_first_window
    for i in range(1, len(ordered)):
        current = ordered[i]
        if current.sender != SenderRole.AGENT:
            continue
        j = i
        while (
            j > 0
            and ordered[j - 1].sender == SenderRole.USER
            and (current.timestamp - ordered[j - 1].timestamp).total_seconds() <= window
        ):
            ordered[j] = ordered[j - 1]
            j -= 1
        ordered[j] = current
    return ordered


def merge_messages(
    remote: Optional[Iterable[Message]],
    local: Optional[Iterable[Message]],
    settings: Optional[MergeSettings] = None,
) -> List[Message]:
    """
    Merge a gateway-sourced list with the locally held list.

    Args:
        remote: Messages from a fetch or push event (may be partial, stale or repeated)
        local: Messages currently held for the chat, including optimistic sends
        settings: Dedup and ordering windows

    Returns:
        Duplicate-free list in display order. ``merge(X, X) == X`` for any
        output ``X``.
    """
    settings = settings or DEFAULT_SETTINGS
    combined = list(remote or []) + list(local or [])
    messages_merged_total.inc(len(combined))

    merged, dropped = _collapse(combined, settings)
    total_dropped = dropped
    # Replacing a copy can shift its timestamp into another copy's window
    while dropped:
        merged, dropped = _collapse(merged, settings)
        total_dropped += dropped

    if total_dropped:
        duplicate_messages_total.inc(total_dropped)
        logger.debug(
            "Collapsed duplicate messages",
            extra={"incoming": len(combined), "kept": len(merged), "dropped": total_dropped},
        )
    return order_messages(merged, settings)
