"""Evolution API payload parser.

Normalizes every gateway payload shape into ``RawMessage``/``RawChat``
before reconciliation runs. Unknown variants are rejected with
``MalformedPayloadError``; batch helpers skip the offending item and keep
going. Nested wrappers are unwrapped by a depth-bounded visitor over a fixed
set of wrapper keys.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from zapflow.infra.error_handler import MalformedPayloadError
from zapflow.models.chat import DeliveryStatus, MessageType
from zapflow.models.raw import RawChat, RawMessage, StatusUpdate

logger = logging.getLogger(__name__)

MAX_UNWRAP_DEPTH = 4

# Containers that hold another message under their "message" key
WRAPPER_KEYS = (
    "ephemeralMessage",
    "viewOnceMessage",
    "viewOnceMessageV2",
    "viewOnceMessageV2Extension",
    "documentWithCaptionMessage",
    "editedMessage",
)

MEDIA_VARIANTS = {
    "imageMessage": MessageType.IMAGE,
    "videoMessage": MessageType.VIDEO,
    "audioMessage": MessageType.AUDIO,
    "documentMessage": MessageType.DOCUMENT,
    "stickerMessage": MessageType.STICKER,
}

STATUS_MAP = {
    "ERROR": DeliveryStatus.ERROR,
    "PENDING": DeliveryStatus.SENT,
    "SERVER_ACK": DeliveryStatus.SENT,
    "DELIVERY_ACK": DeliveryStatus.DELIVERED,
    "READ": DeliveryStatus.READ,
    "PLAYED": DeliveryStatus.READ,
    0: DeliveryStatus.ERROR,
    1: DeliveryStatus.SENT,
    2: DeliveryStatus.SENT,
    3: DeliveryStatus.DELIVERED,
    4: DeliveryStatus.READ,
    5: DeliveryStatus.READ,
}

MESSAGE_EVENTS = ("messages.upsert", "messages.set", "send.message")
STATUS_EVENTS = ("messages.update",)


@dataclass
class ParsedContent:
    type: MessageType
    text: str = ""
    media_url: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    quoted_remote_id: Optional[str] = None
    quoted_content: Optional[str] = None


@dataclass
class PushEvent:
    """A push payload reduced to what reconciliation consumes."""
    event: str
    instance: Optional[str] = None
    messages: List[RawMessage] = field(default_factory=list)
    status_updates: List[StatusUpdate] = field(default_factory=list)


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def unwrap_message(message: Dict[str, Any]) -> Dict[str, Any]:
    """Descend through known wrapper containers, at most ``MAX_UNWRAP_DEPTH`` levels."""
    node = message
    for _ in range(MAX_UNWRAP_DEPTH + 1):
        for key in WRAPPER_KEYS:
            inner = node.get(key)
            if isinstance(inner, dict) and isinstance(inner.get("message"), dict):
                node = inner["message"]
                break
        else:
            return node
    raise MalformedPayloadError("message wrappers nested too deeply", payload_kind="message")


def _quoted_text(quoted: Any) -> Optional[str]:
    if not isinstance(quoted, dict):
        return None
    text = _as_str(quoted.get("conversation"))
    if text:
        return text
    extended = quoted.get("extendedTextMessage")
    if isinstance(extended, dict):
        return _as_str(extended.get("text"))
    for variant in MEDIA_VARIANTS:
        media = quoted.get(variant)
        if isinstance(media, dict):
            return _as_str(media.get("caption")) or ""
    return None


def _apply_context(content: ParsedContent, node: Dict[str, Any]) -> ParsedContent:
    context = node.get("contextInfo")
    if isinstance(context, dict):
        content.quoted_remote_id = _as_str(context.get("stanzaId"))
        content.quoted_content = _quoted_text(context.get("quotedMessage"))
    return content


def parse_content(message: Any) -> ParsedContent:
    """Extract text/media from a message body."""
    if not isinstance(message, dict) or not message:
        raise MalformedPayloadError("message body missing", payload_kind="message")

    node = unwrap_message(message)

    text = node.get("conversation")
    if isinstance(text, str):
        return ParsedContent(type=MessageType.TEXT, text=text)

    extended = node.get("extendedTextMessage")
    if isinstance(extended, dict):
        return _apply_context(
            ParsedContent(type=MessageType.TEXT, text=extended.get("text") or ""),
            extended,
        )

    for variant, message_type in MEDIA_VARIANTS.items():
        media = node.get(variant)
        if isinstance(media, dict):
            return _apply_context(
                ParsedContent(
                    type=message_type,
                    text=media.get("caption") or "",
                    media_url=_as_str(media.get("url")),
                    file_name=_as_str(media.get("fileName")),
                    mime_type=_as_str(media.get("mimetype")),
                ),
                media,
            )

    raise MalformedPayloadError(
        f"unsupported message variant: {sorted(node.keys())[:5]}",
        payload_kind="message",
    )


def parse_timestamp(value: Any) -> datetime:
    """Gateway timestamps arrive as epoch seconds, epoch millis, Long dicts or ISO strings."""
    if isinstance(value, dict) and "low" in value:
        value = value["low"]
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            value = int(stripped)
        else:
            try:
                parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
            except ValueError:
                raise MalformedPayloadError(f"unparseable timestamp: {value!r}", payload_kind="timestamp")
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedPayloadError(f"timestamp missing or invalid: {value!r}", payload_kind="timestamp")
    try:
        seconds = float(value)
        if seconds > 1e12:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise MalformedPayloadError(f"timestamp out of range: {value!r}", payload_kind="timestamp")


def parse_status(value: Any) -> DeliveryStatus:
    if isinstance(value, str):
        value = value.strip().upper()
    return STATUS_MAP.get(value, DeliveryStatus.SENT)


def parse_message(payload: Any) -> RawMessage:
    """
    Parse one gateway message record.

    Raises:
        MalformedPayloadError: When the key, id, chat jid, body or timestamp is missing
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError("message record is not an object", payload_kind="message")

    key = payload.get("key")
    if not isinstance(key, dict):
        raise MalformedPayloadError("message key missing", payload_kind="message")

    remote_id = _as_str(key.get("id"))
    chat_jid = _as_str(key.get("remoteJid"))
    if not remote_id or not chat_jid:
        raise MalformedPayloadError("message key lacks id or remoteJid", payload_kind="message")

    content = parse_content(payload.get("message"))
    from_me = bool(key.get("fromMe"))
    participant = _as_str(key.get("participant"))

    return RawMessage(
        remote_id=remote_id,
        chat_jid=chat_jid,
        from_me=from_me,
        timestamp=parse_timestamp(payload.get("messageTimestamp")),
        content=content.text,
        type=content.type,
        chat_jid_alt=_as_str(key.get("remoteJidAlt")) or _as_str(payload.get("remoteJidAlt")),
        sender_jid=participant or (None if from_me else chat_jid),
        sender_alt=(
            _as_str(key.get("participantAlt"))
            or _as_str(key.get("senderPn"))
            or _as_str(payload.get("senderPn"))
        ),
        push_name=_as_str(payload.get("pushName")),
        status=parse_status(payload.get("status")),
        media_url=content.media_url,
        file_name=content.file_name,
        mime_type=content.mime_type,
        quoted_remote_id=content.quoted_remote_id,
        quoted_content=content.quoted_content,
    )


def parse_messages(items: Any) -> List[RawMessage]:
    """Parse a batch, skipping malformed records."""
    if not isinstance(items, list):
        return []
    parsed: List[RawMessage] = []
    for item in items:
        try:
            parsed.append(parse_message(item))
        except MalformedPayloadError as e:
            logger.warning("Skipping malformed message", extra={"error": e.message})
    return parsed


def extract_message_records(payload: Any) -> List[Any]:
    """
    Locate the message list in a fetch response.

    Accepted shapes: ``[...]``, ``{"messages": [...]}``,
    ``{"messages": {"records": [...]}}``, ``{"records": [...]}``.
    """
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    messages = payload.get("messages")
    if isinstance(messages, list):
        return messages
    if isinstance(messages, dict) and isinstance(messages.get("records"), list):
        return messages["records"]
    if isinstance(payload.get("records"), list):
        return payload["records"]
    return []


def parse_chat(payload: Any) -> RawChat:
    """
    Parse one chat record from a chat listing.

    ``remoteJid`` is preferred over ``id``; newer gateway builds use ``id``
    for an internal database key.
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError("chat record is not an object", payload_kind="chat")

    jid = _as_str(payload.get("remoteJid")) or _as_str(payload.get("id"))
    if not jid:
        raise MalformedPayloadError("chat record lacks remoteJid/id", payload_kind="chat")

    records = extract_message_records(payload)
    last_message = payload.get("lastMessage")
    if isinstance(last_message, dict):
        records = records + [last_message]
    messages = parse_messages(records)

    alt_jid = _as_str(payload.get("remoteJidAlt"))
    if not alt_jid:
        alt_jid = next((m.chat_jid_alt for m in messages if m.chat_jid_alt), None)

    unread = payload.get("unreadCount") or payload.get("unreadMessages") or 0
    return RawChat(
        remote_jid=jid,
        alt_jid=alt_jid,
        name=_as_str(payload.get("pushName")) or _as_str(payload.get("name")),
        avatar=_as_str(payload.get("profilePicUrl")) or _as_str(payload.get("profilePictureUrl")),
        unread_count=unread if isinstance(unread, int) else 0,
        messages=messages,
    )


def parse_chats(payload: Any) -> List[RawChat]:
    """Parse a chat listing (``[...]`` or ``{"chats": [...]}``), skipping malformed records."""
    if isinstance(payload, dict):
        payload = payload.get("chats") if isinstance(payload.get("chats"), list) else payload.get("data")
    if not isinstance(payload, list):
        return []
    chats: List[RawChat] = []
    for item in payload:
        try:
            chats.append(parse_chat(item))
        except MalformedPayloadError as e:
            logger.warning("Skipping malformed chat", extra={"error": e.message})
    return chats


def _normalize_event_name(name: Any) -> str:
    return str(name or "").strip().lower().replace("_", ".")


def _status_updates(data: Any) -> List[StatusUpdate]:
    items = data if isinstance(data, list) else [data]
    updates: List[StatusUpdate] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        key = item.get("key") if isinstance(item.get("key"), dict) else {}
        remote_id = _as_str(item.get("keyId")) or _as_str(key.get("id"))
        if not remote_id or item.get("status") is None:
            continue
        updates.append(StatusUpdate(remote_id=remote_id, status=parse_status(item.get("status"))))
    return updates


def parse_event(payload: Any) -> PushEvent:
    """
    Parse a webhook/socket event envelope: ``{"event", "instance", "data"}``.

    Events other than message upserts and delivery updates come back empty.
    """
    if not isinstance(payload, dict):
        raise MalformedPayloadError("event is not an object", payload_kind="event")

    event = _normalize_event_name(payload.get("event"))
    instance = _as_str(payload.get("instance"))
    data = payload.get("data")

    if event in MESSAGE_EVENTS:
        if isinstance(data, dict) and "key" not in data:
            records = extract_message_records(data)
        elif isinstance(data, list):
            records = data
        else:
            records = [data]
        return PushEvent(event=event, instance=instance, messages=parse_messages(records))

    if event in STATUS_EVENTS:
        return PushEvent(event=event, instance=instance, status_updates=_status_updates(data))

    return PushEvent(event=event, instance=instance)


def split_event(payload: Any) -> Tuple[List[RawMessage], List[StatusUpdate]]:
    """Messages and status updates from an event, or nothing when the envelope is malformed."""
    try:
        event = parse_event(payload)
    except MalformedPayloadError as e:
        logger.warning("Skipping malformed event", extra={"error": e.message})
        return [], []
    return event.messages, event.status_updates
