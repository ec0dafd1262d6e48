"""Collapse raw chat records that refer to the same contact.

The gateway issues unstable aliases (``@lid`` and locally generated ids) for
new or renamed contacts, so one customer can show up as several raw chats.
Aliases are resolved through the phone numbers that inbound messages carry,
and chats sharing a resolved key are merged into one logical chat.
"""

import logging
from typing import Dict, Iterable, List, Mapping, Optional

from zapflow.infra.metrics import chats_consolidated_total, noise_chats_dropped_total
from zapflow.models.chat import Chat, Message, ReplyReference, SenderRole
from zapflow.models.raw import RawChat, RawMessage
from zapflow.services.identity import IdentityKind, is_group_identifier, parse_identifier, to_jid
from zapflow.services.message_merge import MergeSettings, merge_messages

logger = logging.getLogger(__name__)


def alias_token(raw: str) -> str:
    return raw.strip().lower()


def raw_to_message(raw: RawMessage) -> Message:
    """Gateway message -> domain message; the gateway id doubles as the local id."""
    reply_to = None
    if raw.quoted_remote_id:
        reply_to = ReplyReference(
            id=raw.quoted_remote_id,
            content=raw.quoted_content or "",
            remote_id=raw.quoted_remote_id,
        )
    return Message(
        id=raw.remote_id,
        remote_id=raw.remote_id,
        content=raw.content,
        sender=SenderRole.AGENT if raw.from_me else SenderRole.USER,
        timestamp=raw.timestamp,
        status=raw.status,
        type=raw.type,
        media_url=raw.media_url,
        file_name=raw.file_name,
        mime_type=raw.mime_type,
        author=raw.sender_jid,
        reply_to=reply_to,
    )


def _message_key(message: RawMessage) -> Optional[str]:
    """Phone key named by an inbound message, if any."""
    for raw, alternate in (
        (message.sender_jid, message.sender_alt),
        (message.chat_jid, message.chat_jid_alt),
    ):
        identity = parse_identifier(raw, alternate)
        if identity.kind != IdentityKind.GROUP and identity.key:
            return identity.key
    return None


def build_alias_map(raw_chats: Iterable[RawChat]) -> Dict[str, str]:
    """
    Map aliases to the best-known canonical phone key.

    Every inbound message across all raw chats is scanned: a message whose
    sender (or alternate chat id) names a reliable phone number resolves the
    alias of its parent chat and of the sender itself. Agent messages are
    skipped since their sender is the business number.

    Returns:
        ``{alias_token: phone_key}``
    """
    alias_map: Dict[str, str] = {}

    def _bind(alias: Optional[str], key: str) -> None:
        if not alias:
            return
        identity = parse_identifier(alias)
        if identity.kind == IdentityKind.PHONE or identity.kind == IdentityKind.GROUP:
            return
        token = alias_token(alias)
        current = alias_map.get(token)
        if current is None:
            alias_map[token] = key
        elif current != key:
            logger.debug("Conflicting alias resolution, keeping first", extra={"alias": alias})

    for chat in raw_chats:
        if is_group_identifier(chat.remote_jid):
            continue
        chat_identity = parse_identifier(chat.remote_jid, chat.alt_jid)
        if chat_identity.key and chat_identity.kind != IdentityKind.PHONE:
            _bind(chat.remote_jid, chat_identity.key)

        for message in chat.messages:
            if message.from_me:
                continue
            key = _message_key(message)
            if key is None:
                continue
            _bind(chat.remote_jid, key)
            _bind(message.sender_jid, key)
            _bind(message.chat_jid, key)

    return alias_map


def resolve_key(raw_jid: str, alternate: Optional[str], alias_map: Mapping[str, str]) -> Optional[str]:
    return parse_identifier(raw_jid, alternate).key or alias_map.get(alias_token(raw_jid))


def merge_chat(existing: Chat, incoming: Chat, settings: Optional[MergeSettings] = None) -> Chat:
    """
    Merge two records of one contact.

    The resolved (phone) id wins over an alias and is never replaced by one.
    Local state (status, routing, flags) is taken from ``existing``; display
    fields are filled from ``incoming`` where ``existing`` lacks them.
    """
    if existing.contact_key:
        chat_id, contact_key = existing.id, existing.contact_key
    elif incoming.contact_key:
        chat_id, contact_key = incoming.id, incoming.contact_key
    else:
        chat_id, contact_key = existing.id, None

    remote_jid = incoming.remote_jid or existing.remote_jid
    if existing.remote_jid and parse_identifier(existing.remote_jid).kind == IdentityKind.PHONE:
        remote_jid = existing.remote_jid

    suppressed = set(existing.suppressed_message_ids) | set(incoming.suppressed_message_ids)
    messages = merge_messages(incoming.messages, existing.messages, settings)
    if suppressed:
        messages = [m for m in messages if not (m.remote_id and m.remote_id in suppressed)]

    return existing.model_copy(update={
        "id": chat_id,
        "contact_key": contact_key,
        "remote_jid": remote_jid,
        "contact_name": existing.contact_name or incoming.contact_name,
        "contact_avatar": existing.contact_avatar or incoming.contact_avatar,
        "messages": messages,
        "unread_count": max(existing.unread_count, incoming.unread_count),
        "suppressed_message_ids": sorted(suppressed),
    })


def raw_to_chat(raw: RawChat, key: Optional[str], settings: Optional[MergeSettings] = None) -> Chat:
    """Build a fresh chat from one raw record."""
    messages = [raw_to_message(m) for m in raw.messages if not is_group_identifier(m.chat_jid)]
    push_name = next((m.push_name for m in raw.messages if not m.from_me and m.push_name), None)
    return Chat(
        id=to_jid(key) if key else raw.remote_jid,
        contact_key=key,
        remote_jid=raw.remote_jid,
        contact_name=raw.name or push_name or "",
        contact_avatar=raw.avatar,
        unread_count=raw.unread_count,
        messages=merge_messages(messages, [], settings),
    )


def consolidate(
    raw_chats: Iterable[RawChat],
    settings: Optional[MergeSettings] = None,
    known_aliases: Optional[Mapping[str, str]] = None,
) -> List[Chat]:
    """
    Turn a batch of raw chats into logical chats, one per contact.

    Args:
        raw_chats: Fetch or push results, possibly with several records per contact
        settings: Message merge windows
        known_aliases: Alias resolutions learned earlier, consulted after the batch's own

    Returns:
        Chats in first-seen order. Group chats are skipped, unresolved aliases
        are kept under the alias, and records with no messages and no
        resolvable identity are dropped.
    """
    raw_chats = list(raw_chats)
    alias_map = dict(known_aliases or {})
    alias_map.update(build_alias_map(raw_chats))

    merged: Dict[str, Chat] = {}
    for raw in raw_chats:
        if is_group_identifier(raw.remote_jid):
            logger.debug("Skipping group chat", extra={"remote_jid": raw.remote_jid})
            continue

        key = resolve_key(raw.remote_jid, raw.alt_jid, alias_map)
        candidate = raw_to_chat(raw, key, settings)
        existing = merged.get(candidate.id)
        if existing is None:
            merged[candidate.id] = candidate
            continue

        chats_consolidated_total.inc()
        logger.info(
            "Consolidating duplicate chat record",
            extra={"chat_id": candidate.id, "remote_jid": raw.remote_jid},
        )
        merged[candidate.id] = merge_chat(existing, candidate, settings)

    result: List[Chat] = []
    for chat in merged.values():
        if not chat.messages and not chat.contact_key:
            noise_chats_dropped_total.inc()
            logger.debug("Dropping noise chat", extra={"chat_id": chat.id})
            continue
        result.append(chat)
    return result
