"""Live update dispatcher.

Owns the one in-memory chat collection that the poll loop, push events and
local agent actions all write to. Every write goes through the consolidator
and the deduplicating merge, both idempotent, so overlapping triggers can
re-apply the same data without locks. Outbound sends are never performed
here: they are returned as ``OutboundAction`` for the caller to dispatch.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from zapflow.infra.config import config
from zapflow.infra.metrics import chats_consolidated_total, chats_in_memory
from zapflow.models.chat import DELIVERY_RANK, Chat, ChatStatus, DeliveryStatus, Message, SenderRole
from zapflow.models.directory import ChatbotConfig, Contact, Department, Workflow
from zapflow.models.raw import RawChat, RawMessage, StatusUpdate
from zapflow.services import chat_status, chatbot, department_selection, workflows
from zapflow.services.chat_consolidator import alias_token, consolidate, merge_chat
from zapflow.services.contacts import index_contacts, link_contact
from zapflow.services.identity import IdentityKind, canonical_key, parse_identifier
from zapflow.services.message_merge import MergeSettings, is_duplicate, merge_messages

logger = logging.getLogger(__name__)

SURVEY_MESSAGE = "Por favor, avalie nosso atendimento de 1 a 5 estrelas."


class ActionKind(str, Enum):
    AGENT = "agent"
    DEPARTMENT_MENU = "department_menu"
    SURVEY = "survey"
    CHATBOT = "chatbot"


@dataclass
class OutboundAction:
    """A message the caller must send through the gateway."""
    kind: ActionKind
    chat_id: str
    phone_key: str  # phone key, or the raw jid while the contact is unresolved
    text: str
    local_id: Optional[str] = None  # optimistic message to confirm (agent sends)
    departments: List[Department] = field(default_factory=list)  # department menu
    auto_reply: Optional[chatbot.AutoReplyKind] = None


class UnknownChatError(LookupError):
    def __init__(self, chat_id: str):
        self.chat_id = chat_id
        super().__init__(f"Chat not found: {chat_id}")


def _recipient(chat: Chat) -> str:
    return chat.contact_key or chat.remote_jid or chat.id


def _summarize(chat: Chat) -> Chat:
    """Refresh the last-message cache from the newest non-system message."""
    visible = [m for m in chat.messages if m.sender != SenderRole.SYSTEM]
    if not visible:
        return chat
    last = visible[-1]
    summary = last.content or f"[{last.type.value}]"
    if chat.last_message == summary and chat.last_message_time == last.timestamp:
        return chat
    return chat.model_copy(update={"last_message": summary, "last_message_time": last.timestamp})


class LiveUpdateDispatcher:
    """Shared chat state plus the rules that run when new data lands in it."""

    def __init__(
        self,
        settings: Optional[MergeSettings] = None,
        chatbot_config: Optional[ChatbotConfig] = None,
        contacts: Optional[Iterable[Contact]] = None,
        tz: Optional[tzinfo] = None,
        triage_window: Optional[float] = None,
    ):
        """
        Args:
            settings: Dedup and ordering windows
            chatbot_config: Auto-reply configuration, None disables the bot
            contacts: Directory contacts linked to chats by phone key
            tz: Local timezone for greetings and business hours
            triage_window: Seconds within which a first-seen chat still gets
                the greeting and department menu
        """
        self.settings = settings or MergeSettings.from_config()
        self.chatbot_config = chatbot_config
        self.tz = tz
        self.triage_window = config.FIRST_SEEN_TRIAGE_WINDOW_SECONDS if triage_window is None else triage_window
        self.chats: Dict[str, Chat] = {}
        self.aliases: Dict[str, str] = {}
        self._contacts = index_contacts(contacts or [])
        self._dirty: Set[str] = set()
        self._removed: Set[str] = set()

    # --- state ---

    def load(self, chats: Iterable[Chat]) -> None:
        """Seed state from persisted chats (no rules run)."""
        for chat in chats:
            self._store(chat)
        self._dirty.clear()
        logger.info("Loaded chats", extra={"count": len(self.chats)})

    def snapshot(self) -> List[Chat]:
        """All chats, most recent activity first."""
        return sorted(
            self.chats.values(),
            key=lambda c: c.last_message_time.timestamp() if c.last_message_time else float("-inf"),
            reverse=True,
        )

    def find(self, chat_id: str) -> Optional[Chat]:
        """Look a chat up by id, by a learned alias or by phone number."""
        chat = self.chats.get(chat_id)
        if chat is not None:
            return chat
        key = self.aliases.get(alias_token(chat_id)) or canonical_key(chat_id)
        if key is None:
            return None
        return next((c for c in self.chats.values() if c.contact_key == key), None)

    def get(self, chat_id: str) -> Chat:
        chat = self.find(chat_id)
        if chat is None:
            raise UnknownChatError(chat_id)
        return chat

    def drain_changes(self) -> Tuple[List[Chat], List[str]]:
        """Chats changed and chat ids retired since the last call."""
        changed = [self.chats[chat_id] for chat_id in sorted(self._dirty) if chat_id in self.chats]
        removed = sorted(self._removed)
        self._dirty.clear()
        self._removed.clear()
        return changed, removed

    def set_contacts(self, contacts: Iterable[Contact]) -> None:
        self._contacts = index_contacts(contacts)
        for chat in list(self.chats.values()):
            self._store(chat)

    def set_chatbot_config(self, config: Optional[ChatbotConfig]) -> None:
        self.chatbot_config = config

    def _learn_alias(self, chat: Chat) -> None:
        if not chat.contact_key or not chat.remote_jid:
            return
        kind = parse_identifier(chat.remote_jid).kind
        if kind in (IdentityKind.ALIAS, IdentityKind.GENERATED, IdentityKind.UNKNOWN):
            self.aliases[alias_token(chat.remote_jid)] = chat.contact_key

    def _store(self, chat: Chat) -> Chat:
        chat = _summarize(link_contact(chat, self._contacts))
        if self.chats.get(chat.id) != chat:
            self._dirty.add(chat.id)
        self._removed.discard(chat.id)
        self.chats[chat.id] = chat
        self._learn_alias(chat)
        chats_in_memory.set(len(self.chats))
        return chat

    def local_time(self, now: datetime) -> datetime:
        if self.tz is not None and now.tzinfo is not None:
            return now.astimezone(self.tz)
        return now

    # --- inbound ---

    def _held_matches(self, candidate: Chat) -> List[Chat]:
        """Held chats that are the same contact as ``candidate``, resolved ones first."""
        matches = []
        for chat in self.chats.values():
            same = (
                chat.id == candidate.id
                or (candidate.remote_jid is not None and candidate.remote_jid in (chat.id, chat.remote_jid))
                or (candidate.contact_key is not None and (
                    chat.contact_key == candidate.contact_key
                    or self.aliases.get(alias_token(chat.id)) == candidate.contact_key
                ))
            )
            if same:
                matches.append(chat)
        matches.sort(key=lambda c: (c.contact_key is None, c.id != candidate.id))
        return matches

    def _absorb(self, candidate: Chat, departments: Sequence[Department], now: datetime) -> List[OutboundAction]:
        held = self._held_matches(candidate)
        first_seen = not held

        if held:
            base = held[0]
            for other in held[1:]:
                chats_consolidated_total.inc()
                logger.info("Merging held duplicate chat", extra={"chat_id": base.id, "duplicate_id": other.id})
                base = merge_chat(base, other, self.settings)
            previous = base.messages
            chat = merge_chat(base, candidate, self.settings)
            for stale in held:
                self.chats.pop(stale.id, None)
                if stale.id != chat.id:
                    self._removed.add(stale.id)
                    self._dirty.discard(stale.id)
        else:
            previous = []
            chat = candidate

        fresh = [
            m for m in chat.messages
            if m.sender == SenderRole.USER
            and not any(is_duplicate(p, m, self.settings) for p in previous)
        ]

        reopened = False
        for message in fresh:
            if chat.status == ChatStatus.CLOSED:
                if first_seen:
                    continue
                chat = chat_status.apply_customer_message(chat, message.content)
                reopened = reopened or chat.status == ChatStatus.OPEN
                continue
            if chat.awaiting_department_selection:
                chat = department_selection.apply_department_reply(chat, message, departments)

        actions: List[OutboundAction] = []
        starts_conversation = reopened or any(
            department_selection.is_first_customer_message(chat, m) for m in fresh
        )
        if starts_conversation and first_seen and not self._awaits_reply(chat, now):
            logger.debug("Skipping triage for history of a first-seen chat", extra={"chat_id": chat.id})
            starts_conversation = False
        if starts_conversation:
            chat = self._triage(chat, departments, now, actions)

        self._store(chat)
        return actions

    def _awaits_reply(self, chat: Chat, now: datetime) -> bool:
        """True when the newest visible message is a recent customer message."""
        visible = [m for m in chat.messages if m.sender != SenderRole.SYSTEM]
        if not visible or visible[-1].sender != SenderRole.USER:
            return False
        return (now - visible[-1].timestamp).total_seconds() <= self.triage_window

    def _triage(self, chat: Chat, departments: Sequence[Department], now: datetime, actions: List[OutboundAction]) -> Chat:
        local_now = self.local_time(now)

        reply = chatbot.pick_auto_reply(self.chatbot_config, chat, local_now)
        if reply is not None:
            kind, text = reply
            chat = chatbot.mark_auto_reply(chat, kind)
            actions.append(OutboundAction(
                kind=ActionKind.CHATBOT, chat_id=chat.id, phone_key=_recipient(chat), text=text, auto_reply=kind,
            ))

        if department_selection.needs_department_prompt(chat, departments):
            chat = department_selection.mark_prompt_sent(chat, departments, now)
            actions.append(OutboundAction(
                kind=ActionKind.DEPARTMENT_MENU,
                chat_id=chat.id,
                phone_key=_recipient(chat),
                text=department_selection.compose_department_menu(departments, local_now),
                departments=list(departments),
            ))
        return chat

    def apply_fetch(self, raw_chats: Iterable[RawChat], departments: Sequence[Department], now: datetime) -> List[OutboundAction]:
        """
        Reconcile a batch of raw chats (poll result) into state.

        Args:
            raw_chats: Possibly partial, stale or overlapping fetch results
            departments: Current departments, in any order
            now: Reconciliation time

        Returns:
            Outbound messages owed as a result (department menus, chatbot replies)
        """
        actions: List[OutboundAction] = []
        for candidate in consolidate(raw_chats, self.settings, self.aliases):
            actions.extend(self._absorb(candidate, departments, now))
        return actions

    def apply_push(self, raw_message: RawMessage, departments: Sequence[Department], now: datetime) -> List[OutboundAction]:
        """A pushed message takes exactly the fetch path as a one-message batch."""
        raw_chat = RawChat(
            remote_jid=raw_message.chat_jid,
            alt_jid=raw_message.chat_jid_alt,
            name=None if raw_message.from_me else raw_message.push_name,
            messages=[raw_message],
        )
        return self.apply_fetch([raw_chat], departments, now)

    def apply_messages(
        self,
        chat_id: str,
        raw_messages: Iterable[RawMessage],
        departments: Sequence[Department],
        now: datetime,
    ) -> List[OutboundAction]:
        """Reconcile a per-chat message fetch."""
        chat = self.get(chat_id)
        raw_chat = RawChat(remote_jid=chat.remote_jid or chat.id, messages=list(raw_messages))
        return self.apply_fetch([raw_chat], departments, now)

    def apply_status_updates(self, updates: Iterable[StatusUpdate]) -> int:
        """Advance delivery status of known messages; returns how many changed."""
        by_remote_id = {u.remote_id: u.status for u in updates}
        if not by_remote_id:
            return 0

        changed = 0
        for chat in list(self.chats.values()):
            messages = []
            touched = False
            for message in chat.messages:
                status = by_remote_id.get(message.remote_id) if message.remote_id else None
                if status is not None and DELIVERY_RANK[status] > DELIVERY_RANK[message.status]:
                    message = message.model_copy(update={"status": status})
                    touched = True
                    changed += 1
                messages.append(message)
            if touched:
                self._store(chat.model_copy(update={"messages": messages}))
        return changed

    # --- local actions ---

    def send_local(self, chat_id: str, text: str, now: datetime) -> OutboundAction:
        """Optimistically append an agent message; the caller sends it and confirms."""
        chat = self.get(chat_id)
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text is empty")

        message = Message(
            id=f"local_{uuid.uuid4().hex}",
            content=text,
            sender=SenderRole.AGENT,
            timestamp=now,
            status=DeliveryStatus.SENT,
        )
        chat = self._store(chat.model_copy(update={
            "messages": merge_messages([], chat.messages + [message], self.settings),
        }))
        return OutboundAction(
            kind=ActionKind.AGENT, chat_id=chat.id, phone_key=_recipient(chat), text=text, local_id=message.id,
        )

    def confirm_local(self, chat_id: str, local_id: str, remote_id: Optional[str], success: bool) -> Chat:
        """Attach the gateway id to an optimistic message, or mark it failed."""
        chat = self.get(chat_id)
        messages = []
        for message in chat.messages:
            if message.id == local_id:
                if success:
                    message = message.model_copy(update={"remote_id": remote_id or message.remote_id})
                else:
                    message = message.model_copy(update={"status": DeliveryStatus.ERROR})
            messages.append(message)
        # The gateway copy may have arrived first; fold it in now that ids are known
        return self._store(chat.model_copy(update={
            "messages": merge_messages([], messages, self.settings),
        }))

    def rollback(self, action: OutboundAction) -> None:
        """Undo the bookkeeping of an action whose send failed, so a later trigger can retry."""
        chat = self.find(action.chat_id)
        if chat is None:
            return
        if action.kind == ActionKind.DEPARTMENT_MENU:
            self._store(department_selection.unmark_prompt_sent(chat))
        elif action.kind == ActionKind.CHATBOT and action.auto_reply is not None:
            self._store(chatbot.mark_auto_reply(chat, action.auto_reply, sent=False))
        elif action.kind == ActionKind.AGENT and action.local_id:
            self.confirm_local(chat.id, action.local_id, None, success=False)

    def close_chat(self, chat_id: str, now: datetime, with_survey: bool = True) -> List[OutboundAction]:
        chat = self.get(chat_id)
        closed = chat_status.close_chat(chat, now, with_survey)
        if closed is chat:
            return []
        closed = self._store(closed)
        if not with_survey:
            return []
        return [OutboundAction(kind=ActionKind.SURVEY, chat_id=closed.id, phone_key=_recipient(closed), text=SURVEY_MESSAGE)]

    def assume_chat(self, chat_id: str, user_id: str, user_name: str, now: datetime) -> Chat:
        return self._store(chat_status.assume_chat(self.get(chat_id), user_id, user_name, now))

    def transfer_chat(
        self,
        chat_id: str,
        department_id: str,
        now: datetime,
        departments: Sequence[Department] = (),
    ) -> Chat:
        name = next((d.name for d in departments if d.id == department_id), None)
        return self._store(chat_status.transfer_chat(self.get(chat_id), department_id, now, name))

    def start_workflow(self, chat_id: str, workflow: Workflow) -> Chat:
        return self._store(workflows.start_workflow(self.get(chat_id), workflow))

    def cancel_workflow(self, chat_id: str) -> Chat:
        return self._store(workflows.cancel_workflow(self.get(chat_id)))

    def toggle_workflow_step(
        self,
        chat_id: str,
        workflow: Workflow,
        step_id: str,
        now: datetime,
        departments: Sequence[Department] = (),
    ) -> Chat:
        chat = self._store(workflows.toggle_workflow_step(self.get(chat_id), workflow, step_id, now, departments))
        if workflows.is_complete(chat, workflow):
            logger.info("Workflow completed", extra={"chat_id": chat.id, "workflow_id": workflow.id})
        return chat

    def mark_read(self, chat_id: str) -> Chat:
        return self._store(self.get(chat_id).model_copy(update={"unread_count": 0}))

    def clear_department(self, department_id: str) -> List[Chat]:
        """Null out references to a deleted department; returns the chats changed."""
        changed = []
        for chat in list(self.chats.values()):
            if chat.department_id == department_id:
                changed.append(self._store(chat.model_copy(update={"department_id": None})))
        return changed

    def forget(self, chat_id: str) -> bool:
        """Drop a chat deleted from the store; no removal is queued for persistence."""
        chat = self.chats.pop(chat_id, None)
        self._dirty.discard(chat_id)
        chats_in_memory.set(len(self.chats))
        return chat is not None
