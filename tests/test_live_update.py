"""Tests for the live update dispatcher."""

from datetime import datetime, timedelta, timezone

import pytest

from zapflow.models.chat import Chat, ChatStatus, DeliveryStatus, Message, SenderRole
from zapflow.models.directory import ChatbotConfig, Contact, Department
from zapflow.models.raw import RawChat, RawMessage, StatusUpdate
from zapflow.services.department_selection import PROMPT_SENT_NOTE
from zapflow.services.live_update import (
    SURVEY_MESSAGE,
    ActionKind,
    LiveUpdateDispatcher,
    UnknownChatError,
)

T0 = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
PHONE = "5511999998888"
PHONE_JID = f"{PHONE}@s.whatsapp.net"
ALIAS = "123456789012345@lid"

DEPARTMENTS = [
    Department(id="support", name="Suporte", position=1),
    Department(id="billing", name="Financeiro", position=2),
]


def inbound(remote_id, content="oi", seconds=0, chat_jid=PHONE_JID, sender_alt=None):
    return RawMessage(
        remote_id=remote_id,
        chat_jid=chat_jid,
        from_me=False,
        timestamp=T0 + timedelta(seconds=seconds),
        content=content,
        sender_jid=chat_jid,
        sender_alt=sender_alt,
    )


def at(seconds):
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def dispatcher():
    return LiveUpdateDispatcher()


@pytest.fixture
def prompted(dispatcher):
    """A new chat whose first message triggered the department menu."""
    actions = dispatcher.apply_fetch([RawChat(remote_jid=PHONE_JID, messages=[inbound("R1")])], DEPARTMENTS, at(1))
    return dispatcher, actions


class TestTriage:

    def test_first_message_sends_department_menu(self, prompted):
        dispatcher, actions = prompted

        assert len(actions) == 1
        action = actions[0]
        assert action.kind == ActionKind.DEPARTMENT_MENU
        assert action.chat_id == PHONE_JID
        assert action.phone_key == PHONE
        assert "1 - Suporte" in action.text
        assert [d.id for d in action.departments] == ["support", "billing"]

        chat = dispatcher.get(PHONE_JID)
        assert chat.awaiting_department_selection
        assert chat.department_menu == ["support", "billing"]

    def test_refetch_is_idempotent(self, prompted):
        dispatcher, _ = prompted
        before = dispatcher.get(PHONE_JID)

        actions = dispatcher.apply_fetch([RawChat(remote_jid=PHONE_JID, messages=[inbound("R1")])], DEPARTMENTS, at(5))

        assert actions == []
        assert dispatcher.get(PHONE_JID) == before

    def test_numeric_reply_routes_chat(self, prompted):
        dispatcher, _ = prompted

        actions = dispatcher.apply_push(inbound("R2", "2", seconds=30), DEPARTMENTS, at(31))

        chat = dispatcher.get(PHONE_JID)
        assert actions == []
        assert chat.status == ChatStatus.PENDING
        assert chat.department_id == "billing"
        assert "R2" not in [m.remote_id for m in chat.messages]

        # A later fetch still carrying the reply does not bring it back
        dispatcher.apply_fetch(
            [RawChat(remote_jid=PHONE_JID, messages=[inbound("R1"), inbound("R2", "2", seconds=30)])],
            DEPARTMENTS, at(40),
        )
        assert "R2" not in [m.remote_id for m in dispatcher.get(PHONE_JID).messages]

    def test_no_departments_no_menu(self, dispatcher):
        actions = dispatcher.apply_fetch([RawChat(remote_jid=PHONE_JID, messages=[inbound("R1")])], [], at(1))
        assert actions == []
        assert not dispatcher.get(PHONE_JID).department_selection_sent

    def test_answered_history_on_cold_start_is_not_triaged(self, dispatcher):
        answered = RawMessage(remote_id="R2", chat_jid=PHONE_JID, from_me=True, timestamp=at(60), content="resolvido")
        history = RawChat(remote_jid=PHONE_JID, messages=[inbound("R1"), answered])

        actions = dispatcher.apply_fetch([history], DEPARTMENTS, at(86400 * 365))

        assert actions == []
        chat = dispatcher.get(PHONE_JID)
        assert not chat.department_selection_sent
        assert not chat.awaiting_department_selection
        assert [m.remote_id for m in chat.messages] == ["R1", "R2"]

    def test_stale_unanswered_message_on_cold_start_is_not_triaged(self):
        dispatcher = LiveUpdateDispatcher(triage_window=600)

        actions = dispatcher.apply_fetch([RawChat(remote_jid=PHONE_JID, messages=[inbound("R1")])], DEPARTMENTS, at(601))

        assert actions == []
        assert not dispatcher.get(PHONE_JID).department_selection_sent

    def test_chatbot_greeting_and_menu(self):
        dispatcher = LiveUpdateDispatcher(chatbot_config=ChatbotConfig(is_enabled=True, greeting_message="Olá!"))

        actions = dispatcher.apply_push(inbound("R1"), DEPARTMENTS, at(1))

        assert [a.kind for a in actions] == [ActionKind.CHATBOT, ActionKind.DEPARTMENT_MENU]
        assert actions[0].text == "Olá!"
        assert dispatcher.get(PHONE_JID).greeting_sent

    def test_rollback_allows_retry(self, prompted):
        dispatcher, actions = prompted

        dispatcher.rollback(actions[0])

        chat = dispatcher.get(PHONE_JID)
        assert not chat.department_selection_sent
        assert not chat.awaiting_department_selection
        assert PROMPT_SENT_NOTE not in [m.content for m in chat.messages]


class TestClosedChats:

    @pytest.fixture
    def closed(self, dispatcher):
        dispatcher.load([Chat(
            id=PHONE_JID,
            contact_key=PHONE,
            remote_jid=PHONE_JID,
            status=ChatStatus.CLOSED,
            awaiting_rating=True,
            department_id="support",
            department_selection_sent=True,
            messages=[Message(id="R1", remote_id="R1", content="oi", sender=SenderRole.USER, timestamp=T0)],
        )])
        return dispatcher

    def test_rating_keeps_chat_closed(self, closed):
        actions = closed.apply_push(inbound("R5", "5", seconds=60), DEPARTMENTS, at(61))

        chat = closed.get(PHONE_JID)
        assert actions == []
        assert chat.status == ChatStatus.CLOSED
        assert chat.rating == 5

    def test_new_message_reopens_and_retriages(self, closed):
        actions = closed.apply_push(inbound("R6", "preciso de ajuda", seconds=60), DEPARTMENTS, at(61))

        chat = closed.get(PHONE_JID)
        assert chat.status == ChatStatus.OPEN
        assert chat.department_id is None
        assert [a.kind for a in actions] == [ActionKind.DEPARTMENT_MENU]

    def test_replayed_old_message_does_not_reopen(self, closed):
        closed.apply_fetch([RawChat(remote_jid=PHONE_JID, messages=[inbound("R1")])], DEPARTMENTS, at(61))
        assert closed.get(PHONE_JID).status == ChatStatus.CLOSED


class TestAliases:

    def test_held_alias_chat_is_replaced_by_resolved_chat(self, dispatcher):
        dispatcher.apply_fetch([RawChat(remote_jid=ALIAS, messages=[inbound("R1", chat_jid=ALIAS)])], [], at(1))
        assert dispatcher.find(ALIAS).id == ALIAS
        dispatcher.drain_changes()

        dispatcher.apply_fetch(
            [RawChat(remote_jid=ALIAS, alt_jid=PHONE_JID, messages=[inbound("R1", chat_jid=ALIAS)])], [], at(5),
        )

        changed, removed = dispatcher.drain_changes()
        assert [c.id for c in changed] == [PHONE_JID]
        assert removed == [ALIAS]
        assert list(dispatcher.chats) == [PHONE_JID]
        assert [m.remote_id for m in dispatcher.get(PHONE_JID).messages] == ["R1"]

    def test_learned_alias_routes_later_pushes(self, dispatcher):
        dispatcher.apply_push(inbound("R1", chat_jid=ALIAS, sender_alt=PHONE_JID), [], at(1))
        outgoing = RawMessage(remote_id="R2", chat_jid=ALIAS, from_me=True, timestamp=at(20), content="olá")

        dispatcher.apply_push(outgoing, [], at(21))

        assert list(dispatcher.chats) == [PHONE_JID]
        assert dispatcher.find(ALIAS).id == PHONE_JID
        assert len(dispatcher.get(PHONE_JID).messages) == 2


class TestLocalActions:

    def test_send_confirm_then_gateway_echo(self, prompted):
        dispatcher, _ = prompted

        action = dispatcher.send_local(PHONE_JID, "Olá, tudo bem?", at(60))
        assert action.kind == ActionKind.AGENT
        assert action.local_id.startswith("local_")

        dispatcher.confirm_local(PHONE_JID, action.local_id, "R100", success=True)
        echo = RawMessage(remote_id="R100", chat_jid=PHONE_JID, from_me=True, timestamp=at(62), content="Olá, tudo bem?")
        dispatcher.apply_push(echo, DEPARTMENTS, at(63))

        agent = [m for m in dispatcher.get(PHONE_JID).messages if m.sender == SenderRole.AGENT]
        assert len(agent) == 1
        assert agent[0].remote_id == "R100"

    def test_failed_send_marks_error(self, prompted):
        dispatcher, _ = prompted
        action = dispatcher.send_local(PHONE_JID, "Olá", at(60))

        dispatcher.rollback(action)

        message = next(m for m in dispatcher.get(PHONE_JID).messages if m.id == action.local_id)
        assert message.status == DeliveryStatus.ERROR

    def test_empty_text_is_rejected(self, prompted):
        dispatcher, _ = prompted
        with pytest.raises(ValueError):
            dispatcher.send_local(PHONE_JID, "   ", at(60))

    def test_close_sends_survey_once(self, prompted):
        dispatcher, _ = prompted

        actions = dispatcher.close_chat(PHONE_JID, at(90))

        assert [(a.kind, a.text) for a in actions] == [(ActionKind.SURVEY, SURVEY_MESSAGE)]
        assert dispatcher.get(PHONE_JID).awaiting_rating
        assert dispatcher.close_chat(PHONE_JID, at(95)) == []

    def test_close_without_survey(self, prompted):
        dispatcher, _ = prompted
        assert dispatcher.close_chat(PHONE_JID, at(90), with_survey=False) == []
        assert dispatcher.get(PHONE_JID).status == ChatStatus.CLOSED

    def test_assume_transfer_and_read(self, prompted):
        dispatcher, _ = prompted

        dispatcher.assume_chat(PHONE_JID, "agent-1", "Maria", at(60))
        chat = dispatcher.transfer_chat(PHONE_JID, "billing", at(70), DEPARTMENTS)
        assert chat.department_id == "billing"
        assert chat.messages[-1].content == "Atendimento transferido para Financeiro"

        dispatcher.chats[PHONE_JID] = chat.model_copy(update={"unread_count": 3})
        assert dispatcher.mark_read(PHONE_JID).unread_count == 0

    def test_clear_department(self, prompted):
        dispatcher, _ = prompted
        dispatcher.transfer_chat(PHONE_JID, "billing", at(70), DEPARTMENTS)

        changed = dispatcher.clear_department("billing")

        assert [c.id for c in changed] == [PHONE_JID]
        assert dispatcher.get(PHONE_JID).department_id is None


class TestState:

    def test_find_by_phone_number_and_unknown(self, prompted):
        dispatcher, _ = prompted
        assert dispatcher.find("+55 (11) 99999-8888").id == PHONE_JID
        assert dispatcher.find("nobody") is None
        with pytest.raises(UnknownChatError):
            dispatcher.get("nobody")

    def test_load_does_not_mark_dirty(self, dispatcher):
        dispatcher.load([Chat(id=PHONE_JID, contact_key=PHONE)])
        assert dispatcher.drain_changes() == ([], [])

    def test_status_updates_only_advance(self, prompted):
        dispatcher, _ = prompted
        assert dispatcher.apply_status_updates([StatusUpdate("R1", DeliveryStatus.READ)]) == 1
        assert dispatcher.apply_status_updates([StatusUpdate("R1", DeliveryStatus.DELIVERED)]) == 0
        assert dispatcher.get(PHONE_JID).messages[0].status == DeliveryStatus.READ

    def test_summary_tracks_last_visible_message(self, prompted):
        dispatcher, _ = prompted
        chat = dispatcher.get(PHONE_JID)
        assert chat.last_message == "oi"
        assert chat.last_message_time == T0

    def test_contacts_name_unnamed_chats(self, prompted):
        dispatcher, _ = prompted
        dispatcher.set_contacts([Contact(id="ct1", name="Ana Souza", phone="+55 11 99999-8888")])
        assert dispatcher.get(PHONE_JID).contact_name == "Ana Souza"

    def test_snapshot_newest_first(self, dispatcher):
        dispatcher.apply_push(inbound("R1", seconds=0), [], at(1))
        other = "5511988887777@s.whatsapp.net"
        dispatcher.apply_push(inbound("R2", seconds=30, chat_jid=other), [], at(31))
        assert [c.id for c in dispatcher.snapshot()] == [other, PHONE_JID]
