"""API tests against the FastAPI app with an in-memory store and a mocked gateway."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from zapflow.adapters.evolution_client import SendResult
from zapflow.main import app
from zapflow.services.directory_service import DirectoryService
from zapflow.services.live_update import LiveUpdateDispatcher
from zapflow.services.sync_service import SyncService

NOW = datetime(2026, 1, 5, 12, 0, 30, tzinfo=timezone.utc)
PHONE = "5511999998888"
PHONE_JID = f"{PHONE}@s.whatsapp.net"


@pytest.fixture
def transport():
    transport = MagicMock()
    transport.fetch_chats = AsyncMock(return_value=[])
    transport.fetch_messages = AsyncMock(return_value=[])
    transport.send_text = AsyncMock(return_value=SendResult(success=True, remote_id="R100"))
    transport.send_message = AsyncMock(return_value=True)
    transport.send_department_menu = AsyncMock(return_value=True)
    return transport


@pytest.fixture
def client(storage, transport):
    dispatcher = LiveUpdateDispatcher()
    app.state.storage = storage
    app.state.dispatcher = dispatcher
    app.state.sync_service = SyncService(dispatcher, transport, storage, clock=lambda: NOW)
    app.state.directory = DirectoryService(storage, dispatcher)
    return TestClient(app)


@pytest.fixture
def chat(client):
    response = client.post("/api/data/chats", json={
        "key": PHONE_JID,
        "value": {"id": PHONE_JID, "contact_key": PHONE, "remote_jid": PHONE_JID},
    })
    assert response.status_code == 200
    return PHONE_JID


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["gateway_configured"]
        assert body["last_sync_error"] is None

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}


class TestData:

    def test_save_and_load(self, client):
        response = client.post("/api/data/departments", json={"key": "support", "value": {"name": "Suporte"}})
        assert response.status_code == 200
        assert response.json() == {"status": "success", "count": 1}

        item = client.get("/api/data/departments/support").json()
        assert item["key"] == "support"
        assert item["value"]["id"] == "support"
        assert item["value"]["name"] == "Suporte"

        listing = client.get("/api/data/departments").json()
        assert listing["count"] == 1

    def test_batch(self, client):
        response = client.post("/api/data/quick-replies/batch", json={"items": {
            "hello": {"title": "Saudação", "content": "Olá!"},
            "bye": {"title": "Despedida", "content": "Até logo!"},
        }})
        assert response.json()["count"] == 2
        assert client.get("/api/data/quick_replies").json()["count"] == 2

    def test_free_form_config(self, client):
        client.put("/api/data/config/theme", json={"value": "dark"})
        assert client.get("/api/data/config/theme").json()["value"] == "dark"

    def test_unknown_type_and_key(self, client):
        assert client.get("/api/data/widgets").status_code == 404
        assert client.get("/api/data/departments/missing").status_code == 404
        assert client.delete("/api/data/departments/missing").status_code == 404

    def test_invalid_values_are_rejected(self, client):
        response = client.post("/api/data/users", json={"key": "u1", "value": {"name": "Ana"}})
        assert response.status_code == 400

        response = client.post("/api/data/departments", json={"key": "a", "value": {"id": "b", "name": "B"}})
        assert response.status_code == 400

    def test_chatbot_config_reaches_dispatcher(self, client):
        response = client.put("/api/data/chatbot_config/default", json={
            "value": {"is_enabled": True, "greeting_message": "Olá!"},
        })
        assert response.status_code == 200
        assert app.state.dispatcher.chatbot_config.is_enabled

    def test_contact_names_chat(self, client, chat):
        response = client.post("/api/data/contacts", json={
            "key": "c1",
            "value": {"name": "Maria Souza", "phone": "+55 11 99999-8888"},
        })
        assert response.status_code == 200
        assert client.get(f"/chats/{chat}").json()["contact_name"] == "Maria Souza"

    def test_delete_department_clears_references(self, client, chat):
        client.post("/api/data/departments", json={"key": "support", "value": {"name": "Suporte"}})
        client.post("/api/data/users", json={"key": "u1", "value": {
            "name": "Ana", "email": "ana@example.com", "department_id": "support",
        }})
        client.post(f"/chats/{chat}/transfer", json={"department_id": "support"})

        response = client.delete("/api/data/departments/support")

        assert response.status_code == 200
        assert client.get("/api/data/users/u1").json()["value"]["department_id"] is None
        assert client.get(f"/chats/{chat}").json()["department_id"] is None

    def test_delete_chat(self, client, chat):
        assert client.delete(f"/api/data/chats/{chat}").status_code == 200
        assert client.get(f"/chats/{chat}").status_code == 404


class TestChats:

    def test_list_and_lookup(self, client, chat):
        listing = client.get("/chats").json()
        assert listing["count"] == 1
        assert client.get("/chats", params={"status": "closed"}).json()["count"] == 0
        assert client.get("/chats", params={"unassigned": True}).json()["count"] == 1

        # Phone numbers resolve to the chat
        assert client.get(f"/chats/{PHONE}").json()["id"] == chat
        assert client.get("/chats/unknown").status_code == 404

    def test_send_message(self, client, chat, transport):
        response = client.post(f"/chats/{chat}/messages", json={"text": "Olá, Maria"})

        assert response.status_code == 200
        last = response.json()["messages"][-1]
        assert last["sender"] == "agent"
        assert last["remote_id"] == "R100"
        transport.send_text.assert_awaited_once_with(PHONE, "Olá, Maria", kind="agent")

    def test_send_message_errors(self, client, chat):
        assert client.post("/chats/unknown/messages", json={"text": "Olá"}).status_code == 404
        assert client.post(f"/chats/{chat}/messages", json={"text": "   "}).status_code == 400
        assert client.post(f"/chats/{chat}/messages", json={"text": ""}).status_code == 422

    def test_close_without_survey(self, client, chat, transport):
        response = client.post(f"/chats/{chat}/close", json={"with_survey": False})

        body = response.json()
        assert body["status"] == "closed"
        assert not body["awaiting_rating"]
        transport.send_message.assert_not_awaited()

    def test_close_with_survey(self, client, chat, transport):
        assert client.post(f"/chats/{chat}/close").json()["awaiting_rating"]
        transport.send_message.assert_awaited_once()

    def test_assume(self, client, chat):
        response = client.post(f"/chats/{chat}/assume", json={"user_id": "u1", "user_name": "Ana"})
        assert response.json()["assigned_to"] == "u1"

    def test_transfer(self, client, chat):
        assert client.post(f"/chats/{chat}/transfer", json={"department_id": "sales"}).status_code == 400

        client.post("/api/data/departments", json={"key": "sales", "value": {"name": "Vendas"}})
        response = client.post(f"/chats/{chat}/transfer", json={"department_id": "sales"})
        assert response.json()["department_id"] == "sales"

    def test_workflow_steps(self, client, chat):
        client.post("/api/data/workflows", json={"key": "onboarding", "value": {
            "title": "Onboarding",
            "steps": [{"id": "s1", "title": "Coletar dados"}],
        }})

        assert client.post(f"/chats/{chat}/workflow/steps/s1").status_code == 400
        assert client.post(f"/chats/{chat}/workflow", json={"workflow_id": "missing"}).status_code == 404

        started = client.post(f"/chats/{chat}/workflow", json={"workflow_id": "onboarding"}).json()
        assert started["active_workflow"]["workflow_id"] == "onboarding"

        assert client.post(f"/chats/{chat}/workflow/steps/s9").status_code == 404
        toggled = client.post(f"/chats/{chat}/workflow/steps/s1").json()
        assert toggled["active_workflow"]["completed_step_ids"] == ["s1"]

        cancelled = client.delete(f"/chats/{chat}/workflow").json()
        assert cancelled["active_workflow"] is None

    def test_refresh(self, client, chat, transport):
        body = client.post(f"/chats/{chat}/refresh", params={"limit": 10}).json()
        assert body["refreshed"]
        transport.fetch_messages.assert_awaited_once_with(PHONE_JID, 10)


class TestWebhooksAndSync:

    def test_webhook_applies_message(self, client, chat):
        response = client.post("/webhooks/evolution/messages-upsert", json={
            "data": {
                "key": {"id": "R1", "remoteJid": PHONE_JID, "fromMe": False},
                "message": {"conversation": "oi"},
                "messageTimestamp": 1767614400,
            },
        })

        assert response.json() == {"status": "success", "messages": 1}
        assert client.get(f"/chats/{chat}").json()["last_message"] == "oi"

    def test_malformed_webhook_is_acknowledged(self, client):
        response = client.post("/webhooks/evolution", json={"event": "messages.upsert", "data": "garbage"})
        assert response.status_code == 200
        assert response.json()["messages"] == 0

    def test_sync_trigger_and_status(self, client, chat, transport):
        assert client.post("/sync").json() == {"polled": True, "socket_restarted": False}
        transport.fetch_chats.assert_awaited_once()

        status = client.get("/sync/status").json()
        assert status["chats"] == 1
        assert status["last_error"] is None
        assert status["last_poll_at"] is not None
