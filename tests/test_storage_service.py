"""Tests for the key-value storage service (SQLite in memory)."""

import pytest

from zapflow.infra.error_handler import ValidationError
from zapflow.models.chat import Chat
from zapflow.models.directory import ChatbotConfig, Department
from zapflow.services.storage_service import EntityType, StorageService, parse_entity_type


class TestStorageService:

    def test_save_and_load(self, storage):
        storage.save(EntityType.CONFIG, "theme", {"color": "green"})
        assert storage.load(EntityType.CONFIG, "theme") == {"color": "green"}
        assert storage.load(EntityType.CONFIG, "missing") is None

    def test_save_is_an_upsert(self, storage):
        storage.save("config", "theme", {"color": "green"})
        storage.save("config", "theme", {"color": "blue"})
        assert storage.load_all("config") == {"theme": {"color": "blue"}}

    def test_models_are_stored_as_json(self, storage):
        storage.save(EntityType.DEPARTMENTS, "support", Department(id="support", name="Suporte"))
        assert storage.load(EntityType.DEPARTMENTS, "support")["name"] == "Suporte"

    def test_load_all_keeps_insertion_order(self, storage):
        for key in ("b", "a", "c"):
            storage.save(EntityType.CONFIG, key, key)
        assert list(storage.load_all(EntityType.CONFIG)) == ["b", "a", "c"]

    def test_delete(self, storage):
        storage.save(EntityType.CONFIG, "theme", {})
        assert storage.delete(EntityType.CONFIG, "theme")
        assert not storage.delete(EntityType.CONFIG, "theme")

    def test_save_batch(self, storage):
        written = storage.save_batch(EntityType.CONFIG, {"a": 1, "b": 2})
        assert written == 2
        assert storage.load_all(EntityType.CONFIG) == {"a": 1, "b": 2}
        assert storage.save_batch(EntityType.CONFIG, {}) == 0

    def test_key_is_required(self, storage):
        with pytest.raises(ValidationError):
            storage.save(EntityType.CONFIG, "", 1)

    def test_tenants_are_isolated(self, storage, session_scope):
        other = StorageService(session_scope=session_scope, tenant_id="other-tenant")
        storage.save(EntityType.CONFIG, "theme", "mine")
        other.save(EntityType.CONFIG, "theme", "theirs")
        assert storage.load(EntityType.CONFIG, "theme") == "mine"
        assert other.load(EntityType.CONFIG, "theme") == "theirs"


class TestTypedHelpers:

    def test_chats_round_trip(self, storage):
        chat = Chat(id="5511999998888@s.whatsapp.net", contact_key="5511999998888", contact_name="Ana")
        storage.save_chats([chat])
        assert storage.load_chats() == [chat]

    def test_invalid_records_are_skipped(self, storage):
        storage.save(EntityType.CHATS, "broken", {"contact_name": "no id"})
        storage.save(EntityType.CHATS, "c1", {"id": "c1"})
        assert [c.id for c in storage.load_chats()] == ["c1"]

    def test_departments_sorted_by_position(self, storage):
        storage.save_batch(EntityType.DEPARTMENTS, {
            "billing": Department(id="billing", name="Financeiro", position=2),
            "support": Department(id="support", name="Suporte", position=1),
        })
        assert [d.id for d in storage.load_departments()] == ["support", "billing"]

    def test_chatbot_config(self, storage):
        assert storage.load_chatbot_config() is None
        storage.save(EntityType.CHATBOT_CONFIG, "default", ChatbotConfig(is_enabled=True, greeting_message="Oi"))
        assert storage.load_chatbot_config().greeting_message == "Oi"


def test_parse_entity_type():
    assert parse_entity_type("quick-replies") == EntityType.QUICK_REPLIES
    assert parse_entity_type(" Chats ") == EntityType.CHATS
    with pytest.raises(ValidationError):
        parse_entity_type("secrets")
