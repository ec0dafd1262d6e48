"""Tests for cross-entity directory maintenance."""

from zapflow.models.chat import Chat, ChatStatus
from zapflow.models.directory import Contact, Department, User
from zapflow.services.directory_service import DirectoryService
from zapflow.services.live_update import LiveUpdateDispatcher
from zapflow.services.storage_service import EntityType

PHONE = "5511999998888"
PHONE_JID = f"{PHONE}@s.whatsapp.net"


def test_delete_department_clears_references(storage):
    dispatcher = LiveUpdateDispatcher()
    directory = DirectoryService(storage, dispatcher)
    storage.save(EntityType.DEPARTMENTS, "billing", Department(id="billing", name="Financeiro"))
    storage.save_batch(EntityType.USERS, {
        "u1": User(id="u1", name="Maria", email="maria@example.com", department_id="billing"),
        "u2": User(id="u2", name="João", email="joao@example.com", department_id="support"),
    })
    chat = Chat(id=PHONE_JID, contact_key=PHONE, status=ChatStatus.PENDING, department_id="billing")
    dispatcher.load([chat])
    storage.save_chats([chat])

    assert directory.delete_department("billing")

    users = {u.id: u for u in storage.load_users()}
    assert users["u1"].department_id is None
    assert users["u2"].department_id == "support"
    assert dispatcher.get(PHONE_JID).department_id is None
    assert dispatcher.get(PHONE_JID).status == ChatStatus.PENDING
    assert storage.load_chats()[0].department_id is None
    assert storage.load_departments() == []


def test_delete_missing_department(storage):
    directory = DirectoryService(storage, LiveUpdateDispatcher())
    assert not directory.delete_department("nope")


def test_save_contact_links_chats(storage):
    dispatcher = LiveUpdateDispatcher()
    dispatcher.load([Chat(id=PHONE_JID, contact_key=PHONE)])
    directory = DirectoryService(storage, dispatcher)

    saved = directory.save_contact(Contact(id="ct1", name="Ana Souza", phone="(11) 99999-8888 "))

    assert saved.phone_key == "11999998888"
    assert storage.load_contacts()[0].phone_key == "11999998888"

    directory.save_contact(Contact(id="ct2", name="Ana", phone="+55 11 99999-8888"))
    assert dispatcher.get(PHONE_JID).contact_name == "Ana"
