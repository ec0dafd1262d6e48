"""Weak links between contact records and chats by phone key."""

from typing import Dict, Iterable, Optional

from zapflow.models.chat import Chat
from zapflow.models.directory import Contact
from zapflow.services.identity import canonical_key


def normalize_contact(contact: Contact) -> Contact:
    """Fill ``phone_key`` from the free-form phone, or clear it when unreliable."""
    key = canonical_key(contact.phone)
    if key == contact.phone_key:
        return contact
    return contact.model_copy(update={"phone_key": key})


def index_contacts(contacts: Iterable[Contact]) -> Dict[str, Contact]:
    """``{phone_key: contact}``; the first contact wins on a shared key."""
    index: Dict[str, Contact] = {}
    for contact in contacts:
        key = contact.phone_key or canonical_key(contact.phone)
        if key and key not in index:
            index[key] = contact
    return index


def find_contact(index: Dict[str, Contact], chat: Chat) -> Optional[Contact]:
    if not chat.contact_key:
        return None
    return index.get(chat.contact_key)


def link_contact(chat: Chat, index: Dict[str, Contact]) -> Chat:
    """Give a chat without a name or avatar the matching contact's."""
    contact = find_contact(index, chat)
    if contact is None:
        return chat

    update = {}
    if not chat.contact_name and contact.name:
        update["contact_name"] = contact.name
    if not chat.contact_avatar and contact.avatar:
        update["contact_avatar"] = contact.avatar
    if not update:
        return chat
    return chat.model_copy(update=update)
