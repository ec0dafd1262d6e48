"""Directory maintenance that spans several entity types."""

import logging
from typing import List

from zapflow.models.directory import Contact
from zapflow.services.contacts import normalize_contact
from zapflow.services.live_update import LiveUpdateDispatcher
from zapflow.services.storage_service import EntityType, StorageService

logger = logging.getLogger(__name__)


class DirectoryService:
    """Keeps references between departments, users, contacts and chats consistent."""

    def __init__(self, storage: StorageService, dispatcher: LiveUpdateDispatcher):
        self.storage = storage
        self.dispatcher = dispatcher

    def delete_department(self, department_id: str) -> bool:
        """
        Delete a department and null every reference to it.

        Users and chats pointing at the department keep existing with
        ``department_id`` cleared; nothing cascades.

        Returns:
            True when the department record existed
        """
        existed = self.storage.delete(EntityType.DEPARTMENTS, department_id)

        users = {}
        for user in self.storage.load_users():
            if user.department_id == department_id:
                users[user.id] = user.model_copy(update={"department_id": None})
        if users:
            self.storage.save_batch(EntityType.USERS, users)

        chats = self.dispatcher.clear_department(department_id)
        if chats:
            self.storage.save_chats(chats)

        logger.info(
            "Department deleted",
            extra={"department_id": department_id, "users_cleared": len(users), "chats_cleared": len(chats)},
        )
        return existed

    def save_contact(self, contact: Contact) -> Contact:
        contact = normalize_contact(contact)
        self.storage.save(EntityType.CONTACTS, contact.id, contact)
        self.refresh_contacts()
        return contact

    def refresh_contacts(self) -> List[Contact]:
        """Reload contacts into the dispatcher so chats pick up names by phone key."""
        contacts = self.storage.load_contacts()
        self.dispatcher.set_contacts(contacts)
        return contacts
