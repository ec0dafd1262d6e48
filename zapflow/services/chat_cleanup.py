"""Repair of stored chats whose keys are not phone JIDs.

Chats saved before identity resolution (or by older clients) can be keyed by
truncated numbers or gateway aliases. Each such record is re-keyed to the
phone JID of its contact when one is known, otherwise deleted.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from pydantic import ValidationError as PydanticValidationError

from zapflow.models.chat import Chat
from zapflow.services.identity import PHONE_DOMAINS, digits_only, is_group_identifier, is_reliable_key, to_jid
from zapflow.services.storage_service import EntityType, StorageService

logger = logging.getLogger(__name__)


def is_valid_phone_digits(digits: str) -> bool:
    return digits.isdigit() and is_reliable_key(digits)


def is_valid_chat_key(key: str) -> bool:
    if is_group_identifier(key):
        return True
    local, _, domain = key.partition("@")
    if domain and domain.lower() not in PHONE_DOMAINS:
        return False
    return is_valid_phone_digits(local.split(":", 1)[0])


@dataclass
class CleanupReport:
    scanned: int = 0
    rekeyed: List[Tuple[str, str]] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def invalid(self) -> int:
        return len(self.rekeyed) + len(self.deleted)


def clean_invalid_chats(storage: StorageService, dry_run: bool = False) -> CleanupReport:
    """
    Re-key or delete stored chats with invalid keys.

    Args:
        storage: Tenant storage to clean
        dry_run: Report what would change without writing

    Returns:
        CleanupReport listing re-keyed ``(old, new)`` pairs and deleted keys
    """
    records = storage.load_all(EntityType.CHATS)
    report = CleanupReport(scanned=len(records))

    for key, value in list(records.items()):
        if is_valid_chat_key(key):
            continue

        try:
            chat = Chat.model_validate(value)
        except PydanticValidationError:
            chat = None

        phone = digits_only(chat.contact_key) if chat is not None else ""
        new_key = to_jid(phone) if is_valid_phone_digits(phone) else None
        if new_key is not None and new_key in records:
            # The contact already has a valid chat; the stray copy goes
            new_key = None

        if new_key is None:
            logger.info("Deleting invalid chat", extra={"data_key": key})
            report.deleted.append(key)
            if not dry_run:
                storage.delete(EntityType.CHATS, key)
            continue

        logger.info("Re-keying invalid chat", extra={"data_key": key, "new_key": new_key})
        report.rekeyed.append((key, new_key))
        if not dry_run:
            storage.save(EntityType.CHATS, new_key, chat.model_copy(update={"id": new_key}))
            storage.delete(EntityType.CHATS, key)
        records[new_key] = value

    return report
