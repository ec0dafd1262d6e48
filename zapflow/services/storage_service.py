"""Key-value persistence over the ``user_data`` table.

Every entity (chats, contacts, departments, ...) is stored as one JSON value
under ``(tenant_id, data_type, data_key)``. Writes are upserts.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ContextManager, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy import JSON, Column, DateTime, Integer, MetaData, String, Table, UniqueConstraint, delete, select
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from zapflow.infra.config import config
from zapflow.infra.database import get_db_session
from zapflow.infra.error_handler import ValidationError
from zapflow.models.chat import Chat
from zapflow.models.directory import ChatbotConfig, Contact, Department, QuickReply, User, Workflow

logger = logging.getLogger(__name__)

metadata = MetaData()

user_data = Table(
    "user_data",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(100), nullable=False, index=True),
    Column("data_type", String(50), nullable=False),
    Column("data_key", String(255), nullable=False),
    Column("data_value", JSON().with_variant(JSONB(), "postgresql"), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("tenant_id", "data_type", "data_key", name="uq_user_data_tenant_type_key"),
)

ModelT = TypeVar("ModelT", bound=BaseModel)


class EntityType(str, Enum):
    CHATS = "chats"
    CONTACTS = "contacts"
    DEPARTMENTS = "departments"
    USERS = "users"
    QUICK_REPLIES = "quick_replies"
    WORKFLOWS = "workflows"
    CONFIG = "config"
    CHATBOT_CONFIG = "chatbot_config"


def parse_entity_type(value: Union[str, EntityType]) -> EntityType:
    """Accept ``quick_replies`` and ``quick-replies`` spellings."""
    if isinstance(value, EntityType):
        return value
    try:
        return EntityType(value.strip().lower().replace("-", "_"))
    except ValueError:
        raise ValidationError(f"Unknown entity type: {value}")


def _to_json(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_to_json(v) for v in value]
    return value


class StorageService:
    """Tenant-scoped ``save``/``load`` contract over SQLAlchemy sessions."""

    def __init__(
        self,
        session_scope: Callable[[], ContextManager[Session]] = get_db_session,
        tenant_id: Optional[str] = None,
    ):
        self.session_scope = session_scope
        self.tenant_id = tenant_id or config.DEFAULT_TENANT_ID

    def _upsert(self, session: Session, entity_type: EntityType, key: str, value: Any) -> None:
        now = datetime.now(timezone.utc)
        values = {
            "tenant_id": self.tenant_id,
            "data_type": entity_type.value,
            "data_key": key,
            "data_value": _to_json(value),
            "created_at": now,
            "updated_at": now,
        }
        dialect = session.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(user_data).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "data_type", "data_key"],
            set_={"data_value": stmt.excluded.data_value, "updated_at": stmt.excluded.updated_at},
        )
        session.execute(stmt)

    def save(self, entity_type: Union[str, EntityType], key: str, value: Any) -> None:
        entity_type = parse_entity_type(entity_type)
        if not key:
            raise ValidationError("Data key is required")
        with self.session_scope() as session:
            self._upsert(session, entity_type, key, value)
        logger.debug("Saved entity", extra={"data_type": entity_type.value, "data_key": key})

    def save_batch(self, entity_type: Union[str, EntityType], items: Dict[str, Any]) -> int:
        """Upsert many keys in one transaction; returns the number written."""
        entity_type = parse_entity_type(entity_type)
        if not items:
            return 0
        with self.session_scope() as session:
            for key, value in items.items():
                if not key:
                    raise ValidationError("Data key is required")
                self._upsert(session, entity_type, key, value)
        logger.info("Saved entity batch", extra={"data_type": entity_type.value, "count": len(items)})
        return len(items)

    def load(self, entity_type: Union[str, EntityType], key: str) -> Optional[Any]:
        entity_type = parse_entity_type(entity_type)
        with self.session_scope() as session:
            row = session.execute(
                select(user_data.c.data_value).where(
                    user_data.c.tenant_id == self.tenant_id,
                    user_data.c.data_type == entity_type.value,
                    user_data.c.data_key == key,
                )
            ).first()
        return row.data_value if row else None

    def load_all(self, entity_type: Union[str, EntityType]) -> Dict[str, Any]:
        entity_type = parse_entity_type(entity_type)
        with self.session_scope() as session:
            rows = session.execute(
                select(user_data.c.data_key, user_data.c.data_value)
                .where(
                    user_data.c.tenant_id == self.tenant_id,
                    user_data.c.data_type == entity_type.value,
                )
                .order_by(user_data.c.id)
            ).fetchall()
        return {row.data_key: row.data_value for row in rows}

    def delete(self, entity_type: Union[str, EntityType], key: str) -> bool:
        entity_type = parse_entity_type(entity_type)
        with self.session_scope() as session:
            result = session.execute(
                delete(user_data).where(
                    user_data.c.tenant_id == self.tenant_id,
                    user_data.c.data_type == entity_type.value,
                    user_data.c.data_key == key,
                )
            )
            deleted = result.rowcount
        return deleted > 0

    # --- typed helpers ---

    def _load_models(self, entity_type: EntityType, model: Type[ModelT]) -> List[ModelT]:
        items: List[ModelT] = []
        for key, value in self.load_all(entity_type).items():
            try:
                items.append(model.model_validate(value))
            except PydanticValidationError as e:
                logger.warning(
                    "Skipping invalid stored record",
                    extra={"data_type": entity_type.value, "data_key": key, "error": str(e)},
                )
        return items

    def load_chats(self) -> List[Chat]:
        return self._load_models(EntityType.CHATS, Chat)

    def save_chats(self, chats: List[Chat]) -> int:
        return self.save_batch(EntityType.CHATS, {chat.id: chat for chat in chats})

    def load_departments(self) -> List[Department]:
        return sorted(self._load_models(EntityType.DEPARTMENTS, Department), key=lambda d: d.position)

    def load_contacts(self) -> List[Contact]:
        return self._load_models(EntityType.CONTACTS, Contact)

    def load_users(self) -> List[User]:
        return self._load_models(EntityType.USERS, User)

    def load_quick_replies(self) -> List[QuickReply]:
        return self._load_models(EntityType.QUICK_REPLIES, QuickReply)

    def load_workflows(self) -> List[Workflow]:
        return self._load_models(EntityType.WORKFLOWS, Workflow)

    def load_chatbot_config(self) -> Optional[ChatbotConfig]:
        value = self.load(EntityType.CHATBOT_CONFIG, "default")
        if value is None:
            return None
        try:
            return ChatbotConfig.model_validate(value)
        except PydanticValidationError as e:
            logger.warning("Ignoring invalid chatbot config", extra={"error": str(e)})
            return None
