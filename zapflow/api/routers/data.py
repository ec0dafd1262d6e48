"""Key-value data API router.

Generic ``save``/``load`` access to every stored entity type. Writes that
other state depends on (chats, contacts, the chatbot config, department
deletes) are also pushed into the live dispatcher.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError as PydanticValidationError

from zapflow.api.deps import get_directory, get_dispatcher, get_storage
from zapflow.api.models import (
    DataBatchRequest, DataItemRequest, DataItemResponse,
    DataListResponse, DataValueRequest, DataWriteResponse,
)
from zapflow.infra.error_handler import ValidationError
from zapflow.models.chat import Chat
from zapflow.models.directory import ChatbotConfig, Contact, Department, QuickReply, User, Workflow
from zapflow.services.directory_service import DirectoryService
from zapflow.services.live_update import LiveUpdateDispatcher
from zapflow.services.storage_service import EntityType, StorageService, parse_entity_type

logger = logging.getLogger(__name__)

router = APIRouter()

ENTITY_MODELS = {
    EntityType.CHATS: Chat,
    EntityType.CONTACTS: Contact,
    EntityType.DEPARTMENTS: Department,
    EntityType.USERS: User,
    EntityType.QUICK_REPLIES: QuickReply,
    EntityType.WORKFLOWS: Workflow,
    EntityType.CHATBOT_CONFIG: ChatbotConfig,
}


def _entity_type(data_type: str) -> EntityType:
    try:
        return parse_entity_type(data_type)
    except ValidationError as e:
        raise HTTPException(status_code=404, detail=e.message)


def _validate(entity_type: EntityType, key: str, value: Any) -> Any:
    """Validate a value against its entity model; free-form types pass through."""
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        return value
    if isinstance(value, dict) and "id" in model.model_fields and "id" not in value:
        value = {**value, "id": key}
    try:
        item = model.model_validate(value)
    except PydanticValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if getattr(item, "id", key) != key and entity_type != EntityType.CHATBOT_CONFIG:
        raise HTTPException(status_code=400, detail=f"Value id does not match key: {key}")
    return item


def _write(
    entity_type: EntityType,
    items: Dict[str, Any],
    storage: StorageService,
    dispatcher: LiveUpdateDispatcher,
    directory: DirectoryService,
) -> int:
    validated = {key: _validate(entity_type, key, value) for key, value in items.items()}

    if entity_type == EntityType.CONTACTS:
        for contact in validated.values():
            directory.save_contact(contact)
        return len(validated)

    try:
        count = storage.save_batch(entity_type, validated)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)

    if entity_type == EntityType.CHATS:
        dispatcher.load(validated.values())
    elif entity_type == EntityType.CHATBOT_CONFIG and "default" in validated:
        dispatcher.set_chatbot_config(validated["default"])
    return count


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


@router.get("/api/data/{data_type}", tags=["Data"], response_model=DataListResponse)
async def list_data(
    data_type: str,
    storage: StorageService = Depends(get_storage),
):
    """Load every stored value of one entity type."""
    entity_type = _entity_type(data_type)
    if entity_type == EntityType.CHATS:
        items = {chat.id: _dump(chat) for chat in storage.load_chats()}
    else:
        items = storage.load_all(entity_type)
    return DataListResponse(items=items, count=len(items))


@router.get("/api/data/{data_type}/{key}", tags=["Data"], response_model=DataItemResponse)
async def get_data(
    data_type: str,
    key: str,
    storage: StorageService = Depends(get_storage),
):
    value = storage.load(_entity_type(data_type), key)
    if value is None:
        raise HTTPException(status_code=404, detail=f"Not found: {data_type}/{key}")
    return DataItemResponse(key=key, value=value)


@router.post("/api/data/{data_type}", tags=["Data"], response_model=DataWriteResponse)
async def save_data(
    data_type: str,
    request: DataItemRequest,
    storage: StorageService = Depends(get_storage),
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    directory: DirectoryService = Depends(get_directory),
):
    """Create or replace one value."""
    count = _write(_entity_type(data_type), {request.key: request.value}, storage, dispatcher, directory)
    return DataWriteResponse(status="success", count=count)


@router.put("/api/data/{data_type}/{key}", tags=["Data"], response_model=DataWriteResponse)
async def update_data(
    data_type: str,
    key: str,
    request: DataValueRequest,
    storage: StorageService = Depends(get_storage),
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    directory: DirectoryService = Depends(get_directory),
):
    count = _write(_entity_type(data_type), {key: request.value}, storage, dispatcher, directory)
    return DataWriteResponse(status="success", count=count)


@router.post("/api/data/{data_type}/batch", tags=["Data"], response_model=DataWriteResponse)
async def save_data_batch(
    data_type: str,
    request: DataBatchRequest,
    storage: StorageService = Depends(get_storage),
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    directory: DirectoryService = Depends(get_directory),
):
    """Upsert many values of one type in a single transaction."""
    count = _write(_entity_type(data_type), request.items, storage, dispatcher, directory)
    return DataWriteResponse(status="success", count=count)


@router.delete("/api/data/{data_type}/{key}", tags=["Data"], response_model=DataWriteResponse)
async def delete_data(
    data_type: str,
    key: str,
    storage: StorageService = Depends(get_storage),
    dispatcher: LiveUpdateDispatcher = Depends(get_dispatcher),
    directory: DirectoryService = Depends(get_directory),
):
    """
    Delete one value.

    Deleting a department clears it from users and chats instead of
    cascading.
    """
    entity_type = _entity_type(data_type)
    if entity_type == EntityType.DEPARTMENTS:
        existed = directory.delete_department(key)
    else:
        existed = storage.delete(entity_type, key)
        if entity_type == EntityType.CHATS:
            dispatcher.forget(key)
        elif existed and entity_type == EntityType.CONTACTS:
            directory.refresh_contacts()
    if not existed:
        raise HTTPException(status_code=404, detail=f"Not found: {data_type}/{key}")
    logger.info("Data deleted", extra={"data_type": entity_type.value, "data_key": key})
    return DataWriteResponse(status="success", count=1)
