"""FastAPI dependencies resolving the services built at startup."""

from fastapi import Request

from zapflow.services.directory_service import DirectoryService
from zapflow.services.live_update import LiveUpdateDispatcher
from zapflow.services.storage_service import StorageService
from zapflow.services.sync_service import SyncService


def get_dispatcher(request: Request) -> LiveUpdateDispatcher:
    return request.app.state.dispatcher


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


def get_directory(request: Request) -> DirectoryService:
    return request.app.state.directory
