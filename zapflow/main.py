"""FastAPI application: chat reconciliation over the Evolution API gateway."""

import uuid
from contextlib import asynccontextmanager
from zoneinfo import ZoneInfo

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from zapflow import __version__
from zapflow.adapters.evolution_client import EvolutionClient
from zapflow.adapters.evolution_socket import EvolutionSocket, build_socket_url
from zapflow.infra.config import config
from zapflow.infra.logging import app_logger
from zapflow.services.directory_service import DirectoryService
from zapflow.services.live_update import LiveUpdateDispatcher
from zapflow.services.storage_service import StorageService
from zapflow.services.sync_service import SyncService


def gateway_configured() -> bool:
    return bool(config.EVOLUTION_BASE_URL and config.EVOLUTION_API_KEY)


def build_services(app: FastAPI) -> SyncService:
    """Wire storage, dispatcher, gateway transport and sync onto ``app.state``."""
    storage = StorageService()
    dispatcher = LiveUpdateDispatcher(tz=ZoneInfo(config.TIMEZONE))

    transport = EvolutionClient.from_config() if gateway_configured() else None
    sync = SyncService(dispatcher, transport, storage)
    if transport is not None and config.EVOLUTION_WS_URL:
        sync.socket = EvolutionSocket(
            build_socket_url(config.EVOLUTION_WS_URL, config.EVOLUTION_API_KEY),
            on_event=sync.handle_event,
        )

    app.state.storage = storage
    app.state.dispatcher = dispatcher
    app.state.sync_service = sync
    app.state.directory = DirectoryService(storage, dispatcher)
    return sync


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    # Startup
    app_logger.info("Application starting up")
    sync = getattr(app.state, "sync_service", None) or build_services(app)
    if sync.transport is not None:
        await sync.start()
    else:
        sync.load_state()
        app_logger.warning("Evolution API not configured, sync loop disabled")

    yield

    # Shutdown
    app_logger.info("Application shutting down")
    await sync.stop()

    # Close database connections
    from zapflow.infra.database import engine
    engine.dispose()


app = FastAPI(
    title="ZapFlow Hub API",
    description="""
    ZapFlow Hub keeps a WhatsApp customer-service inbox consistent with the
    Evolution API gateway.

    ## Features

    - **Chats**: Reconciled chats with deduplicated, ordered messages; agent replies, close, transfer, assume
    - **Triage**: Department menus, greeting and away auto-replies, satisfaction surveys
    - **Data**: Key-value storage for contacts, departments, users, quick replies, workflows and config
    - **Sync**: Fixed-interval polling plus webhook and socket push events
    """,
    version=__version__,
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Chats",
            "description": "List chats and perform agent actions",
        },
        {
            "name": "Data",
            "description": "Key-value storage per entity type",
        },
        {
            "name": "Webhooks",
            "description": "Push events from the Evolution API gateway",
        },
        {
            "name": "Sync",
            "description": "Manual sync trigger and sync status",
        },
        {
            "name": "Health",
            "description": "Health check and monitoring endpoints",
        },
    ],
)

# Setup middleware
from zapflow.infra.middleware import RequestIDMiddleware, RequestLoggingMiddleware, TimeoutMiddleware, setup_cors

app.add_middleware(RequestIDMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(TimeoutMiddleware, timeout=config.REQUEST_TIMEOUT_SECONDS)
setup_cors(app)

# Import and register routers
from zapflow.api.routers import chats, data, health, sync, webhooks

app.include_router(chats.router)
app.include_router(data.router)
app.include_router(webhooks.router)
app.include_router(sync.router)
app.include_router(health.router)

MAX_REQUEST_SIZE = 5 * 1024 * 1024  # 5MB


@app.middleware("http")
async def request_size_limit_middleware(request: Request, call_next):
    """Enforce request size limits."""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_SIZE:
        return JSONResponse(
            status_code=413,
            content={"detail": f"Request too large. Maximum size: {MAX_REQUEST_SIZE} bytes"},
        )
    return await call_next(request)


# Error handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions."""
    error_id = str(uuid.uuid4())
    app_logger.error(f"Unhandled exception: {exc}", exc_info=True, extra={"error_id": error_id})
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal server error. Error ID: {error_id}"},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        timeout_keep_alive=30,
        timeout_graceful_shutdown=30,
    )
