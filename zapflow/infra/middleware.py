"""Request middleware: request ids, request logging with metrics, timeouts, CORS."""

import asyncio
import logging
import time
import uuid
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from zapflow.infra.config import config
from zapflow.infra.metrics import request_count, request_duration

logger = logging.getLogger("zapflow.request")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request id to the request state and the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def _endpoint_label(request: Request) -> str:
    # Route templates keep chat ids out of metric labels
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log request start/end and record request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = getattr(request.state, "request_id", "unknown")
        start_time = time.time()
        logger.info(
            "Request started",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "client": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            request_count.labels(method=request.method, endpoint=_endpoint_label(request), status="500").inc()
            logger.error(
                "Request failed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "error": str(e),
                    "duration_ms": int(duration * 1000),
                },
                exc_info=True,
            )
            raise

        duration = time.time() - start_time
        endpoint = _endpoint_label(request)
        request_count.labels(method=request.method, endpoint=endpoint, status=str(response.status_code)).inc()
        request_duration.labels(method=request.method, endpoint=endpoint).observe(duration)
        logger.info(
            "Request completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": int(duration * 1000),
            }
        )
        response.headers["X-Response-Time-Ms"] = str(int(duration * 1000))
        return response


class TimeoutMiddleware(BaseHTTPMiddleware):
    """Answer 504 when a request outlives ``timeout`` seconds."""

    def __init__(self, app, timeout: float = config.REQUEST_TIMEOUT_SECONDS):
        super().__init__(app)
        self.timeout = timeout

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await asyncio.wait_for(call_next(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Request timed out",
                extra={"path": request.url.path, "timeout_seconds": self.timeout},
            )
            return JSONResponse(
                status_code=504,
                content={"detail": f"Request timeout after {self.timeout:g} seconds"},
            )


def setup_cors(app: FastAPI) -> None:
    """CORS for the console front end; wildcard only in development."""
    if config.CORS_ORIGINS:
        allowed_origins = [origin.strip() for origin in config.CORS_ORIGINS.split(",") if origin.strip()]
        if config.APP_ENV != "development":
            allowed_origins = [origin for origin in allowed_origins if origin != "*"]
    elif config.APP_ENV == "development":
        allowed_origins = ["*"]
    else:
        allowed_origins = []

    if config.APP_ENV == "production":
        allowed_methods = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
        allowed_headers = ["Content-Type", "Authorization", "X-Request-ID"]
    else:
        allowed_methods = ["*"]
        allowed_headers = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=allowed_methods,
        allow_headers=allowed_headers,
        expose_headers=["X-Request-ID", "X-Response-Time-Ms"],
    )
