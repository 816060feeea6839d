"""Application entry point for the FastAPI backend."""
from __future__ import annotations

import logging
from typing import Iterable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from .clients.factory import build_backend
from .config import get_settings
from .database import init_db
from .errors import (
    AuthenticationError,
    BackendRequestError,
    ChatSyncError,
    ConversationPermissionError,
    InvalidRequestError,
    NoActiveConversationError,
    NotFoundError,
    SetupFailed,
    TransientError,
)
from .routers import conversations_router, realtime_router, system_router

logger = logging.getLogger(__name__)

settings = get_settings()
APP_NAME = settings.app_name
API_VERSION = settings.api_version

app = FastAPI(title=APP_NAME, version=API_VERSION)

if settings.cors_origins:
    origins: Iterable[str] = [origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()]
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(system_router)
app.include_router(conversations_router)
app.include_router(realtime_router)

# First match wins, so subclasses precede their bases.
_ERROR_STATUS: tuple[tuple[type[ChatSyncError], int], ...] = (
    (NotFoundError, 404),
    (ConversationPermissionError, 403),
    (InvalidRequestError, 400),
    (NoActiveConversationError, 400),
    (AuthenticationError, 401),
    (TransientError, 503),
    (SetupFailed, 503),
    (BackendRequestError, 502),
)


def status_for_error(exc: ChatSyncError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.exception_handler(ChatSyncError)
async def _chat_sync_error_handler(request: Request, exc: ChatSyncError) -> JSONResponse:
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=status_code, content={"detail": exc.detail})


@app.on_event("startup")
async def _startup() -> None:
    """Ensure the backend (and the local schema) is ready before serving."""

    if settings.chat_backend == "local":
        try:
            init_db()
        except Exception:  # pragma: no cover - best effort logging
            logger.exception("Database initialisation failed")
            raise

    if getattr(app.state, "chat_backend", None) is None:
        app.state.chat_backend = build_backend(settings)
