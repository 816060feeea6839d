"""Build the configured chat backend and expose it to request handlers."""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request, WebSocket

from ..config import Settings, get_settings
from .base import ChatBackend

logger = logging.getLogger(__name__)


def build_backend(settings: Settings | None = None) -> ChatBackend:
    settings = settings or get_settings()
    if settings.chat_backend == "supabase":
        from .supabase import SupabaseChatBackend

        logger.info("Using Supabase chat backend at %s", settings.supabase_url)
        return SupabaseChatBackend.from_settings(settings)

    from .local import LocalChatBackend

    logger.info("Using local chat backend")
    return LocalChatBackend()


def _app_backend(app: FastAPI) -> ChatBackend:
    backend = getattr(app.state, "chat_backend", None)
    if backend is None:
        backend = build_backend()
        app.state.chat_backend = backend
    return backend


def get_chat_backend(request: Request) -> ChatBackend:
    """FastAPI dependency returning the application-wide backend."""

    return _app_backend(request.app)


def get_socket_backend(websocket: WebSocket) -> ChatBackend:
    return _app_backend(websocket.app)


__all__ = ["build_backend", "get_chat_backend", "get_socket_backend"]
