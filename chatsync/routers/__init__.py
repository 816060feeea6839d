"""Aggregate router exports."""
from .conversations import router as conversations_router
from .realtime import router as realtime_router
from .system import router as system_router

__all__ = ["conversations_router", "realtime_router", "system_router"]
