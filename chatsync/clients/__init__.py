"""Backend adapters for the chat sync core."""
from .base import ChannelConnection, ChatBackend, InsertCallback, StatusCallback

__all__ = ["ChannelConnection", "ChatBackend", "InsertCallback", "StatusCallback"]
