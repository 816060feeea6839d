"""Convenience exports for service layer."""
from .channel_broker import ChannelBroker, LocalChannel
from .conversation_service import ConversationService
from .coordinator import ConversationSwitchCoordinator, CoordinatorState
from .history_loader import HistoryLoader
from .identity import create_access_token, decode_access_token, get_current_user_id
from .live_subscription import LiveSubscription, SubscriptionHandle
from .merge_engine import MergeEngine
from .message_store import MessageStore
from .retry_scheduler import CancellationToken, EpochCounter, RetryPolicy, RetryScheduler

__all__ = [
    "ChannelBroker",
    "LocalChannel",
    "ConversationService",
    "ConversationSwitchCoordinator",
    "CoordinatorState",
    "HistoryLoader",
    "create_access_token",
    "decode_access_token",
    "get_current_user_id",
    "LiveSubscription",
    "SubscriptionHandle",
    "MergeEngine",
    "MessageStore",
    "CancellationToken",
    "EpochCounter",
    "RetryPolicy",
    "RetryScheduler",
]
