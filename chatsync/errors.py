"""Error taxonomy shared by the sync core, the backends and the HTTP layer."""
from __future__ import annotations


class ChatSyncError(RuntimeError):
    """Base class for all expected chat sync failures."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class NotFoundError(ChatSyncError):
    """Conversation is missing or the caller is not a member. Never retried."""


class TransientError(ChatSyncError):
    """Network or backend hiccup that is safe to retry."""


class SubscriptionTimeout(TransientError):
    """Live channel did not become active within the setup timeout."""


class SetupFailed(ChatSyncError):
    """Retries for a setup stage were exhausted."""

    def __init__(self, stage: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{stage} setup failed after {attempts} attempt(s): {last_error}")
        self.stage = stage
        self.attempts = attempts
        self.last_error = last_error


class SetupCancelled(ChatSyncError):
    """Pending setup was abandoned because the active conversation changed."""


class MergeRejected(ChatSyncError):
    """An incoming message was refused by the message store."""

    def __init__(self, detail: str, message_id: str) -> None:
        super().__init__(detail)
        self.message_id = message_id


class DuplicateIgnored(MergeRejected):
    """The message id is already present in the store."""


class CrossConversationEvent(MergeRejected):
    """The message belongs to a conversation other than the active one."""

    def __init__(self, detail: str, message_id: str, conversation_id: str) -> None:
        super().__init__(detail, message_id)
        self.conversation_id = conversation_id


class SendFailed(ChatSyncError):
    """Sending a message failed; the optimistic entry stays marked as failed."""

    def __init__(self, detail: str, local_id: str) -> None:
        super().__init__(detail)
        self.local_id = local_id


class NoActiveConversationError(ChatSyncError):
    """An operation needed an open conversation but none is active."""


class InvalidRequestError(ChatSyncError):
    """Caller supplied invalid input."""


class ConversationPermissionError(ChatSyncError):
    """Caller is a member but lacks the admin rights the action needs."""


class BackendRequestError(ChatSyncError):
    """Backend rejected a request for a reason that retrying will not fix."""


class AuthenticationError(ChatSyncError):
    """Bearer token is missing, malformed or expired."""


__all__ = [
    "ChatSyncError",
    "NotFoundError",
    "TransientError",
    "SubscriptionTimeout",
    "SetupFailed",
    "SetupCancelled",
    "MergeRejected",
    "DuplicateIgnored",
    "CrossConversationEvent",
    "SendFailed",
    "NoActiveConversationError",
    "InvalidRequestError",
    "ConversationPermissionError",
    "BackendRequestError",
    "AuthenticationError",
]
