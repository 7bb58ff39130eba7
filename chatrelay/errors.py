"""
ChatRelay error types.

Raised by the channel, agent and service layers; the API layer maps them to
HTTP status codes. A channel event that is not a message is not an error:
``receive()`` returns ``None`` for it.
"""

from typing import Any, Optional


class ChatRelayError(Exception):
    status_code: int = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class UnauthorizedError(ChatRelayError):
    status_code = 401


class BadRequestError(ChatRelayError):
    status_code = 400


class AgentInvocationFailed(ChatRelayError):
    """The agent runtime failed or timed out for a thread."""

    def __init__(self, thread_id: str, message: str):
        super().__init__(message, {"thread_id": thread_id})
        self.thread_id = thread_id


class SummarizationFailed(ChatRelayError):
    pass


class DeliveryFailed(ChatRelayError):
    """An outbound channel delivery did not go through."""


class GitHubError(ChatRelayError):
    status_code = 502


class TelegramError(ChatRelayError):
    status_code = 502
