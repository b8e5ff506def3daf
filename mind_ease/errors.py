"""
Exception hierarchy for the Mind Ease service.

Chat service errors carry a ``user_message`` that is safe to show inside the
transcript; the rest are surfaced by the API layer.
"""


class MindEaseError(Exception):
    """Base class for all service errors."""


class ChatServiceError(MindEaseError):
    """Raised when a chat turn cannot be completed by the generative service."""

    user_message = "Something went wrong while contacting the service. Please try again."

    def __init__(self, message: str = "", user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ConfigurationError(ChatServiceError):
    user_message = (
        "Configuration Error: The API Key is missing. Please check your configuration."
    )


class RateLimitError(ChatServiceError):
    user_message = (
        "I'm receiving a lot of messages right now and hit a temporary limit. "
        "Please wait a few moments and try again."
    )


class TransientRemoteError(ChatServiceError):
    pass


class ValidationError(MindEaseError):
    """Raised when input is rejected before any side effect."""


class TurnInProgressError(ValidationError):
    """Raised when a turn is requested while a reply is still streaming."""


class AuthError(MindEaseError):
    """Raised for bad credentials or duplicate accounts."""
