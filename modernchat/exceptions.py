"""
Errors raised by the chat services.

These are validation failures: they go straight back to the caller and are
never retried. Persistence failures live in chat_gateway.errors and are
absorbed by the services.
"""


class ChatError(Exception):
    """Base class for chat service errors."""


class ValidationError(ChatError):
    """A required field is missing or a value is not acceptable."""


class InvalidCredentials(ChatError):
    """Login failed: empty credentials or no approved registration."""


class DuplicateUsername(ValidationError):
    pass


class DuplicateEmail(ValidationError):
    pass


class ConversationNotFound(ChatError):
    pass


class UserNotFound(ChatError):
    pass
