"""Domain errors raised by the chat registries and the session coordinator.

Every error carries a human-readable ``reason`` that is sent back to the
initiating connection. Handlers validate before they mutate, so raising one
of these leaves shared state untouched.
"""


class ChatError(Exception):
    """Base class for rejected chat actions."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class NotFoundError(ChatError):
    """Room or target does not exist."""


class UnauthorizedError(ChatError):
    """Caller lacks the ownership or privilege the action needs."""


class WrongPasswordError(UnauthorizedError):
    """Room password did not match."""


class AdminNameReservedError(UnauthorizedError):
    """Reserved administrator name claimed without an admin session."""


class ConflictError(ChatError):
    """Action collides with existing state."""


class NameTakenError(ConflictError):
    """Display name is bound to a different live connection."""


class InvalidInputError(ChatError):
    """Missing or malformed input (empty name, oversize text, ...)."""
