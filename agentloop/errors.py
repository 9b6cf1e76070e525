"""
Errors raised by the loop transition layer.
"""


class LoopError(Exception):
    """Base class for loop protocol errors surfaced to callers."""


class MessageNotFound(LoopError):
    """Raised when an operation references a message that does not exist."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")


class PermissionDenied(LoopError):
    """Raised when the caller is not the recipient of an identity-checked message."""

    def __init__(self, message_id: str, caller: str) -> None:
        self.message_id = message_id
        self.caller = caller
        super().__init__(f"Only the recipient can update message {message_id} (caller: {caller})")
