"""Exception taxonomy for the messaging core.

Only AuthorizationError is ever surfaced to a client (as a ``dm-error``
payload). The others are logged where they are caught and the offending
event is dropped.
"""


class ChatError(Exception):
    """Base exception for messaging core errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidEventError(ChatError):
    """Raised when an inbound event is missing or has an empty required field."""


class AuthorizationError(ChatError):
    """Raised when an operation is not permitted between two users."""


class NotContactsError(AuthorizationError):
    """Raised when a direct message or DM history is requested between non-contacts."""
    def __init__(self, sender_id: str, recipient_id: str):
        self.sender_id = sender_id
        self.recipient_id = recipient_id
        super().__init__("You can only message your contacts")


class NotFoundError(ChatError):
    """Raised when an operation references an unknown user, room or thread."""


class TransportError(ChatError):
    """Raised when a write to a connection fails."""
