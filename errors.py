"""
Error taxonomy for the messenger core.

Every error is scoped to the single request that raised it; the WebSocket
and HTTP layers translate them into outbound events or status codes.
"""
from typing import Optional


class MessengerError(Exception):
    reason = "error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.reason)
        if reason is not None:
            self.reason = reason


class ValidationError(MessengerError):
    reason = "invalid_request"


class AuthError(MessengerError):
    NOT_FOUND = "not_found"
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED = "locked"

    reason = INVALID_CREDENTIALS

    def __init__(self, reason: str, message: str = "", retry_after: Optional[int] = None):
        super().__init__(message or reason, reason=reason)
        self.retry_after = retry_after


class StoreUnavailable(MessengerError):
    reason = "store_unavailable"


class RecipientUnknown(MessengerError):
    reason = "recipient_not_found"

    def __init__(self, username: str):
        super().__init__(f"User {username} not found")
        self.username = username
