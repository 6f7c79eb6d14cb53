"""
Error taxonomy for the PIN verification subsystem.
The API layer maps these onto HTTP responses; the core never swallows them.
"""

from datetime import datetime
from typing import Optional


class PinError(Exception):
    """Base class for all PIN subsystem errors."""

    def __init__(self, message: str = "", user_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_id = user_id


class ValidationError(PinError):
    """Malformed PIN or request. Not counted as an attempt and not audited."""


class NotFoundError(PinError):
    """No security row (or no PIN) exists for the user."""


class LockedError(PinError):
    """Operation attempted while the user is locked out."""

    def __init__(self, message: str = "", user_id: Optional[str] = None, locked_until: Optional[datetime] = None):
        super().__init__(message, user_id)
        self.locked_until = locked_until


class RecoveryTokenError(PinError):
    """Recovery token was rejected."""


class ExpiredError(RecoveryTokenError):
    """Recovery token is past its expiry."""


class MismatchError(RecoveryTokenError):
    """Recovery token does not match the stored one, or none is stored."""


class StorageError(PinError):
    """Persistence layer failed. Always propagated to the caller."""
