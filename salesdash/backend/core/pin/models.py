"""
Pydantic models for PIN-based secondary authentication.
Defines the security row, verification outcomes, sessions, audit entries and API payloads.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from pydantic import BaseModel, Field, validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AuditAction(str, Enum):
    """Kinds of PIN audit events."""
    SET = "set"
    CHANGE = "change"
    VERIFY = "verify"
    FAILED = "failed"
    LOCKED = "locked"
    RESET = "reset"


class PinSessionState(str, Enum):
    """Where a session stands with respect to the PIN gate."""
    NOT_REQUIRED = "not_required"
    PENDING_SETUP = "pending_setup"
    PENDING_VERIFICATION = "pending_verification"
    VERIFIED = "verified"
    LOCKED_OUT = "locked_out"


class UserSecurity(BaseModel):
    """Per-user PIN security row (table `user_security`)."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    pin_hash: Optional[str] = None
    pin_set_at: Optional[datetime] = None
    pin_attempts: int = Field(default=0, ge=0)
    pin_locked_until: Optional[datetime] = None
    pin_recovery_token: Optional[str] = None  # sha256 digest, never the token
    pin_recovery_expires: Optional[datetime] = None
    last_pin_change: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def has_pin(self) -> bool:
        return bool(self.pin_hash)


class PINVerificationResult(BaseModel):
    """Outcome of a single verification call."""
    success: bool
    attempts: int
    is_locked: bool
    locked_until: Optional[datetime] = None
    remaining_attempts: Optional[int] = None


class AuthSession(BaseModel):
    """Session produced by primary login, decorated with PIN requirements."""
    user_id: str
    session: Any = None
    requires_pin: bool = False
    requires_pin_setup: bool = False
    pin_verified: bool = False


class AuditContext(BaseModel):
    """Client metadata copied into audit entries."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class PINAuditLog(BaseModel):
    """Append-only audit entry (table `pin_audit_logs`)."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    action: AuditAction
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class PinVerifyRequest(BaseModel):
    """Request model for PIN verification."""
    pin: str = Field(..., min_length=1, max_length=32)


class PinSetupRequest(BaseModel):
    """Request model for first-time PIN setup."""
    pin: str = Field(..., min_length=1, max_length=32)
    confirm_pin: str = Field(..., min_length=1, max_length=32)

    @validator('confirm_pin')
    def pins_match(cls, v, values):
        """Ensure the confirmation matches."""
        if 'pin' in values and v != values['pin']:
            raise ValueError("PINs do not match")
        return v


class PinChangeRequest(BaseModel):
    """Request model for changing a PIN with the current one."""
    current_pin: str = Field(..., min_length=1, max_length=32)
    new_pin: str = Field(..., min_length=1, max_length=32)


class PinResetRequest(BaseModel):
    """Request model for resetting a PIN with a recovery token."""
    recovery_token: str = Field(..., min_length=1, max_length=256)
    new_pin: str = Field(..., min_length=1, max_length=32)


class PinStatusResponse(BaseModel):
    """PIN status for the current user."""
    state: PinSessionState
    has_pin: bool
    attempts: int = 0
    remaining_attempts: Optional[int] = None
    is_locked: bool = False
    locked_until: Optional[datetime] = None
    pin_set_at: Optional[datetime] = None


class RecoveryIssuedResponse(BaseModel):
    """Returned when a recovery token has been issued for delivery."""
    message: str = "If the account exists, recovery instructions have been sent"
