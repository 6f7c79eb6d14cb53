"""
PIN-based secondary authentication for the sales dashboard.
Provides the verification gate, attempt tracking, recovery tokens and the PIN audit log.
"""

from .config import PinSecurityConfig
from .exceptions import (
    PinError,
    ValidationError,
    NotFoundError,
    LockedError,
    RecoveryTokenError,
    ExpiredError,
    MismatchError,
    StorageError,
)
from .models import (
    AuditAction,
    AuditContext,
    AuthSession,
    PINAuditLog,
    PINVerificationResult,
    PinSessionState,
    UserSecurity,
)
from .store import PinStore, InMemoryPinStore, SupabasePinStore
from .audit import AuditLogSink, InMemoryAuditLogSink, SupabaseAuditLogSink
from .attempts import AttemptTracker
from .recovery import RecoveryTokenIssuer, RecoveryDelivery, SupabaseFunctionDelivery
from .gate import VerificationGate

__all__ = [
    "PinSecurityConfig",
    "PinError",
    "ValidationError",
    "NotFoundError",
    "LockedError",
    "RecoveryTokenError",
    "ExpiredError",
    "MismatchError",
    "StorageError",
    "AuditAction",
    "AuditContext",
    "AuthSession",
    "PINAuditLog",
    "PINVerificationResult",
    "PinSessionState",
    "UserSecurity",
    "PinStore",
    "InMemoryPinStore",
    "SupabasePinStore",
    "AuditLogSink",
    "InMemoryAuditLogSink",
    "SupabaseAuditLogSink",
    "AttemptTracker",
    "RecoveryTokenIssuer",
    "RecoveryDelivery",
    "SupabaseFunctionDelivery",
    "VerificationGate",
]
