"""
Configuration for the PIN verification subsystem.
Passed explicitly into the gate; `from_env` builds it from environment variables.
"""

import os
from datetime import timedelta

from pydantic import BaseModel, Field, validator


class PinSecurityConfig(BaseModel):
    """Lockout, recovery and hashing parameters."""
    max_attempts: int = Field(default=5, ge=1)
    lockout_duration: timedelta = timedelta(minutes=15)
    recovery_ttl: timedelta = timedelta(hours=1)
    pin_length: int = Field(default=4, ge=4, le=12)
    hash_rounds: int = Field(default=200_000, ge=1000)

    @validator('lockout_duration', 'recovery_ttl')
    def validate_positive_duration(cls, v):
        """Durations must be strictly positive."""
        if v.total_seconds() <= 0:
            raise ValueError("Duration must be positive")
        return v

    @classmethod
    def from_env(cls) -> "PinSecurityConfig":
        """Build configuration from PIN_* environment variables."""
        return cls(
            max_attempts=int(os.getenv("PIN_MAX_ATTEMPTS", 5)),
            lockout_duration=timedelta(minutes=int(os.getenv("PIN_LOCKOUT_MINUTES", 15))),
            recovery_ttl=timedelta(minutes=int(os.getenv("PIN_RECOVERY_TTL_MINUTES", 60))),
            pin_length=int(os.getenv("PIN_LENGTH", 4)),
            hash_rounds=int(os.getenv("PIN_HASH_ROUNDS", 200_000)),
        )


class SupabaseConfig:
    """Supabase connection settings."""
    URL = os.getenv("SUPABASE_URL")
    # Service key bypasses row level security; the anon key is accepted for local setups
    KEY = os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_ANON_KEY")
    SECURITY_TABLE = os.getenv("PIN_SECURITY_TABLE", "user_security")
    AUDIT_TABLE = os.getenv("PIN_AUDIT_TABLE", "pin_audit_logs")
    RECOVERY_FUNCTION = os.getenv("PIN_RECOVERY_FUNCTION", "send-pin-recovery")
