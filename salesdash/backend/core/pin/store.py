"""
PIN store holding the hashed PIN and its metadata per user.
Supabase-backed in production, dict-backed for tests and local development.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

from supabase import Client

from .config import SupabaseConfig
from .exceptions import NotFoundError, StorageError
from .hashing import PinHasher
from .models import UserSecurity, utc_now

logger = logging.getLogger(__name__)

# Columns callers may write through upsert; identity and audit columns are managed here
WRITABLE_FIELDS = {
    "pin_hash",
    "pin_set_at",
    "pin_attempts",
    "pin_locked_until",
    "pin_recovery_token",
    "pin_recovery_expires",
    "last_pin_change",
}


class PinStore(ABC):
    """Persistence contract for UserSecurity rows."""

    def __init__(self, hasher: Optional[PinHasher] = None):
        self.hasher = hasher or PinHasher()

    @abstractmethod
    async def get(self, user_id: str) -> Optional[UserSecurity]:
        """Return the security row for a user, or None."""

    @abstractmethod
    async def upsert(self, user_id: str, fields: Dict[str, Any]) -> UserSecurity:
        """
        Merge the supplied fields into the user's row, creating it if needed.
        Fields not supplied keep their stored values.
        """

    async def require(self, user_id: str) -> UserSecurity:
        """
        Return the security row for a user that has a PIN.

        Raises:
            NotFoundError: If there is no row or no PIN set
        """
        security = await self.get(user_id)
        if security is None or not security.has_pin:
            raise NotFoundError("No PIN configured", user_id=user_id)
        return security

    async def set_pin(self, user_id: str, plaintext_pin: str, now: Optional[datetime] = None) -> UserSecurity:
        """
        Hash and persist a new PIN, resetting attempts, lockout and recovery state.

        Args:
            user_id: User identifier
            plaintext_pin: Already validated PIN
            now: Timestamp recorded as pin_set_at / last_pin_change

        Returns:
            Updated UserSecurity row
        """
        now = now or utc_now()
        # Hashing is CPU bound; keep it off the event loop
        pin_hash = await asyncio.to_thread(self.hasher.hash, plaintext_pin)
        return await self.upsert(user_id, {
            "pin_hash": pin_hash,
            "pin_set_at": now,
            "last_pin_change": now,
            "pin_attempts": 0,
            "pin_locked_until": None,
            "pin_recovery_token": None,
            "pin_recovery_expires": None,
        })

    def _check_fields(self, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown security fields: {sorted(unknown)}")


class InMemoryPinStore(PinStore):
    """Dict-backed store."""

    def __init__(self, hasher: Optional[PinHasher] = None):
        super().__init__(hasher)
        self._rows: Dict[str, UserSecurity] = {}

    async def get(self, user_id: str) -> Optional[UserSecurity]:
        row = self._rows.get(user_id)
        return row.copy() if row else None

    async def upsert(self, user_id: str, fields: Dict[str, Any]) -> UserSecurity:
        self._check_fields(fields)
        row = self._rows.get(user_id) or UserSecurity(user_id=user_id)
        updated = row.copy(update={**fields, "updated_at": utc_now()})
        self._rows[user_id] = updated
        return updated.copy()


class SupabasePinStore(PinStore):
    """Store backed by the Supabase `user_security` table."""

    def __init__(self, supabase: Client, hasher: Optional[PinHasher] = None, table: Optional[str] = None):
        super().__init__(hasher)
        self.supabase = supabase
        self.table = table or SupabaseConfig.SECURITY_TABLE
        logger.info(f"SupabasePinStore initialized on table {self.table}")

    async def get(self, user_id: str) -> Optional[UserSecurity]:
        try:
            result = self.supabase.table(self.table).select("*").eq("user_id", user_id).execute()
        except Exception as e:
            logger.error(f"Failed to load security row for user {user_id}: {e}")
            raise StorageError("Security store unavailable", user_id=user_id) from e

        if not result.data:
            return None
        return UserSecurity(**result.data[0])

    async def upsert(self, user_id: str, fields: Dict[str, Any]) -> UserSecurity:
        self._check_fields(fields)
        record = {"user_id": user_id, **fields, "updated_at": utc_now()}
        # Convert datetime objects to ISO strings
        for key, value in record.items():
            if isinstance(value, datetime):
                record[key] = value.isoformat()

        try:
            result = self.supabase.table(self.table).upsert(record, on_conflict="user_id").execute()
        except Exception as e:
            logger.error(f"Failed to write security row for user {user_id}: {e}")
            raise StorageError("Security store unavailable", user_id=user_id) from e

        if not result.data:
            raise StorageError("Security store returned no row", user_id=user_id)
        return UserSecurity(**result.data[0])
