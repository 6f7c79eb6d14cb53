"""
Recovery token issuance and redemption.
Only the SHA-256 digest of a token is stored; the token itself goes to the delivery channel.
"""

import hashlib
import hmac
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from supabase import Client

from .config import PinSecurityConfig, SupabaseConfig
from .exceptions import ExpiredError, MismatchError, NotFoundError, StorageError
from .models import UserSecurity
from .store import PinStore

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class RecoveryTokenIssuer:
    """Issues single-use, time-boxed recovery tokens; one active token per user."""

    def __init__(self, store: PinStore, config: PinSecurityConfig):
        self.store = store
        self.config = config

    async def issue(self, user_id: str, now: datetime) -> str:
        """
        Generate a token and store its digest, replacing any earlier token.

        Args:
            user_id: User identifier
            now: Issue time; expiry is now + recovery_ttl

        Returns:
            Opaque URL-safe token

        Raises:
            NotFoundError: If the user has no security row
        """
        security = await self.store.get(user_id)
        if security is None:
            raise NotFoundError("No security row", user_id=user_id)

        token = secrets.token_urlsafe(TOKEN_BYTES)
        expires = now + self.config.recovery_ttl
        await self.store.upsert(user_id, {
            "pin_recovery_token": _digest(token),
            "pin_recovery_expires": expires,
        })
        logger.info(f"Recovery token issued for user {user_id}, expires {expires.isoformat()}")
        return token

    def check(self, security: Optional[UserSecurity], token: str, now: datetime) -> None:
        """
        Validate a token against a loaded row without consuming it.

        Raises:
            MismatchError: If no token is stored or it does not match
            ExpiredError: If the stored token has expired
        """
        user_id = security.user_id if security else None
        if security is None or not security.pin_recovery_token or not token:
            raise MismatchError("Invalid recovery token", user_id=user_id)

        if not hmac.compare_digest(_digest(token), security.pin_recovery_token):
            raise MismatchError("Invalid recovery token", user_id=user_id)

        expires = security.pin_recovery_expires
        if expires is None or now >= expires:
            raise ExpiredError("Recovery token expired", user_id=user_id)

    async def redeem(self, user_id: str, token: str, now: datetime) -> None:
        """
        Consume a recovery token.

        Raises:
            MismatchError: If no token is stored or it does not match
            ExpiredError: If the stored token has expired
        """
        security = await self.store.get(user_id)
        self.check(security, token, now)

        await self.store.upsert(user_id, {
            "pin_recovery_token": None,
            "pin_recovery_expires": None,
        })
        logger.info(f"Recovery token redeemed for user {user_id}")


class RecoveryDelivery(ABC):
    """Channel that hands a recovery token to its owner (email, SMS, ...)."""

    @abstractmethod
    async def deliver(self, user_id: str, token: str) -> None:
        """Send the token; raise on failure."""


class SupabaseFunctionDelivery(RecoveryDelivery):
    """
    Hands tokens to a Supabase edge function that emails the owner.
    The plaintext token is only ever in transit; nothing stores it.
    """

    def __init__(self, supabase: Client, function_name: Optional[str] = None):
        self.supabase = supabase
        self.function_name = function_name or SupabaseConfig.RECOVERY_FUNCTION

    async def deliver(self, user_id: str, token: str) -> None:
        try:
            self.supabase.functions.invoke(
                self.function_name,
                invoke_options={"body": {"user_id": user_id, "token": token}},
            )
        except Exception as e:
            logger.error(f"Failed to send recovery token for user {user_id}: {e}")
            raise StorageError("Recovery delivery unavailable", user_id=user_id) from e
