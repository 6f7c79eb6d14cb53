"""
Attempt tracking and lockout enforcement.
Lockouts expire lazily by timestamp comparison; nothing sweeps them in the background.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .config import PinSecurityConfig
from .models import UserSecurity
from .store import PinStore

logger = logging.getLogger(__name__)


@dataclass
class AttemptState:
    attempts: int
    locked: bool
    locked_until: Optional[datetime] = None
    newly_locked: bool = False


class AttemptTracker:
    """Counts consecutive failures per user and locks after the threshold."""

    def __init__(self, store: PinStore, config: PinSecurityConfig):
        self.store = store
        self.config = config

    @staticmethod
    def is_locked(security: Optional[UserSecurity], now: datetime) -> bool:
        """True iff a lockout timestamp is present and strictly after `now`."""
        if security is None or security.pin_locked_until is None:
            return False
        return security.pin_locked_until > now

    def remaining_attempts(self, security: UserSecurity, now: datetime) -> int:
        if self.is_locked(security, now):
            return 0
        return max(0, self.config.max_attempts - security.pin_attempts)

    async def release_expired(self, security: UserSecurity, now: datetime) -> UserSecurity:
        """
        Clear a lockout whose timestamp has passed, giving the user a fresh window.

        Args:
            security: Current row
            now: Evaluation time

        Returns:
            The row, updated if an expired lockout was cleared
        """
        if security.pin_locked_until is None or self.is_locked(security, now):
            return security
        logger.info(f"Lockout expired for user {security.user_id}")
        return await self.store.upsert(security.user_id, {
            "pin_attempts": 0,
            "pin_locked_until": None,
        })

    def failure_outcome(self, security: Optional[UserSecurity], now: datetime) -> AttemptState:
        """
        Compute the state a failed comparison leads to, without writing it.
        Attempts during an active lockout neither count nor extend it.
        """
        current = security.pin_attempts if security else 0
        if self.is_locked(security, now):
            return AttemptState(
                attempts=current,
                locked=True,
                locked_until=security.pin_locked_until,
            )

        attempts = current + 1
        if attempts >= self.config.max_attempts:
            locked_until = now + self.config.lockout_duration
            return AttemptState(attempts=attempts, locked=True, locked_until=locked_until, newly_locked=True)
        return AttemptState(attempts=attempts, locked=False)

    async def commit_failure(self, user_id: str, state: AttemptState) -> None:
        """Persist an outcome produced by failure_outcome."""
        if state.locked and not state.newly_locked:
            return

        fields = {"pin_attempts": state.attempts}
        if state.newly_locked:
            fields["pin_locked_until"] = state.locked_until
        await self.store.upsert(user_id, fields)

        if state.newly_locked:
            logger.warning(f"User {user_id} locked out until {state.locked_until.isoformat()} after {state.attempts} failed attempts")
        else:
            logger.info(f"Failed PIN attempt {state.attempts}/{self.config.max_attempts} for user {user_id}")

    async def record_failure(self, user_id: str, now: datetime, security: Optional[UserSecurity] = None) -> AttemptState:
        """
        Count a failed comparison and lock once the threshold is reached.
        Must be called with the user's lock held.

        Args:
            user_id: User identifier
            now: Time of the attempt
            security: Row already loaded under the same lock, if any

        Returns:
            AttemptState after the update
        """
        if security is None:
            security = await self.store.get(user_id)
        state = self.failure_outcome(security, now)
        await self.commit_failure(user_id, state)
        return state

    async def record_success(self, user_id: str) -> UserSecurity:
        """Reset attempts and clear any lockout."""
        return await self.store.upsert(user_id, {
            "pin_attempts": 0,
            "pin_locked_until": None,
        })
