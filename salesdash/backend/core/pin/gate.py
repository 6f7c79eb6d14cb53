"""
Verification gate: the externally facing PIN state machine.
Orchestrates hash comparison, attempt tracking, lockout enforcement, recovery and audit emission.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from .attempts import AttemptTracker
from .audit import AuditLogSink, build_entry
from .config import PinSecurityConfig
from .exceptions import LockedError, NotFoundError, RecoveryTokenError, ValidationError
from .hashing import validate_pin_format
from .locks import KeyedLock
from .models import (
    AuditAction,
    AuditContext,
    AuthSession,
    PINVerificationResult,
    PinSessionState,
    PinStatusResponse,
    utc_now,
)
from .recovery import RecoveryTokenIssuer
from .store import PinStore

logger = logging.getLogger(__name__)


class VerificationGate:
    """
    PIN verification gate.

    Every verify/set_pin call for a user runs under that user's lock and is
    shielded from caller cancellation, so an attempt counter update and its
    audit entry are always applied together. The audit entry is written
    before the state change it describes.
    """

    def __init__(
        self,
        store: PinStore,
        audit_sink: AuditLogSink,
        config: Optional[PinSecurityConfig] = None,
        locks: Optional[Any] = None,
        clock: Optional[Callable[[], datetime]] = None,
        issuer: Optional[RecoveryTokenIssuer] = None,
    ):
        self.store = store
        self.audit_sink = audit_sink
        self.config = config or PinSecurityConfig()
        self.locks = locks or KeyedLock()
        self.clock = clock or utc_now
        self.tracker = AttemptTracker(store, self.config)
        self.issuer = issuer or RecoveryTokenIssuer(store, self.config)
        logger.info(
            f"VerificationGate initialized (max_attempts={self.config.max_attempts}, "
            f"lockout={self.config.lockout_duration}, recovery_ttl={self.config.recovery_ttl})"
        )

    async def _serialized(self, user_id: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run an operation under the user's lock, to completion even if the caller goes away."""
        async def locked():
            async with self.locks.hold(user_id):
                return await operation()

        return await asyncio.shield(locked())

    async def _audit(
        self,
        user_id: str,
        action: AuditAction,
        success: bool,
        context: Optional[AuditContext],
        **extra: Any,
    ) -> None:
        await self.audit_sink.append(build_entry(user_id, action, success, context, **extra))

    def _result(self, success: bool, attempts: int, locked_until: Optional[datetime]) -> PINVerificationResult:
        is_locked = locked_until is not None
        return PINVerificationResult(
            success=success,
            attempts=attempts,
            is_locked=is_locked,
            locked_until=locked_until,
            remaining_attempts=0 if is_locked else max(0, self.config.max_attempts - attempts),
        )

    async def verify(
        self,
        user_id: str,
        candidate_pin: str,
        context: Optional[AuditContext] = None,
    ) -> PINVerificationResult:
        """
        Verify a candidate PIN for a user.

        Args:
            user_id: User identifier
            candidate_pin: PIN entered by the user
            context: Client metadata for the audit entry

        Returns:
            PINVerificationResult with the post-update attempt count

        Raises:
            ValidationError: Malformed PIN; nothing is counted or audited
            NotFoundError: No PIN configured for the user
            StorageError: Store or audit sink failed; success is never reported
        """
        validate_pin_format(candidate_pin, self.config.pin_length)
        return await self._serialized(user_id, lambda: self._verify(user_id, candidate_pin, context))

    async def _verify(self, user_id: str, candidate_pin: str, context: Optional[AuditContext]) -> PINVerificationResult:
        now = self.clock()
        security = await self.store.require(user_id)

        if self.tracker.is_locked(security, now):
            await self._audit(
                user_id, AuditAction.FAILED, False, context,
                reason="locked_out",
                attempts=security.pin_attempts,
                locked_until=security.pin_locked_until,
            )
            logger.warning(f"PIN verification attempted during lockout for user {user_id}")
            return self._result(False, security.pin_attempts, security.pin_locked_until)

        security = await self.tracker.release_expired(security, now)
        matches, new_hash = await asyncio.to_thread(self.store.hasher.verify, candidate_pin, security.pin_hash)

        if matches:
            await self._audit(user_id, AuditAction.VERIFY, True, context, previous_attempts=security.pin_attempts)
            await self.tracker.record_success(user_id)
            if new_hash:
                await self.store.upsert(user_id, {"pin_hash": new_hash})
            logger.info(f"PIN verified for user {user_id}")
            return self._result(True, 0, None)

        state = self.tracker.failure_outcome(security, now)
        await self._audit(
            user_id,
            AuditAction.LOCKED if state.newly_locked else AuditAction.FAILED,
            False,
            context,
            reason="bad_pin",
            attempts=state.attempts,
            locked_until=state.locked_until,
        )
        await self.tracker.commit_failure(user_id, state)
        return self._result(False, state.attempts, state.locked_until)

    async def set_pin(
        self,
        user_id: str,
        new_pin: str,
        current_pin: Optional[str] = None,
        recovery_token: Optional[str] = None,
        context: Optional[AuditContext] = None,
    ) -> bool:
        """
        Set, change or reset a user's PIN.

        With no authorization this is first-time setup and is only allowed
        while no PIN exists. `current_pin` changes an existing PIN and counts
        toward lockout when wrong. `recovery_token` resets the PIN without
        the old one; expired and mismatched tokens are rejected alike.

        Returns:
            True on success, False when the authorization was rejected

        Raises:
            ValidationError: Malformed PIN, conflicting authorization, or reuse of the current PIN
            NotFoundError: Change or reset requested for a user without a PIN
            LockedError: Change attempted while locked out
            StorageError: Store or audit sink failed
        """
        validate_pin_format(new_pin, self.config.pin_length)
        if current_pin is not None and recovery_token is not None:
            raise ValidationError("Provide either the current PIN or a recovery token, not both")
        if current_pin is not None:
            validate_pin_format(current_pin, self.config.pin_length)

        if recovery_token is not None:
            operation = lambda: self._reset_with_token(user_id, new_pin, recovery_token, context)
        elif current_pin is not None:
            operation = lambda: self._change_with_current(user_id, new_pin, current_pin, context)
        else:
            operation = lambda: self._first_setup(user_id, new_pin, context)
        return await self._serialized(user_id, operation)

    async def _first_setup(self, user_id: str, new_pin: str, context: Optional[AuditContext]) -> bool:
        security = await self.store.get(user_id)
        if security is not None and security.has_pin:
            await self._audit(user_id, AuditAction.SET, False, context, reason="pin_exists")
            logger.warning(f"PIN setup refused for user {user_id}: a PIN is already set")
            raise ValidationError("A PIN is already set; the current PIN or a recovery token is required")

        now = self.clock()
        await self._audit(user_id, AuditAction.SET, True, context)
        await self.store.set_pin(user_id, new_pin, now)
        logger.info(f"PIN set for user {user_id}")
        return True

    async def _change_with_current(self, user_id: str, new_pin: str, current_pin: str, context: Optional[AuditContext]) -> bool:
        now = self.clock()
        security = await self.store.require(user_id)

        if self.tracker.is_locked(security, now):
            await self._audit(
                user_id, AuditAction.CHANGE, False, context,
                reason="locked_out",
                locked_until=security.pin_locked_until,
            )
            raise LockedError("PIN is locked", user_id=user_id, locked_until=security.pin_locked_until)

        if current_pin == new_pin:
            await self._audit(user_id, AuditAction.CHANGE, False, context, reason="same_pin")
            raise ValidationError("New PIN must be different from current PIN", user_id=user_id)

        security = await self.tracker.release_expired(security, now)
        matches, _ = await asyncio.to_thread(self.store.hasher.verify, current_pin, security.pin_hash)

        if not matches:
            state = self.tracker.failure_outcome(security, now)
            await self._audit(
                user_id, AuditAction.CHANGE, False, context,
                reason="bad_current_pin",
                attempts=state.attempts,
                locked=state.locked,
                locked_until=state.locked_until,
            )
            await self.tracker.commit_failure(user_id, state)
            return False

        await self._audit(user_id, AuditAction.CHANGE, True, context)
        await self.store.set_pin(user_id, new_pin, now)
        logger.info(f"PIN changed for user {user_id}")
        return True

    async def _reset_with_token(self, user_id: str, new_pin: str, recovery_token: str, context: Optional[AuditContext]) -> bool:
        now = self.clock()
        security = await self.store.get(user_id)
        if security is None:
            raise NotFoundError("No security row", user_id=user_id)

        try:
            self.issuer.check(security, recovery_token, now)
        except RecoveryTokenError as e:
            # Expired and mismatched tokens are handled identically
            await self._audit(user_id, AuditAction.RESET, False, context, reason=type(e).__name__)
            logger.warning(f"Recovery token rejected for user {user_id}")
            return False

        await self._audit(
            user_id, AuditAction.RESET, True, context,
            cleared_lockout=self.tracker.is_locked(security, now),
        )
        # set_pin clears the token, attempts and lockout in the same write
        await self.store.set_pin(user_id, new_pin, now)
        logger.info(f"PIN reset via recovery token for user {user_id}")
        return True

    async def request_recovery(self, user_id: str) -> str:
        """
        Issue a recovery token for delivery by an external channel.
        Any earlier token for the user stops working.

        Raises:
            NotFoundError: No PIN configured for the user
        """
        async def issue():
            await self.store.require(user_id)
            return await self.issuer.issue(user_id, self.clock())

        return await self._serialized(user_id, issue)

    async def status(self, user_id: str) -> PinStatusResponse:
        """Summarize a user's PIN state for display."""
        now = self.clock()
        security = await self.store.get(user_id)
        if security is None or not security.has_pin:
            return PinStatusResponse(state=PinSessionState.PENDING_SETUP, has_pin=False)

        locked = self.tracker.is_locked(security, now)
        # An expired lockout is cleared lazily; report the window it will reopen with
        attempts = security.pin_attempts if locked or security.pin_locked_until is None else 0
        return PinStatusResponse(
            state=PinSessionState.LOCKED_OUT if locked else PinSessionState.PENDING_VERIFICATION,
            has_pin=True,
            attempts=attempts,
            remaining_attempts=0 if locked else max(0, self.config.max_attempts - attempts),
            is_locked=locked,
            locked_until=security.pin_locked_until if locked else None,
            pin_set_at=security.pin_set_at,
        )

    async def begin_session(self, user_id: str, session: Any = None) -> AuthSession:
        """Decorate a freshly authenticated session with its PIN requirements."""
        security = await self.store.get(user_id)
        has_pin = security is not None and security.has_pin
        return AuthSession(
            user_id=user_id,
            session=session,
            requires_pin=has_pin,
            requires_pin_setup=not has_pin,
            pin_verified=False,
        )

    async def session_state(self, auth_session: AuthSession) -> PinSessionState:
        """Current state of a session in the PIN state machine."""
        if auth_session.pin_verified:
            return PinSessionState.VERIFIED
        if auth_session.requires_pin_setup:
            return PinSessionState.PENDING_SETUP
        if not auth_session.requires_pin:
            return PinSessionState.NOT_REQUIRED

        security = await self.store.get(auth_session.user_id)
        if self.tracker.is_locked(security, self.clock()):
            return PinSessionState.LOCKED_OUT
        return PinSessionState.PENDING_VERIFICATION

    async def verify_session(
        self,
        auth_session: AuthSession,
        candidate_pin: str,
        context: Optional[AuditContext] = None,
    ) -> PINVerificationResult:
        """Verify a PIN for a session and mark it verified on success."""
        result = await self.verify(auth_session.user_id, candidate_pin, context)
        if result.success:
            auth_session.pin_verified = True
        return result

    async def setup_session(
        self,
        auth_session: AuthSession,
        new_pin: str,
        context: Optional[AuditContext] = None,
    ) -> bool:
        """Complete first-time setup for a session; the session counts as verified afterwards."""
        ok = await self.set_pin(auth_session.user_id, new_pin, context=context)
        if ok:
            auth_session.requires_pin_setup = False
            auth_session.requires_pin = True
            auth_session.pin_verified = True
        return ok
