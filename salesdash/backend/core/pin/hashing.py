"""
PIN hashing utilities using passlib's PBKDF2-SHA256 for salted, irreversible storage.
Also owns the PIN format rule shared by every entry point.
"""

from typing import Optional, Tuple

from passlib.context import CryptContext
import logging

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ROUNDS = 200_000


def validate_pin_format(pin: str, length: int = 4) -> str:
    """
    Check that a PIN is exactly `length` ASCII digits.

    Args:
        pin: Candidate PIN
        length: Required number of digits

    Returns:
        The PIN unchanged

    Raises:
        ValidationError: If the PIN is empty or malformed
    """
    if not isinstance(pin, str) or not pin:
        raise ValidationError("PIN cannot be empty")
    if len(pin) != length or not (pin.isascii() and pin.isdigit()):
        raise ValidationError(f"PIN must be exactly {length} digits")
    return pin


class PinHasher:
    """Wraps a CryptContext so rounds can be tuned per deployment."""

    def __init__(self, rounds: int = DEFAULT_ROUNDS):
        self.context = CryptContext(
            schemes=["pbkdf2_sha256"],
            deprecated="auto",
            pbkdf2_sha256__rounds=rounds,
            # Hashes below the configured rounds are flagged for rehash on next verify
            pbkdf2_sha256__min_rounds=rounds,
        )

    def hash(self, pin: str) -> str:
        """
        Hash a plaintext PIN with a fresh random salt.

        Raises:
            ValueError: If the PIN is empty
        """
        if not pin:
            raise ValueError("PIN cannot be empty")
        return self.context.hash(pin)

    def verify(self, pin: str, pin_hash: Optional[str]) -> Tuple[bool, Optional[str]]:
        """
        Compare a candidate PIN against a stored hash.

        Returns:
            (matches, replacement_hash); the replacement is set when the stored
            hash was produced with outdated parameters and should be rewritten.
        """
        if not pin or not pin_hash:
            return False, None
        try:
            return self.context.verify_and_update(pin, pin_hash)
        except ValueError as e:
            # Unrecognised or corrupt hash in storage
            logger.error(f"Stored PIN hash could not be parsed: {e}")
            return False, None
