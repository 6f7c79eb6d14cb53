"""
Supabase access token handling.
Primary login happens in Supabase Auth; this module only validates the resulting JWTs.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import jwt, JWTError
import logging

logger = logging.getLogger(__name__)

class TokenConfig:
    """JWT token configuration."""
    SECRET_KEY = os.getenv("SUPABASE_JWT_SECRET", "fallback-dev-secret-change-in-production")
    ALGORITHM = "HS256"  # Supabase signs session tokens with HS256
    AUDIENCE = os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated")
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TTL", 60))

def create_access_token(user_id: str, expires_minutes: Optional[int] = None, extra: Optional[Dict[str, Any]] = None) -> str:
    """
    Create a Supabase-compatible access token.
    Used by local tooling and tests; production tokens come from Supabase Auth.

    Args:
        user_id: Subject of the token
        expires_minutes: Lifetime override
        extra: Additional claims

    Returns:
        Encoded JWT token string

    Raises:
        ValueError: If user_id is missing
    """
    if not user_id:
        raise ValueError("Token subject (user_id) is required")

    now = datetime.now(timezone.utc)
    lifetime = expires_minutes if expires_minutes is not None else TokenConfig.ACCESS_TOKEN_EXPIRE_MINUTES
    to_encode = dict(extra or {})
    to_encode.update({
        "sub": user_id,
        "aud": TokenConfig.AUDIENCE,
        "role": "authenticated",
        "iat": now,
        "exp": now + timedelta(minutes=lifetime),
    })

    return jwt.encode(to_encode, TokenConfig.SECRET_KEY, algorithm=TokenConfig.ALGORITHM)

def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and validate a Supabase access token.

    Args:
        token: JWT token to decode

    Returns:
        Token payload dict or None if invalid or expired
    """
    try:
        payload = jwt.decode(
            token,
            TokenConfig.SECRET_KEY,
            algorithms=[TokenConfig.ALGORITHM],
            audience=TokenConfig.AUDIENCE
        )
        return payload
    except JWTError as e:
        logger.warning(f"Token decode failed: {e}")
        return None

def get_user_id(token: str) -> Optional[str]:
    """Return the subject of a valid token, or None."""
    payload = decode_token(token)
    if not payload:
        return None
    return payload.get("sub")
