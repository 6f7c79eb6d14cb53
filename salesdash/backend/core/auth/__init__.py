"""
Authentication helpers for the sales dashboard backend.
Validates Supabase access tokens issued at primary login.
"""

from .token import TokenConfig, create_access_token, decode_token, get_user_id

__all__ = [
    "TokenConfig",
    "create_access_token",
    "decode_token",
    "get_user_id",
]
