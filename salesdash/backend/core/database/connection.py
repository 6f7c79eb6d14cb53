"""
Supabase client construction and connectivity checks.
"""

import logging
from typing import Optional

from supabase import create_client, Client

from ..pin.config import SupabaseConfig

logger = logging.getLogger(__name__)

def get_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> Client:
    """
    Create a Supabase client from explicit settings or the environment.

    Raises:
        ValueError: If URL or key is missing
    """
    supabase_url = url or SupabaseConfig.URL
    supabase_key = key or SupabaseConfig.KEY

    if not supabase_url or not supabase_key:
        raise ValueError("Supabase configuration missing")

    client = create_client(supabase_url, supabase_key)
    logger.info("Supabase client initialized")
    return client

class DatabaseManager:
    """Database management utilities"""

    @staticmethod
    def check_connection(client: Client) -> bool:
        """Check that the security table is reachable"""
        try:
            client.table(SupabaseConfig.SECURITY_TABLE).select("user_id").limit(1).execute()
            return True
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            return False
