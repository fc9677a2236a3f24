"""
Database Access

Single Supabase client (service role) shared by the whole engine.
"""

import logging
from typing import Optional

from supabase import Client, create_client

from commission_engine.config import SUPABASE_SERVICE_ROLE_KEY, SUPABASE_URL

logger = logging.getLogger(__name__)

_supabase_service: Optional[Client] = None


def get_supabase_service() -> Optional[Client]:
    """
    Get the service-role Supabase client.

    Returns None when the environment is not configured, so callers can
    fail with a clear message instead of an import-time crash.
    """
    global _supabase_service
    if _supabase_service is None:
        if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
            logger.error("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY not configured")
            return None
        _supabase_service = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    return _supabase_service
