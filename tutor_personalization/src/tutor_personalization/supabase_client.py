"""
Supabase client for profile storage
"""
from typing import Optional

from supabase import Client, create_client

from tutor_personalization.config import PersonalizationConfig, load_config

_supabase_client: Optional[Client] = None


def get_supabase_client(config: Optional[PersonalizationConfig] = None) -> Client:
    """Get or create the Supabase client singleton"""
    global _supabase_client

    if _supabase_client is None:
        config = config or load_config()

        # Service role key: profiles are written on behalf of every user
        if not config.supabase_configured:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment")

        _supabase_client = create_client(config.supabase_url, config.supabase_service_key)

    return _supabase_client
