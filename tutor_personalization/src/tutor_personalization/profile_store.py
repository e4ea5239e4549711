"""
Profile Storage

Durable load/save of whole user profiles. Unknown users get a well-formed
default profile rather than an error.

Stores hold serialized dicts, never live profile objects, so mutations made
to a loaded profile are invisible until it is saved.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from tutor_personalization.config import PersonalizationConfig, load_config
from tutor_personalization.exceptions import ProfileStorageError
from tutor_personalization.supabase_client import get_supabase_client
from tutor_personalization.user_profile import UserProfile, default_profile, profile_from_dict, profile_to_dict

logger = logging.getLogger(__name__)


class ProfileStore(ABC):
    """Durable storage for user profiles."""

    @abstractmethod
    async def load(self, user_id: str) -> UserProfile:
        """Load a profile, or a default profile for an unknown user."""

    @abstractmethod
    async def save(self, user_id: str, profile: UserProfile) -> None:
        """Persist the whole profile in one write."""


class InMemoryProfileStore(ProfileStore):
    """Process-local store used in tests and when Supabase is not configured."""

    def __init__(self):
        self._profiles: Dict[str, Dict[str, Any]] = {}

    async def load(self, user_id: str) -> UserProfile:
        data = self._profiles.get(user_id)
        if data is None:
            return default_profile(user_id)
        return profile_from_dict(copy.deepcopy(data), user_id)

    async def save(self, user_id: str, profile: UserProfile) -> None:
        self._profiles[user_id] = profile_to_dict(profile)


class SupabaseProfileStore(ProfileStore):
    """
    One row per user in a Supabase table.

    Args:
        supabase_client: Supabase client instance
        table: Table with user_id (unique), profile (jsonb) and updated_at columns
    """

    def __init__(self, supabase_client, table: str = "personalization_profiles"):
        self.supabase = supabase_client
        self.table = table

    def _select(self, user_id: str):
        return self.supabase.table(self.table) \
            .select('profile') \
            .eq('user_id', user_id) \
            .limit(1) \
            .execute()

    def _upsert(self, row: Dict[str, Any]):
        return self.supabase.table(self.table) \
            .upsert(row, on_conflict='user_id') \
            .execute()

    async def load(self, user_id: str) -> UserProfile:
        try:
            result = await asyncio.to_thread(self._select, user_id)
            stored = result.data[0].get('profile') if result.data else None
            if isinstance(stored, str):
                stored = json.loads(stored)
        except Exception as e:
            logger.error(f"❌ [ProfileStore] Error loading profile for user {user_id[:20]}...: {e}")
            raise ProfileStorageError(f"Failed to load profile for {user_id}: {e}") from e

        if stored is None:
            return default_profile(user_id)
        return profile_from_dict(stored, user_id)

    async def save(self, user_id: str, profile: UserProfile) -> None:
        row = {
            'user_id': user_id,
            'profile': profile_to_dict(profile),
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }
        try:
            await asyncio.to_thread(self._upsert, row)
        except Exception as e:
            logger.error(f"❌ [ProfileStore] Error saving profile for user {user_id[:20]}...: {e}")
            raise ProfileStorageError(f"Failed to save profile for {user_id}: {e}") from e
        logger.debug(f"💾 [ProfileStore] Saved profile for user {user_id[:20]}...")


def create_profile_store(config: Optional[PersonalizationConfig] = None) -> ProfileStore:
    """Supabase-backed store when credentials are configured, otherwise in-memory."""
    config = config or load_config()
    if config.supabase_configured:
        try:
            client = get_supabase_client(config)
            logger.info(f"✅ [ProfileStore] Using Supabase table '{config.profiles_table}'")
            return SupabaseProfileStore(client, config.profiles_table)
        except Exception as e:
            logger.warning(f"⚠️ [ProfileStore] Supabase client unavailable ({e}), using in-memory fallback")
            return InMemoryProfileStore()

    logger.warning("⚠️ [ProfileStore] Supabase not configured, using in-memory fallback")
    return InMemoryProfileStore()
