"""
Identity Index

Indexed copy of each user's durable identity (one record per key, one per
language) in a Chroma collection. Other services read identity from here
without loading the whole profile. Every operation is best-effort.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from langchain_chroma import Chroma

from tutor_personalization.retrieval import build_embeddings

logger = logging.getLogger(__name__)

COLLECTION_NAME = "user_identity"

ALLOWED_KEYS = ("name", "email", "pronouns", "age", "nationality", "timezone", "locale", "language", "languages")


def identity_record_id(user_id: str, key: str) -> str:
    return f"{user_id}:identity:{key}"


class IdentityIndex:
    """
    Args:
        persist_path: Chroma persist directory; the index is disabled when None
        embedding_model: HuggingFace sentence-embedding model name
        vector_store: Pre-built store (skips opening persist_path)
    """

    def __init__(self, persist_path: Optional[str] = None, embedding_model: str = "all-MiniLM-L6-v2", vector_store=None):
        self.persist_path = persist_path
        self.embedding_model = embedding_model
        self.vector_store = vector_store
        self._init_failed = False

    def _get_store(self):
        if self.vector_store is not None or self._init_failed or not self.persist_path:
            return self.vector_store
        try:
            os.makedirs(self.persist_path, exist_ok=True)
            self.vector_store = Chroma(
                collection_name=COLLECTION_NAME,
                persist_directory=self.persist_path,
                embedding_function=build_embeddings(self.embedding_model),
            )
            logger.info(f"🪪 [IdentityIndex] Ready at {self.persist_path}")
        except Exception as e:
            logger.error(f"❌ [IdentityIndex] Failed to initialize: {e}")
            self._init_failed = True
        return self.vector_store

    @staticmethod
    def build_records(user_id: str, identity: Dict[str, Any]):
        """Texts, metadatas and ids for the allowed identity keys."""
        texts: List[str] = []
        metadatas: List[Dict[str, str]] = []
        ids: List[str] = []

        for raw_key, raw_value in identity.items():
            key = str(raw_key).lower()
            if key not in ALLOWED_KEYS or raw_value in (None, "", []):
                continue

            if key in ("language", "languages"):
                languages = raw_value if isinstance(raw_value, list) else [raw_value]
                for lang in languages:
                    lang = str(lang)
                    texts.append(f"language={lang}")
                    metadatas.append({"user_id": user_id, "type": "identity", "key": "language", "value": lang})
                    ids.append(identity_record_id(user_id, f"language:{lang.lower()}"))
                continue

            value = ",".join(map(str, raw_value)) if isinstance(raw_value, list) else str(raw_value)
            texts.append(f"{key}={value}")
            metadatas.append({"user_id": user_id, "type": "identity", "key": key, "value": value})
            ids.append(identity_record_id(user_id, key))

        return texts, metadatas, ids

    async def upsert_identity(self, user_id: str, identity: Dict[str, Any]) -> None:
        store = await asyncio.to_thread(self._get_store)
        if store is None or not identity:
            return
        texts, metadatas, ids = self.build_records(user_id, identity)
        if not texts:
            return
        try:
            await asyncio.to_thread(store.add_texts, texts, metadatas=metadatas, ids=ids)
            logger.debug(f"🪪 [IdentityIndex] Upserted {len(ids)} record(s) for user {user_id[:20]}")
        except Exception as e:
            logger.warning(f"⚠️ [IdentityIndex] upsert_identity failed: {e}")

    async def fetch_identity(self, user_id: str) -> Dict[str, Any]:
        """Stored identity as key -> value, with languages re-assembled into a list."""
        store = await asyncio.to_thread(self._get_store)
        if store is None:
            return {}
        try:
            result = await asyncio.to_thread(
                store.get,
                where={"$and": [{"user_id": user_id}, {"type": "identity"}]},
            )
        except Exception as e:
            logger.warning(f"⚠️ [IdentityIndex] fetch_identity failed: {e}")
            return {}

        identity: Dict[str, Any] = {}
        languages: List[str] = []
        for metadata in result.get("metadatas") or []:
            if not metadata or not metadata.get("key"):
                continue
            if metadata["key"] == "language":
                if metadata.get("value") and metadata["value"] not in languages:
                    languages.append(metadata["value"])
            else:
                identity[metadata["key"]] = metadata.get("value")
        if languages:
            identity["languages"] = languages
        return identity
