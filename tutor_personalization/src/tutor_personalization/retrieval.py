"""
Context Retrieval

Best-effort semantic lookup of long-form context from a persisted Chroma
store. Unconfigured or failing retrieval yields empty results.
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

from langchain_chroma import Chroma
from langchain_huggingface import HuggingFaceEmbeddings

logger = logging.getLogger(__name__)

# Disable ChromaDB telemetry to avoid PostHog connection errors
os.environ["ANONYMIZED_TELEMETRY"] = "False"

CONTEXT_SEPARATOR = "\n\n---\n\n"


def build_embeddings(model_name: str) -> HuggingFaceEmbeddings:
    return HuggingFaceEmbeddings(
        model_name=model_name,
        model_kwargs={'device': 'cpu'},
        encode_kwargs={'normalize_embeddings': True}
    )


class ContextRetriever:
    """
    Semantic search over an existing Chroma store.

    Args:
        db_path: Chroma persist directory; retrieval is disabled when missing
        embedding_model: HuggingFace sentence-embedding model name
        vector_store: Pre-built store (skips opening db_path)
    """

    def __init__(self, db_path: Optional[str] = None, embedding_model: str = "all-MiniLM-L6-v2", vector_store=None):
        self.db_path = db_path
        self.embedding_model = embedding_model
        self.vector_store = vector_store
        self._init_failed = False

    @property
    def configured(self) -> bool:
        return self.vector_store is not None or bool(self.db_path)

    def _get_store(self):
        if self.vector_store is not None or self._init_failed:
            return self.vector_store
        if not self.db_path or not os.path.exists(self.db_path):
            if self.db_path:
                logger.warning(f"⚠️ [Retrieval] Knowledge base not found at {self.db_path}")
            self._init_failed = True
            return None
        try:
            self.vector_store = Chroma(
                persist_directory=self.db_path,
                embedding_function=build_embeddings(self.embedding_model),
            )
            logger.info(f"✅ [Retrieval] Opened Chroma store at {self.db_path}")
        except Exception as e:
            logger.error(f"❌ [Retrieval] Could not open Chroma store: {e}")
            self._init_failed = True
        return self.vector_store

    async def search(self, query: str, top_k: int = 3, filter: Optional[Dict[str, Any]] = None) -> List[str]:
        """
        Ordered text snippets most similar to the query.

        Returns:
            Page contents, best match first; [] when unavailable
        """
        if not query or not query.strip():
            return []
        store = await asyncio.to_thread(self._get_store)
        if store is None:
            return []
        try:
            docs = await asyncio.to_thread(store.similarity_search, query, k=top_k, filter=filter)
        except Exception as e:
            logger.warning(f"⚠️ [Retrieval] Search failed: {e}")
            return []
        return [doc.page_content for doc in docs if doc.page_content]

    async def get_relevant_context(self, query: str, top_k: int = 3) -> str:
        snippets = await self.search(query, top_k)
        return CONTEXT_SEPARATOR.join(snippets)
