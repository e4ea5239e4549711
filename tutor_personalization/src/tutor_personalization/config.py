"""
Personalization Configuration

Loads engine settings from environment variables (and a local .env file).
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class PersonalizationConfig:
    """Settings for extraction, generation providers, storage and retrieval."""
    default_provider: str = "openai"
    facts_llm_enabled: bool = False
    facts_llm_provider: Optional[str] = None

    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    groq_api_key: Optional[str] = None
    groq_model: str = "llama-3.1-8b-instant"
    together_api_key: Optional[str] = None
    together_model: str = "meta-llama/Llama-3-8b-chat-hf"

    # Bounded timeouts for external calls (seconds)
    generation_timeout_seconds: float = 20.0
    context_timeout_seconds: float = 5.0

    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    profiles_table: str = "personalization_profiles"

    rag_db_path: Optional[str] = None
    identity_index_path: Optional[str] = None
    embedding_model: str = "all-MiniLM-L6-v2"
    retrieval_top_k: int = 3

    log_level: str = "INFO"

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)


def load_config() -> PersonalizationConfig:
    """Load configuration from environment variables with defaults."""
    return PersonalizationConfig(
        default_provider=os.getenv("DEFAULT_AI_PROVIDER", "openai"),
        facts_llm_enabled=_env_flag("FACTS_LLM_ENABLED"),
        facts_llm_provider=os.getenv("FACTS_LLM_PROVIDER"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        groq_api_key=os.getenv("GROQ_API_KEY"),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.1-8b-instant"),
        together_api_key=os.getenv("TOGETHER_API_KEY"),
        together_model=os.getenv("TOGETHER_MODEL", "meta-llama/Llama-3-8b-chat-hf"),
        generation_timeout_seconds=float(os.getenv("GENERATION_TIMEOUT_SECONDS", "20")),
        context_timeout_seconds=float(os.getenv("CONTEXT_TIMEOUT_SECONDS", "5")),
        supabase_url=os.getenv("SUPABASE_URL"),
        supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY"),
        profiles_table=os.getenv("PROFILES_TABLE", "personalization_profiles"),
        rag_db_path=os.getenv("RAG_DB_PATH"),
        identity_index_path=os.getenv("IDENTITY_INDEX_PATH"),
        embedding_model=os.getenv("EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
        retrieval_top_k=int(os.getenv("RETRIEVAL_TOP_K", "3")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
