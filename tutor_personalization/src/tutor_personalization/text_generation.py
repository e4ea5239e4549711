"""
Text Generation Providers

One async OpenAI-compatible client per configured provider with a fallback
chain: hinted provider, then the default, then every other configured one.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from openai import AsyncOpenAI

from tutor_personalization.config import PersonalizationConfig, load_config
from tutor_personalization.exceptions import GenerationError

logger = logging.getLogger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
TOGETHER_BASE_URL = "https://api.together.xyz/v1"


@dataclass
class ProviderClient:
    """A configured provider: its client and the model it is called with."""
    name: str
    client: AsyncOpenAI
    model: str


class TextGenerator:
    """Prompt in, text out, across every provider that has credentials."""

    def __init__(self, config: Optional[PersonalizationConfig] = None):
        self.config = config or load_config()
        self.timeout = self.config.generation_timeout_seconds
        self.providers: Dict[str, ProviderClient] = {}

        if self.config.openai_api_key:
            self.providers["openai"] = ProviderClient(
                "openai", AsyncOpenAI(api_key=self.config.openai_api_key), self.config.openai_model
            )
        if self.config.groq_api_key:
            self.providers["groq"] = ProviderClient(
                "groq",
                AsyncOpenAI(api_key=self.config.groq_api_key, base_url=GROQ_BASE_URL),
                self.config.groq_model,
            )
        if self.config.together_api_key:
            self.providers["together"] = ProviderClient(
                "together",
                AsyncOpenAI(api_key=self.config.together_api_key, base_url=TOGETHER_BASE_URL),
                self.config.together_model,
            )

        if self.providers:
            logger.info(f"✅ [TextGenerator] Providers available: {', '.join(self.providers)}")
        else:
            logger.warning("⚠️ [TextGenerator] No provider API keys configured")

    def available_providers(self) -> List[str]:
        return list(self.providers)

    def _provider_order(self, provider_hint: Optional[str]) -> List[str]:
        order: List[str] = []
        for name in [provider_hint, self.config.default_provider, *self.providers]:
            if name and name in self.providers and name not in order:
                order.append(name)
        return order

    async def _complete(self, provider: ProviderClient, prompt: str, json_mode: bool) -> str:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = await provider.client.chat.completions.create(
            model=provider.model,
            messages=[{"role": "user", "content": prompt}],
            temperature=0.2,
            **kwargs,
        )
        return (response.choices[0].message.content or "").strip()

    async def generate(self, prompt: str, provider_hint: Optional[str] = None, json_mode: bool = False) -> str:
        """
        Generate a completion, falling back across providers.

        Args:
            prompt: Full prompt text
            provider_hint: Provider to try first (openai, groq, together)
            json_mode: Request a JSON object response

        Returns:
            The first non-empty completion

        Raises:
            GenerationError: No provider is configured or every provider failed
        """
        order = self._provider_order(provider_hint)
        if not order:
            raise GenerationError("No text-generation provider is configured")

        errors: List[str] = []
        for name in order:
            try:
                text = await asyncio.wait_for(
                    self._complete(self.providers[name], prompt, json_mode), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ [TextGenerator] {name} timed out after {self.timeout}s")
                errors.append(f"{name}: timeout")
                continue
            except Exception as e:
                logger.warning(f"⚠️ [TextGenerator] {name} failed: {e}")
                errors.append(f"{name}: {e}")
                continue

            if text:
                return text
            errors.append(f"{name}: empty completion")

        logger.error(f"❌ [TextGenerator] All providers failed: {'; '.join(errors)}")
        raise GenerationError(f"All providers failed: {'; '.join(errors)}")
