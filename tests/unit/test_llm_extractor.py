"""
Unit Tests for the LLM-Backed Extractor

The text generator is replaced by a scripted fake; no network access.
"""

import pytest
import sys
import os
from typing import List, Optional

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "tutor_personalization", "src"))

from tutor_personalization.exceptions import GenerationError
from tutor_personalization.facts import FactType
from tutor_personalization.llm_extractor import (
    LLMFactExtractor,
    PersonalizationSignals,
    parse_json_object,
    signals_to_result,
)

NOW = 1_700_000_000_000


class ScriptedGenerator:
    """Returns a canned completion (or raises) and records prompts."""

    def __init__(self, reply: Optional[str] = None, error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.prompts: List[str] = []
        self.hints: List[Optional[str]] = []

    async def generate(self, prompt: str, provider_hint: Optional[str] = None, json_mode: bool = False) -> str:
        self.prompts.append(prompt)
        self.hints.append(provider_hint)
        if self.error:
            raise self.error
        return self.reply


class TestParseJsonObject:
    def test_direct_json(self):
        assert parse_json_object('{"a": 1}') == {"a": 1}

    def test_embedded_block(self):
        raw = 'Sure! Here it is:\n```json\n{"identity": {"name": "Ana"}}\n```\nAnything else?'
        assert parse_json_object(raw) == {"identity": {"name": "Ana"}}

    def test_braces_inside_strings(self):
        raw = 'prefix {"note": "use {curly} braces", "n": 2} suffix {"other": true}'
        assert parse_json_object(raw) == {"note": "use {curly} braces", "n": 2}

    def test_unparseable(self):
        assert parse_json_object("no json here") is None
        assert parse_json_object("{broken: ") is None
        assert parse_json_object("") is None
        assert parse_json_object("[1, 2]") is None


class TestPersonalizationSignals:
    def test_scalar_languages_coerced_to_list(self):
        signals = PersonalizationSignals.from_payload({"identity": {"languages": "Hindi"}})
        assert signals.identity.languages == ["Hindi"]

    def test_missing_sections_default_to_empty(self):
        signals = PersonalizationSignals.from_payload({"identity": None, "knowledge": "oops"})

        assert signals.identity.name is None
        assert signals.knowledge.struggling_topics == []
        assert signals.ephemerals.current_subject is None

    def test_malformed_section_does_not_sink_others(self):
        signals = PersonalizationSignals.from_payload({
            "identity": {"name": "Ana", "unexpected": 1},
            "preferences": ["visual"],
        })

        assert signals.identity.name == "Ana"
        assert signals.preferences.learning_style is None
        assert signals.preferences.preferred_topics == []

    def test_non_object_payload(self):
        assert PersonalizationSignals.from_payload(None) == PersonalizationSignals()

    def test_signals_to_result_flattens(self):
        signals = PersonalizationSignals.from_payload({
            "identity": {"name": "Ana", "age": 14, "languages": ["English", "Spanish"]},
            "preferences": {"learning_style": "visual_learner", "preferred_topics": ["mars"]},
            "knowledge": {"struggling_topics": ["gravity"], "mastered_topics": ["moon phases"]},
            "ephemerals": {"current_subject": "orbits"},
        })

        result = signals_to_result(signals, NOW)
        facts = {(f.type, f.key, f.value) for f in result.facts}

        assert (FactType.IDENTITY, "name", "Ana") in facts
        assert (FactType.IDENTITY, "age", "14") in facts
        assert (FactType.IDENTITY, "language", "English") in facts
        assert (FactType.IDENTITY, "language", "Spanish") in facts
        assert (FactType.PREFERENCE, "learning_style", "visual_learner") in facts
        assert (FactType.PREFERENCE, "preferred_topic", "mars") in facts
        assert (FactType.KNOWLEDGE, "struggling_topic", "gravity") in facts
        assert (FactType.KNOWLEDGE, "mastered_topic", "moon phases") in facts

        assert len(result.ephemerals) == 1
        assert result.ephemerals[0].key == "current_subject"
        assert result.ephemerals[0].expires_at_ms == NOW + 172800 * 1000

    def test_llm_facts_use_conservative_confidence(self):
        signals = PersonalizationSignals.from_payload({"knowledge": {"struggling_topics": ["gravity"]}})
        fact = signals_to_result(signals, NOW).facts[0]

        assert fact.confidence == pytest.approx(0.6)
        assert fact.ttl_days == 90


class TestLLMFactExtractor:
    @pytest.mark.asyncio
    async def test_extract_signals_parses_reply(self):
        generator = ScriptedGenerator('{"identity": {"name": "Priya"}, "knowledge": {"struggling_topics": "gravity"}}')
        extractor = LLMFactExtractor(generator, provider="groq")

        signals = await extractor.extract_signals("My name is Priya", "Hi Priya!")

        assert signals.identity.name == "Priya"
        assert signals.knowledge.struggling_topics == ["gravity"]
        assert generator.hints == ["groq"]
        assert '"My name is Priya"' in generator.prompts[0]

    @pytest.mark.asyncio
    async def test_generation_failure_yields_no_signals(self):
        extractor = LLMFactExtractor(ScriptedGenerator(error=GenerationError("all providers failed")))

        signals = await extractor.extract_signals("hello")

        assert signals == PersonalizationSignals()

    @pytest.mark.asyncio
    async def test_garbage_output_yields_no_signals(self):
        extractor = LLMFactExtractor(ScriptedGenerator("I cannot comply"))
        signals = await extractor.extract_signals("hello")
        assert signals == PersonalizationSignals()

    @pytest.mark.asyncio
    async def test_extract_facts_validates_entries(self):
        reply = """{
            "facts": [
                {"type": "identity", "key": "name", "value": "Ana", "confidence": 1.7, "ttlDays": 365},
                {"type": "Preference", "key": "preferred_topic", "value": "mars"},
                {"type": "mood", "key": "x", "value": "y"},
                {"type": "identity", "key": "email"},
                "not an object"
            ],
            "ephemerals": [
                {"key": "current_task", "value": "finish quiz"},
                {"key": "favourite_colour", "value": "blue", "ttlSeconds": 10}
            ]
        }"""
        extractor = LLMFactExtractor(ScriptedGenerator(reply))

        result = await extractor.extract_facts("hi", "hello", now_ms=NOW)

        assert [(f.type, f.key, f.value) for f in result.facts] == [
            (FactType.IDENTITY, "name", "Ana"),
            (FactType.PREFERENCE, "preferred_topic", "mars"),
        ]
        assert result.facts[0].confidence == 1.0
        assert result.facts[1].ttl_days == 240
        assert len(result.ephemerals) == 1
        assert result.ephemerals[0].ttl_seconds == 86400

    @pytest.mark.asyncio
    async def test_extract_facts_never_raises(self):
        extractor = LLMFactExtractor(ScriptedGenerator(error=RuntimeError("boom")))

        result = await extractor.extract_facts("hi")

        assert result.is_empty()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
