"""
Unit Tests for the Personalization Aggregator

Storage is in-memory; generation, retrieval and the identity index are
replaced by small fakes.
"""

import asyncio
import pytest
import sys
import os
from typing import Any, Dict, List, Optional

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "tutor_personalization", "src"))

from tutor_personalization.config import PersonalizationConfig
from tutor_personalization.exceptions import ProfileStorageError
from tutor_personalization.facts import EphemeralState
from tutor_personalization.personalization import IngestOptions, PersonalizationAggregator
from tutor_personalization.profile_store import InMemoryProfileStore
from tutor_personalization.user_profile import default_profile

NOW = 1_700_000_000_000
DAY_MS = 24 * 3600 * 1000


class MutableClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


class ScriptedGenerator:
    def __init__(self, reply: str):
        self.reply = reply
        self.calls = 0

    async def generate(self, prompt: str, provider_hint: Optional[str] = None, json_mode: bool = False) -> str:
        self.calls += 1
        return self.reply


class FakeIdentityIndex:
    def __init__(self, stored: Optional[Dict[str, Any]] = None, fail_fetch: bool = False):
        self.stored = stored or {}
        self.fail_fetch = fail_fetch
        self.upserts: List[Dict[str, Any]] = []

    async def upsert_identity(self, user_id: str, identity: Dict[str, Any]) -> None:
        self.upserts.append(dict(identity))

    async def fetch_identity(self, user_id: str) -> Dict[str, Any]:
        if self.fail_fetch:
            raise RuntimeError("index offline")
        return dict(self.stored)


class FakeRetriever:
    def __init__(self, context: str = "", delay: float = 0.0):
        self.context = context
        self.delay = delay
        self.queries: List[tuple] = []

    async def get_relevant_context(self, query: str, top_k: int = 3) -> str:
        self.queries.append((query, top_k))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.context


class FlakyStore(InMemoryProfileStore):
    """In-memory store whose load or save can be switched to fail or stall."""

    def __init__(self):
        super().__init__()
        self.fail_load = False
        self.fail_save = False
        self.save_delay = 0.0

    async def load(self, user_id):
        if self.fail_load:
            raise ProfileStorageError("database unreachable")
        return await super().load(user_id)

    async def save(self, user_id, profile):
        if self.fail_save:
            raise ProfileStorageError("disk full")
        if self.save_delay:
            await asyncio.sleep(self.save_delay)
        await super().save(user_id, profile)


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def aggregator(store, clock):
    return PersonalizationAggregator(store, config=PersonalizationConfig(), clock=clock)


class TestIngestChatTurn:
    """Fact application, set semantics and persistence."""

    @pytest.mark.asyncio
    async def test_snapshot_after_identity_and_struggle(self, aggregator):
        result = await aggregator.ingest_chat_turn("u1", "My name is Priya. I'm struggling with gravity.", "")

        assert result.ok
        assert result.snapshot == "Name: Priya | Needs help with: gravity"

    @pytest.mark.asyncio
    async def test_topic_lists_have_set_semantics(self, aggregator, store):
        await aggregator.ingest_chat_turn("u1", "I love black holes", "")
        await aggregator.ingest_chat_turn("u1", "I love black holes", "")

        profile = await store.load("u1")
        assert profile.learning.preferred_topics == ["black holes"]
        assert profile.total_interactions == 2
        assert len(profile.conversation) == 2

    @pytest.mark.asyncio
    async def test_options_accept_plain_dict(self, aggregator, store):
        await aggregator.ingest_chat_turn("u1", "Tell me about orbits", "", {"current_topic": "orbits"})

        profile = await store.load("u1")
        assert profile.knowledge_graph.nodes["Orbits"].mastery == pytest.approx(0.15)
        assert profile.conversation.recent(1)[0].metadata["current_topic"] == "orbits"

    @pytest.mark.asyncio
    async def test_confusion_lowers_mentioned_concept(self, aggregator, store):
        await aggregator.ingest_chat_turn("u1", "Tell me about orbits", "", IngestOptions(current_topic="orbits"))
        await aggregator.ingest_chat_turn("u1", "I'm confused about orbits", "")

        profile = await store.load("u1")
        assert profile.knowledge_graph.nodes["Orbits"].mastery == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_loaded_profile_is_not_mutated_in_store_until_save(self, aggregator, store):
        await aggregator.ingest_chat_turn("u1", "I love mars", "")
        store.fail_save = True

        result = await aggregator.ingest_chat_turn("u1", "I love venus", "")

        assert not result.ok
        assert "disk full" in result.error
        store.fail_save = False
        profile = await store.load("u1")
        assert profile.learning.preferred_topics == ["mars"]
        assert profile.total_interactions == 1

    @pytest.mark.asyncio
    async def test_load_failure_reports_error(self, aggregator, store):
        store.fail_load = True

        result = await aggregator.ingest_chat_turn("u1", "hello", "")

        assert result.ok is False
        assert "database unreachable" in result.error

    @pytest.mark.asyncio
    async def test_concurrent_turns_for_same_user_are_serialized(self, aggregator, store):
        await asyncio.gather(
            aggregator.ingest_chat_turn("u1", "I love mars", ""),
            aggregator.ingest_chat_turn("u1", "I love venus", ""),
        )

        profile = await store.load("u1")
        assert profile.total_interactions == 2
        assert sorted(profile.learning.preferred_topics) == ["mars", "venus"]

    @pytest.mark.asyncio
    async def test_user_locks_released_after_ingestion(self, aggregator, store):
        await asyncio.gather(
            aggregator.ingest_chat_turn("u1", "I love mars", ""),
            aggregator.ingest_chat_turn("u2", "I love venus", ""),
        )
        store.fail_save = True
        await aggregator.ingest_chat_turn("u3", "hello", "")

        assert aggregator._locks == {}
        assert aggregator._lock_users == {}

    @pytest.mark.asyncio
    async def test_stalled_save_times_out(self, store, clock):
        aggregator = PersonalizationAggregator(
            store, config=PersonalizationConfig(context_timeout_seconds=0.05), clock=clock,
        )
        store.save_delay = 1.0

        result = await aggregator.ingest_chat_turn("u1", "I love mars", "")

        assert result.ok is False
        assert "Timed out saving profile" in result.error
        store.save_delay = 0.0
        assert (await store.load("u1")).total_interactions == 0


class TestEphemerals:
    @pytest.mark.asyncio
    async def test_subject_expires_after_two_days(self, aggregator, clock):
        await aggregator.ingest_chat_turn("u1", "Let's focus on exoplanets", "")

        active = await aggregator.get_active_personalization("u1")
        assert active.ephemerals == {"current_subject": "exoplanets", "current_task": None}

        clock.now += 2 * DAY_MS + 1000
        active = await aggregator.get_active_personalization("u1")
        assert active.ephemerals["current_subject"] is None

    def test_requested_ttl_capped_at_two_days(self, aggregator):
        profile = default_profile("u1", NOW)

        aggregator._apply_ephemerals(profile, [EphemeralState.create("current_task", "essay", 10 * 86400, NOW)], NOW)

        assert profile.sessions.current_task.expires_at_ms == NOW + 2 * DAY_MS


class TestContextEvents:
    @pytest.mark.asyncio
    async def test_visual_data_updates_mood_without_an_interaction(self, aggregator, store):
        result = await aggregator.ingest_visual_data("u1", {
            "emotional_state": {"emotion": "happy", "confidence": 0.9},
            "age": 14,
        })

        profile = await store.load("u1")
        assert result.ok
        assert profile.emotional.dominant_mood == "happy"
        assert profile.visual.age == 14
        assert profile.total_interactions == 0
        assert result.snapshot == "Usually happy"

    @pytest.mark.asyncio
    async def test_lesson_title_becomes_topic_once(self, aggregator, store):
        await aggregator.ingest_lesson_event("u1", {"title": "Moon Phases"})
        await aggregator.ingest_lesson_event("u1", {"title": "Moon Phases"})

        profile = await store.load("u1")
        assert profile.learning.preferred_topics == ["Moon Phases"]
        assert len(profile.conversation) == 0


class TestLLMExtraction:
    REPLY = '{"identity": {"name": "Ana", "languages": "Spanish"}, "knowledge": {"mastered_topics": ["fractions"]}}'

    @pytest.mark.asyncio
    async def test_llm_signals_applied_and_mirrored(self, store, clock):
        generator = ScriptedGenerator(self.REPLY)
        index = FakeIdentityIndex()
        aggregator = PersonalizationAggregator(
            store, config=PersonalizationConfig(facts_llm_enabled=True),
            generator=generator, identity_index=index, clock=clock,
        )

        result = await aggregator.ingest_chat_turn("u1", "hello there", "")

        profile = await store.load("u1")
        assert result.ok
        assert profile.identity == {"name": "Ana", "languages": ["Spanish"]}
        assert profile.learning.mastered_concepts == ["fractions"]
        assert profile.knowledge_graph.nodes["Fractions"].mastery == pytest.approx(0.2)
        assert index.upserts == [{"name": "Ana", "languages": ["Spanish"]}]

    @pytest.mark.asyncio
    async def test_rule_based_identity_takes_precedence(self, store, clock):
        aggregator = PersonalizationAggregator(
            store, config=PersonalizationConfig(facts_llm_enabled=True),
            generator=ScriptedGenerator(self.REPLY), clock=clock,
        )

        await aggregator.ingest_chat_turn("u1", "My name is Priya", "")

        profile = await store.load("u1")
        assert profile.identity["name"] == "Priya"

    @pytest.mark.asyncio
    async def test_generator_unused_when_disabled(self, store, clock):
        generator = ScriptedGenerator(self.REPLY)
        aggregator = PersonalizationAggregator(store, config=PersonalizationConfig(), generator=generator, clock=clock)

        await aggregator.ingest_chat_turn("u1", "hello there", "")

        assert aggregator.llm_extractor is None
        assert generator.calls == 0


class TestReadSide:
    @pytest.mark.asyncio
    async def test_snippet_for_unknown_user_is_empty(self, aggregator):
        assert await aggregator.build_active_context_snippet("nobody") == ""

    @pytest.mark.asyncio
    async def test_active_personalization_merges_indexed_identity(self, store, clock):
        index = FakeIdentityIndex(stored={"nationality": "Indian"})
        aggregator = PersonalizationAggregator(store, config=PersonalizationConfig(), identity_index=index, clock=clock)
        await aggregator.ingest_chat_turn("u1", "My name is Priya. I prefer more examples", "")

        active = await aggregator.get_active_personalization("u1")

        assert active.identity == {"name": "Priya", "nationality": "Indian"}
        assert active.preferences["explanation_depth"] == "examples"

    @pytest.mark.asyncio
    async def test_active_personalization_lists_unexpired_facts(self, aggregator, clock):
        await aggregator.ingest_chat_turn("u1", "My name is Priya. I'm struggling with gravity.", "")

        active = await aggregator.get_active_personalization("u1")
        assert {(f["key"], f["value"]) for f in active.facts} == {("name", "Priya"), ("struggling_topic", "gravity")}

        clock.now += 91 * DAY_MS
        active = await aggregator.get_active_personalization("u1")
        assert [(f["key"], f["value"]) for f in active.facts] == [("name", "Priya")]

    @pytest.mark.asyncio
    async def test_index_failure_does_not_block_profile(self, store, clock):
        index = FakeIdentityIndex(fail_fetch=True)
        aggregator = PersonalizationAggregator(store, config=PersonalizationConfig(), identity_index=index, clock=clock)
        await aggregator.ingest_chat_turn("u1", "My name is Priya", "")

        active = await aggregator.get_active_personalization("u1")

        assert active.identity == {"name": "Priya"}

    @pytest.mark.asyncio
    async def test_prompt_context(self, store, clock):
        retriever = FakeRetriever("Mars has two moons.")
        aggregator = PersonalizationAggregator(
            store, config=PersonalizationConfig(retrieval_top_k=2), retriever=retriever, clock=clock,
        )
        await aggregator.ingest_chat_turn("u1", "My name is Priya. Let's focus on orbits", "")

        context = await aggregator.build_prompt_context("u1", "How do moons orbit?")

        assert context.retrieved_context == "Mars has two moons."
        assert retriever.queries == [("How do moons orbit?", 2)]
        assert context.identity == {"name": "Priya"}
        assert context.current_subject == "orbits"
        assert context.related_concepts is not None
        assert context.conversation_summary.startswith("Recent 1 interactions.")
        assert context.gap_types == ["procedural_knowledge"]
        assert context.difficulty.level == "beginner"

    @pytest.mark.asyncio
    async def test_slow_retrieval_degrades_to_empty(self, store, clock):
        aggregator = PersonalizationAggregator(
            store, config=PersonalizationConfig(context_timeout_seconds=0.05),
            retriever=FakeRetriever("late", delay=1.0), clock=clock,
        )

        context = await aggregator.build_prompt_context("u1", "What is a comet?")

        assert context.retrieved_context == ""
        assert context.conversation_summary == "New user - no previous interactions."

    @pytest.mark.asyncio
    async def test_prompt_context_survives_storage_outage(self, aggregator, store):
        store.fail_load = True

        context = await aggregator.build_prompt_context("u1", "hi")

        assert context.snapshot == ""
        assert context.learning_style == "unknown"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
