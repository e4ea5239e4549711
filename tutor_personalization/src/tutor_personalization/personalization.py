"""
Personalization Aggregator

Turns chat turns, lesson events and camera/visual signals into an evolving
user profile, and renders what the tutor needs to know about a learner for
the next prompt.

Per ingestion call:
1. Load the profile (read-modify-write, serialized per user)
2. Run rule-based and (optionally) LLM extraction concurrently
3. Merge candidates, rule-based first
4. Apply facts, ephemerals, visual and lesson signals, and the turn itself
5. Save the profile once
6. Mirror identity changes to the identity index (best-effort)
"""

import asyncio
import copy
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from tutor_personalization import rule_extractor
from tutor_personalization.config import PersonalizationConfig, load_config
from tutor_personalization.conversation_state import (
    EmotionalState,
    detect_emotional_state,
    get_user_learning_style,
    identify_knowledge_gaps,
    summarize_context,
)
from tutor_personalization.difficulty import DifficultyAdapter, DifficultyAssessment, generate_recommendations
from tutor_personalization.exceptions import ProfileStorageError
from tutor_personalization.fact_merger import merge_ephemerals, merge_facts
from tutor_personalization.facts import (
    MAX_EPHEMERAL_TTL_SECONDS,
    Clock,
    EphemeralState,
    ExtractionResult,
    Fact,
    FactType,
    system_clock_ms,
)
from tutor_personalization.knowledge_graph import (
    KnowledgeGaps,
    KnowledgeGraphManager,
    RelatedConcepts,
    canonical_concept_name,
)
from tutor_personalization.llm_extractor import LLMFactExtractor, signals_to_result
from tutor_personalization.profile_store import ProfileStore
from tutor_personalization.user_profile import (
    MoodEntry,
    UserProfile,
    default_profile,
    live_facts,
    upsert_fact_record,
)

logger = logging.getLogger(__name__)

STRUGGLE_DELTA = -0.1
MASTERY_DELTA = 0.1
INTERACTION_DELTA = 0.05
CONFUSION_DELTA = -0.1
CONFUSION_CUES = ("confused", "don't understand")


@dataclass
class IngestOptions:
    """Optional context accompanying an ingested turn."""
    visual_context: Optional[Dict[str, Any]] = None
    lesson_context: Optional[Dict[str, Any]] = None
    known_topics: List[str] = field(default_factory=list)
    current_topic: Optional[str] = None

    @classmethod
    def from_value(cls, options: Union["IngestOptions", Dict[str, Any], None]) -> "IngestOptions":
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls(
            visual_context=options.get("visual_context"),
            lesson_context=options.get("lesson_context"),
            known_topics=list(options.get("known_topics") or []),
            current_topic=options.get("current_topic"),
        )


@dataclass
class IngestResult:
    ok: bool
    signals: Optional[ExtractionResult] = None
    snapshot: str = ""
    error: Optional[str] = None


@dataclass
class ActivePersonalization:
    """Read-only view of what is currently known about a learner."""
    identity: Dict[str, Any] = field(default_factory=dict)
    preferences: Dict[str, Any] = field(default_factory=dict)
    knowledge: Dict[str, List[str]] = field(default_factory=dict)
    ephemerals: Dict[str, Optional[str]] = field(default_factory=dict)
    facts: List[Dict[str, Any]] = field(default_factory=list)
    snapshot: str = ""


@dataclass
class PromptContext:
    """Everything gathered about a learner for one generation prompt."""
    user_id: str
    snapshot: str
    identity: Dict[str, Any]
    conversation_summary: str
    emotional_state: EmotionalState
    learning_style: str
    knowledge_gaps: KnowledgeGaps
    gap_types: List[str]
    difficulty: DifficultyAssessment
    recommendations: List[str]
    retrieved_context: str = ""
    current_subject: Optional[str] = None
    current_task: Optional[str] = None
    related_concepts: Optional[RelatedConcepts] = None


def render_context_snippet(profile: UserProfile) -> str:
    """Pipe-delimited one-liner of the known identity, learning and mood fields."""
    identity = profile.identity or {}
    parts: List[str] = []
    if identity.get("name"):
        parts.append(f"Name: {identity['name']}")
    if identity.get("email"):
        parts.append(f"Email: {identity['email']}")
    if identity.get("age"):
        parts.append(f"Age: {identity['age']}")
    if identity.get("nationality"):
        parts.append(f"Nationality: {identity['nationality']}")
    languages = identity.get("languages")
    if isinstance(languages, list) and languages:
        parts.append(f"Languages: {', '.join(map(str, languages))}")

    learning = profile.learning
    if learning.preferred_style and learning.preferred_style != "unknown":
        parts.append(f"Learning style: {learning.preferred_style}")
    if learning.preferred_topics:
        parts.append(f"Top interests: {', '.join(learning.preferred_topics[:3])}")
    if learning.struggling_topics:
        parts.append(f"Needs help with: {', '.join(learning.struggling_topics[-3:])}")

    mood = profile.emotional.dominant_mood
    if mood and mood != "neutral":
        parts.append(f"Usually {mood}")

    return " | ".join(parts)


class PersonalizationAggregator:
    """
    Orchestrates extraction, merging, graph and conversation updates per user.

    Args:
        store: Profile storage
        config: Engine settings (loaded from the environment when omitted)
        generator: Text generator for LLM extraction (used only when enabled in config)
        retriever: ContextRetriever for prompt context (optional)
        identity_index: IdentityIndex mirror of identity (optional)
        clock: Epoch-milliseconds clock
    """

    def __init__(
        self,
        store: ProfileStore,
        config: Optional[PersonalizationConfig] = None,
        generator=None,
        retriever=None,
        identity_index=None,
        clock: Clock = system_clock_ms,
    ):
        self.store = store
        self.config = config or load_config()
        self.retriever = retriever
        self.identity_index = identity_index
        self.clock = clock
        self.graphs = KnowledgeGraphManager(clock)
        self.difficulty = DifficultyAdapter()

        self.llm_extractor: Optional[LLMFactExtractor] = None
        if generator is not None and self.config.facts_llm_enabled:
            self.llm_extractor = LLMFactExtractor(generator, self.config.facts_llm_provider)
            logger.info("✅ [Aggregator] LLM fact extraction enabled")

        # One lock per user serializes load -> mutate -> save; dropped once no call holds or awaits it
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    def _acquire_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        return lock

    def _release_lock(self, user_id: str):
        remaining = self._lock_users.get(user_id, 1) - 1
        if remaining > 0:
            self._lock_users[user_id] = remaining
        else:
            self._lock_users.pop(user_id, None)
            self._locks.pop(user_id, None)

    async def _load(self, user_id: str) -> UserProfile:
        try:
            return await asyncio.wait_for(self.store.load(user_id), timeout=self.config.context_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ProfileStorageError(
                f"Timed out loading profile for {user_id} after {self.config.context_timeout_seconds}s"
            ) from e

    async def _save(self, user_id: str, profile: UserProfile):
        try:
            await asyncio.wait_for(self.store.save(user_id, profile), timeout=self.config.context_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise ProfileStorageError(
                f"Timed out saving profile for {user_id} after {self.config.context_timeout_seconds}s"
            ) from e

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_chat_turn(
        self,
        user_id: str,
        user_message: str,
        ai_message: str = "",
        options: Union[IngestOptions, Dict[str, Any], None] = None,
    ) -> IngestResult:
        """
        Ingest one turn (or a context-only event) into the user's profile.

        Returns:
            IngestResult; ok=False with the error message if the profile could
            not be loaded or saved (nothing from this call is persisted then)
        """
        opts = IngestOptions.from_value(options)
        user_message = user_message or ""
        ai_message = ai_message or ""

        lock = self._acquire_lock(user_id)
        try:
            async with lock:
                profile = copy.deepcopy(await self._load(user_id))
                now = self.clock()

                signals = await self._extract(profile, user_message, ai_message, opts, now)
                identity_changes, touched = self._apply_facts(profile, signals.facts, now)
                self._apply_ephemerals(profile, signals.ephemerals, now)
                self._apply_visual(profile, opts.visual_context, now)
                self._apply_lesson(profile, opts.lesson_context)
                self._apply_turn(profile, user_message, ai_message, opts, touched, now)

                profile.updated_at = now
                await self._save(user_id, profile)
        except Exception as e:
            logger.error(f"❌ [Aggregator] Ingestion failed for user {user_id[:20]}...: {e}", exc_info=True)
            return IngestResult(ok=False, error=str(e))
        finally:
            self._release_lock(user_id)

        if identity_changes:
            await self._mirror_identity(user_id, identity_changes)

        logger.info(
            f"✅ [Aggregator] Ingested turn for user {user_id[:20]}... "
            f"({len(signals.facts)} facts, {len(signals.ephemerals)} ephemerals)"
        )
        return IngestResult(ok=True, signals=signals, snapshot=render_context_snippet(profile))

    async def ingest_lesson_event(self, user_id: str, lesson_context: Optional[Dict[str, Any]] = None) -> IngestResult:
        return await self.ingest_chat_turn(user_id, "", "", IngestOptions(lesson_context=lesson_context or {}))

    async def ingest_visual_data(self, user_id: str, visual_context: Optional[Dict[str, Any]] = None) -> IngestResult:
        return await self.ingest_chat_turn(user_id, "", "", IngestOptions(visual_context=visual_context or {}))

    async def _extract(
        self,
        profile: UserProfile,
        user_message: str,
        ai_message: str,
        opts: IngestOptions,
        now: int,
    ) -> ExtractionResult:
        known_topics = list(opts.known_topics)
        if opts.current_topic and opts.current_topic not in known_topics:
            known_topics.append(str(opts.current_topic))

        rules_task = asyncio.to_thread(rule_extractor.extract_facts, user_message, ai_message, known_topics, now)
        if self.llm_extractor is None:
            results = [await rules_task]
        else:
            rules, llm = await asyncio.gather(rules_task, self._extract_llm(profile, user_message, ai_message, opts, now))
            results = [rules, llm]

        return ExtractionResult(
            facts=merge_facts(r.facts for r in results),
            ephemerals=merge_ephemerals(r.ephemerals for r in results),
        )

    async def _extract_llm(
        self,
        profile: UserProfile,
        user_message: str,
        ai_message: str,
        opts: IngestOptions,
        now: int,
    ) -> ExtractionResult:
        hint = {
            "identity": profile.identity,
            "learning_style": profile.learning.preferred_style,
            "preferred_topics": profile.learning.preferred_topics,
            "struggling_topics": profile.learning.struggling_topics,
        }
        signals = await self.llm_extractor.extract_signals(
            user_message, ai_message, opts.visual_context, opts.lesson_context, hint
        )
        return signals_to_result(signals, now)

    def _apply_facts(self, profile: UserProfile, facts: List[Fact], now: int):
        """
        Apply merged facts to the profile sections.

        Returns:
            (identity changes to mirror, concept names nudged by knowledge facts)
        """
        identity_changes: Dict[str, Any] = {}
        touched = set()
        scalar_set = set()

        for fact in facts:
            upsert_fact_record(profile, fact, now)

            if fact.type == FactType.IDENTITY:
                if fact.key in ("language", "languages"):
                    languages = profile.identity.setdefault("languages", [])
                    if fact.value not in languages:
                        languages.append(fact.value)
                        identity_changes["languages"] = list(languages)
                elif ("identity", fact.key) not in scalar_set:
                    scalar_set.add(("identity", fact.key))
                    if profile.identity.get(fact.key) != fact.value:
                        profile.identity[fact.key] = fact.value
                        identity_changes[fact.key] = fact.value

            elif fact.type == FactType.PREFERENCE:
                if fact.key == "learning_style" and "learning_style" not in scalar_set:
                    profile.learning.preferred_style = fact.value
                    scalar_set.add("learning_style")
                elif fact.key == "explanation_depth" and "explanation_depth" not in scalar_set:
                    profile.communication.preferred_explanation_depth = fact.value
                    scalar_set.add("explanation_depth")
                elif fact.key == "preferred_topic" and fact.value not in profile.learning.preferred_topics:
                    profile.learning.preferred_topics.append(fact.value)

            elif fact.type == FactType.KNOWLEDGE:
                concept = canonical_concept_name(fact.value)
                if fact.key == "struggling_topic":
                    if fact.value not in profile.learning.struggling_topics:
                        profile.learning.struggling_topics.append(fact.value)
                    profile.knowledge_graph = self.graphs.nudge_mastery(
                        profile.knowledge_graph, concept, STRUGGLE_DELTA, "user reported struggle"
                    )
                    touched.add(concept)
                elif fact.key == "mastered_topic":
                    if fact.value not in profile.learning.mastered_concepts:
                        profile.learning.mastered_concepts.append(fact.value)
                    profile.knowledge_graph = self.graphs.nudge_mastery(
                        profile.knowledge_graph, concept, MASTERY_DELTA, "user reported mastery"
                    )
                    touched.add(concept)

        return identity_changes, touched

    def _apply_ephemerals(self, profile: UserProfile, ephemerals: List[EphemeralState], now: int):
        for state in ephemerals:
            ttl = min(state.ttl_seconds, MAX_EPHEMERAL_TTL_SECONDS)
            profile.sessions.apply(EphemeralState.create(state.key, state.value, ttl, now))

    def _apply_visual(self, profile: UserProfile, visual: Optional[Dict[str, Any]], now: int):
        if not visual:
            return
        mood = visual.get("emotional_state")
        if isinstance(mood, dict) and (mood.get("emotion") or mood.get("dominant_emotion")):
            profile.emotional.add_mood(MoodEntry(
                emotion=mood.get("emotion") or mood.get("dominant_emotion"),
                confidence=float(mood.get("confidence") or 0.0),
                dominant_emotion=mood.get("dominant_emotion"),
                raw_emotions=mood.get("raw_emotions"),
                timestamp=now,
            ))
        if visual.get("age"):
            profile.visual.age = visual["age"]
        if visual.get("gender"):
            profile.visual.gender = visual["gender"]
        profile.visual.last_updated = now

    def _apply_lesson(self, profile: UserProfile, lesson: Optional[Dict[str, Any]]):
        title = (lesson or {}).get("title")
        if title and title not in profile.learning.preferred_topics:
            profile.learning.preferred_topics.append(title)

    def _apply_turn(
        self,
        profile: UserProfile,
        user_message: str,
        ai_message: str,
        opts: IngestOptions,
        touched: set,
        now: int,
    ):
        """Record a non-empty user turn and nudge the concepts it mentions."""
        if not user_message.strip():
            return

        emotion = detect_emotional_state(profile.conversation, user_message)
        profile.conversation.add_interaction(
            user_message,
            ai_message,
            {"emotion": emotion.emotion, "current_topic": opts.current_topic},
            timestamp=now,
        )
        profile.total_interactions += 1
        profile.sessions.record_interaction(now)

        text = f"{user_message} {ai_message}".lower()
        mentioned = [name for name in profile.knowledge_graph.nodes if name.lower() in text]
        if opts.current_topic:
            mentioned.append(canonical_concept_name(opts.current_topic))

        lowered = user_message.lower()
        delta = CONFUSION_DELTA if any(cue in lowered for cue in CONFUSION_CUES) else INTERACTION_DELTA
        for concept in dict.fromkeys(mentioned):
            if concept in touched:
                continue
            profile.knowledge_graph = self.graphs.nudge_mastery(
                profile.knowledge_graph, concept, delta, "Chat interaction"
            )

    async def _mirror_identity(self, user_id: str, changes: Dict[str, Any]):
        if self.identity_index is None:
            return
        try:
            await asyncio.wait_for(
                self.identity_index.upsert_identity(user_id, changes),
                timeout=self.config.context_timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"⚠️ [Aggregator] Identity index update failed: {e}")

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def _optional(self, coro, default, label: str):
        """Await an optional context source; timeouts and errors degrade to default."""
        try:
            return await asyncio.wait_for(coro, timeout=self.config.context_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ [Aggregator] {label} timed out after {self.config.context_timeout_seconds}s")
        except Exception as e:
            logger.warning(f"⚠️ [Aggregator] {label} unavailable: {e}")
        return default

    async def _fetch_indexed_identity(self, user_id: str) -> Dict[str, Any]:
        if self.identity_index is None:
            return {}
        return await self._optional(self.identity_index.fetch_identity(user_id), {}, "Identity index")

    async def build_active_context_snippet(self, user_id: str) -> str:
        try:
            profile = await self._load(user_id)
        except Exception as e:
            logger.warning(f"⚠️ [Aggregator] Could not load profile for snippet: {e}")
            return ""
        return render_context_snippet(profile)

    async def get_active_personalization(self, user_id: str) -> ActivePersonalization:
        """Identity (on-profile merged with the index), preferences, knowledge, live ephemerals and unexpired ledger facts."""
        try:
            profile, indexed = await asyncio.gather(
                self._load(user_id),
                self._fetch_indexed_identity(user_id),
            )
        except Exception as e:
            logger.warning(f"⚠️ [Aggregator] Could not load personalization for user {user_id[:20]}...: {e}")
            return ActivePersonalization()

        now = self.clock()
        return ActivePersonalization(
            identity={**profile.identity, **indexed},
            preferences={
                "learning_style": profile.learning.preferred_style,
                "explanation_depth": profile.communication.preferred_explanation_depth,
                "preferred_topics": list(profile.learning.preferred_topics),
            },
            knowledge={
                "mastered_topics": list(profile.learning.mastered_concepts),
                "struggling_topics": list(profile.learning.struggling_topics),
            },
            ephemerals=profile.sessions.live_values(now),
            facts=[asdict(record) for record in live_facts(profile, now_ms=now)],
            snapshot=render_context_snippet(profile),
        )

    async def build_prompt_context(self, user_id: str, prompt: str) -> PromptContext:
        """
        Gather profile, retrieval and indexed identity concurrently, then
        derive the per-prompt personalization bundle.
        """
        async def load_profile():
            try:
                return await self._load(user_id)
            except Exception as e:
                logger.warning(f"⚠️ [Aggregator] Profile unavailable, using defaults: {e}")
                return default_profile(user_id, self.clock())

        retrieval = (
            self._optional(
                self.retriever.get_relevant_context(prompt, self.config.retrieval_top_k), "", "Retrieval"
            )
            if self.retriever is not None
            else asyncio.sleep(0, result="")
        )

        profile, retrieved, indexed = await asyncio.gather(
            load_profile(),
            retrieval,
            self._fetch_indexed_identity(user_id),
        )

        now = self.clock()
        window = profile.conversation
        ephemerals = profile.sessions.live_values(now)

        observed_style = get_user_learning_style(window)
        learning_style = observed_style if observed_style != "unknown" else profile.learning.preferred_style

        related = None
        if ephemerals["current_subject"]:
            related = self.graphs.get_related_concepts(
                profile.knowledge_graph, canonical_concept_name(ephemerals["current_subject"])
            )

        return PromptContext(
            user_id=user_id,
            snapshot=render_context_snippet(profile),
            identity={**profile.identity, **indexed},
            conversation_summary=summarize_context(window),
            emotional_state=detect_emotional_state(window, prompt),
            learning_style=learning_style,
            knowledge_gaps=self.graphs.get_knowledge_gaps(profile.knowledge_graph),
            gap_types=identify_knowledge_gaps(prompt),
            difficulty=self.difficulty.assess(profile),
            recommendations=generate_recommendations(profile, profile.sessions.session_interactions),
            retrieved_context=retrieved,
            current_subject=ephemerals["current_subject"],
            current_task=ephemerals["current_task"],
            related_concepts=related,
        )
