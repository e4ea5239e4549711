"""
User Profile

Aggregate root for everything known about one learner: identity, learning
and communication preferences, mood history, visual signals, session
ephemerals, the knowledge graph, the recent interaction window and the
durable fact ledger.

Profiles are loaded, mutated in-process during one ingestion call and then
saved as a whole; profile_to_dict/profile_from_dict define the stored shape.
"""

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from tutor_personalization.conversation_state import ConversationWindow
from tutor_personalization.facts import (
    EPHEMERAL_KEYS,
    EphemeralState,
    Fact,
    FactType,
    is_ephemeral_live,
    system_clock_ms,
)
from tutor_personalization.knowledge_graph import KnowledgeGraph, graph_from_dict, graph_to_dict

logger = logging.getLogger(__name__)

MOOD_HISTORY_CAP = 20
DOMINANT_MOOD_WINDOW = 10
DAY_MS = 24 * 3600 * 1000
SESSION_IDLE_MS = 30 * 60 * 1000


@dataclass
class LearningProfile:
    preferred_style: str = "unknown"
    preferred_topics: List[str] = field(default_factory=list)
    struggling_topics: List[str] = field(default_factory=list)
    mastered_concepts: List[str] = field(default_factory=list)


@dataclass
class CommunicationProfile:
    preferred_explanation_depth: Optional[str] = None


@dataclass
class MoodEntry:
    emotion: str
    confidence: float = 0.0
    dominant_emotion: Optional[str] = None
    raw_emotions: Optional[Dict[str, Any]] = None
    timestamp: int = 0

    @property
    def label(self) -> str:
        return self.dominant_emotion or self.emotion


@dataclass
class EmotionalProfile:
    mood_history: List[MoodEntry] = field(default_factory=list)
    dominant_mood: str = "neutral"

    def add_mood(self, entry: MoodEntry):
        """Append to the capped history and recompute the plurality mood over the last ten entries."""
        self.mood_history.append(entry)
        if len(self.mood_history) > MOOD_HISTORY_CAP:
            self.mood_history = self.mood_history[-MOOD_HISTORY_CAP:]

        counts = Counter(m.label for m in self.mood_history[-DOMINANT_MOOD_WINDOW:] if m.label)
        if counts:
            self.dominant_mood = counts.most_common(1)[0][0]


@dataclass
class VisualProfile:
    age: Optional[Any] = None
    gender: Optional[str] = None
    last_updated: Optional[int] = None


@dataclass
class SessionProfile:
    """Session-scoped ephemerals (each with its own expiry) and activity counters."""
    current_subject: Optional[EphemeralState] = None
    current_task: Optional[EphemeralState] = None
    session_interactions: int = 0
    last_interaction_at: Optional[int] = None

    def record_interaction(self, now_ms: int):
        """Count an interaction, starting a new session after a long idle gap."""
        if self.last_interaction_at is None or now_ms - self.last_interaction_at > SESSION_IDLE_MS:
            self.session_interactions = 0
        self.session_interactions += 1
        self.last_interaction_at = now_ms

    @property
    def ephemeral_expiry(self) -> Optional[int]:
        expiries = [s.expires_at_ms for s in (self.current_subject, self.current_task) if s is not None]
        return max(expiries) if expiries else None

    def apply(self, state: EphemeralState):
        if state.key in EPHEMERAL_KEYS:
            setattr(self, state.key, state)

    def live_values(self, now_ms: int) -> Dict[str, Optional[str]]:
        """Ephemeral values still live at now_ms; expired ones read as None."""
        return {
            "current_subject": self.current_subject.value if is_ephemeral_live(self.current_subject, now_ms) else None,
            "current_task": self.current_task.value if is_ephemeral_live(self.current_task, now_ms) else None,
        }


@dataclass
class FactRecord:
    """A durable fact as stored in the profile ledger, with its TTL resolved."""
    type: str
    key: str
    value: str
    confidence: float
    importance: float
    ttl_days: int
    recorded_at: int
    expires_at: int

    @classmethod
    def from_fact(cls, fact: Fact, now_ms: int) -> "FactRecord":
        return cls(
            type=fact.type.value,
            key=fact.key,
            value=fact.value,
            confidence=fact.confidence,
            importance=fact.importance,
            ttl_days=fact.ttl_days,
            recorded_at=now_ms,
            expires_at=now_ms + fact.ttl_days * DAY_MS,
        )

    def signature(self):
        return (self.type.lower(), self.key.lower(), str(self.value).lower())


@dataclass
class UserProfile:
    user_id: str
    identity: Dict[str, Any] = field(default_factory=dict)
    learning: LearningProfile = field(default_factory=LearningProfile)
    communication: CommunicationProfile = field(default_factory=CommunicationProfile)
    emotional: EmotionalProfile = field(default_factory=EmotionalProfile)
    visual: VisualProfile = field(default_factory=VisualProfile)
    sessions: SessionProfile = field(default_factory=SessionProfile)
    knowledge_graph: Optional[KnowledgeGraph] = None
    conversation: ConversationWindow = field(default_factory=ConversationWindow)
    total_interactions: int = 0
    facts: List[FactRecord] = field(default_factory=list)
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self):
        if self.knowledge_graph is None:
            self.knowledge_graph = KnowledgeGraph(user_id=self.user_id)


def default_profile(user_id: str, now_ms: Optional[int] = None) -> UserProfile:
    """Well-formed empty profile for a user seen for the first time."""
    now_ms = system_clock_ms() if now_ms is None else now_ms
    return UserProfile(
        user_id=user_id,
        knowledge_graph=KnowledgeGraph(user_id=user_id, last_updated=now_ms),
        created_at=now_ms,
        updated_at=now_ms,
    )


def upsert_fact_record(profile: UserProfile, fact: Fact, now_ms: int) -> FactRecord:
    """Record a fact in the ledger, refreshing an existing record with the same signature."""
    record = FactRecord.from_fact(fact, now_ms)
    for i, existing in enumerate(profile.facts):
        if existing.signature() == record.signature():
            profile.facts[i] = record
            return record
    profile.facts.append(record)
    return record


def prune_expired_facts(profile: UserProfile, now_ms: Optional[int] = None) -> int:
    """
    Drop ledger records whose TTL has lapsed.

    Returns:
        Number of records removed
    """
    now_ms = system_clock_ms() if now_ms is None else now_ms
    kept = [record for record in profile.facts if record.expires_at > now_ms]
    removed = len(profile.facts) - len(kept)
    if removed:
        profile.facts = kept
        logger.info(f"🧹 [UserProfile] Pruned {removed} expired fact(s) for user {profile.user_id[:20]}")
    return removed


def live_facts(profile: UserProfile, fact_type: Optional[FactType] = None, now_ms: Optional[int] = None) -> List[FactRecord]:
    now_ms = system_clock_ms() if now_ms is None else now_ms
    return [
        record for record in profile.facts
        if record.expires_at > now_ms and (fact_type is None or record.type == fact_type.value)
    ]


def profile_to_dict(profile: UserProfile) -> Dict[str, Any]:
    """Convert a profile to a JSON-compatible dict."""
    return {
        "user_id": profile.user_id,
        "identity": dict(profile.identity),
        "learning": asdict(profile.learning),
        "communication": asdict(profile.communication),
        "emotional": asdict(profile.emotional),
        "visual": asdict(profile.visual),
        "sessions": {
            "current_subject": profile.sessions.current_subject.to_dict() if profile.sessions.current_subject else None,
            "current_task": profile.sessions.current_task.to_dict() if profile.sessions.current_task else None,
            "ephemeral_expiry": profile.sessions.ephemeral_expiry,
            "session_interactions": profile.sessions.session_interactions,
            "last_interaction_at": profile.sessions.last_interaction_at,
        },
        "knowledge_graph": graph_to_dict(profile.knowledge_graph),
        "conversation": profile.conversation.to_list(),
        "total_interactions": profile.total_interactions,
        "facts": [asdict(record) for record in profile.facts],
        "created_at": profile.created_at,
        "updated_at": profile.updated_at,
    }


def profile_from_dict(data: Optional[Dict[str, Any]], user_id: str = "") -> UserProfile:
    """Rebuild a profile from profile_to_dict output, filling any missing section with defaults."""
    if not data:
        return default_profile(user_id)

    user_id = data.get("user_id") or user_id
    learning = data.get("learning") or {}
    emotional = data.get("emotional") or {}
    visual = data.get("visual") or {}
    sessions = data.get("sessions") or {}

    identity = dict(data.get("identity") or {})
    if "languages" in identity and not isinstance(identity["languages"], list):
        identity["languages"] = [str(identity["languages"])]

    return UserProfile(
        user_id=user_id,
        identity=identity,
        learning=LearningProfile(
            preferred_style=learning.get("preferred_style") or "unknown",
            preferred_topics=list(learning.get("preferred_topics") or []),
            struggling_topics=list(learning.get("struggling_topics") or []),
            mastered_concepts=list(learning.get("mastered_concepts") or []),
        ),
        communication=CommunicationProfile(
            preferred_explanation_depth=(data.get("communication") or {}).get("preferred_explanation_depth"),
        ),
        emotional=EmotionalProfile(
            mood_history=[
                MoodEntry(
                    emotion=m.get("emotion") or "",
                    confidence=float(m.get("confidence") or 0.0),
                    dominant_emotion=m.get("dominant_emotion"),
                    raw_emotions=m.get("raw_emotions"),
                    timestamp=int(m.get("timestamp") or 0),
                )
                for m in emotional.get("mood_history") or []
            ][-MOOD_HISTORY_CAP:],
            dominant_mood=emotional.get("dominant_mood") or "neutral",
        ),
        visual=VisualProfile(
            age=visual.get("age"),
            gender=visual.get("gender"),
            last_updated=visual.get("last_updated"),
        ),
        sessions=SessionProfile(
            current_subject=EphemeralState.from_dict(sessions.get("current_subject")),
            current_task=EphemeralState.from_dict(sessions.get("current_task")),
            session_interactions=int(sessions.get("session_interactions") or 0),
            last_interaction_at=sessions.get("last_interaction_at"),
        ),
        knowledge_graph=graph_from_dict(data.get("knowledge_graph"), user_id),
        conversation=ConversationWindow.from_list(data.get("conversation")),
        total_interactions=int(data.get("total_interactions") or 0),
        facts=[FactRecord(**record) for record in data.get("facts") or []],
        created_at=int(data.get("created_at") or 0),
        updated_at=int(data.get("updated_at") or 0),
    )
