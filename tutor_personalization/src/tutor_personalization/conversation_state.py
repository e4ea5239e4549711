"""
Conversational State Tracker

Keeps a bounded window of recent interactions per user and derives
emotional-state and learning-style classifications from it on demand.
"""

import re
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, Iterator, List, Optional

from tutor_personalization.facts import system_clock_ms

DEFAULT_WINDOW_CAPACITY = 10

SUMMARY_WINDOW = 5
LEARNING_STYLE_WINDOW = 8
LEARNING_STYLE_MIN_INTERACTIONS = 3

NO_HISTORY_SUMMARY = "New user - no previous interactions."

# (tag, keywords) checked independently; one message may add several tags
TOPIC_CUES = [
    ("planetary science", ("mars", "planet")),
    ("astrophysics", ("black hole", "space")),
    ("learning focused", ("study", "learn")),
    ("needs assistance", ("help", "stuck")),
]

MOOD_CUES = [
    ("confused", ("confused", "stuck", "?")),
    ("excited", ("exciting", "amazing", "!")),
    ("engaged", ("yes", "ready")),
]

FRUSTRATION_KEYWORDS = ("stuck", "confused", "help", "don't understand", "why")
EXCITEMENT_KEYWORDS = ("amazing", "exciting", "wow", "cool")
ENGAGEMENT_KEYWORDS = ("yes", "ready", "more", "teach me", "tell me")
UNCERTAINTY_KEYWORDS = ("maybe", "not sure", "think")
HELP_KEYWORD = "help"
SHORT_REPLY_CHARS = 10


@dataclass
class InteractionRecord:
    timestamp: int
    user_message: str
    ai_response: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EmotionalState:
    emotion: str
    confidence: float


class ConversationWindow:
    """Fixed-capacity FIFO of recent interactions; the oldest is evicted on overflow."""

    def __init__(self, capacity: int = DEFAULT_WINDOW_CAPACITY, interactions: Optional[List[InteractionRecord]] = None):
        self.capacity = capacity
        self._interactions: Deque[InteractionRecord] = deque(interactions or [], maxlen=capacity)

    def add_interaction(
        self,
        user_message: str,
        ai_response: str = "",
        metadata: Optional[Dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> InteractionRecord:
        record = InteractionRecord(
            timestamp=system_clock_ms() if timestamp is None else timestamp,
            user_message=user_message or "",
            ai_response=ai_response or "",
            metadata=dict(metadata or {}),
        )
        self._interactions.append(record)
        return record

    def recent(self, count: int = SUMMARY_WINDOW) -> List[InteractionRecord]:
        if count <= 0:
            return []
        return list(self._interactions)[-count:]

    def __len__(self) -> int:
        return len(self._interactions)

    def __iter__(self) -> Iterator[InteractionRecord]:
        return iter(list(self._interactions))

    def to_list(self) -> List[Dict[str, Any]]:
        return [asdict(record) for record in self._interactions]

    @classmethod
    def from_list(cls, data: Optional[List[Dict[str, Any]]], capacity: int = DEFAULT_WINDOW_CAPACITY) -> "ConversationWindow":
        records = [
            InteractionRecord(
                timestamp=int(item.get("timestamp", 0)),
                user_message=item.get("user_message", ""),
                ai_response=item.get("ai_response", ""),
                metadata=dict(item.get("metadata") or {}),
            )
            for item in (data or [])
            if isinstance(item, dict)
        ]
        return cls(capacity=capacity, interactions=records)


def _contains_any(text: str, keywords) -> bool:
    return any(keyword in text for keyword in keywords)


def _unique(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def summarize_context(window: ConversationWindow) -> str:
    """Short digest of the last five interactions: topics, latest mood cue, communication style."""
    recent = window.recent(SUMMARY_WINDOW)
    if not recent:
        return NO_HISTORY_SUMMARY

    topics: List[str] = []
    moods: List[str] = []
    patterns: List[str] = []

    for interaction in recent:
        msg = interaction.user_message.lower()

        for tag, keywords in TOPIC_CUES:
            if _contains_any(msg, keywords):
                topics.append(tag)

        for mood, keywords in MOOD_CUES:
            if _contains_any(msg, keywords):
                moods.append(mood)

        if len(msg) < SHORT_REPLY_CHARS:
            patterns.append("brief responses")
        if "teach me" in msg or "explain" in msg:
            patterns.append("wants detailed explanations")

    summary = f"Recent {len(recent)} interactions. "
    if topics:
        summary += f"Topics: {', '.join(_unique(topics))}. "
    if moods:
        summary += f"User seems {moods[-1]}. "
    if patterns:
        summary += f"Communication style: {', '.join(_unique(patterns))}."
    return summary.strip()


def detect_emotional_state(window: ConversationWindow, message: str) -> EmotionalState:
    """
    Classify the current message; exactly one rule fires.

    A very short reply right after a help request is read as still_confused
    before any keyword rule is considered.
    """
    msg = (message or "").lower()

    previous = window.recent(1)
    if previous and HELP_KEYWORD in previous[0].user_message.lower() and len(msg) < SHORT_REPLY_CHARS:
        return EmotionalState("still_confused", 0.8)

    if _contains_any(msg, FRUSTRATION_KEYWORDS):
        return EmotionalState("frustrated", 0.8)
    if _contains_any(msg, EXCITEMENT_KEYWORDS) or re.search(r"!{2,}", msg):
        return EmotionalState("excited", 0.9)
    if _contains_any(msg, ENGAGEMENT_KEYWORDS):
        return EmotionalState("engaged", 0.7)
    if _contains_any(msg, UNCERTAINTY_KEYWORDS) or re.search(r"\?{2,}", msg):
        return EmotionalState("uncertain", 0.6)
    return EmotionalState("neutral", 0.5)


def get_user_learning_style(window: ConversationWindow) -> str:
    """detail_seeker, quick_learner, visual_learner, or unknown with under three interactions; ties lean to detail_seeker."""
    recent = window.recent(LEARNING_STYLE_WINDOW)
    if len(recent) < LEARNING_STYLE_MIN_INTERACTIONS:
        return "unknown"

    detail = quick = visual = 0
    for interaction in recent:
        msg = interaction.user_message.lower()
        if _contains_any(msg, ("explain", "how", "why", "detail", "more about")):
            detail += 1
        if len(msg) < 15 and _contains_any(msg, ("yes", "ok", "got it")):
            quick += 1
        if _contains_any(msg, ("show", "picture", "example", "diagram")):
            visual += 1

    if detail >= quick and detail >= visual:
        return "detail_seeker"
    if quick >= detail and quick >= visual:
        return "quick_learner"
    if visual > 0:
        return "visual_learner"
    return "balanced"


def identify_knowledge_gaps(message: str) -> List[str]:
    """Keyword classification of what kind of gap a message signals."""
    msg = (message or "").lower()
    gaps: List[str] = []
    if "confused" in msg or "don't understand" in msg:
        gaps.append("conceptual_understanding")
    if "how" in msg or "why" in msg:
        gaps.append("procedural_knowledge")
    return gaps
