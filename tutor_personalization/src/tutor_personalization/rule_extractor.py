"""
Rule-Based Fact Extractor

Deterministic pattern matching over a conversational turn. Produces durable
facts with confidence, importance and TTL suggestions, plus ephemeral
session state. Absence of a match is simply absence of a fact; nothing here
raises.
"""

import re
from typing import List, Optional, Sequence

from tutor_personalization.facts import (
    SUBJECT_TTL_SECONDS,
    TASK_TTL_SECONDS,
    EphemeralState,
    ExtractionResult,
    Fact,
    FactType,
    system_clock_ms,
)

# Tried in priority order; the first hit wins
NAME_PATTERNS = [
    re.compile(r"\bmy name is\s+([A-Za-z][A-Za-z '\-]{1,40})\b", re.IGNORECASE),
    re.compile(r"\bi am\s+([A-Za-z][A-Za-z '\-]{1,40})\b", re.IGNORECASE),
]

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

PRONOUN_PATTERNS = [
    (re.compile(r"\bmy pronouns are\s+he/him\b", re.IGNORECASE), "he/him"),
    (re.compile(r"\bmy pronouns are\s+she/her\b", re.IGNORECASE), "she/her"),
    (re.compile(r"\bmy pronouns are\s+they/them\b", re.IGNORECASE), "they/them"),
]

VISUAL_STYLE = re.compile(r"visual( learner| explanations)?")
DETAILED_STYLE = re.compile(r"detailed|detail(ed)? explanations?")
CONCISE_STYLE = re.compile(r"concise|short|brief explanations?")
EXAMPLES_DEPTH = re.compile(r"prefer (more )?examples|show me examples")

LIKE_PATTERN = re.compile(r"i (really )?(like|love|enjoy) ([a-z\s\-]{3,40})")
STRUGGLE_PATTERN = re.compile(r"(struggling|confused|stuck) (with|on) ([a-z\s\-]{3,40})")

FOCUS_PATTERN = re.compile(r"(focus on|let'?s focus on|talk about|study) ([a-z\s\-]{3,50})")
GOAL_PATTERN = re.compile(r"(my|our) (goal|task) (is|for now|today) to ([a-z\s\-]{3,80})")


def normalize(text: Optional[str]) -> str:
    """Collapse runs of whitespace and trim."""
    return re.sub(r"\s+", " ", str(text or "")).strip()


def extract_identity_facts(user_message: str, ai_message: str = "") -> List[Fact]:
    """Name, email and pronouns from the combined user/assistant text."""
    combined = f"{normalize(user_message)}\n{normalize(ai_message)}"
    facts: List[Fact] = []

    for pattern in NAME_PATTERNS:
        match = pattern.search(combined)
        if match and match.group(1):
            value = normalize(match.group(1))
            facts.append(Fact(FactType.IDENTITY, "name", value, confidence=0.95, importance=0.9, ttl_days=365))
            break

    email = EMAIL_PATTERN.search(combined)
    if email:
        facts.append(Fact(FactType.IDENTITY, "email", email.group(0), confidence=0.98, importance=0.9, ttl_days=365))

    for pattern, value in PRONOUN_PATTERNS:
        if pattern.search(combined):
            facts.append(Fact(FactType.IDENTITY, "pronouns", value, confidence=0.9, importance=0.6, ttl_days=365))
            break

    return facts


def extract_preference_facts(user_message: str) -> List[Fact]:
    """Learning-style and explanation-depth cues; checks are independent."""
    msg = normalize(user_message).lower()
    facts: List[Fact] = []

    if VISUAL_STYLE.search(msg):
        facts.append(Fact(FactType.PREFERENCE, "learning_style", "visual_learner", confidence=0.8, importance=0.7, ttl_days=180))
    if DETAILED_STYLE.search(msg):
        facts.append(Fact(FactType.PREFERENCE, "learning_style", "detail_seeker", confidence=0.7, importance=0.5, ttl_days=180))
    if CONCISE_STYLE.search(msg):
        facts.append(Fact(FactType.PREFERENCE, "learning_style", "quick_learner", confidence=0.7, importance=0.5, ttl_days=180))

    if EXAMPLES_DEPTH.search(msg):
        facts.append(Fact(FactType.PREFERENCE, "explanation_depth", "examples", confidence=0.7, importance=0.5, ttl_days=120))

    return facts


def extract_topic_signals(user_message: str, known_topics: Optional[Sequence[str]] = None) -> List[Fact]:
    """Liked topics, struggling topics and mentions of known topics."""
    msg = normalize(user_message).lower()
    facts: List[Fact] = []

    like = LIKE_PATTERN.search(msg)
    if like and like.group(3):
        value = like.group(3).strip()
        if len(value) >= 3:
            facts.append(Fact(FactType.PREFERENCE, "preferred_topic", value, confidence=0.7, importance=0.6, ttl_days=240))

    struggle = STRUGGLE_PATTERN.search(msg)
    if struggle and struggle.group(3):
        value = struggle.group(3).strip()
        if len(value) >= 3:
            facts.append(Fact(FactType.KNOWLEDGE, "struggling_topic", value, confidence=0.8, importance=0.8, ttl_days=90))

    for topic in known_topics or []:
        if topic and topic.lower() in msg:
            facts.append(Fact(FactType.PREFERENCE, "preferred_topic", topic, confidence=0.6, importance=0.4, ttl_days=240))

    return facts


def extract_ephemeral_state(user_message: str, now_ms: Optional[int] = None) -> List[EphemeralState]:
    """Current subject and current task, each with its own TTL."""
    msg = normalize(user_message).lower()
    now_ms = system_clock_ms() if now_ms is None else now_ms
    ephemerals: List[EphemeralState] = []

    focus = FOCUS_PATTERN.search(msg)
    if focus and focus.group(2).strip():
        ephemerals.append(EphemeralState.create("current_subject", focus.group(2).strip(), SUBJECT_TTL_SECONDS, now_ms))

    goal = GOAL_PATTERN.search(msg)
    if goal and goal.group(4).strip():
        ephemerals.append(EphemeralState.create("current_task", goal.group(4).strip(), TASK_TTL_SECONDS, now_ms))

    return ephemerals


def extract_facts(
    user_message: str,
    ai_message: str = "",
    known_topics: Optional[Sequence[str]] = None,
    now_ms: Optional[int] = None,
) -> ExtractionResult:
    """Run every rule family over one turn."""
    facts = (
        extract_identity_facts(user_message, ai_message)
        + extract_preference_facts(user_message)
        + extract_topic_signals(user_message, known_topics)
    )
    return ExtractionResult(facts=facts, ephemerals=extract_ephemeral_state(user_message, now_ms))
