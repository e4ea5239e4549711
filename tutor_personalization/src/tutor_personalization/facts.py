"""
Fact and Ephemeral State Data Model

Durable facts (identity, preference, knowledge) survive across sessions until
their TTL lapses. Ephemeral state (current subject/task) is session-scoped and
must be treated as absent once expired.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

# Epoch-milliseconds clock; injectable wherever expiry is evaluated
Clock = Callable[[], int]

EPHEMERAL_KEYS = ("current_subject", "current_task")

SUBJECT_TTL_SECONDS = 2 * 24 * 3600
TASK_TTL_SECONDS = 24 * 3600

# Upper bound applied when ephemeral state is written to a profile
MAX_EPHEMERAL_TTL_SECONDS = 2 * 24 * 3600

DEFAULT_TTL_DAYS = {
    "name": 365,
    "email": 365,
    "pronouns": 365,
    "age": 365,
    "nationality": 365,
    "timezone": 365,
    "locale": 365,
    "language": 365,
    "learning_style": 180,
    "explanation_depth": 120,
    "preferred_topic": 240,
    "struggling_topic": 90,
    "mastered_topic": 90,
}

DEFAULT_EPHEMERAL_TTL_SECONDS = {
    "current_subject": SUBJECT_TTL_SECONDS,
    "current_task": TASK_TTL_SECONDS,
}


def system_clock_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class FactType(str, Enum):
    """Kinds of durable fact."""
    IDENTITY = "identity"
    PREFERENCE = "preference"
    KNOWLEDGE = "knowledge"


@dataclass
class Fact:
    """A durable, typed attribute extracted from a conversational turn."""
    type: FactType
    key: str
    value: str
    confidence: float = 0.5
    importance: float = 0.5
    ttl_days: int = 180

    def signature(self) -> Tuple[str, str, str]:
        """Case-insensitive identity of the fact, used for deduplication."""
        return (self.type.value.lower(), self.key.lower(), str(self.value).lower())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        return data


@dataclass
class EphemeralState:
    """Session-scoped context value with an absolute expiry."""
    key: str
    value: str
    ttl_seconds: int
    expires_at_ms: int

    @classmethod
    def create(cls, key: str, value: str, ttl_seconds: int, now_ms: int) -> "EphemeralState":
        return cls(key=key, value=value, ttl_seconds=ttl_seconds, expires_at_ms=now_ms + ttl_seconds * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["EphemeralState"]:
        if not data or not data.get("value"):
            return None
        return cls(
            key=data.get("key", ""),
            value=str(data["value"]),
            ttl_seconds=int(data.get("ttl_seconds", 0)),
            expires_at_ms=int(data.get("expires_at_ms", 0)),
        )


def is_ephemeral_live(state: Optional[EphemeralState], now_ms: int) -> bool:
    """Whether an ephemeral value may still be used at time now_ms."""
    if state is None:
        return False
    return now_ms <= state.expires_at_ms


@dataclass
class ExtractionResult:
    """Candidate facts and ephemeral state produced by one extractor."""
    facts: List[Fact] = field(default_factory=list)
    ephemerals: List[EphemeralState] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.facts and not self.ephemerals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facts": [f.to_dict() for f in self.facts],
            "ephemerals": [e.to_dict() for e in self.ephemerals],
        }
