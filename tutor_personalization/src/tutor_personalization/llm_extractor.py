"""
LLM-Backed Fact Extractor

Asks a text-generation provider for strict JSON describing identity,
preferences, knowledge and ephemeral state, validates it against pydantic
schemas with safe defaults, and flattens it into facts the merger
understands.

Every failure (provider error, unparseable output, schema mismatch) degrades
to "no new signals"; nothing here raises to the caller.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tutor_personalization.facts import (
    DEFAULT_EPHEMERAL_TTL_SECONDS,
    DEFAULT_TTL_DAYS,
    EphemeralState,
    ExtractionResult,
    Fact,
    FactType,
    system_clock_ms,
)

logger = logging.getLogger(__name__)

# LLM output is probabilistic; rule-based facts carry higher confidence
DEFAULT_LLM_CONFIDENCE = 0.6
DEFAULT_LLM_IMPORTANCE = {
    FactType.IDENTITY: 0.8,
    FactType.PREFERENCE: 0.5,
    FactType.KNOWLEDGE: 0.7,
}

IDENTITY_SCALAR_KEYS = ("name", "email", "pronouns", "age", "nationality", "timezone", "locale")

SIGNALS_PROMPT = """You are a personalization extraction model. Extract identity, preferences, knowledge, and ephemeral state from the turn and optional contexts.
Return ONLY JSON with keys: identity, preferences, knowledge, ephemerals.

Schema:
{{
  "identity": {{"name":string?, "email":string?, "pronouns":string?, "age":number|string?, "nationality":string?, "timezone":string?, "locale":string?, "languages": string[]?}},
  "preferences": {{"learning_style":string?, "explanation_depth":string?, "preferred_topics": string[]?}},
  "knowledge": {{"mastered_topics": string[]?, "struggling_topics": string[]?}},
  "ephemerals": {{"current_subject": string?, "current_task": string?}}
}}

Guidelines:
- Be conservative; only output when reasonably certain.
- Use visual and lesson context hints when present.
- Age numeric if confident, else string.
- Languages as array of strings. If single language detected, still use array.

USER_MESSAGE: {user}
ASSISTANT_MESSAGE: {ai}
VISUAL_CONTEXT: {visual}
LESSON_CONTEXT: {lesson}
PROFILE_HINT: {hint}"""

FACTS_PROMPT = """You are an information extraction model. Extract facts and ephemeral state from a chat turn.
Return ONLY JSON with two arrays: facts and ephemerals.
Schema:
{{
  "facts": [
    {{"type":"identity|preference|knowledge","key":string,"value":string,"confidence":0-1,"importance":0-1,"ttlDays":integer}}
  ],
  "ephemerals": [
    {{"key":"current_subject|current_task","value":string,"ttlSeconds":integer}}
  ]
}}
Guidelines:
- Use conservative confidence unless explicit.
- Name/email/pronouns are identity; learning_style/explanation_depth/preferred_topic are preferences; struggling_topic/mastered_topic are knowledge.
- ttlDays: name/email 365, learning_style 180, preferred_topic 240, struggling_topic 90.
- ephemerals: current_subject 2 days (172800), current_task 1 day (86400).
- Also extract identity keys if present: name, email, pronouns, age, nationality, timezone, locale, language(s).
- For languages, emit separate facts with key="language" for each language detected.
- Keep arrays if none found: [].

USER_MESSAGE: {user}
ASSISTANT_MESSAGE: {ai}
PROFILE_HINT: {hint}"""


def _as_string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class IdentitySignals(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    pronouns: Optional[str] = None
    age: Optional[Union[int, str]] = None
    nationality: Optional[str] = None
    timezone: Optional[str] = None
    locale: Optional[str] = None
    languages: List[str] = Field(default_factory=list)

    @field_validator("name", "email", "pronouns", "nationality", "timezone", "locale", mode="before")
    @classmethod
    def _text(cls, v):
        return _optional_text(v)

    @field_validator("age", mode="before")
    @classmethod
    def _age(cls, v):
        if isinstance(v, float) and v.is_integer():
            return int(v)
        if isinstance(v, (int, str)) or v is None:
            return v if v != "" else None
        return str(v)

    @field_validator("languages", mode="before")
    @classmethod
    def _languages(cls, v):
        # A single language may come back as a bare string
        return _as_string_list(v)


class PreferenceSignals(BaseModel):
    model_config = ConfigDict(extra="ignore")

    learning_style: Optional[str] = None
    explanation_depth: Optional[str] = None
    preferred_topics: List[str] = Field(default_factory=list)

    @field_validator("learning_style", "explanation_depth", mode="before")
    @classmethod
    def _text(cls, v):
        return _optional_text(v)

    @field_validator("preferred_topics", mode="before")
    @classmethod
    def _topics(cls, v):
        return _as_string_list(v)


class KnowledgeSignals(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mastered_topics: List[str] = Field(default_factory=list)
    struggling_topics: List[str] = Field(default_factory=list)

    @field_validator("mastered_topics", "struggling_topics", mode="before")
    @classmethod
    def _topics(cls, v):
        return _as_string_list(v)


class EphemeralSignals(BaseModel):
    model_config = ConfigDict(extra="ignore")

    current_subject: Optional[str] = None
    current_task: Optional[str] = None

    @field_validator("current_subject", "current_task", mode="before")
    @classmethod
    def _text(cls, v):
        return _optional_text(v)


class PersonalizationSignals(BaseModel):
    """Structured extraction output; every section defaults to empty."""

    identity: IdentitySignals = Field(default_factory=IdentitySignals)
    preferences: PreferenceSignals = Field(default_factory=PreferenceSignals)
    knowledge: KnowledgeSignals = Field(default_factory=KnowledgeSignals)
    ephemerals: EphemeralSignals = Field(default_factory=EphemeralSignals)

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "PersonalizationSignals":
        """Validate section by section so one malformed section does not sink the rest."""
        payload = payload if isinstance(payload, dict) else {}
        sections = {
            "identity": IdentitySignals,
            "preferences": PreferenceSignals,
            "knowledge": KnowledgeSignals,
            "ephemerals": EphemeralSignals,
        }
        values = {}
        for name, model in sections.items():
            raw = payload.get(name)
            if not isinstance(raw, dict):
                values[name] = model()
                continue
            try:
                values[name] = model.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"⚠️ [LLMExtractor] Dropping invalid '{name}' section: {e.error_count()} error(s)")
                values[name] = model()
        return cls(**values)


class FactEntry(BaseModel):
    """One entry of the flat facts array."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)

    type: FactType
    key: str = Field(min_length=1)
    value: str = Field(min_length=1)
    confidence: Optional[float] = None
    importance: Optional[float] = None
    ttl_days: Optional[int] = Field(default=None, alias="ttlDays")

    @field_validator("type", "key", mode="before")
    @classmethod
    def _lower(cls, v):
        return str(v).strip().lower() if v is not None else v

    @field_validator("value", mode="before")
    @classmethod
    def _value(cls, v):
        return "" if v is None else str(v)

    @field_validator("confidence", "importance", mode="after")
    @classmethod
    def _clamp(cls, v):
        return None if v is None else max(0.0, min(1.0, v))

    def to_fact(self) -> Fact:
        return Fact(
            type=self.type,
            key=self.key,
            value=self.value,
            confidence=DEFAULT_LLM_CONFIDENCE if self.confidence is None else self.confidence,
            importance=DEFAULT_LLM_IMPORTANCE[self.type] if self.importance is None else self.importance,
            ttl_days=self.ttl_days if self.ttl_days and self.ttl_days > 0 else DEFAULT_TTL_DAYS.get(self.key, 180),
        )


class EphemeralEntry(BaseModel):
    """One entry of the flat ephemerals array."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)

    key: str
    value: str = Field(min_length=1)
    ttl_seconds: Optional[int] = Field(default=None, alias="ttlSeconds")

    @field_validator("key")
    @classmethod
    def _known_key(cls, v):
        if v not in DEFAULT_EPHEMERAL_TTL_SECONDS:
            raise ValueError(f"unknown ephemeral key: {v}")
        return v

    def to_state(self, now_ms: int) -> EphemeralState:
        ttl = self.ttl_seconds if self.ttl_seconds and self.ttl_seconds > 0 else DEFAULT_EPHEMERAL_TTL_SECONDS[self.key]
        return EphemeralState.create(self.key, self.value, ttl, now_ms)


def parse_json_object(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse model output as a JSON object.

    Tries the whole text first, then the first balanced top-level {...}
    block (braces inside JSON strings are ignored). Returns None when
    neither parses to an object.
    """
    if not raw:
        return None
    text = raw.strip()

    try:
        parsed = json.loads(text)
        return parsed if isinstance(parsed, dict) else None
    except (json.JSONDecodeError, ValueError):
        pass

    start = text.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    parsed = json.loads(text[start:i + 1])
                except (json.JSONDecodeError, ValueError):
                    return None
                return parsed if isinstance(parsed, dict) else None
    return None


def signals_to_result(signals: PersonalizationSignals, now_ms: Optional[int] = None) -> ExtractionResult:
    """Flatten structured signals into facts and ephemerals."""
    now_ms = system_clock_ms() if now_ms is None else now_ms
    facts: List[Fact] = []

    def add(fact_type: FactType, key: str, value: Any):
        facts.append(Fact(
            type=fact_type,
            key=key,
            value=str(value),
            confidence=DEFAULT_LLM_CONFIDENCE,
            importance=DEFAULT_LLM_IMPORTANCE[fact_type],
            ttl_days=DEFAULT_TTL_DAYS.get(key, 180),
        ))

    identity = signals.identity
    for key in IDENTITY_SCALAR_KEYS:
        value = getattr(identity, key)
        if value not in (None, ""):
            add(FactType.IDENTITY, key, value)
    for language in identity.languages:
        add(FactType.IDENTITY, "language", language)

    prefs = signals.preferences
    if prefs.learning_style:
        add(FactType.PREFERENCE, "learning_style", prefs.learning_style)
    if prefs.explanation_depth:
        add(FactType.PREFERENCE, "explanation_depth", prefs.explanation_depth)
    for topic in prefs.preferred_topics:
        add(FactType.PREFERENCE, "preferred_topic", topic)

    for topic in signals.knowledge.struggling_topics:
        add(FactType.KNOWLEDGE, "struggling_topic", topic)
    for topic in signals.knowledge.mastered_topics:
        add(FactType.KNOWLEDGE, "mastered_topic", topic)

    ephemerals = [
        EphemeralState.create(key, value, DEFAULT_EPHEMERAL_TTL_SECONDS[key], now_ms)
        for key, value in signals.ephemerals.model_dump().items()
        if value
    ]
    return ExtractionResult(facts=facts, ephemerals=ephemerals)


class LLMFactExtractor:
    """
    Schema-constrained extraction through a text generator.

    The generator is anything with
    `async generate(prompt, provider_hint=None, json_mode=False) -> str`.
    """

    def __init__(self, generator, provider: Optional[str] = None):
        self.generator = generator
        self.provider = provider

    async def _generate_json(self, prompt: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.generator.generate(prompt, provider_hint=self.provider, json_mode=True)
        except Exception as e:
            logger.warning(f"⚠️ [LLMExtractor] Generation failed, no new signals: {e}")
            return None
        parsed = parse_json_object(raw)
        if parsed is None:
            logger.warning("⚠️ [LLMExtractor] Could not parse model output as a JSON object")
        return parsed

    async def extract_signals(
        self,
        user_message: str,
        ai_message: str = "",
        visual_context: Optional[Dict[str, Any]] = None,
        lesson_context: Optional[Dict[str, Any]] = None,
        profile_hint: Optional[Dict[str, Any]] = None,
    ) -> PersonalizationSignals:
        """Structured identity/preferences/knowledge/ephemerals for one turn."""
        prompt = SIGNALS_PROMPT.format(
            user=json.dumps(user_message or ""),
            ai=json.dumps(ai_message or ""),
            visual=json.dumps(visual_context or {}, default=str),
            lesson=json.dumps(lesson_context or {}, default=str),
            hint=json.dumps(profile_hint or {}, default=str),
        )
        payload = await self._generate_json(prompt)
        signals = PersonalizationSignals.from_payload(payload)
        logger.debug(f"🔍 [LLMExtractor] Signals: {signals.model_dump(exclude_defaults=True)}")
        return signals

    async def extract_facts(
        self,
        user_message: str,
        ai_message: str = "",
        profile_hint: Optional[Dict[str, Any]] = None,
        now_ms: Optional[int] = None,
    ) -> ExtractionResult:
        """Flat facts/ephemerals arrays, validated entry by entry."""
        prompt = FACTS_PROMPT.format(
            user=json.dumps(user_message or ""),
            ai=json.dumps(ai_message or ""),
            hint=json.dumps(profile_hint or {}, default=str),
        )
        payload = await self._generate_json(prompt) or {}
        now_ms = system_clock_ms() if now_ms is None else now_ms

        facts: List[Fact] = []
        raw_facts = payload.get("facts")
        for entry in raw_facts if isinstance(raw_facts, list) else []:
            try:
                facts.append(FactEntry.model_validate(entry).to_fact())
            except ValidationError:
                logger.debug(f"🔍 [LLMExtractor] Dropping invalid fact entry: {entry!r}")

        ephemerals: List[EphemeralState] = []
        raw_ephemerals = payload.get("ephemerals")
        for entry in raw_ephemerals if isinstance(raw_ephemerals, list) else []:
            try:
                ephemerals.append(EphemeralEntry.model_validate(entry).to_state(now_ms))
            except ValidationError:
                logger.debug(f"🔍 [LLMExtractor] Dropping invalid ephemeral entry: {entry!r}")

        return ExtractionResult(facts=facts, ephemerals=ephemerals)
