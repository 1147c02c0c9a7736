# story.py
# Stateless interactive-story server using FastAPI
# - POST /api/story turns a client-owned game state into the next scene
# - Structured generation calls Gemini over REST (httpx) or through the google-genai SDK
# - Each request retries malformed output and transient backend failures with backoff (tenacity)
# - Model output is recovered from decorated text and normalized into a strict Scene payload
# - __main__ entry-point wraps uvicorn for local hosting

from __future__ import annotations

import asyncio
import hashlib
import json
import math
import os
import re
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    cast,
)

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from google import genai
from google.genai import types as genai_types
from pydantic import AliasChoices, BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)


def _env_float(name: str, default: float) -> float:
    try:
        raw = os.getenv(name)
        return float(raw) if raw is not None else default
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        raw = os.getenv(name)
        return int(raw) if raw is not None else default
    except (TypeError, ValueError):
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


# -------- Configuration --------
BACKEND_REST = "rest"
BACKEND_SDK = "sdk"
BACKENDS = {BACKEND_REST, BACKEND_SDK}

DEFAULT_MODEL = os.getenv("STORY_MODEL", "gemini-2.0-flash")
# Kept moderate: higher temperatures and longer outputs break the JSON more often.
GENERATION_TEMPERATURE = _env_float("STORY_TEMPERATURE", 0.85)
GENERATION_TOP_P = _env_float("STORY_TOP_P", 0.9)
GENERATION_MAX_OUTPUT_TOKENS = _env_int("STORY_MAX_OUTPUT_TOKENS", 750)
USE_RESPONSE_SCHEMA = _env_flag("STORY_RESPONSE_SCHEMA", True)
STORY_BACKEND = (os.getenv("STORY_BACKEND") or BACKEND_REST).strip().lower()
if STORY_BACKEND not in BACKENDS:
    STORY_BACKEND = BACKEND_REST

MAX_ATTEMPTS = max(1, _env_int("STORY_MAX_ATTEMPTS", 3))
RETRY_BASE_SECONDS = _env_float("STORY_RETRY_BASE_SECONDS", 0.4)
RETRY_MAX_SECONDS = _env_float("STORY_RETRY_MAX_SECONDS", 8.0)
REQUEST_TIMEOUT = _env_float("STORY_REQUEST_TIMEOUT", 60.0)

GEMINI_BASE = os.getenv("GEMINI_API_BASE", "https://generativelanguage.googleapis.com/v1beta")
GENERATE_CONTENT_URL = f"{GEMINI_BASE}/models/{{model}}:generateContent"

MAX_ERROR_DETAIL_CHARS = 500

HINT_RETRYABLE = "Temporary issue. Try again."
HINT_FATAL = "Non-retryable error (check API key / request size)."


# -------- Languages --------
DEFAULT_LANGUAGE = "en"
SUPPORTED_LANGUAGES = {"en", "ko"}

_LANGUAGE_CODE_ALIASES = {
    "english": "en",
    "en-us": "en",
    "en-gb": "en",
    "korean": "ko",
    "kor": "ko",
    "ko-kr": "ko",
    "한국어": "ko",
    "한국": "ko",
}


def _normalize_language_code(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    # Drop qualifiers so "Korean (South Korea)" becomes "korean".
    for sep in ("(", "/", "|"):
        if sep in text:
            text = text.split(sep, 1)[0].strip()
    text = text.replace("_", "-")
    candidates = [text]
    if "-" in text:
        candidates.append(text.split("-", 1)[0].strip())
    for candidate in candidates:
        mapped = _LANGUAGE_CODE_ALIASES.get(candidate)
        if mapped:
            return mapped
        if candidate in SUPPORTED_LANGUAGES:
            return candidate
    return None


FALLBACK_LANGUAGE = _normalize_language_code(os.getenv("STORY_LANGUAGE")) or DEFAULT_LANGUAGE


def normalize_language(lang: Any) -> str:
    normalized = _normalize_language_code(lang)
    if normalized:
        return normalized
    return FALLBACK_LANGUAGE


# -------- Defaults --------
STAT_KEYS = ("hp", "luck", "sanity")
STAT_MIN = 0
STAT_MAX = 10
DEFAULT_STATS: Dict[str, int] = {"hp": 7, "luck": 3, "sanity": 5}

CHOICE_IDS = ("A", "B", "C")
MOODS = ("neutral", "happy", "angry", "scared", "thinking")
DEFAULT_MOOD = "neutral"
DEFAULT_SCENE_ID = "scene_001"
DEFAULT_BEAT_TAG = "unknown"

MAX_RECENT_BEATS = 3
LAST_STORY_MAX_CHARS = 420

# Major story milestones in canon order; reference material for the model only.
CANON_BEATS = [
    "letter",
    "hagrid_visit",
    "diagon_alley",
    "hogwarts_express",
    "sorting",
    "classes_begin",
    "troll",
    "quidditch",
    "mirror",
    "trapdoor",
    "stone_final",
]

PLACEHOLDER_LABELS = {
    "en": "Choice {id}",
    "ko": "선택지 {id}",
}

PROTAGONISTS: Dict[str, Dict[str, Any]] = {
    "en": {
        "name": "Ver Black",
        "role": "Takes Harry's place in the story",
        "traits": [
            "Black surname, strong Muggle blood",
            "Black-haired girl, strikingly pretty",
            "Exceptional magical talent",
        ],
    },
    "ko": {
        "name": "베르 블랙",
        "role": "해리의 역할",
        "traits": ["블랙 성(머글 피 진함)", "검은 머리 미소녀", "마법 재능 매우 뛰어남"],
    },
}

SYSTEM_INSTRUCTIONS = {
    "en": """
You are an interactive story engine for a mobile game.

[World / Story]
- Keep the order of the major events of the first Harry Potter book (The Philosopher's Stone).
- The protagonist is not Harry: Ver Black fills Harry's role.
- Dumbledore, McGonagall, Hagrid, Ron, Hermione, Malfoy, Snape, Quirrell and the other main characters appear as in the book.

[Protagonist]
- Carries the Black surname but is a distant cousin of the Black family, with strong Muggle blood.
- A black-haired, pretty girl; describe her looks naturally and never exaggerate.
- Exceptionally gifted at magic; the people around her are impressed.
- Light romantic tension is allowed but must not derail the main events (at most one choice may touch it).

[Pacing rules (critical)]
1) Never be slow. Every turn follows "event unfolds -> immediate choice" in 6-10 sentences.
2) Never repeat a question or a choice with the same meaning in different words.
3) There are always exactly 3 choices (A/B/C) with clearly different approaches:
   - A: direct confrontation / courage
   - B: caution / observation / negotiation
   - C: rule-breaking / a trick / temptation (at a cost)
4) Do not repeat situations similar to the beats (beatTag) of the last 2-3 turns. Push the story one step forward.
5) No gore and no explicit sexual content.

[Output]
- Output JSON only (no explanation, no preamble, no code fences).
- Always follow this shape:

{
  "sceneId": "scene_014",
  "text": "6-10 sentence story",
  "choices": [
    { "id":"A", "label":"..." , "delta": { "hp":-1, "luck":0, "sanity":1 } },
    { "id":"B", "label":"..." , "delta": { "hp":0, "luck":1, "sanity":0 } },
    { "id":"C", "label":"..." , "delta": { "hp":0, "luck":2, "sanity":-1 } }
  ],
  "stats": { "hp": 0-10, "luck": 0-10, "sanity": 0-10 },
  "flags": { "any": "json" },
  "mood": "neutral|happy|angry|scared|thinking",
  "beatTag": "short_keyword",
  "isEnding": false
}
""",
    "ko": """
너는 모바일 인터랙티브 스토리 엔진이다.

[세계관/스토리]
- 해리 포터 1권(마법사의 돌)의 주요 사건 순서는 유지한다.
- 주인공은 해리가 아니라 베르 블랙(Ver Black)이며 해리의 역할을 맡는다.
- 덤블도어, 맥고나걸, 해그리드, 론, 헤르미온느, 말포이, 스네이프, 퀴렐 등 주요 인물은 원작처럼 등장한다.

[주인공]
- 블랙 성을 가졌지만 블랙 가문과는 먼 사촌이며 머글 피가 진하다.
- 검은 머리의 미소녀. 외모 묘사는 자연스럽게, 과장하지 않는다.
- 마법 재능이 매우 뛰어나 주변 인물들이 감탄한다.
- 가벼운 로맨스 텐션은 허용하지만 메인 사건을 방해하지 않는다(선택지 하나 정도에만).

[진행 규칙(매우 중요)]
1) 느리면 안 된다. 매 턴은 "사건 전개 -> 즉시 선택" 리듬으로 6~10문장.
2) 같은 의미의 질문이나 선택지를 말만 바꿔 반복하지 않는다.
3) 선택지는 항상 3개(A/B/C)이며 결이 확실히 달라야 한다:
   - A: 정면 돌파/용기
   - B: 신중/관찰/협상
   - C: 규칙 위반/꼼수/유혹(대신 리스크)
4) 직전 2~3턴의 비트(beatTag)와 비슷한 상황을 반복하지 않는다. 이야기를 한 단계 앞으로 민다.
5) 잔혹하거나 노골적인 성적 묘사 금지.

[출력]
- 오직 JSON만 출력한다(설명, 머리말, 코드펜스 금지).
- 아래 형식을 반드시 지킨다:

{
  "sceneId": "scene_014",
  "text": "6~10문장 스토리",
  "choices": [
    { "id":"A", "label":"..." , "delta": { "hp":-1, "luck":0, "sanity":1 } },
    { "id":"B", "label":"..." , "delta": { "hp":0, "luck":1, "sanity":0 } },
    { "id":"C", "label":"..." , "delta": { "hp":0, "luck":2, "sanity":-1 } }
  ],
  "stats": { "hp": 0~10, "luck": 0~10, "sanity": 0~10 },
  "flags": { "any": "json" },
  "mood": "neutral|happy|angry|scared|thinking",
  "beatTag": "짧은키워드",
  "isEnding": false
}
""",
}

USER_PROMPT_TEMPLATES = {
    "en": """
Below is a JSON summary of the current game state. Use it to generate the "next scene".

Requirements:
- Keep the major event flow of book one, advancing naturally from the current situation to the next beat.
- Do not repeat situations similar to last3Beats.
- text is 6-10 sentences.
- choices has 3 entries (A/B/C) with clearly different approaches.
- stats may shift slightly (0-10).
- beatTag is the key word for this scene.
- mood is one of the allowed values.

State summary:
""",
    "ko": """
다음은 현재 게임 상태 요약 JSON이다. 이를 바탕으로 "다음 장면"을 생성하라.

필수 조건:
- 원작 1권의 큰 사건 흐름을 유지하되, 현재 상황에서 다음 비트로 자연스럽게 전진.
- last3Beats와 유사한 상황 반복 금지.
- text는 6~10문장.
- choices는 3개(A/B/C)이고 서로 결이 확실히 다르게.
- stats는 소폭 변동 가능(0~10).
- beatTag는 이번 장면의 핵심 키워드.
- mood는 지정된 값 중 하나.

상태 요약:
""",
}


# -------- Errors --------
class StoryEngineError(Exception):
    """Base class for failures raised while producing a scene."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(StoryEngineError):
    """A required setting such as the backend credential is missing."""


class MalformedOutputError(StoryEngineError):
    """The backend answered, but no JSON object could be recovered from its text."""


class BackendError(StoryEngineError):
    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class TransientBackendError(BackendError):
    """Rate limits, timeouts, server-side and network failures; worth another attempt."""


class FatalBackendError(BackendError):
    """Any other backend failure, e.g. a rejected request or bad credential."""


# "rate" must start a word so names like generateContent do not match.
_RETRYABLE_MESSAGE = re.compile(
    r"\brate|quota|429|time[\s_-]?out|temporar|overload|unavailable|econnreset|network|fetch failed",
    re.IGNORECASE,
)


def is_retryable_failure(message: Any, status: Optional[int]) -> bool:
    if status in (408, 429):
        return True
    if status is not None and 500 <= status <= 599:
        return True
    return bool(_RETRYABLE_MESSAGE.search(str(message or "")))


def classify_backend_failure(message: str, status: Optional[int] = None) -> BackendError:
    if is_retryable_failure(message, status):
        return TransientBackendError(message, status=status)
    return FatalBackendError(message, status=status)


def _status_from_exception(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def _trim_detail(text: Any, limit: int = MAX_ERROR_DETAIL_CHARS) -> str:
    cleaned = str(text or "").strip()
    if len(cleaned) > limit:
        return cleaned[:limit].rstrip() + "..."
    return cleaned


# -------------------- Data models (wire format) --------------------
class Stats(BaseModel):
    hp: int
    luck: int
    sanity: int


class Choice(BaseModel):
    id: str
    label: str
    delta: Optional[Dict[str, Any]] = None  # stat adjustment applied by the client

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "label": self.label}
        if self.delta is not None:
            payload["delta"] = self.delta
        return payload


class Scene(BaseModel):
    """Canonical scene returned to the caller."""

    scene_id: str = Field(
        validation_alias=AliasChoices("sceneId", "scene_id"),
        serialization_alias="sceneId",
    )
    text: str
    choices: List[Choice]
    stats: Stats
    flags: Dict[str, Any] = Field(default_factory=dict)
    mood: Literal["neutral", "happy", "angry", "scared", "thinking"] = DEFAULT_MOOD
    beat_tag: str = Field(
        validation_alias=AliasChoices("beatTag", "beat_tag"),
        serialization_alias="beatTag",
    )
    is_ending: bool = Field(
        default=False,
        validation_alias=AliasChoices("isEnding", "is_ending"),
        serialization_alias="isEnding",
    )

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        payload["choices"] = [choice.to_payload() for choice in self.choices]
        return payload


# -------------------- Helpers --------------------
def _as_mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _coerce_stat(value: Any) -> Optional[int]:
    """Return *value* as an integer stat, or None when it is not a finite number.

    Integers (and integer strings) of any size are kept exact; clamping happens later.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        number = value
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return int(round(number))


def _is_truthy(value: Any) -> bool:
    """JavaScript-style truthiness: empty containers count as true, NaN as false."""
    if value is None or value is False:
        return False
    if isinstance(value, float):
        return value != 0 and not math.isnan(value)
    if isinstance(value, (int, str)):
        return bool(value)
    return True


def resolve_stats(candidate: Any, prior: Any) -> Stats:
    """Pick each stat from *candidate*, then *prior*, then the defaults, and clamp it."""
    candidate_map = _as_mapping(candidate)
    prior_map = _as_mapping(prior)
    values: Dict[str, int] = {}
    for key in STAT_KEYS:
        value = _coerce_stat(candidate_map.get(key))
        if value is None:
            value = _coerce_stat(prior_map.get(key))
        if value is None:
            value = DEFAULT_STATS[key]
        values[key] = clamp(value, STAT_MIN, STAT_MAX)
    return Stats(**values)


# -------------------- State summary & prompt --------------------
def summarize_state(state: Any, picked: Any, language: str = DEFAULT_LANGUAGE) -> Dict[str, Any]:
    """Compress the client state into a small fact sheet for the prompt.

    Every field falls back to a default on its own, so any shape of *state*
    (missing, null, wrong types) yields a usable summary.
    """
    lang = normalize_language(language)
    s = _as_mapping(state)
    pending = _as_mapping(s.get("pending"))

    beats_raw = s.get("last3Beats")
    beats = [beat for beat in beats_raw if isinstance(beat, str)] if isinstance(beats_raw, list) else []

    choices_raw = pending.get("choices")
    last_choices = []
    if isinstance(choices_raw, list):
        for entry in choices_raw[: len(CHOICE_IDS)]:
            entry_map = _as_mapping(entry)
            last_choices.append({"id": entry_map.get("id"), "label": entry_map.get("label")})

    last_text = pending.get("text") if isinstance(pending.get("text"), str) else ""

    return {
        "protagonist": PROTAGONISTS[lang],
        "at": _non_empty_str(s.get("at")) or DEFAULT_SCENE_ID,
        "stats": resolve_stats(s.get("stats"), None).model_dump(),
        "flags": _as_mapping(s.get("flags")),
        "currentBeat": _non_empty_str(pending.get("beatTag")) or DEFAULT_BEAT_TAG,
        "last3Beats": beats[-MAX_RECENT_BEATS:],
        "lastStory": last_text[:LAST_STORY_MAX_CHARS],
        "lastChoices": last_choices,
        "picked": _non_empty_str(picked),
        "canonBeats": CANON_BEATS,
    }


@dataclass(frozen=True)
class StoryPrompt:
    system_instruction: str
    user_prompt: str


def build_story_prompt(summary: Mapping[str, Any], language: str = DEFAULT_LANGUAGE) -> StoryPrompt:
    lang = normalize_language(language)
    preamble = USER_PROMPT_TEMPLATES[lang]
    user_prompt = f"{preamble}{json.dumps(summary, ensure_ascii=False)}\n"
    return StoryPrompt(system_instruction=SYSTEM_INSTRUCTIONS[lang], user_prompt=user_prompt)


def build_scene_schema() -> Dict:
    # Gemini rejects OBJECT nodes without properties, so the open-ended flags map stays out.
    stat_value = {"type": "INTEGER", "minimum": STAT_MIN, "maximum": STAT_MAX}
    delta = {
        "type": "OBJECT",
        "properties": {key: {"type": "INTEGER"} for key in STAT_KEYS},
        "propertyOrdering": list(STAT_KEYS),
    }
    return {
        "type": "OBJECT",
        "properties": {
            "sceneId": {"type": "STRING"},
            "text": {"type": "STRING"},
            "choices": {
                "type": "ARRAY",
                "minItems": len(CHOICE_IDS),
                "maxItems": len(CHOICE_IDS),
                "items": {
                    "type": "OBJECT",
                    "properties": {
                        "id": {"type": "STRING", "enum": list(CHOICE_IDS)},
                        "label": {"type": "STRING"},
                        "delta": delta,
                    },
                    "required": ["id", "label"],
                    "propertyOrdering": ["id", "label", "delta"],
                },
            },
            "stats": {
                "type": "OBJECT",
                "properties": {key: dict(stat_value) for key in STAT_KEYS},
                "required": list(STAT_KEYS),
                "propertyOrdering": list(STAT_KEYS),
            },
            "mood": {"type": "STRING", "enum": list(MOODS)},
            "beatTag": {"type": "STRING"},
            "isEnding": {"type": "BOOLEAN"},
        },
        "required": ["sceneId", "text", "choices", "stats", "mood", "beatTag", "isEnding"],
        "propertyOrdering": ["sceneId", "text", "choices", "stats", "mood", "beatTag", "isEnding"],
    }


# -------------------- JSON recovery --------------------
_LEADING_FENCE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"```$")


def extract_json_object(raw_text: Any) -> Optional[Any]:
    """Pull the outermost {...} out of model text wrapped in prose or code fences.

    Best effort only: several separate objects, or braces inside strings that
    sit outside the real object, defeat the first-brace/last-brace search.
    """
    if not raw_text:
        return None
    text = str(raw_text).strip()
    text = _LEADING_FENCE.sub("", text)
    text = _TRAILING_FENCE.sub("", text).strip()

    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last == -1 or last <= first:
        return None
    try:
        return json.loads(text[first : last + 1])
    except (ValueError, RecursionError):
        return None


def decode_model_output(raw_text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed: Any = json.loads(raw_text)
    except (TypeError, ValueError, RecursionError):
        parsed = None
    if not isinstance(parsed, dict):
        parsed = extract_json_object(raw_text)
    return parsed if isinstance(parsed, dict) else None


# -------------------- Scene normalization --------------------
def normalize_scene(candidate: Any, prior_state: Any, *, language: str = DEFAULT_LANGUAGE) -> Scene:
    """Coerce a model candidate into a valid Scene, filling gaps from the prior state.

    Never raises: every field is checked on its own and falls back to the
    previous scene (``prior_state["pending"]``), then to fixed defaults.
    """
    p = _as_mapping(candidate)
    prev = _as_mapping(prior_state)
    pending = _as_mapping(prev.get("pending"))
    label_template = PLACEHOLDER_LABELS[normalize_language(language)]

    scene_id = p.get("sceneId") if isinstance(p.get("sceneId"), str) else None
    text = p.get("text") if isinstance(p.get("text"), str) else None

    if isinstance(p.get("choices"), list):
        raw_choices = p["choices"]
    elif isinstance(pending.get("choices"), list):
        raw_choices = pending["choices"]
    else:
        raw_choices = []

    choices: List[Choice] = []
    for index, entry in enumerate(raw_choices[: len(CHOICE_IDS)]):
        entry_map = _as_mapping(entry)
        # Ids are positional so the caller always sees A, B, C in order.
        choice_id = CHOICE_IDS[index]
        label = _non_empty_str(entry_map.get("label")) or label_template.format(id=choice_id)
        delta = entry_map.get("delta") if isinstance(entry_map.get("delta"), dict) else None
        choices.append(Choice(id=choice_id, label=label, delta=delta))
    while len(choices) < len(CHOICE_IDS):
        choice_id = CHOICE_IDS[len(choices)]
        choices.append(Choice(id=choice_id, label=label_template.format(id=choice_id)))

    if isinstance(p.get("flags"), dict):
        flags = p["flags"]
    else:
        flags = _as_mapping(prev.get("flags"))

    if p.get("mood") in MOODS:
        mood = p["mood"]
    elif pending.get("mood") in MOODS:
        mood = pending["mood"]
    else:
        mood = DEFAULT_MOOD

    beat_tag = p.get("beatTag") if isinstance(p.get("beatTag"), str) else None

    return Scene(
        scene_id=scene_id if scene_id is not None else (_non_empty_str(prev.get("at")) or DEFAULT_SCENE_ID),
        text=text if text is not None else (_non_empty_str(pending.get("text")) or ""),
        choices=choices,
        stats=resolve_stats(p.get("stats"), prev.get("stats")),
        flags=flags,
        mood=mood,
        beat_tag=beat_tag if beat_tag is not None else (_non_empty_str(pending.get("beatTag")) or DEFAULT_BEAT_TAG),
        is_ending=_is_truthy(p.get("isEnding")),
    )


# -------------------- Generation backends --------------------
@dataclass(frozen=True)
class GenerationConfig:
    model: str = DEFAULT_MODEL
    temperature: float = GENERATION_TEMPERATURE
    top_p: float = GENERATION_TOP_P
    max_output_tokens: int = GENERATION_MAX_OUTPUT_TOKENS
    response_schema: Optional[Dict[str, Any]] = None


def default_generation_config() -> GenerationConfig:
    return GenerationConfig(response_schema=build_scene_schema() if USE_RESPONSE_SCHEMA else None)


class TextBearingResponse(Protocol):
    def text(self) -> str: ...


@dataclass(frozen=True)
class ModelText:
    value: str = ""

    def text(self) -> str:
        return self.value


def _lookup(source: Any, key: str) -> Any:
    if source is None:
        return None
    if isinstance(source, Mapping):
        return source.get(key)
    try:
        return getattr(source, key, None)
    except Exception:  # noqa: BLE001 - SDK properties may raise on odd payloads
        return None


def _candidate_parts(source: Any) -> Optional[List[Any]]:
    candidates = _lookup(source, "candidates")
    if not isinstance(candidates, (list, tuple)) or not candidates:
        return None
    parts = _lookup(_lookup(candidates[0], "content"), "parts")
    if not isinstance(parts, (list, tuple)):
        return None
    return list(parts)


def adapt_response(result: Any) -> ModelText:
    """Turn whatever a backend returned into a ModelText.

    Tries a direct ``text`` string, then a callable ``response.text()``, then
    the concatenated text parts of the first candidate.
    """
    direct = _lookup(result, "text")
    if isinstance(direct, str):
        return ModelText(direct)

    inner = _lookup(result, "response")
    inner_text = _lookup(inner, "text")
    if callable(inner_text):
        try:
            value = inner_text()
        except Exception:  # noqa: BLE001
            value = None
        if isinstance(value, str):
            return ModelText(value)

    for source in (inner, result):
        parts = _candidate_parts(source)
        if parts is None:
            continue
        txt = ""
        for prt in parts:
            # Thinking models interleave reasoning parts; only the answer counts.
            if _lookup(prt, "thought"):
                continue
            piece = _lookup(prt, "text")
            if isinstance(piece, str):
                txt += piece
        return ModelText(txt)
    return ModelText("")


class GenerationClient(Protocol):
    async def generate(
        self,
        system_instruction: str,
        user_prompt: str,
        config: GenerationConfig,
    ) -> TextBearingResponse: ...


@dataclass(frozen=True)
class GeminiRestClient:
    """Calls Gemini's generateContent endpoint directly over httpx."""

    api_key: str
    timeout: float = REQUEST_TIMEOUT

    def build_request_body(
        self,
        system_instruction: str,
        user_prompt: str,
        config: GenerationConfig,
    ) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {
            "responseMimeType": "application/json",
            "temperature": config.temperature,
            "topP": config.top_p,
            "maxOutputTokens": config.max_output_tokens,
        }
        if config.response_schema is not None:
            generation_config["responseSchema"] = config.response_schema
        return {
            "systemInstruction": {"parts": [{"text": system_instruction}]},
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            "generationConfig": generation_config,
        }

    async def generate(
        self,
        system_instruction: str,
        user_prompt: str,
        config: GenerationConfig,
    ) -> TextBearingResponse:
        url = GENERATE_CONTENT_URL.format(model=config.model)
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}
        body = self.build_request_body(system_instruction, user_prompt, config)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, headers=headers, json=body)
        except httpx.TimeoutException as exc:
            raise TransientBackendError(f"Request timeout: {exc!r}", status=408) from exc
        except httpx.TransportError as exc:
            raise TransientBackendError(f"Network error: {exc!r}") from exc

        if response.status_code != 200:
            raise classify_backend_failure(
                f"Text generation failed (HTTP {response.status_code}): {_trim_detail(response.text)}",
                response.status_code,
            )
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise MalformedOutputError("Malformed response from model.")
        return adapt_response(data)


class GeminiSdkClient:
    """Same contract as GeminiRestClient, backed by the google-genai async client."""

    def __init__(self, api_key: str, *, sdk: Any = None) -> None:
        self._sdk = sdk if sdk is not None else genai.Client(api_key=api_key)

    async def generate(
        self,
        system_instruction: str,
        user_prompt: str,
        config: GenerationConfig,
    ) -> TextBearingResponse:
        sdk_config = genai_types.GenerateContentConfig(
            system_instruction=system_instruction,
            response_mime_type="application/json",
            response_schema=config.response_schema,
            temperature=config.temperature,
            top_p=config.top_p,
            max_output_tokens=config.max_output_tokens,
        )
        try:
            result = await self._sdk.aio.models.generate_content(
                model=config.model,
                contents=user_prompt,
                config=sdk_config,
            )
        except Exception as exc:  # noqa: BLE001 - SDK raises many unrelated types
            message = str(exc).strip() or exc.__class__.__name__
            raise classify_backend_failure(_trim_detail(message), _status_from_exception(exc)) from exc
        return adapt_response(result)


_CLIENT_CACHE: Dict[Tuple[str, str], GenerationClient] = {}


def _client_cache_key(backend: str, api_key: str) -> Tuple[str, str]:
    digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()
    return backend, digest


def require_api_key() -> str:
    api_key = (os.getenv("GEMINI_API_KEY") or "").strip()
    if not api_key:
        raise ConfigurationError("Missing GEMINI_API_KEY")
    return api_key


def get_generation_client(api_key: str, backend: Optional[str] = None) -> GenerationClient:
    """Return the process-wide client for this credential, creating it on first use."""
    backend_name = backend or STORY_BACKEND
    cache_key = _client_cache_key(backend_name, api_key)
    client = _CLIENT_CACHE.get(cache_key)
    if client is None:
        if backend_name == BACKEND_SDK:
            client = GeminiSdkClient(api_key)
        else:
            client = GeminiRestClient(api_key)
        _CLIENT_CACHE[cache_key] = client
    return client


# -------------------- Retry orchestration --------------------
async def _backoff_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    exc = outcome.exception() if outcome is not None else None
    delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
    print(
        f"Story generation attempt {retry_state.attempt_number} failed ({exc}); retrying in {delay:.2f}s",
        file=sys.stderr,
        flush=True,
    )


def build_retrying(
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
) -> AsyncRetrying:
    base = RETRY_BASE_SECONDS if base_delay is None else base_delay
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts or MAX_ATTEMPTS)),
        # base, 2*base, 4*base ... so a rate-limited backend sees spreading retries.
        wait=wait_exponential(multiplier=base, max=RETRY_MAX_SECONDS if max_delay is None else max_delay),
        retry=retry_if_exception_type((MalformedOutputError, TransientBackendError)),
        before_sleep=_log_retry,
        sleep=_backoff_sleep,
        reraise=True,
    )


async def generate_scene(
    state: Any,
    picked: Any,
    *,
    client: GenerationClient,
    language: Any = None,
    config: Optional[GenerationConfig] = None,
    max_attempts: Optional[int] = None,
) -> Scene:
    """Produce the next Scene for *state*, retrying bad output and transient failures.

    Raises the last MalformedOutputError/TransientBackendError once attempts are
    exhausted, or a FatalBackendError immediately.
    """
    lang = normalize_language(language)
    summary = summarize_state(state, picked, lang)
    prompt = build_story_prompt(summary, lang)
    generation_config = config or default_generation_config()

    parsed: Optional[Dict[str, Any]] = None
    async for attempt in build_retrying(max_attempts=max_attempts):
        with attempt:
            response = await client.generate(prompt.system_instruction, prompt.user_prompt, generation_config)
            parsed = decode_model_output(response.text())
            if parsed is None:
                raise MalformedOutputError("Bad model output (json parse failed)")

    return normalize_scene(cast(Dict[str, Any], parsed), state, language=lang)


# -------------------- Request parsing --------------------
def parse_request_body(raw: Any) -> Dict[str, Any]:
    """Decode a request body that may be bytes, a JSON string or already a dict.

    Undecodable bodies count as empty rather than as a client error.
    """
    body = raw
    if isinstance(body, (bytes, bytearray)):
        try:
            body = bytes(body).decode("utf-8")
        except UnicodeDecodeError:
            return {}
    # Some platforms hand over a JSON document that was itself JSON-encoded.
    for _ in range(2):
        if not isinstance(body, str):
            break
        try:
            body = json.loads(body)
        except (ValueError, RecursionError):
            return {}
    return body if isinstance(body, dict) else {}


def _error_response(
    error: str,
    status_code: int,
    *,
    detail: Optional[str] = None,
    hint: Optional[str] = None,
) -> JSONResponse:
    payload: Dict[str, Any] = {"error": error}
    if detail is not None:
        payload["detail"] = detail
    if hint is not None:
        payload["hint"] = hint
    return JSONResponse(payload, status_code=status_code)


def apply_cors_headers(request: Request, response: Response) -> None:
    origin = request.headers.get("origin")
    if origin:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Vary"] = "Origin"
    else:
        # file:// pages and some embedded browsers send no Origin header.
        response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    response.headers["Access-Control-Max-Age"] = "86400"


# -------------------- FastAPI app --------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    api_key = (os.getenv("GEMINI_API_KEY") or "").strip()
    if api_key:
        get_generation_client(api_key)
    yield


app = FastAPI(title="Story Scene Engine", lifespan=lifespan)


@app.middleware("http")
async def cors_middleware(request: Request, call_next: Any) -> Response:
    if request.method == "OPTIONS":
        response: Response = Response(status_code=204)
    else:
        response = await call_next(request)
    apply_cors_headers(request, response)
    return response


@app.get("/api/health")
async def health() -> Dict[str, Any]:
    return {
        "ok": True,
        "model": DEFAULT_MODEL,
        "backend": STORY_BACKEND,
        "configured": bool((os.getenv("GEMINI_API_KEY") or "").strip()),
    }


@app.api_route("/api/story", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
@app.api_route("/", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def story_method_not_allowed() -> JSONResponse:
    return _error_response("Method Not Allowed", 405)


@app.post("/api/story")
@app.post("/")
async def story(request: Request) -> JSONResponse:
    try:
        api_key = require_api_key()
    except ConfigurationError as exc:
        return _error_response(exc.message, 500)

    body = parse_request_body(await request.body())
    state = _as_mapping(body.get("state"))
    picked = _non_empty_str(body.get("picked"))

    client = get_generation_client(api_key)
    try:
        scene = await generate_scene(state, picked, client=client, language=body.get("language"))
    except (MalformedOutputError, TransientBackendError) as exc:
        print(f"Story generation failed after retries: {exc.message}", file=sys.stderr, flush=True)
        return _error_response(
            "Story generation failed after retries",
            502,
            detail=exc.message,
            hint=HINT_RETRYABLE,
        )
    except FatalBackendError as exc:
        print(f"Story generation failed: {exc.message}", file=sys.stderr, flush=True)
        return _error_response(
            "Story generation failed",
            500,
            detail=exc.message,
            hint=HINT_FATAL,
        )
    except Exception as exc:  # noqa: BLE001 - callers always get a JSON error body
        message = str(exc).strip() or exc.__class__.__name__
        print(f"Story generation crashed: {exc!r}", file=sys.stderr, flush=True)
        return _error_response("Story generation failed", 500, detail=_trim_detail(message))
    return JSONResponse(scene.to_payload(), status_code=200)


if __name__ == "__main__":
    # Provide a convenient CLI entry point for local running.
    import logging

    import uvicorn

    host = os.environ.get("STORY_HOST", "0.0.0.0")  # nosec B104
    port = int(os.environ.get("STORY_PORT", "8000"))
    reload_enabled = os.environ.get("STORY_RELOAD") == "1"

    logger = logging.getLogger("uvicorn.error")
    logger.info("Story engine using %s via %s backend", DEFAULT_MODEL, STORY_BACKEND)
    uvicorn.run("story:app", host=host, port=port, reload=reload_enabled)
