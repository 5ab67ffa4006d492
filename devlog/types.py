"""
Shared types for devlog.

All queue and memory dataclasses live here. These are the shared vocabulary
between the queue, the memory store, the decay and promotion engines, and
extractors. An extractor returns MemoryDrafts; the store turns them into
MemoryEntries. The types are the contract between them.
"""

import hashlib
import re
import unicodedata
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


class ParseDatetimeError(ValueError):
    """Structured parse failure for ISO datetime strings."""

    def __init__(self, value: str, cause: Exception):
        super().__init__(f"Invalid ISO datetime string: {value!r}")
        self.value = value
        self.cause = cause


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string into an aware UTC datetime.

    Naive timestamps are assumed to be UTC. Raises ParseDatetimeError on
    garbage so callers validating records can count them as malformed.
    """
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError, AttributeError) as exc:
        raise ParseDatetimeError(str(s), exc) from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_content(text: str) -> str:
    """Normalize free text for equality matching.

    NFKC, lower-case, every run of non-alphanumeric characters collapsed
    to a single space, trimmed.
    """
    text = unicodedata.normalize("NFKC", text or "").lower()
    return re.sub(r"[^0-9a-z]+", " ", text).strip()


def short_hash(*parts: str) -> str:
    """First 16 hex chars of sha256 over the parts joined by '|'."""
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]


# === Enums ===


class EventType(str, Enum):
    """Closed set of hook events the queue accepts."""

    TOOL_USE = "tool_use"
    SESSION_STOP = "session_stop"
    SESSION_END = "session_end"
    TURN_COMPLETE = "turn_complete"

    @classmethod
    def parse(cls, value: Any) -> "EventType":
        """Parse an event type, accepting hyphenated spellings.

        Raises ValueError for anything outside the enum.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"event_type must be a string, got {type(value).__name__}")
        return cls(value.strip().lower().replace("-", "_"))


VALID_EVENT_TYPE_VALUES = frozenset(t.value for t in EventType)


class EventState(str, Enum):
    """Queue record states.

    pending -> processing -> completed
    pending -> processing -> failed (-> processing again on retry)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class MemoryType(str, Enum):
    """Canonical memory entry type values."""

    DECISION = "decision"
    PREFERENCE = "preference"
    FACT = "fact"
    PATTERN = "pattern"
    CONVENTION = "convention"
    GOAL = "goal"
    PROBLEM = "problem"
    CONTEXT = "context"
    INSIGHT = "insight"


VALID_MEMORY_TYPE_VALUES = frozenset(m.value for m in MemoryType)


class Granularity(str, Enum):
    """Decay cadences."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# === Event Payloads ===
# One dataclass per EventType. Field names mirror the JSON schemas in
# devlog.storage.events, which are closed (additionalProperties: false).


@dataclass(frozen=True)
class ToolUsePayload:
    tool_name: str
    tool_input: Any = None
    tool_result: Optional[str] = None
    transcript_path: Optional[str] = None
    cwd: Optional[str] = None


@dataclass(frozen=True)
class SessionStopPayload:
    transcript_path: Optional[str] = None
    conversation_summary: Optional[str] = None
    cwd: Optional[str] = None


@dataclass(frozen=True)
class SessionEndPayload:
    transcript_path: Optional[str] = None
    conversation_summary: Optional[str] = None
    reason: Optional[str] = None
    cwd: Optional[str] = None


@dataclass(frozen=True)
class TurnCompletePayload:
    user_prompt: str
    assistant_response: str
    files_touched: List[str] = field(default_factory=list)
    cwd: Optional[str] = None


EventPayload = Union[ToolUsePayload, SessionStopPayload, SessionEndPayload, TurnCompletePayload]

PAYLOAD_TYPES: Dict[EventType, type] = {
    EventType.TOOL_USE: ToolUsePayload,
    EventType.SESSION_STOP: SessionStopPayload,
    EventType.SESSION_END: SessionEndPayload,
    EventType.TURN_COMPLETE: TurnCompletePayload,
}


def payload_fields(event_type: EventType) -> List[str]:
    """Field names the payload of an event type declares."""
    return [f.name for f in fields(PAYLOAD_TYPES[event_type])]


def payload_to_dict(payload: EventPayload) -> Dict[str, Any]:
    """Serialize a payload, dropping unset optional fields."""
    return {k: v for k, v in asdict(payload).items() if v is not None}


def payload_from_dict(event_type: EventType, data: Dict[str, Any]) -> EventPayload:
    """Build the typed payload for an event type from an already-validated dict."""
    cls = PAYLOAD_TYPES[event_type]
    known = set(payload_fields(event_type))
    return cls(**{k: v for k, v in data.items() if k in known})


# === Queue Types ===


@dataclass
class QueuedEvent:
    """A hook event held by the queue."""

    id: str
    event_type: EventType
    session_id: str
    payload: EventPayload
    state: EventState = EventState.PENDING
    enqueued_at: str = ""
    attempts: int = 0
    claimed_at: Optional[str] = None
    finished_at: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "payload": payload_to_dict(self.payload),
            "state": self.state.value,
            "enqueued_at": self.enqueued_at,
            "attempts": self.attempts,
            "claimed_at": self.claimed_at,
            "finished_at": self.finished_at,
            "last_error": self.last_error,
        }


# === Memory Types ===

MAX_SCORE = 1.0


@dataclass
class MemoryDraft:
    """What an extractor hands back: an observation not yet stored."""

    type: str
    content: str
    recurrence_key: Optional[str] = None
    observed_at: Optional[str] = None
    files: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


@dataclass
class MemoryEntry:
    """A short-term observation with a decaying score."""

    id: str
    type: str
    content: str
    session_id: str
    created_at: str
    last_touched_at: str
    score: float = MAX_SCORE
    promotion_candidate: bool = False
    event_id: Optional[str] = None
    recurrence_key: Optional[str] = None
    files: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    # granularity value -> last bucket that granularity's pass was applied in
    decay_marks: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEntry":
        """Build an entry from a stored record, validating it.

        Raises ValueError (or ParseDatetimeError) for malformed records.
        """
        if not isinstance(data, dict):
            raise ValueError("memory entry must be an object")
        for key in ("id", "type", "content", "session_id", "created_at"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise ValueError(f"memory entry missing '{key}'")
        if data["type"] not in VALID_MEMORY_TYPE_VALUES:
            raise ValueError(f"unknown memory type {data['type']!r}")
        score = data.get("score", MAX_SCORE)
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise ValueError("memory entry score must be a number")
        if not 0.0 <= float(score) <= MAX_SCORE:
            raise ValueError(f"memory entry score out of range: {score}")
        parse_datetime(data["created_at"])
        last_touched = data.get("last_touched_at") or data["created_at"]
        parse_datetime(last_touched)
        marks = data.get("decay_marks") or {}
        if not isinstance(marks, dict):
            raise ValueError("decay_marks must be an object")
        return cls(
            id=data["id"],
            type=data["type"],
            content=data["content"],
            session_id=data["session_id"],
            created_at=data["created_at"],
            last_touched_at=last_touched,
            score=float(score),
            promotion_candidate=bool(data.get("promotion_candidate", False)),
            event_id=data.get("event_id"),
            recurrence_key=data.get("recurrence_key"),
            files=list(data.get("files") or []),
            tags=list(data.get("tags") or []),
            decay_marks={str(k): str(v) for k, v in marks.items()},
        )


def entry_fingerprint(session_id: str, memory_type: str, content: str, observed_at: str) -> str:
    """Identity of an extracted observation.

    Same session, type, content and observation time always map to the
    same id, so duplicate extraction on retry appends nothing.
    """
    return "mem_" + short_hash(session_id, memory_type, normalize_content(content), observed_at)


@dataclass
class PromotionCandidate:
    """A recurring pattern under evaluation for promotion."""

    key: str
    type: str
    content: str
    first_seen_at: str
    last_seen_at: str
    session_ids: List[str] = field(default_factory=list)
    # entry id -> latest known score of that contributing entry
    entry_scores: Dict[str, float] = field(default_factory=dict)

    @property
    def occurrences(self) -> int:
        return len(self.session_ids)

    @property
    def accumulated_score(self) -> float:
        return round(sum(self.entry_scores.values()), 6)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["occurrences"] = self.occurrences
        data["accumulated_score"] = self.accumulated_score
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PromotionCandidate":
        if not isinstance(data, dict):
            raise ValueError("candidate must be an object")
        for key in ("key", "type", "content", "first_seen_at", "last_seen_at"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise ValueError(f"candidate missing '{key}'")
        parse_datetime(data["first_seen_at"])
        parse_datetime(data["last_seen_at"])
        scores = data.get("entry_scores") or {}
        if not isinstance(scores, dict):
            raise ValueError("entry_scores must be an object")
        return cls(
            key=data["key"],
            type=data["type"],
            content=data["content"],
            first_seen_at=data["first_seen_at"],
            last_seen_at=data["last_seen_at"],
            session_ids=[str(s) for s in data.get("session_ids") or []],
            entry_scores={str(k): float(v) for k, v in scores.items()},
        )


@dataclass
class LongTermMemory:
    """Promoted, durable knowledge. Keyed by the candidate key."""

    id: str
    type: str
    content: str
    promoted_at: str
    first_seen_at: str
    occurrences: int = 0
    score: float = 0.0
    session_ids: List[str] = field(default_factory=list)
    source_entries: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LongTermMemory":
        if not isinstance(data, dict):
            raise ValueError("long-term memory must be an object")
        for key in ("id", "type", "content", "promoted_at"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise ValueError(f"long-term memory missing '{key}'")
        parse_datetime(data["promoted_at"])
        return cls(
            id=data["id"],
            type=data["type"],
            content=data["content"],
            promoted_at=data["promoted_at"],
            first_seen_at=data.get("first_seen_at") or data["promoted_at"],
            occurrences=int(data.get("occurrences", 0)),
            score=float(data.get("score", 0.0)),
            session_ids=[str(s) for s in data.get("session_ids") or []],
            source_entries=[str(s) for s in data.get("source_entries") or []],
        )


@dataclass
class ReadResult:
    """Records read from a tolerant log, plus how many lines were skipped."""

    records: List[Any] = field(default_factory=list)
    skipped: int = 0
    # raw text of the skipped lines, kept so a rewrite can quarantine them
    malformed: List[str] = field(default_factory=list, repr=False)
