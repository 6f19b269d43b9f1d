from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

STATUS_IDLE = "idle"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"

MAX_TAGS = 10
MAX_TAG_CHARS = 48


def to_dt(value: Any) -> datetime:
    """Parse a message/row timestamp to an aware UTC datetime.

    Naive values are taken as UTC. Raises ValueError when the value cannot be
    read as an absolute instant.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            parsed = None
            for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%m/%d/%Y %H:%M:%S", "%m/%d/%Y %H:%M", "%m/%d/%y %H:%M"):
                try:
                    parsed = datetime.strptime(raw, fmt)
                    break
                except ValueError:
                    continue
            if parsed is None:
                raise ValueError(f"Unparseable timestamp: {raw!r}")
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise ValueError(f"Unparseable timestamp: {value!r}")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    id: int
    timestamp: datetime
    sender: str
    content: str

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> datetime:
        return to_dt(value)


class ConversationChunk(BaseModel):
    chunk_id: str
    messages: list[Message]
    start_time: datetime
    end_time: datetime
    participants: list[str]
    chunk_text: str

    @property
    def message_count(self) -> int:
        return len(self.messages)


class ChunkAnalysis(BaseModel):
    """Structured metadata for one conversation chunk.

    Every numeric field is range-checked on construction; a payload that fails
    validation never reaches the store, the caller substitutes FALLBACK_ANALYSIS.
    """

    model_config = ConfigDict(frozen=True)

    context_type: str = Field(min_length=1, max_length=120)
    emotional_intensity: int = Field(ge=1, le=10)
    communication_pattern: str = Field(min_length=1, max_length=300)
    temporal_context: str = Field(min_length=1, max_length=120)
    relationship_dynamics: str = Field(min_length=1, max_length=600)
    tags: list[str]
    conflict_level: int = Field(ge=0, le=5)
    intimacy_level: int = Field(ge=1, le=10)
    support_level: int = Field(ge=1, le=10)

    @field_validator("context_type", "communication_pattern", "temporal_context", "relationship_dynamics", mode="before")
    @classmethod
    def _strip_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("emotional_intensity", "conflict_level", "intimacy_level", "support_level", mode="before")
    @classmethod
    def _reject_bool(cls, value: Any) -> Any:
        # bool is an int subclass; "true" is never a valid level.
        if isinstance(value, bool):
            raise ValueError("boolean is not a level")
        return value

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> list[str]:
        if not isinstance(value, (list, tuple)):
            raise ValueError("tags must be a list")
        out: list[str] = []
        seen: set[str] = set()
        for raw in value:
            if not isinstance(raw, str):
                raise ValueError("tags must be strings")
            tag = raw.strip()[:MAX_TAG_CHARS]
            if not tag or tag.lower() in seen:
                continue
            seen.add(tag.lower())
            out.append(tag)
            if len(out) >= MAX_TAGS:
                break
        return out

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["ChunkAnalysis"]:
        """Validate a classifier payload (camelCase or snake_case keys)."""
        if not isinstance(payload, dict):
            return None
        data = {_ANALYSIS_ALIASES.get(key, key): value for key, value in payload.items()}
        try:
            return cls.model_validate(data)
        except ValidationError:
            return None

    def to_metadata(self) -> dict:
        return {
            "context_type": self.context_type,
            "emotional_intensity": self.emotional_intensity,
            "communication_pattern": self.communication_pattern,
            "temporal_context": self.temporal_context,
            "tags": ",".join(self.tags),
            "conflict_level": self.conflict_level,
            "intimacy_level": self.intimacy_level,
            "support_level": self.support_level,
        }


_ANALYSIS_ALIASES = {
    "contextType": "context_type",
    "emotionalIntensity": "emotional_intensity",
    "communicationPattern": "communication_pattern",
    "temporalContext": "temporal_context",
    "relationshipDynamics": "relationship_dynamics",
    "conflictLevel": "conflict_level",
    "intimacyLevel": "intimacy_level",
    "supportLevel": "support_level",
}

FALLBACK_ANALYSIS = ChunkAnalysis(
    context_type="general_conversation",
    emotional_intensity=5,
    communication_pattern="standard_exchange",
    temporal_context="unknown_time",
    relationship_dynamics="neutral_interaction",
    tags=["conversation"],
    conflict_level=0,
    intimacy_level=5,
    support_level=5,
)


def fallback_analysis() -> ChunkAnalysis:
    return FALLBACK_ANALYSIS.model_copy(deep=True)


class StepOutcome(BaseModel):
    ok: bool = False
    error: str = ""


class PersistResult(BaseModel):
    chunk_id: str
    chunk_row: StepOutcome = Field(default_factory=StepOutcome)
    vector_entry: StepOutcome = Field(default_factory=StepOutcome)
    message_annotations: StepOutcome = Field(default_factory=StepOutcome)
    messages_updated: int = 0

    @property
    def analytics_ok(self) -> bool:
        return self.chunk_row.ok and self.message_annotations.ok


class ProgressStatus(BaseModel):
    run_id: str
    status: str = STATUS_IDLE
    total_chunks: int = 0
    processed_chunks: int = 0
    failed_chunks: int = 0
    fallback_analyses: int = 0
    fallback_embeddings: int = 0
    vector_failures: int = 0
    error: str = ""
    started_at: datetime = Field(default_factory=now_utc)
    last_update_at: datetime = Field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class SearchHit(BaseModel):
    chunk_id: str
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)
