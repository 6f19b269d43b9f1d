from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from backend.config import load_config
from backend.intelligence.models import ConversationChunk, Message

DEFAULT_BREAK_GAP_MINUTES = 90
DEFAULT_DAY_BREAK_GAP_MINUTES = 20
DEFAULT_MAX_CHUNK_MESSAGES = 12


@dataclass(frozen=True)
class SegmentationPolicy:
    break_gap_minutes: float = DEFAULT_BREAK_GAP_MINUTES
    day_break_gap_minutes: float = DEFAULT_DAY_BREAK_GAP_MINUTES
    max_chunk_messages: int = DEFAULT_MAX_CHUNK_MESSAGES

    @classmethod
    def from_config(cls) -> "SegmentationPolicy":
        cfg = load_config()
        chunking = cfg.get("chunking", {}) if isinstance(cfg.get("chunking"), dict) else {}
        return cls(
            break_gap_minutes=float(chunking.get("break_gap_minutes", DEFAULT_BREAK_GAP_MINUTES)),
            day_break_gap_minutes=float(chunking.get("day_break_gap_minutes", DEFAULT_DAY_BREAK_GAP_MINUTES)),
            max_chunk_messages=max(1, int(chunking.get("max_chunk_messages", DEFAULT_MAX_CHUNK_MESSAGES))),
        )


def is_conversation_break(current: Message, nxt: Message, policy: SegmentationPolicy) -> bool:
    minutes = (nxt.timestamp - current.timestamp).total_seconds() / 60.0
    if minutes > policy.break_gap_minutes:
        return True
    if nxt.timestamp.date() != current.timestamp.date() and minutes > policy.day_break_gap_minutes:
        return True
    return False


def render_chunk_text(messages: Iterable[Message]) -> str:
    return "\n".join(f"[{m.timestamp.isoformat()}] {m.sender}: {m.content}" for m in messages)


def build_chunk(messages: list[Message]) -> ConversationChunk:
    ordered = sorted(messages, key=lambda m: (m.timestamp, m.id))
    participants: list[str] = []
    for message in ordered:
        if message.sender not in participants:
            participants.append(message.sender)
    return ConversationChunk(
        chunk_id=f"chunk_{ordered[0].id}_{ordered[-1].id}",
        messages=ordered,
        start_time=ordered[0].timestamp,
        end_time=ordered[-1].timestamp,
        participants=participants,
        chunk_text=render_chunk_text(ordered),
    )


def segment(messages: list[Message], policy: Optional[SegmentationPolicy] = None) -> list[ConversationChunk]:
    """Partition a timestamp-ordered message list into conversation chunks.

    A chunk closes after message i when there is no message i+1, when the gap
    to i+1 is a conversation break, or when the buffer holds
    `max_chunk_messages`. Lone messages become one-message chunks.
    """
    policy = policy or SegmentationPolicy()
    ordered = sorted(messages, key=lambda m: (m.timestamp, m.id))
    chunks: list[ConversationChunk] = []
    buffer: list[Message] = []

    for i, message in enumerate(ordered):
        buffer.append(message)
        nxt = ordered[i + 1] if i + 1 < len(ordered) else None
        should_close = (
            nxt is None
            or is_conversation_break(message, nxt, policy)
            or len(buffer) >= policy.max_chunk_messages
        )
        if should_close:
            chunks.append(build_chunk(buffer))
            buffer = []

    return chunks
