from __future__ import annotations

import json
import logging

from backend.database.client import CHUNKS_TABLE, MESSAGES_TABLE, VECTORS_TABLE, escape_sql, get_db
from backend.intelligence.models import (
    ChunkAnalysis,
    ConversationChunk,
    PersistResult,
    StepOutcome,
    now_utc,
)
from backend.intelligence.write_queue import enqueue_write

logger = logging.getLogger(__name__)

CONFLICT_FLAG_THRESHOLD = 2


class ChunkPersistError(RuntimeError):
    """The chunk row or the message annotations could not be written."""

    def __init__(self, message: str, result: PersistResult):
        super().__init__(message)
        self.result = result


def sentiment_for(analysis: ChunkAnalysis) -> str:
    if analysis.conflict_level > 3:
        return "negative"
    if analysis.emotional_intensity > 7 and analysis.intimacy_level > 6:
        return "positive"
    if analysis.emotional_intensity < 4:
        return "neutral"
    return "mixed"


def relationship_context_for(analysis: ChunkAnalysis) -> str:
    return f"{analysis.relationship_dynamics} ({analysis.communication_pattern})"


def build_chunk_row(chunk: ConversationChunk, analysis: ChunkAnalysis, run_id: str, analysis_source: str) -> dict:
    return {
        "start_time": chunk.start_time,
        "end_time": chunk.end_time,
        "message_count": chunk.message_count,
        "participants": ",".join(chunk.participants),
        "chunk_text": chunk.chunk_text,
        "context_type": analysis.context_type,
        "emotional_intensity": analysis.emotional_intensity,
        "communication_pattern": analysis.communication_pattern,
        "temporal_context": analysis.temporal_context,
        "relationship_dynamics": analysis.relationship_dynamics,
        "tags_json": json.dumps(analysis.tags, ensure_ascii=False),
        "conflict_level": analysis.conflict_level,
        "intimacy_level": analysis.intimacy_level,
        "support_level": analysis.support_level,
        "analysis_source": analysis_source,
        "run_id": run_id,
    }


def build_vector_row(
    chunk: ConversationChunk,
    analysis: ChunkAnalysis,
    embedding: list[float],
    embedding_source: str,
) -> dict:
    return {
        "id": chunk.chunk_id,
        "chunk_id": chunk.chunk_id,
        "start_time": chunk.start_time.isoformat(),
        "end_time": chunk.end_time.isoformat(),
        "message_count": chunk.message_count,
        "participants": ",".join(chunk.participants),
        **analysis.to_metadata(),
        "embedding_source": embedding_source,
        "updated_at": now_utc(),
        "vector": list(embedding),
    }


def build_message_annotation(chunk: ConversationChunk, analysis: ChunkAnalysis) -> dict:
    return {
        "sentiment": sentiment_for(analysis),
        "category": analysis.context_type,
        "tag": ",".join(analysis.tags),
        "emotional_score": analysis.emotional_intensity,
        "tags_json": json.dumps(analysis.tags, ensure_ascii=False),
        "conflict_indicator": analysis.conflict_level > CONFLICT_FLAG_THRESHOLD,
        "relationship_context": relationship_context_for(analysis),
        "chunk_id": chunk.chunk_id,
        "processed_at": now_utc(),
    }


async def _upsert_chunk_row(chunk: ConversationChunk, analysis: ChunkAnalysis, run_id: str, analysis_source: str):
    values = build_chunk_row(chunk, analysis, run_id, analysis_source)
    escaped = escape_sql(chunk.chunk_id)

    async def _write_op():
        tbl = get_db().open_table(CHUNKS_TABLE)
        now = now_utc()
        rows = tbl.search().where(f"id = '{escaped}'").limit(1).to_list()
        if rows:
            tbl.update(where=f"id = '{escaped}'", values={**values, "updated_at": now})
        else:
            tbl.add([{"id": chunk.chunk_id, **values, "created_at": now, "updated_at": now}])

    await enqueue_write(_write_op)


async def _upsert_vector(chunk: ConversationChunk, analysis: ChunkAnalysis, embedding: list[float], embedding_source: str):
    row = build_vector_row(chunk, analysis, embedding, embedding_source)
    escaped = escape_sql(chunk.chunk_id)

    async def _write_op():
        tbl = get_db().open_table(VECTORS_TABLE)
        # Vector columns cannot be set through update(); replace the row instead.
        tbl.delete(f"id = '{escaped}'")
        tbl.add([row])

    await enqueue_write(_write_op)


async def _annotate_messages(chunk: ConversationChunk, analysis: ChunkAnalysis) -> int:
    values = build_message_annotation(chunk, analysis)
    ids = ", ".join(str(int(m.id)) for m in chunk.messages)

    async def _write_op():
        tbl = get_db().open_table(MESSAGES_TABLE)
        tbl.update(where=f"id IN ({ids})", values=values)
        return len(chunk.messages)

    return await enqueue_write(_write_op)


async def persist(
    chunk: ConversationChunk,
    analysis: ChunkAnalysis,
    embedding: list[float],
    *,
    run_id: str = "",
    analysis_source: str = "classifier",
    embedding_source: str = "service",
) -> PersistResult:
    """Write the chunk row, its vector entry and the member-message annotations.

    All three writes are keyed on chunk_id and replace earlier results. They are
    independent: a vector index failure is logged and recorded in the result;
    a failure of either analytics write raises ChunkPersistError after the
    remaining steps have been attempted.
    """
    result = PersistResult(chunk_id=chunk.chunk_id)

    try:
        await _upsert_chunk_row(chunk, analysis, run_id, analysis_source)
        result.chunk_row = StepOutcome(ok=True)
    except Exception as e:
        logger.warning(f"Chunk row write failed for {chunk.chunk_id}: {e}")
        result.chunk_row = StepOutcome(ok=False, error=str(e)[:500])

    try:
        await _upsert_vector(chunk, analysis, embedding, embedding_source)
        result.vector_entry = StepOutcome(ok=True)
    except Exception as e:
        logger.warning(f"Vector index write failed for {chunk.chunk_id}, chunk stays unsearchable: {e}")
        result.vector_entry = StepOutcome(ok=False, error=str(e)[:500])

    try:
        result.messages_updated = int(await _annotate_messages(chunk, analysis) or 0)
        result.message_annotations = StepOutcome(ok=True)
    except Exception as e:
        logger.warning(f"Message annotation failed for {chunk.chunk_id}: {e}")
        result.message_annotations = StepOutcome(ok=False, error=str(e)[:500])

    if not result.analytics_ok:
        failed = [
            name
            for name, outcome in (("chunk_row", result.chunk_row), ("message_annotations", result.message_annotations))
            if not outcome.ok
        ]
        raise ChunkPersistError(f"Persist failed for {chunk.chunk_id}: {', '.join(failed)}", result)
    return result
