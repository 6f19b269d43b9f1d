from lancedb.pydantic import LanceModel, Vector
from datetime import datetime
from typing import Optional

# Output size requested from text-embedding-3-small, and native size of bge-large-en-v1.5
EMBEDDING_DIM = 1024


class Message(LanceModel):
    id: int
    date: str
    timestamp: datetime
    sender: str
    content: str
    type: str
    notes: str
    # Denormalised copy of the owning chunk's analysis
    sentiment: Optional[str]
    category: Optional[str]
    tag: Optional[str]
    emotional_score: Optional[int]
    tags_json: Optional[str]
    conflict_indicator: Optional[bool]
    relationship_context: Optional[str]
    chunk_id: Optional[str]
    processed_at: Optional[datetime]


class ConversationChunkRecord(LanceModel):
    id: str  # chunk_id
    start_time: datetime
    end_time: datetime
    message_count: int
    participants: str
    chunk_text: str
    context_type: str
    emotional_intensity: int
    communication_pattern: str
    temporal_context: str
    relationship_dynamics: str
    tags_json: str
    conflict_level: int
    intimacy_level: int
    support_level: int
    analysis_source: str  # classifier | fallback
    run_id: str
    created_at: datetime
    updated_at: datetime


class ChunkVector(LanceModel):
    id: str  # chunk_id
    chunk_id: str
    start_time: str
    end_time: str
    message_count: int
    participants: str
    context_type: str
    emotional_intensity: int
    communication_pattern: str
    temporal_context: str
    tags: str
    conflict_level: int
    intimacy_level: int
    support_level: int
    embedding_source: str  # service | local | fallback
    updated_at: datetime
    vector: Vector(EMBEDDING_DIM)


class PipelineRun(LanceModel):
    id: str  # run_id
    status: str  # idle | processing | completed | error
    total_chunks: int
    processed_chunks: int
    failed_chunks: int
    fallback_analyses: int
    fallback_embeddings: int
    vector_failures: int
    error: str
    started_at: datetime
    last_update_at: datetime
    completed_at: Optional[datetime]
    failed_at: Optional[datetime]
