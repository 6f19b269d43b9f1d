# backend/intelligence/embedder.py
from __future__ import annotations

import asyncio
import logging
import math
import os
from typing import Any, Optional

import httpx

from backend.config import load_config
from backend.database.schema import EMBEDDING_DIM
from backend.intelligence.models import ChunkAnalysis, ConversationChunk

logger = logging.getLogger(__name__)

SOURCE_SERVICE = "service"
SOURCE_LOCAL = "local"
SOURCE_FALLBACK = "fallback"

_model = None
_model_name: Optional[str] = None
_status: str = "idle"


def get_status() -> str:
    if _model is not None:
        return "ready"
    return _status


def _timeout_seconds(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Invalid embeddings timeout {value!r}; using 30s")
        return 30.0


def resolve_runtime(embeddings_cfg: Optional[dict] = None) -> dict:
    if embeddings_cfg is None:
        cfg = load_config()
        embeddings_cfg = cfg.get("embeddings", {}) if isinstance(cfg.get("embeddings"), dict) else {}
    provider = str(embeddings_cfg.get("provider") or "openai").strip().lower()
    if provider not in {"openai", "local", "fallback"}:
        provider = "openai"
    api_key = str(embeddings_cfg.get("api_key") or "").strip() or os.environ.get("OPENAI_API_KEY", "")
    api_base_url = (
        str(embeddings_cfg.get("api_base_url") or "").strip()
        or os.environ.get("OPENAI_BASE_URL", "")
        or "https://api.openai.com/v1"
    )
    return {
        "provider": provider,
        "model": str(embeddings_cfg.get("model") or "text-embedding-3-small").strip(),
        "api_key": api_key,
        "api_base_url": api_base_url.rstrip("/"),
        "local_model": str(embeddings_cfg.get("local_model") or "BAAI/bge-large-en-v1.5").strip(),
        "timeout_seconds": _timeout_seconds(embeddings_cfg.get("timeout_seconds", 30)),
    }


def build_embedding_text(chunk: ConversationChunk, analysis: ChunkAnalysis) -> str:
    return "\n".join(
        [
            f"Relationship context: {analysis.context_type}",
            f"Communication pattern: {analysis.communication_pattern}",
            f"Temporal context: {analysis.temporal_context}",
            f"Relationship dynamics: {analysis.relationship_dynamics}",
            f"Emotional intensity: {analysis.emotional_intensity}/10",
            f"Intimacy level: {analysis.intimacy_level}/10",
            f"Tags: {', '.join(analysis.tags)}",
            "",
            "Conversation:",
            chunk.chunk_text,
        ]
    )


def deterministic_embedding(text: str, dim: int = EMBEDDING_DIM) -> list[float]:
    """Hash-based stand-in vector used when no embedding service answers.

    Not semantic, but stable: the same text always gives the same unit vector,
    so re-runs stay idempotent and cosine scores stay in range.
    """
    vector = [0.0] * dim
    for i, word in enumerate(str(text or "").lower().split()):
        for j, char in enumerate(word):
            code = ord(char)
            index = (code * (i + 1) * (j + 1)) % dim
            vector[index] += math.sin(code * 0.1) * 0.1

    magnitude = math.sqrt(sum(v * v for v in vector))
    if magnitude == 0:
        return vector
    return [v / magnitude for v in vector]


def _validate_vector(values: Any) -> list[float]:
    if not isinstance(values, (list, tuple)) or len(values) != EMBEDDING_DIM:
        size = len(values) if isinstance(values, (list, tuple)) else "n/a"
        raise ValueError(f"Embedding has wrong shape (expected {EMBEDDING_DIM}, got {size})")
    out = [float(v) for v in values]
    if not all(math.isfinite(v) for v in out):
        raise ValueError("Embedding contains non-finite values")
    return out


async def _call_openai_embeddings(text: str, runtime: dict) -> list[float]:
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {runtime.get('api_key')}",
    }
    body = {
        "model": runtime.get("model"),
        "input": text,
        "dimensions": EMBEDDING_DIM,
    }
    async with httpx.AsyncClient(timeout=runtime.get("timeout_seconds", 30.0)) as client:
        res = await client.post(f"{runtime.get('api_base_url')}/embeddings", headers=headers, json=body)
        if res.status_code >= 400:
            raise RuntimeError(f"Embeddings request failed ({res.status_code})")
        data = res.json()
    rows = data.get("data") if isinstance(data, dict) else None
    if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
        raise ValueError("Embeddings response has no data")
    return _validate_vector(rows[0].get("embedding"))


def get_model(model_name: str):
    global _model, _model_name, _status
    if _model is None or _model_name != model_name:
        try:
            # Lazy import to speed up startup
            from sentence_transformers import SentenceTransformer

            _status = "loading"
            _model = SentenceTransformer(model_name)
            _model_name = model_name
            _status = "ready"
        except Exception:
            _status = "error"
            raise
    return _model


def _encode_local(text: str, model_name: str) -> list[float]:
    values = get_model(model_name).encode(text, normalize_embeddings=True).tolist()
    return _validate_vector(values)


async def embed_with_source(text: str, runtime: Optional[dict] = None) -> tuple[list[float], str]:
    """Embed text; the second value names the path that produced the vector."""
    provider = None
    try:
        runtime = runtime or resolve_runtime()
        provider = runtime.get("provider")
        if provider == "local":
            vector = await asyncio.to_thread(_encode_local, text, runtime.get("local_model"))
            return vector, SOURCE_LOCAL
        if provider == "openai" and runtime.get("api_key"):
            vector = await _call_openai_embeddings(text, runtime)
            return vector, SOURCE_SERVICE
        if provider == "openai":
            logger.warning("Embedding API key not configured; using deterministic fallback embedding")
    except Exception as e:
        logger.warning(f"Embedding provider '{provider}' failed, using deterministic fallback: {e}")
    return deterministic_embedding(text), SOURCE_FALLBACK


async def embed(text: str, runtime: Optional[dict] = None) -> list[float]:
    vector, _ = await embed_with_source(text, runtime)
    return vector
