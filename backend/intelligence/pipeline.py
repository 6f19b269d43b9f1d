from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Optional

from backend.config import load_config
from backend.intelligence import classifier, embedder
from backend.intelligence.messages import load_eligible_messages
from backend.intelligence.models import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_PROCESSING,
    ConversationChunk,
    ProgressStatus,
    now_utc,
)
from backend.intelligence.progress import get_status as _get_run_status
from backend.intelligence.progress import prune_runs, save_status
from backend.intelligence.segmenter import SegmentationPolicy, segment
from backend.intelligence.writer import persist

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 3
DEFAULT_BATCH_DELAY_SECONDS = 2.0
PROGRESS_LOG_EVERY = 10

_RUN_LOCK: asyncio.Lock | None = None
_active_run_id: Optional[str] = None
_background_tasks: dict[str, asyncio.Task] = {}
_pending_run_ids: set[str] = set()


def _get_run_lock() -> asyncio.Lock:
    global _RUN_LOCK
    if _RUN_LOCK is None:
        _RUN_LOCK = asyncio.Lock()
    return _RUN_LOCK


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:16]}"


def _pipeline_settings(batch_size: Optional[int], batch_delay_seconds: Optional[float]) -> tuple[int, float]:
    cfg = load_config()
    pipeline_cfg = cfg.get("pipeline", {}) if isinstance(cfg.get("pipeline"), dict) else {}
    size = batch_size if batch_size is not None else pipeline_cfg.get("batch_size", DEFAULT_BATCH_SIZE)
    delay = (
        batch_delay_seconds
        if batch_delay_seconds is not None
        else pipeline_cfg.get("batch_delay_seconds", DEFAULT_BATCH_DELAY_SECONDS)
    )
    return max(1, int(size)), max(0.0, float(delay))


async def process_chunk(
    chunk: ConversationChunk,
    *,
    run_id: str,
    classifier_runtime: dict,
    embedding_runtime: dict,
) -> dict:
    """classify -> embed -> persist for one chunk. Raises on persist failure."""
    analysis, analysis_fallback = await classifier.classify_with_source(chunk, classifier_runtime)
    text = embedder.build_embedding_text(chunk, analysis)
    vector, embedding_source = await embedder.embed_with_source(text, embedding_runtime)
    result = await persist(
        chunk,
        analysis,
        vector,
        run_id=run_id,
        analysis_source="fallback" if analysis_fallback else "classifier",
        embedding_source=embedding_source,
    )
    return {
        "chunk_id": chunk.chunk_id,
        "analysis_fallback": analysis_fallback,
        "embedding_source": embedding_source,
        "vector_ok": result.vector_entry.ok,
    }


def _summary(status: ProgressStatus, started: float, message: str) -> dict[str, Any]:
    total = status.total_chunks
    processed = status.processed_chunks
    return {
        "status": status.status,
        "run_id": status.run_id,
        "processed_chunks": processed,
        "total_chunks": total,
        "failed_chunks": status.failed_chunks,
        "fallback_analyses": status.fallback_analyses,
        "fallback_embeddings": status.fallback_embeddings,
        "vector_failures": status.vector_failures,
        "success_rate": round(processed / total, 4) if total else 1.0,
        "duration_ms": int((time.monotonic() - started) * 1000),
        "error": status.error,
        "message": message,
    }


async def run_full_pass(
    run_id: Optional[str] = None,
    *,
    batch_size: Optional[int] = None,
    batch_delay_seconds: Optional[float] = None,
    policy: Optional[SegmentationPolicy] = None,
) -> dict:
    """Segment every eligible message and analyse, embed and persist each chunk.

    Chunks run `batch_size` at a time; a failing chunk is logged and left out of
    `processed_chunks` without disturbing its siblings. The run ends as
    `completed` (possibly with processed < total) or, when something outside
    the per-chunk guard fails, as `error`.
    """
    run_id = run_id or new_run_id()
    started = time.monotonic()
    status = ProgressStatus(run_id=run_id, status=STATUS_PROCESSING)
    size, delay = _pipeline_settings(batch_size, batch_delay_seconds)

    try:
        logger.info(f"[{run_id}] Starting full conversation analysis pass")
        messages = load_eligible_messages()
        chunks = segment(messages, policy or SegmentationPolicy.from_config())
        logger.info(f"[{run_id}] {len(messages)} messages -> {len(chunks)} conversation chunks")

        status.total_chunks = len(chunks)
        await save_status(status)

        classifier_runtime = classifier.resolve_runtime()
        embedding_runtime = embedder.resolve_runtime()

        for start in range(0, len(chunks), size):
            batch = chunks[start:start + size]
            outcomes = await asyncio.gather(
                *[
                    process_chunk(
                        chunk,
                        run_id=run_id,
                        classifier_runtime=classifier_runtime,
                        embedding_runtime=embedding_runtime,
                    )
                    for chunk in batch
                ],
                return_exceptions=True,
            )
            for chunk, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning(f"[{run_id}] Error processing chunk {chunk.chunk_id}: {outcome}")
                    status.failed_chunks += 1
                    continue
                if isinstance(outcome, BaseException):
                    raise outcome
                status.processed_chunks += 1
                if outcome.get("analysis_fallback"):
                    status.fallback_analyses += 1
                if outcome.get("embedding_source") == embedder.SOURCE_FALLBACK:
                    status.fallback_embeddings += 1
                if not outcome.get("vector_ok", True):
                    status.vector_failures += 1

            status.last_update_at = now_utc()
            await save_status(status)

            done = start + len(batch)
            if done % PROGRESS_LOG_EVERY < size or done >= len(chunks):
                logger.info(f"[{run_id}] Processed {status.processed_chunks}/{len(chunks)} chunks")

            if done < len(chunks) and delay > 0:
                await asyncio.sleep(delay)

        status.status = STATUS_COMPLETED
        status.completed_at = now_utc()
        status.last_update_at = status.completed_at
        await save_status(status)
        await _prune_history(run_id)
        message = f"Analyzed {status.processed_chunks} of {status.total_chunks} conversation chunks"
        logger.info(f"[{run_id}] {message}")
        return _summary(status, started, message)

    except Exception as e:
        logger.error(f"[{run_id}] Conversation analysis pass failed: {e}")
        status.status = STATUS_ERROR
        status.error = str(e)[:500] or e.__class__.__name__
        status.failed_at = now_utc()
        status.last_update_at = status.failed_at
        try:
            await save_status(status)
        except Exception as save_error:
            logger.error(f"[{run_id}] Could not record error status: {save_error}")
        await _prune_history(run_id)
        return _summary(status, started, "Conversation analysis pass failed")


async def _prune_history(run_id: str) -> None:
    try:
        await prune_runs()
    except Exception as e:
        logger.warning(f"[{run_id}] Could not prune old pipeline runs: {e}")


async def run_full_pass_singleflight(*, wait_if_busy: bool = False, **kwargs) -> dict:
    """Serialize full passes; a second caller gets `busy` unless it waits."""
    global _active_run_id
    lock = _get_run_lock()
    if lock.locked() and not wait_if_busy:
        return {
            "status": "busy",
            "run_id": _active_run_id,
            "message": "A full analysis pass is already running.",
        }

    async with lock:
        run_id = kwargs.pop("run_id", None) or new_run_id()
        _active_run_id = run_id
        try:
            return await run_full_pass(run_id, **kwargs)
        finally:
            _active_run_id = None


async def start_full_pass_in_background(**kwargs) -> dict:
    """Record a `processing` row for a new run, schedule it, and return its id.

    The row exists before this returns, so an immediate status poll for the
    run id never reports it as unknown.
    """
    busy = (
        _get_run_lock().locked()
        or bool(_pending_run_ids)
        or any(not t.done() for t in _background_tasks.values())
    )
    if busy:
        return {
            "status": "busy",
            "run_id": _active_run_id or next(iter(_pending_run_ids), None),
            "message": "A full analysis pass is already running.",
        }
    run_id = new_run_id()
    _pending_run_ids.add(run_id)
    try:
        await save_status(ProgressStatus(run_id=run_id, status=STATUS_PROCESSING))
        task = asyncio.create_task(run_full_pass_singleflight(run_id=run_id, **kwargs))
        _background_tasks[run_id] = task
        task.add_done_callback(lambda _t: _background_tasks.pop(run_id, None))
    finally:
        _pending_run_ids.discard(run_id)
    return {"status": "accepted", "run_id": run_id}


def get_status(run_id: Optional[str] = None) -> dict:
    return _get_run_status(run_id)
