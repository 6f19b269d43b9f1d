import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from backend.intelligence import messages, pipeline
from backend.intelligence import search as chunk_search

router = APIRouter(prefix="/api/v1/intelligence", tags=["intelligence"])
logger = logging.getLogger(__name__)


def _internal_error(message: str, exc: Exception | None = None) -> HTTPException:
    if exc is not None:
        logger.exception(message)
    return HTTPException(status_code=500, detail=message)


def _bad_request(message: str, exc: Exception | None = None) -> HTTPException:
    if exc is not None:
        logger.warning(f"{message}: {exc}")
    return HTTPException(status_code=400, detail=message)


class VectorizePayload(BaseModel):
    wait: bool = False
    batch_size: Optional[int] = Field(default=None, ge=1, le=50)
    batch_delay_seconds: Optional[float] = Field(default=None, ge=0.0, le=60.0)


class SearchPayload(BaseModel):
    query: str
    top_k: Optional[int] = Field(default=None, ge=1, le=100)


@router.post("/vectorize")
async def vectorize(payload: Optional[VectorizePayload] = None):
    """Start a full analysis pass; with `wait` the run summary is returned."""
    payload = payload or VectorizePayload()
    options = {
        "batch_size": payload.batch_size,
        "batch_delay_seconds": payload.batch_delay_seconds,
    }
    try:
        if payload.wait:
            return await pipeline.run_full_pass_singleflight(wait_if_busy=False, **options)
        return await pipeline.start_full_pass_in_background(**options)
    except Exception as e:
        raise _internal_error("Failed to start conversation analysis.", e)


@router.get("/status")
async def status(run_id: Optional[str] = None):
    try:
        return pipeline.get_status(run_id)
    except Exception as e:
        raise _internal_error("Failed to read analysis status.", e)


@router.post("/search")
async def search_chunks(payload: SearchPayload):
    if not payload.query.strip():
        raise _bad_request("query must not be empty")
    try:
        hits = await chunk_search.search(payload.query, top_k=payload.top_k)
        return {
            "query": payload.query,
            "count": len(hits),
            "results": [hit.model_dump() for hit in hits],
        }
    except Exception as e:
        raise _internal_error("Failed to search conversation chunks.", e)


@router.get("/chunks/{chunk_id}")
async def get_chunk(chunk_id: str):
    try:
        chunk = messages.get_chunk(chunk_id)
    except Exception as e:
        raise _internal_error("Failed to load conversation chunk.", e)
    if chunk is None:
        raise HTTPException(status_code=404, detail="Chunk not found")
    return chunk
