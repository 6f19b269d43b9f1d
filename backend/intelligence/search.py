from __future__ import annotations

import logging
from typing import Optional

from backend.config import load_config
from backend.database.client import VECTORS_TABLE, get_db, table_names
from backend.intelligence.embedder import embed
from backend.intelligence.models import SearchHit

logger = logging.getLogger(__name__)

MAX_TOP_K = 100


def _default_top_k() -> int:
    cfg = load_config()
    search_cfg = cfg.get("search", {}) if isinstance(cfg.get("search"), dict) else {}
    return int(search_cfg.get("default_top_k", 10) or 10)


async def search(query: str, top_k: Optional[int] = None) -> list[SearchHit]:
    """Nearest conversation chunks to `query`, best match first."""
    query = str(query or "").strip()
    if not query:
        return []
    limit = max(1, min(MAX_TOP_K, int(top_k if top_k is not None else _default_top_k())))

    db = get_db()
    if VECTORS_TABLE not in table_names(db):
        return []

    query_vector = await embed(query)
    rows = (
        db.open_table(VECTORS_TABLE)
        .search(query_vector)
        .distance_type("cosine")
        .limit(limit)
        .to_list()
    )

    hits: list[SearchHit] = []
    for row in rows:
        distance = float(row.get("_distance") if row.get("_distance") is not None else 1.0)
        metadata = {k: v for k, v in row.items() if k not in ("vector", "_distance")}
        if metadata.get("updated_at") is not None and hasattr(metadata["updated_at"], "isoformat"):
            metadata["updated_at"] = metadata["updated_at"].isoformat()
        hits.append(
            SearchHit(
                chunk_id=str(row.get("chunk_id") or row.get("id") or ""),
                score=round(1.0 - distance, 6),
                metadata=metadata,
            )
        )
    logger.info(f"Search returned {len(hits)} chunks (top_k={limit})")
    return hits
