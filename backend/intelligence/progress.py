from __future__ import annotations

import logging
from typing import Any, Optional

from backend.database.client import RUNS_TABLE, escape_sql, get_db, table_names
from backend.intelligence.models import STATUS_IDLE, ProgressStatus, to_dt
from backend.intelligence.write_queue import enqueue_write

logger = logging.getLogger(__name__)

MAX_RUN_HISTORY = 50


def _public_status(row: dict) -> dict:
    def _iso(value: Any) -> Optional[str]:
        if value is None:
            return None
        try:
            return to_dt(value).isoformat()
        except ValueError:
            return None

    total = int(row.get("total_chunks") or 0)
    processed = int(row.get("processed_chunks") or 0)
    return {
        "run_id": str(row.get("id") or row.get("run_id") or ""),
        "status": str(row.get("status") or STATUS_IDLE),
        "total_chunks": total,
        "processed_chunks": processed,
        "failed_chunks": int(row.get("failed_chunks") or 0),
        "fallback_analyses": int(row.get("fallback_analyses") or 0),
        "fallback_embeddings": int(row.get("fallback_embeddings") or 0),
        "vector_failures": int(row.get("vector_failures") or 0),
        "progress": round(processed / total, 4) if total > 0 else 0.0,
        "error": str(row.get("error") or ""),
        "started_at": _iso(row.get("started_at")),
        "last_update_at": _iso(row.get("last_update_at")),
        "completed_at": _iso(row.get("completed_at")),
        "failed_at": _iso(row.get("failed_at")),
    }


async def save_status(status: ProgressStatus) -> None:
    """Upsert the status row for one run (latest write wins)."""
    values = status.model_dump(exclude={"run_id"})
    escaped = escape_sql(status.run_id)

    async def _write_op():
        tbl = get_db().open_table(RUNS_TABLE)
        rows = tbl.search().where(f"id = '{escaped}'").limit(1).to_list()
        if rows:
            tbl.update(where=f"id = '{escaped}'", values=values)
        else:
            tbl.add([{"id": status.run_id, **values}])

    await enqueue_write(_write_op)


def get_status(run_id: Optional[str] = None) -> dict:
    """Status of one run, or of the most recently started run when no id is given."""
    db = get_db()
    if RUNS_TABLE not in table_names(db):
        return {"status": STATUS_IDLE, "message": "No processing in progress"}
    tbl = db.open_table(RUNS_TABLE)
    if run_id:
        rows = tbl.search().where(f"id = '{escape_sql(run_id)}'").limit(1).to_list()
        if not rows:
            return {"run_id": run_id, "status": STATUS_IDLE, "message": "Unknown run"}
        return _public_status(rows[0])

    total = int(tbl.count_rows() or 0)
    if total <= 0:
        return {"status": STATUS_IDLE, "message": "No processing in progress"}
    heads = tbl.search().select(["id", "started_at"]).limit(total).to_list()
    latest = max(heads, key=lambda r: to_dt(r.get("started_at")))
    rows = tbl.search().where(f"id = '{escape_sql(latest.get('id'))}'").limit(1).to_list()
    return _public_status(rows[0] if rows else latest)


async def prune_runs(keep: int = MAX_RUN_HISTORY) -> int:
    """Delete all but the `keep` most recently started runs; returns how many went."""

    async def _write_op():
        tbl = get_db().open_table(RUNS_TABLE)
        total = int(tbl.count_rows() or 0)
        if total <= keep:
            return 0
        rows = tbl.search().select(["id", "started_at"]).limit(total).to_list()
        rows.sort(key=lambda r: to_dt(r.get("started_at")), reverse=True)
        stale = [str(r.get("id")) for r in rows[keep:] if r.get("id")]
        if not stale:
            return 0
        ids = ", ".join(f"'{escape_sql(run_id)}'" for run_id in stale)
        tbl.delete(f"id IN ({ids})")
        return len(stale)

    removed = await enqueue_write(_write_op)
    if removed:
        logger.info(f"Pruned {removed} old pipeline runs")
    return removed
