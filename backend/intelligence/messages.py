from __future__ import annotations

import csv
import io
import json
import logging
from typing import Any, Optional

from backend.database.client import CHUNKS_TABLE, MESSAGES_TABLE, escape_sql, get_db, table_names
from backend.intelligence.models import Message, to_dt
from backend.intelligence.write_queue import enqueue_write

logger = logging.getLogger(__name__)

_ANNOTATION_DEFAULTS = {
    "sentiment": None,
    "category": None,
    "tag": None,
    "emotional_score": None,
    "tags_json": None,
    "conflict_indicator": None,
    "relationship_context": None,
    "chunk_id": None,
    "processed_at": None,
}


def _all_rows(tbl) -> list[dict]:
    total = int(tbl.count_rows() or 0)
    if total <= 0:
        return []
    return tbl.search().limit(total).to_list()


def _has_content(row: dict) -> bool:
    return bool(str(row.get("content") or "").strip())


def load_eligible_messages() -> list[Message]:
    """All messages with non-blank content, ascending by timestamp.

    Store errors propagate; the pipeline treats them as fatal for the run.
    """
    db = get_db()
    if MESSAGES_TABLE not in table_names(db):
        return []
    rows = _all_rows(db.open_table(MESSAGES_TABLE))
    messages = [
        Message(
            id=int(row["id"]),
            timestamp=row.get("timestamp"),
            sender=str(row.get("sender") or "unknown"),
            content=str(row.get("content") or "").strip(),
        )
        for row in rows
        if _has_content(row)
    ]
    messages.sort(key=lambda m: (m.timestamp, m.id))
    return messages


def count_eligible_messages() -> int:
    db = get_db()
    if MESSAGES_TABLE not in table_names(db):
        return 0
    return sum(1 for row in _all_rows(db.open_table(MESSAGES_TABLE)) if _has_content(row))


def _normalize_import_row(raw: dict) -> dict:
    content = str(raw.get("content") if raw.get("content") is not None else raw.get("message") or "").strip()
    ts_raw = raw.get("timestamp") or raw.get("date_time") or raw.get("date-time") or raw.get("date")
    timestamp = to_dt(ts_raw)
    raw_id = raw.get("id")
    return {
        "id": int(raw_id) if raw_id not in (None, "") else None,
        "date": str(raw.get("date") or timestamp.date().isoformat()),
        "timestamp": timestamp,
        "sender": str(raw.get("sender") or "unknown").strip() or "unknown",
        "content": content,
        "type": str(raw.get("type") or ""),
        "notes": str(raw.get("notes") or ""),
    }


def _max_message_id(tbl) -> int:
    total = int(tbl.count_rows() or 0)
    if total <= 0:
        return 0
    rows = tbl.search().select(["id"]).limit(total).to_list()
    return max((int(r["id"]) for r in rows if r.get("id") is not None), default=0)


async def import_messages(rows: list[dict]) -> dict:
    """Import message rows.

    Rows carrying an explicit `id` are upserted: re-importing one refreshes its
    source columns and keeps any annotations a previous pipeline run wrote.
    Rows without an `id` are always appended under fresh ids above the current
    maximum. Rows with blank content are skipped.
    """
    stats: dict[str, Any] = {"total": len(rows), "inserted": 0, "updated": 0, "skipped": 0, "errors": []}
    keyed: dict[int, dict] = {}
    unkeyed: list[dict] = []
    for idx, raw in enumerate(rows):
        if not isinstance(raw, dict):
            stats["errors"].append({"row": idx, "error": "Row is not an object"})
            continue
        try:
            row = _normalize_import_row(raw)
        except (TypeError, ValueError) as e:
            stats["errors"].append({"row": idx, "error": str(e)[:200]})
            continue
        if not row["content"]:
            stats["skipped"] += 1
            continue
        if row["id"] is None:
            unkeyed.append(row)
        else:
            keyed[row["id"]] = row

    if not keyed and not unkeyed:
        return stats

    async def _write_op():
        tbl = get_db().open_table(MESSAGES_TABLE)
        existing: set[int] = set()
        if keyed:
            ids = ", ".join(str(i) for i in keyed)
            existing = {
                int(r["id"])
                for r in tbl.search().where(f"id IN ({ids})").limit(len(keyed)).to_list()
            }
        inserted = 0
        updated = 0
        new_rows = []
        for msg_id, row in keyed.items():
            if msg_id in existing:
                values = {k: v for k, v in row.items() if k != "id"}
                tbl.update(where=f"id = {msg_id}", values=values)
                updated += 1
            else:
                new_rows.append({**row, **_ANNOTATION_DEFAULTS})
                inserted += 1
        if unkeyed:
            next_id = max(_max_message_id(tbl), max(keyed, default=0)) + 1
            for offset, row in enumerate(unkeyed):
                new_rows.append({**row, "id": next_id + offset, **_ANNOTATION_DEFAULTS})
                inserted += 1
        if new_rows:
            tbl.add(new_rows)
        return inserted, updated

    inserted, updated = await enqueue_write(_write_op)
    stats["inserted"] = inserted
    stats["updated"] = updated
    logger.info(f"Imported messages: {inserted} inserted, {updated} updated, {stats['skipped']} skipped")
    return stats


def parse_csv_messages(text: str) -> list[dict]:
    """Read a message export with columns date, date-time, sender, message, type, notes."""
    reader = csv.DictReader(io.StringIO(text or ""))
    rows: list[dict] = []
    for record in reader:
        clean = {str(k or "").strip().lower(): (v or "").strip() for k, v in record.items()}
        rows.append(
            {
                "id": clean.get("id") or None,
                "date": clean.get("date", ""),
                "date_time": clean.get("date-time") or clean.get("date_time") or clean.get("date", ""),
                "sender": clean.get("sender", ""),
                "message": clean.get("message", ""),
                "type": clean.get("type", ""),
                "notes": clean.get("notes", ""),
            }
        )
    return rows


def get_chunk(chunk_id: str) -> Optional[dict]:
    db = get_db()
    if CHUNKS_TABLE not in table_names(db):
        return None
    rows = db.open_table(CHUNKS_TABLE).search().where(f"id = '{escape_sql(chunk_id)}'").limit(1).to_list()
    if not rows:
        return None
    row = dict(rows[0])
    try:
        row["tags"] = json.loads(row.get("tags_json") or "[]")
    except ValueError:
        row["tags"] = []
    row["chunk_id"] = row.get("id")
    return row
