import lancedb
import os
import logging
from typing import Any

from backend.config import DATA_DIR

logger = logging.getLogger(__name__)

DB_PATH = os.path.join(DATA_DIR, "lancedb")

MESSAGES_TABLE = "messages"
CHUNKS_TABLE = "conversation_chunks"
VECTORS_TABLE = "chunk_vectors"
RUNS_TABLE = "pipeline_runs"

_db = None


def _extract_listed_tables(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if str(v)]
    if isinstance(value, dict):
        tables = value.get("tables")
        if isinstance(tables, (list, tuple, set)):
            return [str(v) for v in tables if str(v)]
        return []
    tables_attr = getattr(value, "tables", None)
    if isinstance(tables_attr, (list, tuple, set)):
        return [str(v) for v in tables_attr if str(v)]
    return []


def table_names(db) -> list[str]:
    # Newer LanceDB releases deprecate `table_names()` in favour of `list_tables()`,
    # which can return a paginated response object instead of a plain list.
    if hasattr(db, "list_tables"):
        try:
            listed = _extract_listed_tables(db.list_tables())
            if listed:
                return listed
        except Exception as e:
            logger.debug(f"list_tables() failed, using table_names(): {e}")
    return _extract_listed_tables(db.table_names())


def get_db():
    global _db
    if _db is None:
        os.makedirs(DB_PATH, exist_ok=True)
        _db = lancedb.connect(DB_PATH)
    return _db


def _safe_create_table(db, name: str, schema):
    """
    Create table idempotently.
    Handles races on startup/reload where the table can be created between
    existence check and create call.
    """
    try:
        if name in set(table_names(db)):
            db.open_table(name)
            return
    except Exception:
        # If table listing fails, keep going and rely on create/open fallback.
        pass

    try:
        db.create_table(name, schema=schema)
    except Exception as e:
        msg = str(e).lower()
        if "already exists" in msg:
            db.open_table(name)
            return
        raise


def init_tables():
    db = get_db()
    from .schema import ChunkVector, ConversationChunkRecord, Message, PipelineRun

    _safe_create_table(db, MESSAGES_TABLE, Message)
    _safe_create_table(db, CHUNKS_TABLE, ConversationChunkRecord)
    _safe_create_table(db, VECTORS_TABLE, ChunkVector)
    _safe_create_table(db, RUNS_TABLE, PipelineRun)
    logger.info(f"LanceDB tables ready at {DB_PATH}")


def escape_sql(value: Any) -> str:
    return str(value).replace("'", "''")
