import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from backend.intelligence import messages as message_store

router = APIRouter(prefix="/api/v1/messages", tags=["messages"])
logger = logging.getLogger(__name__)

MAX_IMPORT_ROWS = 50_000


def _internal_error(message: str, exc: Exception | None = None) -> HTTPException:
    if exc is not None:
        logger.exception(message)
    return HTTPException(status_code=500, detail=message)


def _bad_request(message: str, exc: Exception | None = None) -> HTTPException:
    if exc is not None:
        logger.warning(f"{message}: {exc}")
    return HTTPException(status_code=400, detail=message)


class MessageImportPayload(BaseModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)


class CsvImportPayload(BaseModel):
    csv_data: str


@router.get("/count")
async def count_messages():
    try:
        return {"count": message_store.count_eligible_messages()}
    except Exception as e:
        raise _internal_error("Failed to count messages.", e)


@router.post("/import")
async def import_messages(payload: MessageImportPayload):
    if not payload.messages:
        raise _bad_request("messages must not be empty")
    if len(payload.messages) > MAX_IMPORT_ROWS:
        raise _bad_request(f"At most {MAX_IMPORT_ROWS} messages per import")
    try:
        return await message_store.import_messages(payload.messages)
    except Exception as e:
        raise _internal_error("Failed to import messages.", e)


@router.post("/import/csv")
async def import_messages_csv(payload: CsvImportPayload):
    try:
        rows = message_store.parse_csv_messages(payload.csv_data)
    except Exception as e:
        raise _bad_request("Invalid CSV data.", e)
    if not rows:
        raise _bad_request("CSV contains no rows")
    if len(rows) > MAX_IMPORT_ROWS:
        raise _bad_request(f"At most {MAX_IMPORT_ROWS} messages per import")
    try:
        return await message_store.import_messages(rows)
    except Exception as e:
        raise _internal_error("Failed to import messages.", e)
