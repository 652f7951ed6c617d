from fastapi import APIRouter, HTTPException, Query
from typing import Optional
from ..schemas.pydantic_schemas import CallLogRead, CallLogListResponse
from ..db import get_db
import logging

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/", response_model=CallLogListResponse)
async def list_calls(user_id: Optional[str] = None, outcome: Optional[str] = None, page: int = Query(default=1, ge=1), page_size: int = Query(default=20, ge=1, le=200)):
    db = get_db()
    items, total = db.list_call_logs(user_id=user_id, outcome=outcome, page=page, page_size=page_size)
    return {"items": items, "total": total, "page": page, "page_size": page_size}

@router.get("/{retell_call_id}", response_model=CallLogRead)
async def get_call(retell_call_id: str):
    db = get_db()
    call = db.get_call_log(retell_call_id)
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    return call
