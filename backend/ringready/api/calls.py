from fastapi import APIRouter, HTTPException, Query
from typing import List, Optional
from ..schemas.pydantic_schemas import CallRead, CallStatsRead
from ..db import get_db
import logging

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=List[CallRead])
async def list_calls(status: Optional[str] = None, limit: Optional[int] = Query(default=None, ge=1)):
    db = get_db()
    try:
        return await db.list_calls(status=status, limit=limit)
    except Exception as e:
        logger.error(f"Error fetching calls: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch calls")


@router.get("/stats", response_model=CallStatsRead)
async def call_stats():
    db = get_db()
    try:
        return await db.get_call_stats()
    except Exception as e:
        logger.error(f"Error fetching call stats: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch call statistics")


@router.get("/{call_id}", response_model=CallRead)
async def get_call(call_id: str):
    db = get_db()
    try:
        call = await db.get_call(call_id)
    except Exception as e:
        logger.error(f"Error fetching call {call_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to fetch call data")
    if not call:
        raise HTTPException(status_code=404, detail="Call not found")
    return call
