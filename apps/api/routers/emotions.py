"""
Emotions API Router

Submitting, listing and deleting emotion entries. Every write schedules a
debounced recompute of the touched cell; reads never recompute.
"""

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from core.auth import get_current_user, get_current_user_optional
from core.database import get_db
from models import User
from schemas import CellEntriesResponse, EmotionCreate, EmotionEntryResponse
from services.cell_projection import aggregate_to_dict, get_cell_aggregate
from services.emotion_submission import (
    EmotionSubmission,
    delete_emotion,
    list_cell_entries,
    list_user_entries,
    submit_emotion,
)

router = APIRouter(prefix="/v1/emotions", tags=["emotions"])


@router.post("", response_model=EmotionEntryResponse, status_code=status.HTTP_201_CREATED)
async def create_emotion(
    body: EmotionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Record an emotion in a cell.

    422 on invalid input, 429 when the per-cell daily or hourly cap is hit.
    """
    return submit_emotion(db, current_user.id, EmotionSubmission(**body.model_dump()))


@router.get("/cell/{cell_id}", response_model=CellEntriesResponse)
async def get_cell_emotions(
    cell_id: str,
    include_private: bool = False,
    limit: int = Query(20, ge=1, le=50),
    db: Session = Depends(get_db),
    current_user: Optional[User] = Depends(get_current_user_optional),
):
    """Recent live entries of a cell plus its stored aggregate."""
    entries = list_cell_entries(
        db,
        cell_id,
        viewer_id=current_user.id if current_user else None,
        include_private=include_private,
        limit=limit,
    )
    aggregate = get_cell_aggregate(db, cell_id)
    return {
        "cell_id": cell_id,
        "entries": entries,
        "aggregate": aggregate_to_dict(aggregate) if aggregate else None,
    }


@router.get("/mine", response_model=List[EmotionEntryResponse])
async def get_my_emotions(
    cell_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return list_user_entries(db, current_user.id, cell_id=cell_id, limit=limit)


@router.delete("/{entry_id}")
async def remove_emotion(
    entry_id: UUID,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Delete one of your own entries."""
    delete_emotion(db, current_user.id, entry_id)
    return {"success": True}
