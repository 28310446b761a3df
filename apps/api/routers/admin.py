"""
Admin API Router

Maintenance operations over aggregates and retention. Admin role only.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional
import logging

from core.auth import require_admin
from core.database import get_db
from core.exceptions import ValidationError
from models import User
from schemas import BulkRecomputeRequest, BulkRecomputeResponse, CellAggregateResponse, SweepResponse
from services import spatial_index
from services.cell_aggregation import bulk_recompute, recompute_cell_aggregate
from services.cell_projection import aggregate_to_dict
from services.recompute_scheduler import schedule_cell_recompute
from services.retention_sweeper import sweep_expired_entries

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


@router.post("/cells/{cell_id}/recompute", response_model=Optional[CellAggregateResponse])
async def recompute_cell(
    cell_id: str,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Synchronously recompute one cell. Returns null when the cell is now empty."""
    if not spatial_index.is_valid_cell(cell_id):
        raise ValidationError(f"Invalid H3 index: {cell_id}", field="cell_id")
    logger.info(f"Admin {admin.id} recomputing cell {cell_id}")
    aggregate = recompute_cell_aggregate(db, cell_id)
    return aggregate_to_dict(aggregate) if aggregate else None


@router.post("/cells/recompute", response_model=BulkRecomputeResponse)
async def recompute_cells(
    body: BulkRecomputeRequest,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    invalid = [cell_id for cell_id in body.cell_ids if not spatial_index.is_valid_cell(cell_id)]
    if invalid:
        raise ValidationError(f"Invalid H3 index: {invalid[0]}", field="cell_ids")
    logger.info(f"Admin {admin.id} bulk recomputing {len(body.cell_ids)} cells")
    return {"results": bulk_recompute(db, body.cell_ids)}


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """Run the retention sweep now and schedule recomputes for the affected cells."""
    result = sweep_expired_entries(db)
    scheduled = sum(1 for cell_id in sorted(result.affected_cells) if schedule_cell_recompute(cell_id))
    logger.info(f"Admin {admin.id} ran retention sweep: {result.removed} removed")
    return {
        "removed": result.removed,
        "affected_cells": len(result.affected_cells),
        "recomputes_scheduled": scheduled,
    }
