"""
Map API Router

Read-only map projection: viewport tiles, cell details, radius search, the
neighbour-smoothed reading around a point and the zoom -> resolution table.
Public; no authentication required.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from core.database import get_db
from core.exceptions import ValidationError
from schemas import (
    CellAggregateResponse,
    CellDetailsResponse,
    NearbySearchResult,
    ResolutionResponse,
    SmoothedAreaResponse,
    TilesRequest,
    TilesResponse,
)
from services import cell_projection
from services.spatial_index import Bounds, resolution_for_zoom

router = APIRouter(prefix="/v1/map", tags=["map"])


@router.get("/cells/{cell_id}/aggregate", response_model=Optional[CellAggregateResponse])
async def get_aggregate(cell_id: str, db: Session = Depends(get_db)):
    """Stored aggregate for a cell, or null when the cell has no live entries."""
    aggregate = cell_projection.get_cell_aggregate(db, cell_id)
    return cell_projection.aggregate_to_dict(aggregate) if aggregate else None


@router.post("/tiles", response_model=TilesResponse)
async def get_tiles(body: TilesRequest, db: Session = Depends(get_db)):
    """
    Tiles for a viewport.

    400 for inverted bounds or when the viewport holds more cells than
    MAX_CELLS_PER_VIEWPORT.
    """
    bounds = Bounds(**body.bounds.model_dump())
    try:
        return cell_projection.get_tiles(db, bounds, body.resolution, body.include_empty)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.detail)


@router.get("/cells/{cell_id}", response_model=CellDetailsResponse)
async def get_cell_details(
    cell_id: str,
    include_nearby: bool = False,
    db: Session = Depends(get_db),
):
    return cell_projection.get_cell_details(db, cell_id, include_nearby=include_nearby)


@router.get("/nearby", response_model=List[NearbySearchResult])
async def search_nearby(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(1.0, ge=0.1, le=5.0),
    emotion: Optional[str] = None,
    min_intensity: Optional[float] = Query(None, ge=0, le=100),
    db: Session = Depends(get_db),
):
    """Up to 20 cells with aggregates within radius_km, nearest first."""
    return cell_projection.search_nearby(
        db, lat, lng, radius_km, emotion=emotion, min_intensity=min_intensity
    )


@router.get("/smoothed", response_model=SmoothedAreaResponse)
async def get_smoothed_area(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    db: Session = Depends(get_db),
):
    """Blend of the coarse cell around the point and its first ring."""
    return cell_projection.get_smoothed_area(db, lat, lng)


@router.get("/resolution", response_model=ResolutionResponse)
async def get_resolution(zoom: float = Query(..., ge=0, le=24)):
    return {"zoom": zoom, "resolution": resolution_for_zoom(zoom)}
