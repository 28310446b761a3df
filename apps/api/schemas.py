from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from uuid import UUID
from typing import Optional, List, Dict, Literal


class LatLngResponse(BaseModel):
    lat: float
    lng: float


class EmotionCreate(BaseModel):
    """Submission body. Range checks live in services.emotion_submission."""
    cell_id: str
    emotion: str
    intensity: int
    note: Optional[str] = None
    tags: List[str] = []
    dwell_seconds: int = 0
    gps_accuracy: int = 10  # meters
    visibility: Literal["PUBLIC", "PRIVATE"] = "PUBLIC"
    ttl_hours: Optional[int] = None
    volatile: bool = False


class EmotionEntryResponse(BaseModel):
    id: UUID
    user_id: UUID
    cell_id: str
    emotion: str
    intensity: int
    valence: float
    note: Optional[str] = None
    tags: List[str] = []
    dwell_seconds: int
    gps_accuracy: int
    visibility: str
    ttl_hours: Optional[int] = None
    created_at: datetime
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PublicEmotionEntryResponse(BaseModel):
    """Entry as shown in cell listings, without the owner id."""
    id: UUID
    emotion: str
    intensity: int
    note: Optional[str] = None
    tags: List[str] = []
    created_at: datetime
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CellAggregateResponse(BaseModel):
    cell_id: str
    dominant_emotion: str
    mean_valence: float
    mean_intensity: float
    distribution: Dict[str, float]
    coherence: float
    trend: float
    entry_count: int
    last_entry_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CellEntriesResponse(BaseModel):
    cell_id: str
    entries: List[PublicEmotionEntryResponse]
    aggregate: Optional[CellAggregateResponse] = None


class BoundsRequest(BaseModel):
    north: float = Field(..., ge=-90, le=90)
    south: float = Field(..., ge=-90, le=90)
    east: float = Field(..., ge=-180, le=180)
    west: float = Field(..., ge=-180, le=180)


class TilesRequest(BaseModel):
    bounds: BoundsRequest
    resolution: Optional[int] = Field(None, ge=1, le=15)
    include_empty: bool = False


class TileResponse(BaseModel):
    cell_id: str
    boundary: List[LatLngResponse]
    center: LatLngResponse
    aggregate: Optional[CellAggregateResponse] = None
    color: Optional[str] = None


class TilesResponse(BaseModel):
    tiles: List[TileResponse]
    resolution: int
    count: int


class NearbyCellResponse(BaseModel):
    cell_id: str
    center: LatLngResponse
    dominant_emotion: str
    mean_valence: float
    color: str


class CellDetailsResponse(BaseModel):
    cell_id: str
    center: LatLngResponse
    boundary: List[LatLngResponse]
    aggregate: Optional[CellAggregateResponse] = None
    color: Optional[str] = None
    recent_entries: List[PublicEmotionEntryResponse]
    nearby: Optional[List[NearbyCellResponse]] = None


class NearbySearchResult(BaseModel):
    cell_id: str
    center: LatLngResponse
    distance_km: float
    dominant_emotion: str
    mean_valence: float
    mean_intensity: float
    entry_count: int
    coherence: float
    color: str


class SmoothedCellRef(BaseModel):
    cell_id: str
    ring: int


class SmoothedAreaResponse(BaseModel):
    cell_id: str
    resolution: int
    cells: List[SmoothedCellRef]
    entry_count: int
    distribution: Dict[str, float]
    mean_intensity: float
    mean_valence: float
    coherence: float
    color: str


class ResolutionResponse(BaseModel):
    zoom: float
    resolution: int


class BulkRecomputeRequest(BaseModel):
    cell_ids: List[str] = Field(..., min_length=1, max_length=500)


class BulkRecomputeResponse(BaseModel):
    results: Dict[str, str]


class SweepResponse(BaseModel):
    removed: int
    affected_cells: int
    recomputes_scheduled: int
