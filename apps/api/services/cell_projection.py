"""
Cell Projection Service

Read-only views over stored aggregates for the map client: single-cell
lookups, viewport tiles, cell details, radius search and the smoothed
reading around a point. Never triggers a recompute; a missing aggregate is
simply an empty cell.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import h3
from sqlalchemy import select
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import ValidationError
from models import EmotionAggregate, EmotionEntry
from services import spatial_index
from services.cell_aggregation import as_utc, coherence_from_weights, live_entries_clause
from services.emotion_catalog import DEFAULT_CATALOG, EmotionCatalog, Visibility, kind_key

logger = logging.getLogger(__name__)

RECENT_ENTRIES_LIMIT = 10
NEARBY_AGGREGATES_LIMIT = 6
SEARCH_RESULTS_LIMIT = 20
IN_CLAUSE_CHUNK = 1000


def aggregate_to_dict(aggregate: EmotionAggregate) -> Dict[str, Any]:
    return {
        "cell_id": aggregate.cell_id,
        "dominant_emotion": aggregate.dominant_emotion,
        "mean_valence": aggregate.mean_valence,
        "mean_intensity": aggregate.mean_intensity,
        "distribution": dict(aggregate.distribution or {}),
        "coherence": aggregate.coherence,
        "trend": aggregate.trend,
        "entry_count": aggregate.entry_count,
        "last_entry_at": as_utc(aggregate.last_entry_at),
        "updated_at": as_utc(aggregate.updated_at),
    }


def _color(aggregate: EmotionAggregate, catalog: EmotionCatalog) -> str:
    return catalog.color_for(aggregate.dominant_emotion, aggregate.mean_intensity, aggregate.coherence)


def _load_aggregates(db: Session, cell_ids: Iterable[str]) -> Dict[str, EmotionAggregate]:
    """Aggregates keyed by cell, fetched with chunked IN queries."""
    cells = list(cell_ids)
    found: Dict[str, EmotionAggregate] = {}
    for start in range(0, len(cells), IN_CLAUSE_CHUNK):
        chunk = cells[start:start + IN_CLAUSE_CHUNK]
        for aggregate in db.scalars(select(EmotionAggregate).where(EmotionAggregate.cell_id.in_(chunk))):
            found[aggregate.cell_id] = aggregate
    return found


def get_cell_aggregate(db: Session, cell_id: str) -> Optional[EmotionAggregate]:
    if not spatial_index.is_valid_cell(cell_id):
        raise ValidationError(f"Invalid H3 index: {cell_id}", field="cell_id")
    return db.get(EmotionAggregate, cell_id)


def get_tiles(
    db: Session,
    bounds: spatial_index.Bounds,
    resolution: Optional[int] = None,
    include_empty: bool = False,
    catalog: EmotionCatalog = DEFAULT_CATALOG,
) -> Dict[str, Any]:
    """
    Tiles for a viewport.

    Raises ValidationError for inverted bounds or viewports above the cell
    ceiling. Cells without an aggregate are skipped unless include_empty.
    """
    res = resolution if resolution is not None else settings.SPATIAL_RESOLUTION
    cells = spatial_index.cells_in_bounds(bounds, res)
    aggregates = _load_aggregates(db, cells)

    tiles = []
    for cell_id in cells:
        aggregate = aggregates.get(cell_id)
        if aggregate is None and not include_empty:
            continue
        tiles.append({
            "cell_id": cell_id,
            "boundary": [p.to_dict() for p in spatial_index.cell_boundary(cell_id)],
            "center": spatial_index.cell_center(cell_id).to_dict(),
            "aggregate": aggregate_to_dict(aggregate) if aggregate else None,
            "color": _color(aggregate, catalog) if aggregate else None,
        })

    return {
        "tiles": tiles,
        "resolution": res,
        "count": len(tiles),
    }


def get_cell_details(
    db: Session,
    cell_id: str,
    include_nearby: bool = False,
    now: Optional[datetime] = None,
    catalog: EmotionCatalog = DEFAULT_CATALOG,
) -> Dict[str, Any]:
    """Aggregate, geometry, recent public entries and optionally nearby cells."""
    aggregate = get_cell_aggregate(db, cell_id)
    now = as_utc(now or datetime.now(timezone.utc))

    recent = db.scalars(
        select(EmotionEntry)
        .where(
            EmotionEntry.cell_id == cell_id,
            EmotionEntry.visibility == Visibility.PUBLIC.value,
            live_entries_clause(now),
        )
        .order_by(EmotionEntry.created_at.desc(), EmotionEntry.id.desc())
        .limit(RECENT_ENTRIES_LIMIT)
    ).all()

    nearby = None
    if include_nearby:
        neighbor_cells = spatial_index.neighbors(cell_id, 1)
        found = _load_aggregates(db, neighbor_cells)
        nearby = []
        for neighbor in neighbor_cells:
            agg = found.get(neighbor)
            if agg is None:
                continue
            nearby.append({
                "cell_id": neighbor,
                "center": spatial_index.cell_center(neighbor).to_dict(),
                "dominant_emotion": agg.dominant_emotion,
                "mean_valence": agg.mean_valence,
                "color": _color(agg, catalog),
            })
            if len(nearby) >= NEARBY_AGGREGATES_LIMIT:
                break

    return {
        "cell_id": cell_id,
        "center": spatial_index.cell_center(cell_id).to_dict(),
        "boundary": [p.to_dict() for p in spatial_index.cell_boundary(cell_id)],
        "aggregate": aggregate_to_dict(aggregate) if aggregate else None,
        "color": _color(aggregate, catalog) if aggregate else None,
        "recent_entries": list(recent),
        "nearby": nearby,
    }


def search_nearby(
    db: Session,
    lat: float,
    lng: float,
    radius_km: float,
    emotion: Optional[str] = None,
    min_intensity: Optional[float] = None,
    resolution: Optional[int] = None,
    catalog: EmotionCatalog = DEFAULT_CATALOG,
) -> List[Dict[str, Any]]:
    """Closest aggregates within radius_km, nearest first."""
    if radius_km <= 0:
        raise ValidationError("Radius must be positive", field="radius")
    if emotion is not None and emotion not in catalog:
        raise ValidationError(f"Unknown emotion: {emotion}", field="emotion")

    cells = spatial_index.cells_in_radius(lat, lng, radius_km, resolution)
    aggregates = _load_aggregates(db, cells)

    results = []
    for cell_id, agg in aggregates.items():
        if emotion is not None and agg.dominant_emotion != kind_key(emotion):
            continue
        if min_intensity is not None and agg.mean_intensity < min_intensity:
            continue
        center = spatial_index.cell_center(cell_id)
        results.append({
            "cell_id": cell_id,
            "center": center.to_dict(),
            "distance_km": spatial_index.haversine_km(lat, lng, center.lat, center.lng),
            "dominant_emotion": agg.dominant_emotion,
            "mean_valence": agg.mean_valence,
            "mean_intensity": agg.mean_intensity,
            "entry_count": agg.entry_count,
            "coherence": agg.coherence,
            "color": _color(agg, catalog),
        })

    results.sort(key=lambda r: (r["distance_km"], r["cell_id"]))
    return results[:SEARCH_RESULTS_LIMIT]


def _data_cells_under(coarse_cell: str, data_resolution: int) -> List[str]:
    """Cells at the aggregate resolution that make up coarse_cell."""
    coarse_res = spatial_index.cell_resolution(coarse_cell)
    if coarse_res < data_resolution:
        return list(h3.cell_to_children(coarse_cell, data_resolution))
    if coarse_res > data_resolution:
        return [h3.cell_to_parent(coarse_cell, data_resolution)]
    return [coarse_cell]


def get_smoothed_area(
    db: Session,
    lat: float,
    lng: float,
    catalog: EmotionCatalog = DEFAULT_CATALOG,
) -> Dict[str, Any]:
    """
    Neighbour-blended reading around a point.

    Takes the SPATIAL_SMOOTHING_RESOLUTION cell containing the point plus its
    first ring, and merges every stored aggregate underneath them weighted by
    entry count. Coherence is recomputed from the merged distribution.
    """
    center_cell = spatial_index.smoothing_cell_for_point(lat, lng)
    data_res = settings.SPATIAL_RESOLUTION

    area_cells = []
    data_cells: List[str] = []
    for coarse in spatial_index.cells_with_smoothing(center_cell):
        area_cells.append({
            "cell_id": coarse,
            "ring": int(spatial_index.grid_distance(center_cell, coarse)),
        })
        for cell_id in _data_cells_under(coarse, data_res):
            if cell_id not in data_cells:
                data_cells.append(cell_id)

    kind_weights: Dict[str, float] = {}
    total_entries = 0
    weighted_intensity = 0.0
    weighted_valence = 0.0
    for agg in _load_aggregates(db, data_cells).values():
        count = agg.entry_count
        total_entries += count
        weighted_intensity += agg.mean_intensity * count
        weighted_valence += agg.mean_valence * count
        for kind, share in (agg.distribution or {}).items():
            kind_weights[kind] = kind_weights.get(kind, 0.0) + share * count

    if total_entries == 0:
        distribution: Dict[str, float] = {}
        mean_intensity = mean_valence = coherence = 0.0
    else:
        weight_sum = sum(kind_weights.values())
        distribution = {k: 100 * w / weight_sum for k, w in kind_weights.items() if w > 0}
        mean_intensity = weighted_intensity / total_entries
        mean_valence = weighted_valence / total_entries
        coherence = coherence_from_weights(list(distribution.values()))

    return {
        "cell_id": center_cell,
        "resolution": spatial_index.cell_resolution(center_cell),
        "cells": area_cells,
        "entry_count": total_entries,
        "distribution": distribution,
        "mean_intensity": mean_intensity,
        "mean_valence": mean_valence,
        "coherence": coherence,
        "color": catalog.blended_color(distribution, mean_intensity, coherence),
    }
