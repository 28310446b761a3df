"""
Spatial Indexer

Thin wrapper around the H3 hexagonal grid: point <-> cell conversion,
cell geometry, viewport fills, neighbour rings and distances.

Cells are H3 index strings. Resolution increases with map zoom through the
fixed ZOOM_RESOLUTION_BANDS table.
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import h3

from core.config import settings
from core.exceptions import ValidationError

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# (max zoom inclusive, resolution); zooms beyond the last band use MAX_ZOOM_RESOLUTION.
ZOOM_RESOLUTION_BANDS: Tuple[Tuple[int, int], ...] = (
    (3, 3),
    (5, 4),
    (7, 5),
    (9, 6),
    (11, 7),
    (13, 8),
    (15, 9),
)
MAX_ZOOM_RESOLUTION = 10


@dataclass(frozen=True)
class LatLng:
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class Bounds:
    north: float
    south: float
    east: float
    west: float


def _check_resolution(resolution: int) -> int:
    if not isinstance(resolution, int) or not 0 <= resolution <= 15:
        raise ValidationError(f"Invalid H3 resolution: {resolution}", field="resolution")
    return resolution


def _require_cell(cell_id: str) -> str:
    if not is_valid_cell(cell_id):
        raise ValidationError(f"Invalid H3 index: {cell_id}", field="cell_id")
    return cell_id


def is_valid_cell(cell_id) -> bool:
    """True if cell_id is a well-formed H3 cell index."""
    if not isinstance(cell_id, str) or not cell_id:
        return False
    try:
        return bool(h3.is_valid_cell(cell_id))
    except (ValueError, TypeError, h3.H3BaseException):
        return False


def point_to_cell(lat: float, lng: float, resolution: Optional[int] = None) -> str:
    """Cell containing the point at the given (or configured) resolution."""
    res = _check_resolution(resolution if resolution is not None else settings.SPATIAL_RESOLUTION)
    if not -90 <= lat <= 90 or not -180 <= lng <= 180:
        raise ValidationError(f"Coordinates out of range: {lat}, {lng}", field="coordinates")
    return h3.latlng_to_cell(lat, lng, res)


def cell_center(cell_id: str) -> LatLng:
    lat, lng = h3.cell_to_latlng(_require_cell(cell_id))
    return LatLng(lat=lat, lng=lng)


def cell_boundary(cell_id: str) -> List[LatLng]:
    """Boundary polygon vertices (not closed)."""
    return [LatLng(lat=lat, lng=lng) for lat, lng in h3.cell_to_boundary(_require_cell(cell_id))]


def cell_resolution(cell_id: str) -> int:
    return h3.get_resolution(_require_cell(cell_id))


def cells_in_bounds(bounds: Bounds, resolution: Optional[int] = None,
                    max_cells: Optional[int] = None) -> List[str]:
    """
    All cells whose centres fall inside the bounding box.

    Raises ValidationError for inverted bounds or when the fill exceeds
    max_cells (defaults to MAX_CELLS_PER_VIEWPORT).
    """
    res = _check_resolution(resolution if resolution is not None else settings.SPATIAL_RESOLUTION)
    ceiling = max_cells if max_cells is not None else settings.MAX_CELLS_PER_VIEWPORT

    if bounds.south >= bounds.north:
        raise ValidationError("Invalid bounds: south must be less than north", field="bounds")

    # Cheap area estimate first so huge viewports never reach the polygon fill.
    if _approx_cell_count(bounds, res) > ceiling * 4:
        raise ValidationError("Viewport too large, please zoom in", field="bounds")

    polygon = h3.LatLngPoly([
        (bounds.north, bounds.west),
        (bounds.north, bounds.east),
        (bounds.south, bounds.east),
        (bounds.south, bounds.west),
    ])
    cells = list(h3.h3shape_to_cells(polygon, res))

    if len(cells) > ceiling:
        raise ValidationError("Viewport too large, please zoom in", field="bounds")

    return cells


def _approx_cell_count(bounds: Bounds, resolution: int) -> float:
    lat_km = (bounds.north - bounds.south) * 111.32
    mid_lat = math.radians((bounds.north + bounds.south) / 2)
    width_deg = (bounds.east - bounds.west) % 360
    lng_km = width_deg * 111.32 * max(math.cos(mid_lat), 0.01)
    area = lat_km * lng_km
    return area / h3.average_hexagon_area(resolution, unit="km^2")


def neighbors(cell_id: str, ring_size: int = 1) -> List[str]:
    """Cells in rings 1..ring_size around cell_id, excluding the cell itself."""
    _require_cell(cell_id)
    if ring_size < 1:
        return []
    seen = set()
    result: List[str] = []
    for ring in range(1, ring_size + 1):
        try:
            ring_cells = h3.grid_ring(cell_id, ring)
        except h3.H3BaseException:
            # Rings can be undefined around pentagons; stop at the first gap.
            break
        for cell in ring_cells:
            if cell not in seen and cell != cell_id:
                seen.add(cell)
                result.append(cell)
    return result


def cells_with_smoothing(cell_id: str) -> List[str]:
    """The cell followed by its first ring, for neighbour-blended displays."""
    return [cell_id] + neighbors(cell_id, 1)


def smoothing_cell_for_point(lat: float, lng: float) -> str:
    return point_to_cell(lat, lng, settings.SPATIAL_SMOOTHING_RESOLUTION)


def grid_distance(a: str, b: str) -> float:
    """Grid steps between two cells; infinity when H3 cannot compute it."""
    try:
        return h3.grid_distance(_require_cell(a), _require_cell(b))
    except h3.H3BaseException:
        return math.inf


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def average_edge_length_km(resolution: int) -> float:
    return h3.average_hexagon_edge_length(_check_resolution(resolution), unit="km")


def cells_in_radius(lat: float, lng: float, radius_km: float,
                    resolution: Optional[int] = None) -> List[str]:
    """Cells whose centres lie within radius_km of the point."""
    res = resolution if resolution is not None else settings.SPATIAL_RESOLUTION
    center_cell = point_to_cell(lat, lng, res)
    rings_needed = max(1, math.ceil(radius_km / average_edge_length_km(res)))
    if rings_needed > 200:
        raise ValidationError("Search radius too large for resolution", field="radius")

    cells = [center_cell]
    for cell in neighbors(center_cell, rings_needed):
        center = cell_center(cell)
        if haversine_km(lat, lng, center.lat, center.lng) <= radius_km:
            cells.append(cell)
    return cells


def resolution_for_zoom(zoom: float) -> int:
    for max_zoom, resolution in ZOOM_RESOLUTION_BANDS:
        if zoom <= max_zoom:
            return resolution
    return MAX_ZOOM_RESOLUTION
