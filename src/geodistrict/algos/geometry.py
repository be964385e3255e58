from __future__ import annotations

import math
from typing import TYPE_CHECKING, Iterable, List, Sequence, Tuple

import numpy as np
from shapely.geometry import shape as shapely_shape

from geodistrict.errors import InvalidGeometry

if TYPE_CHECKING:
    from geodistrict.data.tracts import Tract

Point = Tuple[float, float]  # (lng, lat)
BBox = Tuple[float, float, float, float]  # (west, south, east, north)

SUPPORTED_TYPES = ("Polygon", "MultiPolygon")
MIN_RING_VERTICES = 4
CORNERS = ("NW", "NE", "SW", "SE")

# corner -> (lat sign, lng sign); +1 = maximise, -1 = minimise
_CORNER_SIGNS = {
    "NW": (1, -1),
    "NE": (1, 1),
    "SW": (-1, -1),
    "SE": (-1, 1),
}


# ----------------------------
# Ring extraction / validation
# ----------------------------

def _ring_array(ring) -> np.ndarray:
    try:
        arr = np.asarray(ring, dtype=float)
    except (TypeError, ValueError) as exc:
        raise InvalidGeometry(f"ring is not a list of numeric pairs: {exc}") from exc

    if arr.ndim != 2 or arr.shape[1] < 2:
        raise InvalidGeometry(f"ring has shape {arr.shape}, expected (n, 2)")
    arr = arr[:, :2]
    if arr.shape[0] < MIN_RING_VERTICES:
        raise InvalidGeometry(f"ring has {arr.shape[0]} vertices, need at least {MIN_RING_VERTICES}")
    if not np.all(np.isfinite(arr)):
        raise InvalidGeometry("ring contains non-finite coordinates")
    return arr


def rings(geometry_type: str, coordinates) -> List[np.ndarray]:
    """All rings of a Polygon / MultiPolygon as (n, 2) float arrays of [lng, lat]."""
    if geometry_type not in SUPPORTED_TYPES:
        raise InvalidGeometry(f"unsupported geometry type {geometry_type!r}")
    if not coordinates:
        raise InvalidGeometry("geometry has no coordinates")

    polygons = [coordinates] if geometry_type == "Polygon" else coordinates
    out: List[np.ndarray] = []
    for poly in polygons:
        if not poly:
            raise InvalidGeometry("empty polygon in geometry")
        for ring in poly:
            out.append(_ring_array(ring))
    return out


def vertices(tract: "Tract") -> np.ndarray:
    """Stacked (n, 2) vertex array of a tract. Raises InvalidGeometry."""
    return np.vstack(rings(tract.geometry_type, tract.coordinates))


def loose_vertices(coordinates) -> np.ndarray:
    """
    Every finite numeric pair found anywhere in a nested coordinate list.
    Used for the centroid fallback when the geometry itself is rejected.
    """
    pairs: List[Tuple[float, float]] = []

    def walk(node) -> None:
        if not isinstance(node, (list, tuple)):
            return
        if len(node) >= 2 and all(isinstance(v, (int, float)) for v in node[:2]):
            x, y = float(node[0]), float(node[1])
            if math.isfinite(x) and math.isfinite(y):
                pairs.append((x, y))
            return
        for child in node:
            walk(child)

    walk(coordinates)
    if not pairs:
        return np.zeros((0, 2), dtype=float)
    return np.asarray(pairs, dtype=float)


# ----------------------------
# Pure geometry functions
# ----------------------------

def bounding_box(tract: "Tract") -> BBox:
    v = vertices(tract)
    return (float(v[:, 0].min()), float(v[:, 1].min()), float(v[:, 0].max()), float(v[:, 1].max()))


def centroid(tract: "Tract") -> Point:
    """Mean of all ring vertices (closing vertices included, as they appear)."""
    v = vertices(tract)
    return (float(v[:, 0].mean()), float(v[:, 1].mean()))


def extreme_point(tract: "Tract", corner: str) -> Point:
    """
    Vertex most toward `corner`: latitude decides first, longitude breaks ties.
      NW = max lat, then min lng      NE = max lat, then max lng
      SW = min lat, then min lng      SE = min lat, then max lng
    """
    if corner not in _CORNER_SIGNS:
        raise ValueError(f"corner must be one of {CORNERS}, got {corner!r}")
    v = vertices(tract)
    lat_sign, lng_sign = _CORNER_SIGNS[corner]
    # lexsort: last key is primary
    order = np.lexsort((-lng_sign * v[:, 0], -lat_sign * v[:, 1]))
    x, y = v[int(order[0])]
    return (float(x), float(y))


def to_shape(tract: "Tract"):
    """Shapely geometry for a tract; invalid rings are repaired with buffer(0)."""
    rings(tract.geometry_type, tract.coordinates)
    geom = shapely_shape({"type": tract.geometry_type, "coordinates": tract.coordinates})
    if not geom.is_valid:
        geom = geom.buffer(0)
    if geom.is_empty:
        raise InvalidGeometry(f"tract {tract.tract_id} has an empty geometry")
    return geom


# ----------------------------
# Fallbacks (centroid-based behaviour for rejected geometry)
# ----------------------------

def safe_centroid(tract: "Tract") -> Point:
    try:
        return centroid(tract)
    except InvalidGeometry:
        v = loose_vertices(tract.coordinates)
        if len(v) == 0:
            return (0.0, 0.0)
        return (float(v[:, 0].mean()), float(v[:, 1].mean()))


def safe_bounding_box(tract: "Tract") -> BBox:
    try:
        return bounding_box(tract)
    except InvalidGeometry:
        x, y = safe_centroid(tract)
        return (x, y, x, y)


def safe_extreme_point(tract: "Tract", corner: str) -> Point:
    try:
        return extreme_point(tract, corner)
    except InvalidGeometry:
        return safe_centroid(tract)


# ----------------------------
# Small helpers over points / boxes
# ----------------------------

def distance(a: Point, b: Point) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


def mean_point(points: Iterable[Point]) -> Point:
    pts = list(points)
    if not pts:
        return (0.0, 0.0)
    return (sum(p[0] for p in pts) / len(pts), sum(p[1] for p in pts) / len(pts))


def union_bbox(boxes: Sequence[BBox]) -> BBox:
    if not boxes:
        return (0.0, 0.0, 0.0, 0.0)
    return (
        min(b[0] for b in boxes),
        min(b[1] for b in boxes),
        max(b[2] for b in boxes),
        max(b[3] for b in boxes),
    )
