from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import geopandas as gpd
import pandas as pd
import structlog
from shapely.geometry import mapping

from geodistrict.algos import geometry
from geodistrict.errors import InvalidGeometry

logger = structlog.get_logger()


@dataclass(eq=False)
class Tract:
    """
    Atomic population unit. Immutable for the duration of a run; derived
    geometry is computed once and cached on the instance.
    """
    tract_id: str
    population: int
    geometry_type: str
    coordinates: Any  # GeoJSON nested [lng, lat] lists
    unit_id: Optional[str] = None
    _extremes: Dict[str, geometry.Point] = field(default_factory=dict, init=False, repr=False)

    @cached_property
    def geometry_error(self) -> Optional[str]:
        try:
            geometry.rings(self.geometry_type, self.coordinates)
        except InvalidGeometry as exc:
            return str(exc)
        return None

    @property
    def has_valid_geometry(self) -> bool:
        return self.geometry_error is None

    @cached_property
    def bbox(self) -> geometry.BBox:
        return geometry.safe_bounding_box(self)

    @cached_property
    def centroid(self) -> geometry.Point:
        return geometry.safe_centroid(self)

    def extreme(self, corner: str) -> geometry.Point:
        if corner not in self._extremes:
            self._extremes[corner] = geometry.safe_extreme_point(self, corner)
        return self._extremes[corner]

    @cached_property
    def shape(self):
        """Shapely geometry, or None when the geometry is rejected."""
        try:
            return geometry.to_shape(self)
        except InvalidGeometry:
            return None


# ----------------------------
# Builders from collaborator feeds
# ----------------------------

def tracts_from_records(
    population_records: Iterable[dict],
    boundary_records: Iterable[dict],
) -> List[Tract]:
    """
    Join population records {tractId, population, administrativeUnitId} with
    boundary records {tractId, geometryType, rings} by tract id.

    Records present on only one side are dropped (logged). Output order
    follows the population records.
    """
    boundaries: Dict[str, dict] = {}
    for rec in boundary_records:
        boundaries[str(rec["tractId"])] = rec

    tracts: List[Tract] = []
    missing_boundary: List[str] = []
    seen: set = set()
    for rec in population_records:
        tid = str(rec["tractId"])
        b = boundaries.get(tid)
        if b is None:
            missing_boundary.append(tid)
            continue
        seen.add(tid)
        unit = rec.get("administrativeUnitId")
        tracts.append(
            Tract(
                tract_id=tid,
                population=int(rec.get("population") or 0),
                geometry_type=str(b.get("geometryType", "Polygon")),
                coordinates=b.get("rings"),
                unit_id=None if unit is None else str(unit),
            )
        )

    missing_population = [tid for tid in boundaries if tid not in seen]
    if missing_boundary or missing_population:
        logger.warning(
            "Dropped tracts missing one side of the join",
            missing_boundary=len(missing_boundary),
            missing_population=len(missing_population),
        )
    return tracts


def tracts_from_geodataframe(
    gdf: gpd.GeoDataFrame,
    id_col: str = "unit_id",
    pop_col: str = "population",
    unit_col: Optional[str] = None,
) -> List[Tract]:
    for col in (id_col, pop_col):
        if col not in gdf.columns:
            raise KeyError(f"GeoDataFrame missing '{col}'. Available: {list(gdf.columns)[:50]} ...")
    if unit_col is not None and unit_col not in gdf.columns:
        raise KeyError(f"GeoDataFrame missing unit column '{unit_col}'.")

    tracts: List[Tract] = []
    for row in gdf.itertuples(index=False):
        geom = getattr(row, gdf.geometry.name)
        if geom is None or geom.is_empty:
            geom_type, coords = "Polygon", None
        else:
            gj = mapping(geom)
            geom_type, coords = gj["type"], gj["coordinates"]
        pop = getattr(row, pop_col)
        unit = getattr(row, unit_col) if unit_col else None
        tracts.append(
            Tract(
                tract_id=str(getattr(row, id_col)),
                population=0 if pd.isna(pop) else int(pop),
                geometry_type=geom_type,
                coordinates=coords,
                unit_id=None if unit is None or pd.isna(unit) else str(unit),
            )
        )
    return tracts


# ----------------------------
# Tract pack on disk
# ----------------------------

@dataclass
class TractPack:
    pack_dir: Path
    tracts: List[Tract]
    adjacency: Optional[Dict[str, List[str]]]  # None when the pack has no adjacency.json
    shapes: gpd.GeoDataFrame  # unit_id + geometry
    meta: dict


def load_tract_pack(pack_dir: str | Path) -> TractPack:
    """
    Read a tract pack directory:
      shapes.geojson   unit_id + geometry
      attributes.csv   unit_id, population[, admin_unit]
      adjacency.json   optional {unit_id: [neighbor ids]}
      meta.json        optional
    """
    pack_dir = Path(pack_dir)

    shapes_path = pack_dir / "shapes.geojson"
    attrs_path = pack_dir / "attributes.csv"
    if not shapes_path.exists():
        raise FileNotFoundError(f"Missing shapes.geojson at {shapes_path}")
    if not attrs_path.exists():
        raise FileNotFoundError(f"Missing attributes.csv at {attrs_path}")

    attrs = pd.read_csv(attrs_path, dtype={"unit_id": str, "admin_unit": str})
    if "population" not in attrs.columns:
        raise KeyError(f"{attrs_path} missing 'population'. Available: {list(attrs.columns)[:50]} ...")

    shapes = gpd.read_file(shapes_path)
    if "unit_id" not in shapes.columns:
        raise KeyError(f"{shapes_path} missing 'unit_id' column.")
    shapes["unit_id"] = shapes["unit_id"].astype(str)

    unit_col = "admin_unit" if "admin_unit" in attrs.columns else None
    keep = ["unit_id", "population"] + ([unit_col] if unit_col else [])
    merged = shapes.merge(attrs[keep], on="unit_id", how="inner")
    if len(merged) < len(shapes):
        logger.warning("Shapes without attributes dropped", dropped=len(shapes) - len(merged))

    tracts = tracts_from_geodataframe(merged, id_col="unit_id", pop_col="population", unit_col=unit_col)

    adj_path = pack_dir / "adjacency.json"
    adjacency = json.loads(adj_path.read_text()) if adj_path.exists() else None

    meta_path = pack_dir / "meta.json"
    meta = json.loads(meta_path.read_text()) if meta_path.exists() else {}

    logger.info("Loaded tract pack", pack_dir=str(pack_dir), tracts=len(tracts), has_adjacency=adjacency is not None)
    return TractPack(
        pack_dir=pack_dir,
        tracts=tracts,
        adjacency=adjacency,
        shapes=merged[["unit_id", merged.geometry.name]],
        meta=meta,
    )
