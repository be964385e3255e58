from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import geopandas as gpd
import pandas as pd
import structlog

from geodistrict.algos.districts import PartitionResult

logger = structlog.get_logger()


def district_stats_frame(result: PartitionResult) -> pd.DataFrame:
    """One row per district: number, population, tract count, signed % deviation, bbox, centroid."""
    rows = []
    for d in result.districts:
        west, south, east, north = d.bbox
        lng, lat = d.centroid
        rows.append(
            {
                "district": d.start,
                "district_end": d.end,
                "population": int(d.population),
                "tracts": len(d.tracts),
                "deviation_pct": result.summary.deviation_pct.get(d.start, 0.0),
                "west": west,
                "south": south,
                "east": east,
                "north": north,
                "centroid_lng": lng,
                "centroid_lat": lat,
            }
        )
    return pd.DataFrame(rows)


def export_partition(
    result: PartitionResult,
    out_dir: Path,
    shapes: Optional[gpd.GeoDataFrame] = None,
) -> Path:
    """
    Writes:
      unit_to_district.csv   unit_id, district
      district_stats.csv     per-district table
      district_stats.json    same, as records
      summary.json           summary statistics, warnings, history
      steps.json             step log (group membership per step)
      districts.geojson      dissolved district outlines (only when shapes are given)
    """
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    assignment = pd.DataFrame(
        [{"unit_id": tid, "district": num} for tid, num in result.assignment().items()]
    )
    assignment.to_csv(out_dir / "unit_to_district.csv", index=False)

    stats = district_stats_frame(result)
    stats.to_csv(out_dir / "district_stats.csv", index=False)
    (out_dir / "district_stats.json").write_text(json.dumps(stats.to_dict(orient="records"), indent=2))

    s = result.summary
    summary = {
        "complete": result.complete,
        "total_population": s.total_population,
        "district_count": s.district_count,
        "mean_population": s.mean_population,
        "population_variance": s.population_variance,
        "population_std_dev": s.population_std_dev,
        "coefficient_of_variation_pct": s.coefficient_of_variation_pct,
        "max_spread_pct": s.max_spread_pct,
        "max_abs_deviation_pct": s.max_abs_deviation_pct,
        "min_population": s.min_population,
        "max_population": s.max_population,
        "avg_tracts_per_district": s.avg_tracts_per_district,
        "strategies": result.strategies,
        "warnings": [w.to_dict() for w in result.warnings],
        "history": result.history,
    }
    (out_dir / "summary.json").write_text(json.dumps(summary, indent=2, default=str))
    (out_dir / "steps.json").write_text(json.dumps([st.to_dict() for st in result.steps]))

    if shapes is not None:
        gdf = shapes.copy()
        gdf["unit_id"] = gdf["unit_id"].astype(str)
        gdf = gdf.merge(assignment, on="unit_id", how="inner")
        if len(gdf) != len(assignment):
            logger.warning("Some assigned tracts have no shape", assigned=len(assignment), shaped=len(gdf))
        districts = gdf.dissolve(by="district", as_index=False, aggfunc="first")
        districts = districts.merge(stats[["district", "population", "tracts", "deviation_pct"]], on="district")
        if districts.crs is not None:
            districts = districts.to_crs(epsg=4326)
        districts.to_file(out_dir / "districts.geojson", driver="GeoJSON")

    logger.info("Exported partition", out_dir=str(out_dir), districts=len(result.districts))
    return out_dir
