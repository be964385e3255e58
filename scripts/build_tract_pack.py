from __future__ import annotations

import argparse
import json
from datetime import datetime
from pathlib import Path

import geopandas as gpd
import yaml

from geodistrict.algos.adjacency import AdjacencyParams, build_topology_adjacency
from geodistrict.data.tracts import tracts_from_geodataframe


def _resolve_repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _resolve_config_path(config_arg: str) -> Path:
    p = Path(config_arg).expanduser()
    if not p.is_absolute():
        p = (_resolve_repo_root() / p).resolve()
    return p


def _resolve_dir(raw: str, repo_root: Path) -> Path:
    p = Path(raw).expanduser()
    if not p.is_absolute():
        p = (repo_root / p).resolve()
    return p


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default="config.yaml")
    args = ap.parse_args()

    repo_root = _resolve_repo_root()
    cfg_path = _resolve_config_path(args.config)
    print("config =", cfg_path)
    cfg = yaml.safe_load(cfg_path.read_text()) or {}
    data_cfg = cfg.get("data", {}) or {}

    src = _resolve_dir(data_cfg["tract_shapefile_path"], repo_root)
    id_col = data_cfg.get("tract_id_col", "GEOID")
    pop_col = data_cfg.get("population_col", "POPULATION")
    unit_col = data_cfg.get("admin_unit_col")
    epsg = int(data_cfg.get("crs_epsg", 4326))

    out_raw = data_cfg.get("tract_pack_dir") or (cfg.get("paths", {}) or {}).get("assets_dir")
    if not out_raw:
        raise KeyError(
            "Config missing output directory. Provide one of:\n"
            "  data.tract_pack_dir: 'assets/az_tracts'\n"
            "  paths.assets_dir: 'assets/az_tracts'"
        )
    out_dir = _resolve_dir(out_raw, repo_root)
    out_dir.mkdir(parents=True, exist_ok=True)

    layer = data_cfg.get("tract_layer")
    if layer:
        print(f"Reading GPKG layer: {layer}")
        gdf = gpd.read_file(src, layer=layer)
    else:
        gdf = gpd.read_file(src)

    gdf = gdf.to_crs(epsg=epsg)
    gdf["geometry"] = gdf["geometry"].buffer(0)

    for col in [id_col, pop_col] + ([unit_col] if unit_col else []):
        if col not in gdf.columns:
            raise ValueError(f"column '{col}' not found. Available columns: {list(gdf.columns)[:50]} ...")

    gdf[id_col] = gdf[id_col].astype(str)
    gdf[pop_col] = gdf[pop_col].fillna(0).astype(int)

    # exact-topology adjacency, computed once offline
    adj_cfg = ((cfg.get("algo", {}) or {}).get("geodistrict", {}) or {}).get("adjacency", {}) or {}
    params = AdjacencyParams(topology_buffer=float(adj_cfg.get("topology_buffer", AdjacencyParams.topology_buffer)))
    tracts = tracts_from_geodataframe(gdf, id_col=id_col, pop_col=pop_col, unit_col=unit_col)
    graph = build_topology_adjacency(tracts, params)
    quality = graph.quality()

    shapes = gdf[[id_col, "geometry"]].rename(columns={id_col: "unit_id"})
    shapes.to_file(out_dir / "shapes.geojson", driver="GeoJSON")

    attrs = gdf[[id_col, pop_col] + ([unit_col] if unit_col else [])].rename(
        columns={id_col: "unit_id", pop_col: "population", **({unit_col: "admin_unit"} if unit_col else {})}
    )
    attrs.to_csv(out_dir / "attributes.csv", index=False)

    (out_dir / "adjacency.json").write_text(json.dumps(graph.to_dict()))

    meta = {
        "built_at": datetime.now().isoformat(),
        "source_shapefile": str(src),
        "tract_id_col": id_col,
        "population_col": pop_col,
        "admin_unit_col": unit_col,
        "epsg": epsg,
        "n_tracts": len(gdf),
        "adjacency_edges": graph.edge_count(),
        "adjacency_coverage": quality.coverage,
        "adjacency_avg_neighbors": quality.avg_neighbors,
    }
    (out_dir / "meta.json").write_text(json.dumps(meta, indent=2))

    print(f"✅ Built tract pack at: {out_dir}")
    print(f"Tracts: {len(gdf)} | edges: {graph.edge_count()} | coverage: {quality.coverage:.1%}")


if __name__ == "__main__":
    main()
