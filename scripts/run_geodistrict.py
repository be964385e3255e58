import argparse
from datetime import datetime
from pathlib import Path

import yaml

from geodistrict.algos.geodistrict import params_from_cfg, run
from geodistrict.data.export import export_partition
from geodistrict.data.tracts import load_tract_pack


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


def _resolve_pack_dir(cfg: dict, repo_root: Path) -> Path:
    paths = cfg.get("paths", {}) or {}
    data = cfg.get("data", {}) or {}
    pack_dir_raw = data.get("tract_pack_dir") or paths.get("assets_dir")
    if not pack_dir_raw:
        raise KeyError(
            "Missing tract pack directory in config.\n"
            "Provide one of:\n"
            "  data.tract_pack_dir: 'assets/az_tracts'\n"
            "  paths.assets_dir: 'assets/az_tracts'\n"
        )
    return _resolve_dir(pack_dir_raw, repo_root)


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default="config.yaml")
    ap.add_argument("--strategy", choices=["geodistrict", "county"], default=None)
    ap.add_argument("--num-districts", type=int, default=None)
    args = ap.parse_args()

    repo_root = _resolve_repo_root()
    cfg_path = _resolve_config_path(args.config)
    print("1) loading config...")
    print("   config =", cfg_path)
    cfg = yaml.safe_load(cfg_path.read_text()) or {}

    cfg.setdefault("run", {})
    if args.num_districts is not None:
        cfg["run"]["num_districts"] = args.num_districts
    if args.strategy is not None:
        cfg.setdefault("algo", {}).setdefault("geodistrict", {})["strategy"] = args.strategy
    params = params_from_cfg(cfg)
    strategy = params.strategy

    pack_dir = _resolve_pack_dir(cfg, repo_root)
    outputs_root = _resolve_dir((cfg.get("paths", {}) or {}).get("outputs_dir", "outputs"), repo_root)
    print("   pack_dir =", pack_dir)
    print("   outputs_root =", outputs_root)

    print("2) loading tract pack...")
    pack = load_tract_pack(pack_dir)
    print("   loaded pack:", len(pack.tracts), "tracts", "(with adjacency table)" if pack.adjacency else "")

    print(f"3) running {strategy}...")
    result = run(pack, cfg)

    s = result.summary
    print(f"   districts: {s.district_count} | mean pop: {s.mean_population:,.0f} | "
          f"max deviation: {s.max_abs_deviation_pct:.3f}% | complete: {result.complete}")
    for w in result.warnings:
        print(f"   ! {w.kind}: {w.message}")

    run_id = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = outputs_root / f"{strategy}_{run_id}"
    print("4) exporting...")
    export_partition(result, run_dir, shapes=pack.shapes)
    print("✅ Saved run:", run_dir)


if __name__ == "__main__":
    main()
