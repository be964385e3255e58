from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from geodistrict.algos.adjacency import AdjacencyGraph
from geodistrict.algos.districts import DistrictGroup
from geodistrict.algos.geometry import Point, distance, mean_point
from geodistrict.data.tracts import Tract

logger = structlog.get_logger()


# ----------------------------
# Config / report
# ----------------------------

@dataclass
class BalanceParams:
    enabled: bool = True
    tolerance: float = 0.01  # fraction of the mean district population
    max_moves: int = 500
    prefer_boundary: bool = True  # prefer tracts touching the receiving district
    keep_contiguous: bool = True  # skip moves that split an already-connected donor


@dataclass
class BalanceReport:
    moves: int
    target: float
    tolerance: float
    populations: Dict[int, int]  # district number -> population
    deviations_pct: Dict[int, float]  # district number -> signed % from target
    within_tolerance: bool
    max_abs_deviation_before: float
    max_abs_deviation_after: float
    moved: List[Tuple[str, int, int]] = field(default_factory=list)  # (tract id, from, to)


def _deviation_pct(pop: float, target: float) -> float:
    return ((pop - target) / target * 100) if target > 0 else 0.0


# ----------------------------
# Single-tract moves from over- to under-populated districts
# ----------------------------

def _pick_move(
    members: List[List[Tract]],
    pops: List[int],
    target: float,
    params: BalanceParams,
    graph: Optional[AdjacencyGraph],
) -> Optional[Tuple[int, int, Tract]]:
    overs = sorted((i for i, p in enumerate(pops) if p > target), key=lambda i: (-(pops[i] - target), i))
    unders = sorted((i for i, p in enumerate(pops) if p < target), key=lambda i: (-(target - pops[i]), i))

    for o in overs:
        if len(members[o]) <= 1:
            continue  # never empty a district
        donor_ids = {t.tract_id for t in members[o]}
        donor_connected = graph is not None and params.keep_contiguous and graph.is_connected(donor_ids)

        for u in unders:
            before = abs(pops[o] - target) + abs(pops[u] - target)
            improving = []
            for t in members[o]:
                p = t.population
                after = abs(pops[o] - p - target) + abs(pops[u] + p - target)
                if before - after > 1e-9:
                    improving.append(t)
            if not improving:
                continue

            if donor_connected:
                improving = [t for t in improving if graph.connected_after_removal(donor_ids, t.tract_id)]
                if not improving:
                    continue

            if graph is not None and params.prefer_boundary:
                receiver_ids = {t.tract_id for t in members[u]}
                boundary = [t for t in improving if graph.neighbors(t.tract_id) & receiver_ids]
                if boundary:
                    improving = boundary

            ideal_move = min(pops[o] - target, target - pops[u])
            anchor: Optional[Point] = mean_point(t.centroid for t in members[u]) if members[u] else None

            def key(t: Tract):
                d = distance(t.centroid, anchor) if anchor is not None else 0.0
                return (d, abs(t.population - ideal_move), t.tract_id)

            return o, u, min(improving, key=key)

    return None


def balance_population(
    districts: Sequence[DistrictGroup],
    params: Optional[BalanceParams] = None,
    graph: Optional[AdjacencyGraph] = None,
) -> Tuple[List[DistrictGroup], BalanceReport]:
    """
    Move single tracts from over- to under-populated districts while every
    move strictly lowers the summed absolute deviation from the mean.
    Stops when all districts are within tolerance, no improving move exists,
    or max_moves is reached. Pass graph=None when adjacency is unreliable.
    """
    params = params or BalanceParams()
    members = [list(d.tracts) for d in districts]
    pops = [int(d.population) for d in districts]
    n = len(members)
    target = (sum(pops) / n) if n else 0.0
    tol_abs = params.tolerance * target

    def max_abs_dev() -> float:
        return max((abs(_deviation_pct(p, target)) for p in pops), default=0.0)

    def within() -> bool:
        return all(abs(p - target) <= tol_abs for p in pops)

    before = max_abs_dev()
    moved: List[Tuple[str, int, int]] = []

    while len(moved) < params.max_moves and not within():
        pick = _pick_move(members, pops, target, params, graph)
        if pick is None:
            break
        o, u, t = pick
        members[o].remove(t)
        members[u].append(t)
        pops[o] -= t.population
        pops[u] += t.population
        moved.append((t.tract_id, districts[o].start, districts[u].start))

    out = [d if m == list(d.tracts) else d.with_tracts(m) for d, m in zip(districts, members)]

    report = BalanceReport(
        moves=len(moved),
        target=target,
        tolerance=params.tolerance,
        populations={d.start: p for d, p in zip(districts, pops)},
        deviations_pct={d.start: _deviation_pct(p, target) for d, p in zip(districts, pops)},
        within_tolerance=within(),
        max_abs_deviation_before=before,
        max_abs_deviation_after=max_abs_dev(),
        moved=moved,
    )
    logger.info(
        "Population balancing finished",
        moves=report.moves,
        within_tolerance=report.within_tolerance,
        max_abs_deviation_before=round(before, 3),
        max_abs_deviation_after=round(report.max_abs_deviation_after, 3),
    )
    return out, report
