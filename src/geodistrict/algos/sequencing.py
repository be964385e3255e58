from __future__ import annotations

import math
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import structlog
from shapely.strtree import STRtree

from geodistrict.algos.adjacency import AdjacencyGraph
from geodistrict.algos.geometry import Point, distance
from geodistrict.data.tracts import Tract
from geodistrict.errors import TraversalBudgetExceeded, TraversalStalled

logger = structlog.get_logger()

LATITUDE = "latitude"
LONGITUDE = "longitude"
AXES = (LATITUDE, LONGITUDE)


# ----------------------------
# Config
# ----------------------------

@dataclass
class SequencerParams:
    # strategies tried in order; centroid sort always closes the chain
    chain: List[str] = field(default_factory=lambda: ["geo_graph", "greedy", "centroid"])

    tie_band: float = 0.001  # centroids closer than this on the primary axis count as one band
    secondary_bias: float = 0.1  # greedy score weight on the cross axis
    row_drift_weight: float = 1.0  # geo_graph penalty for leaving the current row

    # traversal budgets
    max_steps_per_tract: int = 50
    time_budget_s: float = 10.0


@dataclass
class SequenceResult:
    order: List[Tract]
    strategy: str
    fallbacks: List[str] = field(default_factory=list)  # "<strategy>: <reason>" for each skipped strategy


# ----------------------------
# Axis frame
#   advance: grows in the traversal direction (north->south or west->east)
#   sweep:   grows in the first sweep direction (east for latitude, north for longitude)
# ----------------------------

def _advance(p: Point, axis: str) -> float:
    return -p[1] if axis == LATITUDE else p[0]


def _sweep(p: Point, axis: str) -> float:
    return p[0] if axis == LATITUDE else p[1]


def start_corner(axis: str) -> str:
    return "NW" if axis == LATITUDE else "SW"


def start_tract(tracts: Sequence[Tract], axis: str) -> Tract:
    """Tract whose corner extreme point lies furthest toward the traversal start."""
    corner = start_corner(axis)

    def key(t: Tract):
        p = t.extreme(corner)
        return (_advance(p, axis), _sweep(p, axis), t.tract_id)

    return min(tracts, key=key)


class _Budget:
    def __init__(self, n: int, params: SequencerParams, strategy: str):
        self.max_steps = max(1, params.max_steps_per_tract * max(n, 1))
        self.deadline = time.monotonic() + params.time_budget_s
        self.steps = 0
        self.strategy = strategy

    def tick(self) -> None:
        self.steps += 1
        if self.steps > self.max_steps:
            raise TraversalBudgetExceeded(f"{self.strategy}: iteration budget of {self.max_steps} steps exceeded")
        if self.steps % 64 == 0 and time.monotonic() > self.deadline:
            raise TraversalBudgetExceeded(f"{self.strategy}: time budget exceeded after {self.steps} steps")


# ----------------------------
# Strategy: centroid sort
# ----------------------------

def centroid_sort(
    tracts: Sequence[Tract],
    axis: str,
    graph: Optional[AdjacencyGraph] = None,
    params: Optional[SequencerParams] = None,
) -> List[Tract]:
    """
    latitude:  north -> south, ties (same band) west -> east
    longitude: west -> east, ties north -> south
    """
    params = params or SequencerParams()
    band = params.tie_band

    def key(t: Tract):
        lng, lat = t.centroid
        primary, secondary = (-lat, lng) if axis == LATITUDE else (lng, -lat)
        bucket = math.floor(primary / band) if band > 0 else primary
        return (bucket, secondary, t.tract_id)

    return sorted(tracts, key=key)


# ----------------------------
# Strategy: greedy directional traversal
# ----------------------------

def greedy_traversal(
    tracts: Sequence[Tract],
    axis: str,
    graph: AdjacencyGraph,
    params: Optional[SequencerParams] = None,
) -> List[Tract]:
    params = params or SequencerParams()
    if not tracts:
        return []

    by_id = {t.tract_id: t for t in tracts}
    budget = _Budget(len(tracts), params, "greedy")
    unvisited = set(by_id)

    def score(cur: Tract, cand: Tract) -> float:
        d_adv = _advance(cand.centroid, axis) - _advance(cur.centroid, axis)
        d_sweep = _sweep(cand.centroid, axis) - _sweep(cur.centroid, axis)
        return d_adv + params.secondary_bias * d_sweep

    current = start_tract(tracts, axis)
    order = [current]
    unvisited.discard(current.tract_id)
    path = [current]

    while unvisited:
        budget.tick()
        cands = sorted(
            (by_id[v] for v in graph.neighbors(current.tract_id) if v in unvisited),
            key=lambda t: t.tract_id,
        )
        if not cands:
            # resume from the most recent tract that still borders unvisited ones
            resume = None
            while path:
                budget.tick()
                t = path[-1]
                if any(v in unvisited for v in graph.neighbors(t.tract_id)):
                    resume = t
                    break
                path.pop()
            if resume is None:
                break
            current = resume
            continue

        current = max(cands, key=lambda c: score(path[-1], c))
        order.append(current)
        path.append(current)
        unvisited.discard(current.tract_id)

    if unvisited:
        rest = centroid_sort([by_id[v] for v in unvisited], axis, params=params)
        logger.info("Greedy traversal appended disconnected remainder", remainder=len(rest), axis=axis)
        order.extend(rest)
    return order


# ----------------------------
# Strategy: row / zig-zag traversal ("geo-graph")
# ----------------------------

def find_containers(tracts: Sequence[Tract]) -> Dict[str, str]:
    """child tract id -> id of the smallest tract whose polygon contains it."""
    shaped = [t for t in tracts if t.shape is not None]
    if len(shaped) < 2:
        return {}

    geoms = [t.shape for t in shaped]
    tree = STRtree(geoms)
    container_of: Dict[str, str] = {}
    container_area: Dict[str, float] = {}

    for i, g in enumerate(geoms):
        for j in tree.query(g, predicate="contains"):
            j = int(j)
            if j == i:
                continue
            # identical polygons contain each other; the lower index wins
            if j < i and geoms[j].contains(g):
                continue
            child = shaped[j].tract_id
            area = g.area
            if child not in container_of or area < container_area[child]:
                container_of[child] = shaped[i].tract_id
                container_area[child] = area

    return container_of


def geo_graph_traversal(
    tracts: Sequence[Tract],
    axis: str,
    graph: AdjacencyGraph,
    params: Optional[SequencerParams] = None,
) -> List[Tract]:
    """
    Zig-zag rows: sweep east along a row (north for a longitude pass), drop
    to the closest tract beyond the row, sweep back, and so on. Tracts lying
    inside another tract's polygon follow their container directly.

    Raises TraversalStalled when a row dead-ends with no frontier left while
    tracts are still unvisited.
    """
    params = params or SequencerParams()
    if not tracts:
        return []

    by_id = {t.tract_id: t for t in tracts}
    container_of = find_containers(tracts)
    children: Dict[str, List[str]] = defaultdict(list)
    for child, parent in container_of.items():
        children[parent].append(child)

    main = [t for t in tracts if t.tract_id not in container_of]
    unvisited = {t.tract_id for t in main}
    frontier: set = set()
    budget = _Budget(len(tracts), params, "geo_graph")

    visited_order: List[Tract] = []

    def visit(t: Tract) -> None:
        visited_order.append(t)
        unvisited.discard(t.tract_id)
        frontier.discard(t.tract_id)
        frontier.update(v for v in graph.neighbors(t.tract_id) if v in unvisited)

    current = start_tract(main, axis)
    visit(current)
    row = [current]
    direction = 1.0

    while unvisited:
        budget.tick()
        cur_adv = _advance(current.centroid, axis)
        cur_sweep = _sweep(current.centroid, axis)

        ahead = [
            by_id[v] for v in sorted(graph.neighbors(current.tract_id))
            if v in unvisited and direction * (_sweep(by_id[v].centroid, axis) - cur_sweep) > 0
        ]
        if ahead:
            current = max(
                ahead,
                key=lambda c: direction * (_sweep(c.centroid, axis) - cur_sweep)
                - params.row_drift_weight * abs(_advance(c.centroid, axis) - cur_adv),
            )
            visit(current)
            row.append(current)
            continue

        # row finished: closest unvisited tract beyond the row
        below = sorted(
            {
                v for r in row for v in graph.neighbors(r.tract_id)
                if v in unvisited and _advance(by_id[v].centroid, axis) > _advance(r.centroid, axis)
            }
        )
        pool = below or sorted(frontier)
        if not pool:
            raise TraversalStalled(
                f"row ended at {current.tract_id} with no frontier; {len(unvisited)} tracts unvisited"
            )
        current = min((by_id[v] for v in pool), key=lambda c: (distance(c.centroid, current.centroid), c.tract_id))
        visit(current)
        row = [current]
        direction = -direction

    order: List[Tract] = []

    def emit(t: Tract) -> None:
        order.append(t)
        for child in sorted(children.get(t.tract_id, ())):
            emit(by_id[child])

    for t in visited_order:
        emit(t)

    if len(order) != len(tracts):
        raise TraversalStalled(f"traversal placed {len(order)} of {len(tracts)} tracts")
    return order


# ----------------------------
# Strategy registry + fallback chain
# ----------------------------

Strategy = Callable[..., List[Tract]]

STRATEGIES: Dict[str, Strategy] = {
    "centroid": centroid_sort,
    "greedy": greedy_traversal,
    "geo_graph": geo_graph_traversal,
}
GRAPH_STRATEGIES = {"greedy", "geo_graph"}


def validate_chain(chain: Sequence[str]) -> List[str]:
    unknown = [name for name in chain if name not in STRATEGIES]
    if unknown:
        raise ValueError(f"Unknown sequencer strategies {unknown}; choose from {sorted(STRATEGIES)}")
    out = list(chain)
    if "centroid" not in out:
        out.append("centroid")
    return out


def sequence_tracts(
    tracts: Sequence[Tract],
    axis: str,
    graph: Optional[AdjacencyGraph] = None,
    params: Optional[SequencerParams] = None,
    *,
    graph_reliable: bool = True,
) -> SequenceResult:
    """Run the strategy chain until one returns a complete ordering."""
    if axis not in AXES:
        raise ValueError(f"axis must be one of {AXES}, got {axis!r}")
    params = params or SequencerParams()
    chain = validate_chain(params.chain)
    fallbacks: List[str] = []

    for name in chain:
        if name in GRAPH_STRATEGIES and (graph is None or not graph_reliable):
            fallbacks.append(f"{name}: adjacency graph missing or sparse")
            continue
        try:
            order = STRATEGIES[name](tracts, axis, graph, params)
        except (TraversalStalled, TraversalBudgetExceeded) as exc:
            logger.warning("Sequencer strategy failed; trying next", strategy=name, reason=str(exc))
            fallbacks.append(f"{name}: {exc}")
            continue

        if len(order) != len(tracts) or {t.tract_id for t in order} != {t.tract_id for t in tracts}:
            fallbacks.append(f"{name}: ordering lost or duplicated tracts")
            logger.warning("Sequencer strategy returned an incomplete ordering", strategy=name)
            continue
        return SequenceResult(order=order, strategy=name, fallbacks=fallbacks)

    # validate_chain guarantees centroid is present and it cannot fail
    raise AssertionError("centroid sort missing from sequencer chain")
