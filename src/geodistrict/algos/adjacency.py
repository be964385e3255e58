from __future__ import annotations

import math
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from itertools import combinations
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
import structlog
from shapely.strtree import STRtree

from geodistrict.algos.geometry import CORNERS, distance
from geodistrict.data.tracts import Tract

logger = structlog.get_logger()


# ----------------------------
# Config
# ----------------------------

@dataclass
class AdjacencyParams:
    # "auto" = external table when one is supplied, heuristic otherwise
    source: str = "auto"  # "auto" | "heuristic" | "topology" | "table"

    # heuristic constants, in coordinate units (degrees for lng/lat input)
    bbox_tolerance: float = 1e-4  # ~10 m
    proximity_threshold: float = 0.045  # ~5 km
    use_extreme_proximity: bool = True

    # coarse grid pre-filter
    grid_threshold: int = 100
    grid_cell_size: float = 0.1

    # exact topology
    topology_buffer: float = 1e-6

    # quality self-check
    min_coverage: float = 0.10
    min_avg_neighbors: float = 1.0


@dataclass
class AdjacencyQuality:
    tract_count: int
    avg_neighbors: float
    coverage: float  # fraction of tracts with >= 1 neighbor
    isolated: List[str]

    def is_sparse(self, params: AdjacencyParams) -> bool:
        if self.tract_count <= 1:
            return False
        return self.coverage < params.min_coverage or self.avg_neighbors < params.min_avg_neighbors


# ----------------------------
# Graph
# ----------------------------

class AdjacencyGraph:
    """Symmetric tract-id -> neighbor-ids relation. Read-only once built."""

    def __init__(self, neighbors: Mapping[str, Iterable[str]], source: str = "unknown"):
        nbrs: Dict[str, Set[str]] = {str(k): set() for k in neighbors}
        for u, vs in neighbors.items():
            u = str(u)
            for v in vs:
                v = str(v)
                if v == u:
                    continue
                nbrs[u].add(v)
                nbrs.setdefault(v, set()).add(u)
        self._nbrs = nbrs
        self.source = source

    @classmethod
    def from_pairs(cls, ids: Iterable[str], pairs: Iterable[Tuple[str, str]], source: str = "unknown") -> "AdjacencyGraph":
        nbrs: Dict[str, Set[str]] = {str(i): set() for i in ids}
        for a, b in pairs:
            nbrs.setdefault(str(a), set()).add(str(b))
        return cls(nbrs, source=source)

    def __len__(self) -> int:
        return len(self._nbrs)

    def __contains__(self, tract_id: str) -> bool:
        return tract_id in self._nbrs

    @property
    def ids(self) -> List[str]:
        return list(self._nbrs)

    def neighbors(self, tract_id: str) -> Set[str]:
        return self._nbrs.get(tract_id, set())

    def is_symmetric(self) -> bool:
        return all(u in self._nbrs.get(v, ()) for u, vs in self._nbrs.items() for v in vs)

    def edge_count(self) -> int:
        return sum(len(vs) for vs in self._nbrs.values()) // 2

    def quality(self, ids: Optional[Iterable[str]] = None) -> AdjacencyQuality:
        """Neighbor statistics, optionally restricted to the induced subgraph on `ids`."""
        if ids is None:
            members = set(self._nbrs)
        else:
            members = set(ids)
        n = len(members)
        if n == 0:
            return AdjacencyQuality(0, 0.0, 0.0, [])

        counts = {u: len(self.neighbors(u) & members) for u in members}
        isolated = sorted(u for u, c in counts.items() if c == 0)
        return AdjacencyQuality(
            tract_count=n,
            avg_neighbors=sum(counts.values()) / n,
            coverage=(n - len(isolated)) / n,
            isolated=isolated,
        )

    def components(self, ids: Iterable[str]) -> List[List[str]]:
        """Connected components of the induced subgraph on `ids`. Largest first."""
        members = list(dict.fromkeys(ids))
        in_set = set(members)
        seen: Set[str] = set()
        comps: List[List[str]] = []

        for start in members:
            if start in seen:
                continue
            q = deque([start])
            seen.add(start)
            comp: List[str] = []
            while q:
                x = q.popleft()
                comp.append(x)
                for y in self.neighbors(x):
                    if y in in_set and y not in seen:
                        seen.add(y)
                        q.append(y)
            comps.append(comp)

        comps.sort(key=len, reverse=True)
        return comps

    def is_connected(self, ids: Iterable[str]) -> bool:
        members = list(ids)
        if len(members) <= 1:
            return True
        return len(self.components(members)) == 1

    def connected_after_removal(self, ids: Set[str], remove_id: str) -> bool:
        """Check if the induced subgraph on `ids` stays connected after removing remove_id."""
        if remove_id not in ids:
            return True
        if len(ids) <= 2:
            return True

        start = next(x for x in ids if x != remove_id)
        target_size = len(ids) - 1
        seen = {start}
        q = deque([start])
        while q:
            u = q.popleft()
            for v in self.neighbors(u):
                if v == remove_id:
                    continue
                if v in ids and v not in seen:
                    seen.add(v)
                    q.append(v)
        return len(seen) == target_size

    def to_dict(self) -> Dict[str, List[str]]:
        return {k: sorted(v) for k, v in self._nbrs.items()}


# ----------------------------
# Heuristic strategy (bounding boxes + extreme points)
# ----------------------------

def _boxes_touch(a, b, tol: float) -> bool:
    return (
        a[0] - tol <= b[2] and b[0] - tol <= a[2]
        and a[1] - tol <= b[3] and b[1] - tol <= a[3]
    )


def _heuristic_adjacent(ta: Tract, tb: Tract, params: AdjacencyParams) -> bool:
    a, b = ta.bbox, tb.bbox
    tol = params.bbox_tolerance

    overlap_x = min(a[2], b[2]) - max(a[0], b[0])
    overlap_y = min(a[3], b[3]) - max(a[1], b[1])

    # (a) shared bounding-box edge
    if (abs(a[2] - b[0]) <= tol or abs(b[2] - a[0]) <= tol) and overlap_y > tol:
        return True
    if (abs(a[3] - b[1]) <= tol or abs(b[3] - a[1]) <= tol) and overlap_x > tol:
        return True

    # (b) boxes interpenetrate (irregular shapes with interleaved boundaries)
    if overlap_x > tol and overlap_y > tol:
        return True

    # (c) extreme points close to each other
    if params.use_extreme_proximity:
        pa = [ta.extreme(c) for c in CORNERS]
        pb = [tb.extreme(c) for c in CORNERS]
        best = min(distance(p, q) for p in pa for q in pb)
        if best < params.proximity_threshold:
            return True

    return False


def _grid_candidate_pairs(tracts: Sequence[Tract], params: AdjacencyParams) -> Set[Tuple[int, int]]:
    """Candidate index pairs sharing at least one coarse grid cell (keys = truncated coordinates)."""
    cs = params.grid_cell_size
    tol = params.bbox_tolerance
    cells: Dict[Tuple[int, int], List[int]] = defaultdict(list)

    for i, t in enumerate(tracts):
        w, s, e, n = t.bbox
        for gx in range(math.floor((w - tol) / cs), math.floor((e + tol) / cs) + 1):
            for gy in range(math.floor((s - tol) / cs), math.floor((n + tol) / cs) + 1):
                cells[(gx, gy)].append(i)

    pairs: Set[Tuple[int, int]] = set()
    for members in cells.values():
        for i, j in combinations(members, 2):
            pairs.add((i, j) if i < j else (j, i))
    return pairs


def build_heuristic_adjacency(tracts: Sequence[Tract], params: AdjacencyParams) -> AdjacencyGraph:
    n = len(tracts)
    if n > params.grid_threshold:
        candidates = sorted(_grid_candidate_pairs(tracts, params))
    else:
        boxes = np.array([t.bbox for t in tracts], dtype=float).reshape(-1, 4)
        tol = params.bbox_tolerance
        touch = (
            (boxes[:, None, 0] - tol <= boxes[None, :, 2])
            & (boxes[None, :, 0] - tol <= boxes[:, None, 2])
            & (boxes[:, None, 1] - tol <= boxes[None, :, 3])
            & (boxes[None, :, 1] - tol <= boxes[:, None, 3])
        )
        ii, jj = np.nonzero(np.triu(touch, k=1))
        candidates = list(zip(ii.tolist(), jj.tolist()))

    pairs: List[Tuple[str, str]] = []
    for i, j in candidates:
        ti, tj = tracts[i], tracts[j]
        if not _boxes_touch(ti.bbox, tj.bbox, params.bbox_tolerance):
            continue
        if _heuristic_adjacent(ti, tj, params):
            pairs.append((ti.tract_id, tj.tract_id))

    logger.info("Built heuristic adjacency", tracts=n, candidates=len(candidates), edges=len(pairs))
    return AdjacencyGraph.from_pairs((t.tract_id for t in tracts), pairs, source="heuristic")


# ----------------------------
# Exact topology strategy (shapely)
# ----------------------------

def build_topology_adjacency(tracts: Sequence[Tract], params: AdjacencyParams) -> AdjacencyGraph:
    """Boundary-touch test on real polygons, spatial-index pre-filtered."""
    usable = [t for t in tracts if t.shape is not None]
    geoms = [t.shape for t in usable]
    eps = params.topology_buffer
    pairs: List[Tuple[str, str]] = []

    if geoms:
        tree = STRtree(geoms)
        boundaries = [g.boundary.buffer(eps) for g in geoms]
        for i, geom_i in enumerate(geoms):
            for j in tree.query(geom_i.buffer(eps)):
                j = int(j)
                if i >= j:
                    continue
                if boundaries[i].intersects(boundaries[j]):
                    pairs.append((usable[i].tract_id, usable[j].tract_id))

    skipped = len(tracts) - len(usable)
    if skipped:
        logger.warning("Tracts without usable geometry left out of topology adjacency", skipped=skipped)
    logger.info("Built topology adjacency", tracts=len(tracts), edges=len(pairs))
    return AdjacencyGraph.from_pairs((t.tract_id for t in tracts), pairs, source="topology")


# ----------------------------
# External precomputed table
# ----------------------------

def adjacency_from_table(tracts: Sequence[Tract], table) -> AdjacencyGraph:
    """
    Accepts either {tract_id: [neighbor ids]} or an iterable of
    {tractId, neighborTractId} rows / (a, b) tuples. Ids outside the tract
    set are dropped; the result is closed symmetrically.
    """
    ids = {t.tract_id for t in tracts}
    pairs: List[Tuple[str, str]] = []

    if isinstance(table, Mapping):
        for u, vs in table.items():
            for v in vs:
                pairs.append((str(u), str(v)))
    else:
        for row in table:
            if isinstance(row, Mapping):
                pairs.append((str(row["tractId"]), str(row["neighborTractId"])))
            else:
                a, b = row
                pairs.append((str(a), str(b)))

    kept = [(a, b) for a, b in pairs if a in ids and b in ids and a != b]
    logger.info("Loaded adjacency table", rows=len(pairs), kept=len(kept))
    return AdjacencyGraph.from_pairs((t.tract_id for t in tracts), kept, source="table")


def build_adjacency(tracts: Sequence[Tract], params: Optional[AdjacencyParams] = None, table=None) -> AdjacencyGraph:
    params = params or AdjacencyParams()
    source = params.source
    if source == "auto":
        source = "table" if table is not None else "heuristic"

    if source == "table":
        if table is None:
            logger.warning("Adjacency source 'table' requested without a table; using heuristic")
            return build_heuristic_adjacency(tracts, params)
        return adjacency_from_table(tracts, table)
    if source == "topology":
        return build_topology_adjacency(tracts, params)
    if source == "heuristic":
        return build_heuristic_adjacency(tracts, params)
    raise ValueError(f"Unknown adjacency source: {params.source}")


# ----------------------------
# Run-scoped cache
# ----------------------------

class AdjacencyCache:
    """
    Graphs keyed by a run / import identifier. Owned by the caller and
    passed into the controller; rebuilt if the tract set or the adjacency
    params under a key change.
    """

    def __init__(self):
        self._entries: Dict[str, Tuple[frozenset, AdjacencyParams, AdjacencyGraph]] = {}

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_or_build(
        self,
        run_id: str,
        tracts: Sequence[Tract],
        params: Optional[AdjacencyParams] = None,
        table=None,
    ) -> AdjacencyGraph:
        params = params or AdjacencyParams()
        ids = frozenset(t.tract_id for t in tracts)
        hit = self._entries.get(run_id)
        if hit is not None:
            cached_ids, cached_params, graph = hit
            if cached_ids == ids and cached_params == params:
                logger.debug("Adjacency cache hit", run_id=run_id)
                return graph
            logger.info(
                "Adjacency cache entry is stale; rebuilding",
                run_id=run_id,
                tracts_changed=cached_ids != ids,
                params_changed=cached_params != params,
            )

        graph = build_adjacency(tracts, params, table=table)
        # copy of the caller's params at build time
        self._entries[run_id] = (ids, replace(params), graph)
        return graph

    def invalidate(self, run_id: Optional[str] = None) -> None:
        if run_id is None:
            self._entries.clear()
        else:
            self._entries.pop(run_id, None)
