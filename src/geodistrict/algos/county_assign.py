from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import structlog

from geodistrict.algos.adjacency import AdjacencyCache, AdjacencyGraph
from geodistrict.algos.balance import balance_population
from geodistrict.algos.districts import AlgorithmStep, DistrictGroup, PartitionResult, summarize
from geodistrict.algos.geodistrict import PartitionParams, prepare_graph, validate_input, warn_empty_districts
from geodistrict.data.tracts import Tract
from geodistrict.errors import BALANCE_INCOMPLETE, RunWarning

logger = structlog.get_logger()


@dataclass
class AdminUnit:
    unit_id: str
    tracts: List[Tract]

    @property
    def population(self) -> int:
        return sum(t.population for t in self.tracts)


def group_by_unit(tracts: Sequence[Tract]) -> List[AdminUnit]:
    """Tracts without an administrative unit form a unit of their own."""
    buckets: Dict[str, List[Tract]] = defaultdict(list)
    for t in tracts:
        key = t.unit_id if t.unit_id is not None else f"tract:{t.tract_id}"
        buckets[key].append(t)
    return [AdminUnit(k, v) for k, v in buckets.items()]


# ----------------------------
# Phase 1: greedy whole-unit assignment
# ----------------------------

def assign_units(units: Sequence[AdminUnit], num_districts: int) -> List[List[AdminUnit]]:
    """
    Largest units first. A unit at or above the per-district target goes to
    an empty district when one is left (else the smallest); any other unit
    goes to the district currently holding the least population.
    """
    total = sum(u.population for u in units)
    target = total / num_districts
    slots: List[List[AdminUnit]] = [[] for _ in range(num_districts)]
    pops = [0] * num_districts

    for unit in sorted(units, key=lambda u: (-u.population, u.unit_id)):
        empty = [i for i in range(num_districts) if not slots[i]]
        if unit.population >= target and empty:
            d = empty[0]
        else:
            d = min(range(num_districts), key=lambda i: (pops[i], i))
        slots[d].append(unit)
        pops[d] += unit.population

    return slots


# ----------------------------
# Phase 2: whole-unit moves
# ----------------------------

def move_whole_units(slots: List[List[AdminUnit]], tolerance: float, max_moves: int) -> int:
    """
    While some over-populated district holds a unit no bigger than its
    excess, move its smallest such unit to the most under-populated district.
    Units are never split. Returns the number of moves.
    """
    n = len(slots)
    if n <= 1:
        return 0
    pops = [sum(u.population for u in s) for s in slots]
    target = sum(pops) / n
    tol_abs = tolerance * target
    moves = 0

    while moves < max_moves:
        under = min(range(n), key=lambda i: (pops[i], i))
        overs = sorted((i for i in range(n) if pops[i] - target > tol_abs), key=lambda i: (-(pops[i] - target), i))
        moved = False
        for o in overs:
            if len(slots[o]) <= 1 or o == under:
                continue
            excess = pops[o] - target
            smallest = min(slots[o], key=lambda u: (u.population, u.unit_id))
            if 0 < smallest.population <= excess:
                slots[o].remove(smallest)
                slots[under].append(smallest)
                pops[o] -= smallest.population
                pops[under] += smallest.population
                moves += 1
                moved = True
                logger.debug("Moved unit", unit=smallest.unit_id, src=o + 1, dst=under + 1)
                break
        if not moved:
            break

    return moves


def _groups_from_slots(slots: List[List[AdminUnit]]) -> List[DistrictGroup]:
    return [
        DistrictGroup(start=i + 1, end=i + 1, tracts=tuple(t for u in s for t in u.tracts), depth=0)
        for i, s in enumerate(slots)
    ]


# ----------------------------
# Public entry points
# ----------------------------

def run_county_assignment(
    tracts: Sequence[Tract],
    num_districts: int,
    params: Optional[PartitionParams] = None,
    *,
    adjacency_table=None,
    graph: Optional[AdjacencyGraph] = None,
    cache: Optional[AdjacencyCache] = None,
    run_id: Optional[str] = None,
) -> PartitionResult:
    params = params or PartitionParams()
    tracts = validate_input(tracts, num_districts)

    warnings: List[RunWarning] = []
    history: List[str] = []
    steps: List[AlgorithmStep] = []

    units = group_by_unit(tracts)
    logger.info("Executing county-aware assignment", tracts=len(tracts), units=len(units), districts=num_districts)

    def record(groups: List[DistrictGroup], description: str) -> None:
        if params.record_steps:
            steps.append(AlgorithmStep(len(steps), 0, tuple(groups), description))

    slots = assign_units(units, num_districts)
    groups = _groups_from_slots(slots)
    history.append(f"Assigned {len(units)} administrative units to {num_districts} districts")
    record(groups, "Whole units assigned greedily by population")

    unit_moves = move_whole_units(slots, params.balance.tolerance, params.county.max_unit_moves)
    if unit_moves:
        groups = _groups_from_slots(slots)
        record(groups, f"Moved {unit_moves} whole units toward balance")
    history.append(f"Whole-unit balancing moved {unit_moves} units")

    balance_report = None
    if params.county.tract_fallback and params.balance.enabled and num_districts > 1:
        graph, reliable = prepare_graph(
            tracts, params, warnings, adjacency_table=adjacency_table, graph=graph, cache=cache, run_id=run_id
        )
        groups, balance_report = balance_population(groups, params.balance, graph if reliable else None)
        history.append(f"Tract-level balancing moved {balance_report.moves} tracts")
        if balance_report.moves:
            record(groups, f"Tract-level balancing moved {balance_report.moves} tracts")
        if not balance_report.within_tolerance:
            warnings.append(
                RunWarning(
                    BALANCE_INCOMPLETE,
                    f"balancing stopped with max deviation {balance_report.max_abs_deviation_after:.2f}%",
                    {"max_abs_deviation_pct": balance_report.max_abs_deviation_after},
                )
            )

    warn_empty_districts(groups, warnings)
    summary = summarize(groups)
    logger.info(
        "County-aware assignment finished",
        unit_moves=unit_moves,
        tract_moves=balance_report.moves if balance_report else 0,
        max_abs_deviation_pct=round(summary.max_abs_deviation_pct, 3),
    )
    return PartitionResult(
        districts=groups,
        steps=steps,
        warnings=warnings,
        history=history,
        summary=summary,
        complete=True,
        balance=balance_report,
        strategies={"county": 1},
    )

