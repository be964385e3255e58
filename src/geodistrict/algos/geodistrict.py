# src/geodistrict/algos/geodistrict.py
#
# Recursive population-balanced bisection ("geodistrict").
# - Start with one group holding every tract and all N districts
# - Split each group by the division rule (even 50/50, odd k / k+1)
# - Alternate latitude / longitude with recursion depth
# - Bisect an ordered tract sequence (index mode) or search a dividing line (line mode)
# - Optional balancing pass over the finished districts
#
# Entry points:
#   run_geodistrict(tracts, num_districts, params) -> PartitionResult
#   run(pack, cfg) -> PartitionResult
#
from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field, fields
from typing import List, Optional, Sequence, Tuple

import structlog

from geodistrict.algos.adjacency import AdjacencyCache, AdjacencyGraph, AdjacencyParams, build_adjacency
from geodistrict.algos.balance import BalanceParams, balance_population
from geodistrict.algos.bisect import LineSearchParams, split_by_line, split_index, target_population
from geodistrict.algos.districts import (
    AlgorithmStep,
    DistrictGroup,
    PartitionResult,
    division_rule,
    summarize,
)
from geodistrict.algos.sequencing import AXES, LATITUDE, LONGITUDE, SequencerParams, sequence_tracts, validate_chain
from geodistrict.data.tracts import Tract
from geodistrict.errors import (
    BALANCE_INCOMPLETE,
    DISCONNECTED_SPLIT,
    EMPTY_DISTRICT,
    INVALID_GEOMETRY,
    MAX_ITERATIONS_REACHED,
    NON_CONVERGENT_LINE_SEARCH,
    SPARSE_ADJACENCY,
    TRAVERSAL_FALLBACK,
    InvalidPartitionInput,
    RunWarning,
)

logger = structlog.get_logger()


# ----------------------------
# Config
# ----------------------------

@dataclass
class CountyParams:
    max_unit_moves: int = 1000
    tract_fallback: bool = True  # finish with tract-level balancing after whole-unit moves


@dataclass
class PartitionParams:
    num_districts: Optional[int] = None
    strategy: str = "geodistrict"  # "geodistrict" | "county"
    bisect_mode: str = "index"  # "index" | "line"
    start_axis: str = LATITUDE
    max_iterations: int = 1000
    validate_contiguity: bool = True
    record_steps: bool = True

    adjacency: AdjacencyParams = field(default_factory=AdjacencyParams)
    sequencer: SequencerParams = field(default_factory=SequencerParams)
    line_search: LineSearchParams = field(default_factory=LineSearchParams)
    balance: BalanceParams = field(default_factory=BalanceParams)
    county: CountyParams = field(default_factory=CountyParams)


def _apply_section(obj, section: Optional[dict]) -> None:
    """Overwrite dataclass fields from a config dict, coercing to the default's type."""
    if not section:
        return
    for f in fields(obj):
        if f.name not in section:
            continue
        current = getattr(obj, f.name)
        value = section[f.name]
        if isinstance(current, bool):
            value = bool(value)
        elif isinstance(current, int) and value is not None:
            value = int(value)
        elif isinstance(current, float) and value is not None:
            value = float(value)
        elif isinstance(current, list):
            value = list(value)
        setattr(obj, f.name, value)


def params_from_cfg(cfg: dict) -> PartitionParams:
    p = PartitionParams()
    run_cfg = cfg.get("run", {}) or {}
    algo_cfg = (cfg.get("algo", {}) or {}).get("geodistrict", {}) or {}

    if "num_districts" in run_cfg:
        p.num_districts = int(run_cfg["num_districts"])
    if "pop_tolerance" in run_cfg:
        p.balance.tolerance = float(run_cfg["pop_tolerance"])

    top = {k: v for k, v in algo_cfg.items() if not isinstance(v, dict)}
    if "num_districts" in top:
        p.num_districts = int(top.pop("num_districts"))
    _apply_section(p, top)

    _apply_section(p.adjacency, algo_cfg.get("adjacency"))
    _apply_section(p.sequencer, algo_cfg.get("sequencer"))
    _apply_section(p.line_search, algo_cfg.get("line_search"))
    _apply_section(p.balance, algo_cfg.get("balance"))
    _apply_section(p.county, algo_cfg.get("county"))

    if p.bisect_mode not in {"index", "line"}:
        raise ValueError(f"bisect_mode must be 'index' or 'line', got {p.bisect_mode!r}")
    if p.strategy not in {"geodistrict", "county"}:
        raise ValueError(f"strategy must be 'geodistrict' or 'county', got {p.strategy!r}")
    if p.start_axis not in AXES:
        raise ValueError(f"start_axis must be one of {AXES}, got {p.start_axis!r}")
    p.sequencer.chain = validate_chain(p.sequencer.chain)
    return p


# ----------------------------
# Shared run helpers
# ----------------------------

def validate_input(tracts: Sequence[Tract], num_districts) -> List[Tract]:
    if isinstance(num_districts, bool) or not isinstance(num_districts, int):
        raise InvalidPartitionInput(f"num_districts must be an integer, got {num_districts!r}")
    if num_districts <= 0:
        raise InvalidPartitionInput(f"num_districts must be >= 1, got {num_districts}")

    tracts = list(tracts)
    if not tracts:
        raise InvalidPartitionInput(f"empty tract set cannot be split into {num_districts} districts")

    counts = Counter(t.tract_id for t in tracts)
    dupes = sorted(tid for tid, c in counts.items() if c > 1)
    if dupes:
        raise InvalidPartitionInput(f"duplicate tract ids: {dupes[:10]}")

    negative = [t.tract_id for t in tracts if t.population < 0]
    if negative:
        raise InvalidPartitionInput(f"negative population for tracts: {negative[:10]}")
    return tracts


def prepare_graph(
    tracts: Sequence[Tract],
    params: PartitionParams,
    warnings: List[RunWarning],
    *,
    adjacency_table=None,
    graph: Optional[AdjacencyGraph] = None,
    cache: Optional[AdjacencyCache] = None,
    run_id: Optional[str] = None,
) -> Tuple[AdjacencyGraph, bool]:
    """Build (or fetch) the run's adjacency graph and judge whether it is reliable."""
    invalid = [t.tract_id for t in tracts if not t.has_valid_geometry]
    if invalid:
        warnings.append(
            RunWarning(
                INVALID_GEOMETRY,
                f"{len(invalid)} tracts have invalid geometry; using centroid fallbacks",
                {"tract_ids": invalid[:20]},
            )
        )
        logger.warning("Tracts with invalid geometry", count=len(invalid))

    if graph is None:
        if cache is not None and run_id is not None:
            graph = cache.get_or_build(run_id, tracts, params.adjacency, table=adjacency_table)
        else:
            graph = build_adjacency(tracts, params.adjacency, table=adjacency_table)

    quality = graph.quality(t.tract_id for t in tracts)
    reliable = not quality.is_sparse(params.adjacency)
    logger.info(
        "Adjacency quality",
        source=graph.source,
        avg_neighbors=round(quality.avg_neighbors, 3),
        coverage=round(quality.coverage, 3),
        reliable=reliable,
    )
    if not reliable:
        warnings.append(
            RunWarning(
                SPARSE_ADJACENCY,
                f"adjacency graph is sparse (coverage {quality.coverage:.1%}, "
                f"avg neighbors {quality.avg_neighbors:.2f}); using centroid sort",
                {"coverage": quality.coverage, "avg_neighbors": quality.avg_neighbors},
            )
        )
    return graph, reliable


def axis_for_depth(depth: int, start_axis: str = LATITUDE) -> str:
    if depth % 2 == 0:
        return start_axis
    return LONGITUDE if start_axis == LATITUDE else LATITUDE


def warn_empty_districts(districts: Sequence[DistrictGroup], warnings: List[RunWarning]) -> None:
    empty = [d.label() for d in districts if not d.tracts]
    if empty:
        warnings.append(RunWarning(EMPTY_DISTRICT, f"{len(empty)} districts received no tracts", {"districts": empty}))


# ----------------------------
# One bisection
# ----------------------------

@dataclass
class _SplitOutcome:
    first: List[Tract]
    second: List[Tract]
    method: str
    detail: str


def _split_group(
    group: DistrictGroup,
    axis: str,
    graph: AdjacencyGraph,
    reliable: bool,
    params: PartitionParams,
    warnings: List[RunWarning],
    strategies: Counter,
) -> _SplitOutcome:
    rule = division_rule(group.total_districts)

    if params.bisect_mode == "line":
        target = target_population(group.population, rule.ratio)
        ls = split_by_line(group.tracts, target, axis, params.line_search)
        if not ls.converged:
            warnings.append(
                RunWarning(
                    NON_CONVERGENT_LINE_SEARCH,
                    f"group {group.label()}: dividing {axis} line missed target by {ls.relative_error:.1%}",
                    {"group": group.label(), "coordinate": ls.coordinate, "method": ls.method},
                )
            )
        if ls.first and ls.second or len(group.tracts) < 2:
            strategies[f"line:{ls.method}"] += 1
            return _SplitOutcome(
                ls.first, ls.second, "line", f"{axis} line at {ls.coordinate:.6f} ({ls.method})"
            )
        logger.info("Line split left one side empty; using index split", group=group.label(), axis=axis)

    seq = sequence_tracts(group.tracts, axis, graph, params.sequencer, graph_reliable=reliable)
    strategies[seq.strategy] += 1
    if reliable and seq.fallbacks:
        warnings.append(
            RunWarning(
                TRAVERSAL_FALLBACK,
                f"group {group.label()}: sequenced with {seq.strategy} after fallbacks",
                {"group": group.label(), "fallbacks": list(seq.fallbacks)},
            )
        )
    sp = split_index(seq.order, rule.ratio)
    return _SplitOutcome(
        list(seq.order[: sp.index]),
        list(seq.order[sp.index:]),
        "index",
        f"{seq.strategy} sequence cut at {sp.index}/{len(seq.order)}",
    )


# ----------------------------
# Controller
# ----------------------------

def run_geodistrict(
    tracts: Sequence[Tract],
    num_districts: int,
    params: Optional[PartitionParams] = None,
    *,
    adjacency_table=None,
    graph: Optional[AdjacencyGraph] = None,
    cache: Optional[AdjacencyCache] = None,
    run_id: Optional[str] = None,
) -> PartitionResult:
    """
    Recursively bisect the tract set until every group holds one district.

    Returns a PartitionResult with the final districts (ordered by district
    number), the step log, collected warnings and summary statistics. If the
    iteration cap is hit, the current forest is returned with
    complete=False and a max_iterations_reached warning.
    """
    params = params or PartitionParams()
    tracts = validate_input(tracts, num_districts)

    warnings: List[RunWarning] = []
    history: List[str] = []
    steps: List[AlgorithmStep] = []
    strategies: Counter = Counter()

    total_pop = sum(t.population for t in tracts)
    logger.info(
        "Executing geodistrict algorithm",
        tracts=len(tracts),
        districts=num_districts,
        total_population=total_pop,
        target_population=round(total_pop / num_districts, 1),
        bisect_mode=params.bisect_mode,
    )

    graph, reliable = prepare_graph(
        tracts, params, warnings, adjacency_table=adjacency_table, graph=graph, cache=cache, run_id=run_id
    )

    root = DistrictGroup(start=1, end=num_districts, tracts=tuple(tracts), depth=0)
    forest: List[DistrictGroup] = [root]

    def record(depth: int, description: str, axis: str) -> None:
        if params.record_steps:
            steps.append(AlgorithmStep(len(steps), depth, tuple(forest), description, axis))

    record(0, "Initial state: all tracts in a single group", params.start_axis)

    queue = deque([root])
    splits = 0
    complete = True

    while queue:
        group = queue.popleft()

        if group.is_terminal:
            history.append(
                f"District {group.start}: finalized with {len(group.tracts)} tracts, {group.population:,} people"
            )
            record(group.depth, f"District {group.start} finalized", axis_for_depth(group.depth, params.start_axis))
            continue

        if splits >= params.max_iterations:
            complete = False
            queue.appendleft(group)
            msg = f"Algorithm stopped: maximum iterations ({params.max_iterations}) reached"
            history.append(msg)
            warnings.append(
                RunWarning(
                    MAX_ITERATIONS_REACHED,
                    msg,
                    {"unfinished_groups": [g.label() for g in queue if not g.is_terminal]},
                )
            )
            logger.warning("Maximum iterations reached", max_iterations=params.max_iterations)
            break

        splits += 1
        axis = axis_for_depth(group.depth, params.start_axis)
        rule = division_rule(group.total_districts)
        outcome = _split_group(group, axis, graph, reliable, params, warnings, strategies)

        first = DistrictGroup(group.start, group.start + rule.first - 1, tuple(outcome.first), group.depth + 1)
        second = DistrictGroup(group.start + rule.first, group.end, tuple(outcome.second), group.depth + 1)

        idx = next(i for i, g in enumerate(forest) if g is group)
        forest[idx: idx + 1] = [first, second]
        queue.extend([first, second])

        history.append(
            f"Group {group.label()}: divided by {axis} into {rule.first} + {rule.second} districts ({outcome.detail})"
        )
        for child, name in ((first, "First"), (second, "Second")):
            history.append(
                f"  - {name} group: districts {child.label()}, {child.population:,} people, {len(child.tracts)} tracts"
            )
        logger.info(
            "Split group",
            group=group.label(),
            axis=axis,
            first=first.label(),
            second=second.label(),
            first_population=first.population,
            second_population=second.population,
            method=outcome.method,
        )

        if params.validate_contiguity and reliable:
            for child in (first, second):
                if len(child.tracts) > 1:
                    comps = graph.components(child.tract_ids)
                    if len(comps) > 1:
                        warnings.append(
                            RunWarning(
                                DISCONNECTED_SPLIT,
                                f"group {child.label()} is split into {len(comps)} disconnected pieces",
                                {"group": child.label(), "components": len(comps)},
                            )
                        )
                        logger.warning("Disconnected split", group=child.label(), components=len(comps))

        record(
            group.depth + 1,
            f"Split group {group.label()} by {axis} into {rule.first} + {rule.second}",
            axis,
        )

    districts = list(forest)
    balance_report = None

    if complete:
        history.append(f"Algorithm completed: {len(districts)} districts created in {splits} iterations")
        if params.balance.enabled and len(districts) > 1:
            districts, balance_report = balance_population(
                districts, params.balance, graph if reliable else None
            )
            history.append(f"Population balancing moved {balance_report.moves} tracts")
            if not balance_report.within_tolerance:
                warnings.append(
                    RunWarning(
                        BALANCE_INCOMPLETE,
                        f"balancing stopped with max deviation {balance_report.max_abs_deviation_after:.2f}% "
                        f"(tolerance {params.balance.tolerance:.2%})",
                        {"max_abs_deviation_pct": balance_report.max_abs_deviation_after},
                    )
                )
            if balance_report.moves:
                forest = districts
                record(max(d.depth for d in districts), f"Population balancing moved {balance_report.moves} tracts", params.start_axis)

    warn_empty_districts(districts, warnings)
    summary = summarize(districts)
    logger.info(
        "Geodistrict finished",
        districts=len(districts),
        complete=complete,
        variance=round(summary.population_variance, 2),
        max_abs_deviation_pct=round(summary.max_abs_deviation_pct, 3),
        warnings=len(warnings),
    )

    return PartitionResult(
        districts=districts,
        steps=steps,
        warnings=warnings,
        history=history,
        summary=summary,
        complete=complete,
        balance=balance_report,
        strategies=dict(strategies),
    )


# ----------------------------
# Public entry point
# ----------------------------

def run(pack, cfg: dict) -> PartitionResult:
    """
    Entry point called by runner.

    pack: TractPack (tracts + optional adjacency table)
    Dispatches on algo.geodistrict.strategy ("geodistrict" | "county").
    """
    params = params_from_cfg(cfg)
    if params.num_districts is None:
        raise KeyError("Config missing run.num_districts")

    if params.strategy == "county":
        from geodistrict.algos.county_assign import run_county_assignment

        return run_county_assignment(
            pack.tracts,
            params.num_districts,
            params,
            adjacency_table=pack.adjacency,
            run_id=str(pack.pack_dir),
        )
    return run_geodistrict(
        pack.tracts,
        params.num_districts,
        params,
        adjacency_table=pack.adjacency,
        run_id=str(pack.pack_dir),
    )
