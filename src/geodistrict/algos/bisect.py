from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import structlog

from geodistrict.algos.sequencing import AXES, LATITUDE
from geodistrict.data.tracts import Tract

logger = structlog.get_logger()


# ----------------------------
# Config / results
# ----------------------------

@dataclass
class LineSearchParams:
    max_iterations: int = 20
    target_tolerance: float = 0.01  # stop the iterative search within 1% of target
    accept_tolerance: float = 0.05  # below this, no binary-search second pass
    binary_iterations: int = 40


@dataclass
class IndexSplit:
    index: int  # first side = sequence[:index]
    target: float
    first_population: int
    second_population: int


@dataclass
class LineSplit:
    """
    axis == latitude:  first side = tracts entirely north of `coordinate`
    axis == longitude: first side = tracts entirely west of `coordinate`
    Every other tract (including straddlers) lands on the second side whole.
    """
    axis: str
    coordinate: float
    target: float
    first: List[Tract] = field(default_factory=list)
    second: List[Tract] = field(default_factory=list)
    first_population: int = 0
    second_population: int = 0
    iterations: int = 0
    method: str = "trivial"  # "trivial" | "iterative" | "binary"
    converged: bool = True

    @property
    def relative_error(self) -> float:
        if self.target <= 0:
            return 0.0
        return abs(self.first_population - self.target) / self.target


# ----------------------------
# Index-based bisection over an ordered sequence
# ----------------------------

def target_population(total: float, ratio: Tuple[float, float]) -> float:
    r1, r2 = ratio
    if r1 + r2 <= 0:
        return 0.0
    return total * r1 / (r1 + r2)


def split_index(
    sequence: Sequence[Tract],
    ratio: Tuple[float, float],
    *,
    keep_both_sides: bool = True,
) -> IndexSplit:
    """
    Accumulate population left to right and cut where the running total is
    closest to total * r1 / (r1 + r2). First minimum wins on ties.

    With keep_both_sides, sequences of two or more tracts are always cut
    inside [1, n-1].
    """
    n = len(sequence)
    pops = np.array([t.population for t in sequence], dtype=np.int64)
    total = int(pops.sum()) if n else 0
    target = target_population(total, ratio)

    if n == 0:
        return IndexSplit(index=0, target=target, first_population=0, second_population=0)
    if n == 1:
        p = int(pops[0])
        return IndexSplit(index=1, target=target, first_population=p, second_population=0)

    cumulative = np.cumsum(pops)  # cumulative[i] = population of sequence[:i+1]
    diffs = np.abs(cumulative - target)
    if keep_both_sides:
        diffs = diffs[: n - 1]
    best = int(np.argmin(diffs))
    index = best + 1
    first = int(cumulative[best])
    return IndexSplit(index=index, target=target, first_population=first, second_population=total - first)


# ----------------------------
# Coordinate-line bisection
# ----------------------------

def _lead_values(tracts: Sequence[Tract], axis: str) -> np.ndarray:
    """
    Monotone key per tract: a tract is on the first side of line c iff lead <= c.
      latitude:  lead = -south edge   (line coordinate = -c)
      longitude: lead = east edge     (line coordinate = c)
    """
    if axis == LATITUDE:
        return np.array([-t.bbox[1] for t in tracts], dtype=float)
    return np.array([t.bbox[2] for t in tracts], dtype=float)


def split_by_line(
    tracts: Sequence[Tract],
    target: float,
    axis: str,
    params: Optional[LineSearchParams] = None,
) -> LineSplit:
    """
    Search for a dividing latitude/longitude whose first side (tracts lying
    entirely beyond the line) holds about `target` people.

    Pass 1: start at the midpoint, move proportionally to the population
    error, at most `max_iterations` steps, stop within `target_tolerance`.
    Pass 2: if pass 1 ends outside `accept_tolerance`, binary search over
    the same bounds; the better of the two results is kept.
    """
    if axis not in AXES:
        raise ValueError(f"axis must be one of {AXES}, got {axis!r}")
    params = params or LineSearchParams()

    tracts = list(tracts)
    if not tracts:
        return LineSplit(axis=axis, coordinate=0.0, target=float(target))

    lead = _lead_values(tracts, axis)
    pops = np.array([t.population for t in tracts], dtype=np.int64)
    total = int(pops.sum())

    def to_coordinate(c: float) -> float:
        return -c if axis == LATITUDE else c

    def first_pop(c: float) -> int:
        return int(pops[lead <= c].sum())

    def build(c: float, iterations: int, method: str) -> LineSplit:
        mask = lead <= c
        first = [t for t, m in zip(tracts, mask) if m]
        second = [t for t, m in zip(tracts, mask) if not m]
        fp = int(pops[mask].sum())
        split = LineSplit(
            axis=axis,
            coordinate=to_coordinate(c),
            target=float(target),
            first=first,
            second=second,
            first_population=fp,
            second_population=total - fp,
            iterations=iterations,
            method=method,
        )
        split.converged = method == "trivial" or split.relative_error <= params.accept_tolerance
        return split

    lo, hi = float(lead.min()), float(lead.max())
    if len(tracts) == 1 or total == 0 or hi <= lo:
        # one atomic unit (or nothing to weigh): everything on one side
        c = hi if target > 0 else lo - 1.0
        return build(c, 0, "trivial")

    tol_abs = params.target_tolerance * target if target > 0 else 0.0
    span = hi - lo

    # ---- pass 1: proportional adjustment ----
    c = lo + span / 2.0
    best_c, best_err = c, abs(first_pop(c) - target)
    iterations = 0
    for iterations in range(1, params.max_iterations + 1):
        err = first_pop(c) - target
        if abs(err) < best_err:
            best_c, best_err = c, abs(err)
        if abs(err) <= tol_abs:
            break
        # population grows with c; overshoot -> move c down
        c = min(hi, max(lo, c - (err / total) * span))

    iterative = build(best_c, iterations, "iterative")
    if target <= 0 or iterative.relative_error <= params.accept_tolerance:
        return iterative

    logger.info(
        "Iterative line search outside tolerance; running binary search",
        axis=axis,
        relative_error=round(iterative.relative_error, 4),
    )

    # ---- pass 2: binary search ----
    b_lo, b_hi = lo, hi
    bin_best_c, bin_best_err = b_hi, abs(first_pop(b_hi) - target)
    steps = 0
    for steps in range(1, params.binary_iterations + 1):
        mid = (b_lo + b_hi) / 2.0
        err = first_pop(mid) - target
        if abs(err) < bin_best_err:
            bin_best_c, bin_best_err = mid, abs(err)
        if abs(err) <= tol_abs:
            break
        if err > 0:
            b_hi = mid
        else:
            b_lo = mid

    binary = build(bin_best_c, steps, "binary")
    return binary if binary.relative_error < iterative.relative_error else iterative
