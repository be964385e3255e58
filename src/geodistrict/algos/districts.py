from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from functools import cached_property
from typing import Any, Dict, List, Optional, Sequence, Tuple

from geodistrict.algos.geometry import BBox, Point, mean_point, union_bbox
from geodistrict.data.tracts import Tract
from geodistrict.errors import RunWarning


# ----------------------------
# Recursion-tree node
# ----------------------------

@dataclass(frozen=True, eq=False)
class DistrictGroup:
    """Tracts destined to become districts start..end (inclusive, 1-based)."""
    start: int
    end: int
    tracts: Tuple[Tract, ...]
    depth: int = 0

    @property
    def total_districts(self) -> int:
        return self.end - self.start + 1

    @property
    def is_terminal(self) -> bool:
        return self.total_districts == 1

    @cached_property
    def population(self) -> int:
        return sum(t.population for t in self.tracts)

    @cached_property
    def tract_ids(self) -> List[str]:
        return [t.tract_id for t in self.tracts]

    @cached_property
    def bbox(self) -> BBox:
        return union_bbox([t.bbox for t in self.tracts])

    @cached_property
    def centroid(self) -> Point:
        return mean_point(t.centroid for t in self.tracts)

    def with_tracts(self, tracts: Sequence[Tract]) -> "DistrictGroup":
        return replace(self, tracts=tuple(tracts))

    def label(self) -> str:
        return str(self.start) if self.is_terminal else f"{self.start}-{self.end}"

    def to_record(self) -> Dict[str, Any]:
        return {
            "district_number": self.start,
            "district_end": self.end,
            "tract_ids": list(self.tract_ids),
            "population": int(self.population),
            "bounding_box": list(self.bbox),
            "centroid": list(self.centroid),
        }


@dataclass(frozen=True)
class SplitSpec:
    total: int
    first: int
    second: int
    ratio: Tuple[float, float]


def division_rule(total_districts: int) -> SplitSpec:
    """
    Even counts split 50/50; odd counts split (k, k+1) with k = floor(total/2)
    and ratio weights k/total, (k+1)/total.
    """
    if total_districts <= 1:
        return SplitSpec(total=total_districts, first=max(total_districts, 0), second=0, ratio=(1.0, 0.0))
    if total_districts % 2 == 0:
        half = total_districts // 2
        return SplitSpec(total=total_districts, first=half, second=half, ratio=(0.5, 0.5))
    k = total_districts // 2
    return SplitSpec(
        total=total_districts,
        first=k,
        second=k + 1,
        ratio=(k / total_districts, (k + 1) / total_districts),
    )


# ----------------------------
# Step log
# ----------------------------

@dataclass(frozen=True)
class AlgorithmStep:
    step: int
    depth: int
    groups: Tuple[DistrictGroup, ...]
    description: str
    axis: str = "latitude"

    @property
    def total_groups(self) -> int:
        return len(self.groups)

    @property
    def total_districts(self) -> int:
        return sum(g.total_districts for g in self.groups)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "depth": self.depth,
            "description": self.description,
            "axis": self.axis,
            "total_groups": self.total_groups,
            "total_districts": self.total_districts,
            "groups": [
                {
                    "start": g.start,
                    "end": g.end,
                    "population": int(g.population),
                    "tract_ids": list(g.tract_ids),
                }
                for g in self.groups
            ],
        }


# ----------------------------
# Summary statistics
# ----------------------------

@dataclass
class PartitionSummary:
    total_population: int
    district_count: int
    mean_population: float
    population_variance: float
    population_std_dev: float
    coefficient_of_variation_pct: float
    max_spread_pct: float  # (max - min) / midpoint(max, min)
    min_population: int
    max_population: int
    avg_tracts_per_district: float
    deviation_pct: Dict[int, float] = field(default_factory=dict)  # district number -> signed % from mean

    @property
    def max_abs_deviation_pct(self) -> float:
        return max((abs(v) for v in self.deviation_pct.values()), default=0.0)


def summarize(districts: Sequence[DistrictGroup]) -> PartitionSummary:
    pops = [int(d.population) for d in districts]
    n = len(pops)
    total = sum(pops)
    if n == 0:
        return PartitionSummary(total, 0, 0.0, 0.0, 0.0, 0.0, 0.0, 0, 0, 0.0, {})

    mean = total / n
    variance = sum((p - mean) ** 2 for p in pops) / n
    std = math.sqrt(variance)
    lo, hi = min(pops), max(pops)
    mid = (lo + hi) / 2
    return PartitionSummary(
        total_population=total,
        district_count=n,
        mean_population=mean,
        population_variance=variance,
        population_std_dev=std,
        coefficient_of_variation_pct=(std / mean * 100) if mean > 0 else 0.0,
        max_spread_pct=((hi - lo) / mid * 100) if mid > 0 and n > 1 else 0.0,
        min_population=lo,
        max_population=hi,
        avg_tracts_per_district=sum(len(d.tracts) for d in districts) / n,
        deviation_pct={
            d.start: ((int(d.population) - mean) / mean * 100) if mean > 0 else 0.0 for d in districts
        },
    )


# ----------------------------
# Result
# ----------------------------

@dataclass
class PartitionResult:
    districts: List[DistrictGroup]
    steps: List[AlgorithmStep]
    warnings: List[RunWarning]
    history: List[str]
    summary: PartitionSummary
    complete: bool = True  # False when the iteration cap stopped the run
    balance: Optional[Any] = None  # BalanceReport when the balancing pass ran
    strategies: Dict[str, int] = field(default_factory=dict)  # sequencer strategy -> times used

    def to_records(self) -> List[Dict[str, Any]]:
        return [d.to_record() for d in self.districts]

    def assignment(self) -> Dict[str, int]:
        """tract id -> district number"""
        return {tid: d.start for d in self.districts for tid in d.tract_ids}

    def warning_kinds(self) -> List[str]:
        return [w.kind for w in self.warnings]
