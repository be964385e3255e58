from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


class GeodistrictError(Exception):
    """Base class for engine errors."""


class InvalidGeometry(GeodistrictError):
    """Tract geometry is missing, degenerate or of an unsupported type."""


class TraversalStalled(GeodistrictError):
    """A graph traversal ran out of frontier candidates before visiting every tract."""


class TraversalBudgetExceeded(GeodistrictError):
    """A traversal used up its iteration or time budget."""


class InvalidPartitionInput(GeodistrictError, ValueError):
    """Malformed top-level input (bad district count, empty tract set, bad populations)."""


# ----------------------------
# Recoverable conditions (collected, never raised)
# ----------------------------

SPARSE_ADJACENCY = "sparse_adjacency"
TRAVERSAL_FALLBACK = "traversal_fallback"
NON_CONVERGENT_LINE_SEARCH = "non_convergent_line_search"
MAX_ITERATIONS_REACHED = "max_iterations_reached"
DISCONNECTED_SPLIT = "disconnected_split"
INVALID_GEOMETRY = "invalid_geometry"
BALANCE_INCOMPLETE = "balance_incomplete"
EMPTY_DISTRICT = "empty_district"


@dataclass
class RunWarning:
    kind: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "context": dict(self.context)}
