"""Tests for tract ordering strategies and the fallback chain."""
import pytest

from geodistrict.algos.adjacency import AdjacencyGraph, AdjacencyParams, build_heuristic_adjacency
from geodistrict.algos.sequencing import (
    LATITUDE,
    LONGITUDE,
    SequencerParams,
    centroid_sort,
    find_containers,
    geo_graph_traversal,
    greedy_traversal,
    sequence_tracts,
    start_tract,
    validate_chain,
)
from geodistrict.errors import TraversalBudgetExceeded, TraversalStalled


def ids(tracts):
    return [t.tract_id for t in tracts]


class TestCentroidSort:
    """North to south for latitude passes, west to east for longitude passes."""

    def test_latitude(self, grid_2x2):
        assert ids(centroid_sort(grid_2x2, LATITUDE)) == ["r0c0", "r0c1", "r1c0", "r1c1"]

    def test_longitude(self, grid_2x2):
        assert ids(centroid_sort(grid_2x2, LONGITUDE)) == ["r0c0", "r1c0", "r0c1", "r1c1"]

    def test_tie_band_orders_west_to_east(self, make_square):
        # centroid latitudes 10.0004 (east) and 10.0002 (west) fall in one band
        east = make_square("east", 5.0, 9.9964, size=0.01)
        west = make_square("west", 4.0, 9.9962, size=0.01)
        assert ids(centroid_sort([east, west], LATITUDE)) == ["west", "east"]
        assert ids(centroid_sort([east, west], LATITUDE, params=SequencerParams(tie_band=0))) == ["east", "west"]

    def test_input_not_mutated(self, grid_2x2):
        before = ids(grid_2x2)
        centroid_sort(list(reversed(grid_2x2)), LATITUDE)
        assert ids(grid_2x2) == before


class TestStartTract:
    def test_latitude_starts_north_west(self, make_grid):
        assert start_tract(make_grid(3, 3), LATITUDE).tract_id == "r0c0"

    def test_longitude_starts_south_west(self, make_grid):
        assert start_tract(make_grid(3, 3), LONGITUDE).tract_id == "r2c0"


class TestGreedy:
    def test_row(self, make_grid):
        tracts = make_grid(3, 1)
        g = build_heuristic_adjacency(tracts, AdjacencyParams())
        assert ids(greedy_traversal(tracts, LATITUDE, g)) == ["r0c0", "r0c1", "r0c2"]

    def test_disconnected_remainder_is_appended(self, make_square):
        tracts = [make_square("a", 0, 0), make_square("b", 1, 0), make_square("far", 10, -10)]
        g = build_heuristic_adjacency(tracts, AdjacencyParams())
        order = ids(greedy_traversal(tracts, LATITUDE, g))
        assert order == ["a", "b", "far"]

    def test_budget(self, make_grid):
        tracts = make_grid(3, 1)
        g = build_heuristic_adjacency(tracts, AdjacencyParams())
        with pytest.raises(TraversalBudgetExceeded):
            greedy_traversal(tracts, LATITUDE, g, SequencerParams(max_steps_per_tract=0))

    def test_time_budget(self, make_grid):
        tracts = make_grid(10, 10)
        g = build_heuristic_adjacency(tracts, AdjacencyParams())
        with pytest.raises(TraversalBudgetExceeded, match="time budget"):
            greedy_traversal(tracts, LATITUDE, g, SequencerParams(time_budget_s=-1.0))


class TestGeoGraph:
    """Zig-zag row traversal with contained tracts following their container."""

    def test_zig_zag(self, grid_2x2):
        g = build_heuristic_adjacency(grid_2x2, AdjacencyParams())
        assert ids(geo_graph_traversal(grid_2x2, LATITUDE, g)) == ["r0c0", "r0c1", "r1c1", "r1c0"]

    def test_contained_tract_follows_container(self, make_square):
        big = make_square("big", 0.0, 0.0, size=3.0)
        inner = make_square("inner", 1.0, 1.0, size=1.0)
        east = make_square("east", 3.0, 0.0, size=3.0)
        tracts = [east, inner, big]
        assert find_containers(tracts) == {"inner": "big"}

        g = build_heuristic_adjacency(tracts, AdjacencyParams())
        assert ids(geo_graph_traversal(tracts, LATITUDE, g)) == ["big", "inner", "east"]

    def test_stalls_without_edges(self, make_square):
        tracts = [make_square("a", 0, 0), make_square("b", 5, 0)]
        g = AdjacencyGraph.from_pairs(["a", "b"], [])
        with pytest.raises(TraversalStalled):
            geo_graph_traversal(tracts, LATITUDE, g)

    def test_visits_every_tract(self, make_grid):
        tracts = make_grid(4, 3)
        g = build_heuristic_adjacency(tracts, AdjacencyParams())
        for axis in (LATITUDE, LONGITUDE):
            order = geo_graph_traversal(tracts, axis, g)
            assert sorted(ids(order)) == sorted(ids(tracts))


class TestSequenceTracts:
    """The strategy chain falls through to the next strategy on failure."""

    def test_first_strategy_wins(self, grid_2x2):
        g = build_heuristic_adjacency(grid_2x2, AdjacencyParams())
        res = sequence_tracts(grid_2x2, LATITUDE, g)
        assert res.strategy == "geo_graph"
        assert res.fallbacks == []

    def test_unreliable_graph_uses_centroid(self, grid_2x2):
        g = AdjacencyGraph.from_pairs(ids(grid_2x2), [])
        res = sequence_tracts(grid_2x2, LATITUDE, g, graph_reliable=False)
        assert res.strategy == "centroid"
        assert len(res.fallbacks) == 2
        assert ids(res.order) == ids(centroid_sort(grid_2x2, LATITUDE))

    def test_no_graph(self, grid_2x2):
        assert sequence_tracts(grid_2x2, LONGITUDE, None).strategy == "centroid"

    def test_stall_falls_back_to_greedy(self, make_square):
        tracts = [make_square("a", 0, 0), make_square("b", 5, 0)]
        g = AdjacencyGraph.from_pairs(["a", "b"], [])
        res = sequence_tracts(tracts, LATITUDE, g)
        assert res.strategy == "greedy"
        assert res.fallbacks[0].startswith("geo_graph")
        assert sorted(ids(res.order)) == ["a", "b"]

    def test_custom_chain(self, grid_2x2):
        g = build_heuristic_adjacency(grid_2x2, AdjacencyParams())
        res = sequence_tracts(grid_2x2, LATITUDE, g, SequencerParams(chain=["greedy"]))
        assert res.strategy == "greedy"

    def test_time_budget_falls_back_to_centroid(self, make_grid):
        tracts = make_grid(10, 10)
        g = build_heuristic_adjacency(tracts, AdjacencyParams())
        res = sequence_tracts(tracts, LATITUDE, g, SequencerParams(time_budget_s=-1.0))
        assert res.strategy == "centroid"
        assert len(res.fallbacks) == 2
        assert all("time budget" in f for f in res.fallbacks)

    def test_bad_axis(self, grid_2x2):
        with pytest.raises(ValueError):
            sequence_tracts(grid_2x2, "diagonal")


class TestValidateChain:
    def test_appends_centroid(self):
        assert validate_chain(["greedy"]) == ["greedy", "centroid"]
        assert validate_chain(["centroid", "greedy"]) == ["centroid", "greedy"]

    def test_unknown(self):
        with pytest.raises(ValueError):
            validate_chain(["spiral"])
