"""Tests for the single-tract population balancer."""
from geodistrict.algos.adjacency import AdjacencyParams, build_heuristic_adjacency
from geodistrict.algos.balance import BalanceParams, balance_population
from geodistrict.algos.districts import DistrictGroup


def groups_from(tracts, sizes):
    out, i = [], 0
    for n, size in enumerate(sizes, start=1):
        out.append(DistrictGroup(n, n, tuple(tracts[i: i + size])))
        i += size
    return out


class TestBalance:
    """Moves only ever lower the deviation and never empty a district."""

    def test_moves_toward_mean(self, make_grid):
        districts = groups_from(make_grid(4, 1), [3, 1])
        out, report = balance_population(districts, BalanceParams())
        assert [d.population for d in out] == [200, 200]
        assert report.moves == 1
        assert report.within_tolerance
        assert report.max_abs_deviation_after < report.max_abs_deviation_before

    def test_never_empties_donor(self, make_square):
        districts = [
            DistrictGroup(1, 1, (make_square("big", 0, 0, population=500),)),
            DistrictGroup(2, 2, (make_square("small", 1, 0, population=100),)),
        ]
        out, report = balance_population(districts, BalanceParams())
        assert report.moves == 0
        assert [len(d.tracts) for d in out] == [1, 1]
        assert not report.within_tolerance

    def test_no_regression(self, make_grid):
        tracts = make_grid(6, 1, population=lambda r, c: [120, 80, 95, 210, 40, 60][c])
        districts = groups_from(tracts, [2, 3, 1])
        out, report = balance_population(districts, BalanceParams(tolerance=0.0))
        assert report.max_abs_deviation_after <= report.max_abs_deviation_before
        assert sum(d.population for d in out) == sum(t.population for t in tracts)
        assert all(d.tracts for d in out)
        assert sorted(t.tract_id for d in out for t in d.tracts) == sorted(t.tract_id for t in tracts)

    def test_keeps_donor_connected(self, make_grid):
        tracts = make_grid(4, 1)
        graph = build_heuristic_adjacency(tracts, AdjacencyParams())
        districts = groups_from(tracts, [3, 1])
        out, report = balance_population(districts, BalanceParams(), graph)
        assert report.moved == [("r0c2", 1, 2)]
        assert graph.is_connected(out[0].tract_ids)
        assert graph.is_connected(out[1].tract_ids)

    def test_move_cap(self, make_grid):
        districts = groups_from(make_grid(4, 1), [3, 1])
        out, report = balance_population(districts, BalanceParams(max_moves=0))
        assert report.moves == 0
        assert out[0] is districts[0]

    def test_already_balanced(self, make_grid):
        districts = groups_from(make_grid(4, 1), [2, 2])
        _, report = balance_population(districts)
        assert report.moves == 0
        assert report.within_tolerance
        assert report.deviations_pct == {1: 0.0, 2: 0.0}
