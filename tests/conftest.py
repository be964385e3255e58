"""Shared synthetic tract layouts: unit squares laid out on a lng/lat grid."""
import pytest

from geodistrict.data.tracts import Tract


def square_rings(x0, y0, size=1.0):
    """Closed square ring (5 vertices) with its south-west corner at (x0, y0)."""
    return [[
        [x0, y0],
        [x0 + size, y0],
        [x0 + size, y0 + size],
        [x0, y0 + size],
        [x0, y0],
    ]]


def square_tract(tract_id, x0, y0, population=100, size=1.0, unit_id=None):
    return Tract(
        tract_id=tract_id,
        population=population,
        geometry_type="Polygon",
        coordinates=square_rings(x0, y0, size),
        unit_id=unit_id,
    )


def grid_tracts(cols, rows, population=100, size=1.0):
    """
    Tracts named r<row>c<col>; row 0 is the northernmost row, col 0 the
    westernmost column. `population` may be an int or a callable (row, col) -> int.
    """
    tracts = []
    for r in range(rows):
        for c in range(cols):
            pop = population(r, c) if callable(population) else population
            tracts.append(square_tract(f"r{r}c{c}", c * size, (rows - 1 - r) * size, pop, size))
    return tracts


@pytest.fixture
def make_square():
    return square_tract


@pytest.fixture
def make_grid():
    return grid_tracts


@pytest.fixture
def grid_2x2():
    return grid_tracts(2, 2)
