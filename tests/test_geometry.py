"""Tests for the pure geometry helpers and their fallbacks."""
import copy
import math

import pytest

from geodistrict.algos import geometry
from geodistrict.data.tracts import Tract
from geodistrict.errors import InvalidGeometry


class TestPureFunctions:
    """Bounding box, centroid and corner extremes of valid polygons."""

    def test_bounding_box(self, make_square):
        t = make_square("a", 2.0, 3.0, size=0.5)
        assert geometry.bounding_box(t) == (2.0, 3.0, 2.5, 3.5)

    def test_centroid_is_mean_of_all_vertices(self, make_square):
        # the closing vertex is counted as it appears in the ring
        t = make_square("a", 0.0, 0.0)
        lng, lat = geometry.centroid(t)
        assert lng == pytest.approx(0.4)
        assert lat == pytest.approx(0.4)

    def test_functions_are_pure(self, make_square):
        t = make_square("a", -112.0, 33.0)
        before = copy.deepcopy(t.coordinates)
        first = (geometry.bounding_box(t), geometry.centroid(t), geometry.extreme_point(t, "NW"))
        second = (geometry.bounding_box(t), geometry.centroid(t), geometry.extreme_point(t, "NW"))
        assert first == second
        assert t.coordinates == before

    @pytest.mark.parametrize(
        "corner, expected",
        [("NW", (0.0, 1.0)), ("NE", (1.0, 1.0)), ("SW", (0.0, 0.0)), ("SE", (1.0, 0.0))],
    )
    def test_square_corners(self, make_square, corner, expected):
        assert geometry.extreme_point(make_square("a", 0.0, 0.0), corner) == expected

    def test_extreme_prefers_latitude_then_longitude(self):
        # north-most vertex wins even when another vertex is further west
        t = Tract("tri", 1, "Polygon", [[[0.0, 0.0], [2.0, 0.0], [1.0, 3.0], [-1.0, 2.9], [0.0, 0.0]]])
        assert geometry.extreme_point(t, "NW") == (1.0, 3.0)
        assert geometry.extreme_point(t, "SW") == (0.0, 0.0)
        assert geometry.extreme_point(t, "SE") == (2.0, 0.0)

    def test_unknown_corner(self, make_square):
        with pytest.raises(ValueError):
            geometry.extreme_point(make_square("a", 0, 0), "N")

    def test_multipolygon_uses_every_ring(self):
        coords = [
            [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]],
            [[[5, 5], [6, 5], [6, 6], [5, 6], [5, 5]]],
        ]
        t = Tract("m", 10, "MultiPolygon", coords)
        assert geometry.bounding_box(t) == (0.0, 0.0, 6.0, 6.0)
        assert geometry.extreme_point(t, "NE") == (6.0, 6.0)


class TestValidation:
    """Rejected geometry raises InvalidGeometry from the strict functions."""

    @pytest.mark.parametrize(
        "geometry_type, coordinates",
        [
            ("Polygon", [[[0, 0], [1, 0], [0, 1]]]),
            ("Polygon", [[[0, 0], [1, 0], [float("nan"), 1], [0, 1], [0, 0]]]),
            ("Polygon", [[[0, 0], [1, 0], [1, float("inf")], [0, 1], [0, 0]]]),
            ("Point", [0, 0]),
            ("Polygon", None),
            ("Polygon", []),
            ("MultiPolygon", [[]]),
        ],
    )
    def test_invalid(self, geometry_type, coordinates):
        t = Tract("bad", 1, geometry_type, coordinates)
        with pytest.raises(InvalidGeometry):
            geometry.centroid(t)
        assert not t.has_valid_geometry
        assert t.geometry_error

    def test_to_shape_rejects_invalid(self):
        t = Tract("bad", 1, "Polygon", [[[0, 0], [1, 0], [0, 1]]])
        with pytest.raises(InvalidGeometry):
            geometry.to_shape(t)
        assert t.shape is None


class TestFallbacks:
    """Safe variants degrade to vertex-mean behaviour instead of raising."""

    def test_centroid_from_loose_vertices(self):
        t = Tract("bad", 1, "Polygon", [[[0.0, 0.0], [2.0, 0.0], [0.0, 2.0]]])
        lng, lat = geometry.safe_centroid(t)
        assert lng == pytest.approx(2 / 3)
        assert lat == pytest.approx(2 / 3)

    def test_bbox_collapses_to_centroid(self):
        t = Tract("bad", 1, "Polygon", [[[0.0, 0.0], [2.0, 0.0], [0.0, 2.0]]])
        x, y = geometry.safe_centroid(t)
        assert geometry.safe_bounding_box(t) == (x, y, x, y)
        assert geometry.safe_extreme_point(t, "NW") == (x, y)

    def test_no_coordinates_at_all(self):
        t = Tract("empty", 1, "Polygon", None)
        assert t.centroid == (0.0, 0.0)
        assert t.bbox == (0.0, 0.0, 0.0, 0.0)

    def test_cached_properties_match_strict(self, make_square):
        t = make_square("a", 3.0, 4.0)
        assert t.bbox == geometry.bounding_box(t)
        assert t.centroid == geometry.centroid(t)
        assert t.extreme("SE") == geometry.extreme_point(t, "SE")
        assert t.shape is not None and t.shape.area == pytest.approx(1.0)


class TestHelpers:
    def test_distance(self):
        assert geometry.distance((0, 0), (3, 4)) == 5.0

    def test_union_bbox(self):
        assert geometry.union_bbox([(0, 0, 1, 1), (2, -1, 3, 0.5)]) == (0, -1, 3, 1)
        assert geometry.union_bbox([]) == (0.0, 0.0, 0.0, 0.0)

    def test_mean_point(self):
        assert geometry.mean_point([(0, 0), (2, 4)]) == (1.0, 2.0)
        assert not any(math.isnan(v) for v in geometry.mean_point([]))
