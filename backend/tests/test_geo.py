"""
Tests for the geometry toolkit.
"""

import pytest
from shapely.errors import GEOSException
from shapely.geometry import (
    GeometryCollection,
    LineString,
    MultiPolygon,
    Point,
    Polygon,
    box,
)

from capscore.utils.geo import (
    GeometryError,
    LocalProjection,
    UnsupportedGeometryError,
    destination,
    feet_to_metres,
    footprint_distance,
    metres_to_feet,
    metres_to_miles,
    midpoint,
    miles_to_metres,
    planar_bearing,
    representative_coordinate,
    safe_intersects,
)


class TestUnits:
    """Tests for unit conversion helpers."""

    def test_feet_metres(self):
        """Test feet/metre conversions."""
        assert feet_to_metres(1000) == pytest.approx(304.8)
        assert metres_to_feet(304.8) == pytest.approx(1000)

    def test_miles_metres(self):
        """Test mile/metre conversions."""
        assert miles_to_metres(1) == pytest.approx(1609.344)
        assert metres_to_miles(804.672) == pytest.approx(0.5)


class TestLocalProjection:
    """Tests for LocalProjection."""

    def setup_method(self):
        """Set up test fixtures."""
        self.projection = LocalProjection(-87.65, 41.88)

    def test_origin_maps_to_zero(self):
        """Test that the projection centre maps to the frame origin."""
        p = self.projection.project(Point(-87.65, 41.88))
        assert p.x == pytest.approx(0, abs=1e-6)
        assert p.y == pytest.approx(0, abs=1e-6)

    def test_unproject_inverts_project(self):
        """Test that unproject returns the original coordinates."""
        original = Point(-87.63, 41.90)
        back = self.projection.unproject(self.projection.project(original))
        assert back.x == pytest.approx(original.x, abs=1e-7)
        assert back.y == pytest.approx(original.y, abs=1e-7)

    def test_distances_in_metres(self):
        """Test that 0.01 degrees of latitude is about 1.1 km."""
        a = self.projection.project(Point(-87.65, 41.88))
        b = self.projection.project(Point(-87.65, 41.89))
        assert 1100 < a.distance(b) < 1120

    def test_for_geometries_centres_on_bounds(self):
        """Test that the projection is centred on the combined bounds."""
        projection = LocalProjection.for_geometries([
            LineString([(-87.70, 41.80), (-87.60, 41.80)]),
            Point(-87.65, 41.90),
        ])
        assert projection.lon0 == pytest.approx(-87.65)
        assert projection.lat0 == pytest.approx(41.85)

    def test_for_geometries_empty(self):
        """Test fallback centre when no geometry is given."""
        projection = LocalProjection.for_geometries([])
        assert (projection.lon0, projection.lat0) == (0.0, 0.0)


class TestPlanarHelpers:
    """Tests for bearing, destination and midpoint."""

    def test_bearing(self):
        """Test bearings are clockwise from north."""
        origin = Point(0, 0)
        assert planar_bearing(origin, Point(0, 10)) == pytest.approx(0)
        assert planar_bearing(origin, Point(10, 0)) == pytest.approx(90)
        assert planar_bearing(origin, Point(0, -10)) == pytest.approx(180)

    def test_destination(self):
        """Test travelling along a bearing."""
        p = destination(Point(0, 0), 10, 90)
        assert p.x == pytest.approx(10)
        assert p.y == pytest.approx(0, abs=1e-9)

    def test_midpoint(self):
        """Test midpoint of two points."""
        assert midpoint(Point(0, 0), Point(4, 2)).equals(Point(2, 1))


class TestFootprintDistance:
    """Tests for footprint_distance dispatch."""

    def setup_method(self):
        """Set up test fixtures."""
        self.footprint = box(0, 0, 100, 6)
        self.center = Point(50, 3)

    def test_point_inside_is_zero(self):
        """Test a point inside the footprint has distance 0."""
        assert footprint_distance(Point(50, 3), self.footprint, self.center) == 0

    def test_point_outside(self):
        """Test distance from an outside point to the footprint boundary."""
        assert footprint_distance(Point(50, 106), self.footprint, self.center) == pytest.approx(100)

    def test_line(self):
        """Test distance to a line."""
        line = LineString([(200, 0), (200, 10)])
        assert footprint_distance(line, self.footprint, self.center) == pytest.approx(100)

    def test_polygon_intersecting(self):
        """Test an intersecting polygon has distance 0."""
        polygon = box(90, -10, 120, 10)
        assert footprint_distance(polygon, self.footprint, self.center) == 0

    def test_multipolygon_uses_nearest_part(self):
        """Test that multipolygons are measured part by part."""
        multi = MultiPolygon([box(0, 56, 10, 66), box(0, 26, 10, 36)])
        assert footprint_distance(multi, self.footprint, self.center) == pytest.approx(20)

    def test_unsupported_kind(self):
        """Test that unsupported geometry kinds raise."""
        with pytest.raises(UnsupportedGeometryError):
            footprint_distance(GeometryCollection([Point(0, 0)]), self.footprint, self.center)

    def test_geometry_error_is_value_error(self):
        """Test the exception hierarchy."""
        assert issubclass(GeometryError, ValueError)


class TestHelpers:
    """Tests for safe_intersects and representative_coordinate."""

    def test_safe_intersects(self):
        """Test footprint/polygon intersection."""
        footprint = box(0, 0, 10, 10)
        assert safe_intersects(footprint, box(5, 5, 15, 15), Point(5, 5)) is True
        assert safe_intersects(footprint, box(20, 20, 30, 30), Point(5, 5)) is False

    def test_representative_point(self):
        """Test the coordinate picked for a point."""
        assert representative_coordinate(Point(1.5, 2.5)) == [1.5, 2.5]

    def test_representative_line_midpoint(self):
        """Test that lines use their middle vertex."""
        line = LineString([(0, 0), (1, 1), (2, 2)])
        assert representative_coordinate(line) == [1, 1]

    def test_representative_polygon(self):
        """Test that polygons use their first exterior vertex."""
        polygon = Polygon([(3, 4), (5, 4), (5, 6), (3, 4)])
        assert representative_coordinate(polygon) == [3, 4]

    def test_representative_unsupported(self):
        """Test empty and unsupported geometries."""
        assert representative_coordinate(Point()) is None
        assert representative_coordinate(GeometryCollection([Point(0, 0)])) is None


class TestGeometryFallbacks:
    """Tests for recovery when exact geometry predicates fail."""

    def setup_method(self):
        """Set up test fixtures."""
        self.footprint = box(0, 0, 100, 6)
        self.center = Point(50, 3)

    def break_polygon_intersects(self, monkeypatch, spare=()):
        original = Polygon.intersects

        def failing(geometry, other):
            if isinstance(other, spare):
                return original(geometry, other)
            raise GEOSException("TopologyException: side location conflict")

        monkeypatch.setattr(Polygon, "intersects", failing)

    def test_polygon_falls_back_to_centroid(self, monkeypatch):
        """Test that a failing intersection test measures to the centroid."""
        self.break_polygon_intersects(monkeypatch)
        polygon = box(40, 50, 60, 70)

        assert footprint_distance(polygon, self.footprint, self.center) == pytest.approx(57)

    def test_multipolygon_part_fallback(self, monkeypatch):
        """Test that each failing part falls back to its own centroid."""
        self.break_polygon_intersects(monkeypatch, spare=(MultiPolygon,))
        multi = MultiPolygon([box(0, 56, 10, 66), box(40, 26, 60, 36)])

        assert footprint_distance(multi, self.footprint, self.center) == pytest.approx(28)

    def test_safe_intersects_tests_centre(self, monkeypatch):
        """Test that safe_intersects falls back to a centre-in-polygon test."""
        self.break_polygon_intersects(monkeypatch)

        assert safe_intersects(self.footprint, box(40, 0, 60, 10), self.center) is True
        assert safe_intersects(self.footprint, box(40, 20, 60, 30), self.center) is False
