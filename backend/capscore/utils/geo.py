from functools import singledispatch
from shapely.geometry import (
    Point,
    MultiPoint,
    LineString,
    MultiLineString,
    Polygon,
    MultiPolygon,
)
from shapely.geometry.base import BaseGeometry
from shapely.errors import GEOSException
from shapely.ops import transform
import logging
import math
import pyproj
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

FEET_PER_METRE = 3.280839895
METRES_PER_MILE = 1609.344

WGS84 = pyproj.CRS("EPSG:4326")


class GeometryError(ValueError):
    """A geometry computation produced no usable result."""


class UnsupportedGeometryError(TypeError):
    """Raised for geometry kinds outside the supported set."""


def feet_to_metres(feet: float) -> float:
    return feet / FEET_PER_METRE


def metres_to_feet(metres: float) -> float:
    return metres * FEET_PER_METRE


def metres_to_miles(metres: float) -> float:
    return metres / METRES_PER_MILE


def miles_to_metres(miles: float) -> float:
    return miles * METRES_PER_MILE


class LocalProjection:
    """
    Azimuthal equidistant projection centred on the study area.

    Distances, buffers and lengths are computed in metres in this frame.
    Within a metropolitan area the distortion is well below a metre per
    kilometre, so planar operations stand in for geodesic ones.
    """

    def __init__(self, lon0: float, lat0: float):
        self.lon0 = lon0
        self.lat0 = lat0
        local_crs = pyproj.CRS.from_proj4(
            f"+proj=aeqd +lat_0={lat0} +lon_0={lon0} +datum=WGS84 +units=m +no_defs"
        )
        self._forward = pyproj.Transformer.from_crs(WGS84, local_crs, always_xy=True)
        self._inverse = pyproj.Transformer.from_crs(local_crs, WGS84, always_xy=True)

    @classmethod
    def for_geometries(cls, geometries: Iterable[BaseGeometry]) -> "LocalProjection":
        """
        Build a projection centred on the bounds of the given geometries.

        Args:
            geometries: Geometries in lon/lat

        Returns:
            LocalProjection centred on the midpoint of their combined bounds
        """
        minx = miny = math.inf
        maxx = maxy = -math.inf
        for geom in geometries:
            if geom is None or geom.is_empty:
                continue
            x0, y0, x1, y1 = geom.bounds
            minx, miny = min(minx, x0), min(miny, y0)
            maxx, maxy = max(maxx, x1), max(maxy, y1)

        if minx == math.inf:
            return cls(0.0, 0.0)
        return cls((minx + maxx) / 2, (miny + maxy) / 2)

    def project(self, geometry: BaseGeometry) -> BaseGeometry:
        """Project a lon/lat geometry into the local metric frame."""
        return transform(self._forward.transform, geometry)

    def unproject(self, geometry: BaseGeometry) -> BaseGeometry:
        """Project a local metric geometry back to lon/lat."""
        return transform(self._inverse.transform, geometry)


def planar_bearing(start: Point, end: Point) -> float:
    """
    Bearing from start to end in degrees clockwise from north.

    Args:
        start, end: Points in a planar metric frame

    Returns:
        Bearing in degrees in (-180, 180]
    """
    return math.degrees(math.atan2(end.x - start.x, end.y - start.y))


def destination(origin: Point, distance: float, bearing: float) -> Point:
    """
    Point reached by travelling a distance along a bearing.

    Args:
        origin: Starting point (planar metric frame)
        distance: Distance in frame units
        bearing: Degrees clockwise from north

    Returns:
        Destination point
    """
    theta = math.radians(bearing)
    return Point(
        origin.x + distance * math.sin(theta),
        origin.y + distance * math.cos(theta),
    )


def midpoint(a: Point, b: Point) -> Point:
    return Point((a.x + b.x) / 2, (a.y + b.y) / 2)


def _checked(value: float) -> float:
    if value is None or math.isnan(value):
        raise GeometryError("distance computation returned no value")
    return value


def _centroid_distance(geometry: BaseGeometry, center: Point) -> float:
    try:
        return _checked(center.distance(geometry.centroid))
    except GEOSException as e:
        raise GeometryError(str(e)) from e


@singledispatch
def footprint_distance(geometry: BaseGeometry, footprint: Polygon, center: Point) -> float:
    """
    Minimum distance between a dataset geometry and a segment footprint.

    Zero when the geometry touches or lies inside the footprint. Geometry
    failures fall back to the distance between the segment centre and the
    geometry centroid.

    Args:
        geometry: Dataset geometry (local metric frame)
        footprint: Segment rectangle (local metric frame)
        center: Segment centre (local metric frame)

    Returns:
        Distance in metres

    Raises:
        UnsupportedGeometryError: For geometry kinds without a registered case
        GeometryError: When neither the exact nor the fallback distance can be computed
    """
    raise UnsupportedGeometryError(f"unsupported geometry type: {geometry.geom_type}")


def _exact_or_centroid(geometry: BaseGeometry, footprint: Polygon, center: Point) -> float:
    try:
        if footprint.intersects(geometry):
            return 0.0
        return _checked(footprint.distance(geometry))
    except (GEOSException, GeometryError, ValueError) as e:
        logger.debug("Falling back to centroid distance for %s: %s", geometry.geom_type, e)
        return _centroid_distance(geometry, center)


@footprint_distance.register
def _(geometry: Point, footprint: Polygon, center: Point) -> float:
    return _exact_or_centroid(geometry, footprint, center)


@footprint_distance.register
def _(geometry: MultiPoint, footprint: Polygon, center: Point) -> float:
    return _exact_or_centroid(geometry, footprint, center)


@footprint_distance.register
def _(geometry: LineString, footprint: Polygon, center: Point) -> float:
    return _exact_or_centroid(geometry, footprint, center)


@footprint_distance.register
def _(geometry: MultiLineString, footprint: Polygon, center: Point) -> float:
    return _exact_or_centroid(geometry, footprint, center)


@footprint_distance.register
def _(geometry: Polygon, footprint: Polygon, center: Point) -> float:
    return _exact_or_centroid(geometry, footprint, center)


@footprint_distance.register
def _(geometry: MultiPolygon, footprint: Polygon, center: Point) -> float:
    try:
        if footprint.intersects(geometry):
            return 0.0
    except (GEOSException, ValueError) as e:
        logger.debug("Falling back to centroid distance for MultiPolygon: %s", e)
        return _centroid_distance(geometry, center)

    nearest = math.inf
    for part in geometry.geoms:
        try:
            distance = _exact_or_centroid(part, footprint, center)
        except GeometryError:
            continue
        nearest = min(nearest, distance)

    if nearest == math.inf:
        return _centroid_distance(geometry, center)
    return nearest


def safe_intersects(footprint: Polygon, geometry: BaseGeometry, center: Point) -> bool:
    """
    Test whether a footprint intersects a polygon.

    Falls back to a centre-in-polygon test when the polygon is malformed.
    """
    try:
        return bool(footprint.intersects(geometry))
    except (GEOSException, ValueError) as e:
        logger.debug("Intersection failed, testing segment centre instead: %s", e)
        try:
            return bool(geometry.contains(center))
        except (GEOSException, ValueError):
            return False


def representative_coordinate(geometry: BaseGeometry) -> Optional[list[float]]:
    """
    Pick one coordinate of a geometry for display purposes.

    Args:
        geometry: Any shapely geometry

    Returns:
        [x, y] or None for empty or unsupported geometries
    """
    if geometry is None or geometry.is_empty:
        return None

    if isinstance(geometry, Point):
        coords = geometry.coords[0]
    elif isinstance(geometry, Polygon):
        coords = geometry.exterior.coords[0]
    elif isinstance(geometry, MultiPolygon):
        coords = geometry.geoms[0].exterior.coords[0]
    elif isinstance(geometry, LineString):
        line_coords = list(geometry.coords)
        coords = line_coords[len(line_coords) // 2]
    else:
        return None

    return [coords[0], coords[1]]
