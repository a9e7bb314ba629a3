"""
Feature scorers.

Each scorer maps one segment to a 0-10 score for a single feature. The
families are:

- point proximity: nearest point feature to the segment footprint
- polygon proximity: nearest polygon boundary to the segment footprint
- centroid proximity: nearest polygon centroid to the segment centre
- density: count or mileage of features within a radius of the centre
- block group: attribute of the census block group containing the centre

Proximity scores decay linearly from 10 at distance 0 to 0 at the search
radius. Density and block-group scores are normalized against a fixed
maximum calibrated on the source data, then mapped according to the
configured direction.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional, TYPE_CHECKING

from shapely.errors import GEOSException
from shapely.geometry import LineString, MultiLineString

from capscore.models.schemas import Direction, FeatureConfig
from capscore.services.datasets import Dataset
from capscore.services.segmentation.segmenter import Segment
from capscore.utils.geo import (
    GeometryError,
    UnsupportedGeometryError,
    footprint_distance,
    metres_to_miles,
    miles_to_metres,
)

if TYPE_CHECKING:
    from capscore.services.engine import RunContext

logger = logging.getLogger(__name__)

POINT_KINDS = ("Point", "MultiPoint")
POLYGON_KINDS = ("Polygon", "MultiPolygon", "Point")


def linear_decay(distance_miles: float, radius_miles: float) -> float:
    """
    Proximity score: 10 at distance 0, falling linearly to 0 at the radius.

    Args:
        distance_miles: Distance to the nearest feature (math.inf if none)
        radius_miles: Search radius

    Returns:
        Score in [0, 10]
    """
    if distance_miles == math.inf or radius_miles <= 0:
        return 0.0
    return max(0.0, 1 - distance_miles / radius_miles) * 10


def directional_score(
    value: float,
    maximum: float,
    direction: Direction,
    floor: Optional[float] = None,
) -> float:
    """
    Map a raw measurement onto 0-10.

    "higher" scales value / maximum directly. "lower" inverts it; with a
    floor, the value is raised to at least `floor` first so that zero
    observed density does not earn a perfect score.
    """
    if math.isnan(value) or math.isinf(value):
        return 0.0

    if direction == Direction.LOWER:
        if floor is not None:
            value = max(floor, value)
        score = (1 - min(1.0, value / maximum)) * 10
    else:
        score = min(1.0, value / maximum) * 10

    if math.isnan(score) or math.isinf(score):
        return 0.0
    return max(0.0, min(10.0, score))


def _parse_number(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


class FeatureScorer(ABC):
    """Scores one feature for one segment."""

    family: str = ""
    default_direction: Optional[Direction] = None

    def __init__(self, dataset_keys: Iterable[str]):
        self.dataset_keys = tuple(dataset_keys)

    @abstractmethod
    def score(self, segment: Segment, ctx: "RunContext", config: FeatureConfig) -> float:
        ...

    def direction(self, config: FeatureConfig) -> Direction:
        return config.direction or self.default_direction or Direction.HIGHER

    def describe(self) -> dict:
        return {
            "family": self.family,
            "datasets": list(self.dataset_keys),
            "default_direction": self.default_direction.value if self.default_direction else None,
        }


class PointProximityScorer(FeatureScorer):
    """Proximity from the segment footprint to the nearest point feature."""

    family = "point_proximity"

    def __init__(self, dataset_key: str):
        super().__init__([dataset_key])
        self.dataset_key = dataset_key

    def nearest_distance(self, segment: Segment, dataset: Dataset, radius_m: float) -> float:
        """Distance in metres to the nearest point within the radius envelope."""
        nearest = math.inf
        search_area = segment.footprint.buffer(radius_m)
        for feature in dataset.query(search_area):
            if feature.kind not in POINT_KINDS:
                continue
            try:
                distance = footprint_distance(feature.geometry, segment.footprint, segment.center)
            except GeometryError:
                continue
            nearest = min(nearest, distance)
        return nearest

    def score(self, segment: Segment, ctx: "RunContext", config: FeatureConfig) -> float:
        dataset = ctx.projected.get(self.dataset_key)
        if dataset is None:
            return 0.0
        distance = self.nearest_distance(segment, dataset, miles_to_metres(config.radius))
        if distance == math.inf:
            return 0.0
        return linear_decay(metres_to_miles(distance), config.radius)


class PolygonProximityScorer(PointProximityScorer):
    """Proximity from the segment footprint to the nearest polygon boundary."""

    family = "polygon_proximity"

    def nearest_distance(self, segment: Segment, dataset: Dataset, radius_m: float) -> float:
        nearest = math.inf
        search_area = segment.footprint.buffer(radius_m)
        for feature in dataset.query(search_area):
            if feature.kind not in POLYGON_KINDS:
                continue
            try:
                distance = footprint_distance(feature.geometry, segment.footprint, segment.center)
            except (GeometryError, UnsupportedGeometryError):
                continue
            nearest = min(nearest, distance)
        return nearest


class CentroidProximityScorer(FeatureScorer):
    """Proximity from the segment centre to the nearest polygon centroid."""

    family = "centroid_proximity"

    def __init__(self, dataset_key: str):
        super().__init__([dataset_key])
        self.dataset_key = dataset_key

    def score(self, segment: Segment, ctx: "RunContext", config: FeatureConfig) -> float:
        dataset = ctx.projected.get(self.dataset_key)
        if dataset is None:
            return 0.0

        nearest = math.inf
        for feature in dataset:
            try:
                distance = segment.center.distance(feature.geometry.centroid)
            except (GEOSException, ValueError):
                continue
            if math.isnan(distance):
                continue
            nearest = min(nearest, distance)

        if nearest == math.inf:
            return 0.0
        return linear_decay(metres_to_miles(nearest), config.radius)


class DensityScorer(FeatureScorer):
    """
    Amount of a dataset within a radius of the segment centre.

    metric="count" counts intersecting features. metric="mileage" sums line
    mileage, preferring the `mileage_attribute` property when it holds a
    usable number and otherwise measuring the geometry.
    """

    family = "density"

    def __init__(
        self,
        dataset_keys: Iterable[str],
        maximum: float,
        floor: float,
        metric: str = "count",
        mileage_attribute: Optional[str] = None,
        default_direction: Direction = Direction.HIGHER,
    ):
        super().__init__(dataset_keys)
        self.maximum = maximum
        self.floor = floor
        self.metric = metric
        self.mileage_attribute = mileage_attribute
        self.default_direction = default_direction

    def _mileage(self, properties: dict, geometry) -> float:
        if self.mileage_attribute:
            raw = properties.get(self.mileage_attribute)
            if raw:
                mileage = _parse_number(raw)
                if mileage is not None:
                    return mileage
        if isinstance(geometry, (LineString, MultiLineString)):
            return metres_to_miles(geometry.length)
        return 0.0

    def measure(self, segment: Segment, dataset: Dataset, radius_m: float) -> float:
        """Raw metric for one dataset."""
        search_area = segment.center.buffer(radius_m)
        total = 0.0
        for feature in dataset.query(search_area):
            try:
                if not feature.geometry.intersects(search_area):
                    continue
            except (GEOSException, ValueError):
                continue

            if self.metric == "count":
                total += 1
            else:
                total += self._mileage(feature.properties, feature.geometry)
        return total

    def score(self, segment: Segment, ctx: "RunContext", config: FeatureConfig) -> float:
        radius_m = miles_to_metres(config.radius)
        total = 0.0
        for key in self.dataset_keys:
            dataset = ctx.projected.get(key)
            if dataset is not None:
                total += self.measure(segment, dataset, radius_m)
        return directional_score(total, self.maximum, self.direction(config), self.floor)

    def describe(self) -> dict:
        description = super().describe()
        description.update({"metric": self.metric, "maximum": self.maximum})
        return description


class BlockGroupScorer(FeatureScorer):
    """Attribute of the census block group containing the segment centre."""

    family = "block_group"
    BLOCK_GROUPS = "block_groups_with_census"

    def __init__(self, attribute: str, maximum: float, default_direction: Direction):
        super().__init__([self.BLOCK_GROUPS])
        self.attribute = attribute
        self.maximum = maximum
        self.default_direction = default_direction

    def containing_block_group(self, segment: Segment, ctx: "RunContext") -> Optional[dict]:
        dataset = ctx.projected.get(self.BLOCK_GROUPS)
        if dataset is None:
            return None
        for feature in dataset.query(segment.center):
            try:
                if feature.geometry.contains(segment.center):
                    return feature.properties
            except (GEOSException, ValueError):
                continue
        return None

    def score(self, segment: Segment, ctx: "RunContext", config: FeatureConfig) -> float:
        properties = self.containing_block_group(segment, ctx)
        if properties is None:
            return 0.0

        raw = properties.get(self.attribute)
        if not raw:
            return 0.0
        value = _parse_number(raw)
        if value is None:
            return 0.0

        return directional_score(value, self.maximum, self.direction(config))

    def describe(self) -> dict:
        description = super().describe()
        description.update({"attribute": self.attribute, "maximum": self.maximum})
        return description


# Evaluation order matches the order of this mapping
FEATURE_SCORERS: dict[str, FeatureScorer] = {
    "cta_stations": PointProximityScorer("cta_rail_stations"),
    "metra_stations": PointProximityScorer("metra_stations"),
    "amtrak_stations": PointProximityScorer("amtrak_stations"),
    "parks": PolygonProximityScorer("parks"),
    "public_schools": PointProximityScorer("public_schools"),
    "private_schools": PointProximityScorer("private_schools"),
    "colleges": PointProximityScorer("colleges_universities"),
    "hospitals": PointProximityScorer("hospitals"),
    "landmarks": PolygonProximityScorer("landmarks"),
    "stadiums": PointProximityScorer("stadiums"),
    "ssa": PolygonProximityScorer("special_service_areas"),
    "tif": PolygonProximityScorer("tif_districts"),
    "medical_district": PolygonProximityScorer("medical_district"),
    "neighborhood_center": CentroidProximityScorer("neighborhoods"),
    "bridges": PointProximityScorer("bridges"),
    # ADI ranges 1-100, higher = more disadvantaged
    "adi": BlockGroupScorer("adi", maximum=100, default_direction=Direction.HIGHER),
    # Block groups with 2200+ crashes get the full score
    "crashes": BlockGroupScorer("crash_count", maximum=2200, default_direction=Direction.LOWER),
    "transit_density": DensityScorer(
        ["cta_bus_stops", "pace_bus_stops"],
        maximum=80,
        floor=1,
        metric="count",
    ),
    "bike_network": DensityScorer(
        ["bike_routes"],
        maximum=5,
        floor=0.1,
        metric="mileage",
        mileage_attribute="mi_ctrline",
    ),
}


def active_features(features: dict[str, FeatureConfig]) -> list[tuple[str, FeatureScorer, FeatureConfig]]:
    """
    Features to compute for a run, in evaluation order.

    Zero-weight features are left out entirely; configuration keys without
    a scorer are ignored with a warning.
    """
    unknown = sorted(set(features) - set(FEATURE_SCORERS))
    if unknown:
        logger.warning("Ignoring features without a scorer: %s", ", ".join(unknown))

    active = []
    for key, scorer in FEATURE_SCORERS.items():
        config = features.get(key)
        if config is not None and config.weight > 0:
            active.append((key, scorer, config))
    return active


def score_segments(
    ctx: "RunContext",
    segments: list[Segment],
    on_segment: Optional[Callable[[int, int, Segment], None]] = None,
) -> None:
    """
    Fill in `segment.scores` for every eligible segment.

    Args:
        ctx: Run context
        segments: Segments after gating; ineligible ones are left untouched
        on_segment: Called with (index, total, segment) after each segment
    """
    active = active_features(ctx.config.features)

    missing = sorted({
        key
        for _, scorer, _ in active
        for key in scorer.dataset_keys
        if key not in ctx.projected
    })
    for key in missing:
        logger.warning("Dataset %s not available; dependent features score 0", key)

    eligible = [s for s in segments if s.eligible]
    logger.info("Scoring %d segments on %d features", len(eligible), len(active))

    for index, segment in enumerate(eligible, start=1):
        for key, scorer, config in active:
            segment.scores[key] = scorer.score(segment, ctx, config)
        if on_segment is not None:
            on_segment(index, len(eligible), segment)
