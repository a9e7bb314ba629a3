"""
Gate Pipeline.

Hard eligibility filters applied to every segment before scoring. Gates run
in a fixed order; each one only turns eligible segments ineligible and skips
segments an earlier gate already excluded. Because every gate only removes,
the final eligibility does not depend on the order, but the per-gate
exclusion counts do.
"""

import logging
import math
import re
from dataclasses import dataclass, asdict
from typing import Any, Callable, Mapping, Optional, TYPE_CHECKING

from capscore.models.schemas import ZoningCategory
from capscore.services.datasets import Dataset, Feature
from capscore.services.segmentation.segmenter import Segment
from capscore.utils.geo import (
    GeometryError,
    footprint_distance,
    metres_to_miles,
    safe_intersects,
)

if TYPE_CHECKING:
    from capscore.services.engine import RunContext

logger = logging.getLogger(__name__)

STATION_DATASETS = ("cta_rail_stations", "metra_stations", "amtrak_stations")

# Neighborhood datasets are tagged inconsistently; the first non-empty key wins
NEIGHBORHOOD_NAME_KEYS = ("pri_neigh", "neighborhood", "name", "COMMUNITY", "PRI_NEIGH")

# Zone-class prefix -> category, checked in order
ZONING_PATTERNS = [
    (re.compile(r"^R[SMT]"), ZoningCategory.RESIDENTIAL),
    (re.compile(r"^B[123]"), ZoningCategory.BUSINESS),
    (re.compile(r"^C[123]"), ZoningCategory.COMMERCIAL),
    (re.compile(r"^D[CRSX]"), ZoningCategory.DOWNTOWN),
    (re.compile(r"^M[123]"), ZoningCategory.INDUSTRIAL),
    (re.compile(r"^P[MD]"), ZoningCategory.PLANNED),
]


@dataclass
class GateResult:
    """Outcome of one gate."""
    name: str
    enabled: bool = True
    skipped: bool = False
    evaluated: int = 0
    excluded: int = 0
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def neighborhood_name(properties: Mapping[str, Any]) -> str:
    """Resolve a neighborhood polygon's name using NEIGHBORHOOD_NAME_KEYS."""
    for key in NEIGHBORHOOD_NAME_KEYS:
        value = properties.get(key)
        if value:
            return str(value)
    return ""


def categorize_zoning(zone_class: Optional[str]) -> ZoningCategory:
    """Map a zone-class code (e.g. 'RS-3', 'B1-2', 'PMD 4') to its category."""
    if not zone_class:
        return ZoningCategory.OTHER
    for pattern, category in ZONING_PATTERNS:
        if pattern.match(str(zone_class)):
            return category
    return ZoningCategory.OTHER


def parse_age(value: Any) -> Optional[float]:
    """Bridge age in years, or None when unknown."""
    if value is None or isinstance(value, bool):
        return None
    try:
        age = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(age):
        return None
    return age


class GatePipeline:
    """
    Applies the configured gates to a run's segments.

    Usage:
        results = GatePipeline(ctx).apply(segments)
    """

    def __init__(self, ctx: "RunContext"):
        self.ctx = ctx
        self.requirements = ctx.config.requirements

    def apply(self, segments: list[Segment]) -> list[GateResult]:
        """
        Run every gate in order.

        Returns:
            One GateResult per gate, in evaluation order
        """
        req = self.requirements
        results = [
            self._run("station_proximity", req.station_proximity.enabled, self.station_proximity, segments),
            self._run("neighborhoods", req.neighborhoods.enabled, self.neighborhoods, segments),
            self._run("zoning", req.zoning.enabled, self.zoning, segments),
            self._run(
                "ssa",
                req.ssa.enabled,
                lambda segs: self.polygon_intersection("special_service_areas", "Special Service Areas", segs),
                segments,
            ),
            self._run(
                "tif",
                req.tif.enabled,
                lambda segs: self.polygon_intersection("tif_districts", "Tax Increment Financing Districts", segs),
                segments,
            ),
            self._run("bridge_age", req.bridge_age.enabled, self.bridge_condition, segments),
        ]

        eligible = sum(1 for s in segments if s.eligible)
        logger.info("%d of %d segments remain after requirement filters", eligible, len(segments))
        return results

    def _run(
        self,
        name: str,
        enabled: bool,
        gate: Callable[[list[Segment]], GateResult],
        segments: list[Segment],
    ) -> GateResult:
        if not enabled:
            return GateResult(name=name, enabled=False, skipped=True, reason="disabled")
        result = gate(segments)
        result.name = name
        if result.skipped:
            logger.warning("Gate %s skipped: %s", name, result.reason)
        else:
            logger.info(
                "Gate %s excluded %d of %d segments",
                name,
                result.excluded,
                result.evaluated,
            )
        return result

    def _exclude_where(
        self,
        segments: list[Segment],
        should_exclude: Callable[[Segment], bool],
    ) -> GateResult:
        result = GateResult(name="")
        for segment in segments:
            if not segment.eligible:
                continue
            result.evaluated += 1
            if should_exclude(segment):
                segment.eligible = False
                result.excluded += 1
        return result

    def _dataset(self, key: str) -> Optional[Dataset]:
        return self.ctx.projected.get(key)

    # -------------------------------------------------------------------------
    # Gates
    # -------------------------------------------------------------------------

    def station_proximity(self, segments: list[Segment]) -> GateResult:
        """Exclude segments whose centre is farther than the threshold from every station."""
        max_distance = self.requirements.station_proximity.distance

        stations = []
        for key in STATION_DATASETS:
            dataset = self._dataset(key)
            if dataset is not None:
                stations.extend(f.geometry for f in dataset.of_kind("Point"))

        if not stations:
            return GateResult(name="", skipped=True, reason="no station datasets available")

        logger.info(
            "Applying station-proximity gate with %d stations, max distance %.2f miles",
            len(stations),
            max_distance,
        )

        def too_far(segment: Segment) -> bool:
            nearest = min(segment.center.distance(station) for station in stations)
            return metres_to_miles(nearest) > max_distance

        return self._exclude_where(segments, too_far)

    def neighborhoods(self, segments: list[Segment]) -> GateResult:
        """Keep segments intersecting one of the selected neighborhoods."""
        selected = set(self.requirements.neighborhoods.selected)
        if not selected:
            return GateResult(name="", skipped=True, reason="no neighborhoods selected")

        dataset = self._dataset("neighborhoods")
        if dataset is None:
            return GateResult(name="", skipped=True, reason="neighborhoods dataset not available")

        return self._keep_intersecting(
            segments,
            dataset,
            lambda f: neighborhood_name(f.properties) in selected,
        )

    def zoning(self, segments: list[Segment]) -> GateResult:
        """Keep segments intersecting a zoning district of an allowed category."""
        allowed = set(self.requirements.zoning.allowed)
        if not allowed:
            logger.info("No zoning categories allowed - excluding all segments")
            return self._exclude_where(segments, lambda segment: True)

        dataset = self._dataset("zoning_districts")
        if dataset is None:
            return GateResult(name="", skipped=True, reason="zoning_districts dataset not available")

        return self._keep_intersecting(
            segments,
            dataset,
            lambda f: categorize_zoning(f.properties.get("zone_class")) in allowed,
        )

    def polygon_intersection(self, key: str, label: str, segments: list[Segment]) -> GateResult:
        """Keep segments intersecting at least one polygon of a dataset."""
        dataset = self._dataset(key)
        if dataset is None:
            return GateResult(name="", skipped=True, reason=f"{key} dataset not available")

        logger.info("Applying %s filter", label)
        return self._keep_intersecting(segments, dataset)

    def bridge_condition(self, segments: list[Segment]) -> GateResult:
        """Exclude segments whose nearest bridge of known age exceeds the age threshold."""
        threshold = self.requirements.bridge_age.threshold

        dataset = self._dataset("bridges")
        if dataset is None:
            return GateResult(name="", skipped=True, reason="bridges dataset not available")

        aged_bridges = []
        for bridge in dataset.of_kind("Point"):
            age = parse_age(bridge.properties.get("age"))
            if age is not None:
                aged_bridges.append((bridge, age))

        logger.info(
            "Applying bridge condition gate (max age %s years, %d bridges with known age)",
            threshold,
            len(aged_bridges),
        )

        def nearest_too_old(segment: Segment) -> bool:
            nearest_age = None
            shortest = math.inf
            for bridge, age in aged_bridges:
                try:
                    distance = footprint_distance(bridge.geometry, segment.footprint, segment.center)
                except GeometryError:
                    continue
                if distance < shortest:
                    shortest = distance
                    nearest_age = age
            return nearest_age is not None and nearest_age > threshold

        return self._exclude_where(segments, nearest_too_old)

    def _keep_intersecting(
        self,
        segments: list[Segment],
        dataset: Dataset,
        accept: Optional[Callable[[Feature], bool]] = None,
    ) -> GateResult:
        def misses_all(segment: Segment) -> bool:
            return not any(
                safe_intersects(segment.footprint, polygon.geometry, segment.center)
                for polygon in dataset.query(segment.footprint)
                if accept is None or accept(polygon)
            )

        return self._exclude_where(segments, misses_all)
