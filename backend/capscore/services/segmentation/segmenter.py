"""
Segmenter.

Cuts continuous freeway routes into fixed-width rectangular candidate sites
("segments") of near-uniform length.

A route longer than the target length is split into floor(total / target)
equal sub-intervals, so the remainder is spread over every segment instead
of leaving a short tail. Each sub-interval becomes a rectangle centred on
the chord between its two endpoints and aligned with it.

Routes must already be in the local metric frame (metres).
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Optional

from shapely.geometry import LineString, Point, Polygon

from capscore.services.corridors.corridor_builder import Route
from capscore.utils.geo import (
    destination,
    feet_to_metres,
    metres_to_feet,
    midpoint,
    planar_bearing,
)

logger = logging.getLogger(__name__)


@dataclass
class Segment:
    """A candidate cap site: the unit of gating, scoring and ranking."""
    id: str
    footprint: Polygon  # local metric frame
    corridor: str
    length_ft: float
    center: Point  # local metric frame
    scores: dict[str, float] = field(default_factory=dict)
    eligible: bool = True


def make_rectangle(start: Point, end: Point, half_width: float) -> Optional[tuple[Polygon, Point, float]]:
    """
    Build a rectangle aligned with the chord from start to end.

    Args:
        start, end: Chord endpoints (metric frame)
        half_width: Half of the rectangle width, in metres

    Returns:
        (rectangle, centre, chord length) or None for a zero-length chord
    """
    chord = start.distance(end)
    if chord == 0:
        return None

    bearing = planar_bearing(start, end)
    center = midpoint(start, end)
    half_length = chord / 2

    tip_a = destination(center, half_length, bearing)
    tip_b = destination(center, half_length, bearing + 180)

    a1 = destination(tip_a, half_width, bearing + 90)
    a2 = destination(tip_a, half_width, bearing - 90)
    b1 = destination(tip_b, half_width, bearing - 90)
    b2 = destination(tip_b, half_width, bearing + 90)

    rectangle = Polygon([
        (a1.x, a1.y),
        (a2.x, a2.y),
        (b1.x, b1.y),
        (b2.x, b2.y),
    ])
    return rectangle, center, chord


class Segmenter:
    """
    Produces segments for routes.

    One Segmenter is used per run; it numbers segments sequentially across
    every route it processes.
    """

    DEFAULT_WIDTH_FT = 20.0

    def __init__(self, target_length_ft: float, width_ft: float = DEFAULT_WIDTH_FT):
        self.target_length_ft = target_length_ft
        self.width_ft = width_ft
        self.target_length_m = feet_to_metres(target_length_ft)
        self.half_width_m = feet_to_metres(width_ft) / 2
        self._next_id = 0

    def _new_segment(self, route: Route, start: Point, end: Point, length_m: float) -> Optional[Segment]:
        rect = make_rectangle(start, end, self.half_width_m)
        if rect is None:
            return None
        footprint, center, _ = rect

        segment = Segment(
            id=f"segment-{self._next_id}",
            footprint=footprint,
            corridor=route.corridor,
            length_ft=metres_to_feet(length_m),
            center=center,
        )
        self._next_id += 1
        return segment

    def segment(self, route: Route) -> list[Segment]:
        """
        Cover a route end to end with segments.

        Args:
            route: Route whose geometry is in the local metric frame

        Returns:
            Ordered segments; degenerate sub-intervals are skipped
        """
        line: LineString = route.geometry
        total = line.length
        if total == 0:
            return []

        if total <= self.target_length_m:
            segment = self._new_segment(route, line.interpolate(0), line.interpolate(total), total)
            return [segment] if segment else []

        count = math.floor(total / self.target_length_m)
        step = total / count

        segments = []
        for i in range(count):
            start = line.interpolate(i * step)
            end = line.interpolate(total if i == count - 1 else (i + 1) * step)
            segment = self._new_segment(route, start, end, step)
            if segment is None:
                logger.debug("Skipping zero-length sub-interval %d on %s", i, route.corridor)
                continue
            segments.append(segment)

        return segments
