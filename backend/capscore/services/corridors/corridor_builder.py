"""
Corridor Builder.

Groups raw freeway centerline fragments into named corridors and stitches
each corridor's fragments into continuous routes.

Source centerlines come as many short LineStrings in no particular order or
orientation. Stitching is greedy: seed a route with the first unused
fragment, then keep attaching any fragment whose endpoint lies within a
small tolerance of either route end, reversing it when needed, until no
fragment connects.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from shapely.geometry import LineString, MultiLineString

from capscore.services.datasets import Dataset, Feature

logger = logging.getLogger(__name__)

UNKNOWN_CORRIDOR = "Unknown"

# Main freeway lanes only; ramps and collectors use other classes
MAIN_FREEWAY_CLASS = "1"

# Street-name fragment -> corridor label, checked in order
STREET_NAME_CORRIDORS = [
    (("KENNEDY",), "I-90/94"),
    (("EISENHOWER",), "I-290"),
    (("STEVENSON",), "I-55"),
    (("DAN RYAN",), "I-90/94-Dan-Ryan"),
    (("BISHOP FORD", "I57"), "I-57"),
]

Coordinate = tuple[float, float]


@dataclass(frozen=True)
class Route:
    """A continuous polyline assembled from fragments of one corridor."""
    corridor: str
    geometry: LineString
    fragment_count: int = 1


def corridor_from_street_name(street_name: Optional[str]) -> str:
    """Map a centerline street name to its corridor label."""
    if not street_name:
        return UNKNOWN_CORRIDOR
    name = str(street_name).upper()
    for needles, corridor in STREET_NAME_CORRIDORS:
        if any(needle in name for needle in needles):
            return corridor
    return UNKNOWN_CORRIDOR


def corridor_label(properties: dict[str, Any]) -> str:
    """Explicit corridor id, else the street-name lookup."""
    corridor_id = properties.get("corridor_id")
    if corridor_id:
        return str(corridor_id)
    return corridor_from_street_name(properties.get("STREET_NAM"))


def _road_class(value: Any) -> Optional[str]:
    # 0 counts as unclassified; the string "0" does not
    if value is None or value == "" or (not isinstance(value, str) and value == 0):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def is_main_freeway(properties: dict[str, Any]) -> bool:
    """Fragments without a road class are kept."""
    road_class = _road_class(properties.get("CLASS"))
    return road_class is None or road_class == MAIN_FREEWAY_CLASS


def _fragments(feature: Feature) -> Iterable[list[Coordinate]]:
    geometry = feature.geometry
    if isinstance(geometry, LineString):
        parts = [geometry]
    elif isinstance(geometry, MultiLineString):
        parts = list(geometry.geoms)
    else:
        return []

    coords = []
    for part in parts:
        if part.is_empty or len(part.coords) < 2 or part.length == 0:
            continue
        coords.append([(c[0], c[1]) for c in part.coords])
    return coords


def group_fragments(
    freeways: Dataset,
    selected: Optional[Iterable[str]] = None,
) -> dict[str, list[list[Coordinate]]]:
    """
    Group eligible fragments by corridor label.

    Args:
        freeways: Raw freeway centerline dataset (lon/lat)
        selected: Corridor labels to keep; empty or None keeps all

    Returns:
        Corridor label -> fragment coordinate lists, in first-seen order
    """
    selected_set = set(selected or [])
    groups: dict[str, list[list[Coordinate]]] = {}
    dropped_class = 0

    for feature in freeways:
        properties = dict(feature.properties)
        if not is_main_freeway(properties):
            dropped_class += 1
            continue

        corridor = corridor_label(properties)
        if selected_set and corridor not in selected_set:
            continue

        for coords in _fragments(feature):
            groups.setdefault(corridor, []).append(coords)

    logger.debug("Dropped %d non-mainline freeway fragments", dropped_class)
    return groups


def _gap(a: Coordinate, b: Coordinate) -> float:
    return abs(a[0] - b[0]) + abs(a[1] - b[1])


def stitch_fragments(
    fragments: list[list[Coordinate]],
    tolerance: float = 0.0001,
) -> list[tuple[list[Coordinate], int]]:
    """
    Stitch fragments into continuous coordinate sequences.

    Connections are tried in a fixed order for each candidate fragment:
    route end to fragment start, route end to fragment end, route start to
    fragment start, route start to fragment end. After every connection the
    pool is scanned again from the beginning.

    Args:
        fragments: Fragment coordinate lists
        tolerance: Maximum endpoint gap (Manhattan distance, degrees)

    Returns:
        (coordinates, fragment count) per stitched route; every fragment is
        used exactly once
    """
    used = [False] * len(fragments)
    routes = []

    for seed_index, seed in enumerate(fragments):
        if used[seed_index]:
            continue
        used[seed_index] = True
        route = list(seed)
        pieces = 1

        found = True
        while found:
            found = False
            route_start, route_end = route[0], route[-1]

            for j, line in enumerate(fragments):
                if used[j]:
                    continue
                line_start, line_end = line[0], line[-1]

                if _gap(route_end, line_start) < tolerance:
                    route = route + line[1:]
                elif _gap(route_end, line_end) < tolerance:
                    route = route + line[::-1][1:]
                elif _gap(route_start, line_start) < tolerance:
                    route = line[::-1][:-1] + route
                elif _gap(route_start, line_end) < tolerance:
                    route = line[:-1] + route
                else:
                    continue

                used[j] = True
                pieces += 1
                found = True
                break

        routes.append((route, pieces))

    return routes


class CorridorBuilder:
    """Builds continuous routes per corridor from a freeway dataset."""

    def __init__(self, tolerance: float = 0.0001):
        self.tolerance = tolerance

    def build(
        self,
        freeways: Dataset,
        selected: Optional[Iterable[str]] = None,
    ) -> list[Route]:
        """
        Build routes for the selected corridors.

        Returns:
            Routes in corridor first-seen order; corridors without fragments
            produce none
        """
        routes = []
        groups = group_fragments(freeways, selected)

        for corridor, fragments in groups.items():
            stitched = stitch_fragments(fragments, self.tolerance)
            for coords, pieces in stitched:
                line = LineString(coords)
                if line.length == 0:
                    continue
                routes.append(Route(corridor=corridor, geometry=line, fragment_count=pieces))

            logger.info(
                "Corridor %s: %d fragments stitched into %d routes",
                corridor,
                len(fragments),
                len(stitched),
            )

        return routes


def list_corridors(freeways: Dataset) -> list[str]:
    """Distinct corridor labels of the main freeway fragments."""
    return list(group_fragments(freeways).keys())
