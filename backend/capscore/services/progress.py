"""
Progress reporting for analysis runs.

Progress events are fire-and-forget: a failing callback is logged and the
run carries on.
"""

import logging
import random
from typing import Callable, Optional

from shapely.geometry import Point

from capscore.models.schemas import ProgressEvent
from capscore.services.datasets import DatasetBundle
from capscore.services.segmentation.segmenter import Segment
from capscore.utils.geo import LocalProjection, representative_coordinate

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict], None]

# Datasets sampled for the map animation shown while a run is in progress
HINT_DATASETS = [
    "cta_rail_stations",
    "metra_stations",
    "amtrak_stations",
    "parks",
    "public_schools",
    "private_schools",
    "colleges_universities",
    "hospitals",
    "landmarks",
    "stadiums",
    "bridges",
]


class HintSampler:
    """
    Picks a few nearby-looking feature coordinates for a segment.

    Uses its own random generator so that sampling never affects scoring.
    """

    def __init__(
        self,
        datasets: DatasetBundle,
        projection: LocalProjection,
        seed: Optional[int] = None,
    ):
        self.datasets = datasets
        self.projection = projection
        self._random = random.Random(seed)
        self._pool = [key for key in HINT_DATASETS if key in datasets and len(datasets[key]) > 0]

    def center(self, segment: Segment) -> list[float]:
        lonlat: Point = self.projection.unproject(segment.center)
        return [lonlat.x, lonlat.y]

    def sample(self) -> list[list[float]]:
        """Two or three coordinates from random hint datasets (lon/lat)."""
        if not self._pool:
            return []

        samples = []
        for _ in range(self._random.randint(2, 3)):
            dataset = self.datasets[self._random.choice(self._pool)]
            feature = dataset.features[self._random.randrange(len(dataset))]
            coordinate = representative_coordinate(feature.geometry)
            if coordinate is not None:
                samples.append(coordinate)
        return samples


class ProgressReporter:
    """
    Sends progress events to a callback.

    Usage:
        reporter = ProgressReporter(callback)
        reporter.stage("segments", 0, "Generating freeway segments...")
    """

    def __init__(self, callback: Optional[ProgressCallback] = None, hint_sampler: Optional[HintSampler] = None):
        self.callback = callback
        self.hint_sampler = hint_sampler

    def _emit(self, event: ProgressEvent) -> None:
        if self.callback is None:
            return
        try:
            self.callback(event.model_dump(exclude_none=True))
        except Exception:
            logger.exception("Progress callback failed for %s event", event.stage)

    def stage(self, stage: str, percent: int, message: str) -> None:
        logger.info("Progress: %s %d%% - %s", stage, percent, message)
        self._emit(ProgressEvent(stage=stage, percent=percent, message=message))

    def segment(self, index: int, total: int, segment: Segment) -> None:
        """Per-segment scoring progress; index is 1-based."""
        if self.callback is None:
            return

        event = ProgressEvent(
            stage="scoring",
            percent=round(index / total * 100) if total else 100,
            message=f"Analyzing segment {index}/{total}",
        )
        if self.hint_sampler is not None:
            event.current_segment = segment.id
            event.segment_center = self.hint_sampler.center(segment)
            event.sample_features = self.hint_sampler.sample()

        logger.debug("Progress: %s", event.message)
        self._emit(event)
