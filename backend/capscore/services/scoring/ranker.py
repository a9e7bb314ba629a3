"""
Composite scoring and ranking of eligible segments.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from shapely.geometry import Point, Polygon, mapping

from capscore.models.schemas import FeatureConfig
from capscore.services.segmentation.segmenter import Segment
from capscore.utils.geo import LocalProjection

if TYPE_CHECKING:
    from capscore.services.engine import RunContext

logger = logging.getLogger(__name__)


@dataclass
class RankedSegment:
    """An eligible segment with its composite score and rank."""
    id: str
    rank: int
    score: float
    freeway: str
    length_ft: float
    center: Point  # local metric frame
    footprint: Polygon  # local metric frame
    feature_scores: dict[str, float] = field(default_factory=dict)

    def to_dict(self, projection: LocalProjection) -> dict:
        """Serialize with geometry converted back to lon/lat."""
        center = projection.unproject(self.center)
        footprint = projection.unproject(self.footprint)
        return {
            "id": self.id,
            "rank": self.rank,
            "score": self.score,
            "freeway": self.freeway,
            "length_ft": self.length_ft,
            "center": [center.x, center.y],
            "geometry": mapping(footprint),
            "feature_scores": dict(self.feature_scores),
        }


def composite_score(scores: dict[str, float], features: dict[str, FeatureConfig]) -> float:
    """
    Weighted mean of the computed feature scores, scaled to 0-100.

    Only features with a computed score and a nonzero weight contribute, so
    multiplying every weight by the same constant leaves the result
    unchanged.
    """
    total_weight = 0
    weighted = 0.0
    for key, value in scores.items():
        config = features.get(key)
        if config is None or config.weight <= 0:
            continue
        weighted += value * config.weight
        total_weight += config.weight

    if total_weight == 0:
        return 0.0
    return weighted / total_weight * 10


def rank_segments(ctx: "RunContext", segments: list[Segment]) -> list[RankedSegment]:
    """
    Rank eligible segments by composite score, best first.

    Ties keep their generation order.
    """
    features = ctx.config.features
    scored = [
        (composite_score(segment.scores, features), segment)
        for segment in segments
        if segment.eligible
    ]
    # sorted() is stable, so equal scores keep generation order
    scored = sorted(scored, key=lambda item: item[0], reverse=True)

    ranked = [
        RankedSegment(
            id=segment.id,
            rank=index + 1,
            score=score,
            freeway=segment.corridor,
            length_ft=segment.length_ft,
            center=segment.center,
            footprint=segment.footprint,
            feature_scores=dict(segment.scores),
        )
        for index, (score, segment) in enumerate(scored)
    ]

    if ranked:
        logger.info(
            "Ranked %d segments (best %.1f, worst %.1f)",
            len(ranked),
            ranked[0].score,
            ranked[-1].score,
        )
    return ranked
