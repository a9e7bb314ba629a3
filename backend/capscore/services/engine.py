"""
Analysis Engine.

Runs one freeway cap analysis end to end:

1. Build continuous corridor routes from the freeway centerlines
2. Cut routes into fixed-width candidate segments
3. Apply the configured requirement gates
4. Score every eligible segment on the weighted features
5. Rank eligible segments by composite score

All per-run state lives in a RunContext and the segment list created for
that run, so concurrent runs never share mutable state.
"""

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

from capscore.core.config import get_settings
from capscore.models.schemas import AnalysisConfig, ErrorEvent
from capscore.services.corridors.corridor_builder import CorridorBuilder
from capscore.services.datasets import FREEWAYS, Dataset, DatasetBundle
from capscore.services.gates.gate_pipeline import GatePipeline, GateResult
from capscore.services.progress import HintSampler, ProgressCallback, ProgressReporter
from capscore.services.scoring.feature_scorers import score_segments
from capscore.services.scoring.ranker import RankedSegment, rank_segments
from capscore.services.segmentation.segmenter import Segment, Segmenter
from capscore.utils.geo import LocalProjection

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """Base class for errors that abort an analysis run."""


class MissingDatasetError(AnalysisError):
    """A dataset the run cannot proceed without is absent."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Required dataset '{key}' is not available")


DatasetsInput = Union[DatasetBundle, Mapping[str, Any]]


def _as_bundle(datasets: DatasetsInput) -> DatasetBundle:
    """Accept a DatasetBundle, Dataset objects or raw GeoJSON mappings."""
    if isinstance(datasets, DatasetBundle):
        return datasets
    converted = {}
    for key, value in datasets.items():
        converted[key] = value if isinstance(value, Dataset) else Dataset.from_geojson(key, value)
    return DatasetBundle(converted)


@dataclass(frozen=True)
class RunContext:
    """Immutable inputs of one analysis run."""
    config: AnalysisConfig
    datasets: DatasetBundle  # lon/lat
    projected: DatasetBundle  # local metric frame
    projection: LocalProjection

    @classmethod
    def build(cls, config: AnalysisConfig, datasets: DatasetsInput) -> "RunContext":
        """
        Prepare a run: validate required datasets and project everything.

        Raises:
            MissingDatasetError: If the freeway dataset is absent
        """
        bundle = _as_bundle(datasets)
        if FREEWAYS not in bundle:
            raise MissingDatasetError(FREEWAYS)

        projection = LocalProjection.for_geometries(f.geometry for f in bundle[FREEWAYS])
        logger.debug(
            "Local projection centred on (%.5f, %.5f)",
            projection.lon0,
            projection.lat0,
        )
        return cls(
            config=config,
            datasets=bundle,
            projected=bundle.project(projection),
            projection=projection,
        )


@dataclass
class AnalysisResult:
    """Ranked segments plus run diagnostics."""
    segments: list[RankedSegment]
    gate_results: list[GateResult]
    projection: LocalProjection
    total_generated: int = 0
    analysis_time: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def total_segments(self) -> int:
        return len(self.segments)

    def to_dict(self) -> dict:
        """Payload of the `complete` event."""
        return {
            "type": "complete",
            "segments": [s.to_dict(self.projection) for s in self.segments],
            "total_segments": self.total_segments,
            "analysis_time": self.analysis_time,
            "gate_results": [g.to_dict() for g in self.gate_results],
        }


def generate_segments(ctx: RunContext) -> list[Segment]:
    """Build corridor routes and cut them into segments."""
    settings = get_settings()
    builder = CorridorBuilder(tolerance=settings.stitch_tolerance_deg)
    routes = builder.build(ctx.datasets[FREEWAYS], ctx.config.selected_freeways)

    segmenter = Segmenter(ctx.config.segment_length, width_ft=settings.segment_width_ft)
    segments = []
    for route in routes:
        metric_route = dataclasses.replace(route, geometry=ctx.projection.project(route.geometry))
        segments.extend(segmenter.segment(metric_route))

    logger.info(
        "Generated %d segments from %d routes (target length %d ft)",
        len(segments),
        len(routes),
        ctx.config.segment_length,
    )
    return segments


def run_analysis(
    config: AnalysisConfig,
    datasets: DatasetsInput,
    progress_callback: Optional[ProgressCallback] = None,
) -> AnalysisResult:
    """
    Run a complete analysis.

    Args:
        config: Validated analysis configuration
        datasets: Dataset bundle, or mapping of key to GeoJSON FeatureCollection
        progress_callback: Receives progress event dicts

    Returns:
        AnalysisResult with ranked eligible segments

    Raises:
        MissingDatasetError: If the freeway dataset is absent
    """
    start_time = time.time()
    reporter = ProgressReporter(progress_callback)

    reporter.stage("segments", 0, "Generating freeway segments...")
    ctx = RunContext.build(config, datasets)
    if progress_callback is not None and get_settings().progress_hints_enabled:
        reporter.hint_sampler = HintSampler(ctx.datasets, ctx.projection)
    segments = generate_segments(ctx)

    reporter.stage("requirements", 0, "Applying requirement filters...")
    gate_results = GatePipeline(ctx).apply(segments)

    reporter.stage("scoring", 0, "Scoring segments...")
    score_segments(ctx, segments, reporter.segment)

    reporter.stage("ranking", 100, "Computing final scores...")
    ranked = rank_segments(ctx, segments)

    reporter.stage("complete", 100, "Analysis complete!")
    logger.info(
        "Analysis finished in %.1fs (%d of %d segments ranked)",
        time.time() - start_time,
        len(ranked),
        len(segments),
    )

    return AnalysisResult(
        segments=ranked,
        gate_results=gate_results,
        projection=ctx.projection,
        total_generated=len(segments),
    )


def execute_analysis(
    config: AnalysisConfig,
    datasets: DatasetsInput,
    emit: Callable[[dict], None],
) -> None:
    """
    Run an analysis as a job, reporting through `emit` only.

    Emits progress events, then exactly one `complete` or `error` event.
    """
    try:
        payload = run_analysis(config, datasets, emit).to_dict()
    except Exception as e:
        logger.exception("Analysis failed")
        payload = ErrorEvent(message=str(e), detail=type(e).__name__).model_dump()
    emit(payload)
