"""
End-to-end tests for the analysis engine.
"""

import pytest

from capscore.models.schemas import (
    AnalysisConfig,
    FeatureConfig,
    Requirements,
    StationProximityRequirement,
)
from capscore.services.engine import (
    AnalysisResult,
    MissingDatasetError,
    RunContext,
    execute_analysis,
    run_analysis,
)


def feature_collection(*features):
    return {"type": "FeatureCollection", "features": list(features)}


def line(coords, **properties):
    return {"type": "Feature", "geometry": {"type": "LineString", "coordinates": coords}, "properties": properties}


def point(lon, lat, **properties):
    return {"type": "Feature", "geometry": {"type": "Point", "coordinates": [lon, lat]}, "properties": properties}


def sample_datasets():
    return {
        "freeways": feature_collection(
            line([[-87.700, 41.880], [-87.695, 41.880]], corridor_id="I-290", CLASS=1),
            line([[-87.695, 41.880], [-87.690, 41.880]], corridor_id="I-290", CLASS=1),
            line([[-87.640, 41.850], [-87.640, 41.845]], corridor_id="I-55", CLASS=1),
            line([[-87.700, 41.881], [-87.690, 41.881]], corridor_id="I-290", CLASS=3),
        ),
        "cta_rail_stations": feature_collection(point(-87.699, 41.881)),
        "parks": feature_collection(point(-87.641, 41.848)),
        "hospitals": feature_collection(point(-87.692, 41.879)),
    }


class TestRunAnalysis:
    """Tests for run_analysis."""

    def setup_method(self):
        """Set up test fixtures."""
        self.datasets = sample_datasets()
        self.config = AnalysisConfig(
            segment_length=300,
            selected_freeways=["I-290", "I-55"],
            features={
                "cta_stations": FeatureConfig(weight=9, radius=1.0),
                "parks": FeatureConfig(weight=6, radius=1.0),
                "hospitals": FeatureConfig(weight=0, radius=1.0),
            },
        )

    def test_missing_freeways(self):
        """Test that the run aborts without freeway data."""
        with pytest.raises(MissingDatasetError):
            run_analysis(self.config, {"parks": self.datasets["parks"]})

    def test_ranks_every_segment(self):
        """Test that every generated segment is ranked when no gate is enabled."""
        result = run_analysis(self.config, self.datasets)

        assert result.total_segments == result.total_generated
        assert result.total_segments > 2
        assert [s.rank for s in result.segments] == list(range(1, result.total_segments + 1))
        scores = [s.score for s in result.segments]
        assert scores == sorted(scores, reverse=True)
        assert {s.freeway for s in result.segments} == {"I-290", "I-55"}

    def test_zero_weight_absent(self):
        """Test that zero-weight features never appear in the breakdown."""
        result = run_analysis(self.config, self.datasets)
        for segment in result.segments:
            assert set(segment.feature_scores) == {"cta_stations", "parks"}

    def test_segment_lengths(self):
        """Test that segments are near the target length and tile each route."""
        result = run_analysis(self.config, self.datasets)
        i290 = [s for s in result.segments if s.freeway == "I-290"]

        lengths = {round(s.length_ft, 6) for s in i290}
        assert len(lengths) == 1
        assert 300 <= lengths.pop() < 600

    def test_selected_freeways(self):
        """Test that unselected corridors produce no segments."""
        config = self.config.model_copy(update={"selected_freeways": ["I-57"]})
        result = run_analysis(config, self.datasets)
        assert result.total_segments == 0

    def test_station_gate(self):
        """Test that the station gate removes the far corridor."""
        config = self.config.model_copy(update={
            "requirements": Requirements(
                station_proximity=StationProximityRequirement(enabled=True, distance=0.5),
            ),
        })
        result = run_analysis(config, self.datasets)

        assert {s.freeway for s in result.segments} == {"I-290"}
        assert result.gate_results[0].excluded > 0
        assert result.total_segments < result.total_generated

    def test_deterministic(self):
        """Test that identical inputs give identical output."""
        first = run_analysis(self.config, self.datasets).to_dict()
        second = run_analysis(self.config, self.datasets).to_dict()
        first.pop("analysis_time")
        second.pop("analysis_time")
        assert first == second

    def test_context_projects_datasets(self):
        """Test that the run context holds raw and projected bundles."""
        ctx = RunContext.build(self.config, self.datasets)
        raw = ctx.datasets["parks"].features[0].geometry
        projected = ctx.projected["parks"].features[0].geometry

        assert raw.x == pytest.approx(-87.641)
        assert abs(projected.x) > 1000


class TestExecuteAnalysis:
    """Tests for execute_analysis events."""

    def setup_method(self):
        """Set up test fixtures."""
        self.events = []
        self.config = AnalysisConfig(features={"parks": FeatureConfig(weight=5)})

    def test_progress_then_complete(self):
        """Test the progress sequence ends with one complete event."""
        execute_analysis(self.config, sample_datasets(), self.events.append)

        progress = [e for e in self.events if e["type"] == "progress"]
        complete = self.events[-1]
        assert complete["type"] == "complete"
        assert sum(1 for e in self.events if e["type"] in ("complete", "error")) == 1

        stage_messages = [e["message"] for e in progress if not e["message"].startswith("Analyzing")]
        assert stage_messages == [
            "Generating freeway segments...",
            "Applying requirement filters...",
            "Scoring segments...",
            "Computing final scores...",
            "Analysis complete!",
        ]

        per_segment = [e for e in progress if e["message"].startswith("Analyzing")]
        assert len(per_segment) == complete["total_segments"]
        assert per_segment[-1]["percent"] == 100
        assert per_segment[0]["current_segment"].startswith("segment-")
        assert len(per_segment[0]["segment_center"]) == 2

        assert len(complete["segments"]) == complete["total_segments"]
        assert isinstance(complete["analysis_time"], int)
        assert [g["name"] for g in complete["gate_results"]] == [
            "station_proximity", "neighborhoods", "zoning", "ssa", "tif", "bridge_age",
        ]

    def test_missing_freeways_error_event(self):
        """Test that a missing freeway dataset ends in an error event."""
        execute_analysis(self.config, {}, self.events.append)

        assert self.events[0]["message"] == "Generating freeway segments..."
        error = self.events[-1]
        assert error["type"] == "error"
        assert "freeways" in error["message"]
        assert not any(e["type"] == "complete" for e in self.events)

    def test_failing_callback_does_not_abort(self):
        """Test that progress callback failures are swallowed."""
        received = []

        def flaky(event):
            if event["type"] == "progress":
                raise RuntimeError("client went away")
            received.append(event)

        execute_analysis(self.config, sample_datasets(), flaky)
        assert [e["type"] for e in received] == ["complete"]

    def test_result_conversion_failure(self, monkeypatch):
        """Test that a failure building the complete payload ends in an error event."""
        def broken(result):
            raise ValueError("cannot convert result")

        monkeypatch.setattr(AnalysisResult, "to_dict", broken)
        execute_analysis(self.config, sample_datasets(), self.events.append)

        error = self.events[-1]
        assert error["type"] == "error"
        assert error["message"] == "cannot convert result"
        assert error["detail"] == "ValueError"
        assert not any(e["type"] == "complete" for e in self.events)
