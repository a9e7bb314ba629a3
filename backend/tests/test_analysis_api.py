"""
Tests for the HTTP API.
"""

import json
import pytest
from fastapi.testclient import TestClient

from capscore.main import app
from capscore.services.scoring.feature_scorers import FEATURE_SCORERS

API = "/api/v1"


def freeway_collection():
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "LineString", "coordinates": [[-87.700, 41.880], [-87.690, 41.880]]},
                "properties": {"corridor_id": "I-290", "CLASS": 1},
            },
        ],
    }


def parse_events(body: str) -> list[dict]:
    events = []
    for chunk in body.split("\n\n"):
        if not chunk.strip():
            continue
        assert chunk.startswith("data: ")
        events.append(json.loads(chunk[len("data: "):]))
    return events


class TestServiceEndpoints:
    """Tests for info and registry endpoints."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = TestClient(app)

    def test_health(self):
        """Test the health check."""
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_root(self):
        """Test the root endpoint."""
        response = self.client.get("/")
        assert response.status_code == 200
        assert response.json()["docs"] == "/docs"

    def test_features(self):
        """Test the feature registry listing."""
        response = self.client.get(f"{API}/features")
        assert response.status_code == 200

        features = response.json()["features"]
        assert [f["key"] for f in features] == list(FEATURE_SCORERS)
        crashes = next(f for f in features if f["key"] == "crashes")
        assert crashes["family"] == "block_group"
        assert crashes["default_direction"] == "lower"
        assert crashes["defaults"]["weight"] == 5

    def test_datasets(self):
        """Test that the dataset listing reports availability."""
        response = self.client.get(f"{API}/datasets")
        assert response.status_code == 200
        datasets = response.json()["datasets"]
        assert datasets
        assert all("available" in d for d in datasets)


class TestAnalyzeEndpoints:
    """Tests for the analysis endpoints."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = TestClient(app)
        self.body = {
            "config": {
                "segment_length": 500,
                "selected_freeways": ["I-290"],
                "features": {"cta_stations": {"weight": 5, "radius": 1.0}},
            },
            "datasets": {"freeways": freeway_collection()},
        }

    def test_analyze(self):
        """Test the blocking endpoint with inline datasets."""
        response = self.client.post(f"{API}/analyze", json=self.body)
        assert response.status_code == 200

        data = response.json()
        assert data["type"] == "complete"
        assert data["total_segments"] == len(data["segments"]) > 0
        first = data["segments"][0]
        assert first["rank"] == 1
        assert first["freeway"] == "I-290"
        assert first["geometry"]["type"] == "Polygon"
        assert first["feature_scores"] == {"cta_stations": 0}

    def test_analyze_without_freeways(self):
        """Test that a missing freeway dataset is a client error."""
        body = dict(self.body, datasets={})
        response = self.client.post(f"{API}/analyze", json=body)
        assert response.status_code == 400
        assert "freeways" in response.json()["detail"]

    @pytest.mark.parametrize("config", [
        {"segment_length": 50},
        {"segment_length": 2000},
        {"features": {"parks": {"weight": 11}}},
        {"features": {"parks": {"weight": 1, "radius": 0}}},
    ])
    def test_analyze_validation(self, config):
        """Test that invalid configuration is rejected before running."""
        response = self.client.post(f"{API}/analyze", json={"config": config})
        assert response.status_code == 422

    def test_stream(self):
        """Test SSE framing and event order."""
        response = self.client.post(f"{API}/analyze/stream", json=self.body)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = parse_events(response.text)
        assert events[0]["type"] == "progress"
        assert events[0]["message"] == "Generating freeway segments..."
        assert events[-1]["type"] == "complete"
        assert events[-1]["total_segments"] > 0

    def test_stream_error(self):
        """Test that a failed run ends the stream with an error event."""
        body = dict(self.body, datasets={})
        response = self.client.post(f"{API}/analyze/stream", json=body)

        events = parse_events(response.text)
        assert events[-1]["type"] == "error"
        assert "freeways" in events[-1]["message"]
