"""
Tests for the /api/laboratory endpoints.

The orchestrator dependency is overridden with one wired to the fake query
executor and the fixture polygons, so no AWS access is needed.
"""

import json

import pytest
from fastapi.testclient import TestClient

from affinity_lab.api.models.laboratory import AnalyzeRequest, BatchRunRequest, RecipeModel
from affinity_lab.main import app
from affinity_lab.routes.api_laboratory import get_orchestrator


@pytest.fixture
def client(orchestrator):
    """Create test client."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def sse_events(body):
    events = []
    for frame in body.split("\n\n"):
        if not frame.strip() or frame.startswith(":"):
            continue
        event_line, data_line = frame.split("\n")
        events.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


GYM_RECIPE = {
    "id": "gym_goers",
    "name": "Gym Goers",
    "logic": "or",
    "steps": [{"id": "gym", "categories": ["gym"]}],
}


class TestRequestModels:
    def test_logic_normalized(self):
        assert RecipeModel(**GYM_RECIPE).logic == "OR"

    def test_invalid_logic_rejected(self):
        with pytest.raises(ValueError):
            RecipeModel(**dict(GYM_RECIPE, logic="XOR"))

    def test_defaults_applied(self):
        request = AnalyzeRequest(dataset_id="madrid", country="es", recipe=GYM_RECIPE)
        config = request.to_config(default_min_visits=5, default_radius_m=200)
        assert config.country == "ES"
        assert config.min_visits_per_zipcode == 5
        assert config.radius_m == 200
        assert config.recipe.steps[0].categories == frozenset(["gym"])

    def test_catalog_audiences_before_custom_recipes(self, context):
        request = BatchRunRequest(dataset_id="madrid", country="ES", audience_ids=["golfers"], recipes=[GYM_RECIPE])
        assert [r.id for r in request.resolve_recipes(context.catalog)] == ["golfers", "gym_goers"]


class TestAnalyzeStream:
    """Test POST /api/laboratory/analyze/stream."""

    def test_streams_progress_and_result(self, client):
        payload = {"dataset_id": "madrid", "country": "ES", "recipe": GYM_RECIPE, "min_visits_per_zipcode": 1}

        response = client.post("/api/laboratory/analyze/stream", json=payload)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = sse_events(response.text)
        assert events[0][0] == "started"
        percents = [data["percent"] for name, data in events if name == "progress"]
        assert percents == sorted(percents)
        assert percents[-1] == 100
        name, data = events[-1]
        assert name == "result"
        assert data["results"]["segment"]["total_devices"] == 2
        assert data["results"]["records"][0]["affinity_index"] == 28

    def test_query_failure_streams_error(self, client, fake_executor):
        fake_executor.fail_on = "poi_buckets"
        payload = {"dataset_id": "madrid", "country": "ES", "recipe": GYM_RECIPE}

        events = sse_events(client.post("/api/laboratory/analyze/stream", json=payload).text)

        assert events[-1][0] == "error"
        assert "SYNTAX_ERROR" in events[-1][1]["message"]

    def test_invalid_recipe_rejected(self, client):
        payload = {"dataset_id": "madrid", "country": "ES", "recipe": dict(GYM_RECIPE, steps=[])}
        assert client.post("/api/laboratory/analyze/stream", json=payload).status_code == 422


class TestBatchEndpoints:
    """Test the asynchronous batch endpoints."""

    def _start(self, client, **extra):
        payload = {"dataset_id": "madrid", "country": "ES", "recipes": [GYM_RECIPE], "min_visits_per_zipcode": 1}
        payload.update(extra)
        return client.post("/api/laboratory/audiences/run-batch", json=payload)

    def test_run_batch_then_conflict(self, client):
        first = self._start(client)
        assert first.status_code == 200
        assert first.json()["status"] == "running"
        assert first.json()["pipeline_phase"] == "spatial"

        second = self._start(client)
        assert second.status_code == 409

    def test_status_drives_pipeline_to_completion(self, client):
        self._start(client)
        params = {"dataset_id": "madrid", "country": "es"}

        phases = [client.get("/api/laboratory/audiences/status", params=params).json() for _ in range(2)]

        assert phases[0]["pipeline_phase"] == "origins"
        assert phases[1]["status"] == "completed"
        assert phases[1]["completed_audiences"] == ["gym_goers"]

        results = client.get("/api/laboratory/audiences/results", params=params).json()["results"]
        assert [r["recipe_id"] for r in results] == ["gym_goers"]
        assert results[0]["segment_size"] == 2

    def test_stop(self, client):
        self._start(client)
        stopped = client.post("/api/laboratory/audiences/stop", json={"dataset_id": "madrid", "country": "ES"})
        assert stopped.status_code == 200
        assert stopped.json()["cancel_requested"] is True

        status = client.get("/api/laboratory/audiences/status", params={"dataset_id": "madrid", "country": "ES"})
        assert status.json()["status"] == "cancelled"

        again = client.post("/api/laboratory/audiences/stop", json={"dataset_id": "madrid", "country": "ES"})
        assert again.status_code == 404

    def test_unknown_audience(self, client):
        response = self._start(client, recipes=[], audience_ids=["no_such_audience"])
        assert response.status_code == 400
        assert "no_such_audience" in response.json()["detail"]

    def test_empty_batch(self, client):
        assert self._start(client, recipes=[]).status_code == 400

    def test_unsupported_country(self, client):
        assert self._start(client, country="ZZ").status_code == 400

    def test_status_without_run(self, client):
        response = client.get("/api/laboratory/audiences/status", params={"dataset_id": "nowhere", "country": "ES"})
        assert response.status_code == 404


def test_catalog_endpoint(client):
    data = client.get("/api/laboratory/audiences/catalog").json()
    ids = [a["id"] for a in data["audiences"]]
    assert "nightlife" in ids
    assert data["groups"]["entertainment"] == "Entertainment"


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
