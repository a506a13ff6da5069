"""
Pytest configuration for affinity-lab tests.

Shared fixtures: a scriptable fake query executor, small postal boundary
files for Spain and Portugal, and a fully wired AnalysisContext that runs
against both.
"""

import itertools
import json
from dataclasses import replace
from typing import Dict, List, Optional

import pytest

from affinity_lab.config.loader import settings_from_dict
from affinity_lab.core.audiences import load_catalog
from affinity_lab.core.context import build_context
from affinity_lab.core.orchestrator import RunOrchestrator
from affinity_lab.io.blob_store import LocalBlobStore
from affinity_lab.io.query import QueryState, QueryStatus

# Rough centres of the fixture polygons
MADRID_28001 = (40.42, -3.68)
MADRID_28002 = (40.47, -3.68)
LISBON_1000 = (38.72, -9.15)
SEVILLE = (37.38, -5.98)  # inside the Spain bbox, no fixture polygon


def _square(min_lat, max_lat, min_lng, max_lng):
    return {
        "type": "Polygon",
        "coordinates": [[
            [min_lng, min_lat], [max_lng, min_lat], [max_lng, max_lat], [min_lng, max_lat], [min_lng, min_lat],
        ]],
    }


ES_GEOJSON = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {"description": "28001, Madrid, Madrid, Comunidad de Madrid, ESP"},
            "geometry": _square(40.40, 40.45, -3.70, -3.65),
        },
        {
            "type": "Feature",
            "properties": {"description": "28002, Madrid, Madrid, Comunidad de Madrid, ESP"},
            "geometry": _square(40.45, 40.50, -3.70, -3.65),
        },
    ],
}

PT_GEOJSON = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {"postal_code": "1000", "place_name": "Lisboa", "admin_name1": "Lisboa"},
            "geometry": _square(38.70, 38.75, -9.20, -9.10),
        },
    ],
}


class FakeQueryExecutor:
    """
    In-memory QueryExecutor.

    SQL is routed to canned rows by substring. Every handle reports RUNNING
    for its first `pending_polls` polls, then SUCCEEDED, unless its SQL
    contains `fail_on`, in which case it reports FAILED.
    """

    def __init__(
        self,
        visit_rows: Optional[List[Dict]] = None,
        origin_rows: Optional[List[Dict]] = None,
        total_devices: int = 0,
        pending_polls: int = 0,
        fail_on: Optional[str] = None,
    ):
        self.visit_rows = visit_rows or []
        self.origin_rows = origin_rows or []
        self.total_devices = total_devices
        self.pending_polls = pending_polls
        self.fail_on = fail_on
        self.submitted: List[str] = []
        self.materialized: Dict[str, str] = {}
        self.dropped: List[str] = []
        self.deleted: List[str] = []
        self.polls: Dict[str, int] = {}
        self.fail_cleanup = False
        self._sql: Dict[str, str] = {}
        self._ids = itertools.count(1)

    def _new_handle(self, sql: str) -> str:
        handle = f"q{next(self._ids)}"
        self._sql[handle] = sql
        self.submitted.append(sql)
        return handle

    def submit(self, sql: str) -> str:
        return self._new_handle(sql)

    def submit_materializing(self, select_sql: str, output_table: str) -> str:
        self.materialized[output_table] = select_sql
        return self._new_handle(select_sql)

    def poll(self, handle: str) -> QueryStatus:
        count = self.polls.get(handle, 0) + 1
        self.polls[handle] = count
        if self.fail_on and self.fail_on in self._sql[handle]:
            return QueryStatus(QueryState.FAILED, "SYNTAX_ERROR: line 1:1 boom")
        if count <= self.pending_polls:
            return QueryStatus(QueryState.RUNNING)
        return QueryStatus(QueryState.SUCCEEDED)

    def fetch(self, handle: str) -> List[Dict]:
        sql = self._sql[handle]
        if "FROM temp_visits_" in sql or "poi_buckets" in sql:
            return [dict(r) for r in self.visit_rows]
        if "FROM temp_origins_" in sql or "MIN_BY" in sql:
            return [dict(r) for r in self.origin_rows]
        if "COUNT(DISTINCT" in sql:
            return [{"total": self.total_devices}]
        return []

    def drop_table(self, name: str) -> None:
        if self.fail_cleanup:
            raise RuntimeError(f"cannot drop {name}")
        self.dropped.append(name)

    def delete_materialized_data(self, name: str) -> None:
        if self.fail_cleanup:
            raise RuntimeError(f"cannot delete {name}")
        self.deleted.append(name)

    def count(self, fragment: str) -> int:
        return sum(1 for sql in self.submitted if fragment in sql)


def visit_row(ad_id, date, category, dwell, hour, poi_id=None):
    return {
        "ad_id": ad_id,
        "date": date,
        "poi_id": poi_id or f"poi_{category}",
        "category": category,
        "dwell_minutes": dwell,
        "visit_hour": hour,
        "ping_count": 3,
    }


def origin_row(ad_id, date, coord):
    return {"ad_id": ad_id, "date": date, "origin_lat": coord[0], "origin_lng": coord[1]}


@pytest.fixture
def scenario_rows():
    """
    Four devices in Madrid:
      d1  three morning gym visits and a lunch, lives in 28001
      d2  one gym visit, lives in 28001
      d3  two dinners, lives in 28002
      d4  one dinner, lives in Lisbon
    """
    visits = [
        visit_row("d1", "2024-06-01", "gym", 45, 7),
        visit_row("d1", "2024-06-02", "gym", 45, 7),
        visit_row("d1", "2024-06-03", "gym", 45, 7),
        visit_row("d1", "2024-06-01", "restaurant", 30, 13),
        visit_row("d2", "2024-06-01", "gym", 20, 8),
        visit_row("d3", "2024-06-01", "restaurant", 60, 21),
        visit_row("d3", "2024-06-02", "restaurant", 60, 21),
        visit_row("d4", "2024-06-02", "restaurant", 50, 20),
    ]
    origins = [
        origin_row("d1", "2024-06-01", MADRID_28001),
        origin_row("d1", "2024-06-02", MADRID_28001),
        origin_row("d1", "2024-06-03", MADRID_28001),
        origin_row("d2", "2024-06-01", MADRID_28001),
        origin_row("d3", "2024-06-01", MADRID_28002),
        origin_row("d3", "2024-06-02", MADRID_28002),
        origin_row("d4", "2024-06-02", LISBON_1000),
    ]
    return visits, origins


@pytest.fixture
def polygon_dir(tmp_path):
    geo_dir = tmp_path / "geo"
    geo_dir.mkdir()
    (geo_dir / "ES_zipcodes.geojson").write_text(json.dumps(ES_GEOJSON), encoding="utf-8")
    (geo_dir / "PT_zipcodes.geojson").write_text(json.dumps(PT_GEOJSON), encoding="utf-8")
    return geo_dir


@pytest.fixture
def lab_settings(tmp_path, polygon_dir):
    settings = settings_from_dict({})
    return replace(
        settings,
        geocoding=replace(settings.geocoding, polygon_dir=str(polygon_dir)),
        query=replace(settings.query, poll_interval_seconds=0, max_poll_attempts=5),
        storage=replace(settings.storage, blob_root=str(tmp_path / "blobs"), log_root=str(tmp_path / "logs")),
    )


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def fake_executor(scenario_rows):
    visits, origins = scenario_rows
    return FakeQueryExecutor(visit_rows=visits, origin_rows=origins, total_devices=40)


@pytest.fixture
def context(lab_settings, fake_executor, blobs):
    return build_context(lab_settings, executor=fake_executor, blobs=blobs, catalog=load_catalog())


@pytest.fixture
def orchestrator(context):
    return RunOrchestrator(context)
