"""
Tests for result persistence and the run-status store.
"""

from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from affinity_lab.core.models import (
    AudienceRunResult,
    LabAnalysisResult,
    LabConfig,
    LabStats,
    PipelinePhase,
    Recipe,
    RecipeStep,
    RunState,
    RunStatus,
    SegmentDevice,
)
from affinity_lab.core.results import (
    SEGMENT_CSV_COLUMNS,
    ResultWriter,
    latest_key,
    load_audience_results,
    result_timestamp,
    segment_csv,
)
from affinity_lab.io.blob_store import LocalBlobStore, build_blob_store
from affinity_lab.io.run_status import RunStatusStore, is_stale, status_key, utc_now_iso

GYM = Recipe("gym_goers", "Gym Goers", (RecipeStep("s", frozenset(["gym"])),))


def make_result(devices=3, total=40):
    segment = [SegmentDevice(f"d{i}", 1, 2, 30.0, ["gym", "bar"]) for i in range(devices)]
    return LabAnalysisResult(
        config=LabConfig("madrid", "ES", GYM),
        analyzed_at=utc_now_iso(),
        segment_total=devices,
        segment_devices=segment,
        records=[],
        profiles=[],
        stats=LabStats(total_devices_in_dataset=total, segment_size=devices, segment_percent=7.5),
    )


class TestSegmentCsv:
    def test_columns_and_rows(self, tmp_path):
        path = tmp_path / "segment.csv"
        path.write_text(segment_csv(make_result(2).segment_devices), encoding="utf-8")

        df = pd.read_csv(path)

        assert list(df.columns) == SEGMENT_CSV_COLUMNS
        assert df["ad_id"].tolist() == ["d0", "d1"]
        assert df["categories"].tolist() == ["gym;bar", "gym;bar"]

    def test_empty_segment_has_header(self):
        assert segment_csv([]).strip() == ",".join(SEGMENT_CSV_COLUMNS)


class TestResultWriter:
    """Test persisted result layout."""

    def test_persist_writes_result_csv_and_latest(self, blobs):
        writer = ResultWriter(blobs, segment_preview_limit=2)

        summary = writer.persist(make_result(5), "Gym Goers", run_id="run1", started_at="2024-06-01T00:00:00Z",
                                 with_segment_csv=True)

        assert summary.status == RunState.COMPLETED
        assert summary.segment_size == 5
        assert summary.result_key.endswith("-result.json")
        assert summary.segment_csv_key.endswith("-segment.csv")
        stored = blobs.get_json(summary.result_key)
        assert len(stored["segment"]["devices"]) == 2
        assert stored["segment"]["total_devices"] == 5
        latest = blobs.get_json(latest_key("madrid", "ES", "gym_goers"))
        assert latest["run_id"] == "run1"
        assert latest["status"] == "completed"

    def test_storage_failure_is_not_fatal(self):
        class BrokenStore:
            def put_json(self, key, data):
                raise OSError("disk full")

            def put_text(self, key, content):
                raise OSError("disk full")

        summary = ResultWriter(BrokenStore()).persist(make_result(), "Gym Goers", with_segment_csv=True)

        assert summary.result_key is None
        assert summary.segment_csv_key is None
        assert summary.segment_size == 3

    def test_result_timestamp_format(self):
        when = datetime(2024, 6, 1, 8, 5, 9, tzinfo=timezone.utc)
        assert result_timestamp(when) == "20240601T080509Z"


class TestLoadAudienceResults:
    def test_reads_every_latest_summary(self, blobs):
        for recipe_id in ("night_owls", "gym_goers"):
            summary = AudienceRunResult(recipe_id, recipe_id.title(), "madrid", "ES", RunState.COMPLETED)
            blobs.put_json(latest_key("madrid", "ES", recipe_id), summary.to_dict())
        blobs.put_json("audiences/madrid/es/broken/latest.json", {"unexpected": True})
        blobs.put_json("audiences/madrid/es/gym_goers/20240601T000000Z-result.json", {"ignored": True})

        results = load_audience_results(blobs, "madrid", "ES")

        assert [r.recipe_id for r in results] == ["gym_goers", "night_owls"]

    def test_nothing_stored(self, blobs):
        assert load_audience_results(blobs, "madrid", "ES") == []


class TestRunStatusStore:
    """Test run-status persistence and cancellation."""

    @pytest.fixture
    def store(self, blobs):
        return RunStatusStore(blobs)

    def _status(self, **changes):
        status = RunStatus(run_id="run1", dataset_id="madrid", country="ES", audience_ids=["a", "b"])
        for name, value in changes.items():
            setattr(status, name, value)
        return status

    def test_key_layout(self):
        assert status_key("madrid", "ES") == "audiences/madrid/es/_run/status.json"

    def test_round_trip(self, store):
        store.put(self._status(pipeline_phase=PipelinePhase.ORIGINS, query_handles={"origins": "q3"}))
        loaded = store.get("madrid", "ES")

        assert loaded.pipeline_phase == PipelinePhase.ORIGINS
        assert loaded.query_handles == {"origins": "q3"}
        assert loaded.updated_at is not None

    def test_unknown_fields_ignored(self, store, blobs):
        data = self._status().to_dict()
        data["legacy_field"] = 1
        blobs.put_json(status_key("madrid", "ES"), data)
        assert store.get("madrid", "ES").run_id == "run1"

    def test_missing_record(self, store):
        assert store.get("madrid", "ES") is None
        assert store.request_cancellation("madrid", "ES") is None

    def test_cancellation_only_for_running_records(self, store):
        store.put(self._status(status=RunState.COMPLETED))
        assert store.request_cancellation("madrid", "ES") is None

        store.put(self._status())
        assert store.request_cancellation("madrid", "ES").cancel_requested
        assert store.is_cancellation_requested("madrid", "ES", "run1")

    def test_superseded_run_counts_as_cancelled(self, store):
        store.put(self._status())
        assert not store.is_cancellation_requested("madrid", "ES", "run1")
        assert store.is_cancellation_requested("madrid", "ES", "other-run")


class TestStaleness:
    def test_recent_update_is_live(self):
        status = RunStatus("run1", "madrid", "ES", updated_at=utc_now_iso())
        assert not is_stale(status, 360)

    def test_old_update_is_stale(self):
        old = (datetime.now(timezone.utc) - timedelta(seconds=400)).isoformat()
        assert is_stale(RunStatus("run1", "madrid", "ES", updated_at=old), 360)

    def test_falls_back_to_started_at(self):
        now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        status = RunStatus("run1", "madrid", "ES", started_at="2024-06-01T11:50:00Z")
        assert is_stale(status, 360, now=now)
        assert not is_stale(status, 900, now=now)

    def test_finished_runs_never_stale(self):
        status = RunStatus("run1", "madrid", "ES", status=RunState.FAILED, updated_at="2000-01-01T00:00:00Z")
        assert not is_stale(status, 360)


class TestBlobStore:
    def test_local_round_trip_and_listing(self, tmp_path):
        store = LocalBlobStore(str(tmp_path))
        store.put_json("audiences/a/es/x/latest.json", {"ok": True})
        store.put_text("audiences/a/es/x/seg.csv", "ad_id\n")

        assert store.get_json("audiences/a/es/x/latest.json") == {"ok": True}
        assert store.get_json("audiences/a/es/missing.json") is None
        assert store.list_keys("audiences/a") == ["audiences/a/es/x/latest.json", "audiences/a/es/x/seg.csv"]

    def test_corrupt_json_reads_as_missing(self, tmp_path):
        (tmp_path / "bad.json").write_text("{", encoding="utf-8")
        assert LocalBlobStore(str(tmp_path)).get_json("bad.json") is None

    def test_local_store_without_bucket(self, tmp_path):
        assert isinstance(build_blob_store(str(tmp_path)), LocalBlobStore)
