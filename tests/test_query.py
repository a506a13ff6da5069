"""
Tests for the query executor contract: bounded polling, failure
propagation, concurrent submission, naming helpers and the Athena
implementation against fake boto3 clients.
"""

import pytest

from affinity_lab.io.athena import AthenaQueryExecutor
from affinity_lab.io.query import (
    PollPolicy,
    QueryState,
    QueryStatus,
    await_query,
    run_queries_concurrently,
    run_query,
    table_name_for_dataset,
    temp_table_name,
)
from affinity_lab.utils.errors import ConfigurationError, QueryExecutionError, QueryTimeoutError

from tests.conftest import FakeQueryExecutor


class RecordingExecutor(FakeQueryExecutor):
    """Fake executor that logs the order of submit and poll calls."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.calls = []

    def submit(self, sql):
        handle = super().submit(sql)
        self.calls.append(("submit", handle))
        return handle

    def poll(self, handle):
        self.calls.append(("poll", handle))
        return super().poll(handle)


class TestAwaitQuery:
    def test_timeout_after_max_attempts(self):
        fake = FakeQueryExecutor(pending_polls=100)
        sleeps = []
        handle = fake.submit("SELECT 1")

        with pytest.raises(QueryTimeoutError) as exc_info:
            await_query(fake, handle, PollPolicy(interval_seconds=2, max_attempts=3), sleep=sleeps.append)

        assert fake.polls[handle] == 3
        assert sleeps == [2, 2]
        assert exc_info.value.handle == handle

    def test_engine_error_message_kept_verbatim(self):
        fake = FakeQueryExecutor(fail_on="broken")
        handle = fake.submit("SELECT broken")

        with pytest.raises(QueryExecutionError) as exc_info:
            await_query(fake, handle, PollPolicy(0, 5), sleep=lambda s: None)

        assert exc_info.value.message == "SYNTAX_ERROR: line 1:1 boom"
        assert exc_info.value.handle == handle

    def test_cancelled_query_without_reason(self):
        class Cancelled(FakeQueryExecutor):
            def poll(self, handle):
                return QueryStatus(QueryState.CANCELLED)

        fake = Cancelled()
        with pytest.raises(QueryExecutionError, match="Query cancelled"):
            await_query(fake, fake.submit("SELECT 1"), PollPolicy(0, 5))

    def test_run_query_fetches_after_success(self):
        fake = FakeQueryExecutor(total_devices=7, pending_polls=2)
        rows = run_query(fake, "SELECT COUNT(DISTINCT ad_id) AS total FROM t", PollPolicy(0, 5), sleep=lambda s: None)
        assert rows == [{"total": 7}]

    def test_terminal_states(self):
        assert QueryState.SUCCEEDED.is_terminal
        assert QueryState.CANCELLED.is_terminal
        assert not QueryState.RUNNING.is_terminal


class TestConcurrentQueries:
    def test_all_submitted_before_any_poll(self):
        fake = RecordingExecutor(pending_polls=1)

        run_queries_concurrently(fake, ["SELECT 1", "SELECT 2", "SELECT 3"], PollPolicy(0, 5), sleep=lambda s: None)

        kinds = [kind for kind, _ in fake.calls]
        assert kinds[:3] == ["submit", "submit", "submit"]
        assert "submit" not in kinds[3:]

    def test_first_failure_propagates(self):
        fake = FakeQueryExecutor(fail_on="SELECT 2")
        with pytest.raises(QueryExecutionError):
            run_queries_concurrently(fake, ["SELECT 1", "SELECT 2"], PollPolicy(0, 5))


class TestNaming:
    @pytest.mark.parametrize("dataset_id,expected", [
        ("job-fa89", "job_fa89"),
        ("2024x", "ds_2024x"),
        (" Madrid.June ", "madrid_june"),
    ])
    def test_table_name_for_dataset(self, dataset_id, expected):
        assert table_name_for_dataset(dataset_id) == expected

    def test_temp_table_name(self):
        assert temp_table_name("visits", "AbC-12") == "temp_visits_abc_12"


class FakeAthena:
    def __init__(self, pages=None, state="SUCCEEDED", reason=None):
        self.pages = pages or []
        self.state = state
        self.reason = reason
        self.started = []

    def start_query_execution(self, **kwargs):
        self.started.append(kwargs)
        return {"QueryExecutionId": f"exec-{len(self.started)}"}

    def get_query_execution(self, QueryExecutionId):
        status = {"State": self.state}
        if self.reason:
            status["StateChangeReason"] = self.reason
        return {"QueryExecution": {"Status": status}}

    def get_paginator(self, name):
        assert name == "get_query_results"
        return FakePaginator(self.pages)


class FakeS3:
    def __init__(self, keys):
        self.keys = keys
        self.deleted = []

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return FakePaginator([{"Contents": [{"Key": k} for k in self.keys]}, {}])

    def delete_objects(self, Bucket, Delete):
        self.deleted.append((Bucket, [o["Key"] for o in Delete["Objects"]]))


class FakePaginator:
    def __init__(self, pages):
        self.pages = pages
        self.kwargs = None

    def paginate(self, **kwargs):
        self.kwargs = kwargs
        return iter(self.pages)


def result_page(rows, with_header):
    columns = [{"Name": "ad_id", "Type": "varchar"}, {"Name": "visits", "Type": "bigint"},
               {"Name": "dwell", "Type": "double"}]
    data = [{"Data": [{"VarCharValue": c["Name"]} for c in columns]}] if with_header else []
    data += [{"Data": [{"VarCharValue": v} if v is not None else {} for v in row]} for row in rows]
    return {"ResultSet": {"ResultSetMetadata": {"ColumnInfo": columns}, "Rows": data}}


class TestAthenaQueryExecutor:
    """Test the Athena executor without AWS."""

    def _executor(self, athena=None, s3=None, **kwargs):
        return AthenaQueryExecutor(
            database="lab",
            output_location="s3://results-bucket/athena",
            athena_client=athena or FakeAthena(),
            s3_client=s3 or FakeS3([]),
            poll_policy=PollPolicy(0, 3),
            **kwargs,
        )

    def test_output_location_required(self):
        with pytest.raises(ConfigurationError):
            AthenaQueryExecutor(database="lab", output_location=None,
                                athena_client=FakeAthena(), s3_client=FakeS3([]))

    def test_fetch_skips_header_and_converts_types(self):
        athena = FakeAthena(pages=[
            result_page([("d1", "3", "12.5")], with_header=True),
            result_page([("d2", "1", None)], with_header=False),
        ])
        rows = self._executor(athena).fetch("exec-1")
        assert rows == [
            {"ad_id": "d1", "visits": 3, "dwell": 12.5},
            {"ad_id": "d2", "visits": 1, "dwell": None},
        ]

    def test_poll_maps_state_and_reason(self):
        athena = FakeAthena(state="FAILED", reason="TABLE_NOT_FOUND: line 1:15")
        status = self._executor(athena).poll("exec-1")
        assert status == QueryStatus(QueryState.FAILED, "TABLE_NOT_FOUND: line 1:15")

    def test_materializing_query_is_ctas(self):
        athena = FakeAthena()
        executor = self._executor(athena, temp_location="s3://temp-bucket/lab")

        executor.submit_materializing("SELECT 1", "temp_visits_abc")

        sql = athena.started[0]["QueryString"]
        assert sql.startswith("CREATE TABLE temp_visits_abc")
        assert "external_location = 's3://temp-bucket/lab/temp_visits_abc/'" in sql
        assert athena.started[0]["QueryExecutionContext"] == {"Database": "lab"}

    def test_drop_table_awaits_completion(self):
        athena = FakeAthena()
        self._executor(athena).drop_table("temp_visits_abc")
        assert athena.started[0]["QueryString"] == "DROP TABLE IF EXISTS temp_visits_abc"

    def test_delete_materialized_data(self):
        s3 = FakeS3(["lab-temp/temp_visits_abc/part-0.parquet", "lab-temp/temp_visits_abc/part-1.parquet"])
        executor = self._executor(s3=s3, temp_location="s3://temp-bucket/lab-temp")

        executor.delete_materialized_data("temp_visits_abc")

        assert s3.deleted == [("temp-bucket", s3.keys)]
