"""
Amazon Athena implementation of the query executor contract.

Materialized tables are written as Parquet under
<temp_location>/<table_name>/ so their backing data can be removed by prefix
once a run has finished with them.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from affinity_lab.io.query import PollPolicy, QueryState, QueryStatus, Row, await_query
from affinity_lab.utils.errors import ConfigurationError, QueryExecutionError

logger = logging.getLogger(__name__)

_STATE_MAP = {
    "QUEUED": QueryState.QUEUED,
    "RUNNING": QueryState.RUNNING,
    "SUCCEEDED": QueryState.SUCCEEDED,
    "FAILED": QueryState.FAILED,
    "CANCELLED": QueryState.CANCELLED,
}

_INTEGER_TYPES = {"tinyint", "smallint", "integer", "int", "bigint"}
_FLOAT_TYPES = {"float", "real", "double", "decimal"}


def _convert(value: Optional[str], column_type: str) -> Any:
    if value is None:
        return None
    column_type = column_type.lower()
    try:
        if column_type in _INTEGER_TYPES:
            return int(value)
        if column_type in _FLOAT_TYPES:
            return float(value)
        if column_type == "boolean":
            return value.lower() == "true"
    except ValueError:
        return None
    return value


def _split_s3_uri(uri: str):
    parsed = urlparse(uri)
    if parsed.scheme != "s3" or not parsed.netloc:
        raise ConfigurationError(f"Expected an s3:// location, got {uri!r}")
    return parsed.netloc, parsed.path.lstrip("/")


class AthenaQueryExecutor:
    """Query executor backed by Athena via boto3."""

    def __init__(
        self,
        database: str,
        output_location: Optional[str],
        temp_location: Optional[str] = None,
        workgroup: str = "primary",
        region_name: Optional[str] = None,
        athena_client=None,
        s3_client=None,
        poll_policy: PollPolicy = PollPolicy(),
    ):
        import boto3

        if athena_client is None or s3_client is None:
            session = boto3.Session(region_name=region_name)
            if session.get_credentials() is None:
                raise ConfigurationError("AWS credentials not configured")
            athena_client = athena_client or session.client("athena")
            s3_client = s3_client or session.client("s3")
        if not output_location:
            raise ConfigurationError("Athena output location is not configured")
        self.database = database
        self.output_location = output_location.rstrip("/") + "/"
        self.temp_location = (temp_location or self.output_location + "lab-temp").rstrip("/")
        self.workgroup = workgroup
        self.poll_policy = poll_policy
        self._athena = athena_client
        self._s3 = s3_client

    def submit(self, sql: str) -> str:
        from botocore.exceptions import ClientError

        try:
            response = self._athena.start_query_execution(
                QueryString=sql,
                QueryExecutionContext={"Database": self.database},
                ResultConfiguration={"OutputLocation": self.output_location},
                WorkGroup=self.workgroup,
            )
        except ClientError as exc:
            message = exc.response.get("Error", {}).get("Message", str(exc))
            raise QueryExecutionError(message) from exc
        handle = response["QueryExecutionId"]
        logger.debug(f"Submitted Athena query {handle}")
        return handle

    def poll(self, handle: str) -> QueryStatus:
        response = self._athena.get_query_execution(QueryExecutionId=handle)
        status = response["QueryExecution"]["Status"]
        state = _STATE_MAP.get(status["State"], QueryState.RUNNING)
        return QueryStatus(state=state, error=status.get("StateChangeReason"))

    def fetch(self, handle: str) -> List[Row]:
        paginator = self._athena.get_paginator("get_query_results")
        rows: List[Row] = []
        columns: List[Dict[str, str]] = []
        header_skipped = False
        for page in paginator.paginate(QueryExecutionId=handle):
            result_set = page["ResultSet"]
            if not columns:
                columns = result_set["ResultSetMetadata"]["ColumnInfo"]
            for raw in result_set["Rows"]:
                if not header_skipped:
                    # First row of the first page repeats the column names
                    header_skipped = True
                    continue
                values = [cell.get("VarCharValue") for cell in raw["Data"]]
                rows.append({
                    col["Name"]: _convert(value, col.get("Type", "varchar"))
                    for col, value in zip(columns, values)
                })
        logger.debug(f"Fetched {len(rows)} rows for Athena query {handle}")
        return rows

    def _location(self, table_name: str) -> str:
        return f"{self.temp_location}/{table_name}/"

    def submit_materializing(self, select_sql: str, output_table: str) -> str:
        ctas = (
            f"CREATE TABLE {output_table}\n"
            f"WITH (format = 'PARQUET', external_location = '{self._location(output_table)}')\n"
            f"AS {select_sql}"
        )
        return self.submit(ctas)

    def drop_table(self, name: str) -> None:
        handle = self.submit(f"DROP TABLE IF EXISTS {name}")
        await_query(self, handle, self.poll_policy)
        logger.info(f"Dropped table {name}")

    def delete_materialized_data(self, name: str) -> None:
        bucket, prefix = _split_s3_uri(self._location(name))
        paginator = self._s3.get_paginator("list_objects_v2")
        deleted = 0
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            objects = [{"Key": item["Key"]} for item in page.get("Contents", [])]
            if not objects:
                continue
            self._s3.delete_objects(Bucket=bucket, Delete={"Objects": objects, "Quiet": True})
            deleted += len(objects)
        logger.info(f"Deleted {deleted} objects under s3://{bucket}/{prefix}")
