"""
Query executor contract and the bounded poll loop around it.

The distributed query engine runs independently of this process. Callers
submit SQL, keep the returned handle and await it with run_query or
await_query; a handle can be re-polled from a later process invocation.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence

from affinity_lab.utils import constants
from affinity_lab.utils.errors import QueryExecutionError, QueryTimeoutError
from affinity_lab.utils.run_id import identifier_safe

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class QueryState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (QueryState.SUCCEEDED, QueryState.FAILED, QueryState.CANCELLED)


@dataclass(frozen=True)
class QueryStatus:
    state: QueryState
    error: Optional[str] = None


class QueryExecutor(Protocol):
    """SQL engine operations the laboratory depends on."""

    def submit(self, sql: str) -> str:
        ...

    def poll(self, handle: str) -> QueryStatus:
        ...

    def fetch(self, handle: str) -> List[Row]:
        """Return every result row, following continuation tokens to exhaustion."""
        ...

    def submit_materializing(self, select_sql: str, output_table: str) -> str:
        ...

    def drop_table(self, name: str) -> None:
        ...

    def delete_materialized_data(self, name: str) -> None:
        ...


@dataclass(frozen=True)
class PollPolicy:
    interval_seconds: float = constants.POLL_INTERVAL_SECONDS
    max_attempts: int = constants.MAX_POLL_ATTEMPTS


def await_query(
    executor: QueryExecutor,
    handle: str,
    policy: PollPolicy = PollPolicy(),
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Poll a handle until it reaches a terminal state.

    Raises:
        QueryExecutionError: the engine reported failure or cancellation
        QueryTimeoutError: the handle was still pending after max_attempts polls
    """
    started = time.monotonic()
    for attempt in range(policy.max_attempts):
        status = executor.poll(handle)
        if status.state == QueryState.SUCCEEDED:
            return
        if status.state in (QueryState.FAILED, QueryState.CANCELLED):
            message = status.error or f"Query {status.state.value}"
            logger.error(f"Query {handle} {status.state.value}: {message}")
            raise QueryExecutionError(message, handle=handle)
        if attempt < policy.max_attempts - 1:
            sleep(policy.interval_seconds)
    elapsed = time.monotonic() - started
    logger.error(f"Query {handle} timed out after {policy.max_attempts} polls ({elapsed:.1f}s)")
    raise QueryTimeoutError(handle, elapsed)


def run_query(
    executor: QueryExecutor,
    sql: str,
    policy: PollPolicy = PollPolicy(),
    sleep: Callable[[float], None] = time.sleep,
) -> List[Row]:
    """Submit, await and fetch a single query."""
    handle = executor.submit(sql)
    await_query(executor, handle, policy, sleep)
    return executor.fetch(handle)


def run_queries_concurrently(
    executor: QueryExecutor,
    sqls: Sequence[str],
    policy: PollPolicy = PollPolicy(),
    sleep: Callable[[float], None] = time.sleep,
) -> List[List[Row]]:
    """
    Submit every query before awaiting any of them, then await in order.

    The engine runs the queries side by side; the first failure propagates.
    """
    handles = [executor.submit(sql) for sql in sqls]
    results = []
    for handle in handles:
        await_query(executor, handle, policy, sleep)
        results.append(executor.fetch(handle))
    return results


_LEADING_DIGIT = re.compile(r"^[0-9]")


def table_name_for_dataset(dataset_id: str) -> str:
    """Movement table name for a dataset id (e.g. 'job-fa89' -> 'job_fa89', '2024x' -> 'ds_2024x')."""
    name = identifier_safe(dataset_id.strip()).lower()
    if _LEADING_DIGIT.match(name):
        name = f"ds_{name}"
    return name


def temp_table_name(kind: str, run_id: str) -> str:
    """Name of a per-run temporary materialized table."""
    return f"temp_{identifier_safe(kind)}_{identifier_safe(run_id)}".lower()
