"""
Origin resolution: first ping of the day for devices that matched a recipe.

Device ids are sent in literal IN-lists of at most 500 ids per query. A
failed batch is logged and skipped; devices it covered simply stay without
an origin and drop out of geocoded scoring.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from affinity_lab.core.models import Visit
from affinity_lab.core.spatial_join import PingFilter, sql_literal
from affinity_lab.io.query import PollPolicy, QueryExecutor, Row, run_query, table_name_for_dataset
from affinity_lab.utils import constants
from affinity_lab.utils.errors import LaboratoryError

logger = logging.getLogger(__name__)

OriginKey = Tuple[str, str]
OriginMap = Dict[OriginKey, Tuple[float, float]]


def _origin_columns(alias: str = "") -> str:
    p = f"{alias}." if alias else ""
    precision = constants.COORDINATE_PRECISION
    return (
        f"ROUND(MIN_BY(TRY_CAST({p}latitude AS DOUBLE), {p}utc_timestamp), {precision}) AS origin_lat,\n"
        f"        ROUND(MIN_BY(TRY_CAST({p}longitude AS DOUBLE), {p}utc_timestamp), {precision}) AS origin_lng"
    )


def build_origin_batch_sql(dataset_id: str, device_ids: Sequence[str], ping_filter: PingFilter) -> str:
    ids = ",".join(sql_literal(d) for d in device_ids)
    return f"""
    SELECT
        ad_id,
        date,
        {_origin_columns()}
    FROM {table_name_for_dataset(dataset_id)}
    WHERE ad_id IN ({ids})
        AND {ping_filter.where_sql()}
    GROUP BY ad_id, date
    """


def build_materialized_origins_sql(dataset_id: str, visits_table: str, ping_filter: PingFilter) -> str:
    """Join the full dataset against the materialized visits table in one pass."""
    return f"""
    SELECT
        k.ad_id,
        k.date,
        {_origin_columns("k")}
    FROM {table_name_for_dataset(dataset_id)} k
    INNER JOIN (SELECT DISTINCT ad_id, date FROM {visits_table}) v
        ON k.ad_id = v.ad_id AND k.date = v.date
    WHERE {ping_filter.where_sql("k")}
    GROUP BY k.ad_id, k.date
    """


def parse_origin_rows(rows: Iterable[Row]) -> OriginMap:
    origins: OriginMap = {}
    for row in rows:
        try:
            lat = float(row["origin_lat"])
            lng = float(row["origin_lng"])
        except (KeyError, TypeError, ValueError):
            continue
        if lat != lat or lng != lng:  # NaN
            continue
        origins[(str(row["ad_id"]), str(row["date"]))] = (lat, lng)
    return origins


def chunked(items: Sequence[str], size: int) -> List[Sequence[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def resolve_origins(
    executor: QueryExecutor,
    dataset_id: str,
    device_ids: Iterable[str],
    ping_filter: PingFilter,
    batch_size: int = constants.ORIGIN_BATCH_SIZE,
    poll_policy: PollPolicy = PollPolicy(),
    on_batch: Optional[Callable[[int, int], None]] = None,
) -> OriginMap:
    """
    Fetch (device_id, date) -> (lat, lng) for the given devices.

    Args:
        on_batch: called with (devices_done, devices_total) after each batch
    """
    batch_size = min(batch_size, constants.ORIGIN_BATCH_SIZE)
    ids = sorted(set(device_ids))
    origins: OriginMap = {}
    failed = 0
    batches = chunked(ids, batch_size)
    for index, batch in enumerate(batches):
        sql = build_origin_batch_sql(dataset_id, batch, ping_filter)
        try:
            origins.update(parse_origin_rows(run_query(executor, sql, poll_policy)))
        except LaboratoryError as e:
            failed += 1
            logger.warning(f"Origin batch {index + 1}/{len(batches)} failed, skipping {len(batch)} devices: {e}")
        if on_batch is not None:
            on_batch(min((index + 1) * batch_size, len(ids)), len(ids))
    logger.info(
        f"Origins resolved for {len(origins)} device-days across {len(ids)} devices "
        f"({len(batches)} batches, {failed} failed)"
    )
    return origins


def attach_origins(visits: Iterable[Visit], origins: OriginMap) -> List[Visit]:
    """Set origin coordinates in place; returns the visits that received one."""
    resolved = []
    for v in visits:
        origin = origins.get((v.device_id, v.date))
        if origin is None:
            continue
        v.origin_lat, v.origin_lng = origin
        resolved.append(v)
    return resolved
