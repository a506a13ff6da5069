"""
Grid-bucket spatial join of device pings against POIs of interest.

Comparing every ping with every POI is infeasible at dataset scale, so the
plane is cut into square cells of cell_size_deg. Each ping falls in exactly
one cell; each POI is registered in its own cell and the 8 neighbours. An
equi-join on cell coordinates then yields every (ping, POI) pair that can be
within the radius, provided cell_size_deg * 111320 >= radius_m.

Within a candidate pair the distance is a flat-earth approximation:
    111320 * sqrt(dlat^2 + (dlng * cos(mean_lat))^2)
The nearest POI within the radius wins; matched pings of the same
device x day x POI collapse into one Visit.

The join normally runs in the query engine (build_visits_sql). local_grid_join
evaluates the same algorithm with pandas for small in-memory datasets.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional

import numpy as np
import pandas as pd

from affinity_lab.config.loader import validate_grid
from affinity_lab.core.models import Visit
from affinity_lab.io.query import PollPolicy, QueryExecutor, Row, run_queries_concurrently, table_name_for_dataset
from affinity_lab.utils import constants

logger = logging.getLogger(__name__)

# Cell offsets each POI is registered under (its own cell plus the 8 neighbours)
NEIGHBOUR_OFFSETS = (-1, 0, 1)


def neighbour_values_sql() -> str:
    return ", ".join(f"({d})" for d in NEIGHBOUR_OFFSETS)


def sql_literal(value: str) -> str:
    """Single-quoted SQL string literal."""
    return "'" + str(value).replace("'", "''") + "'"


@dataclass(frozen=True)
class PingFilter:
    """Row filters applied to the movement table wherever pings are read."""
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    accuracy_threshold_m: float = constants.ACCURACY_THRESHOLD_METERS

    def where_sql(self, alias: str = "") -> str:
        p = f"{alias}." if alias else ""
        clauses = [
            f"TRY_CAST({p}latitude AS DOUBLE) IS NOT NULL",
            f"TRY_CAST({p}longitude AS DOUBLE) IS NOT NULL",
            f"({p}horizontal_accuracy IS NULL OR TRY_CAST({p}horizontal_accuracy AS DOUBLE) < {self.accuracy_threshold_m:g})",
            f"{p}ad_id IS NOT NULL AND TRIM({p}ad_id) != ''",
        ]
        clauses.extend(self.date_clauses(alias))
        return "\n        AND ".join(clauses)

    def date_clauses(self, alias: str = "") -> List[str]:
        p = f"{alias}." if alias else ""
        clauses = []
        if self.date_from:
            clauses.append(f"{p}date >= {sql_literal(self.date_from)}")
        if self.date_to:
            clauses.append(f"{p}date <= {sql_literal(self.date_to)}")
        return clauses


@dataclass(frozen=True)
class SpatialJoinParams:
    dataset_id: str
    categories: FrozenSet[str]
    country: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    radius_m: float = constants.DEFAULT_RADIUS_METERS
    cell_size_deg: float = constants.DEFAULT_CELL_SIZE_DEGREES
    accuracy_threshold_m: float = constants.ACCURACY_THRESHOLD_METERS
    poi_table: str = "lab_pois_gmc"

    def __post_init__(self):
        object.__setattr__(self, "categories", frozenset(self.categories))

    def validate(self) -> None:
        validate_grid(self.cell_size_deg, self.radius_m)
        if not self.categories:
            raise ValueError("Spatial join needs at least one POI category")

    @property
    def table_name(self) -> str:
        return table_name_for_dataset(self.dataset_id)

    @property
    def ping_filter(self) -> PingFilter:
        return PingFilter(self.date_from, self.date_to, self.accuracy_threshold_m)


@dataclass
class SpatialJoinResult:
    visits: List[Visit]
    total_devices: int

    @property
    def device_count(self) -> int:
        return len({v.device_id for v in self.visits})


def build_visits_sql(params: SpatialJoinParams, ordered: bool = True) -> str:
    """SELECT producing one row per device x day x POI visit."""
    step = f"{params.cell_size_deg:g}"
    offsets = neighbour_values_sql()
    categories = ",".join(sql_literal(c) for c in sorted(params.categories))
    country_filter = f"AND p.country = {sql_literal(params.country.upper())}" if params.country else ""
    order_by = "ORDER BY v.ad_id, v.date, v.visit_start" if ordered else ""
    return f"""
    WITH
    pings AS (
      SELECT
        ad_id,
        date,
        utc_timestamp,
        TRY_CAST(latitude AS DOUBLE) AS lat,
        TRY_CAST(longitude AS DOUBLE) AS lng,
        CAST(FLOOR(TRY_CAST(latitude AS DOUBLE) / {step}) AS BIGINT) AS lat_bucket,
        CAST(FLOOR(TRY_CAST(longitude AS DOUBLE) / {step}) AS BIGINT) AS lng_bucket
      FROM {params.table_name}
      WHERE {params.ping_filter.where_sql()}
    ),
    poi_base AS (
      SELECT id AS poi_id, category, latitude AS poi_lat, longitude AS poi_lng,
        CAST(FLOOR(latitude / {step}) AS BIGINT) AS base_lat_bucket,
        CAST(FLOOR(longitude / {step}) AS BIGINT) AS base_lng_bucket
      FROM {params.poi_table} p
      WHERE p.category IS NOT NULL
        AND p.category IN ({categories})
        {country_filter}
    ),
    poi_buckets AS (
      SELECT poi_id, category, poi_lat, poi_lng,
        base_lat_bucket + dlat AS lat_bucket,
        base_lng_bucket + dlng AS lng_bucket
      FROM poi_base
      CROSS JOIN (VALUES {offsets}) AS t1(dlat)
      CROSS JOIN (VALUES {offsets}) AS t2(dlng)
    ),
    matched AS (
      SELECT
        k.ad_id, k.date, k.utc_timestamp, p.poi_id, p.category,
        {constants.METERS_PER_DEGREE} * SQRT(
          POW(k.lat - p.poi_lat, 2) +
          POW((k.lng - p.poi_lng) * COS(RADIANS((k.lat + p.poi_lat) / 2)), 2)
        ) AS distance_m
      FROM pings k
      INNER JOIN poi_buckets p
        ON k.lat_bucket = p.lat_bucket
        AND k.lng_bucket = p.lng_bucket
    ),
    closest AS (
      SELECT ad_id, date, utc_timestamp, poi_id, category,
        ROW_NUMBER() OVER (PARTITION BY ad_id, utc_timestamp ORDER BY distance_m, poi_id) AS rn
      FROM matched
      WHERE distance_m <= {params.radius_m:g}
    ),
    visits AS (
      SELECT
        ad_id, date, poi_id, category,
        MIN(utc_timestamp) AS visit_start,
        COUNT(*) AS ping_count,
        ROUND(DATE_DIFF('second', MIN(utc_timestamp), MAX(utc_timestamp)) / 60.0, 1) AS dwell_minutes,
        HOUR(MIN(utc_timestamp)) AS visit_hour
      FROM closest
      WHERE rn = 1
      GROUP BY ad_id, date, poi_id, category
    )
    SELECT v.ad_id, v.date, v.poi_id, v.category, v.dwell_minutes, v.visit_hour, v.ping_count
    FROM visits v
    WHERE v.dwell_minutes >= 0
    {order_by}
    """


def build_total_devices_sql(params: SpatialJoinParams) -> str:
    date_clauses = params.ping_filter.date_clauses()
    date_where = "".join(f"\n      AND {c}" for c in date_clauses)
    return f"""
    SELECT COUNT(DISTINCT ad_id) AS total
    FROM {params.table_name}
    WHERE ad_id IS NOT NULL AND TRIM(ad_id) != ''{date_where}
    """


def parse_visit_rows(rows: Iterable[Row]) -> List[Visit]:
    """Convert result rows to Visits, dropping rows that cannot form a valid Visit."""
    visits = []
    dropped = 0
    for row in rows:
        try:
            visits.append(Visit(
                device_id=row["ad_id"],
                date=row["date"],
                poi_id=row["poi_id"],
                category=row["category"],
                dwell_minutes=float(row.get("dwell_minutes") or 0),
                visit_hour=int(row.get("visit_hour") or 0),
                ping_count=int(row.get("ping_count") or 1),
            ))
        except (KeyError, TypeError, ValueError):
            dropped += 1
    if dropped:
        logger.warning(f"Dropped {dropped} malformed visit rows")
    return visits


def parse_total_devices(rows: List[Row]) -> int:
    if not rows:
        return 0
    try:
        return int(rows[0].get("total") or 0)
    except (TypeError, ValueError):
        return 0


class SpatialJoinEngine:
    """Runs the bucket join and the device count through a QueryExecutor."""

    def __init__(self, executor: QueryExecutor, poll_policy: PollPolicy = PollPolicy()):
        self.executor = executor
        self.poll_policy = poll_policy

    def run(self, params: SpatialJoinParams) -> SpatialJoinResult:
        """Synchronous join; any executor error propagates and no partial result is returned."""
        params.validate()
        logger.info(
            f"Spatial join on {params.table_name}: {len(params.categories)} categories, "
            f"radius {params.radius_m:g} m, cell {params.cell_size_deg:g} deg "
            f"(~{params.cell_size_deg * constants.METERS_PER_DEGREE:.0f} m), country {params.country or 'any'}"
        )
        visit_rows, total_rows = run_queries_concurrently(
            self.executor,
            [build_visits_sql(params), build_total_devices_sql(params)],
            self.poll_policy,
        )
        result = SpatialJoinResult(visits=parse_visit_rows(visit_rows), total_devices=parse_total_devices(total_rows))
        logger.info(f"Spatial join returned {len(result.visits)} visits; {result.total_devices} devices in dataset")
        return result

    def submit_materializing(self, params: SpatialJoinParams, visits_table: str) -> Dict[str, str]:
        """Fire the join as a materializing query plus the device count; return both handles."""
        params.validate()
        join_handle = self.executor.submit_materializing(build_visits_sql(params, ordered=False), visits_table)
        count_handle = self.executor.submit(build_total_devices_sql(params))
        logger.info(f"Submitted materializing spatial join into {visits_table} ({join_handle}) and device count ({count_handle})")
        return {"spatial_join": join_handle, "total_devices": count_handle}


def _timestamps(column: pd.Series) -> pd.Series:
    if pd.api.types.is_numeric_dtype(column):
        return pd.to_datetime(column, unit="s", utc=True)
    return pd.to_datetime(column, utc=True)


def local_grid_join(
    pings: pd.DataFrame,
    pois: pd.DataFrame,
    radius_m: float = constants.DEFAULT_RADIUS_METERS,
    cell_size_deg: float = constants.DEFAULT_CELL_SIZE_DEGREES,
    accuracy_threshold_m: float = constants.ACCURACY_THRESHOLD_METERS,
) -> List[Visit]:
    """
    In-memory grid join.

    Mirrors build_visits_sql step for step (same bucket flooring,
    NEIGHBOUR_OFFSETS expansion, distance formula and tie-break) for data
    that is already in memory. Production runs execute the SQL; this is the
    executable reference the grid properties are checked against.

    Args:
        pings: columns ad_id, utc_timestamp, latitude, longitude and optionally
            date and horizontal_accuracy
        pois: columns id, category, latitude, longitude

    Returns:
        Visits ordered by device, date and first matched timestamp
    """
    validate_grid(cell_size_deg, radius_m)
    if pings.empty or pois.empty:
        return []

    k = pd.DataFrame({
        "ad_id": pings["ad_id"].fillna("").astype(str).str.strip(),
        "ts": _timestamps(pings["utc_timestamp"]),
        "lat": pd.to_numeric(pings["latitude"], errors="coerce"),
        "lng": pd.to_numeric(pings["longitude"], errors="coerce"),
    })
    if "horizontal_accuracy" in pings:
        k["accuracy"] = pd.to_numeric(pings["horizontal_accuracy"], errors="coerce")
    else:
        k["accuracy"] = np.nan
    k["date"] = pings["date"].astype(str) if "date" in pings else k["ts"].dt.strftime("%Y-%m-%d")
    k = k[
        k["lat"].notna() & k["lng"].notna()
        & (k["accuracy"].isna() | (k["accuracy"] < accuracy_threshold_m))
        & (k["ad_id"] != "")
    ]
    if k.empty:
        return []
    k["lat_bucket"] = np.floor(k["lat"] / cell_size_deg).astype("int64")
    k["lng_bucket"] = np.floor(k["lng"] / cell_size_deg).astype("int64")

    p = pd.DataFrame({
        "poi_id": pois["id"].astype(str),
        "category": pois["category"].astype(str),
        "poi_lat": pd.to_numeric(pois["latitude"], errors="coerce"),
        "poi_lng": pd.to_numeric(pois["longitude"], errors="coerce"),
    }).dropna(subset=["poi_lat", "poi_lng"])
    p["base_lat"] = np.floor(p["poi_lat"] / cell_size_deg).astype("int64")
    p["base_lng"] = np.floor(p["poi_lng"] / cell_size_deg).astype("int64")
    offsets = pd.DataFrame(
        [(dlat, dlng) for dlat in NEIGHBOUR_OFFSETS for dlng in NEIGHBOUR_OFFSETS],
        columns=["dlat", "dlng"],
    )
    buckets = p.merge(offsets, how="cross")
    buckets["lat_bucket"] = buckets["base_lat"] + buckets["dlat"]
    buckets["lng_bucket"] = buckets["base_lng"] + buckets["dlng"]

    m = k.merge(
        buckets[["poi_id", "category", "poi_lat", "poi_lng", "lat_bucket", "lng_bucket"]],
        on=["lat_bucket", "lng_bucket"],
    )
    if m.empty:
        return []
    mean_lat = np.radians((m["lat"] + m["poi_lat"]) / 2)
    m["distance_m"] = constants.METERS_PER_DEGREE * np.sqrt(
        (m["lat"] - m["poi_lat"]) ** 2 + ((m["lng"] - m["poi_lng"]) * np.cos(mean_lat)) ** 2
    )
    m = m[m["distance_m"] <= radius_m]
    if m.empty:
        return []
    closest = (
        m.sort_values(["distance_m", "poi_id"], kind="mergesort")
        .drop_duplicates(subset=["ad_id", "ts"], keep="first")
    )

    grouped = closest.groupby(["ad_id", "date", "poi_id", "category"], sort=False).agg(
        visit_start=("ts", "min"),
        visit_end=("ts", "max"),
        ping_count=("ts", "size"),
    ).reset_index()
    grouped["dwell_minutes"] = ((grouped["visit_end"] - grouped["visit_start"]).dt.total_seconds() / 60.0).round(1)
    grouped["visit_hour"] = grouped["visit_start"].dt.hour
    grouped = grouped[grouped["dwell_minutes"] >= 0].sort_values(["ad_id", "date", "visit_start"])

    return [
        Visit(
            device_id=row.ad_id,
            date=row.date,
            poi_id=row.poi_id,
            category=row.category,
            dwell_minutes=float(row.dwell_minutes),
            visit_hour=int(row.visit_hour),
            ping_count=int(row.ping_count),
        )
        for row in grouped.itertuples(index=False)
    ]
