"""
Laboratory settings loader.

Loads laboratory.yml once, applies environment overrides and validates the
values the analysis engine depends on for correctness.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from affinity_lab.utils import constants
from affinity_lab.utils.env import env_optional, env_str
from affinity_lab.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "laboratory.yml"


@dataclass(frozen=True)
class SpatialSettings:
    radius_m: float = constants.DEFAULT_RADIUS_METERS
    cell_size_deg: float = constants.DEFAULT_CELL_SIZE_DEGREES
    accuracy_threshold_m: float = constants.ACCURACY_THRESHOLD_METERS


@dataclass(frozen=True)
class ScoringSettings:
    weights: Dict[str, float] = field(default_factory=lambda: dict(constants.DEFAULT_WEIGHTS))
    concentration_cap: float = constants.CONCENTRATION_CAP
    frequency_cap: float = constants.FREQUENCY_CAP
    dwell_cap_minutes: float = constants.DWELL_CAP_MINUTES
    dwell_ratio_cap: float = constants.DWELL_RATIO_CAP
    min_visits_per_zipcode: int = constants.MIN_VISITS_PER_ZIPCODE
    hotspot_threshold: int = constants.HOTSPOT_THRESHOLD
    max_hotspots: int = constants.MAX_HOTSPOTS


@dataclass(frozen=True)
class GeocodingSettings:
    coordinate_precision: int = constants.COORDINATE_PRECISION
    cache_max_entries: int = constants.GEOCODE_CACHE_MAX_ENTRIES
    cache_evict_fraction: float = constants.GEOCODE_CACHE_EVICT_FRACTION
    polygon_dir: str = "data/geo"
    polygon_url_template: Optional[str] = None
    download_timeout_seconds: float = 120


@dataclass(frozen=True)
class QuerySettings:
    poll_interval_seconds: float = constants.POLL_INTERVAL_SECONDS
    max_poll_attempts: int = constants.MAX_POLL_ATTEMPTS
    origin_batch_size: int = constants.ORIGIN_BATCH_SIZE
    database: str = "default"
    workgroup: str = "primary"
    output_location: Optional[str] = None
    temp_location: Optional[str] = None


@dataclass(frozen=True)
class RunSettings:
    stale_after_seconds: float = constants.STALE_RUN_SECONDS
    heartbeat_seconds: float = constants.HEARTBEAT_SECONDS
    segment_preview_limit: int = constants.SEGMENT_PREVIEW_LIMIT


@dataclass(frozen=True)
class StorageSettings:
    blob_root: str = "laboratory_data"
    bucket: Optional[str] = None
    log_root: str = "logs"


@dataclass(frozen=True)
class LabSettings:
    """Complete, validated laboratory configuration."""
    spatial: SpatialSettings = field(default_factory=SpatialSettings)
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    geocoding: GeocodingSettings = field(default_factory=GeocodingSettings)
    query: QuerySettings = field(default_factory=QuerySettings)
    run: RunSettings = field(default_factory=RunSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    poi_table: str = "lab_pois_gmc"
    version: str = "unversioned"


def validate_grid(cell_size_deg: float, radius_m: float) -> None:
    """
    Reject grid/radius combinations where the 3x3 POI cell expansion can miss
    matches near cell boundaries.

    Raises:
        ConfigurationError: if cell_size_deg * 111320 < radius_m
    """
    if cell_size_deg <= 0:
        raise ConfigurationError(f"cell_size_deg must be positive, got {cell_size_deg}")
    if radius_m <= 0:
        raise ConfigurationError(f"radius_m must be positive, got {radius_m}")
    cell_edge_m = cell_size_deg * constants.METERS_PER_DEGREE
    if cell_edge_m < radius_m:
        raise ConfigurationError(
            f"Grid cell of {cell_size_deg} deg (~{cell_edge_m:.0f} m) is smaller than "
            f"the search radius of {radius_m} m; boundary matches would be dropped"
        )


def _validate(settings: LabSettings) -> None:
    validate_grid(settings.spatial.cell_size_deg, settings.spatial.radius_m)

    scoring = settings.scoring
    missing = {"concentration", "frequency", "dwell"} - set(scoring.weights)
    if missing:
        raise ConfigurationError(f"scoring.weights missing: {', '.join(sorted(missing))}")
    total = sum(scoring.weights[k] for k in ("concentration", "frequency", "dwell"))
    if abs(total - 1.0) > 1e-6:
        raise ConfigurationError(f"scoring.weights must sum to 1.0, got {total}")
    for name in ("concentration_cap", "frequency_cap", "dwell_cap_minutes", "dwell_ratio_cap"):
        if getattr(scoring, name) <= 0:
            raise ConfigurationError(f"scoring.{name} must be positive")
    if scoring.frequency_cap <= 1:
        raise ConfigurationError("scoring.frequency_cap must be greater than 1")

    if settings.query.max_poll_attempts < 1:
        raise ConfigurationError("query.max_poll_attempts must be at least 1")
    if not 0 < settings.query.origin_batch_size <= constants.ORIGIN_BATCH_SIZE:
        raise ConfigurationError(
            f"query.origin_batch_size must be between 1 and {constants.ORIGIN_BATCH_SIZE}"
        )
    if not 0 < settings.geocoding.cache_evict_fraction <= 1:
        raise ConfigurationError("geocoding.cache_evict_fraction must be in (0, 1]")


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"laboratory.yml section '{name}' must be a mapping")
    return value


def _build(cls, values: Dict[str, Any]):
    known = cls.__dataclass_fields__.keys()
    unknown = set(values) - set(known)
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {', '.join(sorted(unknown))}")
    return cls(**{k: v for k, v in values.items() if k in known})


def settings_from_dict(data: Dict[str, Any]) -> LabSettings:
    """Build and validate LabSettings from a parsed YAML mapping (no env overrides)."""
    try:
        settings = LabSettings(
            spatial=_build(SpatialSettings, _section(data, "spatial")),
            scoring=_build(ScoringSettings, _section(data, "scoring")),
            geocoding=_build(GeocodingSettings, _section(data, "geocoding")),
            query=_build(QuerySettings, _section(data, "query")),
            run=_build(RunSettings, _section(data, "run")),
            storage=_build(StorageSettings, _section(data, "storage")),
            poi_table=str(data.get("poi_table") or "lab_pois_gmc"),
            version=str(data.get("version", "unversioned")),
        )
    except TypeError as e:
        raise ConfigurationError(f"Invalid laboratory settings: {e}") from e
    _validate(settings)
    return settings


def _apply_env_overrides(settings: LabSettings) -> LabSettings:
    storage = settings.storage
    storage = replace(
        storage,
        blob_root=env_str("AFFINITY_BLOB_ROOT", storage.blob_root),
        bucket=env_optional("AFFINITY_S3_BUCKET") or storage.bucket,
        log_root=env_str("AFFINITY_LOG_ROOT", storage.log_root),
    )
    geocoding = replace(
        settings.geocoding,
        polygon_dir=env_str("AFFINITY_POLYGON_DIR", settings.geocoding.polygon_dir),
        polygon_url_template=env_optional("AFFINITY_POLYGON_URL_TEMPLATE")
        or settings.geocoding.polygon_url_template,
    )
    query = replace(
        settings.query,
        database=env_str("AFFINITY_ATHENA_DATABASE", settings.query.database),
        workgroup=env_str("AFFINITY_ATHENA_WORKGROUP", settings.query.workgroup),
        output_location=env_optional("AFFINITY_ATHENA_OUTPUT") or settings.query.output_location,
        temp_location=env_optional("AFFINITY_TEMP_LOCATION") or settings.query.temp_location,
    )
    return replace(settings, storage=storage, geocoding=geocoding, query=query)


@functools.lru_cache(maxsize=4)
def _load_yaml(path: str) -> Dict[str, Any]:
    """Load settings YAML (cached)."""
    p = Path(path)
    logger.info(f"Loading laboratory settings from {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Settings file not found: {p}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Settings file {p} is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {p} must contain a mapping")
    return data


def load_settings(path: Optional[str] = None) -> LabSettings:
    """
    Load laboratory settings.

    Resolution order: explicit path, AFFINITY_LAB_CONFIG, packaged laboratory.yml.
    Environment overrides are applied after the file is parsed.

    Raises:
        ConfigurationError: if the file is missing, malformed or fails validation
    """
    resolved = path or env_optional("AFFINITY_LAB_CONFIG") or str(DEFAULT_SETTINGS_PATH)
    settings = settings_from_dict(_load_yaml(str(resolved)))
    return _apply_env_overrides(settings)
