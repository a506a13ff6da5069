"""
Data models for the Affinity Laboratory.

Plain dataclasses shared by the spatial join, recipe engine, geocoder, scorer
and orchestrator. Persisted shapes are produced with to_dict(); run status is
the only model read back from storage.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class RecipeLogic(str, Enum):
    """How recipe steps combine."""
    AND = "AND"
    OR = "OR"

    def __str__(self) -> str:
        return self.value


class RunState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class RunPhase(str, Enum):
    """Coarse phase reported to clients."""
    SPATIAL_JOIN = "spatial_join"
    ORIGINS = "origins"
    GEOCODING = "geocoding"
    PROCESSING = "processing"

    def __str__(self) -> str:
        return self.value


class PipelinePhase(str, Enum):
    """Position of an asynchronous batch in its three-phase pipeline."""
    SPATIAL = "spatial"
    ORIGINS = "origins"
    PROCESSING = "processing"
    DONE = "done"

    def __str__(self) -> str:
        return self.value


@dataclass
class Visit:
    """One device at one POI on one day."""
    device_id: str
    date: str
    poi_id: str
    category: str
    dwell_minutes: float
    visit_hour: int
    ping_count: int = 1
    origin_lat: Optional[float] = None
    origin_lng: Optional[float] = None

    def __post_init__(self):
        self.device_id = str(self.device_id)
        self.date = str(self.date)
        self.poi_id = str(self.poi_id)
        self.category = str(self.category)
        self.dwell_minutes = float(self.dwell_minutes)
        self.visit_hour = int(self.visit_hour)
        self.ping_count = int(self.ping_count)
        if self.dwell_minutes < 0:
            raise ValueError(f"dwell_minutes must be >= 0, got {self.dwell_minutes}")
        if not 0 <= self.visit_hour <= 23:
            raise ValueError(f"visit_hour must be in 0..23, got {self.visit_hour}")

    @property
    def has_origin(self) -> bool:
        return self.origin_lat is not None and self.origin_lng is not None


@dataclass(frozen=True)
class TimeWindow:
    """Half-open hour window [hour_from, hour_to); wraps past midnight when hour_from > hour_to."""
    hour_from: int
    hour_to: int

    def __post_init__(self):
        for name in ("hour_from", "hour_to"):
            value = getattr(self, name)
            if not 0 <= value <= 23:
                raise ValueError(f"{name} must be in 0..23, got {value}")

    def contains(self, hour: int) -> bool:
        if self.hour_from <= self.hour_to:
            return self.hour_from <= hour < self.hour_to
        return hour >= self.hour_from or hour < self.hour_to


@dataclass(frozen=True)
class RecipeStep:
    id: str
    categories: FrozenSet[str]
    time_window: Optional[TimeWindow] = None
    min_dwell_minutes: Optional[float] = None
    max_dwell_minutes: Optional[float] = None
    min_frequency: int = 1

    def __post_init__(self):
        object.__setattr__(self, "categories", frozenset(self.categories))
        if not self.categories:
            raise ValueError(f"Recipe step {self.id} has no categories")
        if self.min_frequency is None or self.min_frequency < 1:
            object.__setattr__(self, "min_frequency", 1)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "categories": sorted(self.categories),
            "time_window": asdict(self.time_window) if self.time_window else None,
            "min_dwell_minutes": self.min_dwell_minutes,
            "max_dwell_minutes": self.max_dwell_minutes,
            "min_frequency": self.min_frequency,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecipeStep":
        window = data.get("time_window")
        return cls(
            id=str(data["id"]),
            categories=frozenset(data["categories"]),
            time_window=TimeWindow(int(window["hour_from"]), int(window["hour_to"])) if window else None,
            min_dwell_minutes=data.get("min_dwell_minutes"),
            max_dwell_minutes=data.get("max_dwell_minutes"),
            min_frequency=int(data.get("min_frequency") or 1),
        )


@dataclass(frozen=True)
class Recipe:
    id: str
    name: str
    steps: Tuple[RecipeStep, ...]
    logic: RecipeLogic = RecipeLogic.OR
    ordered: bool = False

    def __post_init__(self):
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "logic", RecipeLogic(self.logic))
        if not self.steps:
            raise ValueError(f"Recipe {self.id} has no steps")

    @property
    def categories(self) -> FrozenSet[str]:
        cats = set()
        for step in self.steps:
            cats.update(step.categories)
        return frozenset(cats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "steps": [s.to_dict() for s in self.steps],
            "logic": self.logic.value,
            "ordered": self.ordered,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recipe":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            steps=tuple(RecipeStep.from_dict(s) for s in data["steps"]),
            logic=RecipeLogic(str(data.get("logic", "OR")).upper()),
            ordered=bool(data.get("ordered", False)),
        )


@dataclass
class SegmentDevice:
    device_id: str
    matched_step_count: int
    total_visits: int
    avg_dwell_minutes: float
    categories_visited: List[str]


@dataclass(frozen=True)
class GeoInfo:
    postal_code: str
    city: str = ""
    province: str = ""
    region: str = ""
    country: str = ""


@dataclass
class AffinityRecord:
    """One postal code x one category."""
    postal_code: str
    city: str
    province: str
    region: str
    category: str
    visits: int
    unique_devices: int
    avg_dwell_minutes: float
    frequency: float
    total_visits_from_zipcode: int
    concentration_score: int
    frequency_score: int
    dwell_score: int
    affinity_index: int


@dataclass
class ZipcodeProfile:
    postal_code: str
    city: str
    province: str
    region: str
    total_visits: int
    unique_devices: int
    avg_dwell_minutes: float
    affinities: Dict[str, int]
    top_category: str
    top_affinity: int
    dominant_group: str


@dataclass
class CategoryStat:
    category: str
    label: str
    group: str
    visits: int
    unique_devices: int
    avg_dwell_minutes: float
    percent_of_total: float
    postal_codes_with_visits: int
    avg_affinity: int
    max_affinity: int
    max_affinity_zipcode: str
    max_affinity_city: str


@dataclass
class AffinityHotspot:
    postal_code: str
    city: str
    category: str
    category_label: str
    affinity_index: int
    visits: int
    unique_devices: int
    avg_dwell_minutes: float


@dataclass
class GeocodingCoverage:
    matched_devices: int = 0
    foreign_devices: int = 0
    unmatched_domestic: int = 0


@dataclass
class LabStats:
    total_visits_analyzed: int = 0
    total_devices_in_dataset: int = 0
    segment_size: int = 0
    segment_percent: float = 0.0
    total_postal_codes: int = 0
    categories_analyzed: int = 0
    avg_affinity_index: int = 0
    avg_dwell_minutes: float = 0.0
    category_breakdown: List[CategoryStat] = field(default_factory=list)
    top_hotspots: List[AffinityHotspot] = field(default_factory=list)
    coverage: GeocodingCoverage = field(default_factory=GeocodingCoverage)


@dataclass(frozen=True)
class LabConfig:
    """Input of one analysis: where to look and which recipe to apply."""
    dataset_id: str
    country: str
    recipe: Recipe
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    min_visits_per_zipcode: int = 5
    radius_m: float = 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "country": self.country,
            "recipe": self.recipe.to_dict(),
            "date_from": self.date_from,
            "date_to": self.date_to,
            "min_visits_per_zipcode": self.min_visits_per_zipcode,
            "radius_m": self.radius_m,
        }


@dataclass
class LabAnalysisResult:
    config: LabConfig
    analyzed_at: str
    segment_total: int
    segment_devices: List[SegmentDevice]
    records: List[AffinityRecord]
    profiles: List[ZipcodeProfile]
    stats: LabStats

    def to_dict(self, segment_limit: Optional[int] = None) -> Dict[str, Any]:
        devices = self.segment_devices if segment_limit is None else self.segment_devices[:segment_limit]
        return {
            "config": self.config.to_dict(),
            "analyzed_at": self.analyzed_at,
            "segment": {
                "total_devices": self.segment_total,
                "devices": [asdict(d) for d in devices],
            },
            "records": [asdict(r) for r in self.records],
            "profiles": [asdict(p) for p in self.profiles],
            "stats": asdict(self.stats),
        }


@dataclass
class AudienceRunResult:
    """Lightweight per-recipe summary persisted as latest.json."""
    recipe_id: str
    name: str
    dataset_id: str
    country: str
    status: RunState
    run_id: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    segment_size: int = 0
    segment_percent: float = 0.0
    total_postal_codes: int = 0
    avg_affinity_index: int = 0
    top_hotspots: List[Dict[str, Any]] = field(default_factory=list)
    result_key: Optional[str] = None
    segment_csv_key: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = RunState(self.status).value
        return data


@dataclass
class RunStatus:
    """Mutable run record keyed by (dataset_id, country)."""
    run_id: str
    dataset_id: str
    country: str
    status: RunState = RunState.RUNNING
    phase: RunPhase = RunPhase.SPATIAL_JOIN
    percent: int = 0
    cancel_requested: bool = False
    completed_audiences: List[str] = field(default_factory=list)
    audience_states: Dict[str, str] = field(default_factory=dict)
    audience_ids: List[str] = field(default_factory=list)
    current: int = 0
    total: int = 0
    current_audience_name: Optional[str] = None
    message: str = ""
    started_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    # asynchronous pipeline fields
    pipeline_phase: Optional[PipelinePhase] = None
    query_handles: Dict[str, str] = field(default_factory=dict)
    visits_table: Optional[str] = None
    origins_table: Optional[str] = None
    continue_triggered: bool = False
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    radius_m: Optional[float] = None
    min_visits_per_zipcode: Optional[int] = None
    recipes: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        self.status = RunState(self.status)
        self.phase = RunPhase(self.phase)
        if self.pipeline_phase is not None:
            self.pipeline_phase = PipelinePhase(self.pipeline_phase)

    @property
    def is_running(self) -> bool:
        return self.status == RunState.RUNNING

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["phase"] = self.phase.value
        data["pipeline_phase"] = self.pipeline_phase.value if self.pipeline_phase else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunStatus":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
