"""
Reverse geocoding of device origins to postal codes.

Two levels: a bbox pre-filter over every supported country (smallest bbox
first, so overseas territories and enclaves resolve before the large
countries that overlap them), then point-in-polygon against that country's
lazily loaded postal boundaries.

Outcomes are classified relative to the run's target country:
  matched             polygon hit inside the target country
  foreign             polygon hit in another country, or outside every bbox
  unmatched_domestic  inside the target bbox but in no polygon
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from affinity_lab.core.models import GeoInfo
from affinity_lab.geo.countries import candidate_countries, require_supported
from affinity_lab.geo.polygons import PolygonStore
from affinity_lab.utils import constants

logger = logging.getLogger(__name__)

_MISS = object()


class GeocodeKind(str, Enum):
    MATCHED = "matched"
    FOREIGN = "foreign"
    UNMATCHED_DOMESTIC = "unmatched_domestic"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class GeocodePoint:
    lat: float
    lng: float
    device_count: int = 1


@dataclass(frozen=True)
class GeocodeOutcome:
    kind: GeocodeKind
    devices: int
    geo: Optional[GeoInfo] = None


@dataclass
class ZipcodeCount:
    postal_code: str
    city: str
    province: str
    region: str
    devices: int
    percent_of_total: float
    percent_of_classified: float


@dataclass
class ZipcodeAggregation:
    zipcodes: List[ZipcodeCount]
    foreign_devices: int
    unmatched_domestic: int

    @property
    def matched_devices(self) -> int:
        return sum(z.devices for z in self.zipcodes)


class CoordinateCache:
    """
    Bounded cache of raw lookups keyed by rounded coordinate.

    Once max_entries is exceeded the oldest evict_fraction of entries is
    dropped in one pass.
    """

    def __init__(
        self,
        max_entries: int = constants.GEOCODE_CACHE_MAX_ENTRIES,
        evict_fraction: float = constants.GEOCODE_CACHE_EVICT_FRACTION,
        precision: int = constants.COORDINATE_PRECISION,
    ):
        self.max_entries = max_entries
        self.evict_fraction = evict_fraction
        self.precision = precision
        self._entries: "OrderedDict[Tuple[float, float], Optional[GeoInfo]]" = OrderedDict()
        self._lock = threading.Lock()

    def key(self, lat: float, lng: float) -> Tuple[float, float]:
        return (round(lat, self.precision), round(lng, self.precision))

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, lat: float, lng: float):
        """Cached lookup, or the module sentinel _MISS when absent."""
        with self._lock:
            return self._entries.get(self.key(lat, lng), _MISS)

    def put(self, lat: float, lng: float, value: Optional[GeoInfo]) -> None:
        with self._lock:
            self._entries[self.key(lat, lng)] = value
            if len(self._entries) > self.max_entries:
                evict = max(1, int(self.max_entries * self.evict_fraction))
                for _ in range(evict):
                    self._entries.popitem(last=False)
                logger.debug(f"Geocode cache evicted {evict} entries")


class ReverseGeocoder:
    """Resolves coordinates to postal codes using a PolygonStore."""

    def __init__(self, polygons: PolygonStore, cache: Optional[CoordinateCache] = None):
        self.polygons = polygons
        self.cache = cache or CoordinateCache()

    def lookup(self, lat: float, lng: float) -> Optional[GeoInfo]:
        """Country-agnostic lookup: first polygon hit across bbox candidates."""
        cached = self.cache.get(lat, lng)
        if cached is not _MISS:
            return cached
        result = None
        for country in candidate_countries(lat, lng):
            polygons = self.polygons.get(country.code)
            if polygons is None:
                continue
            result = polygons.locate(lat, lng)
            if result is not None:
                break
        self.cache.put(lat, lng, result)
        return result

    def classify(self, lat: float, lng: float, target_country: str, devices: int = 1) -> GeocodeOutcome:
        target = require_supported(target_country)
        geo = self.lookup(lat, lng)
        if geo is not None:
            kind = GeocodeKind.MATCHED if geo.country == target.code else GeocodeKind.FOREIGN
            return GeocodeOutcome(kind=kind, devices=devices, geo=geo)
        if target.bbox.contains(lat, lng):
            return GeocodeOutcome(kind=GeocodeKind.UNMATCHED_DOMESTIC, devices=devices)
        return GeocodeOutcome(kind=GeocodeKind.FOREIGN, devices=devices)


def batch_reverse_geocode(
    geocoder: ReverseGeocoder,
    points: Iterable[GeocodePoint],
    target_country: str,
) -> List[GeocodeOutcome]:
    """Classify every point, preserving input order."""
    outcomes = [geocoder.classify(p.lat, p.lng, target_country, p.device_count) for p in points]
    matched = sum(1 for o in outcomes if o.kind == GeocodeKind.MATCHED)
    logger.info(f"Geocoded {len(outcomes)} points for {target_country.upper()}: {matched} matched")
    return outcomes


def aggregate_by_zipcode(outcomes: Iterable[GeocodeOutcome], total_devices: int) -> ZipcodeAggregation:
    """
    Sum device counts per postal code.

    Matched zipcode devices + foreign_devices + unmatched_domestic equals the
    sum of the outcomes' device counts.
    """
    by_zip: Dict[str, Dict] = {}
    foreign = 0
    unmatched = 0
    for outcome in outcomes:
        if outcome.kind == GeocodeKind.MATCHED:
            geo = outcome.geo
            entry = by_zip.setdefault(geo.postal_code, {"geo": geo, "devices": 0})
            entry["devices"] += outcome.devices
        elif outcome.kind == GeocodeKind.FOREIGN:
            foreign += outcome.devices
        else:
            unmatched += outcome.devices

    classified = sum(e["devices"] for e in by_zip.values()) + foreign
    zipcodes = []
    for postal_code, entry in by_zip.items():
        geo, devices = entry["geo"], entry["devices"]
        zipcodes.append(ZipcodeCount(
            postal_code=postal_code,
            city=geo.city or geo.country,
            province=geo.province,
            region=geo.region or geo.country,
            devices=devices,
            percent_of_total=round(devices / total_devices * 100, 2) if total_devices > 0 else 0.0,
            percent_of_classified=round(devices / classified * 100, 2) if classified > 0 else 0.0,
        ))
    zipcodes.sort(key=lambda z: z.devices, reverse=True)
    return ZipcodeAggregation(zipcodes=zipcodes, foreign_devices=foreign, unmatched_domestic=unmatched)
