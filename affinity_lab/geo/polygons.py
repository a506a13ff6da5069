"""
Per-country postal boundary polygons.

Polygon sets are loaded lazily on first use and kept for the lifetime of the
store. A country with no data is remembered only for a short retry interval,
so a failed download does not disable it for good. Sources, in order: <polygon_dir>/<CC>_zipcodes.geojson, the blob store
key geo/<CC>_zipcodes.geojson, then polygon_url_template. Anything fetched
remotely is written back to polygon_dir.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests
from shapely.geometry import Point, shape
from shapely.strtree import STRtree

from affinity_lab.core.models import GeoInfo
from affinity_lab.geo.countries import PROPERTY_PARSERS, require_supported
from affinity_lab.io.blob_store import BlobStore
from affinity_lab.utils import constants
from affinity_lab.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)


def polygon_filename(country: str) -> str:
    return f"{country.upper()}_zipcodes.geojson"


class CountryPolygons:
    """Postal polygons of one country with a spatial index over them."""

    def __init__(self, country: str, entries: List[Tuple[Any, GeoInfo]]):
        self.country = country
        self._geometries = [geom for geom, _ in entries]
        self._infos = [info for _, info in entries]
        self._tree = STRtree(self._geometries) if self._geometries else None

    def __len__(self) -> int:
        return len(self._geometries)

    def locate(self, lat: float, lng: float) -> Optional[GeoInfo]:
        """First polygon (in file order) containing the point, or None."""
        if self._tree is None:
            return None
        point = Point(lng, lat)
        hits = self._tree.query(point, predicate="intersects")
        if len(hits) == 0:
            return None
        return self._infos[int(min(hits))]

    @classmethod
    def from_geojson(cls, country: str, geojson: Dict[str, Any]) -> "CountryPolygons":
        parser = PROPERTY_PARSERS[country]
        entries = []
        skipped = 0
        for feature in geojson.get("features") or []:
            geometry = feature.get("geometry")
            if not geometry:
                skipped += 1
                continue
            try:
                geom = shape(geometry)
            except (ValueError, TypeError, AttributeError, KeyError) as e:
                logger.debug(f"Skipping malformed {country} geometry: {e}")
                skipped += 1
                continue
            info = parser(feature.get("properties") or {})
            if not info.postal_code:
                skipped += 1
                continue
            entries.append((geom, info))
        if skipped:
            logger.warning(f"Skipped {skipped} unusable {country} boundary features")
        logger.info(f"Loaded {len(entries)} postal polygons for {country}")
        return cls(country, entries)


class PolygonStore:
    """
    Lazy, process-lifetime cache of CountryPolygons.

    The check-then-load path holds a per-country lock so concurrent callers
    never load the same country twice.
    """

    def __init__(
        self,
        polygon_dir: str,
        url_template: Optional[str] = None,
        blobs: Optional[BlobStore] = None,
        timeout_seconds: float = 120,
        miss_retry_seconds: float = constants.POLYGON_MISS_RETRY_SECONDS,
    ):
        self.polygon_dir = Path(polygon_dir)
        self.url_template = url_template
        self.blobs = blobs
        self.timeout_seconds = timeout_seconds
        self.miss_retry_seconds = miss_retry_seconds
        self._loaded: Dict[str, CountryPolygons] = {}
        self._misses: Dict[str, float] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, country: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(country, threading.Lock())

    def get(self, country: str) -> Optional[CountryPolygons]:
        """Polygons for a country, or None when no source has data for it."""
        code = require_supported(country).code
        if code in self._loaded:
            return self._loaded[code]
        with self._lock_for(code):
            if code in self._loaded:
                return self._loaded[code]
            missed_at = self._misses.get(code)
            if missed_at is not None and time.monotonic() - missed_at < self.miss_retry_seconds:
                return None
            polygons = self._load(code)
            if polygons is None:
                self._misses[code] = time.monotonic()
                return None
            self._misses.pop(code, None)
            self._loaded[code] = polygons
            return polygons

    def ensure_available(self, country: str) -> CountryPolygons:
        polygons = self.get(country)
        if polygons is None:
            raise ConfigurationError(
                f"No postal boundary data for {country.upper()}; place "
                f"{polygon_filename(country)} in {self.polygon_dir} or configure polygon_url_template"
            )
        return polygons

    def loaded_countries(self) -> List[str]:
        return sorted(self._loaded)

    def _load(self, code: str) -> Optional[CountryPolygons]:
        geojson = self._read_local(code)
        if geojson is None:
            geojson = self._read_blob(code) or self._download(code)
            if geojson is not None:
                self._write_local(code, geojson)
        if geojson is None:
            logger.warning(f"No postal boundary source available for {code}")
            return None
        return CountryPolygons.from_geojson(code, geojson)

    def _read_local(self, code: str) -> Optional[Dict[str, Any]]:
        path = self.polygon_dir / polygon_filename(code)
        if not path.exists():
            return None
        logger.info(f"Loading {code} postal boundaries from {path}")
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def _read_blob(self, code: str) -> Optional[Dict[str, Any]]:
        if self.blobs is None:
            return None
        return self.blobs.get_json(f"geo/{polygon_filename(code)}")

    def _download(self, code: str) -> Optional[Dict[str, Any]]:
        if not self.url_template:
            return None
        url = self.url_template.format(country=code, country_lower=code.lower())
        logger.info(f"Downloading {code} postal boundaries from {url}")
        try:
            response = requests.get(url, timeout=self.timeout_seconds)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Failed to download {code} postal boundaries: {e}")
            return None

    def _write_local(self, code: str, geojson: Dict[str, Any]) -> None:
        path = self.polygon_dir / polygon_filename(code)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(geojson), encoding="utf-8")
            logger.info(f"Cached {code} postal boundaries at {path}")
        except OSError as e:
            logger.warning(f"Could not cache {code} postal boundaries at {path}: {e}")
