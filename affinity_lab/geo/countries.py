"""
Supported countries for reverse geocoding.

Each country has a static bounding box used as a cheap pre-filter and a
property parser that normalizes its postal-boundary GeoJSON schema into a
GeoInfo. PROPERTY_PARSERS must cover exactly the SUPPORTED_COUNTRIES keys.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping

from affinity_lab.core.models import GeoInfo
from affinity_lab.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng

    @property
    def area(self) -> float:
        return (self.max_lat - self.min_lat) * (self.max_lng - self.min_lng)


@dataclass(frozen=True)
class Country:
    code: str
    name: str
    bbox: BoundingBox


def _country(code, name, min_lat, max_lat, min_lng, max_lng) -> Country:
    return Country(code, name, BoundingBox(min_lat, max_lat, min_lng, max_lng))


SUPPORTED_COUNTRIES: Dict[str, Country] = {c.code: c for c in (
    # Europe
    _country("ES", "Spain", 27.6, 43.8, -18.2, 4.4),
    _country("PT", "Portugal", 32.6, 42.2, -31.3, -6.2),
    _country("FR", "France", 41.3, 51.1, -5.2, 9.6),
    _country("DE", "Germany", 47.2, 55.1, 5.8, 15.1),
    _country("IT", "Italy", 35.5, 47.1, 6.6, 18.6),
    _country("GB", "United Kingdom", 49.9, 60.9, -8.2, 1.8),
    _country("IE", "Ireland", 51.4, 55.4, -10.5, -6.0),
    _country("NL", "Netherlands", 50.7, 53.6, 3.3, 7.3),
    _country("BE", "Belgium", 49.5, 51.5, 2.5, 6.4),
    _country("CH", "Switzerland", 45.8, 47.8, 5.9, 10.5),
    _country("AT", "Austria", 46.4, 49.0, 9.5, 17.2),
    _country("PL", "Poland", 49.0, 54.9, 14.1, 24.2),
    _country("CZ", "Czechia", 48.5, 51.1, 12.1, 18.9),
    _country("DK", "Denmark", 54.5, 57.8, 8.0, 15.2),
    _country("SE", "Sweden", 55.3, 69.1, 11.1, 24.2),
    _country("NO", "Norway", 57.9, 71.2, 4.6, 31.1),
    _country("FI", "Finland", 59.8, 70.1, 20.5, 31.6),
    # Americas
    _country("US", "United States", 24.4, 49.4, -124.8, -66.9),
    _country("CA", "Canada", 41.7, 83.1, -141.0, -52.6),
    _country("MX", "Mexico", 14.5, 32.7, -118.4, -86.7),
    _country("BR", "Brazil", -33.8, 5.3, -73.99, -34.8),
    _country("AR", "Argentina", -55.1, -21.8, -73.6, -53.6),
    _country("CO", "Colombia", -4.3, 13.4, -79.0, -66.9),
    _country("CL", "Chile", -56.0, -17.5, -75.7, -66.4),
)}


def _text(props: Mapping[str, Any], *names: str) -> str:
    for name in names:
        value = props.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def parse_es(props: Mapping[str, Any]) -> GeoInfo:
    # description: "01001, Vitoria, Álava, País Vasco, ESP"
    parts = [p.strip() for p in str(props.get("description") or "").split(",")]
    parts += [""] * (4 - len(parts))
    return GeoInfo(
        postal_code=_text(props, "postal_code") or parts[0],
        city=parts[1],
        province=parts[2],
        region=parts[3],
        country="ES",
    )


def parse_fr(props: Mapping[str, Any]) -> GeoInfo:
    return GeoInfo(
        postal_code=_text(props, "codePostal", "code_postal"),
        city=_text(props, "nomCommune"),
        province=_text(props, "nomDepartement"),
        region=_text(props, "nomRegion"),
        country="FR",
    )


def parse_de(props: Mapping[str, Any]) -> GeoInfo:
    return GeoInfo(
        postal_code=_text(props, "plz"),
        city=_text(props, "ort", "note"),
        province=_text(props, "landkreis"),
        region=_text(props, "bundesland"),
        country="DE",
    )


def parse_it(props: Mapping[str, Any]) -> GeoInfo:
    return GeoInfo(
        postal_code=_text(props, "CAP", "cap"),
        city=_text(props, "COMUNE", "comune"),
        province=_text(props, "PROVINCIA", "provincia"),
        region=_text(props, "REGIONE", "regione"),
        country="IT",
    )


def parse_gb(props: Mapping[str, Any]) -> GeoInfo:
    return GeoInfo(
        postal_code=_text(props, "postcode_district", "name"),
        city=_text(props, "post_town"),
        province=_text(props, "county"),
        region=_text(props, "region"),
        country="GB",
    )


def parse_us(props: Mapping[str, Any]) -> GeoInfo:
    return GeoInfo(
        postal_code=_text(props, "ZCTA5CE20", "ZCTA5CE10", "zcta"),
        city=_text(props, "city"),
        province=_text(props, "county"),
        region=_text(props, "state"),
        country="US",
    )


def parse_br(props: Mapping[str, Any]) -> GeoInfo:
    return GeoInfo(
        postal_code=_text(props, "CEP", "cep"),
        city=_text(props, "municipio"),
        province=_text(props, "uf"),
        region=_text(props, "regiao"),
        country="BR",
    )


def parse_ca(props: Mapping[str, Any]) -> GeoInfo:
    # Forward sortation areas: only the 3-character prefix is published
    return GeoInfo(
        postal_code=_text(props, "CFSAUID"),
        city="",
        province=_text(props, "PRNAME"),
        region=_text(props, "PRNAME"),
        country="CA",
    )


def _geonames_parser(code: str) -> Callable[[Mapping[str, Any]], GeoInfo]:
    def parse(props: Mapping[str, Any]) -> GeoInfo:
        return GeoInfo(
            postal_code=_text(props, "postal_code", "postcode"),
            city=_text(props, "place_name"),
            province=_text(props, "admin_name2"),
            region=_text(props, "admin_name1"),
            country=code,
        )
    parse.__name__ = f"parse_{code.lower()}"
    return parse


PropertyParser = Callable[[Mapping[str, Any]], GeoInfo]

PROPERTY_PARSERS: Dict[str, PropertyParser] = {
    "ES": parse_es,
    "FR": parse_fr,
    "DE": parse_de,
    "IT": parse_it,
    "GB": parse_gb,
    "US": parse_us,
    "BR": parse_br,
    "CA": parse_ca,
}
for _code in SUPPORTED_COUNTRIES:
    PROPERTY_PARSERS.setdefault(_code, _geonames_parser(_code))


def require_supported(country: str) -> Country:
    """Look up a supported country by ISO-2 code."""
    code = (country or "").strip().upper()
    try:
        return SUPPORTED_COUNTRIES[code]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported country '{country}'. Supported: {', '.join(sorted(SUPPORTED_COUNTRIES))}"
        ) from None


def candidate_countries(lat: float, lng: float) -> List[Country]:
    """Countries whose bbox contains the point, smallest bbox first."""
    hits = [c for c in SUPPORTED_COUNTRIES.values() if c.bbox.contains(lat, lng)]
    return sorted(hits, key=lambda c: c.bbox.area)
