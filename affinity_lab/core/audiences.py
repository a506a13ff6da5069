"""
Audience catalog.

Predefined audiences live in config/audiences.yml. Each one converts to a
single-step OR recipe so batch runs can mix catalog audiences with custom
recipes.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

import yaml

from affinity_lab.core.categories import unknown_categories
from affinity_lab.core.models import Recipe, RecipeLogic, RecipeStep, TimeWindow
from affinity_lab.utils.errors import ConfigurationError, UnknownAudienceError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "config" / "audiences.yml"


@dataclass(frozen=True)
class AudienceDefinition:
    id: str
    name: str
    description: str
    group: str
    categories: Tuple[str, ...]
    time_window: Optional[TimeWindow] = None
    min_dwell_minutes: Optional[float] = None
    max_dwell_minutes: Optional[float] = None
    min_frequency: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "group": self.group,
            "categories": list(self.categories),
            "time_window": (
                {"hour_from": self.time_window.hour_from, "hour_to": self.time_window.hour_to}
                if self.time_window else None
            ),
            "min_dwell_minutes": self.min_dwell_minutes,
            "max_dwell_minutes": self.max_dwell_minutes,
            "min_frequency": self.min_frequency,
        }


def audience_to_recipe(audience: AudienceDefinition) -> Recipe:
    step = RecipeStep(
        id=f"audience_{audience.id}",
        categories=frozenset(audience.categories),
        time_window=audience.time_window,
        min_dwell_minutes=audience.min_dwell_minutes,
        max_dwell_minutes=audience.max_dwell_minutes,
        min_frequency=audience.min_frequency or 1,
    )
    return Recipe(id=audience.id, name=audience.name, steps=(step,), logic=RecipeLogic.OR, ordered=False)


def collect_all_categories(recipes: Iterable[Recipe]) -> FrozenSet[str]:
    """Union of POI categories across recipes."""
    categories = set()
    for recipe in recipes:
        categories.update(recipe.categories)
    return frozenset(categories)


def _parse_audience(raw: Dict[str, Any]) -> AudienceDefinition:
    try:
        window = raw.get("time_window")
        audience = AudienceDefinition(
            id=str(raw["id"]),
            name=str(raw["name"]),
            description=str(raw.get("description", "")),
            group=str(raw.get("group", "other")),
            categories=tuple(raw["categories"]),
            time_window=TimeWindow(int(window["hour_from"]), int(window["hour_to"])) if window else None,
            min_dwell_minutes=raw.get("min_dwell_minutes"),
            max_dwell_minutes=raw.get("max_dwell_minutes"),
            min_frequency=raw.get("min_frequency"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid audience definition {raw.get('id', '?')}: {e}") from e
    unknown = unknown_categories(audience.categories)
    if unknown:
        logger.warning(f"Audience {audience.id} uses categories outside the POI taxonomy: {', '.join(unknown)}")
    return audience


class AudienceCatalog:
    def __init__(self, audiences: List[AudienceDefinition], group_labels: Optional[Dict[str, str]] = None):
        self._audiences = {a.id: a for a in audiences}
        self.group_labels = group_labels or {}

    def __len__(self) -> int:
        return len(self._audiences)

    def __contains__(self, audience_id: str) -> bool:
        return audience_id in self._audiences

    def all(self) -> List[AudienceDefinition]:
        return list(self._audiences.values())

    def get(self, audience_id: str) -> AudienceDefinition:
        try:
            return self._audiences[audience_id]
        except KeyError:
            raise UnknownAudienceError(f"Unknown audience '{audience_id}'") from None

    def recipes_for(self, audience_ids: Iterable[str]) -> List[Recipe]:
        return [audience_to_recipe(self.get(a)) for a in audience_ids]


@functools.lru_cache(maxsize=2)
def load_catalog(path: Optional[str] = None) -> AudienceCatalog:
    """Load the audience catalog YAML (cached)."""
    p = Path(path) if path else DEFAULT_CATALOG_PATH
    logger.info(f"Loading audience catalog from {p}")
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Audience catalog not found: {p}") from e
    audiences = [_parse_audience(raw) for raw in data.get("audiences") or []]
    ids = [a.id for a in audiences]
    if len(ids) != len(set(ids)):
        raise ConfigurationError(f"Duplicate audience ids in {p}")
    return AudienceCatalog(audiences, data.get("groups") or {})
