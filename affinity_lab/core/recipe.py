"""
Recipe evaluation over one device's visits.

Everything here is pure and works on in-memory Visit lists, so one spatial
join can be evaluated against any number of recipes.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from affinity_lab.core.models import Recipe, RecipeLogic, RecipeStep, SegmentDevice, Visit

logger = logging.getLogger(__name__)


def visit_qualifies(step: RecipeStep, visit: Visit) -> bool:
    if visit.category not in step.categories:
        return False
    if step.time_window is not None and not step.time_window.contains(visit.visit_hour):
        return False
    if step.min_dwell_minutes is not None and visit.dwell_minutes < step.min_dwell_minutes:
        return False
    if step.max_dwell_minutes is not None and visit.dwell_minutes > step.max_dwell_minutes:
        return False
    return True


def qualifying_visits(step: RecipeStep, visits: Iterable[Visit]) -> List[Visit]:
    return [v for v in visits if visit_qualifies(step, v)]


def match_step(step: RecipeStep, visits: Iterable[Visit]) -> bool:
    """A step matches when at least min_frequency visits qualify."""
    return len(qualifying_visits(step, visits)) >= step.min_frequency


def check_order(steps: Iterable[RecipeStep], visits: List[Visit]) -> bool:
    """
    Earliest qualifying date of each step must not precede the previous step's.

    Same-day visits count as ordered.
    """
    last_date: Optional[str] = None
    for step in steps:
        dates = [v.date for v in visits if visit_qualifies(step, v)]
        if not dates:
            return False
        first = min(dates)
        if last_date is not None and first < last_date:
            return False
        last_date = first
    return True


@dataclass
class RecipeMatch:
    matched: bool
    matched_step_count: int


def evaluate_recipe(recipe: Recipe, visits: List[Visit]) -> RecipeMatch:
    step_matches = [match_step(step, visits) for step in recipe.steps]
    if recipe.logic == RecipeLogic.AND:
        matched = all(step_matches)
        if matched and recipe.ordered:
            matched = check_order(recipe.steps, visits)
    else:
        matched = any(step_matches)
    return RecipeMatch(matched=matched, matched_step_count=sum(step_matches))


def group_by_device(visits: Iterable[Visit]) -> Dict[str, List[Visit]]:
    grouped: Dict[str, List[Visit]] = defaultdict(list)
    for v in visits:
        grouped[v.device_id].append(v)
    return dict(grouped)


def build_segment(recipe: Recipe, visits_by_device: Dict[str, List[Visit]]) -> List[SegmentDevice]:
    """
    Evaluate the recipe for every device.

    Returns matched devices sorted by total visits (descending). Aggregates
    cover every visit of the device in the recipe's categories, not just the
    qualifying ones; visits fetched for other recipes of a batch are ignored.
    """
    categories = recipe.categories
    segment = []
    for device_id, device_visits in visits_by_device.items():
        result = evaluate_recipe(recipe, device_visits)
        if not result.matched:
            continue
        visits = [v for v in device_visits if v.category in categories]
        total_dwell = sum(v.dwell_minutes for v in visits)
        visited = sorted({v.category for v in visits})
        segment.append(SegmentDevice(
            device_id=device_id,
            matched_step_count=result.matched_step_count,
            total_visits=len(visits),
            avg_dwell_minutes=round(total_dwell / len(visits), 1) if visits else 0.0,
            categories_visited=visited,
        ))
    segment.sort(key=lambda d: (-d.total_visits, d.device_id))
    logger.info(
        f"Recipe {recipe.id}: {len(segment)} of {len(visits_by_device)} devices matched "
        f"({len(recipe.steps)} steps, logic={recipe.logic.value}, ordered={recipe.ordered})"
    )
    return segment
