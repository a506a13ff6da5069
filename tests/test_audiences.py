"""
Tests for the audience catalog and the category taxonomy.
"""

import pytest

from affinity_lab.core.audiences import (
    AudienceCatalog,
    audience_to_recipe,
    collect_all_categories,
    load_catalog,
)
from affinity_lab.core.categories import (
    CATEGORY_GROUPS,
    OTHER_GROUP,
    POI_CATEGORIES,
    category_group,
    category_label,
    unknown_categories,
)
from affinity_lab.core.models import Recipe, RecipeLogic, RecipeStep, TimeWindow
from affinity_lab.utils.errors import ConfigurationError, UnknownAudienceError


class TestCatalog:
    """Test the packaged audience catalog."""

    def test_loads_packaged_catalog(self):
        catalog = load_catalog()
        assert len(catalog) >= 20
        assert "nightlife" in catalog
        assert catalog.group_labels["fitness"] == "Health & Fitness"

    def test_every_audience_uses_known_categories(self):
        for audience in load_catalog().all():
            assert unknown_categories(audience.categories) == [], audience.id

    def test_audience_becomes_single_step_or_recipe(self):
        audience = load_catalog().get("nightlife")
        recipe = audience_to_recipe(audience)

        assert recipe.id == "nightlife"
        assert recipe.logic == RecipeLogic.OR
        assert len(recipe.steps) == 1
        assert recipe.steps[0].time_window == TimeWindow(18, 6)
        assert recipe.steps[0].min_frequency == 1
        assert "bar" in recipe.categories

    def test_dwell_filter_carried_over(self):
        step = audience_to_recipe(load_catalog().get("gym_visitors")).steps[0]
        assert step.min_dwell_minutes == 15

    def test_unknown_audience(self):
        with pytest.raises(UnknownAudienceError, match="no_such_audience"):
            load_catalog().recipes_for(["nightlife", "no_such_audience"])

    def test_recipes_in_requested_order(self):
        recipes = load_catalog().recipes_for(["golfers", "moviegoers"])
        assert [r.id for r in recipes] == ["golfers", "moviegoers"]

    def test_duplicate_ids_rejected(self, tmp_path):
        path = tmp_path / "audiences.yml"
        path.write_text(
            "audiences:\n"
            "  - {id: a, name: A, categories: [gym]}\n"
            "  - {id: a, name: A again, categories: [bar]}\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigurationError, match="Duplicate"):
            load_catalog(str(path))

    def test_invalid_definition_rejected(self, tmp_path):
        path = tmp_path / "audiences.yml"
        path.write_text("audiences:\n  - {id: a, categories: [gym]}\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid audience"):
            load_catalog(str(path))

    def test_missing_catalog(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_catalog(str(tmp_path / "missing.yml"))

    def test_empty_catalog(self):
        catalog = AudienceCatalog([])
        assert catalog.all() == []
        assert catalog.recipes_for([]) == []


def test_collect_all_categories():
    recipes = [
        Recipe("a", "A", (RecipeStep("s1", frozenset(["gym", "bar"])),)),
        Recipe("b", "B", (RecipeStep("s1", frozenset(["bar"])), RecipeStep("s2", frozenset(["restaurant"])))),
    ]
    assert collect_all_categories(recipes) == frozenset(["gym", "bar", "restaurant"])


class TestCategories:
    def test_first_group_wins(self):
        """Test that veterinarian resolves to healthcare, listed before pets."""
        assert "veterinarian" in CATEGORY_GROUPS["pets"].categories
        assert category_group("veterinarian") == "healthcare"

    def test_unknown_category(self):
        assert category_group("not_a_category") == OTHER_GROUP
        assert category_label("not_a_category") == "Not A Category"

    def test_every_grouped_category_has_a_label(self):
        grouped = {c for group in CATEGORY_GROUPS.values() for c in group.categories}
        assert grouped <= set(POI_CATEGORIES)
