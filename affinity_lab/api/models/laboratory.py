"""
Pydantic Models for the Laboratory API

Request bodies for /api/laboratory endpoints. Each model converts into the
core dataclasses; beyond field types no further validation happens here.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from affinity_lab.core.audiences import AudienceCatalog
from affinity_lab.core.models import LabConfig, Recipe, RecipeLogic, RecipeStep, TimeWindow


class TimeWindowModel(BaseModel):
    """Hour window [hour_from, hour_to); wraps past midnight when hour_from > hour_to."""
    hour_from: int = Field(..., ge=0, le=23)
    hour_to: int = Field(..., ge=0, le=23)


class RecipeStepModel(BaseModel):
    id: str = Field(..., description="Step identifier")
    categories: List[str] = Field(..., min_length=1, description="POI categories (any of)")
    time_window: Optional[TimeWindowModel] = None
    min_dwell_minutes: Optional[float] = Field(default=None, ge=0)
    max_dwell_minutes: Optional[float] = Field(default=None, ge=0)
    min_frequency: int = Field(default=1, ge=1)

    def to_step(self) -> RecipeStep:
        window = self.time_window
        return RecipeStep(
            id=self.id,
            categories=frozenset(self.categories),
            time_window=TimeWindow(window.hour_from, window.hour_to) if window else None,
            min_dwell_minutes=self.min_dwell_minutes,
            max_dwell_minutes=self.max_dwell_minutes,
            min_frequency=self.min_frequency,
        )


class RecipeModel(BaseModel):
    """
    Recipe definition.

    Attributes:
        logic: AND (every step must match) or OR (any step)
        ordered: AND only; steps must first match on non-decreasing dates
    """
    id: str
    name: str
    steps: List[RecipeStepModel] = Field(..., min_length=1)
    logic: str = Field(default="AND")
    ordered: bool = False

    @field_validator('logic')
    @classmethod
    def validate_logic(cls, v: str) -> str:
        """Normalize logic to upper case."""
        v = v.upper()
        if v not in ("AND", "OR"):
            raise ValueError("logic must be AND or OR")
        return v

    def to_recipe(self) -> Recipe:
        return Recipe(
            id=self.id,
            name=self.name,
            steps=tuple(s.to_step() for s in self.steps),
            logic=RecipeLogic(self.logic),
            ordered=self.ordered,
        )


class _DatasetRequest(BaseModel):
    dataset_id: str = Field(..., description="Dataset (movement table) identifier")
    country: str = Field(..., min_length=2, max_length=2, description="ISO-2 country code")

    @field_validator('country')
    @classmethod
    def validate_country(cls, v: str) -> str:
        """Normalize country code to upper case."""
        return v.upper()


class AnalyzeRequest(_DatasetRequest):
    """Body of POST /api/laboratory/analyze/stream."""
    recipe: RecipeModel
    date_from: Optional[str] = Field(default=None, description="Inclusive start date (YYYY-MM-DD)")
    date_to: Optional[str] = Field(default=None, description="Inclusive end date (YYYY-MM-DD)")
    min_visits_per_zipcode: Optional[int] = Field(default=None, ge=1)
    radius_m: Optional[float] = Field(default=None, gt=0)

    model_config = {
        "json_schema_extra": {
            "example": {
                "dataset_id": "madrid-2024-06",
                "country": "ES",
                "recipe": {
                    "id": "night_owls",
                    "name": "Night owls",
                    "logic": "AND",
                    "steps": [
                        {"id": "bars", "categories": ["bar", "night_club"],
                         "time_window": {"hour_from": 22, "hour_to": 6}, "min_frequency": 2}
                    ]
                },
                "date_from": "2024-06-01",
                "date_to": "2024-06-30"
            }
        }
    }

    def to_config(self, default_min_visits: int, default_radius_m: float) -> LabConfig:
        return LabConfig(
            dataset_id=self.dataset_id,
            country=self.country,
            recipe=self.recipe.to_recipe(),
            date_from=self.date_from,
            date_to=self.date_to,
            min_visits_per_zipcode=self.min_visits_per_zipcode or default_min_visits,
            radius_m=self.radius_m or default_radius_m,
        )


class BatchRunRequest(_DatasetRequest):
    """Body of POST /api/laboratory/audiences/run-batch: catalog audience ids and/or custom recipes."""
    audience_ids: List[str] = Field(default_factory=list)
    recipes: List[RecipeModel] = Field(default_factory=list)
    date_from: Optional[str] = None
    date_to: Optional[str] = None
    min_visits_per_zipcode: Optional[int] = Field(default=None, ge=1)
    radius_m: Optional[float] = Field(default=None, gt=0)

    def resolve_recipes(self, catalog: AudienceCatalog) -> List[Recipe]:
        """Catalog audiences first, then custom recipes."""
        return catalog.recipes_for(self.audience_ids) + [r.to_recipe() for r in self.recipes]


class StopRequest(_DatasetRequest):
    pass
