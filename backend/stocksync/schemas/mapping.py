"""Mapping validation and repair schemas."""

from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from stocksync.core.errors import MappingDefect


class UnmappedIngredient(BaseModel):
    """A recipe ingredient with no inventory reference at all."""

    recipe_id: int
    recipe_ingredient_id: int
    recipe_name: str
    ingredient_name: str
    store_id: int


class MappingValidationReport(BaseModel):
    cross_store_mappings: list[MappingDefect] = Field(default_factory=list)
    missing_mappings: list[MappingDefect] = Field(default_factory=list)
    unmapped_ingredients: list[UnmappedIngredient] = Field(default_factory=list)

    @property
    def defects(self) -> list[MappingDefect]:
        return self.cross_store_mappings + self.missing_mappings

    @property
    def has_defects(self) -> bool:
        return bool(self.cross_store_mappings or self.missing_mappings)


class MappingFixDetail(BaseModel):
    recipe_ingredient_id: int
    ingredient_name: str
    action: Literal["repointed", "created", "failed"]
    inventory_item_id: Optional[int] = None
    score: Optional[float] = None
    error: Optional[str] = None


class MappingFixResult(BaseModel):
    fixed: int = 0
    failed: int = 0
    details: list[MappingFixDetail] = Field(default_factory=list)


class MappingFixRequest(BaseModel):
    """Fix defects for one store, or for every store when store_id is omitted."""

    store_id: Optional[int] = None


class MatchSuggestion(BaseModel):
    inventory_item_id: int
    name: str
    unit: str
    quantity: Decimal
    similarity: float
    score: float
