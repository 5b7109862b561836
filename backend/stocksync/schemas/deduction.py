"""Deduction request, validation and result schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from stocksync.core.errors import MappingDefect


class SaleLineItem(BaseModel):
    """One line of a completed sale."""

    product_id: int
    product_name: str = ""
    quantity: Decimal = Decimal("1")


class DeductionRequest(BaseModel):
    """Stock deduction request for one completed sale."""

    transaction_id: str = Field(..., min_length=1, max_length=100)
    store_id: int
    line_items: list[SaleLineItem] = Field(default_factory=list)


class ResolvedIngredient(BaseModel):
    """A deduction the executor will apply, already in the item's unit."""

    deduction_key: str
    inventory_item_id: int
    item_name: str
    ingredient_name: str
    recipe_ingredient_id: Optional[int] = None
    required_quantity: Decimal
    unit: str


class ResolvedLine(BaseModel):
    line_index: int
    product_id: int
    product_name: str
    quantity: Decimal
    source: Literal["recipe", "direct", "unresolved"]
    recipe_id: Optional[int] = None
    ingredients: list[ResolvedIngredient] = Field(default_factory=list)


class InsufficientItem(BaseModel):
    inventory_item_id: int
    item_name: str
    required: Decimal
    available: Decimal
    unit: str


class DeductionValidation(BaseModel):
    """Outcome of resolving and checking a request before any write."""

    can_proceed: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    insufficient_items: list[InsufficientItem] = Field(default_factory=list)
    line_items: list[ResolvedLine] = Field(default_factory=list)
    mapping_defects: list[MappingDefect] = Field(default_factory=list)

    @property
    def deductions(self) -> list[ResolvedIngredient]:
        return [ing for line in self.line_items for ing in line.ingredients]


class DeductedItem(BaseModel):
    deduction_key: str
    inventory_item_id: int
    item_name: str
    quantity: Decimal
    unit: str
    previous_quantity: Optional[Decimal] = None
    new_quantity: Optional[Decimal] = None
    already_applied: bool = False
    shortfall: Decimal = Decimal("0")


class DeductionResult(BaseModel):
    """Outcome of executing a deduction request."""

    transaction_id: str
    success: bool = False
    deducted_items: list[DeductedItem] = Field(default_factory=list)
    movements_created: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    duration_ms: int = 0


class MovementRecordResponse(BaseModel):
    """Ledger row response schema."""

    id: int
    inventory_item_id: int
    store_id: int
    reference_id: str
    deduction_key: str
    movement_type: str
    delta_quantity: Decimal
    previous_quantity: Decimal
    new_quantity: Decimal
    note: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class SyncOutcomeResponse(BaseModel):
    """Sync outcome response schema."""

    id: int
    transaction_id: str
    store_id: int
    status: str
    items_processed: int
    error_details: Optional[str] = None
    duration_ms: int
    attempt: int
    created_at: datetime

    model_config = {"from_attributes": True}
