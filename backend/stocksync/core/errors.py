"""Engine error taxonomy.

Validation problems are reported back to the caller before any stock is
touched. Execution failures always propagate and always leave a repair job
behind. ``MappingDefect`` is data, not an exception: it is collected into
reports and health views and never raised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from stocksync.schemas.deduction import DeductionResult, DeductionValidation


class InventorySyncError(Exception):
    """Base class for engine errors."""


class DeductionValidationError(InventorySyncError):
    """Raised when a deduction request must not proceed."""

    def __init__(self, message: str, validation: Optional["DeductionValidation"] = None):
        self.validation = validation
        super().__init__(message)


class InsufficientStockError(DeductionValidationError):
    """Raised when available stock does not cover the cumulative requirement."""

    @property
    def insufficient_items(self) -> list:
        if self.validation is None:
            return []
        return self.validation.insufficient_items


class DeductionExecutionError(InventorySyncError):
    """Raised when a validated deduction could not be fully applied."""

    def __init__(
        self,
        message: str,
        result: Optional["DeductionResult"] = None,
        repair_job_id: Optional[int] = None,
    ):
        self.result = result
        self.repair_job_id = repair_job_id
        super().__init__(message)


class DeductionTimeoutError(DeductionExecutionError):
    """Raised when a deduction overruns its deadline."""


class RepairExhaustedError(InventorySyncError):
    """Raised on a manual retry of a job that has used up its attempts."""

    def __init__(self, job_id: int, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(
            f"Repair job {job_id} failed after {attempts} attempts; "
            f"retry with reset_attempts to run it again"
        )


class LedgerImmutabilityError(InventorySyncError):
    """Raised when code tries to update or delete a movement record."""


@dataclass
class MappingDefect:
    """A recipe ingredient whose inventory reference is dangling or points at another store."""

    recipe_id: int
    recipe_ingredient_id: int
    recipe_name: str
    ingredient_name: str
    correct_store_id: int
    wrong_store_id: Optional[int] = None
    inventory_item_id: Optional[int] = None
    inventory_item_name: Optional[str] = None

    @property
    def is_cross_store(self) -> bool:
        return self.wrong_store_id is not None
