"""Deduction Executor: apply a validated deduction atomically per ingredient.

Each ingredient is one savepoint holding two writes:

    UPDATE inventory_items
       SET quantity = quantity - :n
     WHERE id = :id AND quantity >= :n
    INSERT INTO inventory_movements (...)

The conditional UPDATE is the concurrency guard: two sales racing for the
last units cannot both succeed, and stock never goes below zero. The
movement row carries a ``deduction_key`` unique per transaction, so a retry
skips whatever already landed and applies only the rest.
"""

import logging
import time
from decimal import Decimal
from typing import Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stocksync.core.config import settings
from stocksync.core.errors import (
    DeductionExecutionError,
    DeductionTimeoutError,
    DeductionValidationError,
    InsufficientStockError,
)
from stocksync.models.inventory import InventoryItem, MovementRecord, MovementType
from stocksync.schemas.deduction import (
    DeductedItem,
    DeductionRequest,
    DeductionResult,
    DeductionValidation,
    ResolvedIngredient,
)
from stocksync.services.deduction_validator import DeductionValidator
from stocksync.services.normalizer import quantize_quantity

logger = logging.getLogger(__name__)

SHORTFALL_REJECT = "reject"
SHORTFALL_CLAMP = "clamp"


class DeductionExecutor:
    """Applies deductions and writes the movement ledger."""

    def __init__(
        self,
        db: Session,
        shortfall_policy: Optional[str] = None,
        validator: Optional[DeductionValidator] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.db = db
        self.clock = clock or time.monotonic
        self.shortfall_policy = shortfall_policy or settings.deduction_shortfall_policy
        self.validator = validator or DeductionValidator(db)

    def execute(
        self,
        request: DeductionRequest,
        validation: Optional[DeductionValidation] = None,
        timeout: Optional[float] = None,
    ) -> DeductionResult:
        """Apply every resolved deduction of ``request``.

        Args:
            request: The sale being deducted
            validation: A prior validation; the request is validated here if omitted
            timeout: Seconds the attempt may take; an overrun keeps what was applied and fails

        Raises:
            DeductionValidationError: validation refused the request, nothing written
            DeductionTimeoutError: the deadline passed; applied ingredients are committed
            DeductionExecutionError: some deduction failed or the ledger is incomplete
        """
        started = self.clock()
        if timeout is None:
            timeout = settings.deduction_timeout_seconds
        deadline = started + timeout if timeout and timeout > 0 else None

        if validation is None:
            validation = self.validator.resolve_and_validate(request)
        if not validation.can_proceed:
            error_cls = (
                InsufficientStockError
                if validation.insufficient_items
                else DeductionValidationError
            )
            raise error_cls("; ".join(validation.errors), validation)

        result = DeductionResult(
            transaction_id=request.transaction_id,
            warnings=list(validation.warnings),
        )
        deductions = validation.deductions
        applied_keys = self._existing_keys(request.transaction_id)

        try:
            for ing in deductions:
                if deadline is not None and self.clock() > deadline:
                    self._timed_out(request, result, started, timeout, len(deductions))

                if ing.deduction_key in applied_keys:
                    result.deducted_items.append(self._already_applied(ing))
                    continue

                try:
                    with self.db.begin_nested():
                        deducted, error = self._apply(request, ing)
                except IntegrityError:
                    # Another attempt for this transaction wrote the same key first
                    logger.info(
                        f"Deduction {ing.deduction_key} of transaction "
                        f"{request.transaction_id} already applied concurrently"
                    )
                    result.deducted_items.append(self._already_applied(ing))
                    continue

                if error is not None:
                    result.errors.append(error)
                    continue
                result.deducted_items.append(deducted)
                result.movements_created += 1

            # The last ingredient may itself have run past the deadline
            if deductions and deadline is not None and self.clock() > deadline:
                self._timed_out(request, result, started, timeout, len(deductions))
            self.db.commit()
        except DeductionExecutionError:
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            result.errors.append(f"Database error: {e}")
            result.duration_ms = self._elapsed_ms(started)
            logger.error(
                f"Deduction for transaction {request.transaction_id} failed: {e}",
                exc_info=True,
            )
            raise DeductionExecutionError(result.errors[-1], result) from e

        ledger_rows = self._verify_ledger(request.transaction_id, result)
        result.duration_ms = self._elapsed_ms(started)

        if result.errors or (deductions and ledger_rows == 0):
            if not result.errors:
                result.errors.append(
                    f"No movement records written for transaction {request.transaction_id}"
                )
            logger.error(
                f"Deduction for transaction {request.transaction_id} incomplete: "
                f"{'; '.join(result.errors)}"
            )
            raise DeductionExecutionError("; ".join(result.errors), result)

        result.success = True
        logger.info(
            f"Deducted {result.movements_created} ingredients for transaction "
            f"{request.transaction_id} in {result.duration_ms}ms"
        )
        return result

    # ===== SINGLE INGREDIENT =====

    def _apply(self, request: DeductionRequest, ing: ResolvedIngredient):
        """Decrement one item and write its ledger row. Returns (DeductedItem, error)."""
        required = quantize_quantity(ing.required_quantity)
        note = f"Sale {request.transaction_id}: {ing.ingredient_name}"
        shortfall = Decimal("0")

        new_quantity = self.db.execute(
            update(InventoryItem)
            .where(InventoryItem.id == ing.inventory_item_id, InventoryItem.quantity >= required)
            .values(quantity=InventoryItem.quantity - required)
            .returning(InventoryItem.quantity)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        removed = required

        if new_quantity is None:
            available = self.db.execute(
                select(InventoryItem.quantity).where(InventoryItem.id == ing.inventory_item_id)
            ).scalar_one_or_none()
            if available is None:
                return None, f"Inventory item {ing.inventory_item_id} ('{ing.item_name}') not found"

            if self.shortfall_policy != SHORTFALL_CLAMP or available <= 0:
                return None, (
                    f"Insufficient stock for '{ing.item_name}': need {required} {ing.unit}, "
                    f"have {available} {ing.unit}"
                )

            # Clamp: take whatever is left, but only if nobody moved it meanwhile
            new_quantity = self.db.execute(
                update(InventoryItem)
                .where(InventoryItem.id == ing.inventory_item_id, InventoryItem.quantity == available)
                .values(quantity=Decimal("0"))
                .returning(InventoryItem.quantity)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()
            if new_quantity is None:
                return None, f"Stock for '{ing.item_name}' changed during deduction"
            removed = Decimal(available)
            shortfall = required - removed
            note += f" (short by {shortfall} {ing.unit}, floored at zero)"
            logger.warning(
                f"Clamped deduction of '{ing.item_name}' for transaction "
                f"{request.transaction_id}: short by {shortfall} {ing.unit}"
            )

        # Both operands are at storage precision, so this is the stored pre-update value
        new_quantity = quantize_quantity(new_quantity)
        previous_quantity = new_quantity + removed
        movement = MovementRecord(
            inventory_item_id=ing.inventory_item_id,
            store_id=request.store_id,
            reference_id=request.transaction_id,
            deduction_key=ing.deduction_key,
            movement_type=MovementType.SALE.value,
            delta_quantity=-removed,
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            note=note,
        )
        self.db.add(movement)
        self.db.flush()

        return DeductedItem(
            deduction_key=ing.deduction_key,
            inventory_item_id=ing.inventory_item_id,
            item_name=ing.item_name,
            quantity=removed,
            unit=ing.unit,
            previous_quantity=previous_quantity,
            new_quantity=new_quantity,
            shortfall=shortfall,
        ), None

    def _timed_out(
        self,
        request: DeductionRequest,
        result: DeductionResult,
        started: float,
        timeout: float,
        total: int,
    ):
        """Commit what was applied so far and raise DeductionTimeoutError."""
        self.db.commit()
        result.duration_ms = self._elapsed_ms(started)
        result.errors.append(
            f"Timed out after {timeout}s with "
            f"{len(result.deducted_items)}/{total} ingredients processed"
        )
        logger.error(
            f"Deduction for transaction {request.transaction_id} timed out "
            f"after {result.duration_ms}ms"
        )
        raise DeductionTimeoutError(result.errors[-1], result)

    @staticmethod
    def _already_applied(ing: ResolvedIngredient) -> DeductedItem:
        return DeductedItem(
            deduction_key=ing.deduction_key,
            inventory_item_id=ing.inventory_item_id,
            item_name=ing.item_name,
            quantity=ing.required_quantity,
            unit=ing.unit,
            already_applied=True,
        )

    # ===== LEDGER =====

    def _existing_keys(self, transaction_id: str) -> set:
        return set(self.db.execute(
            select(MovementRecord.deduction_key).where(
                MovementRecord.reference_id == transaction_id
            )
        ).scalars().all())

    def _verify_ledger(self, transaction_id: str, result: DeductionResult) -> int:
        """Check every applied deduction has a consistent movement row.

        Returns the number of ledger rows for the transaction.
        """
        rows: Dict[str, MovementRecord] = {
            row.deduction_key: row
            for row in self.db.execute(
                select(MovementRecord).where(MovementRecord.reference_id == transaction_id)
            ).scalars().all()
        }

        for item in result.deducted_items:
            row = rows.get(item.deduction_key)
            if row is None:
                result.errors.append(
                    f"Ledger row missing for {item.deduction_key} ('{item.item_name}')"
                )
                continue
            if row.delta_quantity >= 0 or row.previous_quantity + row.delta_quantity != row.new_quantity:
                result.errors.append(
                    f"Ledger row {row.id} for '{item.item_name}' is inconsistent: "
                    f"{row.previous_quantity} + {row.delta_quantity} != {row.new_quantity}"
                )
        return len(rows)

    def _elapsed_ms(self, started: float) -> int:
        return int((self.clock() - started) * 1000)
