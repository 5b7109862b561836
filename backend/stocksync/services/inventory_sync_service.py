"""
Inventory Sync Service
Entry point for deducting stock when a sale completes
"""
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from typing import Optional
import logging

from stocksync.core.errors import (
    DeductionExecutionError,
    DeductionValidationError,
    InsufficientStockError,
)
from stocksync.models.inventory import MovementRecord
from stocksync.models.sync import SyncOutcome, SyncStatus
from stocksync.schemas.deduction import DeductionRequest, DeductionResult, DeductionValidation
from stocksync.services.deduction_executor import DeductionExecutor
from stocksync.services.deduction_validator import DeductionValidator

logger = logging.getLogger(__name__)


class InventorySyncService:
    """
    Validates and deducts a sale, records the outcome, and hands
    failures to the repair queue so no sale is silently lost.
    """

    def __init__(self, db: Session):
        self.db = db
        self.validator = DeductionValidator(db)
        self.executor = DeductionExecutor(db, validator=self.validator)

    def validate(self, request: DeductionRequest) -> DeductionValidation:
        """Dry run: resolve and check the request without writing anything."""
        return self.validator.resolve_and_validate(request, record_audit=False)

    def process_sale(
        self,
        request: DeductionRequest,
        timeout: Optional[float] = None,
        attempt: int = 0,
        enqueue_on_failure: bool = True,
    ) -> DeductionResult:
        """
        Deduct stock for a completed sale.

        Args:
            request: The sale to deduct
            timeout: Deadline in seconds for the executor
            attempt: 0 for the first try, n for the n-th retry
            enqueue_on_failure: Create a repair job when execution fails.
                The repair orchestrator passes False since it owns the job.

        Raises:
            DeductionValidationError: the sale was refused before any write
            DeductionExecutionError: the sale was not fully applied; a repair
                job id is attached when one was created
        """
        validation = self.validator.resolve_and_validate(request)
        if not validation.can_proceed:
            # Persist audit entries for matches made while resolving
            self.db.commit()
            error_cls = (
                InsufficientStockError
                if validation.insufficient_items
                else DeductionValidationError
            )
            raise error_cls("; ".join(validation.errors), validation)

        try:
            result = self.executor.execute(request, validation, timeout)
        except DeductionExecutionError as e:
            self.db.rollback()
            result = e.result or DeductionResult(
                transaction_id=request.transaction_id, errors=[str(e)]
            )
            status = (
                SyncStatus.PARTIAL
                if self._ledger_count(request.transaction_id) > 0
                else SyncStatus.CRITICAL_FAILURE
            )
            self._record_outcome(request, status, result, attempt)

            if enqueue_on_failure:
                from stocksync.services.repair_orchestrator import RepairOrchestrator

                job = RepairOrchestrator(self.db).enqueue_transaction(request, str(e))
                e.repair_job_id = job.id
            self.db.commit()
            logger.error(
                f"Sale {request.transaction_id} in store {request.store_id} "
                f"ended {status.value}: {e}"
                + (f" (repair job {e.repair_job_id})" if e.repair_job_id else "")
            )
            raise

        self._record_outcome(request, SyncStatus.SUCCESS, result, attempt)
        self.db.commit()
        return result

    def _record_outcome(
        self,
        request: DeductionRequest,
        status: SyncStatus,
        result: DeductionResult,
        attempt: int,
    ) -> SyncOutcome:
        outcome = SyncOutcome(
            transaction_id=request.transaction_id,
            store_id=request.store_id,
            status=status.value,
            items_processed=len(result.deducted_items),
            error_details="; ".join(result.errors) or None,
            duration_ms=result.duration_ms,
            attempt=attempt,
        )
        self.db.add(outcome)
        self.db.flush()
        return outcome

    def _ledger_count(self, transaction_id: str) -> int:
        return self.db.execute(
            select(func.count(MovementRecord.id)).where(
                MovementRecord.reference_id == transaction_id
            )
        ).scalar_one()
