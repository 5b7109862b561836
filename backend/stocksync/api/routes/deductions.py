"""Deduction routes - validate and apply stock deductions for completed sales."""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from sqlalchemy import select

from stocksync.core.errors import (
    DeductionExecutionError,
    DeductionValidationError,
    InsufficientStockError,
)
from stocksync.core.rate_limit import limiter, terminal_limiter
from stocksync.db.session import DbSession
from stocksync.models.inventory import MovementRecord
from stocksync.models.sync import SyncOutcome, SyncStatus
from stocksync.schemas.deduction import (
    DeductionRequest,
    DeductionResult,
    DeductionValidation,
    MovementRecordResponse,
    SyncOutcomeResponse,
)
from stocksync.services.inventory_sync_service import InventorySyncService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/validate", response_model=DeductionValidation)
@limiter.limit("120/minute")
def validate_deduction(request: Request, db: DbSession, body: DeductionRequest):
    """Preview a deduction: resolve every line and check stock. Writes nothing."""
    return InventorySyncService(db).validate(body)


@router.post("", response_model=DeductionResult)
@terminal_limiter.limit("120/minute")
def apply_deduction(request: Request, db: DbSession, body: DeductionRequest):
    """Deduct stock for a completed sale."""
    try:
        return InventorySyncService(db).process_sale(body)
    except InsufficientStockError as e:
        raise HTTPException(
            status_code=409,
            detail={
                "message": str(e),
                "validation": e.validation.model_dump(mode="json") if e.validation else None,
            },
        )
    except DeductionValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={
                "message": str(e),
                "validation": e.validation.model_dump(mode="json") if e.validation else None,
            },
        )
    except DeductionExecutionError as e:
        raise HTTPException(
            status_code=500,
            detail={
                "message": str(e),
                "repair_job_id": e.repair_job_id,
                "result": e.result.model_dump(mode="json") if e.result else None,
            },
        )


@router.get("/outcomes", response_model=List[SyncOutcomeResponse])
@limiter.limit("60/minute")
def list_outcomes(
    request: Request,
    db: DbSession,
    store_id: Optional[int] = None,
    status: Optional[SyncStatus] = None,
    limit: int = Query(100, le=500),
):
    """List recent deduction outcomes, newest first."""
    query = select(SyncOutcome).order_by(SyncOutcome.id.desc()).limit(limit)
    if store_id is not None:
        query = query.where(SyncOutcome.store_id == store_id)
    if status is not None:
        query = query.where(SyncOutcome.status == status.value)
    return db.execute(query).scalars().all()


@router.get("/{transaction_id}/movements", response_model=List[MovementRecordResponse])
@limiter.limit("60/minute")
def get_transaction_movements(request: Request, db: DbSession, transaction_id: str):
    """Ledger rows written for a transaction."""
    movements = db.execute(
        select(MovementRecord)
        .where(MovementRecord.reference_id == transaction_id)
        .order_by(MovementRecord.id)
    ).scalars().all()
    if not movements:
        seen = db.execute(
            select(SyncOutcome.id).where(SyncOutcome.transaction_id == transaction_id).limit(1)
        ).scalar_one_or_none()
        if seen is None:
            raise HTTPException(status_code=404, detail="Transaction not found")
    return movements
