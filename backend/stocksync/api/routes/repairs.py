"""Repair routes - inspect and drive the repair job queue."""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request

from stocksync.core.errors import RepairExhaustedError
from stocksync.core.rate_limit import limiter
from stocksync.db.session import DbSession
from stocksync.models.store import Store
from stocksync.models.sync import RepairJobStatus
from stocksync.schemas.repair import (
    RepairJobResponse,
    RepairRetryRequest,
    RepairRunResult,
    StoreRepairResult,
)
from stocksync.services.repair_orchestrator import RepairOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=List[RepairJobResponse])
@limiter.limit("60/minute")
def list_repair_jobs(
    request: Request,
    db: DbSession,
    status: Optional[RepairJobStatus] = None,
    store_id: Optional[int] = None,
    limit: int = Query(100, le=500),
):
    """List repair jobs, newest first."""
    return RepairOrchestrator(db).list_jobs(
        status=status.value if status else None, store_id=store_id, limit=limit
    )


@router.post("/run", response_model=RepairRunResult)
@limiter.limit("10/minute")
def run_repair_queue(request: Request, db: DbSession, limit: Optional[int] = Query(None, ge=1, le=100)):
    """Process due repair jobs now instead of waiting for the scheduler."""
    return RepairOrchestrator(db).run_pending(limit=limit)


@router.post("/stores/{store_id}", response_model=StoreRepairResult)
@limiter.limit("5/minute")
def repair_store(request: Request, db: DbSession, store_id: int):
    """Bulk repair for one store."""
    if db.get(Store, store_id) is None:
        raise HTTPException(status_code=404, detail="Store not found")
    return RepairOrchestrator(db).repair_store(store_id)


@router.post("/{job_id}/retry", response_model=RepairJobResponse)
@limiter.limit("30/minute")
def retry_repair_job(
    request: Request,
    db: DbSession,
    job_id: int,
    body: Optional[RepairRetryRequest] = None,
):
    """Run a job immediately. Failed jobs need reset_attempts to run again."""
    reset = body.reset_attempts if body else False
    try:
        job = RepairOrchestrator(db).retry_job(job_id, reset_attempts=reset)
    except RepairExhaustedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if job is None:
        raise HTTPException(status_code=404, detail="Repair job not found")
    return job
