"""Sync health routes - per-store deduction health and remediation."""

import logging
from typing import List

from fastapi import APIRouter, HTTPException, Request

from stocksync.core.rate_limit import limiter
from stocksync.db.session import DbSession
from stocksync.models.store import Store
from stocksync.schemas.health import HealthCheckResult, SyncHealthStatus
from stocksync.services.sync_health_monitor import SyncHealthMonitor

logger = logging.getLogger(__name__)

router = APIRouter()


def _require_store(db, store_id: int) -> Store:
    store = db.get(Store, store_id)
    if store is None:
        raise HTTPException(status_code=404, detail="Store not found")
    return store


@router.get("/stores", response_model=List[SyncHealthStatus])
@limiter.limit("30/minute")
def list_store_health(request: Request, db: DbSession):
    """Health of every active store."""
    return SyncHealthMonitor(db).compute_all()


@router.get("/stores/{store_id}", response_model=SyncHealthStatus)
@limiter.limit("60/minute")
def get_store_health(request: Request, db: DbSession, store_id: int):
    _require_store(db, store_id)
    return SyncHealthMonitor(db).compute(store_id)


@router.post("/stores/{store_id}/check", response_model=HealthCheckResult)
@limiter.limit("10/minute")
def check_store_health(request: Request, db: DbSession, store_id: int):
    """Compute health and run a bulk repair if the store is critical."""
    _require_store(db, store_id)
    return SyncHealthMonitor(db).check_and_remediate(store_id)
