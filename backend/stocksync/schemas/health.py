"""Sync health schemas."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class HealthLevel(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class SyncHealthStatus(BaseModel):
    """Derived per-store health view. Never persisted."""

    store_id: int
    status: HealthLevel = HealthLevel.HEALTHY
    total_products: int = 0
    valid_products: int = 0
    invalid_products: int = 0
    mapping_completion_rate: float = 100.0
    products_without_recipe: int = 0
    missing_mappings: int = 0
    low_stock_count: int = 0
    out_of_stock_count: int = 0
    recent_failure_count: int = 0
    last_successful_sync_at: Optional[datetime] = None
    pending_repairs: int = 0
    failed_repairs: int = 0
    ledger_gaps: int = 0
    recommendations: list[str] = Field(default_factory=list)
    checked_at: datetime


class HealthCheckResult(BaseModel):
    health: SyncHealthStatus
    remediation_triggered: bool = False
    jobs_enqueued: int = 0
    mappings_fixed: int = 0
