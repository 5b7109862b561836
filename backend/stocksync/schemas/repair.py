"""Repair job schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class RepairJobResponse(BaseModel):
    """Repair job response schema."""

    id: int
    job_type: str
    store_id: int
    transaction_id: Optional[str] = None
    product_id: Optional[int] = None
    status: str
    attempts: int
    max_attempts: int
    last_error: Optional[str] = None
    next_attempt_at: datetime
    resolved_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    payload: Optional[dict[str, Any]] = None

    model_config = {"from_attributes": True}


class RepairRetryRequest(BaseModel):
    reset_attempts: bool = False


class RepairRunResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    failed: int = 0
    job_ids: list[int] = Field(default_factory=list)


class StoreRepairResult(BaseModel):
    store_id: int
    mappings_fixed: int = 0
    mappings_failed: int = 0
    unmapped_repointed: int = 0
    jobs_enqueued: int = 0
    jobs_run: RepairRunResult = Field(default_factory=RepairRunResult)
