"""Sync outcome and repair job models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from stocksync.db.base import Base, TimestampMixin, utcnow
from stocksync.models.validators import validate_dict


class SyncStatus(str, Enum):
    """Result of one deduction attempt."""

    SUCCESS = "success"
    PARTIAL = "partial"  # some ledger rows written before the failure
    CRITICAL_FAILURE = "critical_failure"


class RepairJobStatus(str, Enum):
    """Repair job lifecycle: pending -> processing -> success | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class RepairJobType(str, Enum):
    TRANSACTION = "transaction"
    PRODUCT = "product"


class SyncOutcome(Base):
    """One row per attempted deduction, first try or retry."""

    __tablename__ = "sync_outcomes"

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    items_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )


class RepairJob(Base, TimestampMixin):
    """Persisted retry state for a failed transaction or a broken product."""

    __tablename__ = "repair_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    job_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(100), nullable=True, index=True
    )
    product_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=RepairJobStatus.PENDING.value, nullable=False, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_attempt_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @validates("payload")
    def validate_payload(self, key, value):
        return validate_dict(key, value)
