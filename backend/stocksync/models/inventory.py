"""Inventory models: InventoryItem and the MovementRecord ledger."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from stocksync.core.errors import LedgerImmutabilityError
from stocksync.db.base import Base, TimestampMixin, utcnow
from stocksync.models.validators import non_negative


class MovementType(str, Enum):
    """Reasons for stock movements."""

    SALE = "sale"  # From POS sale


class InventoryItem(Base, TimestampMixin):
    """Current stock level of one raw material in one store."""

    __tablename__ = "inventory_items"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_items_quantity_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String(20), default="pieces", nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=0, nullable=False)
    minimum_threshold: Mapped[Decimal] = mapped_column(
        Numeric(12, 4), default=0, nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    store: Mapped["Store"] = relationship("Store", back_populates="inventory_items")
    movements: Mapped[list["MovementRecord"]] = relationship(
        "MovementRecord", back_populates="inventory_item"
    )

    @validates("quantity", "minimum_threshold")
    def validate_quantity(self, key, value):
        return non_negative(key, value)


class MovementRecord(Base):
    """Append-only ledger of stock changes, keyed to the triggering sale.

    ``deduction_key`` identifies which recipe line of which sale line produced
    the row; together with ``reference_id`` it is unique, so replaying a sale
    can never deduct the same ingredient twice.
    """

    __tablename__ = "inventory_movements"
    __table_args__ = (
        UniqueConstraint("reference_id", "deduction_key", name="uq_movement_reference_key"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    inventory_item_id: Mapped[int] = mapped_column(
        ForeignKey("inventory_items.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reference_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    deduction_key: Mapped[str] = mapped_column(String(100), nullable=False)
    movement_type: Mapped[str] = mapped_column(
        String(30), default=MovementType.SALE.value, nullable=False
    )
    delta_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    previous_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    new_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    # Relationships
    inventory_item: Mapped["InventoryItem"] = relationship(
        "InventoryItem", back_populates="movements"
    )


@event.listens_for(MovementRecord, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"Movement record {target.id} is append-only and cannot be updated"
    )


@event.listens_for(MovementRecord, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"Movement record {target.id} is append-only and cannot be deleted"
    )


# Forward references
from stocksync.models.store import Store  # noqa: E402
