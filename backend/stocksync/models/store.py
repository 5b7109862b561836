"""Store and catalog product models.

Both tables belong to the catalog editors; the engine only reads them to
know which products a store sells and which stores are active.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stocksync.db.base import Base, TimestampMixin


class Store(Base, TimestampMixin):
    """A physical store with its own stock."""

    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True, unique=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    products: Mapped[list["Product"]] = relationship("Product", back_populates="store")
    inventory_items: Mapped[list["InventoryItem"]] = relationship(
        "InventoryItem", back_populates="store"
    )


class Product(Base, TimestampMixin):
    """A sellable catalog product, scoped to one store."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    store: Mapped["Store"] = relationship("Store", back_populates="products")


# Forward references
from stocksync.models.inventory import InventoryItem  # noqa: E402
