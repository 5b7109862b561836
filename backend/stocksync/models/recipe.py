"""Recipe (Bill of Materials) models.

A ``RecipeTemplate`` is the chain-wide definition of a product; a ``Recipe``
is its per-store deployment. Recipe ingredients point at store inventory
through ``inventory_item_id``, a weak reference: a plain integer with no
foreign key, so "unmapped", "dangling" and "points at another store" are all
states the engine can observe and repair instead of constraint errors.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from stocksync.db.base import Base, TimestampMixin
from stocksync.models.validators import positive


class RecipeTemplate(Base, TimestampMixin):
    """Chain-wide recipe definition used to deploy store recipes."""

    __tablename__ = "recipe_templates"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    needs_manual_ingredients: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    # Relationships
    ingredients: Mapped[list["RecipeTemplateIngredient"]] = relationship(
        "RecipeTemplateIngredient",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="RecipeTemplateIngredient.id",
    )


class RecipeTemplateIngredient(Base):
    """A single ingredient line of a recipe template."""

    __tablename__ = "recipe_template_ingredients"

    id: Mapped[int] = mapped_column(primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("recipe_templates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ingredient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="pieces", nullable=False)

    # Relationships
    template: Mapped["RecipeTemplate"] = relationship(
        "RecipeTemplate", back_populates="ingredients"
    )

    @validates("quantity")
    def validate_quantity(self, key, value):
        return positive(key, value)


class Recipe(Base, TimestampMixin):
    """A store's recipe mapping one sold product to its raw materials."""

    __tablename__ = "recipes"

    id: Mapped[int] = mapped_column(primary_key=True)
    store_id: Mapped[int] = mapped_column(
        ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recipe_templates.id", ondelete="SET NULL"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    needs_manual_ingredients: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    # Relationships
    ingredients: Mapped[list["RecipeIngredient"]] = relationship(
        "RecipeIngredient",
        back_populates="recipe",
        cascade="all, delete-orphan",
        order_by="RecipeIngredient.id",
    )
    template: Mapped[Optional["RecipeTemplate"]] = relationship("RecipeTemplate")
    product: Mapped["Product"] = relationship("Product")


class RecipeIngredient(Base):
    """One raw material a product consumes per unit sold."""

    __tablename__ = "recipe_ingredients"

    id: Mapped[int] = mapped_column(primary_key=True)
    recipe_id: Mapped[int] = mapped_column(
        ForeignKey("recipes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ingredient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    required_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 4), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="pieces", nullable=False)
    inventory_item_id: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, index=True
    )  # weak reference to inventory_items.id

    # Relationships
    recipe: Mapped["Recipe"] = relationship("Recipe", back_populates="ingredients")

    @validates("required_quantity")
    def validate_required_quantity(self, key, value):
        return positive(key, value)


# Forward references
from stocksync.models.store import Product  # noqa: E402
