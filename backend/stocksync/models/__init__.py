"""SQLAlchemy models."""

from stocksync.models.store import Store, Product
from stocksync.models.inventory import InventoryItem, MovementRecord, MovementType
from stocksync.models.recipe import (
    Recipe,
    RecipeIngredient,
    RecipeTemplate,
    RecipeTemplateIngredient,
)
from stocksync.models.sync import (
    RepairJob,
    RepairJobStatus,
    RepairJobType,
    SyncOutcome,
    SyncStatus,
)
from stocksync.models.audit import AuditLogEntry

__all__ = [
    "Store",
    "Product",
    "InventoryItem",
    "MovementRecord",
    "MovementType",
    "Recipe",
    "RecipeIngredient",
    "RecipeTemplate",
    "RecipeTemplateIngredient",
    "RepairJob",
    "RepairJobStatus",
    "RepairJobType",
    "SyncOutcome",
    "SyncStatus",
    "AuditLogEntry",
]
