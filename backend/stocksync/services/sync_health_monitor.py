"""Sync Health Monitor: per-store view of how well stock tracks sales.

Classification:
    critical  recent failures above the limit, or any ledger gap
    warning   too many missing mappings, anything out of stock, or failed repairs
    healthy   otherwise

Only ``check_and_remediate`` acts on the result, and only when critical.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from stocksync.core.config import settings
from stocksync.db.base import utcnow
from stocksync.models.inventory import InventoryItem, MovementRecord
from stocksync.models.recipe import Recipe
from stocksync.models.store import Product, Store
from stocksync.models.sync import RepairJob, RepairJobStatus, SyncOutcome, SyncStatus
from stocksync.schemas.health import HealthCheckResult, HealthLevel, SyncHealthStatus
from stocksync.services.repair_orchestrator import RepairOrchestrator

logger = logging.getLogger(__name__)

FAILURE_STATUSES = (SyncStatus.PARTIAL.value, SyncStatus.CRITICAL_FAILURE.value)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SyncHealthMonitor:
    """Computes store health and triggers bulk repair for critical stores."""

    def __init__(self, db: Session, orchestrator: Optional[RepairOrchestrator] = None):
        self.db = db
        self.orchestrator = orchestrator or RepairOrchestrator(db)
        self.missing_mapping_warning = settings.health_missing_mapping_warning
        self.failed_deductions_critical = settings.health_failed_deductions_critical

    def compute(self, store_id: int, now: Optional[datetime] = None) -> SyncHealthStatus:
        now = now or utcnow()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

        health = SyncHealthStatus(store_id=store_id, checked_at=now)
        self._score_recipes(health, store_id)
        self._score_stock(health, store_id)
        self._score_sync(health, store_id, day_start)
        self._classify(health)
        return health

    def compute_all(self, now: Optional[datetime] = None) -> List[SyncHealthStatus]:
        now = now or utcnow()
        store_ids = self.db.execute(
            select(Store.id).where(Store.active.is_(True)).order_by(Store.id)
        ).scalars().all()
        return [self.compute(store_id, now) for store_id in store_ids]

    def check_and_remediate(self, store_id: int, now: Optional[datetime] = None) -> HealthCheckResult:
        """Compute health and run a bulk repair when the store is critical."""
        health = self.compute(store_id, now)
        result = HealthCheckResult(health=health)
        if health.status != HealthLevel.CRITICAL:
            return result

        logger.warning(
            f"Store {store_id} sync health critical "
            f"({health.recent_failure_count} failures today, {health.ledger_gaps} ledger gaps); "
            f"starting repair"
        )
        repair = self.orchestrator.repair_store(store_id)
        result.remediation_triggered = True
        result.jobs_enqueued = repair.jobs_enqueued
        result.mappings_fixed = repair.mappings_fixed + repair.unmapped_repointed
        result.health = self.compute(store_id, now)
        return result

    def check_all_and_remediate(self) -> List[HealthCheckResult]:
        results = []
        for health in self.compute_all():
            if health.status == HealthLevel.CRITICAL:
                results.append(self.check_and_remediate(health.store_id, health.checked_at))
            else:
                results.append(HealthCheckResult(health=health))
        return results

    # ===== METRICS =====

    def _score_recipes(self, health: SyncHealthStatus, store_id: int) -> None:
        products = self.db.execute(
            select(Product).where(Product.store_id == store_id, Product.active.is_(True))
        ).scalars().all()
        recipes = self.db.execute(
            select(Recipe)
            .where(Recipe.store_id == store_id, Recipe.active.is_(True))
            .options(selectinload(Recipe.ingredients))
            .order_by(Recipe.id)
        ).scalars().all()
        items = {
            item.id: item
            for item in self.db.execute(
                select(InventoryItem).where(
                    InventoryItem.id.in_([
                        ing.inventory_item_id
                        for recipe in recipes
                        for ing in recipe.ingredients
                        if ing.inventory_item_id is not None
                    ])
                )
            ).scalars().all()
        }

        recipe_by_product = {}
        for recipe in recipes:
            recipe_by_product.setdefault(recipe.product_id, recipe)

        for product in products:
            recipe = recipe_by_product.get(product.id)
            if recipe is None:
                health.products_without_recipe += 1
                continue

            health.total_products += 1
            valid = bool(recipe.ingredients)
            for ing in recipe.ingredients:
                item = items.get(ing.inventory_item_id)
                if item is None or item.store_id != store_id:
                    health.missing_mappings += 1
                    valid = False
                elif not item.active:
                    valid = False
            if valid:
                health.valid_products += 1
            else:
                health.invalid_products += 1

        if health.total_products:
            health.mapping_completion_rate = round(
                health.valid_products / health.total_products * 100, 1
            )

    def _score_stock(self, health: SyncHealthStatus, store_id: int) -> None:
        active_items = (
            InventoryItem.store_id == store_id,
            InventoryItem.active.is_(True),
        )
        health.low_stock_count = self.db.execute(
            select(func.count(InventoryItem.id)).where(
                *active_items, InventoryItem.quantity <= InventoryItem.minimum_threshold
            )
        ).scalar_one()
        health.out_of_stock_count = self.db.execute(
            select(func.count(InventoryItem.id)).where(*active_items, InventoryItem.quantity <= 0)
        ).scalar_one()

    def _score_sync(self, health: SyncHealthStatus, store_id: int, day_start: datetime) -> None:
        health.recent_failure_count = self.db.execute(
            select(func.count(SyncOutcome.id)).where(
                SyncOutcome.store_id == store_id,
                SyncOutcome.status.in_(FAILURE_STATUSES),
                SyncOutcome.created_at >= day_start,
            )
        ).scalar_one()

        health.last_successful_sync_at = _as_utc(self.db.execute(
            select(func.max(SyncOutcome.created_at)).where(
                SyncOutcome.store_id == store_id,
                SyncOutcome.status == SyncStatus.SUCCESS.value,
            )
        ).scalar_one())

        # A success that processed items but left nothing in the ledger
        health.ledger_gaps = self.db.execute(
            select(func.count(SyncOutcome.id)).where(
                SyncOutcome.store_id == store_id,
                SyncOutcome.status == SyncStatus.SUCCESS.value,
                SyncOutcome.items_processed > 0,
                SyncOutcome.created_at >= day_start,
                ~select(MovementRecord.id)
                .where(MovementRecord.reference_id == SyncOutcome.transaction_id)
                .exists(),
            )
        ).scalar_one()

        job_counts = dict(self.db.execute(
            select(RepairJob.status, func.count(RepairJob.id))
            .where(RepairJob.store_id == store_id)
            .group_by(RepairJob.status)
        ).all())
        health.pending_repairs = (
            job_counts.get(RepairJobStatus.PENDING.value, 0)
            + job_counts.get(RepairJobStatus.PROCESSING.value, 0)
        )
        health.failed_repairs = job_counts.get(RepairJobStatus.FAILED.value, 0)

    def _classify(self, health: SyncHealthStatus) -> None:
        recommendations = []
        critical = False
        warning = False

        if health.recent_failure_count > self.failed_deductions_critical:
            critical = True
            recommendations.append(
                f"{health.recent_failure_count} deductions failed today; run a store repair"
            )
        if health.ledger_gaps:
            critical = True
            recommendations.append(
                f"{health.ledger_gaps} successful sales have no movement records; audit the ledger"
            )
        if health.missing_mappings > self.missing_mapping_warning:
            warning = True
            recommendations.append(
                f"{health.missing_mappings} recipe ingredients lack a valid inventory mapping"
            )
        if health.out_of_stock_count:
            warning = True
            recommendations.append(f"Restock {health.out_of_stock_count} out-of-stock items")
        if health.failed_repairs:
            warning = True
            recommendations.append(
                f"{health.failed_repairs} repair jobs need manual attention"
            )
        if health.products_without_recipe:
            recommendations.append(
                f"{health.products_without_recipe} active products have no recipe"
            )
        if health.low_stock_count and not health.out_of_stock_count:
            recommendations.append(f"{health.low_stock_count} items are at or below minimum")

        if critical:
            health.status = HealthLevel.CRITICAL
        elif warning:
            health.status = HealthLevel.WARNING
        else:
            health.status = HealthLevel.HEALTHY
        health.recommendations = recommendations
