"""Repair/Retry Orchestrator.

Failed deductions and broken products become persisted ``RepairJob`` rows:

    pending -> processing -> success
                          -> pending   (attempt failed, backoff scheduled)
                          -> failed    (attempts exhausted, or manual entry needed)

A job is claimed with a conditional UPDATE on its status, so two workers can
never run the same job. Retries re-run the normal validate/execute path; the
executor's deduction keys make a retry apply only what is still missing.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from stocksync.core.config import settings
from stocksync.core.errors import InventorySyncError, RepairExhaustedError
from stocksync.db.base import utcnow
from stocksync.models.inventory import InventoryItem
from stocksync.models.recipe import (
    Recipe,
    RecipeIngredient,
    RecipeTemplate,
)
from stocksync.models.store import Product
from stocksync.models.sync import RepairJob, RepairJobStatus, RepairJobType
from stocksync.schemas.deduction import DeductionRequest
from stocksync.schemas.repair import RepairRunResult, StoreRepairResult
from stocksync.services import audit_service
from stocksync.services.deduction_validator import DeductionValidator
from stocksync.services.ingredient_matcher import IngredientMatcher
from stocksync.services.mapping_validator import MappingValidator

logger = logging.getLogger(__name__)

OPEN_STATUSES = (RepairJobStatus.PENDING.value, RepairJobStatus.PROCESSING.value)
MANUAL_ENTRY_ERROR = "Recipe requires manual ingredient entry"


class RepairConfig:
    """Retry bounds for repair jobs."""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        stale_after_seconds: Optional[int] = None,
    ):
        self.max_attempts = max_attempts or settings.repair_max_attempts
        self.backoff_base_seconds = backoff_base_seconds or settings.repair_backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds or settings.repair_backoff_max_seconds
        self.batch_size = batch_size or settings.repair_batch_size
        self.stale_after_seconds = stale_after_seconds or settings.repair_stale_after_seconds

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next try: base * 2^(attempts-1), capped."""
        exponent = max(attempts - 1, 0)
        seconds = min(self.backoff_base_seconds * (2 ** exponent), self.backoff_max_seconds)
        return timedelta(seconds=seconds)


class ProductRepairOutcome:
    def __init__(self, recipe: Recipe, created: bool, needs_manual_entry: bool):
        self.recipe = recipe
        self.created = created
        self.needs_manual_entry = needs_manual_entry


class RepairOrchestrator:
    """Owns the repair job queue and the remediation steps."""

    def __init__(
        self,
        db: Session,
        config: Optional[RepairConfig] = None,
        matcher: Optional[IngredientMatcher] = None,
    ):
        self.db = db
        self.config = config or RepairConfig()
        self.matcher = matcher or IngredientMatcher()

    # ===== ENQUEUE =====

    def enqueue_transaction(self, request: DeductionRequest, error: str) -> RepairJob:
        """Queue a failed sale for retry. An open job for the sale is reused."""
        job = self._open_job(
            RepairJob.job_type == RepairJobType.TRANSACTION.value,
            RepairJob.transaction_id == request.transaction_id,
        )
        if job is not None:
            job.last_error = error
            self.db.flush()
            logger.info(f"Repair job {job.id} already open for transaction {request.transaction_id}")
            return job

        job = RepairJob(
            job_type=RepairJobType.TRANSACTION.value,
            store_id=request.store_id,
            transaction_id=request.transaction_id,
            payload=request.model_dump(mode="json"),
            status=RepairJobStatus.PENDING.value,
            attempts=0,
            max_attempts=self.config.max_attempts,
            last_error=error,
            next_attempt_at=utcnow() + self.config.backoff(0),
        )
        self.db.add(job)
        self.db.flush()
        logger.info(f"Enqueued repair job {job.id} for transaction {request.transaction_id}")
        return job

    def enqueue_product(self, store_id: int, product_id: int, reason: str) -> RepairJob:
        """Queue a product whose recipe is missing or broken."""
        job = self._open_job(
            RepairJob.job_type == RepairJobType.PRODUCT.value,
            RepairJob.store_id == store_id,
            RepairJob.product_id == product_id,
        )
        if job is not None:
            return job

        job = RepairJob(
            job_type=RepairJobType.PRODUCT.value,
            store_id=store_id,
            product_id=product_id,
            status=RepairJobStatus.PENDING.value,
            attempts=0,
            max_attempts=self.config.max_attempts,
            last_error=reason,
            next_attempt_at=utcnow(),
        )
        self.db.add(job)
        self.db.flush()
        logger.info(f"Enqueued repair job {job.id} for product {product_id} in store {store_id}")
        return job

    def _open_job(self, *criteria) -> Optional[RepairJob]:
        return self.db.execute(
            select(RepairJob)
            .where(RepairJob.status.in_(OPEN_STATUSES), *criteria)
            .order_by(RepairJob.id)
            .limit(1)
        ).scalar_one_or_none()

    # ===== PROCESSING =====

    def run_pending(
        self,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
        store_id: Optional[int] = None,
    ) -> RepairRunResult:
        """Process due pending jobs, oldest due first."""
        now = now or utcnow()
        query = (
            select(RepairJob.id)
            .where(
                RepairJob.status == RepairJobStatus.PENDING.value,
                RepairJob.next_attempt_at <= now,
            )
            .order_by(RepairJob.next_attempt_at, RepairJob.id)
            .limit(limit or self.config.batch_size)
        )
        if store_id is not None:
            query = query.where(RepairJob.store_id == store_id)
        job_ids = self.db.execute(query).scalars().all()

        result = RepairRunResult()
        for job_id in job_ids:
            status = self.process_job(job_id)
            if status is None:
                continue
            result.processed += 1
            result.job_ids.append(job_id)
            if status == RepairJobStatus.SUCCESS.value:
                result.succeeded += 1
            elif status == RepairJobStatus.FAILED.value:
                result.failed += 1
            else:
                result.rescheduled += 1

        if result.processed:
            logger.info(
                f"Repair run: {result.processed} processed, {result.succeeded} succeeded, "
                f"{result.rescheduled} rescheduled, {result.failed} failed"
            )
        return result

    def process_job(self, job_id: int) -> Optional[str]:
        """Claim and run one job. Returns its new status, or None if not claimed."""
        if not self._claim(job_id):
            return None

        job = self._reload(job_id)
        logger.info(f"Repair job {job.id} ({job.job_type}) attempt {job.attempts}/{job.max_attempts}")

        try:
            if job.job_type == RepairJobType.TRANSACTION.value:
                self._run_transaction_job(job)
            else:
                outcome = self._run_product_job(job)
                if outcome.needs_manual_entry:
                    return self._finish(job_id, RepairJobStatus.FAILED, MANUAL_ENTRY_ERROR)
        except (InventorySyncError, SQLAlchemyError, ValueError) as e:
            self.db.rollback()
            job = self._reload(job_id)
            if job.attempts >= job.max_attempts:
                return self._finish(job_id, RepairJobStatus.FAILED, str(e))
            return self._reschedule(job_id, str(e))

        return self._finish(job_id, RepairJobStatus.SUCCESS, None)

    def _claim(self, job_id: int) -> bool:
        claimed = self.db.execute(
            update(RepairJob)
            .where(RepairJob.id == job_id, RepairJob.status == RepairJobStatus.PENDING.value)
            .values(
                status=RepairJobStatus.PROCESSING.value,
                attempts=RepairJob.attempts + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        return claimed == 1

    def _reload(self, job_id: int) -> RepairJob:
        return self.db.execute(
            select(RepairJob)
            .where(RepairJob.id == job_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _finish(self, job_id: int, status: RepairJobStatus, error: Optional[str]) -> str:
        job = self._reload(job_id)
        job.status = status.value
        job.last_error = error
        job.resolved_at = utcnow()
        self.db.commit()
        if status == RepairJobStatus.FAILED:
            logger.error(
                f"Repair job {job.id} failed after {job.attempts} attempts: {error}"
            )
        else:
            logger.info(f"Repair job {job.id} succeeded on attempt {job.attempts}")
        return job.status

    def _reschedule(self, job_id: int, error: str) -> str:
        job = self._reload(job_id)
        delay = self.config.backoff(job.attempts)
        job.status = RepairJobStatus.PENDING.value
        job.last_error = error
        job.next_attempt_at = utcnow() + delay
        self.db.commit()
        logger.warning(
            f"Repair job {job.id} attempt {job.attempts} failed: {error}; "
            f"retrying in {delay.total_seconds():.0f}s"
        )
        return job.status

    def _run_transaction_job(self, job: RepairJob) -> None:
        from stocksync.services.inventory_sync_service import InventorySyncService

        request = DeductionRequest.model_validate(job.payload)
        attempt = job.attempts
        product_ids = {line.product_id for line in request.line_items}

        # Only lines with neither a recipe nor a stocked item of their own get a recipe;
        # products sold straight from inventory stay that way
        preview = DeductionValidator(self.db).resolve_and_validate(request, record_audit=False)
        unresolved_ids = {
            line.product_id for line in preview.line_items if line.source == "unresolved"
        }
        catalog_ids = self.db.execute(
            select(Product.id).where(
                Product.id.in_(list(unresolved_ids)), Product.store_id == request.store_id
            )
        ).scalars().all()
        for product_id in sorted(catalog_ids):
            self.ensure_recipe(request.store_id, product_id)
        self.repair_mappings(request.store_id, product_ids)
        self.db.commit()

        InventorySyncService(self.db).process_sale(
            request, attempt=attempt, enqueue_on_failure=False
        )

    def _run_product_job(self, job: RepairJob) -> ProductRepairOutcome:
        outcome = self.ensure_recipe(job.store_id, job.product_id)
        self.repair_mappings(job.store_id, {job.product_id})
        self.db.commit()
        return outcome

    # ===== MANUAL CONTROL =====

    def retry_job(self, job_id: int, reset_attempts: bool = False) -> Optional[RepairJob]:
        """Run a job now, regardless of its backoff schedule.

        Raises:
            RepairExhaustedError: the job has failed and reset_attempts is False
        """
        job = self.db.get(RepairJob, job_id)
        if job is None:
            return None
        if job.status in (RepairJobStatus.SUCCESS.value, RepairJobStatus.PROCESSING.value):
            return job
        if job.status == RepairJobStatus.FAILED.value and not reset_attempts:
            raise RepairExhaustedError(job.id, job.attempts)

        if reset_attempts:
            job.attempts = 0
        job.status = RepairJobStatus.PENDING.value
        job.next_attempt_at = utcnow()
        job.resolved_at = None
        self.db.commit()
        logger.info(f"Manual retry of repair job {job_id} (reset_attempts={reset_attempts})")

        self.process_job(job_id)
        return self._reload(job_id)

    def recover_stale_jobs(self, now: Optional[datetime] = None) -> int:
        """Return jobs stuck in processing (a crashed worker) to pending."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.config.stale_after_seconds)
        recovered = self.db.execute(
            update(RepairJob)
            .where(
                RepairJob.status == RepairJobStatus.PROCESSING.value,
                RepairJob.updated_at < cutoff,
            )
            .values(status=RepairJobStatus.PENDING.value, next_attempt_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()
        if recovered:
            logger.warning(f"Recovered {recovered} stale repair jobs")
        return recovered

    def list_jobs(
        self,
        status: Optional[str] = None,
        store_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[RepairJob]:
        query = select(RepairJob).order_by(RepairJob.id.desc()).limit(limit)
        if status:
            query = query.where(RepairJob.status == status)
        if store_id is not None:
            query = query.where(RepairJob.store_id == store_id)
        return list(self.db.execute(query).scalars().all())

    # ===== REMEDIATION =====

    def ensure_recipe(self, store_id: int, product_id: int) -> ProductRepairOutcome:
        """Make sure the product has an active recipe, instantiating one if needed.

        Template chosen by fuzzy product name; its ingredients are mapped to the
        store's inventory with the bulk threshold. With no template, a bare
        template and recipe shell are created and flagged for manual entry.
        """
        existing = self.db.execute(
            select(Recipe)
            .where(
                Recipe.store_id == store_id,
                Recipe.product_id == product_id,
                Recipe.active.is_(True),
            )
            .options(selectinload(Recipe.ingredients))
            .order_by(Recipe.id)
            .limit(1)
        ).scalar_one_or_none()
        if existing is not None:
            return ProductRepairOutcome(
                existing,
                created=False,
                needs_manual_entry=existing.needs_manual_ingredients or not existing.ingredients,
            )

        product = self.db.get(Product, product_id)
        if product is None or product.store_id != store_id:
            raise InventorySyncError(f"Product {product_id} not found in store {store_id}")

        templates = self.db.execute(
            select(RecipeTemplate)
            .where(RecipeTemplate.active.is_(True))
            .options(selectinload(RecipeTemplate.ingredients))
            .order_by(RecipeTemplate.id)
        ).scalars().all()
        template_match = self.matcher.best_by_name(product.name, templates)

        if template_match is None:
            template = RecipeTemplate(name=product.name, needs_manual_ingredients=True)
            self.db.add(template)
            self.db.flush()
        else:
            template = template_match.candidate

        recipe = Recipe(
            store_id=store_id,
            product_id=product_id,
            template_id=template.id,
            name=product.name,
            active=True,
        )
        self.db.add(recipe)

        candidates = self.db.execute(
            select(InventoryItem)
            .where(InventoryItem.store_id == store_id, InventoryItem.active.is_(True))
            .order_by(InventoryItem.id)
        ).scalars().all()

        ingredient_matches = []
        for template_ing in template.ingredients:
            match = self.matcher.match(template_ing.ingredient_name, template_ing.unit, candidates)
            recipe.ingredients.append(RecipeIngredient(
                ingredient_name=template_ing.ingredient_name,
                required_quantity=template_ing.quantity,
                unit=template_ing.unit,
                inventory_item_id=match.candidate.id if match else None,
            ))
            ingredient_matches.append({
                "ingredient_name": template_ing.ingredient_name,
                "match": match.to_audit() if match else None,
            })

        recipe.needs_manual_ingredients = not recipe.ingredients
        self.db.flush()

        audit_service.log_action(
            self.db,
            action="recipe_instantiated",
            entity_type="recipe",
            entity_id=recipe.id,
            details={
                "store_id": store_id,
                "product_id": product_id,
                "product_name": product.name,
                "template_id": template.id,
                "template_match": template_match.to_audit() if template_match else None,
                "template_threshold": self.matcher.template_threshold,
                "bulk_threshold": self.matcher.bulk_threshold,
                "ingredients": ingredient_matches,
                "needs_manual_ingredients": recipe.needs_manual_ingredients,
            },
        )
        if recipe.needs_manual_ingredients:
            logger.warning(
                f"Created recipe shell {recipe.id} for product '{product.name}' "
                f"in store {store_id}; ingredients need manual entry"
            )
        else:
            logger.info(
                f"Instantiated recipe {recipe.id} for product '{product.name}' in store "
                f"{store_id} from template '{template.name}'"
            )
        return ProductRepairOutcome(
            recipe, created=True, needs_manual_entry=recipe.needs_manual_ingredients
        )

    def repair_mappings(self, store_id: int, product_ids=None):
        """Fix defects and unmapped references in the store's affected recipes."""
        validator = MappingValidator(self.db, self.matcher)
        report = validator.validate(store_id)

        if product_ids is not None:
            recipe_ids = set(self.db.execute(
                select(Recipe.id).where(
                    Recipe.store_id == store_id, Recipe.product_id.in_(list(product_ids))
                )
            ).scalars().all())
            defects = [d for d in report.defects if d.recipe_id in recipe_ids]
            unmapped = [u for u in report.unmapped_ingredients if u.recipe_id in recipe_ids]
        else:
            defects = report.defects
            unmapped = report.unmapped_ingredients

        fixed = validator.fix(defects) if defects else None
        mapped = validator.map_unmapped(unmapped) if unmapped else None
        return fixed, mapped

    def repair_store(self, store_id: int) -> StoreRepairResult:
        """Bulk repair for one store: mappings, missing recipes, then due jobs."""
        logger.info(f"Starting bulk repair for store {store_id}")
        result = StoreRepairResult(store_id=store_id)

        fixed, mapped = self.repair_mappings(store_id)
        if fixed is not None:
            result.mappings_fixed = fixed.fixed
            result.mappings_failed = fixed.failed
        if mapped is not None:
            result.unmapped_repointed = mapped.fixed

        products_without_recipe = self.db.execute(
            select(Product.id)
            .where(
                Product.store_id == store_id,
                Product.active.is_(True),
                ~select(Recipe.id)
                .where(Recipe.product_id == Product.id, Recipe.active.is_(True))
                .exists(),
            )
            .order_by(Product.id)
        ).scalars().all()
        for product_id in products_without_recipe:
            self.enqueue_product(store_id, product_id, "Active product has no active recipe")
            result.jobs_enqueued += 1
        self.db.commit()

        result.jobs_run = self.run_pending(store_id=store_id)
        logger.info(
            f"Bulk repair for store {store_id}: {result.mappings_fixed} mappings fixed, "
            f"{result.jobs_enqueued} product jobs enqueued, "
            f"{result.jobs_run.processed} jobs run"
        )
        return result
