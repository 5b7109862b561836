"""Tests for the repair job queue and remediation steps."""

import itertools

import pytest
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select

from stocksync.core.errors import DeductionTimeoutError, RepairExhaustedError
from stocksync.db.base import utcnow
from stocksync.models.audit import AuditLogEntry
from stocksync.models.inventory import InventoryItem, MovementRecord
from stocksync.models.recipe import Recipe, RecipeIngredient, RecipeTemplate, RecipeTemplateIngredient
from stocksync.models.store import Product
from stocksync.models.sync import RepairJob, RepairJobStatus, RepairJobType, SyncOutcome
from stocksync.schemas.deduction import DeductionRequest, SaleLineItem
from stocksync.services.inventory_sync_service import InventorySyncService
from stocksync.services.repair_orchestrator import (
    MANUAL_ENTRY_ERROR,
    RepairConfig,
    RepairOrchestrator,
)


def later():
    return utcnow() + timedelta(hours=1)


def croffle_sale(setup, qty=1, transaction_id="TXN-300"):
    return DeductionRequest(
        transaction_id=transaction_id,
        store_id=setup["store"].id,
        line_items=[SaleLineItem(product_id=setup["product"].id, quantity=Decimal(str(qty)))],
    )


@pytest.fixture
def timed_out_sale(croffle_setup):
    """A croffle sale that timed out after its first ingredient."""
    db = croffle_setup["db"]
    service = InventorySyncService(db)
    ticks = itertools.count()
    service.executor.clock = lambda: next(ticks)
    with pytest.raises(DeductionTimeoutError) as exc:
        service.process_sale(croffle_sale(croffle_setup), timeout=1.5)
    return exc.value.repair_job_id


@pytest.fixture
def orchestrator(db_session):
    return RepairOrchestrator(
        db_session,
        config=RepairConfig(max_attempts=3, backoff_base_seconds=60, backoff_max_seconds=600),
    )


class TestRepairConfig:
    def test_backoff_doubles_per_attempt(self):
        config = RepairConfig(backoff_base_seconds=2, backoff_max_seconds=300)
        assert config.backoff(1) == timedelta(seconds=2)
        assert config.backoff(2) == timedelta(seconds=4)
        assert config.backoff(4) == timedelta(seconds=16)

    def test_backoff_is_capped(self):
        config = RepairConfig(backoff_base_seconds=2, backoff_max_seconds=300)
        assert config.backoff(20) == timedelta(seconds=300)

    def test_first_delay_is_base(self):
        assert RepairConfig(backoff_base_seconds=2).backoff(0) == timedelta(seconds=2)


class TestTransactionJobs:
    def test_retry_completes_partial_sale(self, croffle_setup, timed_out_sale, orchestrator):
        db = croffle_setup["db"]

        run = orchestrator.run_pending(now=later())

        assert run.processed == 1
        assert run.succeeded == 1
        job = db.get(RepairJob, timed_out_sale)
        assert job.status == RepairJobStatus.SUCCESS.value
        assert job.attempts == 1
        assert job.resolved_at is not None

        db.expire_all()
        assert db.get(InventoryItem, croffle_setup["croissant"].id).quantity == Decimal("9")
        assert db.get(InventoryItem, croffle_setup["cream"].id).quantity == Decimal("9")
        rows = db.execute(
            select(MovementRecord).where(MovementRecord.reference_id == "TXN-300")
        ).scalars().all()
        assert len(rows) == 3

        retry_outcome = db.execute(
            select(SyncOutcome).where(SyncOutcome.attempt == 1)
        ).scalar_one()
        assert retry_outcome.status == "success"

    def test_job_not_due_is_left_alone(self, croffle_setup, timed_out_sale, orchestrator):
        run = orchestrator.run_pending(now=utcnow() - timedelta(minutes=5))
        assert run.processed == 0
        job = croffle_setup["db"].get(RepairJob, timed_out_sale)
        assert job.status == RepairJobStatus.PENDING.value

    def test_failure_reschedules_with_backoff(self, croffle_setup, orchestrator):
        db = croffle_setup["db"]
        job = orchestrator.enqueue_transaction(croffle_sale(croffle_setup, qty=50), "initial failure")
        db.commit()

        status = orchestrator.process_job(job.id)

        assert status == RepairJobStatus.PENDING.value
        job = db.get(RepairJob, job.id)
        assert job.attempts == 1
        assert "Insufficient stock" in job.last_error
        # Next try is one backoff away, so an immediate run skips it
        assert orchestrator.run_pending(now=utcnow()).processed == 0
        assert orchestrator.run_pending(now=later()).processed == 1

    def test_exhausted_job_fails(self, croffle_setup, orchestrator):
        db = croffle_setup["db"]
        job = orchestrator.enqueue_transaction(croffle_sale(croffle_setup, qty=50), "initial failure")
        db.commit()

        statuses = []
        for _ in range(5):
            statuses.append(orchestrator.run_pending(now=utcnow() + timedelta(days=1)))

        job = db.get(RepairJob, job.id)
        assert job.status == RepairJobStatus.FAILED.value
        assert job.attempts == 3
        assert sum(r.processed for r in statuses) == 3
        assert statuses[2].failed == 1

    def test_enqueue_reuses_open_job(self, croffle_setup, orchestrator):
        db = croffle_setup["db"]
        first = orchestrator.enqueue_transaction(croffle_sale(croffle_setup), "a")
        second = orchestrator.enqueue_transaction(croffle_sale(croffle_setup), "b")
        db.commit()

        assert first.id == second.id
        assert db.get(RepairJob, first.id).last_error == "b"

    def test_claimed_job_is_not_run_twice(self, croffle_setup, timed_out_sale, orchestrator):
        db = croffle_setup["db"]
        job = db.get(RepairJob, timed_out_sale)
        job.status = RepairJobStatus.PROCESSING.value
        db.commit()

        assert orchestrator.process_job(timed_out_sale) is None
        assert db.get(RepairJob, timed_out_sale).attempts == 0

    def test_retry_leaves_direct_product_without_recipe(self, croffle_setup, orchestrator):
        """A product sold straight from stock must not gain a recipe on retry."""
        db = croffle_setup["db"]
        store = croffle_setup["store"]
        water = InventoryItem(store_id=store.id, name="Bottled Water", unit="pieces", quantity=Decimal("5"))
        product = Product(store_id=store.id, name="Bottled Water", active=True)
        template = RecipeTemplate(name="Bottled Water")
        template.ingredients = [
            RecipeTemplateIngredient(ingredient_name="Water", quantity=Decimal("500"), unit="ml"),
        ]
        db.add_all([water, product, template])
        db.commit()

        job = orchestrator.enqueue_transaction(
            DeductionRequest(
                transaction_id="TXN-WATER",
                store_id=store.id,
                line_items=[SaleLineItem(product_id=product.id, quantity=Decimal("1"))],
            ),
            "initial failure",
        )
        db.commit()

        assert orchestrator.process_job(job.id) == RepairJobStatus.SUCCESS.value
        assert db.execute(
            select(Recipe).where(Recipe.product_id == product.id)
        ).scalars().all() == []
        assert [t.id for t in db.execute(select(RecipeTemplate)).scalars().all()] == [template.id]
        db.expire_all()
        assert db.get(InventoryItem, water.id).quantity == Decimal("4")

    def test_retry_gives_unresolved_product_a_recipe_shell(self, croffle_setup, orchestrator):
        db = croffle_setup["db"]
        store = croffle_setup["store"]
        matcha = Product(store_id=store.id, name="Matcha Latte", active=True)
        db.add(matcha)
        db.commit()

        job = orchestrator.enqueue_transaction(
            DeductionRequest(
                transaction_id="TXN-MATCHA",
                store_id=store.id,
                line_items=[SaleLineItem(product_id=matcha.id, quantity=Decimal("1"))],
            ),
            "initial failure",
        )
        db.commit()
        orchestrator.process_job(job.id)

        recipe = db.execute(select(Recipe).where(Recipe.product_id == matcha.id)).scalar_one()
        assert recipe.ingredients == []
        assert recipe.template.needs_manual_ingredients


class TestManualControl:
    def test_retry_runs_immediately(self, croffle_setup, timed_out_sale, orchestrator):
        job = orchestrator.retry_job(timed_out_sale)
        assert job.status == RepairJobStatus.SUCCESS.value

    def test_retry_failed_job_needs_reset(self, croffle_setup, orchestrator):
        db = croffle_setup["db"]
        job = orchestrator.enqueue_transaction(croffle_sale(croffle_setup, qty=50), "x")
        job.status = RepairJobStatus.FAILED.value
        job.attempts = 3
        db.commit()

        with pytest.raises(RepairExhaustedError):
            orchestrator.retry_job(job.id)

        retried = orchestrator.retry_job(job.id, reset_attempts=True)
        assert retried.attempts == 1
        assert retried.status == RepairJobStatus.PENDING.value

    def test_retry_missing_job(self, orchestrator):
        assert orchestrator.retry_job(424242) is None

    def test_retry_succeeded_job_is_a_no_op(self, croffle_setup, timed_out_sale, orchestrator):
        orchestrator.run_pending(now=later())
        job = orchestrator.retry_job(timed_out_sale)
        assert job.status == RepairJobStatus.SUCCESS.value
        assert job.attempts == 1

    def test_recover_stale_jobs(self, croffle_setup, timed_out_sale, orchestrator):
        db = croffle_setup["db"]
        job = db.get(RepairJob, timed_out_sale)
        job.status = RepairJobStatus.PROCESSING.value
        db.commit()

        assert orchestrator.recover_stale_jobs(now=utcnow() + timedelta(hours=2)) == 1
        db.expire_all()
        assert db.get(RepairJob, timed_out_sale).status == RepairJobStatus.PENDING.value

    def test_fresh_processing_job_is_not_recovered(self, croffle_setup, timed_out_sale, orchestrator):
        db = croffle_setup["db"]
        db.get(RepairJob, timed_out_sale).status = RepairJobStatus.PROCESSING.value
        db.commit()
        assert orchestrator.recover_stale_jobs() == 0

    def test_list_jobs_filters(self, croffle_setup, timed_out_sale, orchestrator):
        assert [j.id for j in orchestrator.list_jobs(status="pending")] == [timed_out_sale]
        assert orchestrator.list_jobs(status="failed") == []
        assert orchestrator.list_jobs(store_id=croffle_setup["store"].id + 100) == []


class TestEnsureRecipe:
    @pytest.fixture
    def biscoff(self, croffle_setup):
        db = croffle_setup["db"]
        template = RecipeTemplate(name="Biscoff Croffle")
        template.ingredients = [
            RecipeTemplateIngredient(ingredient_name="Croissant", quantity=Decimal("1"), unit="pcs"),
            RecipeTemplateIngredient(ingredient_name="Biscoff Spread", quantity=Decimal("20"), unit="g"),
        ]
        product = Product(store_id=croffle_setup["store"].id, name="Biscoff Croffle", active=True)
        db.add_all([template, product])
        db.commit()
        return template, product

    def test_instantiates_from_matching_template(self, croffle_setup, biscoff, orchestrator):
        db = croffle_setup["db"]
        template, product = biscoff

        outcome = orchestrator.ensure_recipe(croffle_setup["store"].id, product.id)
        db.commit()

        assert outcome.created
        assert not outcome.needs_manual_entry
        recipe = outcome.recipe
        assert recipe.template_id == template.id
        mapped = {i.ingredient_name: i.inventory_item_id for i in recipe.ingredients}
        assert mapped["Croissant"] == croffle_setup["croissant"].id
        assert mapped["Biscoff Spread"] is None

        entry = db.execute(
            select(AuditLogEntry).where(AuditLogEntry.action == "recipe_instantiated")
        ).scalar_one()
        assert entry.details["template_id"] == template.id
        assert entry.details["template_match"]["candidate_name"] == "Biscoff Croffle"

    def test_existing_recipe_is_kept(self, croffle_setup, orchestrator):
        outcome = orchestrator.ensure_recipe(croffle_setup["store"].id, croffle_setup["product"].id)
        assert not outcome.created
        assert outcome.recipe.id == croffle_setup["recipe"].id

    def test_no_template_creates_shell(self, croffle_setup, orchestrator):
        db = croffle_setup["db"]
        matcha = Product(store_id=croffle_setup["store"].id, name="Matcha Latte", active=True)
        db.add(matcha)
        db.commit()

        outcome = orchestrator.ensure_recipe(croffle_setup["store"].id, matcha.id)
        db.commit()

        assert outcome.created
        assert outcome.needs_manual_entry
        assert outcome.recipe.ingredients == []
        assert outcome.recipe.template.needs_manual_ingredients

    def test_product_job_with_shell_fails_for_manual_entry(self, croffle_setup, orchestrator):
        db = croffle_setup["db"]
        matcha = Product(store_id=croffle_setup["store"].id, name="Matcha Latte", active=True)
        db.add(matcha)
        db.commit()
        job = orchestrator.enqueue_product(croffle_setup["store"].id, matcha.id, "no recipe")
        db.commit()

        assert orchestrator.process_job(job.id) == RepairJobStatus.FAILED.value
        job = db.get(RepairJob, job.id)
        assert job.last_error == MANUAL_ENTRY_ERROR
        assert job.job_type == RepairJobType.PRODUCT.value

    def test_product_job_with_template_succeeds(self, croffle_setup, biscoff, orchestrator):
        db = croffle_setup["db"]
        _, product = biscoff
        job = orchestrator.enqueue_product(croffle_setup["store"].id, product.id, "no recipe")
        db.commit()

        assert orchestrator.process_job(job.id) == RepairJobStatus.SUCCESS.value
        recipe = db.execute(select(Recipe).where(Recipe.product_id == product.id)).scalar_one()
        assert recipe.active


class TestRepairStore:
    def test_fixes_mappings_and_enqueues_missing_recipes(self, croffle_setup, other_store, orchestrator):
        db = croffle_setup["db"]
        store = croffle_setup["store"]
        foreign = InventoryItem(
            store_id=other_store.id, name="Whipped Cream", unit="serving", quantity=Decimal("3"),
        )
        matcha = Product(store_id=store.id, name="Matcha Latte", active=True)
        db.add_all([foreign, matcha])
        db.flush()
        cream_line_id = croffle_setup["recipe"].ingredients[1].id
        croffle_setup["recipe"].ingredients[1].inventory_item_id = foreign.id
        db.commit()

        result = orchestrator.repair_store(store.id)

        assert result.mappings_fixed == 1
        assert result.jobs_enqueued == 1
        assert result.jobs_run.processed == 1
        assert result.jobs_run.failed == 1
        assert db.get(RecipeIngredient, cream_line_id).inventory_item_id == croffle_setup["cream"].id
        db.expire_all()
        assert db.get(InventoryItem, foreign.id).quantity == Decimal("3")

    def test_healthy_store_needs_nothing(self, croffle_setup, orchestrator):
        result = orchestrator.repair_store(croffle_setup["store"].id)
        assert result.mappings_fixed == 0
        assert result.jobs_enqueued == 0
        assert result.jobs_run.processed == 0
