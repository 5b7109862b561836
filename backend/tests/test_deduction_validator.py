"""Tests for resolving sales into deductions and checking stock."""

import pytest
from decimal import Decimal

from sqlalchemy import select

from stocksync.models.audit import AuditLogEntry
from stocksync.models.inventory import InventoryItem
from stocksync.models.store import Product
from stocksync.schemas.deduction import DeductionRequest, SaleLineItem
from stocksync.services.deduction_validator import DeductionValidator


def sale(store_id, *lines, transaction_id="TXN-1"):
    return DeductionRequest(
        transaction_id=transaction_id,
        store_id=store_id,
        line_items=[
            SaleLineItem(product_id=pid, product_name=name, quantity=Decimal(str(qty)))
            for pid, name, qty in lines
        ],
    )


class TestRecipeResolution:
    def test_resolves_recipe_ingredients(self, croffle_setup):
        db = croffle_setup["db"]
        product = croffle_setup["product"]
        request = sale(croffle_setup["store"].id, (product.id, "Classic Croffle", 2))

        validation = DeductionValidator(db).resolve_and_validate(request)

        assert validation.can_proceed
        assert validation.errors == []
        line = validation.line_items[0]
        assert line.source == "recipe"
        required = {ing.item_name: ing.required_quantity for ing in line.ingredients}
        assert required == {
            "Regular Croissant": Decimal("2"),
            "Whipped Cream": Decimal("2"),
            "Chocolate Syrup": Decimal("30"),
        }

    def test_deduction_keys_are_unique_per_line(self, croffle_setup):
        db = croffle_setup["db"]
        product = croffle_setup["product"]
        request = sale(
            croffle_setup["store"].id,
            (product.id, "Classic Croffle", 1),
            (product.id, "Classic Croffle", 1),
        )
        keys = [ing.deduction_key for ing in DeductionValidator(db).resolve_and_validate(request).deductions]
        assert len(keys) == 6
        assert len(set(keys)) == 6

    def test_converts_recipe_unit_to_item_unit(self, croffle_setup):
        db = croffle_setup["db"]
        syrup = croffle_setup["syrup"]
        syrup.unit = "liters"
        syrup.quantity = Decimal("2")
        db.commit()

        request = sale(croffle_setup["store"].id, (croffle_setup["product"].id, "", 1))
        validation = DeductionValidator(db).resolve_and_validate(request)

        syrup_ing = next(i for i in validation.deductions if i.item_name == "Chocolate Syrup")
        assert syrup_ing.required_quantity == Decimal("0.015")
        assert syrup_ing.unit == "liters"

    def test_incompatible_unit_warns_and_deducts_raw_quantity(self, croffle_setup):
        db = croffle_setup["db"]
        croffle_setup["syrup"].unit = "g"
        db.commit()

        request = sale(croffle_setup["store"].id, (croffle_setup["product"].id, "", 1))
        validation = DeductionValidator(db).resolve_and_validate(request)

        assert validation.can_proceed
        assert any("Cannot convert" in w for w in validation.warnings)
        syrup_ing = next(i for i in validation.deductions if i.item_name == "Chocolate Syrup")
        assert syrup_ing.required_quantity == Decimal("15")


class TestUnresolvedLines:
    def test_unknown_product_is_a_warning(self, croffle_setup):
        """A product with no recipe and no stock match deducts nothing but does not block."""
        db = croffle_setup["db"]
        store = croffle_setup["store"]
        latte = Product(store_id=store.id, name="Iced Americano", active=True)
        db.add(latte)
        db.commit()

        request = sale(
            store.id,
            (croffle_setup["product"].id, "Classic Croffle", 1),
            (latte.id, "Iced Americano", 1),
        )
        validation = DeductionValidator(db).resolve_and_validate(request)

        assert validation.can_proceed
        assert validation.line_items[1].source == "unresolved"
        assert validation.line_items[1].ingredients == []
        assert any("Iced Americano" in w for w in validation.warnings)
        assert len(validation.deductions) == 3

    def test_direct_inventory_item_by_exact_name(self, db_session, store):
        bottled = InventoryItem(store_id=store.id, name="Bottled Water", unit="pieces", quantity=Decimal("24"))
        product = Product(store_id=store.id, name="Bottled Water", active=True)
        db_session.add_all([bottled, product])
        db_session.commit()

        validation = DeductionValidator(db_session).resolve_and_validate(
            sale(store.id, (product.id, "", 3))
        )

        line = validation.line_items[0]
        assert line.source == "direct"
        assert line.ingredients[0].inventory_item_id == bottled.id
        assert line.ingredients[0].required_quantity == Decimal("3")
        assert db_session.execute(select(AuditLogEntry)).scalars().all() == []

    def test_direct_fuzzy_match_is_audited(self, db_session, store):
        oreo = InventoryItem(store_id=store.id, name="Oreo Cookies", unit="pieces", quantity=Decimal("40"))
        product = Product(store_id=store.id, name="Oreo Cookie", active=True)
        db_session.add_all([oreo, product])
        db_session.commit()

        validation = DeductionValidator(db_session).resolve_and_validate(
            sale(store.id, (product.id, "Oreo Cookie", 1))
        )

        assert validation.line_items[0].source == "direct"
        entry = db_session.execute(select(AuditLogEntry)).scalar_one()
        assert entry.action == "direct_product_match"
        assert entry.details["match"]["candidate_id"] == oreo.id

    def test_dry_run_leaves_no_audit(self, db_session, store):
        oreo = InventoryItem(store_id=store.id, name="Oreo Cookies", unit="pieces", quantity=Decimal("40"))
        product = Product(store_id=store.id, name="Oreo Cookie", active=True)
        db_session.add_all([oreo, product])
        db_session.commit()

        DeductionValidator(db_session).resolve_and_validate(
            sale(store.id, (product.id, "Oreo Cookie", 1)), record_audit=False
        )
        assert db_session.execute(select(AuditLogEntry)).scalars().all() == []

    def test_cross_store_reference_is_skipped(self, croffle_setup, other_store):
        db = croffle_setup["db"]
        foreign = InventoryItem(
            store_id=other_store.id, name="Whipped Cream", unit="serving", quantity=Decimal("50"),
        )
        db.add(foreign)
        db.flush()
        croffle_setup["recipe"].ingredients[1].inventory_item_id = foreign.id
        db.commit()

        validation = DeductionValidator(db).resolve_and_validate(
            sale(croffle_setup["store"].id, (croffle_setup["product"].id, "", 1))
        )

        assert validation.can_proceed
        assert foreign.id not in {i.inventory_item_id for i in validation.deductions}
        assert len(validation.mapping_defects) == 1
        assert validation.mapping_defects[0].wrong_store_id == other_store.id

    def test_inactive_item_is_skipped(self, croffle_setup):
        db = croffle_setup["db"]
        croffle_setup["cream"].active = False
        db.commit()

        validation = DeductionValidator(db).resolve_and_validate(
            sale(croffle_setup["store"].id, (croffle_setup["product"].id, "", 1))
        )
        assert validation.can_proceed
        assert len(validation.deductions) == 2
        assert any("inactive" in w for w in validation.warnings)


class TestSufficiency:
    def test_cumulative_shortfall_blocks(self, croffle_setup):
        """Two lines each within stock but together above it are rejected."""
        db = croffle_setup["db"]
        product = croffle_setup["product"]
        request = sale(
            croffle_setup["store"].id,
            (product.id, "Classic Croffle", 6),
            (product.id, "Classic Croffle", 6),
        )

        validation = DeductionValidator(db).resolve_and_validate(request)

        assert not validation.can_proceed
        names = {i.item_name for i in validation.insufficient_items}
        assert names == {"Regular Croissant", "Whipped Cream"}
        croissant = next(i for i in validation.insufficient_items if i.item_name == "Regular Croissant")
        assert croissant.required == Decimal("12")
        assert croissant.available == Decimal("10")

    def test_exact_stock_is_sufficient(self, croffle_setup):
        db = croffle_setup["db"]
        request = sale(croffle_setup["store"].id, (croffle_setup["product"].id, "", 10))
        assert DeductionValidator(db).resolve_and_validate(request).can_proceed

    @pytest.mark.parametrize("qty", [0, -1])
    def test_non_positive_quantity_is_an_error(self, croffle_setup, qty):
        db = croffle_setup["db"]
        request = sale(croffle_setup["store"].id, (croffle_setup["product"].id, "", qty))
        validation = DeductionValidator(db).resolve_and_validate(request)
        assert not validation.can_proceed
        assert validation.insufficient_items == []
        assert "quantity must be positive" in validation.errors[0]

    def test_empty_request_proceeds(self, croffle_setup):
        validation = DeductionValidator(croffle_setup["db"]).resolve_and_validate(
            DeductionRequest(transaction_id="EMPTY", store_id=croffle_setup["store"].id)
        )
        assert validation.can_proceed
        assert validation.deductions == []
