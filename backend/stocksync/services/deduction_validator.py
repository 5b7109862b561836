"""Deduction Validator: resolve a sale into per-item deductions and check stock.

Flow for each sale line:
1. Active store recipe for the product (if it has ingredients)
2. Otherwise a direct inventory item named like the product
   (exact normalized name first, then a confident fuzzy match, audited)
3. Otherwise nothing is deducted for the line and a warning is raised

Only two things block a sale: a non-positive line quantity and a cumulative
shortfall on some item. Everything else (unmapped, dangling, cross-store or
inactive references) is a warning, and the reference is skipped rather than
deducted from the wrong place.
"""

import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from stocksync.models.inventory import InventoryItem, MovementRecord
from stocksync.models.recipe import Recipe
from stocksync.models.store import Product
from stocksync.schemas.deduction import (
    DeductionRequest,
    DeductionValidation,
    InsufficientItem,
    ResolvedIngredient,
    ResolvedLine,
    SaleLineItem,
)
from stocksync.services import audit_service
from stocksync.services.ingredient_matcher import IngredientMatcher
from stocksync.services.mapping_validator import MappingValidator
from stocksync.services.normalizer import (
    QUANTITY_STEP,
    convert_quantity,
    normalize_name,
    normalize_unit,
    quantize_quantity,
)

logger = logging.getLogger(__name__)


def recipe_deduction_key(line_index: int, recipe_ingredient_id: int) -> str:
    return f"{line_index}:ri{recipe_ingredient_id}"


def direct_deduction_key(line_index: int, inventory_item_id: int) -> str:
    return f"{line_index}:item{inventory_item_id}"


class DeductionValidator:
    """Resolves sale lines to inventory deductions and validates sufficiency."""

    def __init__(self, db: Session, matcher: Optional[IngredientMatcher] = None):
        self.db = db
        self.matcher = matcher or IngredientMatcher()

    def resolve_and_validate(
        self,
        request: DeductionRequest,
        record_audit: bool = True,
    ) -> DeductionValidation:
        """Resolve every line and check the request against current stock.

        Args:
            request: The sale to validate
            record_audit: Write audit entries for fuzzy direct-product matches.
                Dry runs pass False so a preview leaves no trace.
        """
        validation = DeductionValidation()
        store_items = self._load_store_items(request.store_id)

        for index, line in enumerate(request.line_items):
            if quantize_quantity(line.quantity) <= 0:
                validation.errors.append(
                    f"Line {index} (product {line.product_id}): quantity must be positive, "
                    f"got {line.quantity}"
                )
                validation.line_items.append(self._unresolved(index, line))
                continue

            resolved = self._resolve_from_recipe(request, index, line, store_items, validation)
            if resolved is None:
                resolved = self._resolve_direct(
                    request, index, line, store_items, validation, record_audit
                )
            if resolved is None:
                resolved = self._unresolved(index, line)
                validation.warnings.append(
                    f"No recipe or inventory item found for product "
                    f"'{line.product_name or line.product_id}' in store {request.store_id}; "
                    f"nothing deducted"
                )
            validation.line_items.append(resolved)

        self._check_sufficiency(validation, store_items, request.transaction_id)
        validation.can_proceed = not validation.errors

        if not validation.can_proceed:
            logger.warning(
                f"Deduction for transaction {request.transaction_id} rejected: "
                f"{'; '.join(validation.errors)}"
            )
        return validation

    # ===== RESOLUTION =====

    def _resolve_from_recipe(
        self,
        request: DeductionRequest,
        index: int,
        line: SaleLineItem,
        store_items: Dict[int, InventoryItem],
        validation: DeductionValidation,
    ) -> Optional[ResolvedLine]:
        recipe = self.db.execute(
            select(Recipe)
            .where(
                Recipe.store_id == request.store_id,
                Recipe.product_id == line.product_id,
                Recipe.active.is_(True),
            )
            .options(selectinload(Recipe.ingredients))
            .order_by(Recipe.id)
            .limit(1)
        ).scalar_one_or_none()

        if recipe is None:
            return None
        if not recipe.ingredients:
            validation.warnings.append(
                f"Recipe '{recipe.name}' (ID: {recipe.id}) has no ingredients"
            )
            return None

        resolved = ResolvedLine(
            line_index=index,
            product_id=line.product_id,
            product_name=line.product_name or recipe.name,
            quantity=line.quantity,
            source="recipe",
            recipe_id=recipe.id,
        )

        for ing in recipe.ingredients:
            if ing.inventory_item_id is None:
                validation.warnings.append(
                    f"Ingredient '{ing.ingredient_name}' of recipe '{recipe.name}' "
                    f"has no inventory mapping; skipped"
                )
                continue

            item = store_items.get(ing.inventory_item_id)
            if item is None:
                item = self._load_foreign_item(ing.inventory_item_id)
            defect = MappingValidator.classify(recipe, ing, item)
            if defect is not None:
                validation.mapping_defects.append(defect)
                if defect.is_cross_store:
                    validation.warnings.append(
                        f"Ingredient '{ing.ingredient_name}' of recipe '{recipe.name}' points "
                        f"at item {defect.inventory_item_id} of store {defect.wrong_store_id}; "
                        f"skipped"
                    )
                else:
                    validation.warnings.append(
                        f"Ingredient '{ing.ingredient_name}' of recipe '{recipe.name}' points "
                        f"at missing item {ing.inventory_item_id}; skipped"
                    )
                continue

            if not item.active:
                validation.warnings.append(
                    f"Inventory item '{item.name}' for ingredient '{ing.ingredient_name}' "
                    f"is inactive; skipped"
                )
                continue

            required = ing.required_quantity * line.quantity
            converted = convert_quantity(required, ing.unit, item.unit)
            if converted is None:
                validation.warnings.append(
                    f"Cannot convert {ing.unit} to {item.unit} for '{item.name}'; "
                    f"deducting {required} {item.unit} as recorded on the recipe"
                )
                converted = required
            converted = quantize_quantity(converted)
            if converted <= 0:
                validation.warnings.append(
                    f"Ingredient '{ing.ingredient_name}' of recipe '{recipe.name}' needs "
                    f"less than {QUANTITY_STEP} {item.unit} of '{item.name}'; skipped"
                )
                continue

            resolved.ingredients.append(ResolvedIngredient(
                deduction_key=recipe_deduction_key(index, ing.id),
                inventory_item_id=item.id,
                item_name=item.name,
                ingredient_name=ing.ingredient_name,
                recipe_ingredient_id=ing.id,
                required_quantity=converted,
                unit=normalize_unit(item.unit),
            ))

        return resolved

    def _resolve_direct(
        self,
        request: DeductionRequest,
        index: int,
        line: SaleLineItem,
        store_items: Dict[int, InventoryItem],
        validation: DeductionValidation,
        record_audit: bool,
    ) -> Optional[ResolvedLine]:
        product_name = line.product_name
        if not product_name:
            product = self.db.get(Product, line.product_id)
            product_name = product.name if product is not None else ""
        if not product_name:
            return None

        candidates = [item for item in store_items.values() if item.active]
        target = normalize_name(product_name)
        item = next((c for c in candidates if normalize_name(c.name) == target), None)

        if item is None:
            threshold = self.matcher.bulk_threshold
            match = self.matcher.match(product_name, None, candidates, threshold)
            if match is None:
                return None
            item = match.candidate
            validation.warnings.append(
                f"Product '{product_name}' has no recipe; matched inventory item "
                f"'{item.name}' (score {match.score:.2f})"
            )
            if record_audit:
                audit_service.log_match_decision(
                    self.db,
                    action="direct_product_match",
                    entity_type="product",
                    entity_id=line.product_id,
                    ingredient_name=product_name,
                    unit=None,
                    threshold=threshold,
                    match=match,
                    transaction_id=request.transaction_id,
                    store_id=request.store_id,
                )

        return ResolvedLine(
            line_index=index,
            product_id=line.product_id,
            product_name=product_name,
            quantity=line.quantity,
            source="direct",
            ingredients=[ResolvedIngredient(
                deduction_key=direct_deduction_key(index, item.id),
                inventory_item_id=item.id,
                item_name=item.name,
                ingredient_name=product_name,
                required_quantity=quantize_quantity(line.quantity),
                unit=normalize_unit(item.unit),
            )],
        )

    @staticmethod
    def _unresolved(index: int, line: SaleLineItem) -> ResolvedLine:
        return ResolvedLine(
            line_index=index,
            product_id=line.product_id,
            product_name=line.product_name,
            quantity=line.quantity,
            source="unresolved",
        )

    # ===== SUFFICIENCY =====

    def _check_sufficiency(
        self,
        validation: DeductionValidation,
        store_items: Dict[int, InventoryItem],
        transaction_id: str,
    ) -> None:
        """Compare the cumulative requirement per item against what is on hand.

        Deductions already in the ledger for this transaction (an earlier,
        partially applied attempt) are not counted again.
        """
        applied = set(self.db.execute(
            select(MovementRecord.deduction_key).where(
                MovementRecord.reference_id == transaction_id
            )
        ).scalars().all())

        totals: "OrderedDict[int, Decimal]" = OrderedDict()
        for ing in validation.deductions:
            if ing.deduction_key in applied:
                continue
            totals[ing.inventory_item_id] = (
                totals.get(ing.inventory_item_id, Decimal("0")) + ing.required_quantity
            )

        for item_id, required in totals.items():
            item = store_items[item_id]
            available = Decimal(str(item.quantity))
            if required > available:
                validation.insufficient_items.append(InsufficientItem(
                    inventory_item_id=item.id,
                    item_name=item.name,
                    required=required,
                    available=available,
                    unit=item.unit,
                ))
                validation.errors.append(
                    f"Insufficient stock for '{item.name}': need {required} {item.unit}, "
                    f"have {available} {item.unit}"
                )

    # ===== LOADING =====

    def _load_store_items(self, store_id: int) -> Dict[int, InventoryItem]:
        # populate_existing: stock may have moved since these rows entered the session
        rows: List[InventoryItem] = self.db.execute(
            select(InventoryItem)
            .where(InventoryItem.store_id == store_id)
            .order_by(InventoryItem.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return {item.id: item for item in rows}

    def _load_foreign_item(self, item_id: int) -> Optional[InventoryItem]:
        return self.db.execute(
            select(InventoryItem).where(InventoryItem.id == item_id)
        ).scalar_one_or_none()
