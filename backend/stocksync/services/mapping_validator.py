"""Mapping Validator: find and repair broken recipe-to-inventory references.

A recipe ingredient's ``inventory_item_id`` can be in one of four states:

- mapped: points at an existing item in the recipe's own store
- unmapped: null (reported, repaired only on a confident match)
- missing: points at an item that no longer exists
- cross-store: points at an item that belongs to another store

Missing and cross-store references are defects. ``fix`` repairs them one at
a time, each inside its own savepoint, and never modifies the wrong store's
items.
"""

import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from stocksync.core.errors import MappingDefect
from stocksync.models.inventory import InventoryItem
from stocksync.models.recipe import Recipe, RecipeIngredient
from stocksync.schemas.mapping import (
    MappingFixDetail,
    MappingFixResult,
    MappingValidationReport,
    UnmappedIngredient,
)
from stocksync.services import audit_service
from stocksync.services.ingredient_matcher import IngredientMatcher

logger = logging.getLogger(__name__)

# Items created to satisfy a recipe start empty and flag as low stock immediately
CREATED_ITEM_MINIMUM_THRESHOLD = Decimal("1")


class MappingValidator:
    """Detects and repairs recipe ingredient mapping defects."""

    def __init__(self, db: Session, matcher: Optional[IngredientMatcher] = None):
        self.db = db
        self.matcher = matcher or IngredientMatcher()
        self._candidates: Dict[int, List[InventoryItem]] = {}

    # ===== DETECTION =====

    def validate(self, store_id: Optional[int] = None) -> MappingValidationReport:
        """Walk active recipes and classify every ingredient reference. Read-only."""
        query = (
            select(Recipe)
            .where(Recipe.active.is_(True))
            .options(selectinload(Recipe.ingredients))
            .order_by(Recipe.id)
        )
        if store_id is not None:
            query = query.where(Recipe.store_id == store_id)
        recipes = self.db.execute(query).scalars().all()

        item_ids = {
            ing.inventory_item_id
            for recipe in recipes
            for ing in recipe.ingredients
            if ing.inventory_item_id is not None
        }
        items = self._load_items(item_ids)

        report = MappingValidationReport()
        for recipe in recipes:
            for ing in recipe.ingredients:
                if ing.inventory_item_id is None:
                    report.unmapped_ingredients.append(UnmappedIngredient(
                        recipe_id=recipe.id,
                        recipe_ingredient_id=ing.id,
                        recipe_name=recipe.name,
                        ingredient_name=ing.ingredient_name,
                        store_id=recipe.store_id,
                    ))
                    continue

                defect = self.classify(recipe, ing, items.get(ing.inventory_item_id))
                if defect is None:
                    continue
                if defect.is_cross_store:
                    report.cross_store_mappings.append(defect)
                else:
                    report.missing_mappings.append(defect)

        logger.info(
            f"Mapping validation{f' for store {store_id}' if store_id else ''}: "
            f"{len(report.cross_store_mappings)} cross-store, "
            f"{len(report.missing_mappings)} missing, "
            f"{len(report.unmapped_ingredients)} unmapped"
        )
        return report

    @staticmethod
    def classify(
        recipe: Recipe,
        ingredient: RecipeIngredient,
        item: Optional[InventoryItem],
    ) -> Optional[MappingDefect]:
        """Return the defect for a non-null reference, or None if it is sound."""
        if item is None:
            return MappingDefect(
                recipe_id=recipe.id,
                recipe_ingredient_id=ingredient.id,
                recipe_name=recipe.name,
                ingredient_name=ingredient.ingredient_name,
                correct_store_id=recipe.store_id,
                inventory_item_id=ingredient.inventory_item_id,
            )
        if item.store_id != recipe.store_id:
            return MappingDefect(
                recipe_id=recipe.id,
                recipe_ingredient_id=ingredient.id,
                recipe_name=recipe.name,
                ingredient_name=ingredient.ingredient_name,
                correct_store_id=recipe.store_id,
                wrong_store_id=item.store_id,
                inventory_item_id=item.id,
                inventory_item_name=item.name,
            )
        return None

    # ===== REPAIR =====

    def fix(self, defects: Iterable[MappingDefect]) -> MappingFixResult:
        """Repoint each defective ingredient at the correct store's inventory.

        A confident match is repointed; otherwise a zero-quantity item is
        created in the correct store. One failing defect never blocks the rest.
        """
        result = MappingFixResult()
        for defect in defects:
            try:
                with self.db.begin_nested():
                    detail = self._fix_one(defect)
            except (SQLAlchemyError, ValueError) as e:
                logger.error(
                    f"Failed to fix mapping for ingredient {defect.recipe_ingredient_id} "
                    f"('{defect.ingredient_name}'): {e}",
                    exc_info=True,
                )
                detail = MappingFixDetail(
                    recipe_ingredient_id=defect.recipe_ingredient_id,
                    ingredient_name=defect.ingredient_name,
                    action="failed",
                    error=str(e),
                )
                self._candidates.pop(defect.correct_store_id, None)

            result.details.append(detail)
            if detail.action == "failed":
                result.failed += 1
            else:
                result.fixed += 1

        self.db.commit()
        logger.info(f"Mapping fix complete: {result.fixed} fixed, {result.failed} failed")
        return result

    def _fix_one(self, defect: MappingDefect) -> MappingFixDetail:
        ingredient = self.db.get(RecipeIngredient, defect.recipe_ingredient_id)
        if ingredient is None:
            return MappingFixDetail(
                recipe_ingredient_id=defect.recipe_ingredient_id,
                ingredient_name=defect.ingredient_name,
                action="failed",
                error="Recipe ingredient no longer exists",
            )

        candidates = self._store_candidates(defect.correct_store_id)
        threshold = self.matcher.bulk_threshold
        match = self.matcher.match(ingredient.ingredient_name, ingredient.unit, candidates, threshold)

        if match is not None:
            ingredient.inventory_item_id = match.candidate.id
            self.db.flush()
            audit_service.log_match_decision(
                self.db,
                action="mapping_repointed",
                entity_type="recipe_ingredient",
                entity_id=ingredient.id,
                ingredient_name=ingredient.ingredient_name,
                unit=ingredient.unit,
                threshold=threshold,
                match=match,
                previous_inventory_item_id=defect.inventory_item_id,
                wrong_store_id=defect.wrong_store_id,
            )
            logger.info(
                f"Repointed ingredient {ingredient.id} '{ingredient.ingredient_name}' "
                f"to item {match.candidate.id} '{match.name}' (score {match.score:.3f})"
            )
            return MappingFixDetail(
                recipe_ingredient_id=ingredient.id,
                ingredient_name=ingredient.ingredient_name,
                action="repointed",
                inventory_item_id=match.candidate.id,
                score=round(match.score, 4),
            )

        # Nothing close enough: create an empty item in the correct store
        wrong_item = (
            self.db.get(InventoryItem, defect.inventory_item_id)
            if defect.inventory_item_id is not None
            else None
        )
        item = InventoryItem(
            store_id=defect.correct_store_id,
            name=defect.inventory_item_name or ingredient.ingredient_name,
            unit=wrong_item.unit if wrong_item is not None else ingredient.unit,
            quantity=Decimal("0"),
            minimum_threshold=CREATED_ITEM_MINIMUM_THRESHOLD,
            active=True,
        )
        self.db.add(item)
        self.db.flush()
        ingredient.inventory_item_id = item.id
        self.db.flush()
        self._candidates.setdefault(defect.correct_store_id, []).append(item)

        audit_service.log_match_decision(
            self.db,
            action="inventory_item_created",
            entity_type="recipe_ingredient",
            entity_id=ingredient.id,
            ingredient_name=ingredient.ingredient_name,
            unit=ingredient.unit,
            threshold=threshold,
            match=None,
            created_inventory_item_id=item.id,
            previous_inventory_item_id=defect.inventory_item_id,
            wrong_store_id=defect.wrong_store_id,
        )
        logger.warning(
            f"No match for '{ingredient.ingredient_name}' in store {defect.correct_store_id}; "
            f"created empty inventory item {item.id} '{item.name}'"
        )
        return MappingFixDetail(
            recipe_ingredient_id=ingredient.id,
            ingredient_name=ingredient.ingredient_name,
            action="created",
            inventory_item_id=item.id,
        )

    def map_unmapped(self, ingredients: Iterable[UnmappedIngredient]) -> MappingFixResult:
        """Point null references at a confident match. Never creates items."""
        result = MappingFixResult()
        threshold = self.matcher.bulk_threshold
        for unmapped in ingredients:
            try:
                with self.db.begin_nested():
                    ingredient = self.db.get(RecipeIngredient, unmapped.recipe_ingredient_id)
                    if ingredient is None or ingredient.inventory_item_id is not None:
                        continue
                    candidates = self._store_candidates(unmapped.store_id)
                    match = self.matcher.match(
                        ingredient.ingredient_name, ingredient.unit, candidates, threshold
                    )
                    if match is None:
                        detail = MappingFixDetail(
                            recipe_ingredient_id=ingredient.id,
                            ingredient_name=ingredient.ingredient_name,
                            action="failed",
                            error="No inventory item matched above threshold",
                        )
                    else:
                        ingredient.inventory_item_id = match.candidate.id
                        self.db.flush()
                        audit_service.log_match_decision(
                            self.db,
                            action="mapping_assigned",
                            entity_type="recipe_ingredient",
                            entity_id=ingredient.id,
                            ingredient_name=ingredient.ingredient_name,
                            unit=ingredient.unit,
                            threshold=threshold,
                            match=match,
                        )
                        detail = MappingFixDetail(
                            recipe_ingredient_id=ingredient.id,
                            ingredient_name=ingredient.ingredient_name,
                            action="repointed",
                            inventory_item_id=match.candidate.id,
                            score=round(match.score, 4),
                        )
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to map ingredient {unmapped.recipe_ingredient_id}: {e}",
                    exc_info=True,
                )
                detail = MappingFixDetail(
                    recipe_ingredient_id=unmapped.recipe_ingredient_id,
                    ingredient_name=unmapped.ingredient_name,
                    action="failed",
                    error=str(e),
                )

            result.details.append(detail)
            if detail.action == "failed":
                result.failed += 1
            else:
                result.fixed += 1

        self.db.commit()
        return result

    # ===== HELPERS =====

    def _load_items(self, item_ids) -> Dict[int, InventoryItem]:
        if not item_ids:
            return {}
        rows = self.db.execute(
            select(InventoryItem).where(InventoryItem.id.in_(list(item_ids)))
        ).scalars().all()
        return {item.id: item for item in rows}

    def _store_candidates(self, store_id: int) -> List[InventoryItem]:
        if store_id not in self._candidates:
            self._candidates[store_id] = list(
                self.db.execute(
                    select(InventoryItem)
                    .where(InventoryItem.store_id == store_id, InventoryItem.active.is_(True))
                    .order_by(InventoryItem.id)
                ).scalars().all()
            )
        return self._candidates[store_id]
