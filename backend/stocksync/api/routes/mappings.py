"""Mapping routes - detect and repair recipe-to-inventory references."""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from sqlalchemy import select

from stocksync.core.rate_limit import limiter
from stocksync.db.session import DbSession
from stocksync.models.inventory import InventoryItem
from stocksync.models.store import Store
from stocksync.schemas.mapping import (
    MappingFixRequest,
    MappingFixResult,
    MappingValidationReport,
    MatchSuggestion,
)
from stocksync.services.ingredient_matcher import IngredientMatcher
from stocksync.services.mapping_validator import MappingValidator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/validate", response_model=MappingValidationReport)
@limiter.limit("30/minute")
def validate_mappings(request: Request, db: DbSession, store_id: Optional[int] = None):
    """Report cross-store, missing and unmapped ingredient references."""
    return MappingValidator(db).validate(store_id)


@router.post("/fix", response_model=MappingFixResult)
@limiter.limit("10/minute")
def fix_mappings(request: Request, db: DbSession, body: MappingFixRequest):
    """Repair every cross-store and missing reference found for the scope."""
    validator = MappingValidator(db)
    report = validator.validate(body.store_id)
    result = validator.fix(report.defects)
    logger.info(
        f"Mapping fix via API{f' for store {body.store_id}' if body.store_id else ''}: "
        f"{result.fixed} fixed, {result.failed} failed"
    )
    return result


@router.get("/suggest", response_model=List[MatchSuggestion])
@limiter.limit("60/minute")
def suggest_mappings(
    request: Request,
    db: DbSession,
    store_id: int,
    ingredient_name: str = Query(..., min_length=1),
    unit: Optional[str] = None,
    limit: int = Query(5, ge=1, le=20),
):
    """Ranked inventory candidates for an ingredient, for interactive mapping."""
    if db.get(Store, store_id) is None:
        raise HTTPException(status_code=404, detail="Store not found")

    candidates = db.execute(
        select(InventoryItem)
        .where(InventoryItem.store_id == store_id, InventoryItem.active.is_(True))
        .order_by(InventoryItem.id)
    ).scalars().all()
    ranked = IngredientMatcher().suggest(ingredient_name, unit, candidates, limit=limit)
    return [
        MatchSuggestion(
            inventory_item_id=r.candidate.id,
            name=r.candidate.name,
            unit=r.candidate.unit,
            quantity=r.candidate.quantity,
            similarity=round(r.similarity, 4),
            score=round(r.score, 4),
        )
        for r in ranked
    ]
