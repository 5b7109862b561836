"""Audit logging service.

Every automated decision that changes a mapping (a fuzzy match acted on, an
inventory item created to satisfy a recipe, a recipe instantiated from a
template) is written here, inside the caller's transaction, so the decision
and its audit row commit or roll back together.
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from stocksync.models.audit import AuditLogEntry
from stocksync.services.ingredient_matcher import MatchResult

logger = logging.getLogger("audit")


def log_action(
    db: Session,
    action: str,
    entity_type: str = "",
    entity_id: Any = "",
    details: Optional[dict[str, Any]] = None,
    actor: str = "system",
) -> AuditLogEntry:
    """Write an audit log entry.

    Args:
        db: The caller's session. The entry is flushed, never committed.
        action: The action performed (match_applied, item_created, ...)
        entity_type: Type of entity affected (recipe_ingredient, recipe, ...)
        entity_id: ID of the affected entity
        details: Inputs, scores and the chosen candidate
        actor: Who made the decision; automated repairs use "system"
    """
    entry = AuditLogEntry(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id not in (None, "") else "",
        actor=actor,
        details=details or {},
    )
    db.add(entry)
    db.flush()
    logger.info(f"{action} {entity_type}:{entity_id} {details or {}}")
    return entry


def log_match_decision(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Any,
    ingredient_name: str,
    unit: Optional[str],
    threshold: float,
    match: Optional[MatchResult],
    **extra: Any,
) -> AuditLogEntry:
    """Record a matcher decision with its inputs, score and chosen candidate."""
    details: dict[str, Any] = {
        "ingredient_name": ingredient_name,
        "unit": unit,
        "threshold": threshold,
        "match": match.to_audit() if match else None,
    }
    details.update(extra)
    return log_action(db, action, entity_type, entity_id, details)
