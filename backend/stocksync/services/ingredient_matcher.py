"""Ingredient Matcher: score inventory candidates against a recipe ingredient.

Scoring:
    similarity  Levenshtein ratio of the normalized names, in [0, 1]. Names
                that are known variations of the same ingredient score at
                least 0.9.
    +0.2        exact name (similarity == 1.0)
    +0.1        near-exact name (similarity > 0.9)
    +0.05       compatible units

The highest combined score wins; on a tie the earliest candidate wins. The
matcher never touches the database. Callers that act on a match are
responsible for auditing the decision.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Sequence

from stocksync.core.config import settings
from stocksync.services.normalizer import canonical_alias, normalize_name, units_compatible

logger = logging.getLogger(__name__)

EXACT_BONUS = 0.2
NEAR_EXACT_BONUS = 0.1
UNIT_BONUS = 0.05
ALIAS_SIMILARITY = 0.9


@dataclass
class MatchResult:
    """A scored candidate."""

    candidate: Any
    similarity: float
    score: float
    unit_compatible: bool
    reasons: List[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.candidate.name

    def to_audit(self) -> dict:
        return {
            "candidate_id": getattr(self.candidate, "id", None),
            "candidate_name": self.candidate.name,
            "similarity": round(self.similarity, 4),
            "score": round(self.score, 4),
            "unit_compatible": self.unit_compatible,
            "reasons": self.reasons,
        }


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def name_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Levenshtein ratio of the normalized names, lifted for known aliases."""
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return 0.0
    longest = max(len(na), len(nb))
    ratio = (longest - levenshtein_distance(na, nb)) / longest

    alias_a = canonical_alias(na)
    if alias_a is not None and alias_a == canonical_alias(nb):
        ratio = max(ratio, ALIAS_SIMILARITY)
    return ratio


class IngredientMatcher:
    """Deterministic fuzzy matcher for ingredient-to-inventory mapping."""

    def __init__(
        self,
        bulk_threshold: Optional[float] = None,
        suggestion_threshold: Optional[float] = None,
        template_threshold: Optional[float] = None,
    ):
        # Automated repairs need the stricter bar; interactive suggestions the looser one
        self.bulk_threshold = (
            bulk_threshold if bulk_threshold is not None else settings.matcher_bulk_threshold
        )
        self.suggestion_threshold = (
            suggestion_threshold
            if suggestion_threshold is not None
            else settings.matcher_suggestion_threshold
        )
        self.template_threshold = (
            template_threshold
            if template_threshold is not None
            else settings.template_match_threshold
        )

    def score(self, ingredient_name: str, unit: Optional[str], candidate: Any) -> MatchResult:
        similarity = name_similarity(ingredient_name, candidate.name)
        score = similarity
        reasons = [f"similarity {similarity:.3f}"]

        if similarity == 1.0:
            score += EXACT_BONUS
            reasons.append("exact name")
        elif similarity > 0.9:
            score += NEAR_EXACT_BONUS
            reasons.append("near-exact name")

        compatible = units_compatible(unit, getattr(candidate, "unit", None))
        if compatible:
            score += UNIT_BONUS
            reasons.append("compatible unit")

        return MatchResult(
            candidate=candidate,
            similarity=similarity,
            score=score,
            unit_compatible=compatible,
            reasons=reasons,
        )

    def match(
        self,
        ingredient_name: str,
        unit: Optional[str],
        candidates: Iterable[Any],
        threshold: Optional[float] = None,
    ) -> Optional[MatchResult]:
        """Return the best candidate scoring at least ``threshold``, else None.

        Defaults to the bulk threshold, since the automated callers are the
        ones that act on a match without review.
        """
        if threshold is None:
            threshold = self.bulk_threshold

        best: Optional[MatchResult] = None
        for candidate in candidates:
            result = self.score(ingredient_name, unit, candidate)
            if best is None or result.score > best.score:
                best = result

        if best is None or best.score < threshold:
            logger.debug(
                f"No match for '{ingredient_name}' at threshold {threshold}"
                + (f" (best '{best.name}' scored {best.score:.3f})" if best else "")
            )
            return None
        return best

    def suggest(
        self,
        ingredient_name: str,
        unit: Optional[str],
        candidates: Sequence[Any],
        threshold: Optional[float] = None,
        limit: int = 5,
    ) -> List[MatchResult]:
        """Ranked candidates for interactive mapping, best first."""
        if threshold is None:
            threshold = self.suggestion_threshold
        scored = [self.score(ingredient_name, unit, c) for c in candidates]
        ranked = sorted(
            (r for r in scored if r.score >= threshold),
            key=lambda r: r.score,
            reverse=True,
        )
        return ranked[:limit]

    def best_by_name(
        self,
        name: str,
        candidates: Iterable[Any],
        threshold: Optional[float] = None,
    ) -> Optional[MatchResult]:
        """Name-only match, used to pick a recipe template for a product."""
        if threshold is None:
            threshold = self.template_threshold

        best: Optional[MatchResult] = None
        for candidate in candidates:
            similarity = name_similarity(name, candidate.name)
            if best is None or similarity > best.similarity:
                best = MatchResult(
                    candidate=candidate,
                    similarity=similarity,
                    score=similarity,
                    unit_compatible=False,
                    reasons=[f"similarity {similarity:.3f}"],
                )

        if best is None or best.similarity < threshold:
            return None
        return best
