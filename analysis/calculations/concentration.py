"""
Concentration calculation utilities.
Pure functions for HHI-based market-share metrics over a weighted distribution
(USD exposure per AVS, delegated USD per staker, stake per operator).
"""

from dataclasses import dataclass, asdict
from typing import Dict, Any, List

from analysis.calculations import stats


HHI_COMPETITIVE = 1500
HHI_MODERATELY_CONCENTRATED = 2500


class ConcentrationError(Exception):
    """Raised when concentration calculation fails."""
    pass


@dataclass(frozen=True)
class ConcentrationResult:
    """Concentration metrics for one weighted distribution."""
    hhi: float
    top1_pct: float
    top5_pct: float
    top10_pct: float
    total_entities: int
    effective_entities: float
    gini_coefficient: float = 0.0
    diversification_score: int = 0
    interpretation: str = "No data"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


EMPTY_RESULT = ConcentrationResult(
    hhi=0.0,
    top1_pct=0.0,
    top5_pct=0.0,
    top10_pct=0.0,
    total_entities=0,
    effective_entities=0.0,
)


def _positive_weights(weight_by_entity: Dict[str, float]) -> Dict[str, float]:
    """Drop zero weights; reject negative ones."""
    if any(w < 0 for w in weight_by_entity.values()):
        raise ConcentrationError("Negative weights not allowed")
    return {k: float(w) for k, w in weight_by_entity.items() if w > 0}


def percentage_shares(weight_by_entity: Dict[str, float]) -> List[float]:
    """
    Convert weights to percentage shares of the total, largest first.

    Args:
        weight_by_entity: Mapping of entity id to weight

    Returns:
        Shares in percent (summing to 100), sorted descending; empty when total is 0
    """
    weights = _positive_weights(weight_by_entity)
    total = sum(weights.values())
    if total == 0:
        return []
    return sorted((w / total * 100.0 for w in weights.values()), reverse=True)


def top_n_percentage(shares: List[float], n: int) -> float:
    """Sum of the n largest percentage shares."""
    return float(sum(sorted(shares, reverse=True)[:n]))


def diversification_score(weight_by_entity: Dict[str, float]) -> int:
    """
    Diversification score in [0, 100].

    Uses the fractional HHI (shares as proportions, Σ p_i² in [0, 1]), not the
    0-10000 HHI: score = round((1 - Σ p_i²) × 100). Empty input scores 0.
    """
    weights = _positive_weights(weight_by_entity)
    total = sum(weights.values())
    if total == 0:
        return 0

    normalized_hhi = sum((w / total) ** 2 for w in weights.values())
    return int(round((1 - normalized_hhi) * 100))


def concentration_interpretation(hhi: float, total_entities: int = 1) -> str:
    """
    Provide interpretation of an HHI value on the 0-10000 scale.

    Args:
        hhi: Herfindahl-Hirschman Index
        total_entities: Number of entities behind the index

    Returns:
        String interpretation of concentration level
    """
    if total_entities == 0:
        return "No data"
    elif hhi < HHI_COMPETITIVE:
        return "Competitive"
    elif hhi < HHI_MODERATELY_CONCENTRATED:
        return "Moderately concentrated"
    else:
        return "Highly concentrated"


def calculate_concentration(weight_by_entity: Dict[str, float]) -> ConcentrationResult:
    """
    Calculate complete concentration metrics for a weighted distribution.

    HHI = Σ share_i² with share_i in percent of total weight (0-10000).
    Effective entities = 10000 / HHI (0 when HHI is 0).

    Args:
        weight_by_entity: Mapping of entity id to weight (e.g. USD exposure)

    Returns:
        ConcentrationResult (all zero for empty or zero-weight input)

    Raises:
        ConcentrationError: If any weight is negative
    """
    shares = percentage_shares(weight_by_entity)
    if not shares:
        return EMPTY_RESULT

    hhi = stats.hhi(shares)
    effective = 10000.0 / hhi if hhi > 0 else 0.0

    return ConcentrationResult(
        hhi=hhi,
        top1_pct=top_n_percentage(shares, 1),
        top5_pct=top_n_percentage(shares, 5),
        top10_pct=top_n_percentage(shares, 10),
        total_entities=len(shares),
        effective_entities=effective,
        gini_coefficient=stats.gini(shares),
        diversification_score=diversification_score(weight_by_entity),
        interpretation=concentration_interpretation(hhi, len(shares)),
    )


def aggregate_weights(pairs: List[tuple]) -> Dict[str, float]:
    """
    Sum (entity_id, weight) pairs by entity.

    Args:
        pairs: Iterable of (entity_id, weight)

    Returns:
        Dictionary mapping entity id to total weight
    """
    weight_by_entity: Dict[str, float] = {}
    for entity_id, weight in pairs:
        weight_by_entity[entity_id] = weight_by_entity.get(entity_id, 0.0) + float(weight)
    return weight_by_entity
