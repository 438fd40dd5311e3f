"""
Risk classification utilities.
Maps 0-100 risk scores to levels and blends component scores.
"""

from typing import Optional


RISK_LOW_MAX = 33
RISK_MEDIUM_MAX = 66

RISK_LOW = 'low'
RISK_MEDIUM = 'medium'
RISK_HIGH = 'high'

# Component weights for the composite score
PERFORMANCE_WEIGHT = 0.4
ECONOMIC_WEIGHT = 0.3
NETWORK_POSITION_WEIGHT = 0.3


class RiskError(Exception):
    """Raised when a risk score is outside [0, 100]."""
    pass


def risk_level(score: Optional[float]) -> Optional[str]:
    """
    Classify a risk score.

    0-33 low, 34-66 medium, 67-100 high. Fractional scores are rounded first.

    Returns:
        Level string, or None when no score is available
    """
    if score is None:
        return None
    if score < 0 or score > 100:
        raise RiskError(f"Risk score must be within [0, 100], got {score}")

    rounded = round(score)
    if rounded <= RISK_LOW_MAX:
        return RISK_LOW
    elif rounded <= RISK_MEDIUM_MAX:
        return RISK_MEDIUM
    else:
        return RISK_HIGH


def composite_score(
    performance: Optional[float],
    economic: Optional[float],
    network_position: Optional[float]
) -> Optional[float]:
    """
    Weighted blend of component scores (0.4 / 0.3 / 0.3).

    Missing components are dropped and the remaining weights renormalised.

    Returns:
        Score in [0, 100], or None when every component is missing
    """
    parts = [
        (performance, PERFORMANCE_WEIGHT),
        (economic, ECONOMIC_WEIGHT),
        (network_position, NETWORK_POSITION_WEIGHT),
    ]
    present = [(value, weight) for value, weight in parts if value is not None]
    if not present:
        return None

    total_weight = sum(weight for _, weight in present)
    score = sum(value * weight for value, weight in present) / total_weight
    return min(max(score, 0.0), 100.0)
