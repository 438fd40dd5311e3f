"""
Commission impact calculations.
Resolves the effective commission an operator charges on each allocation and
blends it into a USD-weighted exposure compared against network benchmarks.
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional, Sequence, Tuple

from analysis.records import (
    Allocation,
    CommissionChange,
    CommissionRate,
    CommissionScope,
    NetworkBenchmarks,
)


DEFAULT_TOLERANCE = 0.10
BEHAVIOR_LOOKBACK_DAYS = 365

COMPARISON_LOWER = 'lower'
COMPARISON_SIMILAR = 'similar'
COMPARISON_HIGHER = 'higher'

SOURCES = ('pi', 'avs', 'operator_set')


class CommissionError(Exception):
    """Raised when commission analysis fails."""
    pass


@dataclass(frozen=True)
class CommissionImpact:
    """USD-weighted commission exposure across an operator's allocations."""
    has_pi_commission: bool
    weighted_average_commission_bips: float
    weighted_average_commission_pct: str
    total_allocated_usd: float
    allocation_by_commission_source: Dict[str, Dict[str, float]] = field(default_factory=dict)
    vs_network_average: Optional[str] = None
    percentile_rank: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _empty_breakdown() -> Dict[str, Dict[str, float]]:
    return {source: {'usd_amount': 0.0, 'pct_of_total': 0.0} for source in SOURCES}


def empty_impact() -> CommissionImpact:
    """Result for an operator with no commission rates configured."""
    return CommissionImpact(
        has_pi_commission=False,
        weighted_average_commission_bips=0.0,
        weighted_average_commission_pct=format_pct(0.0),
        total_allocated_usd=0.0,
        allocation_by_commission_source=_empty_breakdown(),
    )


def format_pct(bips: float) -> str:
    """Render bips as a two-decimal percentage string (250 -> '2.50')."""
    return f"{bips / 100:.2f}"


def _latest(rates: Sequence[CommissionRate]) -> CommissionRate:
    # Rates without an activation time sort first
    return max(rates, key=lambda r: r.activated_at or datetime.min)


def build_rate_maps(
    rates: Sequence[CommissionRate]
) -> Tuple[Optional[CommissionRate], Dict[str, int], Dict[str, int]]:
    """
    Split rates by scope.

    Args:
        rates: All commission rates of one operator

    Returns:
        Tuple of (pi_rate or None, avs_id -> bips, operator_set_id -> bips)
    """
    pi_rates = [r for r in rates if r.scope == CommissionScope.PI]
    pi_rate = _latest(pi_rates) if pi_rates else None

    avs_map: Dict[str, int] = {}
    set_map: Dict[str, int] = {}
    for rate in rates:
        if rate.scope_id is None:
            continue
        if rate.scope == CommissionScope.AVS:
            avs_map[rate.scope_id.lower()] = rate.current_bips
        elif rate.scope == CommissionScope.OPERATOR_SET:
            set_map[rate.scope_id.lower()] = rate.current_bips

    return pi_rate, avs_map, set_map


def resolve_effective_rate(
    allocation: Allocation,
    pi_bips: int,
    avs_map: Dict[str, int],
    set_map: Dict[str, int]
) -> Tuple[int, str]:
    """
    Effective commission for one allocation, most specific scope first.

    Returns:
        Tuple of (bips, source) where source is 'operator_set', 'avs' or 'pi'
    """
    set_id = allocation.operator_set_id.lower()
    if set_id in set_map:
        return set_map[set_id], 'operator_set'

    avs_id = allocation.avs_id.lower()
    if avs_id in avs_map:
        return avs_map[avs_id], 'avs'

    return pi_bips, 'pi'


def compare_to_network(
    bips: float,
    median: float,
    tolerance: float = DEFAULT_TOLERANCE
) -> str:
    """
    Classify a rate against the network median with a ±tolerance band.

    Args:
        bips: Operator rate
        median: Network median rate
        tolerance: Relative band half-width (0.10 = ±10%)

    Returns:
        'lower', 'similar' or 'higher'
    """
    if tolerance < 0:
        raise CommissionError(f"Tolerance must be non-negative, got {tolerance}")

    if bips < median * (1 - tolerance):
        return COMPARISON_LOWER
    elif bips > median * (1 + tolerance):
        return COMPARISON_HIGHER
    else:
        return COMPARISON_SIMILAR


def bucket_percentile_rank(bips: float, benchmarks: NetworkBenchmarks) -> int:
    """
    Coarse rank of a rate among network operators.

    Lower commission ranks higher. Only one of {75, 50, 25, 10, 5} is ever
    returned, so this must not be read as an exact percentile.
    """
    if bips <= benchmarks.p25:
        return 75
    elif bips <= benchmarks.median:
        return 50
    elif bips <= benchmarks.p75:
        return 25
    elif bips <= benchmarks.p90:
        return 10
    else:
        return 5


def analyze_commission_impact(
    allocations: Sequence[Allocation],
    rates: Sequence[CommissionRate],
    benchmarks: Optional[NetworkBenchmarks],
    tolerance: float = DEFAULT_TOLERANCE
) -> CommissionImpact:
    """
    Compute USD-weighted commission exposure for one operator.

    Args:
        allocations: Operator allocations (non-positive magnitudes are ignored)
        rates: Commission rates across PI, AVS and operator-set scopes
        benchmarks: Network PI benchmarks, or None when unavailable
        tolerance: Band used for the network comparison

    Returns:
        CommissionImpact; the empty state when no rates exist at all
    """
    if not rates:
        return empty_impact()

    pi_rate, avs_map, set_map = build_rate_maps(rates)
    pi_bips = pi_rate.current_bips if pi_rate else 0

    weighted_sum = 0.0
    total_usd = 0.0
    usd_by_source = {source: 0.0 for source in SOURCES}

    for allocation in allocations:
        if allocation.magnitude_usd <= 0:
            continue

        bips, source = resolve_effective_rate(allocation, pi_bips, avs_map, set_map)
        weighted_sum += allocation.magnitude_usd * bips
        total_usd += allocation.magnitude_usd
        usd_by_source[source] += allocation.magnitude_usd

    if total_usd > 0:
        weighted_average = weighted_sum / total_usd
    else:
        weighted_average = float(pi_bips)

    breakdown = {}
    for source in SOURCES:
        usd = usd_by_source[source]
        pct = round(usd / total_usd * 100, 2) if total_usd > 0 else 0.0
        breakdown[source] = {'usd_amount': usd, 'pct_of_total': pct}

    comparison = None
    rank = None
    if benchmarks is not None:
        comparison = compare_to_network(weighted_average, benchmarks.median, tolerance)
        rank = bucket_percentile_rank(weighted_average, benchmarks)

    return CommissionImpact(
        has_pi_commission=pi_rate is not None,
        weighted_average_commission_bips=weighted_average,
        weighted_average_commission_pct=format_pct(weighted_average),
        total_allocated_usd=total_usd,
        allocation_by_commission_source=breakdown,
        vs_network_average=comparison,
        percentile_rank=rank,
    )


def _rate_dict(rate: CommissionRate) -> Dict[str, Any]:
    return {
        'scope_id': rate.scope_id,
        'current_bips': rate.current_bips,
        'current_pct': format_pct(rate.current_bips),
        'activated_at': rate.activated_at.isoformat() if rate.activated_at else None,
        'upcoming_bips': rate.upcoming_bips,
        'upcoming_activated_at': (
            rate.upcoming_activated_at.isoformat() if rate.upcoming_activated_at else None
        ),
        'total_changes': rate.total_changes,
    }


def commission_overview(rates: Sequence[CommissionRate]) -> Dict[str, Any]:
    """Group rates into PI, per-AVS and per-operator-set sections."""
    pi_rate, _, _ = build_rate_maps(rates)

    avs_rates = sorted(
        (r for r in rates if r.scope == CommissionScope.AVS),
        key=lambda r: r.scope_id or ''
    )
    set_rates = sorted(
        (r for r in rates if r.scope == CommissionScope.OPERATOR_SET),
        key=lambda r: r.scope_id or ''
    )

    return {
        'pi_commission': _rate_dict(pi_rate) if pi_rate else None,
        'avs_commissions': [_rate_dict(r) for r in avs_rates],
        'operator_set_commissions': [_rate_dict(r) for r in set_rates],
    }


def behavior_profile(
    rates: Sequence[CommissionRate],
    history: Sequence[CommissionChange],
    as_of: datetime
) -> Dict[str, Any]:
    """
    Summarise how an operator has changed its commission over time.

    Args:
        rates: Current commission rates
        history: Past commission changes (any order)
        as_of: Reference time (naive UTC)

    Returns:
        Dictionary with days_since_last_change, changes_last_12m,
        max_historical_bips and is_change_pending
    """
    if history:
        last_change = max(c.changed_at for c in history)
    else:
        activations = [r.activated_at for r in rates if r.activated_at is not None]
        last_change = max(activations) if activations else None

    days_since = max((as_of - last_change).days, 0) if last_change else 0

    cutoff = as_of - timedelta(days=BEHAVIOR_LOOKBACK_DAYS)
    recent_changes = sum(1 for c in history if c.changed_at >= cutoff)

    all_bips: List[int] = [r.current_bips for r in rates]
    for change in history:
        all_bips.extend([change.old_bips, change.new_bips])

    pending = any(
        r.upcoming_bips is not None
        and (r.upcoming_activated_at is None or r.upcoming_activated_at > as_of)
        for r in rates
    )

    return {
        'days_since_last_change': days_since,
        'changes_last_12m': recent_changes,
        'max_historical_bips': max(all_bips) if all_bips else 0,
        'is_change_pending': pending,
    }
