"""
Percentile ranking utilities.
Places one entity's metric values within the network population and
summarises a population's distribution.
"""

import bisect
from typing import Dict, Any, List, Optional, Sequence

import numpy as np

from analysis.calculations import stats
from analysis.records import OperatorProfile


RANKING_METRICS = (
    'tvs_usd',
    'delegator_count',
    'avs_count',
    'operational_days',
    'risk_score',
)

DEFAULT_BUCKETS = 10


class PercentileError(Exception):
    """Raised when ranking or distribution parameters are invalid."""
    pass


def rank(population: Sequence[float], target: float) -> float:
    """
    Rank-of-value percentile of target within population.

    Sorts ascending, finds the index of the first value >= target and returns
    index / len * 100, i.e. the share of the population strictly below the
    target. This is NOT the inverse CDF: rank([10, 20, 30, 40], 25) is 50 and
    a target above every value ranks 100.

    Args:
        population: Population values (any order)
        target: Value to place

    Returns:
        Percentile in [0, 100] (0.0 for an empty population)
    """
    if len(population) == 0:
        return 0.0

    ordered = sorted(float(v) for v in population)
    index = bisect.bisect_left(ordered, float(target))
    return index / len(ordered) * 100.0


def rank_entity(
    population: Sequence[OperatorProfile],
    target: OperatorProfile,
    metrics: Sequence[str] = RANKING_METRICS
) -> Dict[str, Optional[float]]:
    """
    Percentile of the target operator for each metric, rounded to 2 decimals.

    Operators with no value for a metric are left out of that metric's
    population; a target with no value gets None.

    Args:
        population: Network operators (target may or may not be included)
        target: Operator being ranked
        metrics: OperatorProfile attribute names

    Returns:
        Dictionary mapping metric to percentile or None
    """
    percentiles: Dict[str, Optional[float]] = {}
    for metric in metrics:
        if metric not in RANKING_METRICS:
            raise PercentileError(f"Unknown ranking metric: {metric}")

        target_value = getattr(target, metric)
        if target_value is None:
            percentiles[metric] = None
            continue

        values = [getattr(p, metric) for p in population]
        values = [v for v in values if v is not None]
        percentiles[metric] = round(rank(values, target_value), 2)

    return percentiles


def histogram(values: Sequence[float], buckets: int = DEFAULT_BUCKETS) -> List[Dict[str, Any]]:
    """
    Equal-width histogram between min and max.

    Each bucket covers [start, end) except the last, which includes the max.
    All values land in the first bucket when every value is equal.

    Returns:
        List of {'range_start', 'range_end', 'count'} dicts
    """
    if buckets <= 0:
        raise PercentileError("Bucket count must be positive")
    if len(values) == 0:
        return []

    arr = np.asarray(values, dtype=float)
    low = float(arr.min())
    high = float(arr.max())
    width = (high - low) / buckets

    counts = [0] * buckets
    for value in arr:
        if width == 0:
            index = 0
        else:
            index = min(int((value - low) / width), buckets - 1)
        counts[index] += 1

    return [
        {
            'range_start': low + i * width,
            'range_end': high if i == buckets - 1 else low + (i + 1) * width,
            'count': counts[i],
        }
        for i in range(buckets)
    ]


def distribution_summary(
    values: Sequence[float],
    buckets: int = DEFAULT_BUCKETS
) -> Dict[str, Any]:
    """
    Summary statistics and histogram of a population.

    Args:
        values: Population values
        buckets: Histogram bucket count

    Returns:
        Dictionary with count, min, p25, median, p75, p90, p95, p99, max,
        mean, std_dev and histogram (all zero for an empty population)
    """
    if len(values) == 0:
        summary = {key: 0.0 for key in
                   ('min', 'p25', 'median', 'p75', 'p90', 'p95', 'p99', 'max', 'mean', 'std_dev')}
        summary['count'] = 0
        summary['histogram'] = []
        return summary

    return {
        'count': len(values),
        'min': float(min(values)),
        'p25': stats.percentile(values, 25),
        'median': stats.percentile(values, 50),
        'p75': stats.percentile(values, 75),
        'p90': stats.percentile(values, 90),
        'p95': stats.percentile(values, 95),
        'p99': stats.percentile(values, 99),
        'max': float(max(values)),
        'mean': stats.mean(values),
        'std_dev': stats.stddev(values),
        'histogram': histogram(values, buckets),
    }
