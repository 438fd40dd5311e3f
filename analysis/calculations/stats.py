"""
Numeric statistics primitives.
Pure functions shared by the concentration, volatility, commission and ranking calculators.
"""

import numpy as np
from typing import List, Sequence


class StatsError(Exception):
    """Raised when a statistic is requested with invalid parameters."""
    pass


def percentile(values: Sequence[float], p: float) -> float:
    """
    Calculate the p-th percentile with linear interpolation.

    Index = p/100 * (n - 1), interpolated between floor and ceil neighbours
    of the ascending-sorted values.

    Args:
        values: Sample values (any order)
        p: Percentile in [0, 100]

    Returns:
        Interpolated percentile (0.0 for empty input)

    Raises:
        StatsError: If p is outside [0, 100]
    """
    if p < 0 or p > 100:
        raise StatsError(f"Percentile must be within [0, 100], got {p}")

    if len(values) == 0:
        return 0.0

    sorted_values = np.sort(np.asarray(values, dtype=float))
    index = (p / 100.0) * (len(sorted_values) - 1)
    lower = int(np.floor(index))
    upper = int(np.ceil(index))
    weight = index - lower

    return float(sorted_values[lower] * (1 - weight) + sorted_values[upper] * weight)


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean, 0.0 for empty input."""
    if len(values) == 0:
        return 0.0
    return float(np.mean(np.asarray(values, dtype=float)))


def stddev(values: Sequence[float]) -> float:
    """
    Population standard deviation (divides by n, not n - 1).

    Args:
        values: Sample values

    Returns:
        Standard deviation (0.0 for empty input)
    """
    if len(values) == 0:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float), ddof=0))


def hhi(shares: Sequence[float]) -> float:
    """
    Calculate Herfindahl-Hirschman Index on the 0-10000 scale.

    Shares are normalised to percentages of their sum before squaring:
    HHI = Σ (100 * s_i / Σs)²

    Args:
        shares: Raw weights (USD exposure, delegated amount, ...)

    Returns:
        HHI in [0, 10000] (0.0 for empty or zero-sum input)
    """
    if len(shares) == 0:
        return 0.0

    arr = np.asarray(shares, dtype=float)
    total = arr.sum()
    if total == 0:
        return 0.0

    pct = arr / total * 100.0
    value = float(np.sum(pct ** 2))

    # Float rounding can push a monopoly a hair over the ceiling
    return min(max(value, 0.0), 10000.0)


def growth_rate(current: float, previous: float) -> float:
    """
    Percentage growth from previous to current.

    Formula: (current - previous) / previous × 100

    Returns 0.0 when previous is 0, which is indistinguishable from "no growth".
    """
    if previous == 0:
        return 0.0
    return (current - previous) / previous * 100.0


def moving_average(values: Sequence[float], window: int) -> List[float]:
    """
    Simple moving average over every complete window.

    Args:
        values: Series in chronological order
        window: Window length

    Returns:
        List of len(values) - window + 1 averages, or the input values unchanged
        when there are fewer values than the window

    Raises:
        StatsError: If window is not positive
    """
    if window <= 0:
        raise StatsError("Window must be positive")

    if len(values) < window:
        return [float(v) for v in values]

    arr = np.asarray(values, dtype=float)
    kernel = np.ones(window) / window
    return [float(v) for v in np.convolve(arr, kernel, mode='valid')]


def gini(values: Sequence[float]) -> float:
    """
    Gini coefficient of a non-negative distribution.

    0 = perfectly equal, approaching 1 = one entity holds everything.
    Returns 0.0 for fewer than 2 values or a zero total.
    """
    if len(values) < 2:
        return 0.0

    arr = np.sort(np.asarray(values, dtype=float))
    total = arr.sum()
    if total <= 0:
        return 0.0

    n = len(arr)
    index = np.arange(1, n + 1)
    return float((2 * np.sum(index * arr)) / (n * total) - (n + 1) / n)
