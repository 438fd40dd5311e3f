"""
Volatility calculation utilities.
Pure functions for trailing-window volatility, coefficient of variation and
regression-based trend classification over a daily metric series.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Any, List, Sequence, Tuple

import numpy as np
import pandas as pd

from analysis.calculations import stats
from analysis.records import MetricSample


DEFAULT_WINDOWS = (7, 30, 90)
TREND_WINDOW_DAYS = 30
DEFAULT_TREND_EPSILON = 0.001

TREND_INCREASING = 'increasing'
TREND_DECREASING = 'decreasing'
TREND_STABLE = 'stable'


class VolatilityError(Exception):
    """Raised when volatility calculation fails."""
    pass


@dataclass(frozen=True)
class VolatilityResult:
    stddev_7d: float
    stddev_30d: float
    stddev_90d: float
    coefficient_of_variation: float
    mean: float
    trend_direction: str = TREND_STABLE
    trend_strength: float = 0.0
    data_points: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


EMPTY_RESULT = VolatilityResult(
    stddev_7d=0.0,
    stddev_30d=0.0,
    stddev_90d=0.0,
    coefficient_of_variation=0.0,
    mean=0.0,
)


def to_series(samples: Sequence[MetricSample]) -> pd.Series:
    """
    Convert samples to a date-indexed series sorted ascending.

    Raises:
        VolatilityError: If any sample has no timestamp
    """
    if any(s.timestamp is None for s in samples):
        raise VolatilityError("Every sample needs a timestamp")

    series = pd.Series(
        [float(s.value) for s in samples],
        index=pd.to_datetime([s.timestamp for s in samples]),
        dtype=float,
    )
    return series.sort_index()


def trailing_window(series: pd.Series, days: int) -> pd.Series:
    """
    Values dated within the trailing `days` days ending at the latest date.

    Fewer available points simply yield a shorter window.
    """
    if series.empty:
        return series
    if days <= 0:
        raise VolatilityError("Window must be positive")

    cutoff = series.index.max() - pd.Timedelta(days=days)
    return series[series.index > cutoff]


def window_stddev(window: pd.Series) -> float:
    """Population stddev of a window; 0 when it has fewer than 2 points."""
    if len(window) < 2:
        return 0.0
    return stats.stddev(window.to_numpy())


def coefficient_of_variation(std: float, mean_value: float) -> float:
    """CV = stddev / |mean|, 0 when the mean is 0."""
    if mean_value == 0:
        return 0.0
    return std / abs(mean_value)


def linear_trend(
    window: pd.Series,
    epsilon: float = DEFAULT_TREND_EPSILON
) -> Tuple[str, float]:
    """
    Classify the trend of a window by least-squares slope.

    The slope (value change per day) is taken relative to the window mean so
    epsilon is scale-free; with a zero mean the raw slope is used.

    Args:
        window: Date-indexed values
        epsilon: Relative slope magnitude below which the trend is stable

    Returns:
        Tuple of (direction, strength) where strength is |pearson r| in [0, 1]
    """
    if len(window) < 2:
        return TREND_STABLE, 0.0

    x = ((window.index - window.index.min()) / pd.Timedelta(days=1)).to_numpy(dtype=float)
    y = window.to_numpy(dtype=float)

    if np.all(x == x[0]):
        return TREND_STABLE, 0.0

    slope, _ = np.polyfit(x, y, 1)
    window_mean = float(np.mean(y))
    relative_slope = slope / abs(window_mean) if window_mean != 0 else slope

    if np.std(y) == 0:
        strength = 0.0
    else:
        strength = float(abs(np.corrcoef(x, y)[0, 1]))

    if abs(relative_slope) < epsilon:
        return TREND_STABLE, strength
    elif relative_slope > 0:
        return TREND_INCREASING, strength
    else:
        return TREND_DECREASING, strength


def calculate_volatility(
    samples: Sequence[MetricSample],
    windows: Sequence[int] = DEFAULT_WINDOWS,
    epsilon: float = DEFAULT_TREND_EPSILON
) -> VolatilityResult:
    """
    Calculate trailing-window volatility metrics for one entity's series.

    CoV divides the longest window's stddev by the magnitude of its mean, so it
    is never negative; `mean` itself keeps the sign of the series.

    Args:
        samples: Daily samples (any order, each with a timestamp)
        windows: Short, medium and long window lengths in days
        epsilon: Stable-trend threshold for the 30-day regression slope

    Returns:
        VolatilityResult (all zero with fewer than 2 data points)
    """
    if len(windows) != 3:
        raise VolatilityError(f"Expected three windows, got {len(windows)}")

    if len(samples) < 2:
        return EMPTY_RESULT

    series = to_series(samples)

    stddevs: List[float] = []
    for days in windows:
        stddevs.append(window_stddev(trailing_window(series, days)))

    longest = trailing_window(series, max(windows))
    longest_std = window_stddev(longest)
    longest_mean = stats.mean(longest.to_numpy())

    direction, strength = linear_trend(trailing_window(series, TREND_WINDOW_DAYS), epsilon)

    return VolatilityResult(
        stddev_7d=stddevs[0],
        stddev_30d=stddevs[1],
        stddev_90d=stddevs[2],
        coefficient_of_variation=coefficient_of_variation(longest_std, longest_mean),
        mean=longest_mean,
        trend_direction=direction,
        trend_strength=strength,
        data_points=len(series),
    )
