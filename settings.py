"""
Environment configuration for the analytics engine.
Values come from the process environment (and a local .env file).
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


@dataclass
class Settings:
    """Runtime settings; validated on construction."""
    redis_url: str = 'redis://localhost:6379/0'
    db_path: str = './data/analytics.db'
    rate_limit_max_requests: int = 100
    rate_limit_window_s: int = 60
    cache_policy_path: Optional[str] = None
    trend_epsilon: float = 0.001
    commission_tolerance: float = 0.10
    metadata_timeout_s: float = 10.0
    max_date_range_days: int = 365
    pagination_min_limit: int = 1
    pagination_max_limit: int = 100
    log_level: str = 'INFO'

    def __post_init__(self):
        """Validate settings after initialization."""
        if self.rate_limit_max_requests <= 0:
            raise ValueError("RATE_LIMIT_MAX_REQUESTS must be positive")
        if self.rate_limit_window_s <= 0:
            raise ValueError("RATE_LIMIT_WINDOW_S must be positive")
        if self.trend_epsilon < 0:
            raise ValueError("TREND_EPSILON must be non-negative")
        if not 0 <= self.commission_tolerance < 1:
            raise ValueError("COMMISSION_TOLERANCE must be within [0, 1)")
        if self.metadata_timeout_s <= 0:
            raise ValueError("METADATA_TIMEOUT_S must be positive")
        if self.max_date_range_days <= 0:
            raise ValueError("MAX_DATE_RANGE_DAYS must be positive")
        if self.pagination_min_limit < 1:
            raise ValueError("PAGINATION_MIN_LIMIT must be at least 1")
        if self.pagination_max_limit < self.pagination_min_limit:
            raise ValueError("PAGINATION_MAX_LIMIT must not be below PAGINATION_MIN_LIMIT")

        self.log_level = self.log_level.upper()

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from environment variables, falling back to defaults."""
        return cls(
            redis_url=os.getenv('REDIS_URL', 'redis://localhost:6379/0'),
            db_path=os.getenv('ANALYTICS_DB_PATH', './data/analytics.db'),
            rate_limit_max_requests=int(os.getenv('RATE_LIMIT_MAX_REQUESTS', '100')),
            rate_limit_window_s=int(os.getenv('RATE_LIMIT_WINDOW_S', '60')),
            cache_policy_path=os.getenv('CACHE_POLICY_PATH') or None,
            trend_epsilon=float(os.getenv('TREND_EPSILON', '0.001')),
            commission_tolerance=float(os.getenv('COMMISSION_TOLERANCE', '0.10')),
            metadata_timeout_s=float(os.getenv('METADATA_TIMEOUT_S', '10')),
            max_date_range_days=int(os.getenv('MAX_DATE_RANGE_DAYS', '365')),
            pagination_min_limit=int(os.getenv('PAGINATION_MIN_LIMIT', '1')),
            pagination_max_limit=int(os.getenv('PAGINATION_MAX_LIMIT', '100')),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
        )
