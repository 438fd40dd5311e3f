"""
Guardrails for the analytics engine - request validation and result checks.
Caller-supplied ranges are rejected before any I/O; computed payloads are
checked for non-finite numbers before they are cached.
"""

import math
from datetime import date
from typing import Any, Iterable, Optional, Tuple


DEFAULT_MAX_RANGE_DAYS = 365
DEFAULT_MIN_LIMIT = 1
DEFAULT_MAX_LIMIT = 100


class EntityNotFoundError(Exception):
    """Raised when a requested entity is absent from the repository."""
    pass


class InvalidRangeError(Exception):
    """Raised when caller-supplied bounds or selectors violate configured limits."""
    pass


class DataQualityError(Exception):
    """Raised when a computed payload holds values that must not be served."""
    pass


def validate_date_range(
    date_from: date,
    date_to: date,
    max_days: int = DEFAULT_MAX_RANGE_DAYS
) -> int:
    """
    Validate an inclusive date range.

    Args:
        date_from: First day
        date_to: Last day
        max_days: Longest allowed span in days

    Returns:
        Span in days

    Raises:
        InvalidRangeError: If the range is reversed or longer than max_days
    """
    if date_from > date_to:
        raise InvalidRangeError(
            f"date_from ({date_from}) must not be after date_to ({date_to})"
        )

    span = (date_to - date_from).days
    if span > max_days:
        raise InvalidRangeError(
            f"Date range of {span} days exceeds the maximum of {max_days} days"
        )
    return span


def validate_pagination(
    limit: int,
    offset: int,
    min_limit: int = DEFAULT_MIN_LIMIT,
    max_limit: int = DEFAULT_MAX_LIMIT
) -> Tuple[int, int]:
    """
    Validate list pagination bounds.

    Raises:
        InvalidRangeError: If limit is outside [min_limit, max_limit] or offset is negative
    """
    if limit < min_limit or limit > max_limit:
        raise InvalidRangeError(
            f"limit must be within [{min_limit}, {max_limit}], got {limit}"
        )
    if offset < 0:
        raise InvalidRangeError(f"offset must be non-negative, got {offset}")
    return limit, offset


def validate_selector(value: str, allowed: Iterable[str], name: str) -> str:
    """
    Validate a metric/type selector against its allowed values.

    Raises:
        InvalidRangeError: If value is not allowed
    """
    allowed = tuple(allowed)
    if value not in allowed:
        raise InvalidRangeError(f"Unknown {name} '{value}', expected one of {list(allowed)}")
    return value


def validate_numeric_result(payload: Any, path: str = 'result') -> None:
    """
    Check that every number in a computed payload is finite.

    Walks nested dicts and lists; None is acceptable for missing data.

    Raises:
        DataQualityError: If a NaN or infinite value is found
    """
    if payload is None or isinstance(payload, bool):
        return

    if isinstance(payload, (int, float)):
        if math.isnan(payload):
            raise DataQualityError(f"NaN value found in {path}")
        if math.isinf(payload):
            raise DataQualityError(f"Infinite value found in {path}")
        return

    if isinstance(payload, dict):
        for key, value in payload.items():
            validate_numeric_result(value, f"{path}.{key}")
    elif isinstance(payload, (list, tuple)):
        for i, value in enumerate(payload):
            validate_numeric_result(value, f"{path}[{i}]")


def require_found(row: Optional[Any], entity: str, entity_id: str) -> Any:
    """
    Return row, or raise when the repository found nothing.

    Raises:
        EntityNotFoundError: If row is None
    """
    if row is None:
        raise EntityNotFoundError(f"{entity} not found: {entity_id}")
    return row
