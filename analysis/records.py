"""
Typed records for repository rows.
Pure mapping functions turn raw row dictionaries into immutable records.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional, Union

import pandas as pd


class RecordError(Exception):
    """Raised when a raw row cannot be mapped to a record."""
    pass


class CommissionScope(str, Enum):
    """Scope a commission rate applies to, least specific first."""
    PI = 'pi'
    AVS = 'avs'
    OPERATOR_SET = 'operator_set'


@dataclass(frozen=True)
class MetricSample:
    """One observation of a metric for an entity."""
    entity_id: str
    value: float
    weight: float = 1.0
    timestamp: Optional[date] = None


@dataclass(frozen=True)
class Allocation:
    operator_set_id: str
    avs_id: str
    strategy_id: str
    magnitude_usd: float
    allocated_fraction: float = 0.0


@dataclass(frozen=True)
class CommissionRate:
    scope: CommissionScope
    scope_id: Optional[str]
    current_bips: int
    activated_at: Optional[datetime]
    upcoming_bips: Optional[int] = None
    upcoming_activated_at: Optional[datetime] = None
    total_changes: int = 0


@dataclass(frozen=True)
class CommissionChange:
    scope: CommissionScope
    scope_id: Optional[str]
    old_bips: int
    new_bips: int
    changed_at: datetime
    activated_at: Optional[datetime] = None


@dataclass(frozen=True)
class NetworkBenchmarks:
    """Network-wide PI commission percentiles (bips)."""
    mean: float
    median: float
    p25: float
    p75: float
    p90: float
    snapshot_date: Optional[date] = None


@dataclass(frozen=True)
class OperatorSnapshot:
    operator_id: str
    snapshot_date: date
    tvs_usd: float
    delegator_count: int
    avs_count: int
    operational_days: int
    pi_bips: Optional[int] = None


@dataclass(frozen=True)
class OperatorProfile:
    """Latest state of one operator, as used for network-wide comparisons."""
    operator_id: str
    address: Optional[str]
    name: Optional[str]
    is_active: bool
    tvs_usd: float
    delegator_count: int
    avs_count: int
    operational_days: int
    risk_score: Optional[float] = None


@dataclass(frozen=True)
class RiskRecord:
    operator_id: str
    date: Optional[date]
    risk_score: Optional[float]
    confidence_score: Optional[float]
    performance_score: Optional[float]
    economic_score: Optional[float]
    network_position_score: Optional[float]
    slashing_event_count: int = 0


@dataclass(frozen=True)
class DelegatorPosition:
    staker_id: str
    strategy_id: str
    shares_usd: float


@dataclass(frozen=True)
class AvsRecord:
    avs_id: str
    address: Optional[str]
    metadata_uri: Optional[str] = None


# --- Value coercion helpers --- #
def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return value is pd.NaT


def _optional_float(value: Any) -> Optional[float]:
    return None if _is_missing(value) else float(value)


def _optional_int(value: Any) -> Optional[int]:
    return None if _is_missing(value) else int(value)


def _optional_str(value: Any) -> Optional[str]:
    return None if _is_missing(value) else str(value)


def parse_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    """Parse an ISO date (or datetime) value into a date."""
    if _is_missing(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_datetime(value: Union[str, date, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO / SQLite datetime value ('YYYY-MM-DD HH:MM:SS' or with 'T').

    Offset-aware values are converted to naive UTC.
    """
    if _is_missing(value):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = datetime.fromisoformat(str(value).replace(' ', 'T').replace('Z', '+00:00'))

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _require(row: Dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if _is_missing(row.get(f))]
    if missing:
        raise RecordError(f"Row missing required fields: {missing}")


# --- Row mappers --- #
def allocation_from_row(row: Dict[str, Any]) -> Allocation:
    _require(row, 'operator_set_id', 'avs_id', 'strategy_id')
    return Allocation(
        operator_set_id=str(row['operator_set_id']),
        avs_id=str(row['avs_id']),
        strategy_id=str(row['strategy_id']),
        magnitude_usd=_optional_float(row.get('magnitude_usd')) or 0.0,
        allocated_fraction=_optional_float(row.get('allocated_fraction')) or 0.0,
    )


def commission_rate_from_row(row: Dict[str, Any]) -> CommissionRate:
    _require(row, 'scope', 'current_bips')
    try:
        scope = CommissionScope(str(row['scope']).lower())
    except ValueError:
        raise RecordError(f"Unknown commission scope: {row['scope']}")

    bips = int(row['current_bips'])
    if not 0 <= bips <= 10000:
        raise RecordError(f"Commission bips out of range: {bips}")

    return CommissionRate(
        scope=scope,
        scope_id=_optional_str(row.get('scope_id')),
        current_bips=bips,
        activated_at=parse_datetime(row.get('activated_at')),
        upcoming_bips=_optional_int(row.get('upcoming_bips')),
        upcoming_activated_at=parse_datetime(row.get('upcoming_activated_at')),
        total_changes=_optional_int(row.get('total_changes')) or 0,
    )


def commission_change_from_row(row: Dict[str, Any]) -> CommissionChange:
    _require(row, 'scope', 'new_bips', 'changed_at')
    return CommissionChange(
        scope=CommissionScope(str(row['scope']).lower()),
        scope_id=_optional_str(row.get('scope_id')),
        old_bips=_optional_int(row.get('old_bips')) or 0,
        new_bips=int(row['new_bips']),
        changed_at=parse_datetime(row['changed_at']),
        activated_at=parse_datetime(row.get('activated_at')),
    )


def benchmarks_from_row(row: Optional[Dict[str, Any]]) -> Optional[NetworkBenchmarks]:
    """Map a benchmark row; None when the aggregation job has not produced one."""
    if row is None:
        return None
    _require(row, 'median_pi_bips')
    return NetworkBenchmarks(
        mean=_optional_float(row.get('mean_pi_bips')) or 0.0,
        median=float(row['median_pi_bips']),
        p25=_optional_float(row.get('p25_pi_bips')) or 0.0,
        p75=_optional_float(row.get('p75_pi_bips')) or 0.0,
        p90=_optional_float(row.get('p90_pi_bips')) or 0.0,
        snapshot_date=parse_date(row.get('snapshot_date')),
    )


def snapshot_from_row(row: Dict[str, Any]) -> OperatorSnapshot:
    _require(row, 'operator_id', 'snapshot_date')
    return OperatorSnapshot(
        operator_id=str(row['operator_id']),
        snapshot_date=parse_date(row['snapshot_date']),
        tvs_usd=_optional_float(row.get('tvs_usd')) or 0.0,
        delegator_count=_optional_int(row.get('delegator_count')) or 0,
        avs_count=_optional_int(row.get('avs_count')) or 0,
        operational_days=_optional_int(row.get('operational_days')) or 0,
        pi_bips=_optional_int(row.get('pi_bips')),
    )


def profile_from_row(row: Dict[str, Any]) -> OperatorProfile:
    _require(row, 'operator_id')
    return OperatorProfile(
        operator_id=str(row['operator_id']),
        address=_optional_str(row.get('address')),
        name=_optional_str(row.get('name')),
        is_active=bool(row.get('is_active') or False),
        tvs_usd=_optional_float(row.get('tvs_usd')) or 0.0,
        delegator_count=_optional_int(row.get('delegator_count')) or 0,
        avs_count=_optional_int(row.get('avs_count')) or 0,
        operational_days=_optional_int(row.get('operational_days')) or 0,
        risk_score=_optional_float(row.get('risk_score')),
    )


def risk_from_row(row: Dict[str, Any]) -> RiskRecord:
    _require(row, 'operator_id')
    return RiskRecord(
        operator_id=str(row['operator_id']),
        date=parse_date(row.get('date')),
        risk_score=_optional_float(row.get('risk_score')),
        confidence_score=_optional_float(row.get('confidence_score')),
        performance_score=_optional_float(row.get('performance_score')),
        economic_score=_optional_float(row.get('economic_score')),
        network_position_score=_optional_float(row.get('network_position_score')),
        slashing_event_count=_optional_int(row.get('slashing_event_count')) or 0,
    )


def position_from_row(row: Dict[str, Any]) -> DelegatorPosition:
    _require(row, 'staker_id', 'strategy_id')
    return DelegatorPosition(
        staker_id=str(row['staker_id']),
        strategy_id=str(row['strategy_id']),
        shares_usd=_optional_float(row.get('shares_usd')) or 0.0,
    )


def avs_from_row(row: Dict[str, Any]) -> AvsRecord:
    _require(row, 'avs_id')
    return AvsRecord(
        avs_id=str(row['avs_id']),
        address=_optional_str(row.get('address')),
        metadata_uri=_optional_str(row.get('metadata_uri')),
    )


def samples_from_snapshots(
    snapshots: List[OperatorSnapshot],
    field: str
) -> List[MetricSample]:
    """
    Build a time-ordered MetricSample series from daily snapshots.

    Args:
        snapshots: Operator snapshots (any order)
        field: Snapshot attribute to sample ('tvs_usd', 'delegator_count', ...)

    Returns:
        Samples sorted by timestamp ascending
    """
    samples = [
        MetricSample(
            entity_id=s.operator_id,
            value=float(getattr(s, field)),
            timestamp=s.snapshot_date,
        )
        for s in snapshots
    ]
    return sorted(samples, key=lambda s: s.timestamp)
