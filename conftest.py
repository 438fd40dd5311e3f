"""
Shared test fixtures: an in-memory Redis double with a controllable clock and
a seeded reference SQLite database.
"""

import re
import sqlite3
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from caching.policy import load_cache_policy
from caching.store import CacheStore
from storage.loaders import (
    init_database,
    upsert_allocations,
    upsert_analytics,
    upsert_avs,
    upsert_benchmarks,
    upsert_commission_changes,
    upsert_commission_rates,
    upsert_delegator_positions,
    upsert_operators,
    upsert_snapshots,
)


class FakeClock:
    """Monotonic seconds that only move when a test advances them."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _glob_to_regex(pattern: str) -> re.Pattern:
    """Translate the subset of Redis glob syntax used for prefix scans."""
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == '\\' and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == '*':
            parts.append('.*')
        elif char == '?':
            parts.append('.')
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile('^' + ''.join(parts) + '$', re.DOTALL)


class FakeRedis:
    """
    Async in-memory stand-in for redis.asyncio.Redis (decode_responses=True).

    Set `fail = True` to make every call raise a redis ConnectionError, or
    `fail_next['expire'] = 1` to fail only the next call of one command.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.fail = False
        self.fail_next: Dict[str, int] = {}
        self.data: Dict[str, str] = {}
        self.expires_at: Dict[str, float] = {}

    def _check(self, command: Optional[str] = None) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")
        if self.fail_next.get(command, 0) > 0:
            self.fail_next[command] -= 1
            raise RedisConnectionError(f"Connection lost during {command}")

    def _purge(self, key: str) -> None:
        expiry = self.expires_at.get(key)
        if expiry is not None and self.clock() >= expiry:
            self.data.pop(key, None)
            self.expires_at.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        self._check()
        self._purge(key)
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        self._check()
        self.data[key] = str(value)
        if ex is not None:
            self.expires_at[key] = self.clock() + ex
        else:
            self.expires_at.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            self._purge(key)
            if key in self.data:
                del self.data[key]
                self.expires_at.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(self, match: Optional[str] = None, count: Optional[int] = None):
        self._check()
        regex = _glob_to_regex(match) if match else None
        for key in list(self.data):
            self._purge(key)
            if key in self.data and (regex is None or regex.match(key)):
                yield key

    async def ttl(self, key: str) -> int:
        self._check()
        self._purge(key)
        if key not in self.data:
            return -2
        if key not in self.expires_at:
            return -1
        return int(round(self.expires_at[key] - self.clock()))

    async def incr(self, key: str) -> int:
        self._check('incr')
        self._purge(key)
        value = int(self.data.get(key, '0')) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int, nx: bool = False) -> bool:
        self._check('expire')
        self._purge(key)
        if key not in self.data:
            return False
        if nx and key in self.expires_at:
            return False
        self.expires_at[key] = self.clock() + seconds
        return True

    def pipeline(self, transaction: bool = True) -> 'FakePipeline':
        return FakePipeline(self)

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        pass


class FakePipeline:
    """
    Queued MULTI/EXEC transaction on a FakeRedis.

    A failing backend rejects the whole transaction before any command applies.
    """

    def __init__(self, redis: FakeRedis):
        self.redis = redis
        self.commands: List[Tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> 'FakePipeline':
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.commands = []

    def incr(self, key: str) -> 'FakePipeline':
        self.commands.append(('incr', (key,), {}))
        return self

    def expire(self, key: str, seconds: int, nx: bool = False) -> 'FakePipeline':
        self.commands.append(('expire', (key, seconds), {'nx': nx}))
        return self

    async def execute(self) -> List[Any]:
        try:
            for name, _, _ in self.commands:
                self.redis._check(name)
        finally:
            queued, self.commands = self.commands, []
        results = []
        for name, args, kwargs in queued:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        return results


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def cache_store(fake_redis):
    return CacheStore(fake_redis)


@pytest.fixture
def cache_policy():
    return load_cache_policy()


# --- Reference database --- #
FIXED_NOW = datetime(2025, 3, 11, 0, 0, 0)


def seed_analytics_db(conn: sqlite3.Connection) -> None:
    """
    Seed a small network whose analytics are easy to verify by hand.

    0xop1 grows TVS by 100/day from 1000 (2025-03-01) to 1900 (2025-03-10);
    0xop2 and 0xop3 have one snapshot each; 0xop4 is inactive.
    """
    init_database(conn)

    upsert_operators(conn, [
        {'operator_id': '0xop1', 'address': '0xop1', 'name': 'Alpha Staking', 'is_active': 1},
        {'operator_id': '0xop2', 'address': '0xop2', 'name': 'Beta Nodes', 'is_active': 1},
        {'operator_id': '0xop3', 'address': '0xop3', 'name': 'Gamma Validators', 'is_active': 1},
        {'operator_id': '0xop4', 'address': '0xop4', 'name': 'Dormant Ops', 'is_active': 0},
    ])

    start = date(2025, 3, 1)
    snapshots = [
        {
            'operator_id': '0xop1',
            'snapshot_date': start + timedelta(days=i),
            'tvs_usd': 1000.0 + 100.0 * i,
            'delegator_count': 10 + i,
            'avs_count': 3,
            'operational_days': 100 + i,
            'pi_bips': 1000,
        }
        for i in range(10)
    ]
    snapshots += [
        {'operator_id': '0xop2', 'snapshot_date': date(2025, 3, 10), 'tvs_usd': 3000.0,
         'delegator_count': 5, 'avs_count': 1, 'operational_days': 50},
        {'operator_id': '0xop3', 'snapshot_date': date(2025, 3, 10), 'tvs_usd': 500.0,
         'delegator_count': 30, 'avs_count': 5, 'operational_days': 200},
        {'operator_id': '0xop4', 'snapshot_date': date(2025, 3, 10), 'tvs_usd': 10000.0,
         'delegator_count': 1, 'avs_count': 0, 'operational_days': 10},
    ]
    upsert_snapshots(conn, snapshots)

    upsert_analytics(conn, [
        {'operator_id': '0xop1', 'date': date(2025, 3, 9), 'risk_score': 50.0},
        {'operator_id': '0xop1', 'date': date(2025, 3, 10), 'risk_score': 40.0,
         'confidence_score': 90.0, 'performance_score': 30.0, 'economic_score': 50.0,
         'network_position_score': 45.0, 'slashing_event_count': 0},
        {'operator_id': '0xop2', 'date': date(2025, 3, 10), 'risk_score': None,
         'confidence_score': 60.0, 'performance_score': 80.0, 'economic_score': 70.0,
         'network_position_score': 90.0, 'slashing_event_count': 1},
        {'operator_id': '0xop3', 'date': date(2025, 3, 10), 'risk_score': 20.0},
    ])

    upsert_allocations(conn, [
        {'operator_id': '0xop1', 'operator_set_id': 'os1', 'avs_id': 'avs-a',
         'strategy_id': 'steth', 'magnitude_usd': 600.0, 'allocated_fraction': 0.5},
        {'operator_id': '0xop1', 'operator_set_id': 'os2', 'avs_id': 'avs-b',
         'strategy_id': 'steth', 'magnitude_usd': 300.0, 'allocated_fraction': 0.25},
        {'operator_id': '0xop1', 'operator_set_id': 'os3', 'avs_id': 'avs-c',
         'strategy_id': 'reth', 'magnitude_usd': 100.0, 'allocated_fraction': 0.4},
    ])

    upsert_commission_rates(conn, [
        {'operator_id': '0xop1', 'scope': 'pi', 'current_bips': 1000,
         'activated_at': datetime(2025, 1, 1), 'total_changes': 1},
        {'operator_id': '0xop1', 'scope': 'avs', 'scope_id': 'avs-b', 'current_bips': 500,
         'activated_at': datetime(2024, 6, 1), 'total_changes': 1},
        {'operator_id': '0xop1', 'scope': 'operator_set', 'scope_id': 'os1', 'current_bips': 200,
         'activated_at': datetime(2024, 6, 1)},
    ])

    upsert_commission_changes(conn, [
        {'operator_id': '0xop1', 'scope': 'pi', 'old_bips': 1500, 'new_bips': 1000,
         'changed_at': datetime(2025, 1, 1)},
        {'operator_id': '0xop1', 'scope': 'avs', 'scope_id': 'avs-b', 'old_bips': 0,
         'new_bips': 500, 'changed_at': datetime(2024, 6, 1)},
    ])

    upsert_delegator_positions(conn, [
        {'operator_id': '0xop1', 'staker_id': 's1', 'strategy_id': 'steth', 'shares_usd': 400.0},
        {'operator_id': '0xop1', 'staker_id': 's1', 'strategy_id': 'reth', 'shares_usd': 100.0},
        {'operator_id': '0xop1', 'staker_id': 's2', 'strategy_id': 'steth', 'shares_usd': 300.0},
        {'operator_id': '0xop1', 'staker_id': 's3', 'strategy_id': 'steth', 'shares_usd': 200.0},
    ])

    upsert_benchmarks(conn, [
        {'snapshot_date': date(2025, 3, 10), 'mean_pi_bips': 1100.0, 'median_pi_bips': 1000.0,
         'p25_pi_bips': 500.0, 'p75_pi_bips': 1500.0, 'p90_pi_bips': 2000.0},
    ])

    upsert_avs(conn, [
        {'avs_id': 'avs-a', 'address': '0xaaa', 'name': 'Avs A'},
        {'avs_id': 'avs-b', 'address': '0xbbb', 'name': 'Avs B'},
        {'avs_id': 'avs-c', 'address': '0xccc', 'name': 'Avs C'},
    ])


@pytest.fixture
def analytics_db(tmp_path):
    """Path to a seeded reference SQLite database."""
    db_path = tmp_path / 'analytics.db'
    conn = sqlite3.connect(str(db_path))
    try:
        seed_analytics_db(conn)
    finally:
        conn.close()
    return str(db_path)
