"""
Tests for loader functions - idempotent SQLite upserts.
Uses in-memory SQLite for fast, isolated tests.
"""

import pytest
import sqlite3
from datetime import date, datetime

from storage.loaders import (
    init_database,
    get_connection,
    upsert_operators,
    upsert_snapshots,
    upsert_allocations,
    upsert_commission_rates,
    upsert_commission_changes,
    upsert_benchmarks,
)


@pytest.fixture
def in_memory_db():
    """Create in-memory SQLite database for testing."""
    conn = sqlite3.connect(':memory:')
    init_database(conn)
    return conn


class TestSchema:

    def test_init_is_idempotent(self, in_memory_db):
        init_database(in_memory_db)

        tables = {
            row[0] for row in in_memory_db.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
        }
        assert {'operators', 'operator_snapshots', 'operator_analytics', 'allocations',
                'commission_rates', 'commission_changes', 'delegator_positions',
                'network_benchmarks', 'avs'} <= tables

    def test_get_connection_uses_wal(self, tmp_path):
        conn = get_connection(str(tmp_path / 'test.db'))
        try:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        finally:
            conn.close()
        assert mode.lower() == 'wal'


class TestSnapshotLoader:

    def test_insert_then_update(self, in_memory_db):
        row = {'operator_id': '0xop1', 'snapshot_date': date(2025, 3, 1), 'tvs_usd': 1000.0,
               'delegator_count': 10, 'avs_count': 2, 'operational_days': 5}

        assert upsert_snapshots(in_memory_db, [row]) == (1, 0)
        assert upsert_snapshots(in_memory_db, [{**row, 'tvs_usd': 1100.0}]) == (0, 1)

        stored = in_memory_db.execute(
            "SELECT snapshot_date, tvs_usd FROM operator_snapshots"
        ).fetchall()
        assert stored == [('2025-03-01', 1100.0)]

    def test_defaults_fill_missing_counts(self, in_memory_db):
        upsert_snapshots(in_memory_db, [{'operator_id': '0xop1', 'snapshot_date': date(2025, 3, 1)}])

        row = in_memory_db.execute(
            "SELECT tvs_usd, delegator_count, pi_bips FROM operator_snapshots"
        ).fetchone()
        assert row == (0.0, 0, None)

    def test_empty_rows(self, in_memory_db):
        assert upsert_snapshots(in_memory_db, []) == (0, 0)


class TestOperatorLoader:

    def test_active_by_default(self, in_memory_db):
        upsert_operators(in_memory_db, [{'operator_id': '0xop1', 'name': 'Alpha'}])
        assert in_memory_db.execute("SELECT is_active FROM operators").fetchone()[0] == 1


class TestCommissionLoaders:

    def test_pi_rate_stored_with_empty_scope_id(self, in_memory_db):
        rows = [{'operator_id': '0xop1', 'scope': 'pi', 'current_bips': 1000,
                 'activated_at': datetime(2025, 1, 1)}]

        assert upsert_commission_rates(in_memory_db, rows) == (1, 0)
        assert upsert_commission_rates(in_memory_db, [{**rows[0], 'current_bips': 900}]) == (0, 1)

        stored = in_memory_db.execute(
            "SELECT scope_id, current_bips, activated_at FROM commission_rates"
        ).fetchall()
        assert stored == [('', 900, '2025-01-01T00:00:00')]

    def test_bips_check_constraint(self, in_memory_db):
        with pytest.raises(sqlite3.IntegrityError):
            upsert_commission_rates(in_memory_db, [
                {'operator_id': '0xop1', 'scope': 'pi', 'current_bips': 20000}
            ])

    def test_unknown_scope_rejected(self, in_memory_db):
        with pytest.raises(sqlite3.IntegrityError):
            upsert_commission_rates(in_memory_db, [
                {'operator_id': '0xop1', 'scope': 'global', 'current_bips': 100}
            ])

    def test_changes_keyed_by_timestamp(self, in_memory_db):
        rows = [
            {'operator_id': '0xop1', 'scope': 'pi', 'old_bips': 1500, 'new_bips': 1000,
             'changed_at': datetime(2025, 1, 1)},
            {'operator_id': '0xop1', 'scope': 'pi', 'old_bips': 1000, 'new_bips': 800,
             'changed_at': datetime(2025, 2, 1)},
        ]

        assert upsert_commission_changes(in_memory_db, rows) == (2, 0)
        assert upsert_commission_changes(in_memory_db, rows) == (0, 2)


class TestAllocationLoader:

    def test_fraction_check_constraint(self, in_memory_db):
        with pytest.raises(sqlite3.IntegrityError):
            upsert_allocations(in_memory_db, [
                {'operator_id': '0xop1', 'operator_set_id': 'os1', 'avs_id': 'avs-a',
                 'strategy_id': 'steth', 'magnitude_usd': 10.0, 'allocated_fraction': 1.5}
            ])

    def test_benchmarks_upsert(self, in_memory_db):
        row = {'snapshot_date': date(2025, 3, 10), 'median_pi_bips': 1000.0}
        assert upsert_benchmarks(in_memory_db, [row]) == (1, 0)
        assert upsert_benchmarks(in_memory_db, [{**row, 'median_pi_bips': 900.0}]) == (0, 1)
