"""
Database loaders - idempotent upsert functions for SQLite.
Reference schema for the analytics read interface, used for local runs and tests.
"""

import sqlite3
from datetime import date, datetime
from typing import Dict, Any, List, Optional, Sequence, Tuple


def init_database(conn: sqlite3.Connection) -> None:
    """
    Initialize database with required tables.
    Idempotent - safe to call multiple times.

    Args:
        conn: SQLite connection
    """
    conn.execute("PRAGMA foreign_keys = ON")

    conn.execute("""
        CREATE TABLE IF NOT EXISTS operators (
            operator_id TEXT PRIMARY KEY,
            address TEXT,
            name TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            registered_at DATETIME
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS operator_snapshots (
            operator_id TEXT NOT NULL,
            snapshot_date DATE NOT NULL,
            tvs_usd REAL NOT NULL DEFAULT 0,
            delegator_count INTEGER NOT NULL DEFAULT 0,
            avs_count INTEGER NOT NULL DEFAULT 0,
            operational_days INTEGER NOT NULL DEFAULT 0,
            pi_bips INTEGER,
            PRIMARY KEY (operator_id, snapshot_date)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS operator_analytics (
            operator_id TEXT NOT NULL,
            date DATE NOT NULL,
            risk_score REAL,
            confidence_score REAL,
            performance_score REAL,
            economic_score REAL,
            network_position_score REAL,
            slashing_event_count INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (operator_id, date)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS allocations (
            operator_id TEXT NOT NULL,
            operator_set_id TEXT NOT NULL,
            avs_id TEXT NOT NULL,
            strategy_id TEXT NOT NULL,
            magnitude_usd REAL NOT NULL DEFAULT 0,
            allocated_fraction REAL NOT NULL DEFAULT 0
                CHECK(allocated_fraction >= 0 AND allocated_fraction <= 1),
            PRIMARY KEY (operator_id, operator_set_id, strategy_id)
        )
    """)

    # PI rates use scope_id '' so the primary key stays NOT NULL
    conn.execute("""
        CREATE TABLE IF NOT EXISTS commission_rates (
            operator_id TEXT NOT NULL,
            scope TEXT NOT NULL CHECK(scope IN ('pi', 'avs', 'operator_set')),
            scope_id TEXT NOT NULL DEFAULT '',
            current_bips INTEGER NOT NULL CHECK(current_bips >= 0 AND current_bips <= 10000),
            activated_at DATETIME,
            upcoming_bips INTEGER,
            upcoming_activated_at DATETIME,
            total_changes INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (operator_id, scope, scope_id)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS commission_changes (
            operator_id TEXT NOT NULL,
            scope TEXT NOT NULL CHECK(scope IN ('pi', 'avs', 'operator_set')),
            scope_id TEXT NOT NULL DEFAULT '',
            old_bips INTEGER,
            new_bips INTEGER NOT NULL,
            changed_at DATETIME NOT NULL,
            activated_at DATETIME,
            PRIMARY KEY (operator_id, scope, scope_id, changed_at)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS delegator_positions (
            operator_id TEXT NOT NULL,
            staker_id TEXT NOT NULL,
            strategy_id TEXT NOT NULL,
            shares_usd REAL NOT NULL DEFAULT 0,
            PRIMARY KEY (operator_id, staker_id, strategy_id)
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS network_benchmarks (
            snapshot_date DATE PRIMARY KEY,
            mean_pi_bips REAL,
            median_pi_bips REAL NOT NULL,
            p25_pi_bips REAL,
            p75_pi_bips REAL,
            p90_pi_bips REAL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS avs (
            avs_id TEXT PRIMARY KEY,
            address TEXT,
            name TEXT,
            metadata_uri TEXT
        )
    """)

    conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_date ON operator_snapshots(snapshot_date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_analytics_date ON operator_analytics(date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_allocations_avs ON allocations(avs_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_positions_staker ON delegator_positions(staker_id)")

    conn.commit()


def get_connection(db_path: str = './data/analytics.db') -> sqlite3.Connection:
    """
    Get SQLite connection with proper configuration.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Configured SQLite connection
    """
    conn = sqlite3.connect(db_path)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")  # Better concurrency
    return conn


def _to_sql_value(value: Any) -> Any:
    """Store dates and datetimes as ISO text."""
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _upsert(
    conn: sqlite3.Connection,
    table: str,
    key_columns: Sequence[str],
    value_columns: Sequence[str],
    rows: List[Dict[str, Any]],
    defaults: Optional[Dict[str, Any]] = None
) -> Tuple[int, int]:
    """
    Insert or update rows by primary key.
    Idempotent - can be called multiple times with same data.

    Returns:
        Tuple of (inserted_count, updated_count)
    """
    if not rows:
        return (0, 0)

    defaults = defaults or {}
    inserted = 0
    updated = 0

    key_clause = ' AND '.join(f"{c} = ?" for c in key_columns)
    set_clause = ', '.join(f"{c} = ?" for c in value_columns)
    all_columns = list(key_columns) + list(value_columns)
    placeholders = ', '.join('?' for _ in all_columns)

    for row in rows:
        row = {**defaults, **row}
        keys = tuple(_to_sql_value(row[c]) for c in key_columns)
        values = tuple(_to_sql_value(row.get(c)) for c in value_columns)

        # Check if row exists (by primary key)
        cursor = conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {key_clause}", keys)
        exists = cursor.fetchone()[0] > 0

        if exists:
            conn.execute(f"UPDATE {table} SET {set_clause} WHERE {key_clause}", values + keys)
            updated += 1
        else:
            conn.execute(
                f"INSERT INTO {table} ({', '.join(all_columns)}) VALUES ({placeholders})",
                keys + values
            )
            inserted += 1

    conn.commit()
    return (inserted, updated)


def upsert_operators(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Upsert operator identity rows."""
    return _upsert(
        conn, 'operators',
        ['operator_id'],
        ['address', 'name', 'is_active', 'registered_at'],
        rows,
        defaults={'is_active': 1},
    )


def upsert_snapshots(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Upsert daily operator snapshot rows."""
    return _upsert(
        conn, 'operator_snapshots',
        ['operator_id', 'snapshot_date'],
        ['tvs_usd', 'delegator_count', 'avs_count', 'operational_days', 'pi_bips'],
        rows,
        defaults={'tvs_usd': 0.0, 'delegator_count': 0, 'avs_count': 0, 'operational_days': 0},
    )


def upsert_analytics(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Upsert daily operator risk analytics rows."""
    return _upsert(
        conn, 'operator_analytics',
        ['operator_id', 'date'],
        ['risk_score', 'confidence_score', 'performance_score', 'economic_score',
         'network_position_score', 'slashing_event_count'],
        rows,
        defaults={'slashing_event_count': 0},
    )


def upsert_allocations(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Upsert operator allocation rows."""
    return _upsert(
        conn, 'allocations',
        ['operator_id', 'operator_set_id', 'strategy_id'],
        ['avs_id', 'magnitude_usd', 'allocated_fraction'],
        rows,
        defaults={'magnitude_usd': 0.0, 'allocated_fraction': 0.0},
    )


def upsert_commission_rates(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Upsert commission rate rows (PI rows may omit scope_id)."""
    return _upsert(
        conn, 'commission_rates',
        ['operator_id', 'scope', 'scope_id'],
        ['current_bips', 'activated_at', 'upcoming_bips', 'upcoming_activated_at', 'total_changes'],
        [{**r, 'scope_id': r.get('scope_id') or ''} for r in rows],
        defaults={'total_changes': 0},
    )


def upsert_commission_changes(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Upsert commission change history rows."""
    return _upsert(
        conn, 'commission_changes',
        ['operator_id', 'scope', 'scope_id', 'changed_at'],
        ['old_bips', 'new_bips', 'activated_at'],
        [{**r, 'scope_id': r.get('scope_id') or ''} for r in rows],
    )


def upsert_delegator_positions(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Upsert delegator share rows."""
    return _upsert(
        conn, 'delegator_positions',
        ['operator_id', 'staker_id', 'strategy_id'],
        ['shares_usd'],
        rows,
        defaults={'shares_usd': 0.0},
    )


def upsert_benchmarks(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Upsert network PI commission benchmark rows."""
    return _upsert(
        conn, 'network_benchmarks',
        ['snapshot_date'],
        ['mean_pi_bips', 'median_pi_bips', 'p25_pi_bips', 'p75_pi_bips', 'p90_pi_bips'],
        rows,
    )


def upsert_avs(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> Tuple[int, int]:
    """Upsert AVS registry rows."""
    return _upsert(
        conn, 'avs',
        ['avs_id'],
        ['address', 'name', 'metadata_uri'],
        rows,
    )
