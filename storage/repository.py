"""
Analytics repository - async read interface returning raw rows.
The SQLite implementation runs each query in a worker thread on its own connection.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, Any, List, Optional, Sequence, Tuple

import pandas as pd

from storage.loaders import get_connection


logger = logging.getLogger(__name__)

Row = Dict[str, Any]

SORTABLE_COLUMNS = ('tvs_usd', 'delegator_count', 'avs_count', 'operational_days', 'risk_score')


class RepositoryError(Exception):
    """Raised when a repository query is malformed."""
    pass


class AnalyticsRepository(ABC):
    """Read interface consumed by the analytics orchestrator."""

    @abstractmethod
    async def get_operator(self, operator_id: str) -> Optional[Row]:
        """Operator identity joined with its latest snapshot and risk score."""

    @abstractmethod
    async def list_operators(
        self,
        filters: Dict[str, Any],
        limit: int,
        offset: int
    ) -> Tuple[List[Row], int]:
        """One page of operator rows plus the total matching count."""

    @abstractmethod
    async def get_network_population(self) -> List[Row]:
        """Latest-state rows for every active operator."""

    @abstractmethod
    async def get_allocations(self, operator_id: str) -> List[Row]:
        pass

    @abstractmethod
    async def get_commission_rates(self, operator_id: str) -> List[Row]:
        pass

    @abstractmethod
    async def get_commission_history(self, operator_id: str) -> List[Row]:
        pass

    @abstractmethod
    async def get_network_benchmarks(self) -> Optional[Row]:
        """Most recent network PI commission benchmarks, None if never computed."""

    @abstractmethod
    async def get_delegator_positions(
        self,
        operator_id: str,
        staker_id: Optional[str] = None
    ) -> List[Row]:
        pass

    @abstractmethod
    async def get_daily_snapshots(
        self,
        operator_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> List[Row]:
        """Snapshots in ascending date order, bounds inclusive."""

    @abstractmethod
    async def get_risk_row(self, operator_id: str) -> Optional[Row]:
        """Latest operator_analytics row."""

    @abstractmethod
    async def get_avs(self, avs_ids: Sequence[str]) -> List[Row]:
        pass


_PROFILES_CTE = """
    WITH latest_snapshot AS (
        SELECT s.*
        FROM operator_snapshots s
        JOIN (
            SELECT operator_id, MAX(snapshot_date) AS snapshot_date
            FROM operator_snapshots
            GROUP BY operator_id
        ) m ON s.operator_id = m.operator_id AND s.snapshot_date = m.snapshot_date
    ),
    latest_risk AS (
        SELECT a.operator_id, a.risk_score
        FROM operator_analytics a
        JOIN (
            SELECT operator_id, MAX(date) AS date
            FROM operator_analytics
            GROUP BY operator_id
        ) m ON a.operator_id = m.operator_id AND a.date = m.date
    ),
    profiles AS (
        SELECT
            o.operator_id,
            o.address,
            o.name,
            o.is_active,
            COALESCE(ls.tvs_usd, 0) AS tvs_usd,
            COALESCE(ls.delegator_count, 0) AS delegator_count,
            COALESCE(ls.avs_count, 0) AS avs_count,
            COALESCE(ls.operational_days, 0) AS operational_days,
            lr.risk_score
        FROM operators o
        LEFT JOIN latest_snapshot ls ON ls.operator_id = o.operator_id
        LEFT JOIN latest_risk lr ON lr.operator_id = o.operator_id
    )
"""


class SqliteAnalyticsRepository(AnalyticsRepository):
    """Reference implementation over the schema in storage.loaders."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        conn = get_connection(self.db_path)
        try:
            df = pd.read_sql_query(sql, conn, params=list(params))
        finally:
            conn.close()
        logger.debug(f"Query returned {len(df)} rows")
        return df.to_dict('records')

    async def _fetch(self, sql: str, params: Sequence[Any] = ()) -> List[Row]:
        return await asyncio.to_thread(self._query, sql, params)

    async def _fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Row]:
        rows = await self._fetch(sql, params)
        return rows[0] if rows else None

    async def get_operator(self, operator_id: str) -> Optional[Row]:
        return await self._fetch_one(
            f"{_PROFILES_CTE} SELECT * FROM profiles WHERE LOWER(operator_id) = LOWER(?)",
            [operator_id]
        )

    def _filter_clause(self, filters: Dict[str, Any]) -> Tuple[str, List[Any]]:
        conditions = []
        params: List[Any] = []

        if filters.get('is_active') is not None:
            conditions.append("is_active = ?")
            params.append(1 if filters['is_active'] else 0)
        if filters.get('min_tvs') is not None:
            conditions.append("tvs_usd >= ?")
            params.append(float(filters['min_tvs']))
        if filters.get('max_tvs') is not None:
            conditions.append("tvs_usd <= ?")
            params.append(float(filters['max_tvs']))
        if filters.get('search'):
            conditions.append("(LOWER(name) LIKE ? OR LOWER(operator_id) LIKE ?)")
            pattern = f"%{str(filters['search']).lower()}%"
            params.extend([pattern, pattern])

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where, params

    async def list_operators(
        self,
        filters: Dict[str, Any],
        limit: int,
        offset: int
    ) -> Tuple[List[Row], int]:
        sort_by = filters.get('sort_by') or 'tvs_usd'
        if sort_by not in SORTABLE_COLUMNS:
            raise RepositoryError(f"Cannot sort by {sort_by}")
        direction = 'ASC' if filters.get('sort_order') == 'asc' else 'DESC'

        where, params = self._filter_clause(filters)
        base = f"{_PROFILES_CTE} SELECT * FROM profiles {where}"
        count = f"{_PROFILES_CTE} SELECT COUNT(*) AS total FROM profiles {where}"

        rows, count_rows = await asyncio.gather(
            self._fetch(
                f"{base} ORDER BY {sort_by} {direction}, operator_id ASC LIMIT ? OFFSET ?",
                params + [limit, offset]
            ),
            self._fetch(count, params),
        )
        total = int(count_rows[0]['total']) if count_rows else 0
        return rows, total

    async def get_network_population(self) -> List[Row]:
        return await self._fetch(
            f"{_PROFILES_CTE} SELECT * FROM profiles WHERE is_active = 1 ORDER BY operator_id"
        )

    async def get_allocations(self, operator_id: str) -> List[Row]:
        return await self._fetch(
            """
            SELECT operator_set_id, avs_id, strategy_id, magnitude_usd, allocated_fraction
            FROM allocations
            WHERE LOWER(operator_id) = LOWER(?)
            ORDER BY avs_id, operator_set_id, strategy_id
            """,
            [operator_id]
        )

    async def get_commission_rates(self, operator_id: str) -> List[Row]:
        return await self._fetch(
            """
            SELECT scope, NULLIF(scope_id, '') AS scope_id, current_bips, activated_at,
                   upcoming_bips, upcoming_activated_at, total_changes
            FROM commission_rates
            WHERE LOWER(operator_id) = LOWER(?)
            ORDER BY scope, scope_id
            """,
            [operator_id]
        )

    async def get_commission_history(self, operator_id: str) -> List[Row]:
        return await self._fetch(
            """
            SELECT scope, NULLIF(scope_id, '') AS scope_id, old_bips, new_bips,
                   changed_at, activated_at
            FROM commission_changes
            WHERE LOWER(operator_id) = LOWER(?)
            ORDER BY changed_at DESC
            """,
            [operator_id]
        )

    async def get_network_benchmarks(self) -> Optional[Row]:
        return await self._fetch_one(
            "SELECT * FROM network_benchmarks ORDER BY snapshot_date DESC LIMIT 1"
        )

    async def get_delegator_positions(
        self,
        operator_id: str,
        staker_id: Optional[str] = None
    ) -> List[Row]:
        sql = """
            SELECT staker_id, strategy_id, shares_usd
            FROM delegator_positions
            WHERE LOWER(operator_id) = LOWER(?)
        """
        params = [operator_id]
        if staker_id is not None:
            sql += " AND LOWER(staker_id) = LOWER(?)"
            params.append(staker_id)
        return await self._fetch(sql + " ORDER BY staker_id, strategy_id", params)

    async def get_daily_snapshots(
        self,
        operator_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> List[Row]:
        sql = """
            SELECT operator_id, snapshot_date, tvs_usd, delegator_count, avs_count,
                   operational_days, pi_bips
            FROM operator_snapshots
            WHERE LOWER(operator_id) = LOWER(?)
        """
        params: List[Any] = [operator_id]
        if date_from is not None:
            sql += " AND snapshot_date >= ?"
            params.append(date_from.isoformat())
        if date_to is not None:
            sql += " AND snapshot_date <= ?"
            params.append(date_to.isoformat())
        return await self._fetch(sql + " ORDER BY snapshot_date ASC", params)

    async def get_risk_row(self, operator_id: str) -> Optional[Row]:
        return await self._fetch_one(
            """
            SELECT * FROM operator_analytics
            WHERE LOWER(operator_id) = LOWER(?)
            ORDER BY date DESC
            LIMIT 1
            """,
            [operator_id]
        )

    async def get_avs(self, avs_ids: Sequence[str]) -> List[Row]:
        if not avs_ids:
            return []
        placeholders = ', '.join('?' for _ in avs_ids)
        return await self._fetch(
            f"SELECT avs_id, address, name, metadata_uri FROM avs "
            f"WHERE LOWER(avs_id) IN ({placeholders}) ORDER BY avs_id",
            [a.lower() for a in avs_ids]
        )
