"""
Analytics orchestrator - cache-aside composition of repository reads and calculators.

Every endpoint reads its canonical cache key first. On a miss it fetches the
raw rows it needs concurrently, maps them to records, runs the calculators,
writes the JSON-native result back with the endpoint TTL and returns it.
"""

import asyncio
import logging
from dataclasses import asdict
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Any, Awaitable, Callable, List, Optional, Sequence

from analysis.calculations import stats
from analysis.calculations.commission import (
    analyze_commission_impact,
    behavior_profile,
    commission_overview,
)
from analysis.calculations.concentration import (
    aggregate_weights,
    calculate_concentration,
    diversification_score,
)
from analysis.calculations.percentile import distribution_summary, rank, rank_entity
from analysis.calculations.risk import composite_score, risk_level
from analysis.calculations.volatility import calculate_volatility
from analysis.guardrails import (
    EntityNotFoundError,
    require_found,
    validate_date_range,
    validate_numeric_result,
    validate_pagination,
    validate_selector,
)
from analysis.metadata import AvsMetadataResolver
from analysis.records import (
    CommissionScope,
    OperatorSnapshot,
    allocation_from_row,
    avs_from_row,
    benchmarks_from_row,
    commission_change_from_row,
    commission_rate_from_row,
    position_from_row,
    profile_from_row,
    risk_from_row,
    samples_from_snapshots,
    snapshot_from_row,
)
from caching.keys import filters_hash
from caching.policy import CachePolicy
from caching.store import CacheStore
from settings import Settings
from storage.repository import AnalyticsRepository, SORTABLE_COLUMNS


logger = logging.getLogger(__name__)

CONCENTRATION_TYPES = ('delegation', 'avs_exposure')

# Selector -> snapshot / profile attribute
VOLATILITY_METRICS = {
    'tvs': 'tvs_usd',
    'delegators': 'delegator_count',
}
DISTRIBUTION_METRICS = {
    'tvs': 'tvs_usd',
    'delegators': 'delegator_count',
    'avs_count': 'avs_count',
}

SORT_ORDERS = ('asc', 'desc')
MOVING_AVERAGE_DAYS = 7
GROWTH_LOOKBACK_DAYS = 30

# Entries whose values depend on every operator, not just the one keyed
POPULATION_ENDPOINTS = ('operator_list', 'distribution', 'network_overview', 'rankings', 'risk')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _snapshot_dict(snapshot: OperatorSnapshot) -> Dict[str, Any]:
    data = asdict(snapshot)
    data['snapshot_date'] = snapshot.snapshot_date.isoformat()
    return data


def lookback_growth(snapshots: Sequence[OperatorSnapshot], field: str, days: int) -> float:
    """
    Growth of a snapshot field over the trailing `days` days.

    Compares the latest value with the last value dated at or before
    latest - days, or with the earliest value when history is shorter.
    """
    if len(snapshots) < 2:
        return 0.0

    ordered = sorted(snapshots, key=lambda s: s.snapshot_date)
    latest = ordered[-1]
    cutoff = latest.snapshot_date - timedelta(days=days)

    baseline = ordered[0]
    for snapshot in ordered:
        if snapshot.snapshot_date <= cutoff:
            baseline = snapshot

    return stats.growth_rate(float(getattr(latest, field)), float(getattr(baseline, field)))


class AnalyticsOrchestrator:
    """
    Serves analytics endpoints through the cache.

    Collaborators are injected; nothing here holds request state between calls.
    """

    def __init__(
        self,
        repository: AnalyticsRepository,
        store: CacheStore,
        policy: CachePolicy,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.repository = repository
        self.store = store
        self.policy = policy
        self.settings = settings or Settings()
        self.clock = clock

    # --- Cache-aside plumbing --- #
    async def _write_cache(
        self,
        endpoint: str,
        key: str,
        result: Dict[str, Any],
        ttl: Optional[int] = None
    ) -> None:
        if ttl is None:
            ttl = self.policy.ttl_for(endpoint)
        written = await self.store.set(key, result, ttl)
        if not written:
            logger.warning(f"Serving uncached result for {key}")

    async def _cached(
        self,
        endpoint: str,
        compute: Callable[[], Awaitable[Dict[str, Any]]],
        **key_params: Any
    ) -> Dict[str, Any]:
        key = self.policy.key_for(endpoint, **key_params)

        cached = await self.store.get(key)
        if cached is not None:
            return cached

        result = await compute()
        validate_numeric_result(result, endpoint)
        await self._write_cache(endpoint, key, result)
        logger.info(f"Computed {endpoint} for {key}")
        return result

    async def _require_operator(self, operator_id: str) -> Dict[str, Any]:
        row = await self.repository.get_operator(operator_id)
        return require_found(row, 'Operator', operator_id)

    # --- Endpoints --- #
    async def get_concentration(self, operator_id: str, concentration_type: str) -> Dict[str, Any]:
        """
        Concentration of an operator's delegations (USD per staker) or of its
        allocations (USD per AVS).
        """
        validate_selector(concentration_type, CONCENTRATION_TYPES, 'concentration_type')

        async def compute() -> Dict[str, Any]:
            if concentration_type == 'delegation':
                operator_row, rows = await asyncio.gather(
                    self._require_operator(operator_id),
                    self.repository.get_delegator_positions(operator_id),
                )
                positions = [position_from_row(r) for r in rows]
                weights = aggregate_weights((p.staker_id.lower(), p.shares_usd) for p in positions)
            else:
                operator_row, rows = await asyncio.gather(
                    self._require_operator(operator_id),
                    self.repository.get_allocations(operator_id),
                )
                allocations = [allocation_from_row(r) for r in rows]
                weights = aggregate_weights(
                    (a.avs_id.lower(), a.magnitude_usd) for a in allocations if a.magnitude_usd > 0
                )

            return {
                'operator_id': operator_row['operator_id'],
                'concentration_type': concentration_type,
                **calculate_concentration(weights).to_dict(),
            }

        return await self._cached(
            'concentration', compute,
            operator_id=operator_id, concentration_type=concentration_type
        )

    async def get_volatility(self, operator_id: str, metric_type: str) -> Dict[str, Any]:
        """Trailing 7/30/90-day volatility and trend of TVS or delegator count."""
        validate_selector(metric_type, VOLATILITY_METRICS, 'metric_type')

        async def compute() -> Dict[str, Any]:
            operator_row, rows = await asyncio.gather(
                self._require_operator(operator_id),
                self.repository.get_daily_snapshots(operator_id),
            )
            snapshots = [snapshot_from_row(r) for r in rows]
            samples = samples_from_snapshots(snapshots, VOLATILITY_METRICS[metric_type])
            result = calculate_volatility(samples, epsilon=self.settings.trend_epsilon)

            return {
                'operator_id': operator_row['operator_id'],
                'metric_type': metric_type,
                **result.to_dict(),
            }

        return await self._cached(
            'volatility', compute, operator_id=operator_id, metric_type=metric_type
        )

    async def get_commission_overview(self, operator_id: str) -> Dict[str, Any]:
        """
        Commission rates by scope, USD-weighted impact, change behaviour and
        AVS metadata for AVS-scoped rates.

        Results whose metadata enrichment failed are cached for the endpoint's
        shorter degraded TTL.
        """
        key = self.policy.key_for('commission', operator_id=operator_id)
        cached = await self.store.get(key)
        if cached is not None:
            return cached

        operator_row, allocation_rows, rate_rows, history_rows, benchmark_row = await asyncio.gather(
            self._require_operator(operator_id),
            self.repository.get_allocations(operator_id),
            self.repository.get_commission_rates(operator_id),
            self.repository.get_commission_history(operator_id),
            self.repository.get_network_benchmarks(),
        )

        allocations = [allocation_from_row(r) for r in allocation_rows]
        rates = [commission_rate_from_row(r) for r in rate_rows]
        history = [commission_change_from_row(r) for r in history_rows]
        benchmarks = benchmarks_from_row(benchmark_row)

        impact = analyze_commission_impact(
            allocations, rates, benchmarks, tolerance=self.settings.commission_tolerance
        )
        overview = commission_overview(rates)

        avs_ids = sorted({
            r.scope_id.lower() for r in rates
            if r.scope == CommissionScope.AVS and r.scope_id
        })
        avs_rows = await self.repository.get_avs(avs_ids)
        avs_records = [avs_from_row(r) for r in avs_rows]
        names = {str(r['avs_id']).lower(): r.get('name') for r in avs_rows}

        resolver = AvsMetadataResolver(self.store, self.policy, self.settings.metadata_timeout_s)
        metadata = await resolver.resolve_many(avs_records)
        complete = all(
            metadata.get(avs.avs_id.lower()) is not None
            for avs in avs_records if avs.metadata_uri
        )

        for entry in overview['avs_commissions']:
            avs_id = (entry['scope_id'] or '').lower()
            avs_metadata = metadata.get(avs_id)
            entry['avs_name'] = (avs_metadata or {}).get('name') or names.get(avs_id)
            entry['avs_metadata'] = avs_metadata

        result = {
            'operator_id': operator_row['operator_id'],
            **overview,
            'impact': impact.to_dict(),
            'behavior_profile': behavior_profile(rates, history, self.clock()),
            'network_benchmarks': (
                {
                    'mean': benchmarks.mean,
                    'median': benchmarks.median,
                    'p25': benchmarks.p25,
                    'p75': benchmarks.p75,
                    'p90': benchmarks.p90,
                }
                if benchmarks else None
            ),
        }

        validate_numeric_result(result, 'commission')
        if complete:
            await self._write_cache('commission', key, result)
        else:
            ttl = self.policy.degraded_ttl_for('commission')
            logger.warning(f"Metadata enrichment incomplete for {operator_id}; caching for {ttl}s")
            await self._write_cache('commission', key, result, ttl)
        return result

    async def get_operator_rankings(self, operator_id: str) -> Dict[str, Any]:
        """Percentile of the operator among active operators for each ranking metric."""

        async def compute() -> Dict[str, Any]:
            operator_row, population_rows = await asyncio.gather(
                self._require_operator(operator_id),
                self.repository.get_network_population(),
            )
            target = profile_from_row(operator_row)
            population = [profile_from_row(r) for r in population_rows]

            return {
                'operator_id': target.operator_id,
                'population_size': len(population),
                'percentiles': rank_entity(population, target),
            }

        return await self._cached('rankings', compute, operator_id=operator_id)

    async def get_network_distribution(self, metric: str) -> Dict[str, Any]:
        """Distribution summary and histogram of one metric across active operators."""
        validate_selector(metric, DISTRIBUTION_METRICS, 'metric')

        async def compute() -> Dict[str, Any]:
            population = [
                profile_from_row(r) for r in await self.repository.get_network_population()
            ]
            values = [float(getattr(p, DISTRIBUTION_METRICS[metric])) for p in population]
            return {'metric': metric, **distribution_summary(values)}

        return await self._cached('distribution', compute, metric=metric)

    async def get_risk_assessment(self, operator_id: str) -> Dict[str, Any]:
        """Stored risk scores plus concentration, volatility, growth and size context."""

        async def compute() -> Dict[str, Any]:
            operator_row, risk_row, position_rows, snapshot_rows, population_rows = await asyncio.gather(
                self._require_operator(operator_id),
                self.repository.get_risk_row(operator_id),
                self.repository.get_delegator_positions(operator_id),
                self.repository.get_daily_snapshots(operator_id),
                self.repository.get_network_population(),
            )

            target = profile_from_row(operator_row)
            record = risk_from_row(risk_row) if risk_row else None

            score = None
            if record is not None:
                score = record.risk_score
                if score is None:
                    score = composite_score(
                        record.performance_score,
                        record.economic_score,
                        record.network_position_score,
                    )

            positions = [position_from_row(r) for r in position_rows]
            delegation = calculate_concentration(
                aggregate_weights((p.staker_id.lower(), p.shares_usd) for p in positions)
            )

            snapshots = [snapshot_from_row(r) for r in snapshot_rows]
            volatility = calculate_volatility(
                samples_from_snapshots(snapshots, 'tvs_usd'),
                epsilon=self.settings.trend_epsilon,
            )

            population_tvs = [profile_from_row(r).tvs_usd for r in population_rows]

            return {
                'operator_id': target.operator_id,
                'as_of': record.date.isoformat() if record and record.date else None,
                'risk_score': score,
                'risk_level': risk_level(score),
                'confidence_score': record.confidence_score if record else None,
                'components': {
                    'performance': record.performance_score if record else None,
                    'economic': record.economic_score if record else None,
                    'network_position': record.network_position_score if record else None,
                },
                'key_metrics': {
                    'delegation_hhi': delegation.hhi,
                    'delegation_interpretation': delegation.interpretation,
                    'tvs_volatility_30d': volatility.stddev_30d,
                    'tvs_trend': volatility.trend_direction,
                    'growth_rate_30d': lookback_growth(snapshots, 'tvs_usd', GROWTH_LOOKBACK_DAYS),
                    'size_percentile': round(rank(population_tvs, target.tvs_usd), 2),
                    'slashing_event_count': record.slashing_event_count if record else 0,
                },
            }

        return await self._cached('risk', compute, operator_id=operator_id)

    async def get_delegator_exposure(self, operator_id: str, staker_id: str) -> Dict[str, Any]:
        """
        How much of one delegator's stake with an operator is exposed to each AVS.

        Exposure to an AVS sums, over the delegator's strategies, the strategy
        USD times the fraction the operator allocated to that AVS. A strategy's
        at-risk USD is capped by its total allocated fraction (at most 1).
        """

        async def compute() -> Dict[str, Any]:
            operator_row, position_rows, allocation_rows = await asyncio.gather(
                self._require_operator(operator_id),
                self.repository.get_delegator_positions(operator_id, staker_id),
                self.repository.get_allocations(operator_id),
            )
            if not position_rows:
                raise EntityNotFoundError(
                    f"Delegator {staker_id} has no position with operator {operator_id}"
                )

            positions = [position_from_row(r) for r in position_rows]
            allocations = [allocation_from_row(r) for r in allocation_rows]

            usd_by_strategy = aggregate_weights((p.strategy_id.lower(), p.shares_usd) for p in positions)
            total_delegated = sum(usd_by_strategy.values())

            exposure_by_avs: Dict[str, float] = {}
            fraction_by_strategy: Dict[str, float] = {}
            for allocation in allocations:
                strategy = allocation.strategy_id.lower()
                if strategy not in usd_by_strategy:
                    continue
                avs_id = allocation.avs_id.lower()
                exposure = usd_by_strategy[strategy] * allocation.allocated_fraction
                exposure_by_avs[avs_id] = exposure_by_avs.get(avs_id, 0.0) + exposure
                fraction_by_strategy[strategy] = (
                    fraction_by_strategy.get(strategy, 0.0) + allocation.allocated_fraction
                )

            strategies: List[Dict[str, Any]] = []
            total_at_risk = 0.0
            for strategy, usd in sorted(usd_by_strategy.items()):
                utilization = min(fraction_by_strategy.get(strategy, 0.0), 1.0)
                total_at_risk += usd * utilization
                strategies.append({
                    'strategy_id': strategy,
                    'shares_usd': usd,
                    'utilization': utilization,
                })

            avs_rows = await self.repository.get_avs(sorted(exposure_by_avs))
            names = {str(r['avs_id']).lower(): r.get('name') for r in avs_rows}

            exposures = [
                {
                    'avs_id': avs_id,
                    'avs_name': names.get(avs_id),
                    'exposure_usd': usd,
                    'pct_of_delegation': usd / total_delegated * 100 if total_delegated > 0 else 0.0,
                }
                for avs_id, usd in sorted(exposure_by_avs.items(), key=lambda kv: (-kv[1], kv[0]))
            ]
            highest = exposures[0] if exposures and exposures[0]['exposure_usd'] > 0 else None

            return {
                'operator_id': operator_row['operator_id'],
                'staker_id': staker_id,
                'total_delegated_usd': total_delegated,
                'strategies': strategies,
                'avs_exposures': exposures,
                'risk_summary': {
                    'total_at_risk_usd': total_at_risk,
                    'at_risk_pct': total_at_risk / total_delegated * 100 if total_delegated > 0 else 0.0,
                    'highest_avs_exposure_name': (
                        (highest['avs_name'] or highest['avs_id']) if highest else None
                    ),
                    'highest_avs_exposure_usd': highest['exposure_usd'] if highest else 0.0,
                    'diversification_score': diversification_score(exposure_by_avs),
                },
            }

        return await self._cached(
            'exposure', compute, operator_id=operator_id, staker_id=staker_id
        )

    async def get_daily_snapshots(
        self,
        operator_id: str,
        date_from: date,
        date_to: date
    ) -> Dict[str, Any]:
        """Daily snapshots in an inclusive range with a 7-day TVS moving average."""
        validate_date_range(date_from, date_to, self.settings.max_date_range_days)

        async def compute() -> Dict[str, Any]:
            operator_row, rows = await asyncio.gather(
                self._require_operator(operator_id),
                self.repository.get_daily_snapshots(operator_id, date_from, date_to),
            )
            snapshots = sorted((snapshot_from_row(r) for r in rows), key=lambda s: s.snapshot_date)
            tvs = [s.tvs_usd for s in snapshots]

            return {
                'operator_id': operator_row['operator_id'],
                'date_from': date_from.isoformat(),
                'date_to': date_to.isoformat(),
                'snapshots': [_snapshot_dict(s) for s in snapshots],
                'tvs_moving_average_7d': stats.moving_average(tvs, MOVING_AVERAGE_DAYS),
                'tvs_growth_rate': stats.growth_rate(tvs[-1], tvs[0]) if tvs else 0.0,
            }

        return await self._cached(
            'snapshots', compute,
            operator_id=operator_id,
            date_from=date_from.isoformat(),
            date_to=date_to.isoformat(),
        )

    async def list_operators(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Dict[str, Any]:
        """
        One page of operators with their risk level.

        Filters: is_active, min_tvs, max_tvs, search, sort_by, sort_order.
        """
        filters = dict(filters or {})
        validate_pagination(
            limit, offset,
            self.settings.pagination_min_limit,
            self.settings.pagination_max_limit,
        )
        if filters.get('sort_by') is not None:
            validate_selector(filters['sort_by'], SORTABLE_COLUMNS, 'sort_by')
        if filters.get('sort_order') is not None:
            validate_selector(filters['sort_order'], SORT_ORDERS, 'sort_order')

        async def compute() -> Dict[str, Any]:
            rows, total = await self.repository.list_operators(filters, limit, offset)
            operators = []
            for row in rows:
                profile = profile_from_row(row)
                operators.append({**asdict(profile), 'risk_level': risk_level(profile.risk_score)})

            return {
                'operators': operators,
                'total': total,
                'limit': limit,
                'offset': offset,
            }

        return await self._cached(
            'operator_list', compute,
            filters_hash=filters_hash(filters), limit=limit, offset=offset
        )

    async def get_network_overview(self) -> Dict[str, Any]:
        """Network-wide totals and TVS concentration across active operators."""

        async def compute() -> Dict[str, Any]:
            population_rows, benchmark_row = await asyncio.gather(
                self.repository.get_network_population(),
                self.repository.get_network_benchmarks(),
            )
            population = [profile_from_row(r) for r in population_rows]
            benchmarks = benchmarks_from_row(benchmark_row)
            tvs = [p.tvs_usd for p in population]

            return {
                'total_operators': len(population),
                'total_tvs_usd': float(sum(tvs)),
                'mean_tvs_usd': stats.mean(tvs),
                'median_tvs_usd': stats.percentile(tvs, 50),
                'total_delegators': sum(p.delegator_count for p in population),
                'mean_avs_count': stats.mean([p.avs_count for p in population]),
                'tvs_hhi': stats.hhi(tvs),
                'tvs_gini': stats.gini(tvs),
                'median_pi_commission_bips': benchmarks.median if benchmarks else None,
            }

        return await self._cached('network_overview', compute)

    # --- Invalidation --- #
    async def invalidate_operator(self, operator_id: str) -> int:
        """
        Drop every cached entry derived from one operator's data.

        Besides the operator's own entries this clears list pages, network
        aggregates and the rankings and risk entries of every operator, which
        are computed against the whole population.

        Returns:
            Number of keys deleted
        """
        deleted = 0
        for stem in self.policy.operator_prefixes(operator_id):
            if await self.store.delete(stem):
                deleted += 1
            deleted += await self.store.delete_by_prefix(stem + ':')

        for endpoint in POPULATION_ENDPOINTS:
            deleted += await self.store.delete_by_prefix(self.policy.static_prefix(endpoint))

        logger.info(f"Invalidated {deleted} cache entries for operator {operator_id}")
        return deleted

    async def invalidate_prefix(self, prefix: str) -> int:
        """Drop every cached entry whose key starts with prefix."""
        return await self.store.delete_by_prefix(prefix)
