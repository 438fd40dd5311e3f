"""
Tests for commission impact calculations.
Rates and allocations sized so weighted averages are round numbers.
"""

from datetime import datetime

import pytest

from analysis.calculations.commission import (
    build_rate_maps,
    resolve_effective_rate,
    compare_to_network,
    bucket_percentile_rank,
    analyze_commission_impact,
    commission_overview,
    behavior_profile,
    format_pct,
    CommissionError
)
from analysis.records import (
    Allocation,
    CommissionChange,
    CommissionRate,
    CommissionScope,
    NetworkBenchmarks
)


def rate(scope, bips, scope_id=None, activated_at=None, **kwargs):
    return CommissionRate(
        scope=scope,
        scope_id=scope_id,
        current_bips=bips,
        activated_at=activated_at,
        **kwargs
    )


def allocation(usd, operator_set_id='os', avs_id='avs', strategy_id='steth'):
    return Allocation(
        operator_set_id=operator_set_id,
        avs_id=avs_id,
        strategy_id=strategy_id,
        magnitude_usd=usd,
    )


BENCHMARKS = NetworkBenchmarks(mean=1100, median=1000, p25=500, p75=1500, p90=2000)


class TestRateResolution:
    """Tests for OPERATOR_SET > AVS > PI precedence."""

    def test_operator_set_beats_avs(self):
        _, avs_map, set_map = build_rate_maps([
            rate(CommissionScope.AVS, 500, 'avs-1'),
            rate(CommissionScope.OPERATOR_SET, 200, 'os-1'),
        ])
        bips, source = resolve_effective_rate(
            allocation(100, 'os-1', 'avs-1'), 1000, avs_map, set_map
        )
        assert (bips, source) == (200, 'operator_set')

    def test_avs_beats_pi(self):
        _, avs_map, set_map = build_rate_maps([rate(CommissionScope.AVS, 500, 'avs-1')])
        bips, source = resolve_effective_rate(
            allocation(100, 'os-9', 'avs-1'), 1000, avs_map, set_map
        )
        assert (bips, source) == (500, 'avs')

    def test_falls_back_to_pi(self):
        bips, source = resolve_effective_rate(allocation(100), 1000, {}, {})
        assert (bips, source) == (1000, 'pi')

    def test_ids_match_case_insensitively(self):
        _, avs_map, set_map = build_rate_maps([rate(CommissionScope.AVS, 300, '0xABC')])
        bips, _ = resolve_effective_rate(allocation(1, 'os', '0xabc'), 0, avs_map, set_map)
        assert bips == 300

    def test_latest_pi_rate_wins(self):
        pi_rate, _, _ = build_rate_maps([
            rate(CommissionScope.PI, 800, activated_at=datetime(2024, 1, 1)),
            rate(CommissionScope.PI, 900, activated_at=datetime(2025, 1, 1)),
        ])
        assert pi_rate.current_bips == 900


class TestNetworkComparison:

    @pytest.mark.parametrize("bips,expected", [
        (899, 'lower'),
        (900, 'similar'),
        (1000, 'similar'),
        (1100, 'similar'),
        (1101, 'higher'),
    ])
    def test_tolerance_band(self, bips, expected):
        assert compare_to_network(bips, 1000) == expected

    def test_custom_tolerance(self):
        assert compare_to_network(1150, 1000, tolerance=0.2) == 'similar'
        assert compare_to_network(1150, 1000, tolerance=0.1) == 'higher'

    def test_negative_tolerance_raises(self):
        with pytest.raises(CommissionError):
            compare_to_network(100, 100, tolerance=-0.1)

    @pytest.mark.parametrize("bips,expected", [
        (0, 75),
        (500, 75),
        (501, 50),
        (1000, 50),
        (1500, 25),
        (2000, 10),
        (2001, 5),
    ])
    def test_bucket_rank(self, bips, expected):
        assert bucket_percentile_rank(bips, BENCHMARKS) == expected


class TestCommissionImpact:
    """Tests for the weighted commission exposure."""

    def test_mixed_sources_weighted_average(self):
        """100 USD at an operator-set rate of 200 and 100 USD at an AVS rate of 500 -> 350."""
        rates = [
            rate(CommissionScope.PI, 1000),
            rate(CommissionScope.OPERATOR_SET, 200, 'os-1'),
            rate(CommissionScope.AVS, 500, 'avs-2'),
        ]
        allocations = [
            allocation(100, 'os-1', 'avs-1'),
            allocation(100, 'os-2', 'avs-2'),
        ]

        impact = analyze_commission_impact(allocations, rates, BENCHMARKS)

        assert impact.weighted_average_commission_bips == 350.0
        assert impact.weighted_average_commission_pct == '3.50'
        assert impact.total_allocated_usd == 200.0
        assert impact.has_pi_commission is True
        breakdown = impact.allocation_by_commission_source
        assert breakdown['operator_set'] == {'usd_amount': 100.0, 'pct_of_total': 50.0}
        assert breakdown['avs'] == {'usd_amount': 100.0, 'pct_of_total': 50.0}
        assert breakdown['pi'] == {'usd_amount': 0.0, 'pct_of_total': 0.0}
        assert impact.vs_network_average == 'lower'
        assert impact.percentile_rank == 75

    def test_non_positive_magnitudes_excluded(self):
        rates = [rate(CommissionScope.PI, 1000), rate(CommissionScope.AVS, 0, 'free')]
        allocations = [
            allocation(100, avs_id='paid'),
            allocation(0, avs_id='free'),
            allocation(-50, avs_id='free'),
        ]

        impact = analyze_commission_impact(allocations, rates, BENCHMARKS)

        assert impact.weighted_average_commission_bips == 1000.0
        assert impact.total_allocated_usd == 100.0

    def test_no_allocations_uses_pi_rate(self):
        impact = analyze_commission_impact([], [rate(CommissionScope.PI, 750)], BENCHMARKS)
        assert impact.weighted_average_commission_bips == 750.0
        assert impact.vs_network_average == 'lower'

    def test_no_rates_is_empty_state(self):
        impact = analyze_commission_impact([allocation(100)], [], BENCHMARKS)

        assert impact.has_pi_commission is False
        assert impact.weighted_average_commission_bips == 0.0
        assert impact.vs_network_average is None
        assert impact.percentile_rank is None

    def test_missing_pi_rate_falls_back_to_zero(self):
        rates = [rate(CommissionScope.AVS, 400, 'avs-1')]
        allocations = [allocation(100, avs_id='avs-1'), allocation(100, avs_id='avs-2')]

        impact = analyze_commission_impact(allocations, rates, BENCHMARKS)

        assert impact.has_pi_commission is False
        assert impact.weighted_average_commission_bips == 200.0

    def test_missing_benchmarks(self):
        impact = analyze_commission_impact([allocation(100)], [rate(CommissionScope.PI, 1000)], None)
        assert impact.vs_network_average is None
        assert impact.percentile_rank is None

    def test_to_dict_is_json_native(self):
        data = analyze_commission_impact([], [rate(CommissionScope.PI, 1000)], None).to_dict()
        assert data['weighted_average_commission_pct'] == '10.00'
        assert set(data['allocation_by_commission_source']) == {'pi', 'avs', 'operator_set'}


class TestOverviewAndBehavior:

    def test_format_pct(self):
        assert format_pct(250) == '2.50'
        assert format_pct(0) == '0.00'

    def test_overview_groups_by_scope(self):
        overview = commission_overview([
            rate(CommissionScope.PI, 1000, activated_at=datetime(2025, 1, 1)),
            rate(CommissionScope.AVS, 500, 'avs-b'),
            rate(CommissionScope.AVS, 300, 'avs-a'),
            rate(CommissionScope.OPERATOR_SET, 200, 'os-1'),
        ])

        assert overview['pi_commission']['current_bips'] == 1000
        assert overview['pi_commission']['activated_at'] == '2025-01-01T00:00:00'
        assert [r['scope_id'] for r in overview['avs_commissions']] == ['avs-a', 'avs-b']
        assert overview['operator_set_commissions'][0]['current_pct'] == '2.00'

    def test_overview_without_pi(self):
        overview = commission_overview([rate(CommissionScope.AVS, 500, 'avs-b')])
        assert overview['pi_commission'] is None

    def test_behavior_profile(self):
        as_of = datetime(2025, 3, 11)
        rates = [rate(CommissionScope.PI, 1000, activated_at=datetime(2025, 1, 1))]
        history = [
            CommissionChange(CommissionScope.PI, None, 1500, 1000, datetime(2025, 1, 1)),
            CommissionChange(CommissionScope.PI, None, 800, 1500, datetime(2023, 12, 1)),
        ]

        profile = behavior_profile(rates, history, as_of)

        assert profile == {
            'days_since_last_change': 69,
            'changes_last_12m': 1,
            'max_historical_bips': 1500,
            'is_change_pending': False,
        }

    def test_pending_change(self):
        as_of = datetime(2025, 3, 11)
        rates = [rate(
            CommissionScope.PI, 1000,
            upcoming_bips=1200,
            upcoming_activated_at=datetime(2025, 3, 20),
        )]

        profile = behavior_profile(rates, [], as_of)

        assert profile['is_change_pending'] is True
        assert profile['days_since_last_change'] == 0
        assert profile['max_historical_bips'] == 1000

    def test_activated_upcoming_is_not_pending(self):
        rates = [rate(
            CommissionScope.PI, 1000,
            upcoming_bips=1200,
            upcoming_activated_at=datetime(2025, 3, 1),
        )]
        assert behavior_profile(rates, [], datetime(2025, 3, 11))['is_change_pending'] is False

    def test_no_history_uses_activation(self):
        rates = [rate(CommissionScope.PI, 1000, activated_at=datetime(2025, 3, 1))]
        assert behavior_profile(rates, [], datetime(2025, 3, 11))['days_since_last_change'] == 10
