#!/usr/bin/env python3
"""
Command line entry point for the staking analytics engine.
Usage: python cli.py COMMAND [options]
"""

import sys
import json
import asyncio
import logging
import argparse
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add project root to path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from analysis.guardrails import DataQualityError, EntityNotFoundError, InvalidRangeError
from analysis.orchestrator import AnalyticsOrchestrator
from caching.policy import CachePolicyError, load_cache_policy
from caching.store import CacheStore, create_redis_client
from settings import Settings
from storage.repository import SqliteAnalyticsRepository


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Staking analytics from the command line',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python cli.py concentration 0xabc --type delegation
  python cli.py volatility 0xabc --metric tvs
  python cli.py snapshots 0xabc --from 2025-01-01 --to 2025-03-31
  python cli.py distribution tvs
  python cli.py invalidate --operator 0xabc
        """
    )
    parser.add_argument('--db-path',
                        help='Path to SQLite database (default: ANALYTICS_DB_PATH)')
    parser.add_argument('--redis-url',
                        help='Redis URL (default: REDIS_URL)')

    commands = parser.add_subparsers(dest='command', required=True)

    concentration = commands.add_parser('concentration', help='Delegation or AVS exposure concentration')
    concentration.add_argument('operator_id')
    concentration.add_argument('--type', dest='concentration_type',
                               choices=['delegation', 'avs_exposure'], default='delegation')

    volatility = commands.add_parser('volatility', help='7/30/90-day volatility and trend')
    volatility.add_argument('operator_id')
    volatility.add_argument('--metric', dest='metric_type',
                            choices=['tvs', 'delegators'], default='tvs')

    commission = commands.add_parser('commission', help='Commission overview and impact')
    commission.add_argument('operator_id')

    rankings = commands.add_parser('rankings', help='Network percentile rankings')
    rankings.add_argument('operator_id')

    risk = commands.add_parser('risk', help='Risk assessment')
    risk.add_argument('operator_id')

    exposure = commands.add_parser('exposure', help='Delegator AVS exposure')
    exposure.add_argument('operator_id')
    exposure.add_argument('staker_id')

    snapshots = commands.add_parser('snapshots', help='Daily snapshots in a date range')
    snapshots.add_argument('operator_id')
    snapshots.add_argument('--from', dest='date_from', type=date.fromisoformat, required=True,
                           help='First day (YYYY-MM-DD)')
    snapshots.add_argument('--to', dest='date_to', type=date.fromisoformat, required=True,
                           help='Last day (YYYY-MM-DD)')

    operators = commands.add_parser('operators', help='List operators')
    operators.add_argument('--limit', type=int, default=20)
    operators.add_argument('--offset', type=int, default=0)
    operators.add_argument('--search')
    operators.add_argument('--sort-by', dest='sort_by')
    operators.add_argument('--sort-order', dest='sort_order', choices=['asc', 'desc'])
    operators.add_argument('--active-only', action='store_true')

    distribution = commands.add_parser('distribution', help='Network distribution of a metric')
    distribution.add_argument('metric', choices=['tvs', 'delegators', 'avs_count'])

    commands.add_parser('overview', help='Network overview')

    invalidate = commands.add_parser('invalidate', help='Drop cached entries')
    target = invalidate.add_mutually_exclusive_group(required=True)
    target.add_argument('--operator', dest='operator_id')
    target.add_argument('--prefix')

    return parser


def build_orchestrator(settings: Settings) -> AnalyticsOrchestrator:
    """Wire repository, cache store and policy from settings."""
    return AnalyticsOrchestrator(
        repository=SqliteAnalyticsRepository(settings.db_path),
        store=CacheStore(create_redis_client(settings.redis_url)),
        policy=load_cache_policy(settings.cache_policy_path),
        settings=settings,
    )


async def run_command(args: argparse.Namespace, orchestrator: AnalyticsOrchestrator) -> Dict[str, Any]:
    """Dispatch one parsed command to the orchestrator."""
    if args.command == 'concentration':
        return await orchestrator.get_concentration(args.operator_id, args.concentration_type)
    elif args.command == 'volatility':
        return await orchestrator.get_volatility(args.operator_id, args.metric_type)
    elif args.command == 'commission':
        return await orchestrator.get_commission_overview(args.operator_id)
    elif args.command == 'rankings':
        return await orchestrator.get_operator_rankings(args.operator_id)
    elif args.command == 'risk':
        return await orchestrator.get_risk_assessment(args.operator_id)
    elif args.command == 'exposure':
        return await orchestrator.get_delegator_exposure(args.operator_id, args.staker_id)
    elif args.command == 'snapshots':
        return await orchestrator.get_daily_snapshots(args.operator_id, args.date_from, args.date_to)
    elif args.command == 'operators':
        filters = {
            'search': args.search,
            'sort_by': args.sort_by,
            'sort_order': args.sort_order,
            'is_active': True if args.active_only else None,
        }
        return await orchestrator.list_operators(filters, args.limit, args.offset)
    elif args.command == 'distribution':
        return await orchestrator.get_network_distribution(args.metric)
    elif args.command == 'overview':
        return await orchestrator.get_network_overview()
    elif args.command == 'invalidate':
        if args.operator_id:
            deleted = await orchestrator.invalidate_operator(args.operator_id)
        else:
            deleted = await orchestrator.invalidate_prefix(args.prefix)
        return {'deleted': deleted}
    else:
        raise ValueError(f"Unknown command: {args.command}")


async def _run(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    orchestrator = build_orchestrator(settings)
    try:
        return await run_command(args, orchestrator)
    finally:
        await orchestrator.store.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"ERROR: Invalid configuration: {e}", file=sys.stderr)
        return 1

    if args.db_path:
        settings.db_path = args.db_path
    if args.redis_url:
        settings.redis_url = args.redis_url

    logging.basicConfig(level=settings.log_level, format='%(levelname)s: %(name)s: %(message)s')

    if not Path(settings.db_path).exists():
        print(f"ERROR: Database not found: {settings.db_path}", file=sys.stderr)
        return 1

    try:
        result = asyncio.run(_run(args, settings))
    except (EntityNotFoundError, InvalidRangeError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except (CachePolicyError, DataQualityError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    print(json.dumps(result, indent=2))
    return 0


if __name__ == '__main__':
    sys.exit(main())
