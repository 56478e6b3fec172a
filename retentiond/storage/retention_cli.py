"""
Retention CLI.

This module provides the command-line interface for inspecting storage usage
and managing retention policies, cleanups and maintenance.
"""

import argparse
import asyncio
import json
import os
import signal
import sys
from typing import Any, Dict, List, Optional

from ..monitoring.retention_metrics import RetentionMetricsCollector
from .retention_errors import RetentionError, ValidationError
from .retention_logging import configure_logging
from .retention_manager import RetentionManager, create_retention_manager
from .retention_query import TableQuery, filter_from_dict


def _mb(size_bytes: Optional[float]) -> str:
    if size_bytes is None:
        return "unknown"
    return f"{size_bytes / 1024 / 1024:.2f} MB"


def _print_json(data: Any):
    print(json.dumps(data, indent=2, default=str))


async def show_status(manager: RetentionManager, args) -> int:
    """Show retention system status."""
    status = manager.get_retention_status()
    stats = await manager.get_database_statistics()
    if args.json:
        _print_json({'status': status, 'database': stats.to_dict()})
        return 0

    print("Data Retention System Status")
    print("=" * 40)
    print(f"Enabled: {status['enabled']}")
    print(f"Policies: {status['active_policies']}/{status['policies_count']} active")
    print(f"Active jobs: {', '.join(status['active_jobs']) or 'none'}")
    last = status['last_cleanup']
    print(f"Last cleanup: {last['data_type'] + ' at ' + str(last['started_at']) if last else 'Never'}")

    print("\nStorage Usage")
    print(f"Footprint: {_mb(status['footprint_bytes'])}")
    print(f"  Database: {_mb(status['database_size_bytes'])}")
    print(f"  WAL: {_mb(status['wal_size_bytes'])}  SHM: {_mb(status['shm_size_bytes'])}")
    print(f"Tables: {stats.total_tables}, indexes: {stats.total_indexes}, "
          f"records: {stats.total_records:,}")
    print(f"Fragmentation: {stats.fragmentation_level:.2f}%")
    print(f"Last vacuum: {stats.last_vacuum or 'Never'}")

    print("\nTable Breakdown:")
    for usage in await manager.get_table_breakdown():
        records = f"{usage.record_count:,}" if usage.record_count is not None else "unknown"
        print(f"  {usage.table_name}: {_mb(usage.size_bytes)}, {records} records")
    return 0


async def show_policies(manager: RetentionManager, args) -> int:
    """Show retention policies."""
    policies = manager.list_retention_policies()
    if args.json:
        _print_json([policy.to_dict() for policy in policies])
        return 0

    print("Data Retention Policies")
    print("=" * 50)
    for policy in policies:
        status = "ENABLED" if policy.is_enabled else "DISABLED"
        print(f"\n{policy.data_type.upper()} ({status})")
        print(f"  Category: {policy.category}")
        print(f"  Description: {policy.description}")
        print(f"  Max age: {policy.max_age_days} days")
        print(f"  Max records: {policy.max_records or 'unbounded'}")
        print(f"  Frequency: {policy.cleanup_frequency.value}")
        print(f"  Compression: {policy.compression_enabled}, archival: {policy.archival_enabled}")
        print(f"  Last run: {policy.last_run or 'Never'}")
    return 0


def _policy_fields(args) -> Dict[str, Any]:
    fields = {}
    for name in ('max_age_days', 'max_records', 'cleanup_frequency', 'is_enabled',
                 'compression_enabled', 'archival_enabled', 'description', 'category'):
        value = getattr(args, name)
        if value is not None:
            fields[name] = value
    return fields


async def set_policy(manager: RetentionManager, args) -> int:
    """Create or update a retention policy."""
    policy = manager.upsert_retention_policy(args.data_type, _policy_fields(args))
    if args.json:
        _print_json(policy.to_dict())
    else:
        print(f"Policy saved: {policy.data_type} (max age {policy.max_age_days} days, "
              f"max records {policy.max_records or 'unbounded'}, {policy.cleanup_frequency.value})")
    return 0


async def run_estimate(manager: RetentionManager, args) -> int:
    """Estimate cleanup without deleting anything."""
    if args.data_types:
        estimates = [await manager.estimate_cleanup(data_type) for data_type in args.data_types]
    else:
        estimates = await manager.cleanup.estimate_all()

    if args.json:
        _print_json([estimate.to_dict() for estimate in estimates])
        return 0

    print("Cleanup Estimates")
    print("=" * 40)
    for estimate in estimates:
        impact = estimate.impact_analysis
        print(f"{estimate.data_type}: {estimate.estimated_records:,} records, "
              f"{_mb(estimate.estimated_bytes)}")
        if estimate.estimated_records:
            print(f"  Range: {estimate.oldest_record} .. {estimate.newest_record}")
        print(f"  Impact: {impact.performance_impact.value}, risk: {impact.data_integrity_risk.value}, "
              f"recommended: {impact.recommended_time}")
    return 0


async def run_cleanup(manager: RetentionManager, args) -> int:
    """Run a cleanup for one data type after showing its estimate."""
    estimate = await manager.estimate_cleanup(args.data_type)
    print(f"{estimate.data_type}: {estimate.estimated_records:,} records "
          f"({_mb(estimate.estimated_bytes)}) would be removed")

    if estimate.estimated_records == 0:
        print("Nothing to clean up")
        return 0
    if not args.yes:
        answer = input("Proceed with cleanup? [y/N] ").strip().lower()
        if answer not in ('y', 'yes'):
            print("Cleanup cancelled")
            return 1

    operation = await manager.perform_cleanup(args.data_type, force=args.force)
    if args.json:
        _print_json(operation.to_dict())
    else:
        status_icon = "✓" if operation.status.value == 'success' else "!"
        print(f"{status_icon} {operation.data_type}: {operation.records_affected:,} records, "
              f"{_mb(operation.bytes_freed)} freed in {operation.duration_ms} ms "
              f"({operation.status.value})")
        if operation.error_message:
            print(f"  Note: {operation.error_message}")
    return 0


async def run_vacuum(manager: RetentionManager, args) -> int:
    """Reclaim free space."""
    result = await manager.vacuum(analyze=not args.no_analyze)
    if args.json:
        _print_json(result.to_dict())
    else:
        print(f"Vacuum complete: {_mb(result.size_before)} -> {_mb(result.size_after)} "
              f"({_mb(result.bytes_reclaimed)} reclaimed, {result.duration_ms} ms)")
    return 0


async def show_predictions(manager: RetentionManager, args) -> int:
    """Show capacity predictions."""
    predictions = manager.get_predictions(args.days, args.total_space)
    if args.json:
        _print_json([prediction.to_dict() for prediction in predictions])
        return 0

    print("Capacity Predictions")
    print("=" * 40)
    for prediction in predictions:
        full = prediction.projected_full_date.date() if prediction.projected_full_date else "n/a"
        print(f"{prediction.timeframe:>5}: {_mb(prediction.predicted_size_bytes)} "
              f"(confidence {prediction.confidence_level}%, full: {full}) - "
              f"{prediction.recommended_action}")

    rates = manager.get_growth_rates(args.days)
    if rates:
        print("\nGrowth by table (per day):")
        for rate in rates:
            print(f"  {rate.table_name}: {rate.daily_growth_bytes / 1024:.1f} KB ({rate.trend.value})")
    return 0


async def take_snapshot(manager: RetentionManager, args) -> int:
    """Record a usage snapshot."""
    snapshot = await manager.record_snapshot()
    if args.json:
        _print_json(snapshot.to_dict())
    else:
        print(f"Snapshot {snapshot.id} recorded: {_mb(snapshot.footprint)} across "
              f"{snapshot.table_count} tables")
    return 0


async def run_schedule(manager: RetentionManager, args) -> int:
    """Queue due cleanups and optionally run them now."""
    queued = manager.schedule_due()
    print(f"Queued: {', '.join(queued) or 'nothing due'}")
    if args.run and queued:
        await manager.run_pending_jobs()
        for job in manager.get_jobs():
            if job.data_type in queued:
                print(f"  {job.data_type}: {job.status.value}"
                      + (f" ({job.error_message})" if job.error_message else ""))
    return 0


async def show_history(manager: RetentionManager, args) -> int:
    """Show recent cleanup operations."""
    operations = manager.get_cleanup_history(args.data_type, args.limit)
    if args.json:
        _print_json([operation.to_dict() for operation in operations])
        return 0
    for operation in operations:
        print(f"{operation.started_at} {operation.data_type} [{operation.operation_type.value}] "
              f"{operation.status.value}: {operation.records_affected:,} records, "
              f"{_mb(operation.bytes_freed)}")
    if not operations:
        print("No cleanup operations recorded")
    return 0


def _query_filters(args) -> List[Any]:
    raw = []
    for op in ('equals', 'contains', 'before', 'after'):
        for expression in getattr(args, op) or []:
            column, sep, value = expression.partition('=')
            if not sep:
                raise ValidationError(f"Expected COLUMN=VALUE for --{op}, got {expression!r}")
            raw.append({'op': op, 'column': column, 'value': value})
    for column in args.is_null or []:
        raw.append({'op': 'is_null', 'column': column})
    return [filter_from_dict(item) for item in raw]


async def run_query(manager: RetentionManager, args) -> int:
    """Read rows from one table with typed filters."""
    query = TableQuery(
        table_name=args.table,
        filters=tuple(_query_filters(args)),
        order_by=args.order_by,
        descending=args.desc,
        limit=args.limit,
        offset=args.offset,
    )
    result = manager.query_table(query)
    if args.json:
        _print_json({'rows': result.rows, 'total_count': result.total_count,
                     'has_more': result.has_more})
        return 0

    print(" | ".join(result.columns))
    for row in result.rows:
        print(" | ".join(str(row[column]) for column in result.columns))
    print(f"\n{len(result.rows)} of {result.total_count} rows"
          + (" (more available)" if result.has_more else ""))
    return 0


async def run_daemon(manager: RetentionManager, args) -> int:
    """Run the scheduler until interrupted."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    metrics = None
    if args.metrics_port:
        metrics = RetentionMetricsCollector(manager)
        metrics.start_http_server(args.metrics_port)

    await manager.start()
    print("Retention daemon running (Ctrl+C to stop)")
    try:
        while not stop_event.is_set():
            if metrics is not None:
                await metrics.collect()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=args.metrics_interval)
            except asyncio.TimeoutError:
                pass
    finally:
        print("\nShutting down retention daemon...")
        await manager.stop()
    return 0


COMMANDS = {
    'status': show_status,
    'policies': show_policies,
    'set-policy': set_policy,
    'estimate': run_estimate,
    'cleanup': run_cleanup,
    'vacuum': run_vacuum,
    'predict': show_predictions,
    'snapshot': take_snapshot,
    'schedule': run_schedule,
    'history': show_history,
    'query': run_query,
    'daemon': run_daemon,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='retentiond',
        description="Storage retention and capacity management",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show storage usage and policy summary
  retentiond status --db data/portal.db

  # Estimate what every enabled policy would remove
  retentiond estimate

  # Clean one data type without prompting
  retentiond cleanup system_metrics --yes

  # Keep alerts for 60 days
  retentiond set-policy alerts --max-age-days 60
        """
    )

    parser.add_argument('--config', default=None,
                        help='Path to retention configuration file (env: RETENTIOND_CONFIG)')
    parser.add_argument('--db', default=None,
                        help='Path to SQLite database file (env: RETENTIOND_DB_PATH)')
    parser.add_argument('--json', action='store_true', help='Print machine-readable JSON')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--log-json', action='store_true', help='Emit logs as JSON')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('status', help='Show storage usage and system status')
    subparsers.add_parser('policies', help='Show retention policies')

    policy_parser = subparsers.add_parser('set-policy', help='Create or update a retention policy')
    policy_parser.add_argument('data_type')
    policy_parser.add_argument('--max-age-days', type=int, dest='max_age_days')
    policy_parser.add_argument('--max-records', type=int, dest='max_records')
    policy_parser.add_argument('--frequency', choices=['daily', 'weekly', 'monthly'],
                               dest='cleanup_frequency')
    policy_parser.add_argument('--enabled', action=argparse.BooleanOptionalAction,
                               dest='is_enabled', default=None)
    policy_parser.add_argument('--compression', action=argparse.BooleanOptionalAction,
                               dest='compression_enabled', default=None)
    policy_parser.add_argument('--archival', action=argparse.BooleanOptionalAction,
                               dest='archival_enabled', default=None)
    policy_parser.add_argument('--description')
    policy_parser.add_argument('--category')

    estimate_parser = subparsers.add_parser('estimate', help='Estimate cleanup (no deletion)')
    estimate_parser.add_argument('data_types', nargs='*',
                                 help='Data types to estimate (default: all enabled)')

    cleanup_parser = subparsers.add_parser('cleanup', help='Run cleanup for a data type')
    cleanup_parser.add_argument('data_type')
    cleanup_parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation')
    cleanup_parser.add_argument('--force', action='store_true',
                                help='Run even if the policy is disabled')

    vacuum_parser = subparsers.add_parser('vacuum', help='Reclaim free space')
    vacuum_parser.add_argument('--no-analyze', action='store_true',
                               help='Skip refreshing planner statistics')

    predict_parser = subparsers.add_parser('predict', help='Show capacity predictions')
    predict_parser.add_argument('--days', type=int, default=None,
                                help='Days of history used for growth (default: config)')
    predict_parser.add_argument('--total-space', type=int, default=None,
                                help='Capacity in bytes (default: config or filesystem)')

    subparsers.add_parser('snapshot', help='Record a usage snapshot')

    schedule_parser = subparsers.add_parser('schedule', help='Queue due cleanups')
    schedule_parser.add_argument('--run', action='store_true', help='Run queued jobs now')

    history_parser = subparsers.add_parser('history', help='Show recent cleanup operations')
    history_parser.add_argument('--data-type', default=None)
    history_parser.add_argument('--limit', type=int, default=20)

    query_parser = subparsers.add_parser('query', help='Read rows from a table')
    query_parser.add_argument('table')
    query_parser.add_argument('--equals', action='append', metavar='COLUMN=VALUE')
    query_parser.add_argument('--contains', action='append', metavar='COLUMN=TEXT')
    query_parser.add_argument('--before', action='append', metavar='COLUMN=VALUE')
    query_parser.add_argument('--after', action='append', metavar='COLUMN=VALUE')
    query_parser.add_argument('--is-null', action='append', metavar='COLUMN', dest='is_null')
    query_parser.add_argument('--order-by', default=None)
    query_parser.add_argument('--desc', action='store_true')
    query_parser.add_argument('--limit', type=int, default=20)
    query_parser.add_argument('--offset', type=int, default=0)

    daemon_parser = subparsers.add_parser('daemon', help='Run the scheduler continuously')
    daemon_parser.add_argument('--metrics-port', type=int, default=None,
                               help='Expose Prometheus metrics on this port')
    daemon_parser.add_argument('--metrics-interval', type=float, default=30.0,
                               help='Seconds between metrics refreshes')

    return parser


async def _run(args) -> int:
    manager = create_retention_manager(args.config, args.db)
    try:
        return await COMMANDS[args.command](manager, args)
    finally:
        await manager.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    level = 'DEBUG' if args.verbose else os.getenv('RETENTIOND_LOG_LEVEL', 'WARNING')
    configure_logging(level, json_output=args.log_json)

    try:
        return asyncio.run(_run(args))
    except RetentionError as e:
        if args.json:
            _print_json(e.to_dict())
        else:
            print(f"Error ({e.kind.value}): {e.message}")
            for detail in getattr(e, 'errors', []):
                if detail != e.message:
                    print(f"  - {detail}")
        return 1
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
