#!/usr/bin/env python3
"""Oracle Watch.

Polls oracle price feeds per configured instance, checks feed health per
(protocol, chain) group, and keeps the latest prices and verdicts in the
persistence gateway.

Instances are read from a JSON file. See --help for configuration.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from .src.AdapterSync import AdapterSyncFunction
from .src.adapters import BaseAdapter, get_available_adapters
from .src.HealthMonitor import DEFAULT_STALE_THRESHOLDS, HealthMonitor, HealthMonitorConfig
from .src.MonitoredInstance import MonitoredInstance
from .src.PersistenceGateway import InMemoryGateway
from .src.ProtocolRegistry import ProtocolRegistry
from .src.retry import BACKOFF_STRATEGIES, EXPONENTIAL
from .src.SyncScheduler import SyncConfig, SyncScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_stale_thresholds(threshold_str: str | None) -> dict[str, float]:
    """Parse comma-separated staleness thresholds into a dictionary.

    Format: protocol1=seconds1,protocol2=seconds2
    Example: pyth=60,chainlink=3600

    :param threshold_str: Comma-separated threshold string.
    :returns: Dict mapping protocol names to thresholds in seconds.
    :raises ValueError: If a threshold is not a number.
    """
    if not threshold_str:
        return {}

    thresholds = {}
    for item in threshold_str.split(","):
        item = item.strip()
        if "=" in item:
            protocol, seconds = item.split("=", 1)
            thresholds[protocol.strip().lower()] = float(seconds.strip())
    return thresholds


def load_instances(path: str | Path) -> list[MonitoredInstance]:
    """Load monitored instances from a JSON file.

    The file holds either a list of instance objects or an object with an
    ``instances`` list.

    :param path: Path to the JSON file.
    :returns: Parsed instances.
    :raises ValueError: If the file content is malformed.
    """
    with open(path, "r") as file:
        data: Any = json.load(file)

    if isinstance(data, dict):
        data = data.get("instances")
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of instances")

    instances = [MonitoredInstance.from_dict(item) for item in data]
    ids = [i.instance_id for i in instances]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise ValueError(f"{path}: duplicate instance ids {duplicates}")
    return instances


def group_health_targets(
    instances: list[MonitoredInstance],
) -> dict[tuple[str, str], tuple[list[str], dict[str, Any]]]:
    """Group instances into (protocol, chain) health-check targets.

    Feeds are the union of each instance's ``health_feeds`` (or ``symbols``)
    in first-seen order; the adapter config of the first instance is used.

    :param instances: Configured instances.
    :returns: Dict mapping (protocol, chain) to (feed_ids, adapter_config).
    """
    groups: dict[tuple[str, str], tuple[list[str], dict[str, Any]]] = {}
    for instance in instances:
        key = (instance.protocol, instance.chain)
        feeds, _ = groups.setdefault(key, ([], dict(instance.adapter_config)))
        for feed_id in instance.adapter_config.get("health_feeds") or instance.symbols:
            if feed_id not in feeds:
                feeds.append(feed_id)
    return groups


async def run(
    instances: list[MonitoredInstance],
    sync_config: SyncConfig,
    monitor_config: HealthMonitorConfig,
    enable_sync: bool = True,
    enable_health: bool = True,
) -> None:
    """Wire the scheduler and monitor, start every unit and run until cancelled."""
    gateway = InMemoryGateway(instances)
    registry = ProtocolRegistry.with_default_adapters()
    sync_fn = AdapterSyncFunction(registry)
    for protocol in registry.get_adapter_protocols():
        registry.register_sync_function(protocol, sync_fn)

    scheduler = SyncScheduler(gateway, registry, sync_config)
    monitor = HealthMonitor(gateway, registry, monitor_config)

    try:
        if enable_sync:
            for instance in instances:
                await scheduler.start_sync(instance.instance_id)

        groups = group_health_targets(instances) if enable_health else {}
        for (protocol, chain), (feed_ids, adapter_config) in groups.items():
            if feed_ids:
                await monitor.start_monitoring(protocol, chain, feed_ids, adapter_config)

        protocols = sorted({protocol for protocol, _ in groups})
        while True:
            await asyncio.sleep(monitor_config.check_interval_seconds)
            for protocol in protocols:
                summary = monitor.get_protocol_health_summary(protocol)
                logger.info(
                    f"[{protocol}] {summary.healthy_feeds}/{summary.total_feeds} healthy, "
                    f"{summary.stale_feeds} stale, "
                    f"avg staleness {summary.average_staleness_seconds:.0f}s"
                )
    finally:
        await scheduler.aclose()
        await monitor.aclose()
        await BaseAdapter.close_shared_client()


def main() -> None:
    """Main entry point for the Oracle Watch CLI."""
    available_protocols = get_available_adapters()

    parser = argparse.ArgumentParser(
        description="Oracle Watch: oracle price sync and feed health monitoring",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available protocols:
  {', '.join(available_protocols)}

Instances file (JSON):
  [{{"instance_id": "cl-eth", "protocol": "chainlink", "chain": "ethereum",
    "rpc_url": "https://eth.llamarpc.com", "symbols": ["ETH/USD", "BTC/USD"]}},
   {{"instance_id": "pyth-sol", "protocol": "pyth", "chain": "solana",
    "symbols": ["SOL/USD"], "sync_interval_seconds": 30}}]

Examples:
  python -m oraclewatch.main --instances instances.json
  python -m oraclewatch.main --instances instances.json \\
      --stale-thresholds pyth=30,chainlink=7200 --max-concurrent-checks 10

Environment variables (CLI args take precedence):
  INSTANCES_FILE, SYNC_INTERVAL, MAX_RETRIES, RETRY_DELAY, BACKOFF_STRATEGY, SYNC_TIMEOUT,
  CHECK_INTERVAL, MAX_CONCURRENT_CHECKS, CHECK_TIMEOUT, STALE_THRESHOLDS
""",
    )

    parser.add_argument(
        "--instances",
        type=str,
        help="Path to the JSON instances file",
        default=os.environ.get("INSTANCES_FILE"),
    )

    parser.add_argument(
        "--sync-interval",
        dest="sync_interval",
        type=float,
        help="Default seconds between syncs of an instance (default: 60)",
        default=float(os.environ.get("SYNC_INTERVAL") or "60"),
    )

    parser.add_argument(
        "--max-retries",
        dest="max_retries",
        type=int,
        help="Attempts per sync cycle (default: 3)",
        default=int(os.environ.get("MAX_RETRIES") or "3"),
    )

    parser.add_argument(
        "--retry-delay",
        dest="retry_delay",
        type=float,
        help="Seconds before the first retry (default: 5)",
        default=float(os.environ.get("RETRY_DELAY") or "5"),
    )

    parser.add_argument(
        "--backoff-strategy",
        dest="backoff_strategy",
        choices=BACKOFF_STRATEGIES,
        help="Growth of retry delays: exponential doubles, linear adds (default: exponential)",
        default=os.environ.get("BACKOFF_STRATEGY") or EXPONENTIAL,
    )

    parser.add_argument(
        "--sync-timeout",
        dest="sync_timeout",
        type=float,
        help="Timeout for one sync call in seconds (default: none)",
        default=float(os.environ["SYNC_TIMEOUT"]) if os.environ.get("SYNC_TIMEOUT") else None,
    )

    parser.add_argument(
        "--check-interval",
        dest="check_interval",
        type=float,
        help="Seconds between health passes of a group (default: 60)",
        default=float(os.environ.get("CHECK_INTERVAL") or "60"),
    )

    parser.add_argument(
        "--max-concurrent-checks",
        dest="max_concurrent_checks",
        type=int,
        help="Feeds checked concurrently per batch (default: 5)",
        default=int(os.environ.get("MAX_CONCURRENT_CHECKS") or "5"),
    )

    parser.add_argument(
        "--check-timeout",
        dest="check_timeout",
        type=float,
        help="Timeout for one feed health check in seconds (default: none)",
        default=float(os.environ["CHECK_TIMEOUT"]) if os.environ.get("CHECK_TIMEOUT") else None,
    )

    parser.add_argument(
        "--stale-thresholds",
        dest="stale_thresholds",
        type=str,
        help="Comma-separated staleness thresholds (e.g., pyth=60,chainlink=3600)",
        default=os.environ.get("STALE_THRESHOLDS"),
    )

    parser.add_argument(
        "--no-sync",
        dest="enable_sync",
        action="store_false",
        help="Disable price syncing",
    )

    parser.add_argument(
        "--no-health",
        dest="enable_health",
        action="store_false",
        help="Disable health monitoring",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if not args.instances:
        parser.error("--instances (or INSTANCES_FILE) is required")

    if args.sync_interval <= 0:
        parser.error("--sync-interval must be positive")

    if args.check_interval <= 0:
        parser.error("--check-interval must be positive")

    if args.max_retries < 1:
        parser.error("--max-retries must be at least 1")

    if args.backoff_strategy not in BACKOFF_STRATEGIES:
        parser.error(f"--backoff-strategy must be one of: {', '.join(BACKOFF_STRATEGIES)}")

    if args.max_concurrent_checks < 1:
        parser.error("--max-concurrent-checks must be at least 1")

    if not args.enable_sync and not args.enable_health:
        parser.error("--no-sync and --no-health together leave nothing to do")

    try:
        stale_thresholds = parse_stale_thresholds(args.stale_thresholds)
    except ValueError as e:
        parser.error(f"Invalid --stale-thresholds: {e}")

    try:
        instances = load_instances(args.instances)
    except (OSError, ValueError) as e:
        parser.error(f"Cannot load instances: {e}")

    if not instances:
        parser.error("At least one instance must be configured")

    # Validate protocols
    invalid_protocols = sorted(
        {i.protocol for i in instances if i.protocol not in available_protocols}
    )
    if invalid_protocols:
        parser.error(
            f"Unknown protocols: {invalid_protocols}. "
            f"Available: {', '.join(available_protocols)}"
        )

    sync_config = SyncConfig(
        default_interval_seconds=args.sync_interval,
        max_retries=args.max_retries,
        retry_delay_seconds=args.retry_delay,
        backoff_strategy=args.backoff_strategy,
        sync_timeout_seconds=args.sync_timeout,
    )
    monitor_config = HealthMonitorConfig(
        check_interval_seconds=args.check_interval,
        stale_threshold_seconds={**DEFAULT_STALE_THRESHOLDS, **stale_thresholds},
        max_concurrent_checks=args.max_concurrent_checks,
        check_timeout_seconds=args.check_timeout,
    )

    # Log configuration
    logger.info("=" * 60)
    logger.info("Oracle Watch - Price Sync & Feed Health")
    logger.info("=" * 60)
    logger.info(f"Instances:         {', '.join(str(i) for i in instances)}")
    logger.info(f"Sync:              {'enabled' if args.enable_sync else 'disabled'}")
    logger.info(f"Health:            {'enabled' if args.enable_health else 'disabled'}")
    logger.info(f"Sync Interval:     {args.sync_interval}s")
    logger.info(f"Max Retries:       {args.max_retries} (delay {args.retry_delay}s)")
    logger.info(f"Check Interval:    {args.check_interval}s")
    logger.info(f"Concurrent Checks: {args.max_concurrent_checks}")
    logger.info(f"Stale Thresholds:  {monitor_config.stale_threshold_seconds}")
    logger.info("=" * 60)

    try:
        asyncio.run(
            run(
                instances,
                sync_config,
                monitor_config,
                enable_sync=args.enable_sync,
                enable_health=args.enable_health,
            )
        )
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
