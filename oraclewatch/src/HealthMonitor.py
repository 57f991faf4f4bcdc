"""HealthMonitor: Batched feed health checks with an in-memory verdict cache.

One monitoring loop runs per (protocol, chain) group. Each pass checks the
group's feeds in batches of ``max_concurrent_checks``: the checks of one
batch run concurrently, and the next batch starts only after the whole
batch has settled. This caps simultaneous calls to one chain's endpoint.

Every check produces a HealthCheckResult, even when the adapter fails;
failures become results with ``healthy=False``, infinite staleness and the
error in ``issues``. The latest result per feed is cached in memory and
upserted through the persistence gateway.

Verdicts are level-triggered: each check replaces the cached result, and a
flapping feed simply alternates between verdicts from pass to pass.

Status of a feed, derived from its cached result:
    - unknown: never checked
    - healthy: no issues
    - stale: unhealthy and older than the protocol's staleness threshold
    - error: any other unhealthy verdict (failed check, invalid price, ...)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import UnregisteredProtocolError
from .PersistenceGateway import PersistenceGateway
from .ProtocolRegistry import OracleProtocol, ProtocolRegistry, protocol_key
from .retry import wait_for_stop, with_timeout

logger = logging.getLogger(__name__)

# Staleness thresholds per protocol, in seconds
DEFAULT_STALE_THRESHOLDS: dict[str, float] = {
    "chainlink": 3600,
    "pyth": 60,
    "redstone": 60,
    "uma": 600,
}

EPOCH = datetime.fromtimestamp(0, timezone.utc)


class HealthCheckStatus(str, Enum):
    """Derived status of one feed."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    STALE = "stale"
    ERROR = "error"


@dataclass
class HealthMonitorConfig:
    """Settings of the health monitor.

    :ivar check_interval_seconds: Seconds between passes of one group.
    :ivar stale_threshold_seconds: Staleness threshold per protocol.
    :ivar default_stale_threshold_seconds: Threshold for unlisted protocols.
    :ivar max_concurrent_checks: Feeds checked concurrently per batch.
    :ivar check_timeout_seconds: Optional timeout for one feed check.
    """

    check_interval_seconds: float = 60.0
    stale_threshold_seconds: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_STALE_THRESHOLDS)
    )
    default_stale_threshold_seconds: float = 3600.0
    max_concurrent_checks: int = 5
    check_timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_concurrent_checks < 1:
            raise ValueError("max_concurrent_checks must be at least 1")
        if self.check_interval_seconds <= 0:
            raise ValueError("check_interval_seconds must be positive")

    def threshold_for(self, protocol: str | OracleProtocol) -> float:
        """Staleness threshold of a protocol in seconds."""
        return self.stale_threshold_seconds.get(
            protocol_key(protocol), self.default_stale_threshold_seconds
        )


@dataclass
class HealthCheckResult:
    """One verdict for one feed.

    :ivar last_update: Origin time of the feed's latest value (epoch if unknown).
    :ivar staleness_seconds: Age of the latest value; ``inf`` if unknown.
    :ivar issues: Problems found; empty if and only if healthy.
    :ivar checked_at: When the check finished.
    :ivar latency_ms: Wall-clock duration of the check.
    :ivar extras: Protocol-specific fields (e.g. UMA active_disputes).
    """

    protocol: str
    chain: str
    feed_id: str
    healthy: bool
    last_update: datetime
    staleness_seconds: float
    issues: list[str]
    checked_at: datetime
    latency_ms: float
    extras: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.healthy != (not self.issues):
            raise ValueError("healthy must be True exactly when there are no issues")

    @property
    def cache_key(self) -> str:
        return f"{self.protocol}-{self.chain}-{self.feed_id}"


@dataclass
class ProtocolHealthSummary:
    """Aggregate of the cached verdicts of one protocol."""

    protocol: str
    total_feeds: int = 0
    healthy_feeds: int = 0
    unhealthy_feeds: int = 0
    stale_feeds: int = 0
    average_staleness_seconds: float = 0.0
    last_checked_at: datetime | None = None


def failed_result(
    protocol: str,
    chain: str,
    feed_id: str,
    issue: str,
    latency_ms: float = 0.0,
) -> HealthCheckResult:
    """Build the verdict of a check that could not be completed."""
    return HealthCheckResult(
        protocol=protocol,
        chain=chain,
        feed_id=feed_id,
        healthy=False,
        last_update=EPOCH,
        staleness_seconds=math.inf,
        issues=[issue],
        checked_at=datetime.now(timezone.utc),
        latency_ms=latency_ms,
    )


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


@dataclass
class _MonitorJob:
    protocol: str
    chain: str
    feed_ids: list[str]
    adapter_config: dict[str, Any]
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None


class HealthMonitor:
    """Runs health checks per (protocol, chain) group and caches verdicts.

    :ivar gateway: Persistence gateway receiving every verdict.
    :ivar registry: Protocol registry used to build adapters.
    :ivar config: Monitor settings.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        registry: ProtocolRegistry | None = None,
        config: HealthMonitorConfig | None = None,
    ) -> None:
        """Initialize the monitor.

        :param gateway: Persistence gateway.
        :param registry: Protocol registry (default: built-in adapters).
        :param config: Monitor settings.
        """
        self.gateway = gateway
        self.registry = registry or ProtocolRegistry.with_default_adapters()
        self.config = config or HealthMonitorConfig()
        self._results: dict[str, HealthCheckResult] = {}
        self._groups: dict[str, _MonitorJob] = {}
        self._starting: set[str] = set()

    async def check_feed_health(
        self,
        protocol: str | OracleProtocol,
        chain: str,
        feed_id: str,
        adapter_config: dict[str, Any] | None = None,
    ) -> HealthCheckResult:
        """Check one feed, cache and persist the verdict.

        Never raises for adapter failures: they become an unhealthy result.

        :param protocol: Protocol name.
        :param chain: Chain name.
        :param feed_id: Feed identifier.
        :param adapter_config: Adapter configuration (rpc_url, feeds, ...).
        :returns: The verdict.
        """
        protocol = protocol_key(protocol)
        chain = chain.lower()
        started = time.perf_counter()

        try:
            adapter = self.registry.create_adapter(
                protocol,
                chain,
                adapter_config,
                stale_threshold_seconds=self.config.threshold_for(protocol),
            )
            try:
                check = adapter.check_feed_health(feed_id)
                timeout = self.config.check_timeout_seconds
                if timeout is not None:
                    health = await with_timeout(
                        check, timeout, f"Health check timed out after {timeout}s"
                    )
                else:
                    health = await check
            finally:
                await adapter.aclose()
        except Exception as e:
            latency_ms = (time.perf_counter() - started) * 1000
            logger.warning(f"[{protocol}] Health check failed for {feed_id} on {chain}: {e}")
            result = failed_result(
                protocol, chain, feed_id, f"Health check failed: {_describe(e)}", latency_ms
            )
        else:
            latency_ms = (time.perf_counter() - started) * 1000
            issues = list(health.issues)
            if not health.healthy and not issues:
                issues.append("Adapter reported feed unhealthy")
            result = HealthCheckResult(
                protocol=protocol,
                chain=chain,
                feed_id=feed_id,
                healthy=not issues,
                last_update=health.last_update,
                staleness_seconds=health.staleness_seconds,
                issues=issues,
                checked_at=datetime.now(timezone.utc),
                latency_ms=latency_ms,
                extras=dict(health.extras),
            )

        await self._store(result)
        return result

    async def check_protocol_feeds(
        self,
        protocol: str | OracleProtocol,
        chain: str,
        feed_ids: list[str],
        adapter_config: dict[str, Any] | None = None,
    ) -> list[HealthCheckResult]:
        """Check many feeds in bounded-concurrency batches.

        :param protocol: Protocol name.
        :param chain: Chain name.
        :param feed_ids: Feeds to check.
        :param adapter_config: Adapter configuration.
        :returns: One result per feed id, in input order.
        """
        protocol = protocol_key(protocol)
        chain = chain.lower()
        logger.info(f"Starting health check for {protocol} on {chain} ({len(feed_ids)} feeds)")

        results: list[HealthCheckResult] = []
        batch_size = self.config.max_concurrent_checks
        for start in range(0, len(feed_ids), batch_size):
            batch = feed_ids[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(
                    self.check_feed_health(protocol, chain, feed_id, adapter_config)
                    for feed_id in batch
                ),
                return_exceptions=True,
            )

            for feed_id, outcome in zip(batch, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    outcome = failed_result(
                        protocol, chain, feed_id, f"Batch check error: {_describe(outcome)}"
                    )
                    await self._store(outcome)
                results.append(outcome)

        threshold = self.config.threshold_for(protocol)
        healthy = sum(1 for r in results if r.healthy)
        stale = sum(1 for r in results if self._is_stale(r, threshold))
        logger.info(
            f"Health check completed for {protocol} on {chain}: "
            f"total={len(results)}, healthy={healthy}, stale={stale}, "
            f"failed={len(results) - healthy - stale}"
        )
        return results

    async def start_monitoring(
        self,
        protocol: str | OracleProtocol,
        chain: str,
        feed_ids: list[str],
        adapter_config: dict[str, Any] | None = None,
    ) -> None:
        """Start periodic checks for a (protocol, chain) group.

        Runs one pass immediately, then every ``check_interval_seconds``.
        Calling it again while the group is monitored does nothing.

        :raises UnregisteredProtocolError: If no adapter is registered.
        """
        protocol = protocol_key(protocol)
        chain = chain.lower()
        key = f"{protocol}-{chain}"

        if key in self._groups or key in self._starting:
            logger.warning(f"Health monitoring already running for {key}")
            return
        if not self.registry.has_adapter(protocol):
            raise UnregisteredProtocolError(f"No adapter registered for protocol: {protocol}")

        self._starting.add(key)
        try:
            job = _MonitorJob(protocol, chain, list(feed_ids), dict(adapter_config or {}))
            self._groups[key] = job
            logger.info(
                f"Starting health monitoring for {key} ({len(feed_ids)} feeds, "
                f"interval={self.config.check_interval_seconds}s)"
            )

            await self.check_protocol_feeds(protocol, chain, job.feed_ids, job.adapter_config)

            if job.stop_event.is_set():
                return
            job.task = asyncio.create_task(self._monitor_loop(job), name=f"health:{key}")
        finally:
            self._starting.discard(key)

    def stop_monitoring(self, protocol: str | OracleProtocol, chain: str) -> None:
        """Stop periodic checks of a group; cached verdicts are kept."""
        key = f"{protocol_key(protocol)}-{chain.lower()}"
        job = self._groups.pop(key, None)
        if job is None:
            return
        job.stop_event.set()
        logger.info(f"Stopped health monitoring for {key}")

    def stop_all_monitoring(self) -> None:
        for job in list(self._groups.values()):
            self.stop_monitoring(job.protocol, job.chain)

    async def aclose(self) -> None:
        """Stop every group and wait for the loop tasks to exit."""
        tasks = [job.task for job in self._groups.values() if job.task is not None]
        self.stop_all_monitoring()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_monitored_groups(self) -> list[str]:
        return list(self._groups.keys())

    def get_protocol_health_summary(
        self, protocol: str | OracleProtocol
    ) -> ProtocolHealthSummary:
        """Summarize the cached verdicts of one protocol.

        Feeds with unknown (infinite) staleness are left out of the average
        staleness; if no feed has a known staleness the average is 0.

        :param protocol: Protocol name.
        :returns: Summary, zeroed if nothing is cached for the protocol.
        """
        protocol = protocol_key(protocol)
        results = [r for r in self._results.values() if r.protocol == protocol]
        if not results:
            return ProtocolHealthSummary(protocol=protocol)

        threshold = self.config.threshold_for(protocol)
        healthy = sum(1 for r in results if r.healthy)
        stale = sum(1 for r in results if self._is_stale(r, threshold))
        known = [r.staleness_seconds for r in results if math.isfinite(r.staleness_seconds)]
        average = sum(known) / len(known) if known else 0.0

        return ProtocolHealthSummary(
            protocol=protocol,
            total_feeds=len(results),
            healthy_feeds=healthy,
            unhealthy_feeds=len(results) - healthy,
            stale_feeds=stale,
            average_staleness_seconds=float(round(average)),
            last_checked_at=max(r.checked_at for r in results),
        )

    def get_unhealthy_feeds(self) -> list[HealthCheckResult]:
        return [r for r in self._results.values() if not r.healthy]

    def get_feed_health(
        self, protocol: str | OracleProtocol, chain: str, feed_id: str
    ) -> HealthCheckResult | None:
        return self._results.get(f"{protocol_key(protocol)}-{chain.lower()}-{feed_id}")

    def get_feed_status(
        self, protocol: str | OracleProtocol, chain: str, feed_id: str
    ) -> HealthCheckStatus:
        """Derived status of a feed from its cached verdict."""
        result = self.get_feed_health(protocol, chain, feed_id)
        if result is None:
            return HealthCheckStatus.UNKNOWN
        return self.classify(result)

    def classify(self, result: HealthCheckResult) -> HealthCheckStatus:
        if result.healthy:
            return HealthCheckStatus.HEALTHY
        if self._is_stale(result, self.config.threshold_for(result.protocol)):
            return HealthCheckStatus.STALE
        return HealthCheckStatus.ERROR

    @staticmethod
    def _is_stale(result: HealthCheckResult, threshold: float) -> bool:
        # Infinite staleness means the check failed, not that data is old
        return (
            not result.healthy
            and math.isfinite(result.staleness_seconds)
            and result.staleness_seconds > threshold
        )

    async def _monitor_loop(self, job: _MonitorJob) -> None:
        key = f"{job.protocol}-{job.chain}"
        while not job.stop_event.is_set():
            if await wait_for_stop(job.stop_event, self.config.check_interval_seconds):
                break

            try:
                await self.check_protocol_feeds(
                    job.protocol, job.chain, job.feed_ids, job.adapter_config
                )
            except Exception as e:  # Per-feed errors are already results
                logger.error(f"Scheduled health check failed for {key}: {e}")
        logger.debug(f"Health monitoring loop exited for {key}")

    async def _store(self, result: HealthCheckResult) -> None:
        """Cache a verdict and upsert it; gateway failures are only logged."""
        self._results[result.cache_key] = result
        try:
            await self.gateway.upsert_health_check(result)
        except Exception as e:
            logger.error(
                f"[{result.protocol}] Failed to save health check result for "
                f"{result.feed_id}: {e}"
            )
