"""Unit tests for HealthMonitor."""

import asyncio
import math
from datetime import datetime, timedelta, timezone

import pytest

from oraclewatch.src.adapters.base import BaseAdapter, FeedHealth, Reading
from oraclewatch.src.errors import AdapterError, PersistenceError, UnregisteredProtocolError
from oraclewatch.src.HealthMonitor import (
    EPOCH,
    HealthCheckResult,
    HealthCheckStatus,
    HealthMonitor,
    HealthMonitorConfig,
)
from oraclewatch.src.PersistenceGateway import InMemoryGateway
from oraclewatch.src.ProtocolRegistry import ProtocolRegistry


class FeedScript:
    """Per-feed behaviour shared by every StubAdapter a registry builds."""

    def __init__(self, delay: float = 0.0) -> None:
        self.ages: dict[str, float] = {}
        self.errors: dict[str, Exception] = {}
        self.delay = delay
        self.events: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0
        self.closed = 0


class StubAdapter(BaseAdapter):
    """Adapter returning scripted readings."""

    name = "stub"

    def __init__(self, chain, config=None, stale_threshold_seconds=None, script=None) -> None:
        super().__init__(chain, config, stale_threshold_seconds)
        self.script = script

    async def fetch_price(self, feed_id: str) -> Reading:
        script = self.script
        script.events.append(("start", feed_id))
        script.active += 1
        script.max_active = max(script.max_active, script.active)
        try:
            if script.delay:
                await asyncio.sleep(script.delay)
            if feed_id in script.errors:
                raise script.errors[feed_id]
            age = script.ages.get(feed_id, 0.0)
            return Reading(
                value=100.0,
                origin_timestamp=datetime.now(timezone.utc) - timedelta(seconds=age),
            )
        finally:
            script.active -= 1
            script.events.append(("end", feed_id))

    async def aclose(self) -> None:
        self.script.closed += 1


def make_monitor(
    script: FeedScript, *protocols: str, **config
) -> tuple[HealthMonitor, InMemoryGateway]:
    registry = ProtocolRegistry()
    for protocol in protocols or ("pyth",):
        registry.register_adapter(
            protocol,
            lambda chain, cfg, stale_threshold_seconds=None: StubAdapter(
                chain, cfg, stale_threshold_seconds, script=script
            ),
        )
    gateway = InMemoryGateway()
    return HealthMonitor(gateway, registry, HealthMonitorConfig(**config)), gateway


class TestHealthCheckResult:
    """Test HealthCheckResult construction."""

    def test_healthy_requires_no_issues(self) -> None:
        """healthy=True with issues should raise ValueError."""
        with pytest.raises(ValueError):
            HealthCheckResult(
                protocol="pyth",
                chain="solana",
                feed_id="SOL/USD",
                healthy=True,
                last_update=EPOCH,
                staleness_seconds=0.0,
                issues=["bad"],
                checked_at=EPOCH,
                latency_ms=0.0,
            )

    def test_cache_key(self) -> None:
        """cache_key should join protocol, chain and feed id."""
        result = HealthCheckResult(
            "pyth", "solana", "SOL/USD", True, EPOCH, 0.0, [], EPOCH, 0.0
        )
        assert result.cache_key == "pyth-solana-SOL/USD"


class TestCheckFeedHealth:
    """Test single feed checks."""

    @pytest.mark.asyncio
    async def test_stale_pyth_feed(self) -> None:
        """A pyth reading 120s old should be stale against the 60s threshold."""
        script = FeedScript()
        script.ages["SOL/USD"] = 120
        monitor, gateway = make_monitor(script)

        result = await monitor.check_feed_health("pyth", "solana", "SOL/USD")

        assert result.healthy is False
        assert abs(result.staleness_seconds - 120) < 2
        assert result.issues == ["Data is stale: 120s old"]
        assert monitor.get_feed_health("pyth", "solana", "SOL/USD") is result
        assert await gateway.get_health_check("pyth", "solana", "SOL/USD") == result
        assert monitor.get_feed_status("pyth", "solana", "SOL/USD") == HealthCheckStatus.STALE

    @pytest.mark.asyncio
    async def test_fresh_feed_is_healthy(self) -> None:
        """A fresh reading should yield a healthy result with no issues."""
        monitor, _ = make_monitor(FeedScript())

        result = await monitor.check_feed_health("PYTH", "Solana", "SOL/USD")

        assert result.healthy is True
        assert result.issues == []
        assert result.protocol == "pyth"
        assert result.chain == "solana"
        assert result.latency_ms >= 0
        assert monitor.get_feed_status("pyth", "solana", "SOL/USD") == HealthCheckStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_adapter_failure_becomes_result(self) -> None:
        """Adapter errors should produce an unhealthy result, not raise."""
        script = FeedScript()
        script.errors["SOL/USD"] = AdapterError("HTTP 503: unavailable")
        monitor, gateway = make_monitor(script)

        result = await monitor.check_feed_health("pyth", "solana", "SOL/USD")

        assert result.healthy is False
        assert math.isinf(result.staleness_seconds)
        assert result.last_update == EPOCH
        assert result.issues == ["Health check failed: HTTP 503: unavailable"]
        assert monitor.get_feed_status("pyth", "solana", "SOL/USD") == HealthCheckStatus.ERROR
        assert ("pyth", "solana", "SOL/USD") in gateway.health_checks

    @pytest.mark.asyncio
    async def test_unregistered_protocol_becomes_result(self) -> None:
        """A protocol without adapter should produce a failed result."""
        monitor, _ = make_monitor(FeedScript())

        result = await monitor.check_feed_health("uma", "ethereum", "ETH/USD")

        assert result.healthy is False
        assert result.issues[0].startswith("Health check failed: No adapter registered")

    @pytest.mark.asyncio
    async def test_check_timeout(self) -> None:
        """Checks slower than check_timeout_seconds should fail."""
        monitor, _ = make_monitor(FeedScript(delay=1.0), check_timeout_seconds=0.05)

        result = await monitor.check_feed_health("pyth", "solana", "SOL/USD")

        assert result.healthy is False
        assert "timed out" in result.issues[0]

    @pytest.mark.asyncio
    async def test_unhealthy_without_issues(self) -> None:
        """An adapter verdict of unhealthy with no issues should get one."""

        class SilentAdapter(StubAdapter):
            async def check_feed_health(self, feed_id: str) -> FeedHealth:
                return FeedHealth(healthy=False, last_update=EPOCH, staleness_seconds=5.0)

        registry = ProtocolRegistry()
        registry.register_adapter(
            "pyth",
            lambda chain, cfg, stale_threshold_seconds=None: SilentAdapter(chain, cfg),
        )
        monitor = HealthMonitor(InMemoryGateway(), registry)

        result = await monitor.check_feed_health("pyth", "solana", "SOL/USD")

        assert result.healthy is False
        assert result.issues == ["Adapter reported feed unhealthy"]

    @pytest.mark.asyncio
    async def test_gateway_failure_is_swallowed(self) -> None:
        """Gateway write failures should not escape the check."""

        class BrokenGateway(InMemoryGateway):
            async def upsert_health_check(self, result) -> None:
                raise PersistenceError("db unavailable")

        registry = ProtocolRegistry()
        registry.register_adapter(
            "pyth",
            lambda chain, cfg, stale_threshold_seconds=None: StubAdapter(
                chain, cfg, stale_threshold_seconds, script=FeedScript()
            ),
        )
        monitor = HealthMonitor(BrokenGateway(), registry)

        result = await monitor.check_feed_health("pyth", "solana", "SOL/USD")

        assert result.healthy is True
        assert monitor.get_feed_health("pyth", "solana", "SOL/USD") is result


class TestCheckProtocolFeeds:
    """Test batched checks."""

    @pytest.mark.asyncio
    async def test_batches_respect_concurrency(self) -> None:
        """Six feeds with max 5 should run as a batch of 5 then a batch of 1."""
        script = FeedScript(delay=0.01)
        monitor, _ = make_monitor(script, "chainlink", max_concurrent_checks=5)
        feeds = [f"FEED{i}/USD" for i in range(6)]

        results = await monitor.check_protocol_feeds("chainlink", "ethereum", feeds)

        assert [r.feed_id for r in results] == feeds
        assert script.max_active == 5
        sixth_start = script.events.index(("start", "FEED5/USD"))
        first_batch_ends = [
            script.events.index(("end", feed_id)) for feed_id in feeds[:5]
        ]
        assert all(end < sixth_start for end in first_batch_ends)

    @pytest.mark.asyncio
    async def test_all_failures_return_results(self) -> None:
        """Every feed should get a result even when all checks fail."""
        script = FeedScript()
        feeds = ["A/USD", "B/USD", "C/USD"]
        for feed_id in feeds:
            script.errors[feed_id] = AdapterError("rpc down")
        monitor, _ = make_monitor(script)

        results = await monitor.check_protocol_feeds("pyth", "solana", feeds)

        assert len(results) == 3
        assert all(not r.healthy for r in results)
        assert len(monitor.get_unhealthy_feeds()) == 3

    @pytest.mark.asyncio
    async def test_unexpected_check_error(self, monkeypatch) -> None:
        """A check raising past its own handling should become a batch error."""
        monitor, _ = make_monitor(FeedScript())
        real_check = monitor.check_feed_health

        async def flaky(protocol, chain, feed_id, adapter_config=None):
            if feed_id == "B/USD":
                raise RuntimeError("boom")
            return await real_check(protocol, chain, feed_id, adapter_config)

        monkeypatch.setattr(monitor, "check_feed_health", flaky)

        results = await monitor.check_protocol_feeds("pyth", "solana", ["A/USD", "B/USD"])

        assert results[0].healthy is True
        assert results[1].issues == ["Batch check error: boom"]
        assert monitor.get_feed_health("pyth", "solana", "B/USD") is results[1]


class TestSummaries:
    """Test aggregate queries over cached verdicts."""

    def test_unknown_protocol_summary(self) -> None:
        """A protocol with no cached results should get a zeroed summary."""
        monitor, _ = make_monitor(FeedScript())

        summary = monitor.get_protocol_health_summary("redstone")

        assert summary.protocol == "redstone"
        assert summary.total_feeds == 0
        assert summary.healthy_feeds == 0
        assert summary.stale_feeds == 0
        assert summary.average_staleness_seconds == 0.0
        assert summary.last_checked_at is None

    @pytest.mark.asyncio
    async def test_summary_counts(self) -> None:
        """Summary should count healthy, stale and failed feeds."""
        script = FeedScript()
        script.ages["STALE/USD"] = 120
        script.errors["DOWN/USD"] = AdapterError("rpc down")
        monitor, _ = make_monitor(script)

        await monitor.check_protocol_feeds(
            "pyth", "solana", ["FRESH/USD", "STALE/USD", "DOWN/USD"]
        )
        summary = monitor.get_protocol_health_summary("pyth")

        assert summary.total_feeds == 3
        assert summary.healthy_feeds == 1
        assert summary.unhealthy_feeds == 2
        assert summary.stale_feeds == 1
        # Infinite staleness of the failed feed is left out of the average
        assert summary.average_staleness_seconds == 60.0
        assert summary.last_checked_at is not None

    @pytest.mark.asyncio
    async def test_summary_all_failed(self) -> None:
        """Average staleness should be 0 when no feed has a known age."""
        script = FeedScript()
        script.errors["DOWN/USD"] = AdapterError("rpc down")
        monitor, _ = make_monitor(script)

        await monitor.check_feed_health("pyth", "solana", "DOWN/USD")
        summary = monitor.get_protocol_health_summary("pyth")

        assert summary.total_feeds == 1
        assert summary.stale_feeds == 0
        assert summary.average_staleness_seconds == 0.0

    def test_unchecked_feed_status(self) -> None:
        """Feeds never checked should report unknown."""
        monitor, _ = make_monitor(FeedScript())
        assert monitor.get_feed_status("pyth", "solana", "SOL/USD") == HealthCheckStatus.UNKNOWN
        assert monitor.get_feed_health("pyth", "solana", "SOL/USD") is None


class TestMonitoringLifecycle:
    """Test start/stop of monitoring groups."""

    @pytest.mark.asyncio
    async def test_start_runs_immediate_pass(self) -> None:
        """start_monitoring should check all feeds before returning."""
        monitor, _ = make_monitor(FeedScript())

        await monitor.start_monitoring("pyth", "solana", ["SOL/USD", "BTC/USD"])
        try:
            assert monitor.get_monitored_groups() == ["pyth-solana"]
            assert monitor.get_protocol_health_summary("pyth").total_feeds == 2
        finally:
            await monitor.aclose()

    @pytest.mark.asyncio
    async def test_start_twice_is_idempotent(self) -> None:
        """A second start should not run another pass."""
        script = FeedScript()
        monitor, _ = make_monitor(script)

        await monitor.start_monitoring("pyth", "solana", ["SOL/USD"])
        await monitor.start_monitoring("pyth", "solana", ["SOL/USD"])
        try:
            assert script.events.count(("start", "SOL/USD")) == 1
            loops = [t for t in asyncio.all_tasks() if t.get_name() == "health:pyth-solana"]
            assert len(loops) == 1
        finally:
            await monitor.aclose()

    @pytest.mark.asyncio
    async def test_start_unregistered_protocol(self) -> None:
        """Starting a protocol without adapter should raise."""
        monitor, _ = make_monitor(FeedScript())
        with pytest.raises(UnregisteredProtocolError):
            await monitor.start_monitoring("uma", "ethereum", ["ETH/USD"])
        assert monitor.get_monitored_groups() == []

    @pytest.mark.asyncio
    async def test_loop_repeats_until_stopped(self) -> None:
        """Passes should repeat every interval and stop after stop_monitoring."""
        script = FeedScript()
        monitor, _ = make_monitor(script, check_interval_seconds=0.02)

        await monitor.start_monitoring("pyth", "solana", ["SOL/USD"])
        await asyncio.sleep(0.1)
        monitor.stop_monitoring("pyth", "solana")
        await asyncio.sleep(0)
        checks = script.events.count(("start", "SOL/USD"))
        await asyncio.sleep(0.06)

        assert checks >= 3
        assert script.events.count(("start", "SOL/USD")) == checks
        assert monitor.get_monitored_groups() == []
        # Cached verdicts survive stopping
        assert monitor.get_feed_health("pyth", "solana", "SOL/USD") is not None

    def test_stop_unknown_group(self) -> None:
        """Stopping a group that is not monitored should not raise."""
        monitor, _ = make_monitor(FeedScript())
        monitor.stop_monitoring("pyth", "solana")
        monitor.stop_all_monitoring()

    @pytest.mark.asyncio
    async def test_stop_wakes_idle_loop(self) -> None:
        """aclose should not wait for the rest of a long interval."""
        monitor, _ = make_monitor(FeedScript(), check_interval_seconds=3600)
        await monitor.start_monitoring("pyth", "solana", ["SOL/USD"])

        await asyncio.wait_for(monitor.aclose(), timeout=1.0)

        assert monitor.get_monitored_groups() == []

    @pytest.mark.asyncio
    async def test_adapters_closed_after_checks(self) -> None:
        """Every adapter built for a check should be closed, failed or not."""
        script = FeedScript()
        script.errors["BTC/USD"] = AdapterError("rpc down")
        monitor, _ = make_monitor(script)

        await monitor.check_protocol_feeds("pyth", "solana", ["SOL/USD", "BTC/USD"])

        assert script.closed == 2
