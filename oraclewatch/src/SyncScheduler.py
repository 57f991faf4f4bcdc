"""SyncScheduler: Per-instance price sync loops with bounded retry.

Each started instance gets its own asyncio task. The task waits for the
instance's interval, runs one cycle, and loops until the instance is
stopped. A cycle calls the protocol's sync function, writes the returned
records, and reports the outcome to the persistence gateway.

When a cycle fails, it is retried up to ``max_retries`` attempts in total
with backoff between attempts (exponential by default, linear on request):
    - First failure: retry_delay seconds
    - Second failure: 2 * retry_delay seconds
    - Third failure: 4 * retry_delay seconds (3 * retry_delay when linear)
    - ... up to max_retry_delay_seconds, plus a little jitter
After the last attempt the instance waits for its next tick.

Cycles never overlap for one instance: a tick arriving while a cycle is
still in flight is skipped, not queued. Restarting a stopped instance waits
for its last cycle to finish first. Errors inside a cycle are recorded and
never propagate out of the loop; only stop_sync() ends polling.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Awaitable

from .errors import NotFoundError, PersistenceError
from .MonitoredInstance import MonitoredInstance
from .PersistenceGateway import GatewayPriceWriter, PersistenceGateway
from .PriceFeedRecord import PriceFeedRecord, PriceWriter, SyncContext, SyncFunction
from .ProtocolRegistry import OracleProtocol, ProtocolRegistry
from .retry import (
    BACKOFF_STRATEGIES,
    EXPONENTIAL,
    compute_backoff,
    wait_for_stop,
    with_timeout,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncConfig:
    """Scheduling and retry settings for sync cycles.

    :ivar default_interval_seconds: Interval used when the instance has none.
    :ivar max_retries: Attempts per cycle before waiting for the next tick.
    :ivar retry_delay_seconds: Delay after the first failed attempt.
    :ivar batch_size: Symbols fetched concurrently by generic sync functions.
    :ivar backoff_strategy: "exponential" or "linear".
    :ivar backoff_multiplier: Growth factor of exponential retry delays (>= 1).
    :ivar max_retry_delay_seconds: Cap on a single retry delay.
    :ivar retry_jitter_ratio: Random jitter fraction added to retry delays.
    :ivar sync_timeout_seconds: Optional timeout for one sync function call.
    """

    default_interval_seconds: float = 60.0
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    batch_size: int = 20
    backoff_strategy: str = EXPONENTIAL
    backoff_multiplier: float = 2.0
    max_retry_delay_seconds: float = 60.0
    retry_jitter_ratio: float = 0.1
    sync_timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.default_interval_seconds <= 0:
            raise ValueError("default_interval_seconds must be positive")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.backoff_strategy not in BACKOFF_STRATEGIES:
            raise ValueError(f"Unknown backoff strategy: {self.backoff_strategy}")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must not be negative")

    def backoff(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt."""
        return compute_backoff(
            attempt,
            self.retry_delay_seconds,
            multiplier=self.backoff_multiplier,
            max_delay=self.max_retry_delay_seconds,
            jitter_ratio=self.retry_jitter_ratio,
            strategy=self.backoff_strategy,
        )


@dataclass
class SyncState:
    """In-memory run state of one instance.

    :ivar is_running: True only while a cycle is in flight.
    :ivar last_sync_at: Time of the last successful cycle.
    :ivar last_price: Price of the first record of the last successful cycle.
    :ivar consecutive_errors: Failed attempts since the last success.
    :ivar total_syncs: Attempts since the instance was started.
    :ivar total_failures: Failed attempts since the instance was started.
    """

    is_running: bool = False
    last_sync_at: datetime | None = None
    last_price: float | None = None
    consecutive_errors: int = 0
    total_syncs: int = 0
    total_failures: int = 0


def _set_event() -> asyncio.Event:
    event = asyncio.Event()
    event.set()
    return event


@dataclass
class _SyncJob:
    instance: MonitoredInstance
    sync_fn: SyncFunction
    config: SyncConfig
    state: SyncState = field(default_factory=SyncState)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    # Set while no cycle is in flight
    idle: asyncio.Event = field(default_factory=_set_event)
    task: asyncio.Task | None = None

    async def finished(self) -> None:
        """Wait until the loop task has exited and no cycle is in flight."""
        if self.task is not None:
            await asyncio.gather(self.task, return_exceptions=True)
        await self.idle.wait()


class SyncScheduler:
    """Owns one sync loop per monitored instance.

    :ivar gateway: Persistence gateway for instance lookup and reporting.
    :ivar registry: Protocol registry holding the sync functions.
    :ivar config: Default SyncConfig for start_sync() calls without one.
    :ivar price_writer: Sink receiving every cycle's records.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        registry: ProtocolRegistry | None = None,
        config: SyncConfig | None = None,
        price_writer: PriceWriter | None = None,
    ) -> None:
        """Initialize the scheduler.

        :param gateway: Persistence gateway.
        :param registry: Protocol registry (default: empty registry).
        :param config: Default sync configuration.
        :param price_writer: Record sink (default: GatewayPriceWriter).
        """
        self.gateway = gateway
        self.registry = registry or ProtocolRegistry()
        self.config = config or SyncConfig()
        self.price_writer: PriceWriter = price_writer or GatewayPriceWriter(gateway)
        self._jobs: dict[str, _SyncJob] = {}
        self._starting: set[str] = set()
        # Stopped jobs whose last cycle may still be in flight
        self._stopping: dict[str, _SyncJob] = {}

    def register_sync_function(
        self, protocol: str | OracleProtocol, fn: SyncFunction
    ) -> None:
        """Associate a protocol with its sync function.

        Must be called before start_sync() for instances of that protocol.
        """
        self.registry.register_sync_function(protocol, fn)

    def register_price_writer(self, writer: PriceWriter) -> None:
        """Replace the sink used for every protocol's records."""
        self.price_writer = writer

    async def start_sync(
        self, instance_id: str, config: SyncConfig | None = None
    ) -> None:
        """Start syncing an instance.

        Runs one cycle immediately, then loops at the instance's interval
        (``sync_interval_seconds``) or ``config.default_interval_seconds``.
        Calling it again while the instance is running does nothing. If the
        instance was stopped while a cycle was in flight, waits for that
        cycle to finish before starting.

        :param instance_id: Instance to start.
        :param config: Optional per-call overrides of the default config.
        :raises NotFoundError: If the gateway does not know the instance.
        :raises UnregisteredProtocolError: If no sync function is registered
            for the instance's protocol.
        """
        if instance_id in self._jobs or instance_id in self._starting:
            logger.warning(f"Sync already running for instance {instance_id}")
            return

        self._starting.add(instance_id)
        try:
            previous = self._stopping.pop(instance_id, None)
            if previous is not None:
                logger.info(f"Waiting for the previous sync of instance {instance_id} to finish")
                await previous.finished()

            instance = await self.gateway.get_instance(instance_id)
            if instance is None:
                raise NotFoundError(f"Instance {instance_id} not found")

            sync_fn = self.registry.get_sync_function(instance.protocol)
            job = _SyncJob(instance=instance, sync_fn=sync_fn, config=config or self.config)
            self._jobs[instance_id] = job

            await self._run_cycle(job)

            if job.stop_event.is_set():
                logger.info(f"Sync for instance {instance_id} stopped during initial cycle")
                self._forget_stopping(job)
                return

            interval = instance.sync_interval_seconds or job.config.default_interval_seconds
            job.task = asyncio.create_task(
                self._sync_loop(job, interval), name=f"sync:{instance_id}"
            )
            job.task.add_done_callback(lambda _task: self._forget_stopping(job))
            logger.info(
                f"Sync started for instance {instance} (interval={interval}s)"
            )
        finally:
            self._starting.discard(instance_id)

    def stop_sync(self, instance_id: str) -> None:
        """Stop syncing an instance and drop its in-memory state.

        An in-flight cycle is not interrupted; it finishes on its own and is
        not rescheduled.
        """
        job = self._jobs.pop(instance_id, None)
        if job is None:
            return
        job.stop_event.set()
        if not job.idle.is_set() or (job.task is not None and not job.task.done()):
            self._stopping[instance_id] = job
        logger.info(f"Sync stopped for instance {instance_id}")

    def stop_all_syncs(self) -> None:
        """Stop every running instance."""
        for instance_id in list(self._jobs):
            self.stop_sync(instance_id)

    async def aclose(self) -> None:
        """Stop every instance and wait for in-flight cycles to finish."""
        self.stop_all_syncs()
        jobs = list(self._stopping.values())
        if jobs:
            await asyncio.gather(*(job.finished() for job in jobs), return_exceptions=True)
        self._stopping.clear()

    async def force_sync(self, instance_id: str) -> None:
        """Run one cycle now for a running instance.

        :raises NotFoundError: If the instance is not running.
        """
        job = self._jobs.get(instance_id)
        if job is None:
            raise NotFoundError(f"Sync not running for instance {instance_id}")
        logger.info(f"Force sync triggered for instance {instance_id}")
        await self._run_cycle(job)

    def get_sync_state(self, instance_id: str) -> SyncState | None:
        """Snapshot of an instance's run state, or None if not running."""
        job = self._jobs.get(instance_id)
        if job is None:
            return None
        return replace(job.state)

    def get_running_syncs(self) -> list[str]:
        """Ids of all running instances."""
        return list(self._jobs.keys())

    def _forget_stopping(self, job: _SyncJob) -> None:
        instance_id = job.instance.instance_id
        if self._stopping.get(instance_id) is job and job.idle.is_set():
            del self._stopping[instance_id]

    async def _sync_loop(self, job: _SyncJob, interval: float) -> None:
        instance_id = job.instance.instance_id
        while not job.stop_event.is_set():
            if await wait_for_stop(job.stop_event, interval):
                break
            try:
                await self._run_cycle(job)
            except Exception as e:  # Cycle errors are handled inside _run_cycle
                logger.error(f"Scheduled sync failed for instance {instance_id}: {e}")
        logger.debug(f"Sync loop exited for instance {instance_id}")

    async def _run_cycle(self, job: _SyncJob) -> None:
        """Run one cycle with bounded retries.

        :param job: The instance's job.
        """
        state = job.state
        instance_id = job.instance.instance_id

        if state.is_running:
            logger.debug(f"Sync already in progress for instance {instance_id}, skipping")
            return

        state.is_running = True
        job.idle.clear()
        try:
            max_retries = job.config.max_retries
            for attempt in range(1, max_retries + 1):
                if await self._attempt(job):
                    return
                if attempt >= max_retries or job.stop_event.is_set():
                    break

                delay = job.config.backoff(attempt)
                logger.info(
                    f"Retrying sync for instance {instance_id} "
                    f"(attempt {attempt + 1}/{max_retries}) in {delay:.2f}s"
                )
                if await wait_for_stop(job.stop_event, delay):
                    break

            logger.warning(
                f"Sync for instance {instance_id} failed "
                f"(consecutive_errors={state.consecutive_errors}), waiting for next tick"
            )
        finally:
            state.is_running = False
            job.idle.set()

    async def _attempt(self, job: _SyncJob) -> bool:
        """Run the sync function once and record the outcome.

        :param job: The instance's job.
        :returns: True on success.
        """
        instance = job.instance
        state = job.state
        context = SyncContext(
            instance_id=instance.instance_id,
            protocol=instance.protocol,
            chain=instance.chain,
            rpc_url=instance.rpc_url,
            config=dict(instance.adapter_config),
            batch_size=job.config.batch_size,
        )

        state.total_syncs += 1
        try:
            records = list(await self._call_sync_function(job, context) or [])
            if records:
                await self._write_records(records)
        except Exception as e:
            state.consecutive_errors += 1
            state.total_failures += 1
            message = str(e) or type(e).__name__
            logger.error(
                f"Sync failed for instance {instance.instance_id}: {message} "
                f"(consecutive_errors={state.consecutive_errors})"
            )
            await self._persist(
                self.gateway.record_sync_error(instance.instance_id, message),
                f"sync error of {instance.instance_id}",
            )
            await self._persist(
                self.gateway.upsert_sync_state(
                    instance.instance_id,
                    status="error",
                    last_sync_at=datetime.now(timezone.utc),
                    error_message=message,
                ),
                f"sync state of {instance.instance_id}",
            )
            return False

        now = datetime.now(timezone.utc)
        state.last_sync_at = now
        state.consecutive_errors = 0
        if records:
            state.last_price = records[0].price

        await self._persist(
            self.gateway.upsert_sync_state(
                instance.instance_id,
                status="healthy",
                last_sync_at=now,
                last_processed_block=records[0].block_number if records else None,
            ),
            f"sync state of {instance.instance_id}",
        )
        logger.debug(
            f"Sync completed for instance {instance.instance_id} ({len(records)} records)"
        )
        return True

    async def _call_sync_function(
        self, job: _SyncJob, context: SyncContext
    ) -> list[PriceFeedRecord] | None:
        call = job.sync_fn(context)
        timeout = job.config.sync_timeout_seconds
        if timeout is None:
            return await call
        return await with_timeout(
            call, timeout, f"Sync timed out for instance {context.instance_id} after {timeout}s"
        )

    async def _write_records(self, records: list[PriceFeedRecord]) -> None:
        try:
            await self.price_writer(records)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Price write failed: {e}") from e

    @staticmethod
    async def _persist(write: Awaitable[None], description: str) -> None:
        """Await a gateway write; failures are logged and swallowed."""
        try:
            await write
        except Exception as e:
            logger.warning(f"Failed to persist {description}: {e}")
