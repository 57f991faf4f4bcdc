"""PersistenceGateway: Narrow store interface used by the scheduler and monitor.

The storage engine itself is not part of this package. The gateway exposes
exactly the upserts and lookups the core needs:

- price rows keyed by (protocol, chain, instance_id, symbol, timestamp)
- health rows keyed by (protocol, chain, feed_id)
- one sync-state row per instance, plus an error log

InMemoryGateway is a complete implementation backed by dicts. It is used
by the CLI runner and the tests; a database-backed gateway only needs to
implement the same abstract methods.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .errors import PersistenceError
from .MonitoredInstance import MonitoredInstance
from .PriceFeedRecord import PriceFeedKey, PriceFeedRecord
from .retry import with_retry

if TYPE_CHECKING:
    from .HealthMonitor import HealthCheckResult

logger = logging.getLogger(__name__)


@dataclass
class SyncStateRecord:
    """Durable sync status of one instance.

    :ivar status: "healthy" or "error".
    :ivar last_sync_at: Time of the last reported cycle attempt.
    :ivar last_processed_block: Block of the first record of the last success.
    :ivar error_message: Message of the last failure, cleared on success.
    """

    instance_id: str
    status: str
    last_sync_at: datetime | None = None
    last_processed_block: int | None = None
    error_message: str | None = None


@dataclass
class SyncErrorEntry:
    """One entry of the per-instance sync error log."""

    instance_id: str
    message: str
    occurred_at: datetime


class PersistenceGateway(ABC):
    """Abstract store reached by the scheduler and the monitor."""

    @abstractmethod
    async def get_instance(self, instance_id: str) -> MonitoredInstance | None:
        """Look up a monitored instance.

        :param instance_id: Instance identifier.
        :returns: The instance, or None if unknown.
        """
        pass

    @abstractmethod
    async def upsert_price_feeds(self, records: list[PriceFeedRecord]) -> None:
        """Insert or update price rows.

        :param records: Records to store.
        :raises PersistenceError: If the write fails.
        """
        pass

    @abstractmethod
    async def upsert_health_check(self, result: HealthCheckResult) -> None:
        """Insert or update the health row of a feed.

        :param result: Health verdict to store.
        :raises PersistenceError: If the write fails.
        """
        pass

    @abstractmethod
    async def upsert_sync_state(
        self,
        instance_id: str,
        *,
        status: str,
        last_sync_at: datetime | None = None,
        last_processed_block: int | None = None,
        error_message: str | None = None,
    ) -> None:
        """Insert or update the sync-state row of an instance.

        :raises PersistenceError: If the write fails.
        """
        pass

    @abstractmethod
    async def record_sync_error(self, instance_id: str, message: str) -> None:
        """Append a sync failure to the instance's error log.

        :raises PersistenceError: If the write fails.
        """
        pass

    @abstractmethod
    async def get_price_feed(self, key: PriceFeedKey) -> PriceFeedRecord | None:
        pass

    @abstractmethod
    async def get_health_check(
        self, protocol: str, chain: str, feed_id: str
    ) -> HealthCheckResult | None:
        pass

    @abstractmethod
    async def get_sync_state_record(self, instance_id: str) -> SyncStateRecord | None:
        pass


class InMemoryGateway(PersistenceGateway):
    """Dict-backed gateway.

    Stored rows are copies both ways: callers mutating their objects after a
    write, or the rows returned by a lookup, do not change what was persisted.

    :ivar instances: Known instances by id.
    :ivar price_feeds: Price rows by key.
    :ivar health_checks: Health rows by (protocol, chain, feed_id).
    :ivar sync_states: Sync-state rows by instance id.
    :ivar sync_errors: Error log in insertion order.
    """

    def __init__(self, instances: list[MonitoredInstance] | None = None) -> None:
        self.instances: dict[str, MonitoredInstance] = {}
        self.price_feeds: dict[PriceFeedKey, PriceFeedRecord] = {}
        self.health_checks: dict[tuple[str, str, str], HealthCheckResult] = {}
        self.sync_states: dict[str, SyncStateRecord] = {}
        self.sync_errors: list[SyncErrorEntry] = []
        for instance in instances or []:
            self.add_instance(instance)

    def add_instance(self, instance: MonitoredInstance) -> None:
        self.instances[instance.instance_id] = instance

    def remove_instance(self, instance_id: str) -> None:
        self.instances.pop(instance_id, None)

    async def get_instance(self, instance_id: str) -> MonitoredInstance | None:
        return self.instances.get(instance_id)

    async def upsert_price_feeds(self, records: list[PriceFeedRecord]) -> None:
        for record in records:
            existing = self.price_feeds.get(record.key)
            if existing is None:
                self.price_feeds[record.key] = replace(
                    record, metadata=dict(record.metadata)
                )
                continue
            # Identity fields stay as first written
            existing.price = record.price
            existing.block_number = record.block_number
            existing.confidence = record.confidence
            existing.metadata = dict(record.metadata)

    async def upsert_health_check(self, result: HealthCheckResult) -> None:
        key = (result.protocol, result.chain, result.feed_id)
        self.health_checks[key] = replace(
            result, issues=list(result.issues), extras=dict(result.extras)
        )

    async def upsert_sync_state(
        self,
        instance_id: str,
        *,
        status: str,
        last_sync_at: datetime | None = None,
        last_processed_block: int | None = None,
        error_message: str | None = None,
    ) -> None:
        record = self.sync_states.get(instance_id)
        if record is None:
            record = SyncStateRecord(instance_id=instance_id, status=status)
            self.sync_states[instance_id] = record
        record.status = status
        record.last_sync_at = last_sync_at
        record.error_message = error_message
        if last_processed_block is not None:
            record.last_processed_block = last_processed_block

    async def record_sync_error(self, instance_id: str, message: str) -> None:
        self.sync_errors.append(
            SyncErrorEntry(instance_id, message, datetime.now(timezone.utc))
        )

    async def get_price_feed(self, key: PriceFeedKey) -> PriceFeedRecord | None:
        record = self.price_feeds.get(key)
        if record is None:
            return None
        return replace(record, metadata=dict(record.metadata))

    async def get_health_check(
        self, protocol: str, chain: str, feed_id: str
    ) -> HealthCheckResult | None:
        result = self.health_checks.get((protocol, chain, feed_id))
        if result is None:
            return None
        return replace(result, issues=list(result.issues), extras=dict(result.extras))

    async def get_sync_state_record(self, instance_id: str) -> SyncStateRecord | None:
        record = self.sync_states.get(instance_id)
        return replace(record) if record is not None else None


class GatewayPriceWriter:
    """Default price writer: chunked upserts through a gateway.

    Transient PersistenceErrors are retried per chunk before giving up.

    :ivar gateway: Target gateway.
    :ivar chunk_size: Maximum records per upsert call.
    :ivar max_retries: Attempts per chunk.
    :ivar retry_delay: Base delay between attempts in seconds.
    """

    DEFAULT_CHUNK_SIZE = 100

    def __init__(
        self,
        gateway: PersistenceGateway,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_retries: int = 2,
        retry_delay: float = 0.5,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.gateway = gateway
        self.chunk_size = chunk_size
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def __call__(self, records: list[PriceFeedRecord]) -> None:
        if not records:
            return

        for start in range(0, len(records), self.chunk_size):
            chunk = records[start:start + self.chunk_size]

            async def _write(chunk: list[PriceFeedRecord] = chunk) -> None:
                await self.gateway.upsert_price_feeds(chunk)

            await with_retry(
                _write,
                max_retries=self.max_retries,
                retry_delay=self.retry_delay,
                retry_on=(PersistenceError,),
                on_retry=lambda attempt, e: logger.warning(
                    f"Price write failed (attempt {attempt}/{self.max_retries}): {e}"
                ),
            )

        logger.debug(f"Wrote {len(records)} price records")
