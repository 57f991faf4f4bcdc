"""AdapterSyncFunction: Generic sync function backed by protocol adapters.

Fetches every symbol listed in the instance's ``symbols`` config through
the protocol's adapter and turns each Reading into a PriceFeedRecord.
Symbols are fetched in concurrent chunks of ``context.batch_size``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .errors import AdapterError
from .PriceFeedRecord import PriceFeedRecord, SyncContext, create_price_feed_record

if TYPE_CHECKING:
    from .adapters import BaseAdapter
    from .ProtocolRegistry import ProtocolRegistry

logger = logging.getLogger(__name__)


class AdapterSyncFunction:
    """Sync function resolving adapters through a ProtocolRegistry.

    Register one instance per protocol:

    .. code-block:: python

        sync_fn = AdapterSyncFunction(registry)
        for protocol in registry.get_adapter_protocols():
            scheduler.register_sync_function(protocol, sync_fn)

    :ivar registry: Registry used to construct adapters.
    """

    def __init__(self, registry: ProtocolRegistry) -> None:
        self.registry = registry

    async def __call__(self, context: SyncContext) -> list[PriceFeedRecord]:
        """Fetch all configured symbols for one instance.

        :param context: Sync context of the running cycle.
        :returns: One record per symbol, in configuration order.
        :raises AdapterError: If any symbol could not be fetched.
        :raises UnregisteredProtocolError: If the protocol has no adapter.
        """
        symbols: list[str] = list(context.config.get("symbols") or [])
        if not symbols:
            logger.debug(f"[{context.protocol}] No symbols configured for {context.instance_id}")
            return []

        adapter = self.registry.create_adapter(
            context.protocol, context.chain, context.config
        )

        try:
            records = await self._fetch_all(adapter, context, symbols)
        finally:
            await adapter.aclose()

        logger.debug(
            f"[{context.protocol}] Fetched {len(records)} prices for {context.instance_id}"
        )
        return records

    async def _fetch_all(
        self, adapter: BaseAdapter, context: SyncContext, symbols: list[str]
    ) -> list[PriceFeedRecord]:
        records: list[PriceFeedRecord] = []
        for start in range(0, len(symbols), context.batch_size):
            batch = symbols[start:start + context.batch_size]
            readings = await asyncio.gather(
                *(adapter.fetch_price(symbol) for symbol in batch),
                return_exceptions=True,
            )

            failed: dict[str, BaseException] = {}
            for symbol, reading in zip(batch, readings, strict=True):
                if isinstance(reading, BaseException):
                    failed[symbol] = reading
                    continue
                records.append(
                    create_price_feed_record(
                        context,
                        symbol,
                        reading.value,
                        timestamp=reading.origin_timestamp,
                        block_number=reading.block_number,
                        confidence=reading.confidence,
                        metadata=reading.metadata,
                    )
                )

            if failed:
                details = ", ".join(f"{s}: {e}" for s, e in failed.items())
                raise AdapterError(
                    f"[{context.protocol}] Failed to fetch "
                    f"{len(failed)}/{len(batch)} symbols ({details})"
                )

        return records
