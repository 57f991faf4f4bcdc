"""PriceFeedRecord: Durable price readings produced by sync cycles.

A record is identified by ``(protocol, chain, instance_id, symbol, timestamp)``.
Writing a record with an existing key replaces its mutable fields (price,
block number, confidence, metadata) only.

.. code-block:: python

    >>> ctx = SyncContext("cl-eth", "chainlink", "ethereum", None, {})
    >>> rec = create_price_feed_record(ctx, "ETH/USD", 3200.5, confidence=1.0)
    >>> rec.base_asset, rec.quote_asset
    ('ETH', 'USD')
    >>> rec.source
    'chainlink'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, NamedTuple


class PriceFeedKey(NamedTuple):
    """Identity of a price row."""

    protocol: str
    chain: str
    instance_id: str
    symbol: str
    timestamp: datetime


@dataclass
class PriceFeedRecord:
    """One reading of one symbol for one instance.

    :ivar price: Price in quote units.
    :ivar timestamp: Origin timestamp of the reading (timezone-aware).
    :ivar block_number: Block the reading was taken at, if known.
    :ivar confidence: Confidence score in [0, 1].
    :ivar source: Name of the producing protocol or service.
    :ivar metadata: Free-form protocol-specific details.
    """

    protocol: str
    chain: str
    instance_id: str
    symbol: str
    base_asset: str
    quote_asset: str
    price: float
    timestamp: datetime
    block_number: int | None = None
    confidence: float = 1.0
    source: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")
        if not self.source:
            self.source = self.protocol

    @property
    def key(self) -> PriceFeedKey:
        """Uniqueness key used for upserts."""
        return PriceFeedKey(
            self.protocol, self.chain, self.instance_id, self.symbol, self.timestamp
        )


@dataclass
class SyncContext:
    """Everything a sync function needs to know about the instance it serves."""

    instance_id: str
    protocol: str
    chain: str
    rpc_url: str | None
    config: dict[str, Any]
    batch_size: int = 20


SyncFunction = Callable[[SyncContext], Awaitable[list[PriceFeedRecord]]]
PriceWriter = Callable[[list[PriceFeedRecord]], Awaitable[None]]


def split_symbol(symbol: str) -> tuple[str, str]:
    """Split a "BASE/QUOTE" symbol into its assets.

    :param symbol: Symbol like "ETH/USD".
    :returns: Tuple of (base, quote); quote is "USD" when absent.
    """
    if "/" not in symbol:
        return symbol.upper(), "USD"
    base, quote = symbol.split("/", 1)
    return base.strip().upper(), quote.strip().upper()


def create_price_feed_record(
    context: SyncContext,
    symbol: str,
    price: float,
    *,
    timestamp: datetime | None = None,
    block_number: int | None = None,
    confidence: float = 1.0,
    metadata: dict[str, Any] | None = None,
) -> PriceFeedRecord:
    """Create a record stamped with the context's identity.

    :param context: Sync context of the running cycle.
    :param symbol: Symbol like "ETH/USD".
    :param price: Price value.
    :param timestamp: Origin timestamp; defaults to now (UTC).
    :param block_number: Optional block number.
    :param confidence: Confidence score in [0, 1].
    :param metadata: Optional protocol-specific details.
    :returns: New PriceFeedRecord.
    """
    base, quote = split_symbol(symbol)
    return PriceFeedRecord(
        protocol=context.protocol,
        chain=context.chain,
        instance_id=context.instance_id,
        symbol=symbol,
        base_asset=base,
        quote_asset=quote,
        price=price,
        timestamp=timestamp or datetime.now(timezone.utc),
        block_number=block_number,
        confidence=confidence,
        source=context.protocol,
        metadata=metadata or {},
    )
