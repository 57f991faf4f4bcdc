"""RedStone adapter.

Reads the RedStone price feed contract over JSON-RPC:
    getPrice(bytes32 feedId) -> (uint256 price, uint256 timestamp)
Prices carry 8 decimals. Feed ids are the ASCII ticker of the base asset,
right-padded to 32 bytes ("ETH/USD" -> 0x455448000...).
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any

from .base import AdapterConfigError, Reading, register_adapter
from .evm import EVMAdapter

logger = logging.getLogger(__name__)

_BYTES32 = re.compile(r"^0x[0-9a-fA-F]{64}$")

REDSTONE_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"internalType": "bytes32", "name": "feedId", "type": "bytes32"}],
        "name": "getPrice",
        "outputs": [
            {"internalType": "uint256", "name": "price", "type": "uint256"},
            {"internalType": "uint256", "name": "timestamp", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


def feed_id_for_ticker(ticker: str) -> str:
    """Encode a ticker as a RedStone bytes32 feed id.

    :param ticker: Base asset ticker, e.g. "ETH".
    :returns: 0x-prefixed 32-byte hex string.
    """
    raw = ticker.encode("ascii")
    if len(raw) > 32:
        raise ValueError(f"Ticker too long for bytes32: {ticker}")
    return "0x" + raw.ljust(32, b"\0").hex()


@register_adapter
class RedStoneAdapter(EVMAdapter):
    """Adapter for RedStone pull-model price feeds.

    The contract address comes from ``config["contract_address"]`` or the
    per-chain default.
    """

    name = "redstone"
    DEFAULT_STALE_THRESHOLD_SECONDS = 60.0
    DECIMALS = 8
    CONFIDENCE = 0.97

    CONTRACT_ADDRESSES = {
        chain: "0x6E1389D6E59e83B854c59e7eE608F6B8D5F67355"
        for chain in (
            "ethereum",
            "polygon",
            "arbitrum",
            "optimism",
            "base",
            "avalanche",
            "bsc",
            "fantom",
            "sepolia",
        )
    }

    SUPPORTED_TICKERS = (
        "ETH", "BTC", "AVAX", "SOL", "ARB", "OP", "MATIC",
        "BNB", "USDC", "USDT", "DAI", "LINK", "UNI", "AAVE",
    )

    FEED_IDS = {f"{t}/USD": feed_id_for_ticker(t) for t in SUPPORTED_TICKERS}

    def contract_address(self) -> str:
        """Checksummed address of the chain's RedStone contract.

        :raises AdapterConfigError: If the chain has no known contract.
        """
        candidate = self.config.get("contract_address") or self.CONTRACT_ADDRESSES.get(self.chain)
        if candidate is None:
            raise AdapterConfigError(f"[redstone] No contract address for chain {self.chain}")
        return self.checksum(candidate, "contract")

    def resolve_feed_id(self, feed_id: str) -> str:
        """Resolve a symbol or raw bytes32 id into a feed id.

        :param feed_id: Symbol like "ETH/USD" or a 0x-prefixed bytes32.
        :returns: Lowercase 0x-prefixed bytes32 hex.
        :raises AdapterConfigError: If the feed cannot be resolved.
        """
        configured = (self.config.get("feeds") or {}).get(feed_id)
        candidate = configured or self.FEED_IDS.get(feed_id.upper()) or feed_id
        if not _BYTES32.match(candidate):
            raise AdapterConfigError(f"[redstone] Unknown feed {feed_id} on {self.chain}")
        return candidate.lower()

    async def fetch_price(self, feed_id: str) -> Reading:
        """Read the latest price of a feed.

        :param feed_id: Symbol or bytes32 feed id.
        :returns: Latest Reading.
        :raises AdapterError: On RPC failures.
        """
        redstone_id = self.resolve_feed_id(feed_id)
        address = self.contract_address()
        contract = self.contract(address, REDSTONE_ABI)
        description = f"{feed_id} at {address}"

        price, timestamp = await self._read(
            contract.functions.getPrice(bytes.fromhex(redstone_id[2:])).call(), description
        )
        block_number = await self._read(self.w3.eth.block_number, description)

        return Reading(
            value=price / (10 ** self.DECIMALS),
            origin_timestamp=datetime.fromtimestamp(timestamp, timezone.utc),
            confidence=self.CONFIDENCE,
            block_number=block_number,
            metadata={
                "feed_id": redstone_id,
                "address": address,
                "decimals": self.DECIMALS,
                "price_raw": price,
            },
        )
