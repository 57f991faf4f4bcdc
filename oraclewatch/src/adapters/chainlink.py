"""Chainlink adapter.

Reads AggregatorV3Interface contracts over JSON-RPC:
    latestRoundData() -> (roundId, answer, startedAt, updatedAt, answeredInRound)
    decimals() -> uint8
Feed ids: symbols mapped through FEED_ADDRESSES / config["feeds"], or raw
aggregator addresses.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from web3 import Web3

from .base import FeedHealth, Reading, register_adapter
from .evm import EVMAdapter

logger = logging.getLogger(__name__)

AGGREGATOR_V3_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"internalType": "uint8", "name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "description",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "latestRoundData",
        "outputs": [
            {"internalType": "uint80", "name": "roundId", "type": "uint80"},
            {"internalType": "int256", "name": "answer", "type": "int256"},
            {"internalType": "uint256", "name": "startedAt", "type": "uint256"},
            {"internalType": "uint256", "name": "updatedAt", "type": "uint256"},
            {"internalType": "uint80", "name": "answeredInRound", "type": "uint80"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


def reading_from_round(round_data: tuple | list, decimals: int) -> Reading:
    """Convert a latestRoundData() tuple into a Reading.

    :param round_data: (roundId, answer, startedAt, updatedAt, answeredInRound).
    :param decimals: Aggregator decimals.
    :returns: Reading with the scaled answer and updatedAt as origin time.
    """
    round_id, answer, started_at, updated_at, answered_in_round = round_data
    return Reading(
        value=answer / (10 ** decimals),
        origin_timestamp=datetime.fromtimestamp(updated_at, timezone.utc),
        metadata={
            "round_id": round_id,
            "answered_in_round": answered_in_round,
            "started_at": started_at,
            "decimals": decimals,
        },
    )


@register_adapter
class ChainlinkAdapter(EVMAdapter):
    """Adapter for Chainlink price feeds.

    Requires ``rpc_url`` in the adapter configuration. Decimals are read
    once per aggregator and cached.
    """

    name = "chainlink"

    # Ethereum mainnet aggregator proxies
    FEED_ADDRESSES = {
        "ethereum": {
            "ETH/USD": "0x5f4eC3Df9cbd43714FE2740f5E3616155c5b8419",
            "BTC/USD": "0xF4030086522a5bEEa4988F8cA5B36dbC97BeE88c",
            "LINK/USD": "0x2c1d072e956AFFC0D435Cb7AC38EF18d24d9127c",
            "DAI/USD": "0xAed0c38402a5d19df6E4c03F4E2DceD6e29c1ee9",
            "USDC/USD": "0x8fFfFfd4AfB6115b954Bd326cbe7B4BA576818f6",
            "UNI/USD": "0x553303d460EE0afB37EdFf9bE42922D8FF63220e",
        },
    }

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._decimals: dict[str, int] = {}

    def resolve_address(self, feed_id: str) -> str:
        """Resolve a symbol or address into a checksummed aggregator address.

        :param feed_id: Symbol like "ETH/USD" or a 0x address.
        :returns: Checksummed address.
        :raises AdapterConfigError: If the feed cannot be resolved.
        """
        configured = (self.config.get("feeds") or {}).get(feed_id)
        candidate = configured or self.FEED_ADDRESSES.get(self.chain, {}).get(
            feed_id.upper()
        )
        if candidate is None and Web3.is_address(feed_id):
            candidate = feed_id
        return self.checksum(candidate, feed_id)

    async def fetch_price(self, feed_id: str) -> Reading:
        """Read the latest round of an aggregator.

        :param feed_id: Symbol or aggregator address.
        :returns: Latest Reading.
        :raises AdapterError: On RPC failures.
        """
        address = self.resolve_address(feed_id)
        contract = self.contract(address, AGGREGATOR_V3_ABI)
        description = f"{feed_id} at {address}"

        if address not in self._decimals:
            self._decimals[address] = await self._read(
                contract.functions.decimals().call(), description
            )
        round_data = await self._read(
            contract.functions.latestRoundData().call(), description
        )
        block_number = await self._read(self.w3.eth.block_number, description)

        reading = reading_from_round(round_data, self._decimals[address])
        reading.block_number = block_number
        reading.metadata["address"] = address
        return reading

    def assess_reading(self, reading: Reading) -> FeedHealth:
        """Add round completeness checks to the default assessment."""
        health = super().assess_reading(reading)
        round_id = reading.metadata.get("round_id")
        answered_in_round = reading.metadata.get("answered_in_round")
        if round_id is not None and answered_in_round is not None and answered_in_round < round_id:
            health.issues.append(
                f"Round {round_id} not answered (answeredInRound={answered_in_round})"
            )
            health.healthy = False
        health.extras["round_id"] = round_id
        return health
