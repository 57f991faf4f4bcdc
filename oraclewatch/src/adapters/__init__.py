"""
Protocol adapters for on-chain and off-chain oracle networks.

This module provides a unified interface for reading the latest value of
an oracle feed and judging its health.

Usage:
    from oraclewatch.src.adapters import ADAPTER_REGISTRY, get_available_adapters

    available = get_available_adapters()
    # ['chainlink', 'pyth', 'redstone', 'uma']

    adapter = ADAPTER_REGISTRY["pyth"]("solana", stale_threshold_seconds=60)
    reading = await adapter.fetch_price("SOL/USD")
    health = await adapter.check_feed_health("SOL/USD")
"""

# Import base classes and utilities
from .base import (
    ADAPTER_REGISTRY,
    AdapterConfigError,
    AdapterError,
    AdapterHTTPError,
    BaseAdapter,
    FeedHealth,
    Reading,
    get_available_adapters,
    register_adapter,
)
from .evm import EVMAdapter

# Import all adapter implementations to trigger registration
from .chainlink import ChainlinkAdapter
from .pyth import PythAdapter
from .redstone import RedStoneAdapter
from .uma import UMAAdapter

__all__ = [
    # Base classes
    "BaseAdapter",
    "EVMAdapter",
    "Reading",
    "FeedHealth",
    "AdapterError",
    "AdapterConfigError",
    "AdapterHTTPError",
    # Registry functions
    "register_adapter",
    "get_available_adapters",
    "ADAPTER_REGISTRY",
    # Adapter implementations
    "ChainlinkAdapter",
    "PythAdapter",
    "RedStoneAdapter",
    "UMAAdapter",
]
