"""ProtocolRegistry: Wiring between protocols, sync functions and adapters.

The registry is populated once at process start and then shared by the
SyncScheduler and the HealthMonitor, which resolve everything protocol
specific through it.

.. code-block:: python

    >>> registry = ProtocolRegistry.with_default_adapters()
    >>> registry.has_adapter("pyth")
    True
    >>> registry.get_sync_function("pyth")
    Traceback (most recent call last):
    ...
    oraclewatch.src.errors.UnregisteredProtocolError: No sync function registered for protocol: pyth
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable

from .adapters import ADAPTER_REGISTRY, BaseAdapter
from .errors import UnregisteredProtocolError
from .PriceFeedRecord import SyncFunction

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., BaseAdapter]


class OracleProtocol(str, Enum):
    """Oracle protocols known to the platform."""

    CHAINLINK = "chainlink"
    PYTH = "pyth"
    REDSTONE = "redstone"
    UMA = "uma"
    API3 = "api3"
    BAND = "band"
    DIA = "dia"
    SWITCHBOARD = "switchboard"
    FLUX = "flux"


def protocol_key(protocol: str | OracleProtocol) -> str:
    """Normalize a protocol into its registry key.

    :param protocol: Enum member or protocol name in any case.
    :returns: Lowercase protocol name.
    """
    if isinstance(protocol, OracleProtocol):
        return protocol.value
    return str(protocol).strip().lower()


class ProtocolRegistry:
    """Typed table of protocol -> sync function and protocol -> adapter factory.

    :ivar sync_functions: Registered sync functions by protocol key.
    :ivar adapter_factories: Registered adapter factories by protocol key.
    """

    def __init__(self) -> None:
        self.sync_functions: dict[str, SyncFunction] = {}
        self.adapter_factories: dict[str, AdapterFactory] = {}

    @classmethod
    def with_default_adapters(cls) -> ProtocolRegistry:
        """Create a registry wired to every adapter class in the catalogue.

        :returns: New registry with one adapter factory per built-in adapter.
        """
        registry = cls()
        for name, adapter_cls in ADAPTER_REGISTRY.items():
            registry.register_adapter(name, adapter_cls)
        return registry

    def register_sync_function(
        self, protocol: str | OracleProtocol, fn: SyncFunction
    ) -> None:
        """Associate a protocol with its sync function.

        :param protocol: Protocol name.
        :param fn: Coroutine function ``fn(context) -> list[PriceFeedRecord]``.
        """
        key = protocol_key(protocol)
        self.sync_functions[key] = fn
        logger.debug(f"Registered sync function for protocol: {key}")

    def register_adapter(
        self, protocol: str | OracleProtocol, factory: AdapterFactory
    ) -> None:
        """Associate a protocol with an adapter constructor.

        :param protocol: Protocol name.
        :param factory: Callable accepting ``(chain, config,
            stale_threshold_seconds=...)`` and returning a BaseAdapter.
        """
        key = protocol_key(protocol)
        self.adapter_factories[key] = factory
        logger.debug(f"Registered adapter for protocol: {key}")

    def has_sync_function(self, protocol: str | OracleProtocol) -> bool:
        return protocol_key(protocol) in self.sync_functions

    def has_adapter(self, protocol: str | OracleProtocol) -> bool:
        return protocol_key(protocol) in self.adapter_factories

    def get_sync_function(self, protocol: str | OracleProtocol) -> SyncFunction:
        """Look up the sync function of a protocol.

        :param protocol: Protocol name.
        :returns: Registered sync function.
        :raises UnregisteredProtocolError: If none is registered.
        """
        key = protocol_key(protocol)
        fn = self.sync_functions.get(key)
        if fn is None:
            raise UnregisteredProtocolError(
                f"No sync function registered for protocol: {key}"
            )
        return fn

    def create_adapter(
        self,
        protocol: str | OracleProtocol,
        chain: str,
        config: dict[str, Any] | None = None,
        stale_threshold_seconds: float | None = None,
    ) -> BaseAdapter:
        """Construct the adapter for a protocol.

        :param protocol: Protocol name.
        :param chain: Chain name.
        :param config: Adapter configuration.
        :param stale_threshold_seconds: Staleness threshold for health checks.
        :returns: New adapter instance.
        :raises UnregisteredProtocolError: If no adapter is registered.
        """
        key = protocol_key(protocol)
        factory = self.adapter_factories.get(key)
        if factory is None:
            raise UnregisteredProtocolError(f"No adapter registered for protocol: {key}")
        return factory(chain, config, stale_threshold_seconds=stale_threshold_seconds)

    def get_sync_protocols(self) -> list[str]:
        return sorted(self.sync_functions.keys())

    def get_adapter_protocols(self) -> list[str]:
        return sorted(self.adapter_factories.keys())
