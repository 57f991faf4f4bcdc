"""MonitoredInstance: One configured (protocol, chain) polling target.

Instances are loaded from configuration and are read-only to the scheduler.

.. code-block:: python

    >>> inst = MonitoredInstance.from_dict({
    ...     "instance_id": "cl-eth",
    ...     "protocol": "Chainlink",
    ...     "chain": "ethereum",
    ...     "rpc_url": "https://eth.llamarpc.com",
    ...     "symbols": ["ETH/USD"],
    ... })
    >>> inst.protocol
    'chainlink'
    >>> inst.rpc_url
    'https://eth.llamarpc.com'
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Keys that identify an instance rather than configure its adapter.
_IDENTITY_KEYS = ("instance_id", "protocol", "chain")


@dataclass(frozen=True)
class MonitoredInstance:
    """A single polling target.

    :ivar instance_id: Unique instance identifier.
    :ivar protocol: Oracle protocol name (lowercase).
    :ivar chain: Chain name (lowercase).
    :ivar adapter_config: Protocol adapter configuration (rpc_url, symbols,
        feeds, sync_interval_seconds, ...).
    """

    instance_id: str
    protocol: str
    chain: str
    adapter_config: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "protocol", self.protocol.lower())
        object.__setattr__(self, "chain", self.chain.lower())

    def __str__(self) -> str:
        return f"{self.instance_id} ({self.protocol}/{self.chain})"

    @property
    def rpc_url(self) -> str | None:
        """RPC or API endpoint configured for the adapter, if any."""
        return self.adapter_config.get("rpc_url")

    @property
    def symbols(self) -> list[str]:
        """Symbols to sync for this instance."""
        return list(self.adapter_config.get("symbols") or [])

    @property
    def sync_interval_seconds(self) -> float | None:
        """Per-instance sync interval override, or None to use the default."""
        value = self.adapter_config.get("sync_interval_seconds")
        if value is None:
            return None
        return float(value)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MonitoredInstance:
        """Build an instance from a flat configuration mapping.

        Identity keys are taken out; everything else (or a nested
        ``adapter_config`` mapping) becomes the adapter configuration.

        :param data: Configuration mapping.
        :returns: New MonitoredInstance.
        :raises ValueError: If an identity key is missing or empty.
        """
        missing = [k for k in _IDENTITY_KEYS if not data.get(k)]
        if missing:
            raise ValueError(f"Instance config is missing required keys: {missing}")

        adapter_config = dict(data.get("adapter_config") or {})
        for key, value in data.items():
            if key not in _IDENTITY_KEYS and key != "adapter_config":
                adapter_config[key] = value

        return cls(
            instance_id=str(data["instance_id"]),
            protocol=str(data["protocol"]),
            chain=str(data["chain"]),
            adapter_config=adapter_config,
        )
