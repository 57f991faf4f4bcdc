"""EVM contract adapter base.

Adapters reading oracle contracts over JSON-RPC share one lazily created
AsyncWeb3 connection per adapter instance. Contract call failures are
wrapped into AdapterError so the scheduler and the monitor only ever see
the adapter error family.
"""

import logging
from typing import Any, Awaitable, TypeVar

from aiohttp import ClientTimeout
from web3 import AsyncWeb3, Web3

from .base import AdapterConfigError, AdapterError, BaseAdapter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EVMAdapter(BaseAdapter):
    """Base class for adapters backed by EVM contract reads.

    Requires ``rpc_url`` in the adapter configuration.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._w3: AsyncWeb3 | None = None

    @property
    def w3(self) -> AsyncWeb3:
        """Lazily connected AsyncWeb3 instance."""
        if self._w3 is None:
            if not self.rpc_url:
                raise AdapterConfigError(f"[{self.name}] No rpc_url configured for {self.chain}")
            self._w3 = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(
                    self.rpc_url,
                    request_kwargs={"timeout": ClientTimeout(total=self.timeout)},
                )
            )
        return self._w3

    def contract(self, address: str, abi: list[dict[str, Any]]):
        return self.w3.eth.contract(address=address, abi=abi)

    def checksum(self, candidate: str | None, feed_id: str) -> str:
        """Checksum an address, rejecting missing or malformed ones.

        :param candidate: Address to checksum, or None if unresolved.
        :param feed_id: Feed the address belongs to, for the error message.
        :returns: Checksummed address.
        :raises AdapterConfigError: If the address is missing or invalid.
        """
        if candidate is None or not Web3.is_address(candidate):
            raise AdapterConfigError(f"[{self.name}] Unknown feed {feed_id} on {self.chain}")
        return Web3.to_checksum_address(candidate)

    async def _read(self, call: Awaitable[T], description: str) -> T:
        """Await a contract read, wrapping failures into AdapterError."""
        try:
            return await call
        except AdapterError:
            raise
        except Exception as e:  # RPC transport errors are not Web3Exceptions
            raise AdapterError(f"[{self.name}] Failed to read {description}: {e}") from e

    async def aclose(self) -> None:
        """Close the adapter's RPC session, if one was opened."""
        if self._w3 is not None:
            await self._w3.provider.disconnect()
            self._w3 = None
