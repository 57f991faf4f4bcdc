"""Base adapter interface and shared HTTP client management.

All protocol adapters inherit from BaseAdapter and implement fetch_price().
A shared httpx.AsyncClient is used across all HTTP-based adapters to avoid
connection overhead.

The default check_feed_health() derives a verdict from a fresh reading:
non-positive prices and readings older than the protocol's staleness
threshold are reported as issues. Adapters with richer on-chain state
(e.g. dispute counts) override it and put the extra fields into ``extras``.

.. code-block:: python

    @register_adapter
    class MyAdapter(BaseAdapter):
        name = "myoracle"

        async def fetch_price(self, feed_id: str) -> Reading:
            response = await self._get(f"https://api.example.com/{feed_id}")
            data = response.json()
            return Reading(
                value=float(data["price"]),
                origin_timestamp=datetime.fromtimestamp(data["ts"], timezone.utc),
            )
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

import httpx

from ..errors import AdapterError

logger = logging.getLogger(__name__)


class AdapterConfigError(AdapterError):
    """Raised when adapter configuration is invalid (e.g., missing RPC URL)."""

    pass


class AdapterHTTPError(AdapterError):
    """Raised when an HTTP request to an oracle API fails.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        """Initialize the HTTP error.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        """
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


@dataclass
class Reading:
    """A raw reading returned by an adapter.

    :ivar value: Price value in quote units.
    :ivar origin_timestamp: When the oracle last updated the value (tz-aware).
    :ivar confidence: Confidence score in [0, 1].
    :ivar block_number: Block the reading was taken at, if known.
    :ivar metadata: Protocol-specific details (round id, raw exponent, ...).
    """

    value: float
    origin_timestamp: datetime
    confidence: float = 1.0
    block_number: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class FeedHealth:
    """Health verdict produced by an adapter for one feed.

    :ivar healthy: True when the adapter found no issues.
    :ivar last_update: Origin timestamp of the latest reading.
    :ivar staleness_seconds: Seconds since last_update.
    :ivar issues: Human-readable problems found.
    :ivar extras: Protocol-specific optional fields.
    """

    healthy: bool
    last_update: datetime
    staleness_seconds: float
    issues: list[str] = field(default_factory=list)
    extras: dict[str, Any] = field(default_factory=dict)


class BaseAdapter(ABC):
    """Abstract base class for protocol adapters.

    Subclasses must implement:
        - name: Class variable identifying the protocol (e.g., "chainlink")
        - fetch_price(): Async method returning a Reading for a feed

    :cvar name: Unique protocol identifier for this adapter.
    :cvar DEFAULT_TIMEOUT: Default request timeout in seconds.
    :cvar DEFAULT_STALE_THRESHOLD_SECONDS: Fallback staleness threshold.
    :ivar chain: Chain the adapter reads from.
    :ivar config: Adapter configuration of the instance.
    :ivar stale_threshold_seconds: Age after which a reading is stale.
    :ivar timeout: Request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    # Adapter identification
    name: ClassVar[str] = ""

    DEFAULT_TIMEOUT = 10.0
    DEFAULT_STALE_THRESHOLD_SECONDS = 3600.0

    def __init__(
        self,
        chain: str,
        config: dict[str, Any] | None = None,
        stale_threshold_seconds: float | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the adapter.

        :param chain: Chain name (e.g., "ethereum", "solana").
        :param config: Adapter configuration (rpc_url, feeds, ...).
        :param stale_threshold_seconds: Staleness threshold for health checks.
        :param timeout: Request timeout in seconds (default: 10).
        """
        self.chain = chain.lower()
        self.config = dict(config or {})
        self.stale_threshold_seconds = (
            stale_threshold_seconds
            if stale_threshold_seconds is not None
            else self.DEFAULT_STALE_THRESHOLD_SECONDS
        )
        self.timeout = timeout or self.config.get("timeout") or self.DEFAULT_TIMEOUT

    @property
    def rpc_url(self) -> str | None:
        """Configured endpoint, if any."""
        return self.config.get("rpc_url")

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all adapter instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if BaseAdapter._shared_client is None or BaseAdapter._shared_client.is_closed:
            BaseAdapter._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return BaseAdapter._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = BaseAdapter._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        BaseAdapter._shared_client = None

    async def aclose(self) -> None:
        """Release per-adapter resources; the shared HTTP client stays open."""
        pass

    @abstractmethod
    async def fetch_price(self, feed_id: str) -> Reading:
        """Fetch the latest reading for a feed.

        :param feed_id: Feed identifier (symbol or protocol-native id).
        :returns: Latest Reading.
        :raises AdapterError: If no reading could be obtained.
        """
        pass

    async def check_feed_health(self, feed_id: str) -> FeedHealth:
        """Check a feed by fetching a reading and judging its age and value.

        :param feed_id: Feed identifier.
        :returns: FeedHealth verdict.
        :raises AdapterError: If the reading itself cannot be fetched.
        """
        reading = await self.fetch_price(feed_id)
        return self.assess_reading(reading)

    def assess_reading(self, reading: Reading) -> FeedHealth:
        """Judge a reading's value and age.

        Override to add protocol-specific issues or extras.

        :param reading: Reading returned by fetch_price().
        :returns: FeedHealth verdict.
        """
        staleness = max(0.0, time.time() - reading.origin_timestamp.timestamp())

        issues: list[str] = []
        if reading.value <= 0:
            issues.append(f"Invalid price: {reading.value}")
        if staleness > self.stale_threshold_seconds:
            issues.append(f"Data is stale: {int(staleness)}s old")

        return FeedHealth(
            healthy=not issues,
            last_update=reading.origin_timestamp,
            staleness_seconds=staleness,
            issues=issues,
        )

    async def _get(
        self,
        url: str,
        *,
        params: dict | list | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises AdapterHTTPError: On non-2xx response.
        :raises AdapterError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise AdapterError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise AdapterError(f"Request failed: {e}") from e

        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise AdapterHTTPError(response.status_code, response.text[:200])
        return response


# Catalogue of adapter classes (populated by subclass imports)
ADAPTER_REGISTRY: dict[str, type[BaseAdapter]] = {}


def register_adapter(cls: type[BaseAdapter]) -> type[BaseAdapter]:
    """Decorator to register an adapter class in the catalogue.

    :param cls: Adapter class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If the adapter has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Adapter {cls.__name__} must define a 'name' class variable")
    ADAPTER_REGISTRY[cls.name] = cls
    return cls


def get_available_adapters() -> list[str]:
    """Get list of available adapter names.

    :returns: Sorted list of registered protocol names.
    """
    return sorted(ADAPTER_REGISTRY.keys())
