"""Pyth adapter.

Endpoint: https://hermes.pyth.network/v2/updates/price/latest?ids[]={id}&parsed=true
Rate Limit: 30 requests / 10 seconds per IP (public Hermes)
Feed ids: 32-byte hex price ids, or symbols mapped through PRICE_IDS / config["feeds"]
"""

import logging
import re
from datetime import datetime, timezone

from .base import (
    AdapterConfigError,
    AdapterError,
    BaseAdapter,
    FeedHealth,
    Reading,
    register_adapter,
)

logger = logging.getLogger(__name__)

_HEX_ID = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


@register_adapter
class PythAdapter(BaseAdapter):
    """Adapter for the Pyth network via the Hermes price service.

    Pyth prices are published as integer mantissa plus exponent, with a
    confidence interval in the same units. The confidence score of a reading
    is ``1 - conf / price`` clamped to [0, 1]. Health checks flag readings
    whose confidence interval exceeds ``max_confidence_interval_percent``
    of the price (config override, default 1%).
    """

    name = "pyth"
    BASE_URL = "https://hermes.pyth.network"
    MAX_CONFIDENCE_INTERVAL_PERCENT = 1.0

    # Map common symbols to Pyth price feed ids
    PRICE_IDS = {
        "BTC/USD": "e62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
        "ETH/USD": "ff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
        "SOL/USD": "ef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
        "USDC/USD": "eaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
    }

    @property
    def base_url(self) -> str:
        """Hermes endpoint; ``rpc_url`` overrides the public one."""
        return (self.rpc_url or self.BASE_URL).rstrip("/")

    def resolve_price_id(self, feed_id: str) -> str:
        """Resolve a symbol or raw id into a bare hex price id.

        :param feed_id: Symbol like "SOL/USD" or a 64-char hex id.
        :returns: Lowercase hex id without 0x prefix.
        :raises AdapterConfigError: If the feed cannot be resolved.
        """
        configured = (self.config.get("feeds") or {}).get(feed_id)
        candidate = configured or feed_id
        if _HEX_ID.match(candidate):
            return candidate.lower().removeprefix("0x")

        price_id = self.PRICE_IDS.get(feed_id.upper())
        if not price_id:
            raise AdapterConfigError(f"[pyth] Unknown feed: {feed_id}")
        return price_id

    async def fetch_price(self, feed_id: str) -> Reading:
        """Fetch the latest parsed price from Hermes.

        :param feed_id: Symbol or hex price id.
        :returns: Latest Reading.
        :raises AdapterError: On HTTP failures or malformed responses.
        """
        price_id = self.resolve_price_id(feed_id)
        response = await self._get(
            f"{self.base_url}/v2/updates/price/latest",
            params=[("ids[]", price_id), ("parsed", "true")],
        )

        try:
            data = response.json()
            entry = next(
                (p for p in data.get("parsed", []) if p["id"].lower() == price_id),
                None,
            )
            if entry is None:
                raise AdapterError(f"[pyth] Price id {price_id} not in response")

            raw = entry["price"]
            scale = 10 ** int(raw["expo"])
            value = int(raw["price"]) * scale
            conf = int(raw["conf"]) * scale
            published = datetime.fromtimestamp(int(raw["publish_time"]), timezone.utc)
            slot = (entry.get("metadata") or {}).get("slot")
        except (KeyError, ValueError, TypeError) as e:
            raise AdapterError(f"[pyth] Failed to parse response: {e}") from e

        confidence = 0.0
        if value > 0:
            confidence = min(1.0, max(0.0, 1.0 - conf / value))

        return Reading(
            value=value,
            origin_timestamp=published,
            confidence=confidence,
            block_number=int(slot) if slot is not None else None,
            metadata={"price_id": price_id, "conf": conf, "expo": int(raw["expo"])},
        )

    def assess_reading(self, reading: Reading) -> FeedHealth:
        """Add the confidence interval check to the default assessment."""
        health = super().assess_reading(reading)
        conf = reading.metadata.get("conf")
        if conf is None or reading.value <= 0:
            return health

        limit = float(
            self.config.get("max_confidence_interval_percent", self.MAX_CONFIDENCE_INTERVAL_PERCENT)
        )
        percent = conf / reading.value * 100
        if percent > limit:
            health.issues.append(f"High uncertainty: {percent:.2f}% confidence interval")
            health.healthy = False
        health.extras["confidence_interval_percent"] = percent
        return health
