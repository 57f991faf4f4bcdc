"""UMA adapter.

Reads assertions from the Optimistic Oracle V3 over JSON-RPC:
    getAssertion(bytes32 assertionId) -> Assertion struct
    getMinimumBond(address currency) -> uint256
Feed ids are assertion ids (0x-prefixed bytes32). The reading value is the
settlement resolution (1.0 for a truthful assertion, 0.0 otherwise), and
health checks judge the assertion lifecycle rather than a price.
"""

import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any

from .base import AdapterConfigError, AdapterError, FeedHealth, Reading, register_adapter
from .evm import EVMAdapter

logger = logging.getLogger(__name__)

_BYTES32 = re.compile(r"^0x[0-9a-fA-F]{64}$")

EPOCH = datetime.fromtimestamp(0, timezone.utc)

OPTIMISTIC_ORACLE_V3_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"internalType": "bytes32", "name": "assertionId", "type": "bytes32"}],
        "name": "getAssertion",
        "outputs": [
            {
                "components": [
                    {"internalType": "bytes32", "name": "identifier", "type": "bytes32"},
                    {"internalType": "uint256", "name": "timestamp", "type": "uint256"},
                    {"internalType": "bytes", "name": "data", "type": "bytes"},
                    {"internalType": "address", "name": "requester", "type": "address"},
                    {"internalType": "bool", "name": "resolved", "type": "bool"},
                    {"internalType": "bool", "name": "disputed", "type": "bool"},
                    {"internalType": "uint256", "name": "settlementResolution", "type": "uint256"},
                    {"internalType": "address", "name": "currency", "type": "address"},
                    {"internalType": "uint256", "name": "bond", "type": "uint256"},
                    {"internalType": "uint256", "name": "expirationTime", "type": "uint256"},
                ],
                "internalType": "struct Assertion",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "currency", "type": "address"}],
        "name": "getMinimumBond",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ASSERTION_FIELDS = (
    "identifier",
    "timestamp",
    "data",
    "requester",
    "resolved",
    "disputed",
    "settlement_resolution",
    "currency",
    "bond",
    "expiration_time",
)


@register_adapter
class UMAAdapter(EVMAdapter):
    """Adapter for UMA Optimistic Oracle V3 assertions.

    The oracle address comes from ``config["oracle_address"]`` or the
    per-chain default. Health results carry ``active_assertions``,
    ``active_disputes`` and ``total_bonded`` in their extras.
    """

    name = "uma"
    DEFAULT_STALE_THRESHOLD_SECONDS = 600.0

    ORACLE_ADDRESSES = {
        "ethereum": "0xA5B9d8a0B0Fa04B710D7ee40D90d2551E58d0F65",
        "polygon": "0xDd46919fE564dE5bC5Cfc966aF2B79dc5A60A73d",
        "arbitrum": "0x2d0D2cB02b5eBA6e82b8277BDeF58612f650B401",
        "optimism": "0x0335B4C63c688d560C24c80295a6Ca09C5eC93d4",
        "base": "0x2d0D2cB02b5eBA6e82b8277BDeF58612f650B401",
        "sepolia": "0xFd9e2642a170aDD10F53Ee91a63d1D7a7e3A9F28",
    }

    def oracle_address(self) -> str:
        """Checksummed address of the chain's Optimistic Oracle V3.

        :raises AdapterConfigError: If the chain has no known oracle.
        """
        candidate = self.config.get("oracle_address") or self.ORACLE_ADDRESSES.get(self.chain)
        if candidate is None:
            raise AdapterConfigError(
                f"[uma] Optimistic Oracle V3 not supported on chain {self.chain}"
            )
        return self.checksum(candidate, "oracle")

    @staticmethod
    def resolve_assertion_id(feed_id: str) -> str:
        if not _BYTES32.match(feed_id):
            raise AdapterConfigError(f"[uma] Invalid assertion id: {feed_id}")
        return feed_id.lower()

    async def get_assertion(self, feed_id: str) -> dict[str, Any] | None:
        """Read an assertion.

        :param feed_id: Assertion id.
        :returns: Assertion fields by name, or None if it does not exist.
        :raises AdapterError: On RPC failures.
        """
        assertion_id = self.resolve_assertion_id(feed_id)
        contract = self.contract(self.oracle_address(), OPTIMISTIC_ORACLE_V3_ABI)
        raw = await self._read(
            contract.functions.getAssertion(bytes.fromhex(assertion_id[2:])).call(),
            f"assertion {assertion_id}",
        )
        assertion = dict(zip(ASSERTION_FIELDS, raw, strict=True))
        # Unknown ids decode to a zeroed struct
        if assertion["timestamp"] == 0:
            return None
        return assertion

    async def get_minimum_bond(self, currency: str) -> int:
        """Minimum bond for a currency; 0 when it cannot be read."""
        contract = self.contract(self.oracle_address(), OPTIMISTIC_ORACLE_V3_ABI)
        try:
            return await self._read(
                contract.functions.getMinimumBond(currency).call(), f"minimum bond of {currency}"
            )
        except AdapterError as e:
            logger.warning(f"{e}; assuming no minimum")
            return 0

    async def fetch_price(self, feed_id: str) -> Reading:
        """Read an assertion as a Reading.

        :param feed_id: Assertion id.
        :returns: Reading valued at the settlement resolution.
        :raises AdapterError: On RPC failures or unknown assertions.
        """
        assertion = await self.get_assertion(feed_id)
        if assertion is None:
            raise AdapterError(f"[uma] Assertion {feed_id} not found")
        return Reading(
            value=float(assertion["settlement_resolution"]),
            origin_timestamp=datetime.fromtimestamp(assertion["timestamp"], timezone.utc),
            metadata={
                "assertion_id": feed_id.lower(),
                "requester": assertion["requester"],
                "resolved": assertion["resolved"],
                "disputed": assertion["disputed"],
                "currency": assertion["currency"],
                "bond": assertion["bond"],
                "expiration_time": assertion["expiration_time"],
            },
        )

    async def check_feed_health(self, feed_id: str) -> FeedHealth:
        """Judge an assertion's lifecycle.

        Issues raised:
            - stale: older than the staleness threshold
            - disputed or already resolved
            - bond below the currency's minimum bond
            - expired without resolution

        :param feed_id: Assertion id.
        :returns: FeedHealth with assertion counters in extras.
        :raises AdapterError: On RPC failures.
        """
        assertion = await self.get_assertion(feed_id)
        if assertion is None:
            return FeedHealth(
                healthy=False,
                last_update=EPOCH,
                staleness_seconds=math.inf,
                issues=[f"Assertion {feed_id} not found"],
                extras={"active_assertions": 0, "active_disputes": 0, "total_bonded": 0},
            )

        now = time.time()
        last_update = datetime.fromtimestamp(assertion["timestamp"], timezone.utc)
        staleness = max(0.0, now - assertion["timestamp"])

        issues: list[str] = []
        if staleness > self.stale_threshold_seconds:
            issues.append(f"Assertion is stale: {int(staleness)}s old")
        if assertion["disputed"]:
            issues.append("Assertion has been disputed")
        if assertion["resolved"]:
            issues.append("Assertion has already been resolved")

        min_bond = await self.get_minimum_bond(assertion["currency"])
        if assertion["bond"] < min_bond:
            issues.append(f"Bond below minimum: {assertion['bond']} < {min_bond}")
        if assertion["expiration_time"] < now and not assertion["resolved"]:
            issues.append("Assertion has expired without resolution")

        return FeedHealth(
            healthy=not issues,
            last_update=last_update,
            staleness_seconds=staleness,
            issues=issues,
            extras={
                "active_assertions": 0 if assertion["resolved"] or assertion["disputed"] else 1,
                "active_disputes": 1 if assertion["disputed"] else 0,
                "total_bonded": assertion["bond"],
            },
        )
