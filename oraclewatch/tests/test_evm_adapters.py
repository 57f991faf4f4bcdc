"""Tests for the EVM adapters against a local JSON-RPC server."""

import math
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import pytest
from aiohttp import test_utils, web
from eth_abi import encode
from web3 import Web3

from oraclewatch.src.adapters import (
    AdapterConfigError,
    ChainlinkAdapter,
    RedStoneAdapter,
    UMAAdapter,
)
from oraclewatch.src.adapters.redstone import feed_id_for_ticker
from oraclewatch.src.errors import AdapterError

NOW = 1_700_000_000
ASSERTION_ID = "0x" + "ab" * 32
ASSERTION_TYPE = "(bytes32,uint256,bytes,address,bool,bool,uint256,address,uint256,uint256)"


def selector(signature: str) -> str:
    return bytes(Web3.keccak(text=signature)[:4]).hex()


class RpcStub:
    """Minimal JSON-RPC node answering eth_call by function selector."""

    def __init__(self) -> None:
        self.block_number = 19_000_000
        self.calls: list[str] = []
        self._signatures: dict[str, str] = {}
        self._outcomes: dict[str, Any] = {}

    def returns(self, signature: str, types: list[str], values: list[Any]) -> None:
        self._signatures[selector(signature)] = signature
        self._outcomes[signature] = "0x" + encode(types, values).hex()

    def reverts(self, signature: str) -> None:
        self._signatures[selector(signature)] = signature
        self._outcomes[signature] = {"code": -32000, "message": "execution reverted"}

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.json()
        reply: dict[str, Any] = {"jsonrpc": "2.0", "id": body["id"]}
        method = body["method"]

        if method == "eth_chainId":
            reply["result"] = "0x1"
        elif method == "eth_blockNumber":
            reply["result"] = hex(self.block_number)
        elif method == "eth_call":
            tx = body["params"][0]
            data = tx.get("data") or tx.get("input")
            signature = self._signatures[data[2:10].lower()]
            self.calls.append(signature)
            outcome = self._outcomes[signature]
            if isinstance(outcome, dict):
                reply["error"] = outcome
            else:
                reply["result"] = outcome
        else:
            reply["error"] = {"code": -32601, "message": f"Method not found: {method}"}
        return web.json_response(reply)


@asynccontextmanager
async def serve(stub: RpcStub):
    """Run the stub on a local port and yield its URL."""
    app = web.Application()
    app.router.add_post("/", stub.handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("/"))
    finally:
        await server.close()


def assertion_values(
    timestamp: int,
    *,
    resolved: bool = False,
    disputed: bool = False,
    bond: int = 1000,
    expiration: int | None = None,
) -> list[Any]:
    return [
        (
            b"ASSERT_TRUTH".ljust(32, b"\0"),
            timestamp,
            b"ETH above 2000",
            "0x" + "11" * 20,
            resolved,
            disputed,
            1 if resolved else 0,
            "0x" + "22" * 20,
            bond,
            expiration if expiration is not None else timestamp + 7200,
        )
    ]


class TestChainlinkOverRpc:
    """Test ChainlinkAdapter.fetch_price() against the JSON-RPC stub."""

    @pytest.mark.asyncio
    async def test_fetch_price(self) -> None:
        """Round data should be scaled and decimals read only once."""
        stub = RpcStub()
        stub.returns("decimals()", ["uint8"], [8])
        stub.returns(
            "latestRoundData()",
            ["uint80", "int256", "uint256", "uint256", "uint80"],
            [110, 325_012_345_678, NOW - 30, NOW, 110],
        )

        async with serve(stub) as url:
            adapter = ChainlinkAdapter("ethereum", {"rpc_url": url})
            try:
                reading = await adapter.fetch_price("ETH/USD")
                await adapter.fetch_price("ETH/USD")
            finally:
                await adapter.aclose()

        assert reading.value == pytest.approx(3250.12345678)
        assert reading.origin_timestamp == datetime.fromtimestamp(NOW, timezone.utc)
        assert reading.block_number == stub.block_number
        assert reading.metadata["round_id"] == 110
        assert reading.metadata["address"] == "0x5f4eC3Df9cbd43714FE2740f5E3616155c5b8419"
        assert stub.calls.count("decimals()") == 1
        assert stub.calls.count("latestRoundData()") == 2

    @pytest.mark.asyncio
    async def test_rpc_error(self) -> None:
        """A reverted call should surface as AdapterError."""
        stub = RpcStub()
        stub.returns("decimals()", ["uint8"], [8])
        stub.reverts("latestRoundData()")

        async with serve(stub) as url:
            adapter = ChainlinkAdapter("ethereum", {"rpc_url": url})
            try:
                with pytest.raises(AdapterError, match=r"\[chainlink\] Failed to read ETH/USD"):
                    await adapter.fetch_price("ETH/USD")
            finally:
                await adapter.aclose()


class TestRedStoneAdapter:
    """Test the RedStone adapter."""

    def test_feed_ids(self) -> None:
        """Tickers should be ASCII right-padded to 32 bytes."""
        assert feed_id_for_ticker("ETH") == "0x455448" + "00" * 29
        assert RedStoneAdapter.FEED_IDS["MATIC/USD"] == "0x4d41544943" + "00" * 27

    def test_resolve_raw_id(self) -> None:
        """Raw bytes32 ids should be accepted."""
        raw = "0x" + "CD" * 32
        assert RedStoneAdapter("ethereum").resolve_feed_id(raw) == raw.lower()

    def test_resolve_unknown(self) -> None:
        """Unknown symbols should raise AdapterConfigError."""
        with pytest.raises(AdapterConfigError, match="Unknown feed"):
            RedStoneAdapter("ethereum").resolve_feed_id("NOPE/USD")

    def test_unsupported_chain(self) -> None:
        """Chains without a contract should raise AdapterConfigError."""
        with pytest.raises(AdapterConfigError, match="No contract address"):
            RedStoneAdapter("solana").contract_address()

    @pytest.mark.asyncio
    async def test_fetch_price(self) -> None:
        """Prices should be scaled by 8 decimals."""
        stub = RpcStub()
        stub.returns("getPrice(bytes32)", ["uint256", "uint256"], [6_500_000_000_000, NOW])

        async with serve(stub) as url:
            adapter = RedStoneAdapter("arbitrum", {"rpc_url": url})
            try:
                reading = await adapter.fetch_price("eth/usd")
            finally:
                await adapter.aclose()

        assert reading.value == pytest.approx(65000.0)
        assert reading.confidence == RedStoneAdapter.CONFIDENCE
        assert reading.origin_timestamp == datetime.fromtimestamp(NOW, timezone.utc)
        assert reading.block_number == stub.block_number
        assert reading.metadata["feed_id"] == feed_id_for_ticker("ETH")


class TestUMAAdapter:
    """Test the UMA Optimistic Oracle V3 adapter."""

    def test_invalid_assertion_id(self) -> None:
        """Feed ids must be bytes32 assertion ids."""
        with pytest.raises(AdapterConfigError, match="Invalid assertion id"):
            UMAAdapter.resolve_assertion_id("ETH/USD")

    def test_unsupported_chain(self) -> None:
        """Chains without an oracle should raise AdapterConfigError."""
        with pytest.raises(AdapterConfigError, match="not supported"):
            UMAAdapter("solana").oracle_address()

    @pytest.mark.asyncio
    async def test_active_assertion(self) -> None:
        """A pending assertion should be healthy and counted as active."""
        stub = RpcStub()
        stub.returns(
            "getAssertion(bytes32)", [ASSERTION_TYPE], assertion_values(int(time.time()) - 30)
        )
        stub.returns("getMinimumBond(address)", ["uint256"], [500])

        async with serve(stub) as url:
            adapter = UMAAdapter("ethereum", {"rpc_url": url})
            try:
                health = await adapter.check_feed_health(ASSERTION_ID)
            finally:
                await adapter.aclose()

        assert health.healthy is True
        assert health.issues == []
        assert health.extras == {"active_assertions": 1, "active_disputes": 0, "total_bonded": 1000}

    @pytest.mark.asyncio
    async def test_disputed_assertion(self) -> None:
        """Disputes and low bonds should be reported."""
        stub = RpcStub()
        stub.returns(
            "getAssertion(bytes32)",
            [ASSERTION_TYPE],
            assertion_values(int(time.time()) - 30, disputed=True, bond=100),
        )
        stub.returns("getMinimumBond(address)", ["uint256"], [500])

        async with serve(stub) as url:
            adapter = UMAAdapter("ethereum", {"rpc_url": url})
            try:
                health = await adapter.check_feed_health(ASSERTION_ID)
            finally:
                await adapter.aclose()

        assert health.healthy is False
        assert health.issues == ["Assertion has been disputed", "Bond below minimum: 100 < 500"]
        assert health.extras == {"active_assertions": 0, "active_disputes": 1, "total_bonded": 100}

    @pytest.mark.asyncio
    async def test_stale_and_expired(self) -> None:
        """Old unresolved assertions should be stale and expired."""
        stub = RpcStub()
        created = int(time.time()) - 3600
        stub.returns(
            "getAssertion(bytes32)",
            [ASSERTION_TYPE],
            assertion_values(created, expiration=created + 60),
        )
        stub.reverts("getMinimumBond(address)")

        async with serve(stub) as url:
            adapter = UMAAdapter("ethereum", {"rpc_url": url}, stale_threshold_seconds=600)
            try:
                health = await adapter.check_feed_health(ASSERTION_ID)
            finally:
                await adapter.aclose()

        assert health.healthy is False
        assert health.issues[0].startswith("Assertion is stale: ")
        assert health.issues[1:] == ["Assertion has expired without resolution"]

    @pytest.mark.asyncio
    async def test_missing_assertion(self) -> None:
        """Unknown assertions decode to a zeroed struct and are reported."""
        stub = RpcStub()
        stub.returns(
            "getAssertion(bytes32)",
            [ASSERTION_TYPE],
            [(b"\0" * 32, 0, b"", "0x" + "00" * 20, False, False, 0, "0x" + "00" * 20, 0, 0)],
        )

        async with serve(stub) as url:
            adapter = UMAAdapter("ethereum", {"rpc_url": url})
            try:
                health = await adapter.check_feed_health(ASSERTION_ID)
                with pytest.raises(AdapterError, match="not found"):
                    await adapter.fetch_price(ASSERTION_ID)
            finally:
                await adapter.aclose()

        assert health.healthy is False
        assert health.issues == [f"Assertion {ASSERTION_ID} not found"]
        assert math.isinf(health.staleness_seconds)
        assert "getMinimumBond(address)" not in stub.calls

    @pytest.mark.asyncio
    async def test_fetch_price(self) -> None:
        """Readings should carry the settlement resolution and assertion state."""
        stub = RpcStub()
        stub.returns(
            "getAssertion(bytes32)", [ASSERTION_TYPE], assertion_values(NOW, resolved=True)
        )

        async with serve(stub) as url:
            adapter = UMAAdapter("ethereum", {"rpc_url": url})
            try:
                reading = await adapter.fetch_price(ASSERTION_ID)
            finally:
                await adapter.aclose()

        assert reading.value == 1.0
        assert reading.origin_timestamp == datetime.fromtimestamp(NOW, timezone.utc)
        assert reading.metadata["resolved"] is True
        assert reading.metadata["bond"] == 1000
