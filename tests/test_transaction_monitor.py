"""Tests for source-chain transaction monitoring."""

import json

import httpx
import pytest

from conftest import T0, FixedClock
from trustbridge.adapters.http import HttpxTransport
from trustbridge.config import ChainRegistry, EvmChainConfig
from trustbridge.errors import NotFound, TransportError
from trustbridge.ledger.ids import IdGenerator
from trustbridge.models.crosschain import TxMonitorStatus
from trustbridge.monitoring.transactions import TransactionMonitor

LOCAL = EvmChainConfig(chain_id=31337, name="Local Devnet", rpc_url="https://local.test")
TX = "0x" + "ab" * 32


class FakeNode:
    """Answers eth_blockNumber and eth_getTransactionReceipt."""

    def __init__(self, tip: int = 100) -> None:
        self.tip = tip
        self.receipts: dict[str, dict] = {}
        self.down = False
        self.calls: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            return httpx.Response(503)
        call = json.loads(request.content)
        self.calls.append(call["method"])
        if call["method"] == "eth_blockNumber":
            result = hex(self.tip)
        else:
            result = self.receipts.get(call["params"][0])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": call["id"], "result": result})

    def mine(self, tx_hash: str, block: int, success: bool = True) -> None:
        self.receipts[tx_hash] = {
            "blockNumber": hex(block),
            "status": "0x1" if success else "0x0",
            "logs": [],
        }


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()


def _transport(node: FakeNode) -> HttpxTransport:
    return HttpxTransport(client=httpx.AsyncClient(transport=httpx.MockTransport(node.handler)))


@pytest.fixture
def monitor(node: FakeNode) -> TransactionMonitor:
    return TransactionMonitor(
        ChainRegistry([LOCAL]),
        _transport(node),
        {"confirmation_depth": 3},
        id_generator=IdGenerator(clock_ns=FixedClock()),
    )


class TestCheck:
    @pytest.mark.asyncio
    async def test_unmined_is_pending(self, monitor: TransactionMonitor) -> None:
        record = await monitor.check(31337, TX, now=T0)
        assert record.status == TxMonitorStatus.PENDING
        assert record.block_height is None
        assert record.confirmations == 0
        assert record.source_chain == "Local Devnet"
        assert record.destination_chain == "trustbridge"
        assert record.updated_at == T0
        assert record.id.startswith("tx_")

    @pytest.mark.asyncio
    async def test_pending_until_deep_enough(
        self, monitor: TransactionMonitor, node: FakeNode,
    ) -> None:
        node.mine(TX, block=99)
        shallow = await monitor.check(31337, TX)
        assert shallow.status == TxMonitorStatus.PENDING
        assert shallow.block_height == 99
        assert shallow.confirmations == 2

        node.tip = 101
        deep = await monitor.check(31337, TX)
        assert deep.status == TxMonitorStatus.CONFIRMED
        assert deep.confirmations == 3
        assert deep.id == shallow.id
        assert deep.is_settled

    @pytest.mark.asyncio
    async def test_reverted_is_failed(self, monitor: TransactionMonitor, node: FakeNode) -> None:
        node.mine(TX, block=100, success=False)
        record = await monitor.check(31337, TX)
        assert record.status == TxMonitorStatus.FAILED
        assert record.block_height == 100

    @pytest.mark.asyncio
    async def test_receipt_fetched_once(self, monitor: TransactionMonitor, node: FakeNode) -> None:
        node.mine(TX, block=90)
        await monitor.check(31337, TX)
        await monitor.check(31337, TX)
        assert node.calls.count("eth_getTransactionReceipt") == 1
        assert node.calls.count("eth_blockNumber") == 2

    @pytest.mark.asyncio
    async def test_hash_case_insensitive(self, monitor: TransactionMonitor) -> None:
        lower = await monitor.check(31337, TX)
        upper = await monitor.check(31337, TX.upper().replace("0X", "0x"))
        assert upper.id == lower.id
        assert len(monitor.transactions()) == 1

    @pytest.mark.asyncio
    async def test_unknown_chain(self, monitor: TransactionMonitor) -> None:
        with pytest.raises(NotFound, match="Chain not found: 1"):
            await monitor.check(1, TX)

    @pytest.mark.asyncio
    async def test_invalid_hash(self, monitor: TransactionMonitor) -> None:
        with pytest.raises(ValueError, match="Invalid transaction hash"):
            await monitor.check(31337, "0x1234")

    @pytest.mark.asyncio
    async def test_node_down_stores_nothing(
        self, monitor: TransactionMonitor, node: FakeNode,
    ) -> None:
        node.down = True
        with pytest.raises(TransportError):
            await monitor.check(31337, TX)
        assert monitor.transactions() == []

    def test_invalid_depth(self, node: FakeNode) -> None:
        with pytest.raises(ValueError, match="confirmation_depth"):
            TransactionMonitor(ChainRegistry([LOCAL]), _transport(node), {"confirmation_depth": 0})


class TestLookup:
    @pytest.mark.asyncio
    async def test_get_and_refresh(self, monitor: TransactionMonitor, node: FakeNode) -> None:
        record = await monitor.check(31337, TX)
        assert monitor.get(record.id) == record
        assert monitor.find(31337, TX) == record

        node.mine(TX, block=90)
        refreshed = await monitor.refresh(record.id)
        assert refreshed.status == TxMonitorStatus.CONFIRMED
        assert monitor.transactions(TxMonitorStatus.CONFIRMED) == [refreshed]
        assert monitor.transactions(TxMonitorStatus.PENDING) == []

    def test_unknown_id(self, monitor: TransactionMonitor) -> None:
        with pytest.raises(NotFound, match="Tracked transaction not found"):
            monitor.get("tx_nope")
        assert monitor.find(31337, TX) is None

    def test_client_built_once_per_chain(self, monitor: TransactionMonitor) -> None:
        assert monitor.client_for(31337).rpc_url == "https://local.test"
        assert monitor.client_for(31337) is monitor.client_for(31337)
