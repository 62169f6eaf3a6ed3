"""Tests for the HTTP transport and chain/signing adapters."""

import hashlib
import json

import httpx
import pytest
from web3.exceptions import TransactionNotFound

from trustbridge.adapters.canonical_encoder import CanonicalJsonEncoder
from trustbridge.adapters.dvn import DvnClient
from trustbridge.adapters.evm import EvmRpcClient, Web3Broadcaster, parse_hex_quantity
from trustbridge.adapters.http import HttpxTransport, strip_headers
from trustbridge.adapters.local_signer import LocalKeySigner, recover_address
from trustbridge.adapters.mempool import MempoolClient
from trustbridge.anchoring.collaborators import (
    BroadcastService,
    ChainQuery,
    CustodySource,
    HttpRequest,
    HttpTransport,
    SigningService,
    TransactionEncoder,
)
from trustbridge.anchoring.settlement import build_settlement_tx
from trustbridge.config import EvmChainConfig
from trustbridge.crypto.fingerprint import fold_root
from trustbridge.errors import DecodeError, NotFound, SigningError, TransportError
from trustbridge.models.settlement import CustodyInput, TxStatus


BASE = "https://mempool.test/api"
RPC = "https://rpc.test"
TXID = "ab" * 32
KEY = "0x" + "11" * 32


def _transport(handler, max_response_bytes: int = 2_000_000) -> HttpxTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpxTransport(client=client, max_response_bytes=max_response_bytes)


class TestHttpxTransport:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["x-test"] == "1"
            return httpx.Response(200, content=b"ok", headers={"date": "now"})

        transport = _transport(handler)
        response = await transport.request(HttpRequest("GET", f"{BASE}/x", headers={"x-test": "1"}))
        assert response.status == 200
        assert response.body == b"ok"
        assert response.headers["date"] == "now"

    @pytest.mark.asyncio
    async def test_transform_applied(self) -> None:
        transport = _transport(lambda r: httpx.Response(200, content=b"ok", headers={"date": "now"}))
        response = await transport.request(HttpRequest("GET", f"{BASE}/x"), transform=strip_headers)
        assert response.headers == {}
        assert response.body == b"ok"

    @pytest.mark.asyncio
    async def test_non_2xx_is_transport_error(self) -> None:
        transport = _transport(lambda r: httpx.Response(503, content=b"busy"))
        with pytest.raises(TransportError, match="HTTP 503") as exc:
            await transport.request(HttpRequest("GET", f"{BASE}/x"))
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransportError, match="refused"):
            await _transport(handler).request(HttpRequest("GET", f"{BASE}/x"))

    @pytest.mark.asyncio
    async def test_body_limit(self) -> None:
        transport = _transport(lambda r: httpx.Response(200, content=b"x" * 100))
        with pytest.raises(TransportError, match="exceeds 10 bytes"):
            await transport.request(HttpRequest("GET", f"{BASE}/x", max_response_bytes=10))

    def test_satisfies_protocol(self) -> None:
        assert isinstance(_transport(lambda r: httpx.Response(200)), HttpTransport)


def _mempool_handler(routes: dict):
    def handler(request: httpx.Request) -> httpx.Response:
        key = (request.method, request.url.path.removeprefix("/api"))
        if key not in routes:
            return httpx.Response(404, content=b"not found")
        route = routes[key]
        return route(request) if callable(route) else route
    return handler


class TestMempoolClient:
    @pytest.mark.asyncio
    async def test_tip_height(self) -> None:
        client = MempoolClient(_transport(_mempool_handler({
            ("GET", "/blocks/tip/height"): httpx.Response(200, content=b"812345"),
        })), BASE)
        assert await client.tip_height() == 812345

    @pytest.mark.asyncio
    async def test_malformed_tip_height(self) -> None:
        client = MempoolClient(_transport(_mempool_handler({
            ("GET", "/blocks/tip/height"): httpx.Response(200, content=b"<html>"),
        })), BASE)
        with pytest.raises(DecodeError):
            await client.tip_height()

    @pytest.mark.asyncio
    async def test_status(self) -> None:
        client = MempoolClient(_transport(_mempool_handler({
            ("GET", f"/tx/{TXID}/status"): httpx.Response(
                200, json={"confirmed": True, "block_height": 812000, "block_hash": "00"},
            ),
        })), BASE)
        assert await client.query_status(TXID) == TxStatus(confirmed=True, block_height=812000)

    @pytest.mark.asyncio
    async def test_malformed_status(self) -> None:
        client = MempoolClient(_transport(_mempool_handler({
            ("GET", f"/tx/{TXID}/status"): httpx.Response(200, json={"block_height": 1}),
        })), BASE)
        with pytest.raises(DecodeError):
            await client.query_status(TXID)

    @pytest.mark.asyncio
    async def test_confirmations(self) -> None:
        client = MempoolClient(_transport(_mempool_handler({
            ("GET", f"/tx/{TXID}/status"): httpx.Response(
                200, json={"confirmed": True, "block_height": 100},
            ),
            ("GET", "/blocks/tip/height"): httpx.Response(200, content=b"105"),
        })), BASE)
        assert await client.confirmations(TXID) == 6

    @pytest.mark.asyncio
    async def test_list_inputs(self) -> None:
        utxos = [
            {"txid": "aa" * 32, "vout": 0, "value": 5000, "status": {"confirmed": True}},
            {"txid": "bb" * 32, "vout": 1, "value": 7000, "status": {"confirmed": False}},
        ]
        routes = {("GET", "/address/tb1qx/utxo"): httpx.Response(200, json=utxos)}

        everything = MempoolClient(_transport(_mempool_handler(routes)), BASE)
        assert await everything.list_inputs("tb1qx") == [
            CustodyInput(txid="aa" * 32, vout=0, amount=5000),
            CustodyInput(txid="bb" * 32, vout=1, amount=7000),
        ]

        confirmed = MempoolClient(
            _transport(_mempool_handler(routes)), BASE, confirmed_inputs_only=True,
        )
        assert [u.amount for u in await confirmed.list_inputs("tb1qx")] == [5000]

    @pytest.mark.asyncio
    async def test_malformed_utxo(self) -> None:
        client = MempoolClient(_transport(_mempool_handler({
            ("GET", "/address/tb1qx/utxo"): httpx.Response(200, json=[{"txid": "aa"}]),
        })), BASE)
        with pytest.raises(DecodeError):
            await client.list_inputs("tb1qx")

    @pytest.mark.asyncio
    async def test_fee_rate(self) -> None:
        fees = {"fastestFee": 30, "halfHourFee": 20, "hourFee": 10, "economyFee": 5, "minimumFee": 1}
        routes = {("GET", "/v1/fees/recommended"): httpx.Response(200, json=fees)}
        assert await MempoolClient(_transport(_mempool_handler(routes)), BASE).fee_rate() == 20
        fast = MempoolClient(_transport(_mempool_handler(routes)), BASE, fee_target="fastestFee")
        assert await fast.fee_rate() == 30

    @pytest.mark.asyncio
    async def test_fractional_fee_rate_rounds_up(self) -> None:
        routes = {("GET", "/v1/fees/recommended"): httpx.Response(200, json={"halfHourFee": 0.5})}
        assert await MempoolClient(_transport(_mempool_handler(routes)), BASE).fee_rate() == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", ["20", -1, None, True])
    async def test_malformed_fee_rate(self, value) -> None:
        routes = {("GET", "/v1/fees/recommended"): httpx.Response(200, json={"halfHourFee": value})}
        with pytest.raises(DecodeError, match="fee recommendation"):
            await MempoolClient(_transport(_mempool_handler(routes)), BASE).fee_rate()

    def test_unknown_fee_target(self) -> None:
        with pytest.raises(ValueError, match="fee target"):
            MempoolClient(_transport(lambda r: httpx.Response(200)), BASE, fee_target="soon")

    @pytest.mark.asyncio
    async def test_submit_posts_hex(self) -> None:
        seen: list[bytes] = []

        def broadcast(request: httpx.Request) -> httpx.Response:
            seen.append(request.content)
            return httpx.Response(200, content=TXID.encode())

        client = MempoolClient(_transport(_mempool_handler({("POST", "/tx"): broadcast})), BASE)
        assert await client.submit(b"\x01\x02") == TXID
        assert seen == [b"0102"]

    @pytest.mark.asyncio
    async def test_submit_rejected_is_transport_error(self) -> None:
        client = MempoolClient(_transport(_mempool_handler({
            ("POST", "/tx"): httpx.Response(400, content=b"sendrawtransaction RPC error"),
        })), BASE)
        with pytest.raises(TransportError):
            await client.submit(b"\x01")

    @pytest.mark.asyncio
    async def test_submit_garbage_txid(self) -> None:
        client = MempoolClient(_transport(_mempool_handler({
            ("POST", "/tx"): httpx.Response(200, content=b"ok"),
        })), BASE)
        with pytest.raises(DecodeError):
            await client.submit(b"\x01")

    def test_satisfies_protocols(self) -> None:
        client = MempoolClient(_transport(lambda r: httpx.Response(200)), BASE)
        assert isinstance(client, BroadcastService)
        assert isinstance(client, ChainQuery)
        assert isinstance(client, CustodySource)


def _rpc_handler(results: dict):
    def handler(request: httpx.Request) -> httpx.Response:
        call = json.loads(request.content)
        reply = results[call["method"]]
        body = {"jsonrpc": "2.0", "id": call["id"]}
        body.update(reply)
        return httpx.Response(200, json=body)
    return handler


RECEIPT = {
    "blockNumber": "0x10",
    "blockHash": "0xblock",
    "transactionIndex": "0x2",
    "from": "0xfrom",
    "to": "0xto",
    "gasUsed": "0x5208",
    "status": "0x1",
    "logs": [{"address": "0xlog", "topics": ["0xt"], "data": "0x"}],
}


class TestEvmRpcClient:
    def test_parse_hex(self) -> None:
        assert parse_hex_quantity("0x1b4") == 436
        for bad in ("1b4", "0xzz", None, 12):
            with pytest.raises(DecodeError):
                parse_hex_quantity(bad)

    @pytest.mark.asyncio
    async def test_block_number(self) -> None:
        client = EvmRpcClient(_transport(_rpc_handler({"eth_blockNumber": {"result": "0x10"}})), RPC)
        assert await client.tip_height() == 16

    @pytest.mark.asyncio
    async def test_receipt(self) -> None:
        client = EvmRpcClient(_transport(_rpc_handler({
            "eth_getTransactionReceipt": {"result": RECEIPT},
        })), RPC)
        receipt = await client.get_transaction("0xhash")
        assert receipt["block_number"] == 16
        assert receipt["gas_used"] == 21000
        assert receipt["status"] is True
        assert receipt["logs"][0]["log_index"] == 0
        assert await client.query_status("0xhash") == TxStatus(confirmed=True, block_height=16)

    @pytest.mark.asyncio
    async def test_missing_receipt(self) -> None:
        client = EvmRpcClient(_transport(_rpc_handler({
            "eth_getTransactionReceipt": {"result": None},
        })), RPC)
        assert await client.query_status("0xhash") == TxStatus(confirmed=False)
        with pytest.raises(NotFound, match="Transaction not found"):
            await client.get_transaction("0xhash")

    @pytest.mark.asyncio
    async def test_block(self) -> None:
        block = {
            "hash": "0xh", "parentHash": "0xp", "timestamp": "0x64",
            "gasLimit": "0x1c9c380", "gasUsed": "0x0", "transactions": ["0x1", "0x2"],
        }
        client = EvmRpcClient(_transport(_rpc_handler({"eth_getBlockByNumber": {"result": block}})), RPC)
        info = await client.get_block(16)
        assert info["timestamp"] == 100
        assert info["transaction_count"] == 2

    @pytest.mark.asyncio
    async def test_receipts_and_blocks_cached(self) -> None:
        calls: list[str] = []
        rpc = _rpc_handler({
            "eth_getTransactionReceipt": {"result": RECEIPT},
            "eth_getBlockByNumber": {"result": {"hash": "0xh", "transactions": []}},
        })

        def counting(request: httpx.Request) -> httpx.Response:
            calls.append(json.loads(request.content)["method"])
            return rpc(request)

        client = EvmRpcClient(_transport(counting), RPC)
        assert client.cached_receipt("0xhash") is None
        first = await client.get_transaction("0xhash")
        assert await client.get_transaction("0xhash") == first
        assert client.cached_receipt("0xhash") == first
        await client.get_block(16)
        await client.get_block(16)
        assert client.cached_block(16)["hash"] == "0xh"
        assert calls == ["eth_getTransactionReceipt", "eth_getBlockByNumber"]

        client.clear_cache()
        await client.get_transaction("0xhash")
        assert calls.count("eth_getTransactionReceipt") == 2

    @pytest.mark.asyncio
    async def test_missing_receipt_not_cached(self) -> None:
        replies = iter([{"result": None}, {"result": RECEIPT}])

        def handler(request: httpx.Request) -> httpx.Response:
            call = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": call["id"], **next(replies)})

        client = EvmRpcClient(_transport(handler), RPC)
        with pytest.raises(NotFound):
            await client.get_transaction("0xhash")
        assert (await client.get_transaction("0xhash"))["block_number"] == 16

    def test_for_chain_uses_registry_url(self) -> None:
        chain = EvmChainConfig(chain_id=31337, name="Local", rpc_url=RPC)
        client = EvmRpcClient.for_chain(_transport(lambda r: httpx.Response(200)), chain)
        assert client.rpc_url == RPC

    @pytest.mark.asyncio
    async def test_server_error_is_transport_error(self) -> None:
        client = EvmRpcClient(_transport(_rpc_handler({
            "eth_blockNumber": {"error": {"code": -32000, "message": "header not found"}},
        })), RPC)
        with pytest.raises(TransportError, match="header not found"):
            await client.tip_height()

    @pytest.mark.asyncio
    async def test_method_error_is_decode_error(self) -> None:
        client = EvmRpcClient(_transport(_rpc_handler({
            "eth_blockNumber": {"error": {"code": -32601, "message": "method not found"}},
        })), RPC)
        with pytest.raises(DecodeError, match="method not found"):
            await client.tip_height()

    @pytest.mark.asyncio
    async def test_non_json_body(self) -> None:
        client = EvmRpcClient(_transport(lambda r: httpx.Response(200, content=b"<html>")), RPC)
        with pytest.raises(DecodeError):
            await client.tip_height()

    @pytest.mark.asyncio
    async def test_submit(self) -> None:
        client = EvmRpcClient(_transport(_rpc_handler({
            "eth_sendRawTransaction": {"result": "0xabc"},
        })), RPC)
        assert await client.submit(b"\x02") == "0xabc"


DVN = "https://dvn.test"
MESSAGE_HASH = "0x" + "cd" * 32


class TestDvnClient:
    @pytest.mark.asyncio
    async def test_verified(self) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"verified": True, "source_chain_id": 1})

        client = DvnClient(_transport(handler), DVN + "/")
        assert await client.verify(1, MESSAGE_HASH) is True
        assert seen == [f"{DVN}/verify/{MESSAGE_HASH}"]

    @pytest.mark.asyncio
    async def test_not_verified(self) -> None:
        client = DvnClient(_transport(lambda r: httpx.Response(200, json={"verified": False})), DVN)
        assert await client.verify(1, MESSAGE_HASH) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        b"verified",
        b"[true]",
        b'{"status": "verified"}',
        b'{"verified": "yes"}',
    ])
    async def test_malformed_body(self, body: bytes) -> None:
        client = DvnClient(_transport(lambda r: httpx.Response(200, content=body)), DVN)
        with pytest.raises(DecodeError):
            await client.verify(1, MESSAGE_HASH)

    @pytest.mark.asyncio
    async def test_answer_for_other_chain(self) -> None:
        client = DvnClient(_transport(
            lambda r: httpx.Response(200, json={"verified": True, "source_chain_id": 137}),
        ), DVN)
        with pytest.raises(DecodeError, match="source chain 137"):
            await client.verify(1, MESSAGE_HASH)

    @pytest.mark.asyncio
    async def test_endpoint_down(self) -> None:
        client = DvnClient(_transport(lambda r: httpx.Response(502)), DVN)
        with pytest.raises(TransportError):
            await client.verify(1, MESSAGE_HASH)

    @pytest.mark.asyncio
    async def test_invalid_hash_rejected_before_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(ValueError, match="message hash"):
            await DvnClient(_transport(handler), DVN).verify(1, "cd" * 32)


class _FakeEth:
    def __init__(self) -> None:
        self.receipts: dict[str, dict] = {}

    async def send_raw_transaction(self, raw: bytes) -> bytes:
        return hashlib.sha256(raw).digest()

    async def get_transaction_receipt(self, tx_hash: str) -> dict:
        if tx_hash not in self.receipts:
            raise TransactionNotFound(f"Transaction with hash {tx_hash} not found")
        return self.receipts[tx_hash]

    @property
    def block_number(self):
        async def current() -> int:
            return 42
        return current()


class _FakeWeb3:
    def __init__(self) -> None:
        self.eth = _FakeEth()


class TestWeb3Broadcaster:
    @pytest.mark.asyncio
    async def test_submit_returns_0x_hash(self) -> None:
        broadcaster = Web3Broadcaster(_FakeWeb3())
        ref = await broadcaster.submit(b"raw")
        assert ref == "0x" + hashlib.sha256(b"raw").hexdigest()

    @pytest.mark.asyncio
    async def test_status(self) -> None:
        w3 = _FakeWeb3()
        broadcaster = Web3Broadcaster(w3)
        assert await broadcaster.query_status("0x1") == TxStatus(confirmed=False)
        w3.eth.receipts["0x1"] = {"blockNumber": 40}
        assert await broadcaster.query_status("0x1") == TxStatus(confirmed=True, block_height=40)
        assert await broadcaster.tip_height() == 42


class TestLocalKeySigner:
    @pytest.mark.asyncio
    async def test_signature_recovers_derived_address(self) -> None:
        signer = LocalKeySigner({"anchor_key_1": KEY})
        key = await signer.derive_public_key("anchor_key_1", [b"anchor", b"0"])
        digest = hashlib.sha256(b"settlement").digest()

        signature = await signer.sign("anchor_key_1", [b"anchor", b"0"], digest)
        assert len(signature) == 65
        assert len(key.public_key) == 33
        assert recover_address(digest, signature) == key.address

    @pytest.mark.asyncio
    async def test_paths_yield_distinct_keys(self) -> None:
        signer = LocalKeySigner({"anchor_key_1": KEY})
        root = await signer.derive_public_key("anchor_key_1", [])
        child = await signer.derive_public_key("anchor_key_1", [b"0"])
        again = await signer.derive_public_key("anchor_key_1", [b"0"])
        assert root.address != child.address
        assert child == again

    @pytest.mark.asyncio
    async def test_unknown_key(self) -> None:
        with pytest.raises(SigningError, match="Unknown key id"):
            await LocalKeySigner({"a": KEY}).sign("b", [], b"\x00" * 32)

    @pytest.mark.asyncio
    async def test_digest_length(self) -> None:
        with pytest.raises(SigningError, match="32 bytes"):
            await LocalKeySigner({"a": KEY}).sign("a", [], b"short")

    def test_bad_key_length(self) -> None:
        with pytest.raises(ValueError, match="32 bytes"):
            LocalKeySigner({"a": "0x1234"})

    def test_generate_and_protocol(self) -> None:
        assert isinstance(LocalKeySigner.generate(), SigningService)


class TestCanonicalEncoder:
    def test_encode_decode(self) -> None:
        unsigned = build_settlement_tx(
            fold_root(["receipt_1"]),
            [CustodyInput(txid="aa" * 32, vout=0, amount=100_000)],
            5,
            "tb1qchange",
        )
        encoder = CanonicalJsonEncoder()
        assert isinstance(encoder, TransactionEncoder)

        raw = encoder.encode(unsigned, b"\x01\x02", b"\x03")
        decoded = CanonicalJsonEncoder.decode(raw)
        assert decoded["signature"] == "0102"
        assert decoded["public_key"] == "03"
        assert decoded["tx"] == unsigned.to_canonical()
        assert raw == encoder.encode(unsigned, b"\x01\x02", b"\x03")

    def test_decode_garbage(self) -> None:
        with pytest.raises(DecodeError):
            CanonicalJsonEncoder.decode(b"\xff")
