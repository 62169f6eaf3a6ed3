"""EVM chain adapters.

EvmRpcClient speaks raw JSON-RPC over an HttpTransport, so it runs
anywhere the transport does. Web3Broadcaster uses web3's async client
for the same job when a direct provider connection is available.

Both implement BroadcastService and ChainQuery. A transaction with no
receipt yet reports TxStatus(confirmed=False).

EvmRpcClient keeps decoded receipts and blocks once fetched, keyed by
tx hash and block number. query_status() and tip_height() always ask
the node.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Optional

import structlog
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound, Web3Exception

from trustbridge.anchoring.collaborators import HttpRequest, HttpTransport
from trustbridge.config import EvmChainConfig
from trustbridge.errors import DecodeError, NotFound, TransportError
from trustbridge.models.settlement import TxStatus

logger = structlog.get_logger(__name__)

# JSON-RPC server-side failures; the node may succeed on a later call.
_RETRYABLE_RPC_CODES = frozenset({-32603}) | frozenset(range(-32099, -31999))


def parse_hex_quantity(value: Any) -> int:
    """Decode a JSON-RPC QUANTITY ("0x1b4") to int. Raises DecodeError."""
    if not isinstance(value, str) or not value.startswith("0x"):
        raise DecodeError(f"Expected a 0x-prefixed hex quantity, got {value!r}")
    try:
        return int(value, 16)
    except ValueError:
        raise DecodeError(f"Invalid hex quantity: {value!r}") from None


class EvmRpcClient:
    """Ethereum JSON-RPC over a generic HttpTransport."""

    def __init__(
        self,
        transport: HttpTransport,
        rpc_url: str,
        max_response_bytes: Optional[int] = None,
    ) -> None:
        self._transport = transport
        self._rpc_url = rpc_url
        self._max_response_bytes = max_response_bytes
        self._ids = itertools.count(1)
        self._receipts: dict[str, dict[str, Any]] = {}
        self._blocks: dict[int, dict[str, Any]] = {}

    @classmethod
    def for_chain(
        cls,
        transport: HttpTransport,
        chain: EvmChainConfig,
        max_response_bytes: Optional[int] = None,
    ) -> EvmRpcClient:
        return cls(transport, chain.rpc_url, max_response_bytes=max_response_bytes)

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    async def call(self, method: str, params: list[Any]) -> Any:
        """Perform one JSON-RPC call and return its "result" member.

        Raises:
            TransportError: Transport failure or a server-side RPC error.
            DecodeError: Malformed envelope or a non-retryable RPC error.
        """
        request_id = next(self._ids)
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": request_id}
        response = await self._transport.request(HttpRequest(
            method="POST",
            url=self._rpc_url,
            headers={"Content-Type": "application/json"},
            body=json.dumps(payload).encode("utf-8"),
            max_response_bytes=self._max_response_bytes,
        ))
        try:
            envelope = json.loads(response.body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(f"{method}: response is not JSON: {e}") from e
        if not isinstance(envelope, dict):
            raise DecodeError(f"{method}: response is not a JSON-RPC object")

        error = envelope.get("error")
        if error is not None:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else error
            logger.warning("rpc_error", method=method, code=code, message=message)
            if code in _RETRYABLE_RPC_CODES:
                raise TransportError(f"{method}: RPC error {code}: {message}")
            raise DecodeError(f"{method}: RPC error {code}: {message}")

        if "result" not in envelope:
            raise DecodeError(f"{method}: no result in response")
        return envelope["result"]

    # ------------------------------------------------------------------
    # BroadcastService
    # ------------------------------------------------------------------

    async def submit(self, raw_transaction: bytes) -> str:
        result = await self.call("eth_sendRawTransaction", ["0x" + raw_transaction.hex()])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise DecodeError(f"eth_sendRawTransaction returned {result!r}")
        return result

    async def query_status(self, external_tx_ref: str) -> TxStatus:
        receipt = await self.call("eth_getTransactionReceipt", [external_tx_ref])
        if receipt is None:
            return TxStatus(confirmed=False)
        if not isinstance(receipt, dict):
            raise DecodeError(f"Malformed receipt for {external_tx_ref}")
        return TxStatus(confirmed=True, block_height=parse_hex_quantity(receipt.get("blockNumber")))

    # ------------------------------------------------------------------
    # ChainQuery
    # ------------------------------------------------------------------

    async def tip_height(self) -> int:
        return parse_hex_quantity(await self.call("eth_blockNumber", []))

    async def get_transaction(self, external_tx_ref: str) -> dict[str, Any]:
        """The transaction receipt, decoded.

        Raises NotFound if the node has no receipt for the hash.
        """
        cached = self._receipts.get(external_tx_ref)
        if cached is not None:
            return cached
        result = await self.call("eth_getTransactionReceipt", [external_tx_ref])
        if result is None:
            raise NotFound("Transaction", external_tx_ref)
        if not isinstance(result, dict):
            raise DecodeError(f"Malformed receipt for {external_tx_ref}")
        receipt = {
            "tx_hash": external_tx_ref,
            "block_number": parse_hex_quantity(result.get("blockNumber")),
            "block_hash": result.get("blockHash", ""),
            "transaction_index": parse_hex_quantity(result.get("transactionIndex", "0x0")),
            "from_address": result.get("from", ""),
            "to_address": result.get("to") or "",
            "gas_used": parse_hex_quantity(result.get("gasUsed", "0x0")),
            "status": result.get("status") == "0x1",
            "logs": [
                {
                    "address": log.get("address", ""),
                    "topics": list(log.get("topics", [])),
                    "data": log.get("data", ""),
                    "log_index": index,
                }
                for index, log in enumerate(result.get("logs") or [])
            ],
        }
        self._receipts[external_tx_ref] = receipt
        return receipt

    async def get_block(self, block_number: int) -> dict[str, Any]:
        cached = self._blocks.get(block_number)
        if cached is not None:
            return cached
        result = await self.call("eth_getBlockByNumber", [hex(block_number), False])
        if result is None:
            raise NotFound("Block", str(block_number))
        if not isinstance(result, dict):
            raise DecodeError(f"Malformed block {block_number}")
        block = {
            "number": block_number,
            "hash": result.get("hash", ""),
            "parent_hash": result.get("parentHash", ""),
            "timestamp": parse_hex_quantity(result.get("timestamp", "0x0")),
            "gas_limit": parse_hex_quantity(result.get("gasLimit", "0x0")),
            "gas_used": parse_hex_quantity(result.get("gasUsed", "0x0")),
            "transaction_count": len(result.get("transactions") or []),
        }
        self._blocks[block_number] = block
        return block

    def cached_receipt(self, tx_hash: str) -> Optional[dict[str, Any]]:
        return self._receipts.get(tx_hash)

    def cached_block(self, block_number: int) -> Optional[dict[str, Any]]:
        return self._blocks.get(block_number)

    def clear_cache(self) -> None:
        """Drop cached receipts and blocks, e.g. after a reorg."""
        self._receipts.clear()
        self._blocks.clear()


class Web3Broadcaster:
    """BroadcastService and ChainQuery over web3's AsyncWeb3.

    Usage:
        broadcaster = Web3Broadcaster.from_rpc_url(os.getenv("SEPOLIA_RPC_URL"))
    """

    def __init__(self, w3: AsyncWeb3) -> None:
        self._w3 = w3

    @classmethod
    def from_rpc_url(cls, rpc_url: str) -> Web3Broadcaster:
        return cls(AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url)))

    async def submit(self, raw_transaction: bytes) -> str:
        try:
            tx_hash = await self._w3.eth.send_raw_transaction(raw_transaction)
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"send_raw_transaction failed: {e}") from e
        ref = "0x" + bytes(tx_hash).hex()
        logger.info("evm_broadcast", tx_hash=ref)
        return ref

    async def query_status(self, external_tx_ref: str) -> TxStatus:
        try:
            receipt = await self._w3.eth.get_transaction_receipt(external_tx_ref)
        except TransactionNotFound:
            return TxStatus(confirmed=False)
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"get_transaction_receipt failed: {e}") from e
        return TxStatus(confirmed=True, block_height=int(receipt["blockNumber"]))

    async def tip_height(self) -> int:
        try:
            return int(await self._w3.eth.block_number)
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"block_number failed: {e}") from e

    async def get_transaction(self, external_tx_ref: str) -> dict[str, Any]:
        try:
            tx = await self._w3.eth.get_transaction(external_tx_ref)
        except TransactionNotFound:
            raise NotFound("Transaction", external_tx_ref) from None
        except (Web3Exception, OSError, asyncio.TimeoutError) as e:
            raise TransportError(f"get_transaction failed: {e}") from e
        return dict(tx)
