"""Transaction monitor — tracks EVM transactions on their source chain.

Each check asks the chain's JSON-RPC node for the receipt and the
current tip, then stores a CrossChainTransaction snapshot:

    no receipt yet                        → PENDING, confirmations 0
    receipt with status 0 (reverted)      → FAILED
    receipt, depth < confirmation_depth   → PENDING, confirmations = depth
    receipt, depth >= confirmation_depth  → CONFIRMED

depth = tip - block_height + 1. A hash is tracked under one record id
per chain; checking it again updates that record.

RPC clients are built per chain from the ChainRegistry on first use
and share one HttpTransport.
"""

from __future__ import annotations

import re
import threading
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from trustbridge.adapters.evm import EvmRpcClient
from trustbridge.anchoring.collaborators import HttpTransport
from trustbridge.config import ChainRegistry
from trustbridge.errors import NotFound
from trustbridge.ledger.ids import IdGenerator
from trustbridge.models.crosschain import CrossChainTransaction, TxMonitorStatus

logger = structlog.get_logger(__name__)

TX_PREFIX = "tx"
DEFAULT_CONFIRMATION_DEPTH = 6
DEFAULT_DESTINATION_CHAIN = "trustbridge"

_TX_HASH_RE = re.compile(r"^0x[0-9a-f]{64}$")


class TransactionMonitor:
    """Checks and stores the status of source-chain transactions.

    Parameters (via *config* dict):
        confirmation_depth  : int        — blocks for CONFIRMED (default 6)
        destination_chain   : str        — label stored on every record (default "trustbridge")
        max_response_bytes  : int | None — per-call response cap (default transport's)
    """

    def __init__(
        self,
        registry: ChainRegistry,
        transport: HttpTransport,
        config: Optional[dict[str, Any]] = None,
        id_generator: Optional[IdGenerator] = None,
    ) -> None:
        config = config or {}
        self._registry = registry
        self._transport = transport
        self._ids = id_generator or IdGenerator()
        self._confirmation_depth: int = config.get(
            "confirmation_depth", DEFAULT_CONFIRMATION_DEPTH,
        )
        self._destination_chain: str = config.get(
            "destination_chain", DEFAULT_DESTINATION_CHAIN,
        )
        self._max_response_bytes: Optional[int] = config.get("max_response_bytes")
        if self._confirmation_depth < 1:
            raise ValueError(
                f"confirmation_depth must be >= 1, got {self._confirmation_depth}"
            )

        self._clients: dict[int, EvmRpcClient] = {}
        self._records: dict[str, CrossChainTransaction] = {}
        self._by_hash: dict[tuple[int, str], str] = {}
        self._lock = threading.Lock()

    def client_for(self, chain_id: int) -> EvmRpcClient:
        """The RPC client for a registered chain. Raises NotFound otherwise."""
        client = self._clients.get(chain_id)
        if client is None:
            client = EvmRpcClient.for_chain(
                self._transport,
                self._registry.get(chain_id),
                max_response_bytes=self._max_response_bytes,
            )
            self._clients[chain_id] = client
        return client

    async def check(
        self,
        chain_id: int,
        tx_hash: str,
        now: Optional[datetime] = None,
    ) -> CrossChainTransaction:
        """Query the chain for tx_hash and store the result.

        Raises:
            ValueError: tx_hash is not a 0x-prefixed 32-byte hex hash.
            NotFound: chain_id is not in the registry.
            TransportError, DecodeError: The RPC call failed.
        """
        tx_hash = tx_hash.lower()
        if not _TX_HASH_RE.match(tx_hash):
            raise ValueError(f"Invalid transaction hash: {tx_hash!r}")
        chain = self._registry.get(chain_id)
        client = self.client_for(chain_id)

        block_height: Optional[int] = None
        confirmations = 0
        try:
            receipt = await client.get_transaction(tx_hash)
        except NotFound:
            status = TxMonitorStatus.PENDING
        else:
            block_height = receipt["block_number"]
            tip = await client.tip_height()
            confirmations = max(0, tip - block_height + 1)
            if not receipt["status"]:
                status = TxMonitorStatus.FAILED
            elif confirmations >= self._confirmation_depth:
                status = TxMonitorStatus.CONFIRMED
            else:
                status = TxMonitorStatus.PENDING

        with self._lock:
            tx_id = self._by_hash.get((chain_id, tx_hash))
            if tx_id is None:
                tx_id = self._ids.next_id(TX_PREFIX)
                self._by_hash[(chain_id, tx_hash)] = tx_id
            record = CrossChainTransaction(
                id=tx_id,
                source_chain_id=chain_id,
                source_chain=chain.name,
                destination_chain=self._destination_chain,
                tx_hash=tx_hash,
                status=status,
                updated_at=now or datetime.now(timezone.utc),
                block_height=block_height,
                confirmations=confirmations,
            )
            self._records[tx_id] = record

        logger.info(
            "transaction_checked",
            tx_id=tx_id,
            chain_id=chain_id,
            tx_hash=tx_hash,
            status=status.value,
            confirmations=confirmations,
        )
        return record

    async def refresh(self, tx_id: str, now: Optional[datetime] = None) -> CrossChainTransaction:
        """Re-check a tracked transaction."""
        record = self.get(tx_id)
        return await self.check(record.source_chain_id, record.tx_hash, now=now)

    def get(self, tx_id: str) -> CrossChainTransaction:
        with self._lock:
            try:
                return self._records[tx_id]
            except KeyError:
                raise NotFound("Tracked transaction", tx_id) from None

    def find(self, chain_id: int, tx_hash: str) -> Optional[CrossChainTransaction]:
        with self._lock:
            tx_id = self._by_hash.get((chain_id, tx_hash.lower()))
            return self._records[tx_id] if tx_id is not None else None

    def transactions(self, status: Optional[TxMonitorStatus] = None) -> list[CrossChainTransaction]:
        with self._lock:
            return [r for r in self._records.values() if status is None or r.status == status]

    @property
    def registry(self) -> ChainRegistry:
        return self._registry

    @property
    def confirmation_depth(self) -> int:
        return self._confirmation_depth
