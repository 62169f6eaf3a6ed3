"""Collaborator contracts consumed by the anchoring pipeline.

The orchestrator never talks to a chain, a key service or an HTTP
client directly. It talks to these Protocols. Swapping Bitcoin for an
EVM settlement chain, or a remote threshold-ECDSA signer for a local
key, is a matter of supplying a different implementation.

Error contract for every async method:
    TransportError — the request did not complete (retry-eligible).
    SigningError   — key unavailable or signer refused (signing only).
    DecodeError    — a response arrived but could not be parsed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence, runtime_checkable

from trustbridge.models.settlement import (
    CustodyInput,
    DerivedKey,
    TxStatus,
    UnsignedSettlementTx,
)


@runtime_checkable
class SigningService(Protocol):
    """Custody key service (e.g. threshold ECDSA).

    The caller always supplies a pre-hashed 32-byte digest.
    """

    async def derive_public_key(
        self, key_id: str, derivation_path: Sequence[bytes],
    ) -> DerivedKey:
        ...

    async def sign(
        self, key_id: str, derivation_path: Sequence[bytes], digest: bytes,
    ) -> bytes:
        ...


@runtime_checkable
class BroadcastService(Protocol):
    """Submits signed settlement transactions and reports their status."""

    async def submit(self, raw_transaction: bytes) -> str:
        """Returns the external transaction reference (txid / tx hash)."""
        ...

    async def query_status(self, external_tx_ref: str) -> TxStatus:
        ...


@runtime_checkable
class ChainQuery(Protocol):
    """Read-only view of the destination chain."""

    async def tip_height(self) -> int:
        ...

    async def get_transaction(self, external_tx_ref: str) -> dict[str, Any]:
        ...


@runtime_checkable
class CustodySource(Protocol):
    """Spendable custody inputs and the current fee rate (sat/vbyte)."""

    async def list_inputs(self, address: str) -> list[CustodyInput]:
        ...

    async def fee_rate(self) -> int:
        ...


@runtime_checkable
class TransactionEncoder(Protocol):
    """Chain-specific byte encoding of a signed settlement transaction."""

    def encode(
        self,
        unsigned: UnsignedSettlementTx,
        signature: bytes,
        public_key: bytes,
    ) -> bytes:
        ...


@dataclass(frozen=True)
class HttpRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    max_response_bytes: Optional[int] = None


@dataclass(frozen=True)
class HttpResponse:
    status: int
    headers: dict[str, str]
    body: bytes


# Applied to a response before it is returned, e.g. to strip
# non-deterministic headers.
ResponseTransform = Callable[[HttpResponse], HttpResponse]


@runtime_checkable
class HttpTransport(Protocol):
    """Generic request/response transport.

    Transport failures (connection errors, timeouts, oversized bodies,
    non-2xx statuses) raise TransportError. Application-level RPC errors
    are left to the caller to interpret from the body.
    """

    async def request(
        self,
        request: HttpRequest,
        transform: Optional[ResponseTransform] = None,
    ) -> HttpResponse:
        ...
