"""Shared fakes for the anchoring collaborators."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

import pytest

from trustbridge.adapters.canonical_encoder import CanonicalJsonEncoder
from trustbridge.errors import SigningError, TransportError
from trustbridge.ledger.ids import IdGenerator
from trustbridge.models.settlement import CustodyInput, DerivedKey, TxStatus


CUSTODY_ADDRESS = "tb1qcustody000000000000000000000000000000"


class FakeSigner:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.signed: list[bytes] = []

    async def derive_public_key(self, key_id: str, derivation_path: Sequence[bytes]) -> DerivedKey:
        if self.fail:
            raise SigningError(f"key {key_id} unavailable")
        return DerivedKey(public_key=b"\x02" + b"\x11" * 32, address=CUSTODY_ADDRESS)

    async def sign(self, key_id: str, derivation_path: Sequence[bytes], digest: bytes) -> bytes:
        if self.fail:
            raise SigningError(f"key {key_id} unavailable")
        self.signed.append(digest)
        return b"\x30" * 64


class FakeBroadcaster:
    """Fails the first `failures` submissions with TransportError."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.submitted: list[bytes] = []
        self.attempts = 0
        self.statuses: dict[str, TxStatus] = {}

    async def submit(self, raw_transaction: bytes) -> str:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TransportError(f"connection reset (attempt {self.attempts})")
        self.submitted.append(raw_transaction)
        return f"{len(self.submitted):064x}"

    async def query_status(self, external_tx_ref: str) -> TxStatus:
        return self.statuses.get(external_tx_ref, TxStatus(confirmed=False))


class FakeCustody:
    def __init__(self, amounts: Sequence[int] = (100_000,), rate: int = 10) -> None:
        self.amounts = list(amounts)
        self.rate = rate

    async def list_inputs(self, address: str) -> list[CustodyInput]:
        return [
            CustodyInput(txid=f"{i:064x}", vout=0, amount=amount)
            for i, amount in enumerate(self.amounts)
        ]

    async def fee_rate(self) -> int:
        return self.rate


class FakeChain:
    def __init__(self, tip: int = 800_000, fail: bool = False) -> None:
        self.tip = tip
        self.fail = fail

    async def tip_height(self) -> int:
        if self.fail:
            raise TransportError("tip unavailable")
        return self.tip

    async def get_transaction(self, external_tx_ref: str) -> dict[str, Any]:
        return {"txid": external_tx_ref}


class FixedClock:
    """Nanosecond clock that never advances."""

    def __init__(self, ns: int = 1_700_000_000_000_000_000) -> None:
        self.ns = ns

    def __call__(self) -> int:
        return self.ns


T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def broadcaster() -> FakeBroadcaster:
    return FakeBroadcaster()


@pytest.fixture
def custody() -> FakeCustody:
    return FakeCustody()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def encoder() -> CanonicalJsonEncoder:
    return CanonicalJsonEncoder()


@pytest.fixture
def ids() -> IdGenerator:
    return IdGenerator(clock_ns=FixedClock())


def fingerprint(n: int) -> str:
    """Deterministic test data fingerprint."""
    return f"sha256:{n:064x}"
