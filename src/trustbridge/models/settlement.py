"""Settlement transaction models used while anchoring a batch.

These are chain-neutral shapes. Turning an UnsignedSettlementTx into
real chain bytes is the transaction encoder's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


# Sequence number that opts inputs into replace-by-fee.
RBF_SEQUENCE = 0xFFFFFFFD

OP_RETURN_ADDRESS = "OP_RETURN"


@dataclass(frozen=True)
class DerivedKey:
    """Public key and address returned by the signing service."""
    public_key: bytes
    address: str
    derivation_path: tuple[bytes, ...] = ()


@dataclass(frozen=True)
class CustodyInput:
    """A spendable custody output (UTXO)."""
    txid: str
    vout: int
    amount: int  # satoshis
    script_pubkey: bytes = b""


@dataclass(frozen=True)
class TxInput:
    utxo: CustodyInput
    sequence: int = RBF_SEQUENCE


@dataclass(frozen=True)
class TxOutput:
    address: str
    amount: int
    data: Optional[bytes] = None  # OP_RETURN payload


@dataclass(frozen=True)
class UnsignedSettlementTx:
    """Settlement transaction carrying a batch root, before signing."""
    inputs: tuple[TxInput, ...]
    outputs: tuple[TxOutput, ...]
    locktime: int
    fee: int

    @property
    def total_input(self) -> int:
        return sum(i.utxo.amount for i in self.inputs)

    def to_canonical(self) -> dict:
        """Canonical dict form used for digests and the generic encoder."""
        return {
            "inputs": [
                {
                    "txid": i.utxo.txid,
                    "vout": i.utxo.vout,
                    "amount": i.utxo.amount,
                    "script_pubkey": i.utxo.script_pubkey.hex(),
                    "sequence": i.sequence,
                }
                for i in self.inputs
            ],
            "outputs": [
                {
                    "address": o.address,
                    "amount": o.amount,
                    "data": o.data.hex() if o.data is not None else None,
                }
                for o in self.outputs
            ],
            "locktime": self.locktime,
            "fee": self.fee,
        }


@dataclass(frozen=True)
class TxStatus:
    """Broadcast status of a settlement transaction."""
    confirmed: bool
    block_height: Optional[int] = None


@dataclass(frozen=True)
class AnchorOutcome:
    """What a call to anchor() or confirm() produced for a batch."""
    batch_id: str
    state: str
    external_tx_ref: Optional[str] = None
    confirmation_height: Optional[int] = None
    final: bool = False
    attempt_count: int = 0
    reason: Optional[str] = None
    retryable: bool = False
    in_flight: bool = False
