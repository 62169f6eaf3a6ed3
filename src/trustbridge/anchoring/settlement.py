"""Settlement transaction builder — embeds a batch root in an OP_RETURN output.

The builder is deterministic: given the same root, inputs and fee rate
it produces the same unsigned transaction, and therefore the same
signing digest.

Layout:
    inputs   every custody input, RBF-enabled
    output 0 OP_RETURN carrying the raw 32-byte batch root (amount 0)
    output 1 change back to the custody address: total_input - fee
"""

from __future__ import annotations

from typing import Sequence

from trustbridge.crypto.fingerprint import canonical_digest, raw_digest
from trustbridge.errors import InsufficientFunds
from trustbridge.models.settlement import (
    OP_RETURN_ADDRESS,
    CustodyInput,
    TxInput,
    TxOutput,
    UnsignedSettlementTx,
)

# Rough virtual size of a one-input OP_RETURN + change transaction.
DEFAULT_TX_VBYTES = 250


def estimate_fee(fee_rate: int, tx_vbytes: int = DEFAULT_TX_VBYTES) -> int:
    """Fee in satoshis for a settlement transaction at fee_rate sat/vbyte."""
    if fee_rate < 0:
        raise ValueError(f"Fee rate must be non-negative, got {fee_rate}")
    return fee_rate * tx_vbytes


def build_settlement_tx(
    root_fingerprint: str,
    inputs: Sequence[CustodyInput],
    fee_rate: int,
    change_address: str,
    tx_vbytes: int = DEFAULT_TX_VBYTES,
) -> UnsignedSettlementTx:
    """Build the unsigned anchor transaction for a batch root.

    Raises:
        InsufficientFunds: If total input value does not exceed the
            estimated fee (this includes having no inputs at all).
        ValueError: If the root is not a SHA-256 fingerprint.
    """
    root_bytes = raw_digest(root_fingerprint)
    fee = estimate_fee(fee_rate, tx_vbytes)
    total_input = sum(u.amount for u in inputs)

    if total_input <= fee:
        raise InsufficientFunds(total_input, fee)

    return UnsignedSettlementTx(
        inputs=tuple(TxInput(utxo=u) for u in inputs),
        outputs=(
            TxOutput(address=OP_RETURN_ADDRESS, amount=0, data=root_bytes),
            TxOutput(address=change_address, amount=total_input - fee),
        ),
        locktime=0,
        fee=fee,
    )


def settlement_digest(unsigned: UnsignedSettlementTx) -> bytes:
    """32-byte digest the signing service signs over."""
    return canonical_digest(unsigned.to_canonical())
