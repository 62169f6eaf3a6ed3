"""Core data models for TrustBridge."""

from trustbridge.models.batch import (
    ANCHOR_TRANSITIONS,
    AnchorState,
    AnchorStatus,
    Batch,
)
from trustbridge.models.crosschain import CrossChainTransaction, TxMonitorStatus
from trustbridge.models.evidence import (
    Attestation,
    Message,
    MessageState,
    Receipt,
    ReceiptState,
)
from trustbridge.models.settlement import (
    AnchorOutcome,
    CustodyInput,
    DerivedKey,
    TxInput,
    TxOutput,
    TxStatus,
    UnsignedSettlementTx,
)

__all__ = [
    "ANCHOR_TRANSITIONS",
    "AnchorOutcome",
    "AnchorState",
    "AnchorStatus",
    "Attestation",
    "Batch",
    "CrossChainTransaction",
    "CustodyInput",
    "DerivedKey",
    "Message",
    "MessageState",
    "Receipt",
    "ReceiptState",
    "TxInput",
    "TxOutput",
    "TxMonitorStatus",
    "TxStatus",
    "UnsignedSettlementTx",
]
