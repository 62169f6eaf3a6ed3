"""Evidence records — cross-chain messages, validator attestations, receipts.

Messages and receipts are immutable once issued. The ledger owns them;
every other component refers to them by id.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime


class MessageState(str, enum.Enum):
    """Delivery state of a cross-chain message.

    One-way: AWAITING_QUORUM → READY. A message never returns to
    AWAITING_QUORUM once its quorum has been reached.
    """
    AWAITING_QUORUM = "awaiting_quorum"
    READY = "ready"


class ReceiptState(str, enum.Enum):
    """Whether a receipt is still waiting for a batch."""
    PENDING = "pending"
    BATCHED = "batched"


@dataclass(frozen=True)
class Message:
    """A cross-chain message awaiting validator attestations."""
    id: str
    source_chain_id: int
    destination_chain_id: int
    payload: bytes
    nonce: int
    sender: str
    created_at: datetime


@dataclass(frozen=True)
class Attestation:
    """One validator's signature over a message.

    The signature is stored as given. Verifying it is the job of the
    signing/verification collaborator, not this package.
    """
    message_id: str
    validator_identity: str
    signature_bytes: bytes
    created_at: datetime


@dataclass(frozen=True)
class Receipt:
    """A locally issued receipt, later committed under a batch root."""
    id: str
    data_fingerprint: str
    created_at: datetime
