"""Tracked cross-chain transactions.

A CrossChainTransaction is a snapshot of what the source chain last
reported for one transaction hash. Each check replaces the snapshot;
the record id stays the same for the life of the hash.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


class TxMonitorStatus(str, enum.Enum):
    """PENDING until the receipt is confirmation_depth blocks deep.

    FAILED means the receipt exists but the transaction reverted.
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class CrossChainTransaction:
    id: str
    source_chain_id: int
    source_chain: str
    destination_chain: str
    tx_hash: str
    status: TxMonitorStatus
    updated_at: datetime
    block_height: Optional[int] = None
    confirmations: int = 0

    @property
    def is_settled(self) -> bool:
        return self.status != TxMonitorStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "tx_id": self.id,
            "source_chain_id": self.source_chain_id,
            "source_chain": self.source_chain,
            "destination_chain": self.destination_chain,
            "tx_hash": self.tx_hash,
            "status": self.status.value,
            "block_height": self.block_height,
            "confirmations": self.confirmations,
            "updated_at": self.updated_at.isoformat(),
        }
