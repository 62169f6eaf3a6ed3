"""Evidence ledger — message and receipt storage."""

from trustbridge.ledger.evidence_ledger import EvidenceLedger
from trustbridge.ledger.ids import IdGenerator

__all__ = ["EvidenceLedger", "IdGenerator"]
