"""Batcher — cuts pending receipts into immutable, fingerprinted batches.

At each batch boundary the entire pending-receipt set is swapped for
an empty one and wrapped in a new Batch whose root is the SHA-256 fold
over the member receipt ids in insertion order.

Invariants enforced:
- A receipt belongs to at most one batch (the ledger moves it, never
  copies it).
- The root is a pure function of the ordered member ids, so it can be
  recomputed from the stored member list at any time.
- Cutting with nothing pending is a no-op signal (None), not an error.

The batcher owns Batch records. Anchor status on a batch is written
only through set_anchor_status, which the anchor orchestrator calls.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional

import structlog

from trustbridge.crypto.fingerprint import fold_root
from trustbridge.errors import NotFound
from trustbridge.ledger.evidence_ledger import EvidenceLedger
from trustbridge.ledger.ids import IdGenerator
from trustbridge.models.batch import AnchorStatus, Batch

logger = structlog.get_logger(__name__)

BATCH_PREFIX = "batch"


class Batcher:
    """Drains the ledger's pending receipts into batches.

    Usage:
        batcher = Batcher(ledger)
        batch = batcher.cut_batch()
        if batch is None:
            ...  # nothing pending
        assert batcher.verify_root(batch)
    """

    def __init__(
        self,
        ledger: EvidenceLedger,
        id_generator: Optional[IdGenerator] = None,
    ) -> None:
        self._ledger = ledger
        self._ids = id_generator or IdGenerator()
        self._lock = threading.Lock()
        self._batches: dict[str, Batch] = {}

    def cut_batch(self, now: Optional[datetime] = None) -> Optional[Batch]:
        """Cut a batch from every pending receipt.

        Returns the new Batch, or None when no receipts were pending.
        """
        batch_id = self._ids.next_id(BATCH_PREFIX)
        member_ids = self._ledger.drain_pending_receipts(batch_id)
        if not member_ids:
            logger.debug("batch_cut_empty")
            return None

        batch = Batch(
            batch_id=batch_id,
            root_fingerprint=fold_root(member_ids),
            member_receipt_ids=tuple(member_ids),
            created_at=now or datetime.now(timezone.utc),
        )
        with self._lock:
            self._batches[batch_id] = batch

        logger.info(
            "batch_cut",
            batch_id=batch_id,
            root=batch.root_fingerprint,
            receipts=len(member_ids),
        )
        return batch

    def get_batch(self, batch_id: str) -> Batch:
        with self._lock:
            batch = self._batches.get(batch_id)
        if batch is None:
            raise NotFound("Batch", batch_id)
        return batch

    def batches(self) -> list[Batch]:
        """All batches in the order they were cut."""
        with self._lock:
            return list(self._batches.values())

    def latest_batch(self) -> Optional[Batch]:
        with self._lock:
            if not self._batches:
                return None
            return next(reversed(self._batches.values()))

    def set_anchor_status(self, batch_id: str, status: AnchorStatus) -> Batch:
        """Apply an anchor status transition. Raises InvalidTransition."""
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                raise NotFound("Batch", batch_id)
            batch.transition_to(status)
            return batch

    @staticmethod
    def verify_root(batch: Batch) -> bool:
        """Recompute the fold over the stored member ids and compare."""
        return fold_root(batch.member_receipt_ids) == batch.root_fingerprint
