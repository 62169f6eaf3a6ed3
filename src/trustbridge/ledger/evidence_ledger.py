"""Evidence ledger — append-only store of messages and receipts.

The ledger is the source of truth for what has been submitted. It owns
Message and Receipt records exclusively and never deletes them.

It also holds the pending-receipt set. The batcher drains that set
through drain_pending_receipts(), which swaps it for an empty one under
the receipts lock: a receipt issued concurrently with a cut lands in
exactly one of "this batch" or "the next pending set".

Each table has its own lock, so issuing a message never waits on a
receipt cut and vice versa.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional, Union

import structlog

from trustbridge.errors import NotFound
from trustbridge.ledger.ids import IdGenerator
from trustbridge.models.evidence import Message, Receipt, ReceiptState

logger = structlog.get_logger(__name__)

MESSAGE_PREFIX = "msg"
RECEIPT_PREFIX = "receipt"


class EvidenceLedger:
    """Append-only message and receipt store.

    Usage:
        ledger = EvidenceLedger()
        mid = ledger.issue_message(1, 2, b"\\x01\\x02", sender="s")
        rid = ledger.issue_receipt("sha256:aa...")
        ledger.get(mid)  # -> Message
    """

    def __init__(self, id_generator: Optional[IdGenerator] = None) -> None:
        self._ids = id_generator or IdGenerator()

        self._messages_lock = threading.Lock()
        self._messages: dict[str, Message] = {}
        self._sender_nonces: dict[str, int] = {}

        self._receipts_lock = threading.Lock()
        self._receipts: dict[str, Receipt] = {}
        self._pending: list[str] = []
        self._receipt_batch: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_message(
        self,
        source_chain_id: int,
        destination_chain_id: int,
        payload: bytes,
        sender: str,
        now: Optional[datetime] = None,
    ) -> str:
        """Record a cross-chain message. Returns its id."""
        if not sender:
            raise ValueError("Message sender must be non-empty")
        created = now or datetime.now(timezone.utc)
        message_id = self._ids.next_id(MESSAGE_PREFIX)

        with self._messages_lock:
            nonce = self._sender_nonces.get(sender, 0) + 1
            self._sender_nonces[sender] = nonce
            self._messages[message_id] = Message(
                id=message_id,
                source_chain_id=source_chain_id,
                destination_chain_id=destination_chain_id,
                payload=bytes(payload),
                nonce=nonce,
                sender=sender,
                created_at=created,
            )

        logger.debug(
            "message_issued",
            message_id=message_id,
            source_chain_id=source_chain_id,
            destination_chain_id=destination_chain_id,
            nonce=nonce,
        )
        return message_id

    def issue_receipt(
        self,
        data_fingerprint: str,
        now: Optional[datetime] = None,
    ) -> str:
        """Record a receipt and add it to the pending set. Returns its id."""
        if not data_fingerprint:
            raise ValueError("Receipt fingerprint must be non-empty")
        created = now or datetime.now(timezone.utc)
        receipt_id = self._ids.next_id(RECEIPT_PREFIX)

        with self._receipts_lock:
            self._receipts[receipt_id] = Receipt(
                id=receipt_id,
                data_fingerprint=data_fingerprint,
                created_at=created,
            )
            self._pending.append(receipt_id)

        logger.debug("receipt_issued", receipt_id=receipt_id)
        return receipt_id

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, record_id: str) -> Union[Message, Receipt]:
        """Fetch a message or receipt by id. Raises NotFound."""
        with self._messages_lock:
            message = self._messages.get(record_id)
        if message is not None:
            return message
        with self._receipts_lock:
            receipt = self._receipts.get(record_id)
        if receipt is not None:
            return receipt
        raise NotFound("Record", record_id)

    def get_message(self, message_id: str) -> Message:
        with self._messages_lock:
            message = self._messages.get(message_id)
        if message is None:
            raise NotFound("Message", message_id)
        return message

    def get_receipt(self, receipt_id: str) -> Receipt:
        with self._receipts_lock:
            receipt = self._receipts.get(receipt_id)
        if receipt is None:
            raise NotFound("Receipt", receipt_id)
        return receipt

    def has_message(self, message_id: str) -> bool:
        with self._messages_lock:
            return message_id in self._messages

    def messages(self) -> list[Message]:
        """All messages in issuance order."""
        with self._messages_lock:
            return list(self._messages.values())

    def receipt_state(self, receipt_id: str) -> ReceiptState:
        with self._receipts_lock:
            if receipt_id not in self._receipts:
                raise NotFound("Receipt", receipt_id)
            if receipt_id in self._receipt_batch:
                return ReceiptState.BATCHED
            return ReceiptState.PENDING

    def receipt_batch(self, receipt_id: str) -> Optional[str]:
        """The batch id a receipt was moved into, or None while pending."""
        with self._receipts_lock:
            if receipt_id not in self._receipts:
                raise NotFound("Receipt", receipt_id)
            return self._receipt_batch.get(receipt_id)

    @property
    def pending_receipt_count(self) -> int:
        with self._receipts_lock:
            return len(self._pending)

    @property
    def message_count(self) -> int:
        with self._messages_lock:
            return len(self._messages)

    @property
    def receipt_count(self) -> int:
        with self._receipts_lock:
            return len(self._receipts)

    # ------------------------------------------------------------------
    # Batching support
    # ------------------------------------------------------------------

    def drain_pending_receipts(self, batch_id: str) -> list[str]:
        """Atomically move every pending receipt into batch_id.

        Returns the drained receipt ids in insertion order. An empty
        list means nothing was pending and no receipt was marked.
        """
        with self._receipts_lock:
            drained, self._pending = self._pending, []
            for receipt_id in drained:
                self._receipt_batch[receipt_id] = batch_id
        return drained
