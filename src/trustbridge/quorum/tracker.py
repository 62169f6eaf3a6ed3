"""Quorum tracker — counts distinct validator attestations per message.

A message becomes deliverable (READY) once the number of distinct
validators that attested to it reaches the quorum threshold. This is a
counting threshold, not a voting protocol: signatures are stored but
not verified here.

Invariants enforced:
- A validator counts at most once per message, however many times it
  submits. Dedup is by validator identity, not by arrival order.
- total_count never exceeds the number of distinct validators.
- AWAITING_QUORUM → READY is one-way. Once latched, a message stays
  READY regardless of later submissions.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog

from trustbridge.errors import NotFound
from trustbridge.ledger.evidence_ledger import EvidenceLedger
from trustbridge.models.evidence import Attestation, Message, MessageState

logger = structlog.get_logger(__name__)

DEFAULT_QUORUM_THRESHOLD = 2


@dataclass(frozen=True)
class AttestationResult:
    """Outcome of submit_attestation."""
    message_id: str
    accepted: bool
    total_count: int
    threshold: int
    ready: bool
    newly_ready: bool = False


class QuorumTracker:
    """Accumulates attestations and evaluates the quorum threshold.

    Parameters (via *config* dict):
        quorum_threshold        : int            — distinct validators needed (default 2)
        destination_thresholds  : dict[int, int] — per-destination-chain overrides
    """

    def __init__(self, ledger: EvidenceLedger, config: Optional[dict] = None) -> None:
        config = config or {}
        self._ledger = ledger
        self._threshold: int = config.get("quorum_threshold", DEFAULT_QUORUM_THRESHOLD)
        self._destination_thresholds: dict[int, int] = dict(
            config.get("destination_thresholds", {})
        )
        if self._threshold < 1:
            raise ValueError(f"Quorum threshold must be >= 1, got {self._threshold}")
        for chain_id, value in self._destination_thresholds.items():
            if value < 1:
                raise ValueError(
                    f"Quorum threshold for chain {chain_id} must be >= 1, got {value}"
                )

        self._lock = threading.Lock()
        # message_id -> attestations in arrival order (deduplicated)
        self._attestations: dict[str, list[Attestation]] = {}
        # message_id -> validator identities already counted
        self._validators: dict[str, set[str]] = {}
        # Latched: once a message is here it is READY forever.
        self._ready: set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit_attestation(
        self,
        message_id: str,
        validator: str,
        signature: bytes,
        now: Optional[datetime] = None,
    ) -> AttestationResult:
        """Record a validator's attestation for a message.

        Raises:
            NotFound: If message_id is unknown to the ledger.
            ValueError: If the validator identity is empty.
        """
        message = self._ledger.get_message(message_id)
        if not validator:
            raise ValueError("Validator identity must be non-empty")
        threshold = self.threshold_for(message)

        with self._lock:
            seen = self._validators.setdefault(message_id, set())
            accepted = validator not in seen
            if accepted:
                seen.add(validator)
                self._attestations.setdefault(message_id, []).append(Attestation(
                    message_id=message_id,
                    validator_identity=validator,
                    signature_bytes=bytes(signature),
                    created_at=now or datetime.now(timezone.utc),
                ))
            total = len(seen)
            newly_ready = False
            if total >= threshold and message_id not in self._ready:
                self._ready.add(message_id)
                newly_ready = True
            ready = message_id in self._ready

        if not accepted:
            logger.info(
                "attestation_duplicate",
                message_id=message_id, validator=validator, total_count=total,
            )
        elif newly_ready:
            logger.info(
                "quorum_reached",
                message_id=message_id, total_count=total, threshold=threshold,
            )

        return AttestationResult(
            message_id=message_id,
            accepted=accepted,
            total_count=total,
            threshold=threshold,
            ready=ready,
            newly_ready=newly_ready,
        )

    def is_quorum_reached(self, message_id: str) -> bool:
        """True once the message has reached its threshold. Raises NotFound."""
        message = self._ledger.get_message(message_id)
        return self._evaluate(message)

    def state(self, message_id: str) -> MessageState:
        if self.is_quorum_reached(message_id):
            return MessageState.READY
        return MessageState.AWAITING_QUORUM

    def attestation_count(self, message_id: str) -> int:
        """Distinct validators that attested. Raises NotFound."""
        if not self._ledger.has_message(message_id):
            raise NotFound("Message", message_id)
        with self._lock:
            return len(self._validators.get(message_id, ()))

    def attestations(self, message_id: str) -> list[Attestation]:
        """Counted attestations in arrival order. Raises NotFound."""
        if not self._ledger.has_message(message_id):
            raise NotFound("Message", message_id)
        with self._lock:
            return list(self._attestations.get(message_id, []))

    def list_pending(self) -> list[Message]:
        """Messages still awaiting quorum, in issuance order."""
        return [m for m in self._ledger.messages() if not self._evaluate(m)]

    def list_ready(self) -> list[Message]:
        """Messages that have reached quorum, in issuance order."""
        return [m for m in self._ledger.messages() if self._evaluate(m)]

    def threshold_for(self, message: Message) -> int:
        return self._destination_thresholds.get(
            message.destination_chain_id, self._threshold,
        )

    @property
    def threshold(self) -> int:
        """The default threshold applied when no per-destination override exists."""
        return self._threshold

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _evaluate(self, message: Message) -> bool:
        threshold = self.threshold_for(message)
        with self._lock:
            if message.id in self._ready:
                return True
            if len(self._validators.get(message.id, ())) >= threshold:
                self._ready.add(message.id)
                return True
            return False
