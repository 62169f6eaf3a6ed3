"""TrustBridge service — unified facade over the evidence pipeline.

This is the primary interface for programmatic access. It wires and
orchestrates every subsystem:
- Evidence ledger (messages, receipts)
- Quorum tracking (validator attestations, readiness)
- Batching (receipt roots)
- Anchoring (build, sign, broadcast, confirm)
- Scheduling (quorum polls, anchor retries, confirmation and transaction polls)
- Source-chain monitoring (EVM transactions, DVN verification)
- Audit (append-only event log)

Every operation returns a ServiceResult. Engine exceptions are turned
into success=False results here and nowhere else. Audit events are
written after the state change they describe; if the event log fails
the operation reports the failure instead of pretending success.

Polls are armed only when an event loop is running. Synchronous callers
get the same state changes without any background re-checks.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

import structlog

from trustbridge.adapters.dvn import DvnClient
from trustbridge.anchoring.collaborators import (
    BroadcastService,
    ChainQuery,
    CustodySource,
    HttpTransport,
    SigningService,
    TransactionEncoder,
)
from trustbridge.anchoring.orchestrator import AnchorOrchestrator
from trustbridge.batching.batcher import Batcher
from trustbridge.config import BridgeConfig
from trustbridge.errors import NotFound, TrustBridgeError
from trustbridge.ledger.evidence_ledger import EvidenceLedger
from trustbridge.ledger.ids import IdGenerator
from trustbridge.models.batch import AnchorState, AnchorStatus, Batch
from trustbridge.models.crosschain import CrossChainTransaction, TxMonitorStatus
from trustbridge.models.evidence import Message, Receipt
from trustbridge.models.settlement import AnchorOutcome
from trustbridge.monitoring.transactions import TransactionMonitor
from trustbridge.persistence.event_log import EventKind, EventLog, EventRecord
from trustbridge.quorum.tracker import QuorumTracker
from trustbridge.scheduling.poller import PollScheduler

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"

_NO_TRANSPORT = "Transaction monitoring needs an HTTP transport"

_ANCHOR_EVENT_KINDS = {
    AnchorState.ANCHOR_PENDING: EventKind.ANCHOR_PENDING,
    AnchorState.ANCHORED: EventKind.ANCHOR_SUBMITTED,
    AnchorState.ANCHOR_FAILED: EventKind.ANCHOR_FAILED,
}


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


def _message_data(message: Message, tracker: QuorumTracker) -> dict[str, Any]:
    return {
        "message_id": message.id,
        "source_chain_id": message.source_chain_id,
        "destination_chain_id": message.destination_chain_id,
        "payload": message.payload.hex(),
        "nonce": message.nonce,
        "sender": message.sender,
        "created_at": message.created_at.isoformat(),
        "state": tracker.state(message.id).value,
        "attestation_count": tracker.attestation_count(message.id),
        "threshold": tracker.threshold_for(message),
    }


def _batch_data(batch: Batch) -> dict[str, Any]:
    return {
        "batch_id": batch.batch_id,
        "root": batch.root_fingerprint,
        "member_receipt_ids": list(batch.member_receipt_ids),
        "size": len(batch.member_receipt_ids),
        "created_at": batch.created_at.isoformat(),
        "anchor_status": batch.anchor_status.to_dict(),
    }


def _outcome_data(outcome: AnchorOutcome) -> dict[str, Any]:
    return {
        "batch_id": outcome.batch_id,
        "state": outcome.state,
        "external_tx_ref": outcome.external_tx_ref,
        "confirmation_height": outcome.confirmation_height,
        "final": outcome.final,
        "attempt_count": outcome.attempt_count,
        "reason": outcome.reason,
        "retryable": outcome.retryable,
        "in_flight": outcome.in_flight,
    }


def _transaction_data(record: CrossChainTransaction) -> dict[str, Any]:
    data = record.to_dict()
    data["settled"] = record.is_settled
    return data


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class TrustBridgeService:
    """Evidence pipeline facade.

    Usage:
        service = TrustBridgeService(
            signer, broadcaster, custody, encoder, chain_query,
            config=load_config(),
            event_log=EventLog(Path("data/events.jsonl")),
            transport=HttpxTransport(),
        )

        result = service.issue_message(1, 137, b"payload", "0xsender")
        service.submit_attestation(result.data["message_id"], "validator-a", sig_a)

        service.issue_receipt("sha256:...")
        cut = service.cut_batch()
        outcome = await service.anchor_batch(cut.data["batch_id"])
        await service.confirm_batch(cut.data["batch_id"])

        await service.monitor_transaction(137, "0x...")
    """

    def __init__(
        self,
        signer: SigningService,
        broadcaster: BroadcastService,
        custody: CustodySource,
        encoder: TransactionEncoder,
        chain_query: ChainQuery,
        config: Optional[BridgeConfig] = None,
        event_log: Optional[EventLog] = None,
        scheduler: Optional[PollScheduler] = None,
        id_generator: Optional[IdGenerator] = None,
        transport: Optional[HttpTransport] = None,
    ) -> None:
        self._config = config or BridgeConfig()
        ids = id_generator or IdGenerator()
        self._ledger = EvidenceLedger(id_generator=ids)
        self._tracker = QuorumTracker(self._ledger, self._config.quorum_config())
        self._batcher = Batcher(self._ledger, id_generator=ids)
        self._orchestrator = AnchorOrchestrator(
            self._batcher,
            signer,
            broadcaster,
            custody,
            encoder,
            chain_query,
            self._config.anchor_config(),
        )
        self._scheduler = scheduler or PollScheduler()
        self._event_log = event_log

        # Source-chain monitoring needs HTTP; without a transport those
        # operations report failure.
        self._chains = self._config.chain_registry()
        self._monitor: Optional[TransactionMonitor] = None
        self._dvn: Optional[DvnClient] = None
        if transport is not None:
            self._monitor = TransactionMonitor(
                self._chains, transport, self._config.monitor_config(), id_generator=ids,
            )
            if self._config.dvn_endpoint:
                self._dvn = DvnClient(transport, self._config.dvn_endpoint)

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0

    # ------------------------------------------------------------------
    # Messages and attestations
    # ------------------------------------------------------------------

    def issue_message(
        self,
        source_chain_id: int,
        destination_chain_id: int,
        payload: bytes,
        sender: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Register a message and start polling for its quorum."""
        try:
            message_id = self._ledger.issue_message(
                source_chain_id, destination_chain_id, payload, sender, now=now,
            )
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        message = self._ledger.get_message(message_id)

        err = self._record(EventKind.MESSAGE_ISSUED, sender, {
            "message_id": message.id,
            "source_chain_id": source_chain_id,
            "destination_chain_id": destination_chain_id,
            "nonce": message.nonce,
        })
        if err:
            return ServiceResult(success=False, errors=[err])

        if _loop_running():
            self._arm_quorum_poll(message.id)
        return ServiceResult(success=True, data=_message_data(message, self._tracker))

    def submit_attestation(
        self,
        message_id: str,
        validator: str,
        signature: bytes,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Record a validator attestation. Duplicates succeed with accepted=False."""
        try:
            result = self._tracker.submit_attestation(message_id, validator, signature, now=now)
        except (NotFound, ValueError) as e:
            return ServiceResult(success=False, errors=[str(e)])

        kind = EventKind.ATTESTATION_RECORDED if result.accepted else EventKind.ATTESTATION_DUPLICATE
        err = self._record(kind, validator, {
            "message_id": message_id,
            "total_count": result.total_count,
        })
        if not err and result.newly_ready:
            err = self._record(EventKind.QUORUM_REACHED, SYSTEM_ACTOR, {
                "message_id": message_id,
                "total_count": result.total_count,
                "threshold": result.threshold,
            })
            self._scheduler.cancel(f"quorum:{message_id}")
        if err:
            return ServiceResult(success=False, errors=[err])

        return ServiceResult(success=True, data={
            "message_id": message_id,
            "accepted": result.accepted,
            "total_count": result.total_count,
            "threshold": result.threshold,
            "ready": result.ready,
            "newly_ready": result.newly_ready,
        })

    def get_message(self, message_id: str) -> ServiceResult:
        try:
            message = self._ledger.get_message(message_id)
        except NotFound as e:
            return ServiceResult(success=False, errors=[str(e)])
        data = _message_data(message, self._tracker)
        data["validators"] = [
            a.validator_identity for a in self._tracker.attestations(message_id)
        ]
        return ServiceResult(success=True, data=data)

    def list_pending(self) -> ServiceResult:
        messages = self._tracker.list_pending()
        return ServiceResult(success=True, data={
            "messages": [_message_data(m, self._tracker) for m in messages],
            "count": len(messages),
        })

    def list_ready(self) -> ServiceResult:
        messages = self._tracker.list_ready()
        return ServiceResult(success=True, data={
            "messages": [_message_data(m, self._tracker) for m in messages],
            "count": len(messages),
        })

    # ------------------------------------------------------------------
    # Receipts and batches
    # ------------------------------------------------------------------

    def issue_receipt(self, data_fingerprint: str, now: Optional[datetime] = None) -> ServiceResult:
        try:
            receipt_id = self._ledger.issue_receipt(data_fingerprint, now=now)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])
        receipt = self._ledger.get_receipt(receipt_id)

        err = self._record(EventKind.RECEIPT_ISSUED, SYSTEM_ACTOR, {
            "receipt_id": receipt.id,
            "data_fingerprint": data_fingerprint,
        })
        if err:
            return ServiceResult(success=False, errors=[err])
        return ServiceResult(success=True, data=self._receipt_data(receipt))

    def get_receipt(self, receipt_id: str) -> ServiceResult:
        try:
            receipt = self._ledger.get_receipt(receipt_id)
        except NotFound as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data=self._receipt_data(receipt))

    def cut_batch(self, now: Optional[datetime] = None) -> ServiceResult:
        """Cut a batch from all pending receipts.

        Nothing pending is not a failure: success=True with data["empty"].
        """
        batch = self._batcher.cut_batch(now=now)
        if batch is None:
            return ServiceResult(success=True, data={"empty": True})

        err = self._record(EventKind.BATCH_CUT, SYSTEM_ACTOR, {
            "batch_id": batch.batch_id,
            "root": batch.root_fingerprint,
            "size": len(batch.member_receipt_ids),
        })
        data = _batch_data(batch)
        data["empty"] = False
        if err:
            return ServiceResult(success=False, errors=[err], data=data)
        return ServiceResult(success=True, data=data)

    def get_batch(self, batch_id: str) -> ServiceResult:
        try:
            batch = self._batcher.get_batch(batch_id)
        except NotFound as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data=_batch_data(batch))

    # ------------------------------------------------------------------
    # Anchoring
    # ------------------------------------------------------------------

    async def anchor_batch(self, batch_id: str) -> ServiceResult:
        """Anchor a batch now.

        A pending scheduled retry for the batch is preempted. A retryable
        broadcast failure schedules the next attempt; a submitted anchor
        arms the confirmation poll. An attempt already in flight is
        reported as is and schedules nothing.
        """
        self._scheduler.cancel(f"anchor:{batch_id}")
        try:
            before = self._batcher.get_batch(batch_id).anchor_status
        except NotFound as e:
            return ServiceResult(success=False, errors=[str(e)])

        try:
            outcome = await self._orchestrator.anchor(batch_id)
        except TrustBridgeError as e:
            errors = [str(e)]
            err = self._record_anchor(batch_id, before)
            if err:
                errors.append(err)
            return ServiceResult(success=False, errors=errors, data=self._anchor_status_data(batch_id))

        err = self._record_anchor(batch_id, before)
        if outcome.retryable:
            self._scheduler.schedule(
                self._config.anchor_retry_interval,
                lambda: self._scheduled_anchor(batch_id),
                key=f"anchor:{batch_id}",
                attempt=outcome.attempt_count,
            )
        elif outcome.state == AnchorState.ANCHORED.value and not outcome.final:
            self._arm_confirmation_poll(batch_id)

        data = _outcome_data(outcome)
        if err:
            return ServiceResult(success=False, errors=[err], data=data)
        if outcome.state == AnchorState.ANCHOR_FAILED.value:
            return ServiceResult(success=False, errors=[outcome.reason or "anchor failed"], data=data)
        return ServiceResult(success=True, data=data)

    async def confirm_batch(self, batch_id: str) -> ServiceResult:
        """Check confirmation depth once."""
        try:
            before = self._batcher.get_batch(batch_id).anchor_status
            outcome = await self._orchestrator.confirm(batch_id)
        except TrustBridgeError as e:
            return ServiceResult(success=False, errors=[str(e)])

        err = None
        if outcome.final and not before.final:
            err = self._record(EventKind.ANCHOR_CONFIRMED, SYSTEM_ACTOR, {
                "batch_id": batch_id,
                "external_tx_ref": outcome.external_tx_ref,
                "confirmation_height": outcome.confirmation_height,
            })
            self._scheduler.cancel(f"confirm:{batch_id}")
        if err:
            return ServiceResult(success=False, errors=[err], data=_outcome_data(outcome))
        return ServiceResult(success=True, data=_outcome_data(outcome))

    # ------------------------------------------------------------------
    # Source-chain transactions and DVN verification
    # ------------------------------------------------------------------

    async def monitor_transaction(self, chain_id: int, tx_hash: str) -> ServiceResult:
        """Check an EVM transaction and keep polling it until it settles.

        Settled means CONFIRMED at confirmation_depth or FAILED.
        """
        result = await self._check_transaction(chain_id, tx_hash)
        if not result.success:
            return result
        key = f"tx:{result.data['tx_id']}"
        if result.data["settled"]:
            self._scheduler.cancel(key)
        elif not self._scheduler.is_pending(key):
            self._arm_transaction_poll(result.data["tx_id"])
        return result

    def get_transaction(self, tx_id: str) -> ServiceResult:
        if self._monitor is None:
            return ServiceResult(success=False, errors=[_NO_TRANSPORT])
        try:
            record = self._monitor.get(tx_id)
        except NotFound as e:
            return ServiceResult(success=False, errors=[str(e)])
        return ServiceResult(success=True, data=_transaction_data(record))

    def list_transactions(self, status: Optional[TxMonitorStatus] = None) -> ServiceResult:
        records = self._monitor.transactions(status) if self._monitor is not None else []
        return ServiceResult(success=True, data={
            "transactions": [_transaction_data(r) for r in records],
            "count": len(records),
        })

    def supported_chains(self) -> ServiceResult:
        chains = self._chains.supported_chains()
        return ServiceResult(success=True, data={
            "chains": [asdict(c) for c in chains],
            "count": len(chains),
        })

    async def verify_dvn_message(self, source_chain_id: int, message_hash: str) -> ServiceResult:
        """Ask the configured DVN endpoint whether it verified a message."""
        if self._dvn is None:
            return ServiceResult(success=False, errors=["No DVN endpoint configured"])
        try:
            verified = await self._dvn.verify(source_chain_id, message_hash)
        except (TrustBridgeError, ValueError) as e:
            return ServiceResult(success=False, errors=[str(e)])

        data = {
            "source_chain_id": source_chain_id,
            "message_hash": message_hash,
            "verified": verified,
        }
        err = self._record(EventKind.DVN_VERIFICATION, SYSTEM_ACTOR, {
            **data, "endpoint": self._dvn.endpoint,
        })
        if err:
            return ServiceResult(success=False, errors=[err], data=data)
        return ServiceResult(success=True, data=data)

    async def _check_transaction(self, chain_id: int, tx_hash: str) -> ServiceResult:
        if self._monitor is None:
            return ServiceResult(success=False, errors=[_NO_TRANSPORT])
        before = self._monitor.find(chain_id, tx_hash)
        try:
            record = await self._monitor.check(chain_id, tx_hash)
        except (TrustBridgeError, ValueError) as e:
            return ServiceResult(success=False, errors=[str(e)])

        data = _transaction_data(record)
        err = self._record_transaction(record, before)
        if err:
            return ServiceResult(success=False, errors=[err], data=data)
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> ServiceResult:
        batches = self._batcher.batches()
        by_state: dict[str, int] = {s.value: 0 for s in AnchorState}
        for batch in batches:
            by_state[batch.anchor_status.state.value] += 1
        return ServiceResult(success=True, data={
            "messages": self._ledger.message_count,
            "messages_pending": len(self._tracker.list_pending()),
            "messages_ready": len(self._tracker.list_ready()),
            "receipts": self._ledger.receipt_count,
            "receipts_pending": self._ledger.pending_receipt_count,
            "batches": len(batches),
            "batches_by_state": by_state,
            "scheduled": self._scheduler.pending_keys(),
            "transactions": len(self._monitor.transactions()) if self._monitor is not None else 0,
            "events": self._event_log.count if self._event_log is not None else 0,
        })

    @property
    def ledger(self) -> EvidenceLedger:
        return self._ledger

    @property
    def tracker(self) -> QuorumTracker:
        return self._tracker

    @property
    def batcher(self) -> Batcher:
        return self._batcher

    @property
    def orchestrator(self) -> AnchorOrchestrator:
        return self._orchestrator

    @property
    def scheduler(self) -> PollScheduler:
        return self._scheduler

    @property
    def event_log(self) -> Optional[EventLog]:
        return self._event_log

    @property
    def monitor(self) -> Optional[TransactionMonitor]:
        return self._monitor

    # ------------------------------------------------------------------
    # Polls
    # ------------------------------------------------------------------

    def _arm_quorum_poll(self, message_id: str) -> None:
        def check() -> bool:
            ready = self._tracker.is_quorum_reached(message_id)
            if ready:
                logger.info("message_ready", message_id=message_id)
            return ready

        self._scheduler.poll_until(
            f"quorum:{message_id}",
            interval=self._config.quorum_poll_interval,
            check=check,
            max_attempts=self._config.max_quorum_polls,
            on_exhausted=lambda: logger.warning("quorum_poll_exhausted", message_id=message_id),
        )

    async def _scheduled_anchor(self, batch_id: str) -> None:
        result = await self.anchor_batch(batch_id)
        if not result.success:
            logger.warning("scheduled_anchor_failed", batch_id=batch_id, errors=result.errors)

    def _arm_confirmation_poll(self, batch_id: str) -> None:
        async def check() -> bool:
            result = await self.confirm_batch(batch_id)
            # Transport errors keep polling; the attempt cap bounds them.
            return result.success and result.data.get("final", False)

        self._scheduler.poll_until(
            f"confirm:{batch_id}",
            interval=self._config.confirmation_poll_interval,
            check=check,
            max_attempts=self._config.max_confirmation_polls,
            on_exhausted=lambda: logger.warning("confirmation_poll_exhausted", batch_id=batch_id),
        )

    def _arm_transaction_poll(self, tx_id: str) -> None:
        async def check() -> bool:
            record = self._monitor.get(tx_id)
            result = await self._check_transaction(record.source_chain_id, record.tx_hash)
            return result.success and result.data["settled"]

        self._scheduler.poll_until(
            f"tx:{tx_id}",
            interval=self._config.confirmation_poll_interval,
            check=check,
            max_attempts=self._config.max_confirmation_polls,
            on_exhausted=lambda: logger.warning("transaction_poll_exhausted", tx_id=tx_id),
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record(self, kind: EventKind, actor_id: str, payload: dict[str, Any]) -> Optional[str]:
        """Append an audit event. Returns an error string or None."""
        if self._event_log is None:
            return None
        try:
            self._event_log.append(EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
            ))
        except (ValueError, OSError) as e:
            logger.error("event_log_failure", event_kind=kind.value, error=str(e))
            return f"Event log failure: {e}"
        return None

    def _record_anchor(self, batch_id: str, before: AnchorStatus) -> Optional[str]:
        """Record the batch's anchor status if anchor() changed it."""
        status = self._batcher.get_batch(batch_id).anchor_status
        kind = _ANCHOR_EVENT_KINDS.get(status.state)
        if kind is None or status == before:
            return None
        payload: dict[str, Any] = {"batch_id": batch_id}
        payload.update(status.to_dict())
        return self._record(kind, SYSTEM_ACTOR, payload)

    def _record_transaction(
        self, record: CrossChainTransaction, before: Optional[CrossChainTransaction],
    ) -> Optional[str]:
        """Record first sight of a transaction and its move to a settled status."""
        payload = {
            "tx_id": record.id,
            "source_chain_id": record.source_chain_id,
            "tx_hash": record.tx_hash,
            "status": record.status.value,
            "block_height": record.block_height,
            "confirmations": record.confirmations,
        }
        if before is None:
            err = self._record(EventKind.TRANSACTION_TRACKED, SYSTEM_ACTOR, payload)
            if err:
                return err
        if record.is_settled and (before is None or before.status != record.status):
            kind = (
                EventKind.TRANSACTION_CONFIRMED
                if record.status == TxMonitorStatus.CONFIRMED
                else EventKind.TRANSACTION_FAILED
            )
            return self._record(kind, SYSTEM_ACTOR, payload)
        return None

    def _anchor_status_data(self, batch_id: str) -> dict[str, Any]:
        return {"batch_id": batch_id, **self._batcher.get_batch(batch_id).anchor_status.to_dict()}

    def _receipt_data(self, receipt: Receipt) -> dict[str, Any]:
        return {
            "receipt_id": receipt.id,
            "data_fingerprint": receipt.data_fingerprint,
            "created_at": receipt.created_at.isoformat(),
            "state": self._ledger.receipt_state(receipt.id).value,
            "batch_id": self._ledger.receipt_batch(receipt.id),
        }
