"""Append-only audit log — the record of every pipeline state change.

Every issuance, attestation, batch cut and anchor transition produces
an EventRecord, as do tracked source-chain transactions and DVN
verifications. Records are immutable and carry a SHA-256 over their
canonical JSON form (the same canonical form used for settlement
digests). The log may be mirrored to a JSONL file; reopening the file
re-verifies each line and refuses to load a tampered, duplicated or
malformed record.
"""

from __future__ import annotations

import enum
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import structlog

from trustbridge.crypto.fingerprint import canonical_json, ensure_prefix, sha256_hex

logger = structlog.get_logger(__name__)

# Payload keys that name the record an event is about.
SUBJECT_KEYS = ("message_id", "receipt_id", "batch_id", "tx_id")


class EventKind(str, enum.Enum):
    """What happened."""
    MESSAGE_ISSUED = "message_issued"
    ATTESTATION_RECORDED = "attestation_recorded"
    ATTESTATION_DUPLICATE = "attestation_duplicate"
    QUORUM_REACHED = "quorum_reached"
    RECEIPT_ISSUED = "receipt_issued"
    BATCH_CUT = "batch_cut"
    ANCHOR_PENDING = "anchor_pending"
    ANCHOR_SUBMITTED = "anchor_submitted"
    ANCHOR_FAILED = "anchor_failed"
    ANCHOR_CONFIRMED = "anchor_confirmed"
    TRANSACTION_TRACKED = "transaction_tracked"
    TRANSACTION_CONFIRMED = "transaction_confirmed"
    TRANSACTION_FAILED = "transaction_failed"
    DVN_VERIFICATION = "dvn_verification"


@dataclass(frozen=True)
class EventRecord:
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def compute_hash(
        event_id: str,
        event_kind: str,
        timestamp_utc: str,
        actor_id: str,
        payload: dict[str, Any],
    ) -> str:
        return ensure_prefix(sha256_hex(canonical_json({
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        })))

    @classmethod
    def create(
        cls,
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = (timestamp_utc or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        return cls(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts,
            actor_id=actor_id,
            payload=payload,
            event_hash=cls.compute_hash(event_id, event_kind.value, ts, actor_id, payload),
        )

    @property
    def subject_ids(self) -> tuple[str, ...]:
        return tuple(self.payload[k] for k in SUBJECT_KEYS if k in self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventRecord:
        """Rebuild a stored record, recomputing its hash.

        Raises:
            ValueError: Missing fields, unknown kind, or hash mismatch.
        """
        try:
            record = cls(
                event_id=data["event_id"],
                event_kind=EventKind(data["event_kind"]),
                timestamp_utc=data["timestamp_utc"],
                actor_id=data["actor_id"],
                payload=data["payload"],
                event_hash=data["event_hash"],
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed event record: {e!r}") from None
        expected = cls.compute_hash(
            record.event_id,
            record.event_kind.value,
            record.timestamp_utc,
            record.actor_id,
            record.payload,
        )
        if record.event_hash != expected:
            raise ValueError(
                f"Integrity check failed: event {record.event_id} "
                f"stored hash {record.event_hash} != computed {expected}"
            )
        return record


class EventLog:
    """In-memory event list, optionally mirrored to a JSONL file.

    Usage:
        log = EventLog(Path("data/events.jsonl"))
        log.append(EventRecord.create("EVT-00000001", EventKind.BATCH_CUT,
                                      "system", {"batch_id": batch_id}))
        log.events_for(batch_id)
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._ids: set[str] = set()
        self._storage_path = storage_path
        self._lock = threading.Lock()

        if storage_path is not None and storage_path.exists():
            self._load(storage_path)

    def append(self, event: EventRecord) -> None:
        """Raises ValueError on a repeated event_id; OSError if the file write fails."""
        with self._lock:
            if event.event_id in self._ids:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            if self._storage_path is not None:
                with self._storage_path.open("a", encoding="utf-8") as f:
                    f.write(canonical_json(event.to_dict()).decode("utf-8") + "\n")
            self._events.append(event)
            self._ids.add(event.event_id)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        with self._lock:
            return [e for e in self._events if kind is None or e.event_kind == kind]

    def events_for(self, subject_id: str) -> list[EventRecord]:
        """Events about one message, receipt, batch or transaction, oldest first."""
        with self._lock:
            return [e for e in self._events if subject_id in e.subject_ids]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _load(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    record = EventRecord.from_dict(json.loads(line))
                except json.JSONDecodeError as e:
                    raise ValueError(f"Malformed event record (line {line_num}): {e}") from e
                except ValueError as e:
                    raise ValueError(f"{e} (line {line_num})") from e
                if record.event_id in self._ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {record.event_id}"
                    )
                self._events.append(record)
                self._ids.add(record.event_id)
        logger.info("event_log_loaded", path=str(path), events=len(self._events))
