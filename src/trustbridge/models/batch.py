"""Batch record model and the anchor status state machine.

A batch groups every receipt that was pending at the moment it was cut.
Its root fingerprint and member list never change after creation; only
anchor_status moves, and only the anchor orchestrator moves it.

State machine:
    UNANCHORED → ANCHOR_PENDING → ANCHORED
    UNANCHORED → ANCHOR_PENDING → ANCHOR_FAILED
    UNANCHORED → ANCHOR_FAILED            (steps 1-3 failed on first try)
    ANCHOR_PENDING → ANCHOR_PENDING       (another broadcast attempt)
    ANCHOR_FAILED → ANCHOR_PENDING        (manual re-invocation)
    ANCHORED → ANCHORED                   (confirmation height moves up)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from trustbridge.errors import InvalidTransition


class AnchorState(str, enum.Enum):
    """Tag of the anchor_status value."""
    UNANCHORED = "unanchored"
    ANCHOR_PENDING = "anchor_pending"
    ANCHORED = "anchored"
    ANCHOR_FAILED = "anchor_failed"


ANCHOR_TRANSITIONS: Dict[AnchorState, frozenset] = {
    AnchorState.UNANCHORED: frozenset({
        AnchorState.ANCHOR_PENDING,
        AnchorState.ANCHOR_FAILED,
    }),
    AnchorState.ANCHOR_PENDING: frozenset({
        AnchorState.ANCHOR_PENDING,
        AnchorState.ANCHORED,
        AnchorState.ANCHOR_FAILED,
    }),
    AnchorState.ANCHOR_FAILED: frozenset({
        AnchorState.ANCHOR_PENDING,
        AnchorState.ANCHOR_FAILED,
    }),
    AnchorState.ANCHORED: frozenset({AnchorState.ANCHORED}),
}


@dataclass(frozen=True)
class AnchorStatus:
    """Tagged anchor status. Only the fields for the current tag are set."""
    state: AnchorState
    attempt_count: int = 0
    external_tx_ref: Optional[str] = None
    confirmation_height: Optional[int] = None
    final: bool = False
    reason: Optional[str] = None

    @classmethod
    def unanchored(cls) -> AnchorStatus:
        return cls(state=AnchorState.UNANCHORED)

    @classmethod
    def pending(cls, attempt_count: int) -> AnchorStatus:
        return cls(state=AnchorState.ANCHOR_PENDING, attempt_count=attempt_count)

    @classmethod
    def anchored(
        cls,
        external_tx_ref: str,
        confirmation_height: Optional[int],
        final: bool = False,
        attempt_count: int = 0,
    ) -> AnchorStatus:
        return cls(
            state=AnchorState.ANCHORED,
            attempt_count=attempt_count,
            external_tx_ref=external_tx_ref,
            confirmation_height=confirmation_height,
            final=final,
        )

    @classmethod
    def failed(cls, reason: str, attempt_count: int = 0) -> AnchorStatus:
        return cls(
            state=AnchorState.ANCHOR_FAILED,
            attempt_count=attempt_count,
            reason=reason,
        )

    @property
    def is_terminal(self) -> bool:
        """Anchored-and-final or failed: nothing left for a poller to do."""
        if self.state == AnchorState.ANCHOR_FAILED:
            return True
        return self.state == AnchorState.ANCHORED and self.final

    def to_dict(self) -> dict:
        data: dict = {"state": self.state.value}
        if self.state == AnchorState.ANCHOR_PENDING:
            data["attempt_count"] = self.attempt_count
        elif self.state == AnchorState.ANCHORED:
            data["external_tx_ref"] = self.external_tx_ref
            data["confirmation_height"] = self.confirmation_height
            data["final"] = self.final
        elif self.state == AnchorState.ANCHOR_FAILED:
            data["reason"] = self.reason
            data["attempt_count"] = self.attempt_count
        return data


@dataclass
class Batch:
    """An immutable grouping of receipts committed under one root."""
    batch_id: str
    root_fingerprint: str
    member_receipt_ids: tuple[str, ...]
    created_at: datetime
    anchor_status: AnchorStatus = field(default_factory=AnchorStatus.unanchored)

    def transition_to(self, status: AnchorStatus) -> None:
        """Move anchor_status forward, validating the transition is legal.

        Within ANCHORED the confirmation height may only grow and a
        final status may not become provisional again.
        """
        current = self.anchor_status
        allowed = ANCHOR_TRANSITIONS.get(current.state, frozenset())
        if status.state not in allowed:
            raise InvalidTransition(
                f"Invalid anchor transition for {self.batch_id}: "
                f"{current.state.value} → {status.state.value}. "
                f"Allowed: {', '.join(s.value for s in allowed) or 'none'}"
            )
        if current.state == AnchorState.ANCHORED:
            if status.external_tx_ref != current.external_tx_ref:
                raise InvalidTransition(
                    f"{self.batch_id}: anchored tx ref cannot change "
                    f"({current.external_tx_ref} → {status.external_tx_ref})"
                )
            if (
                current.confirmation_height is not None
                and (status.confirmation_height or 0) < current.confirmation_height
            ):
                raise InvalidTransition(
                    f"{self.batch_id}: confirmation height cannot decrease "
                    f"({current.confirmation_height} → {status.confirmation_height})"
                )
            if current.final and not status.final:
                raise InvalidTransition(
                    f"{self.batch_id}: final anchor cannot become provisional"
                )
        self.anchor_status = status
