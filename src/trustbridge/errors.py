"""Error taxonomy for the evidence pipeline.

Terminal errors (reported to the caller, never retried automatically):
    NotFound, InsufficientFunds, SigningError, InvalidTransition,
    AnchorError.

Transient errors (retried by the poll scheduler up to a bound):
    TransportError — raised only by the HTTP/broadcast layer.

DecodeError is raised when a collaborator returns a malformed response.
The affected call fails; no placeholder value is ever substituted.

"Empty" is not an error: Batcher.cut_batch() returns None when there
is nothing pending.
"""

from __future__ import annotations

from typing import Optional


class TrustBridgeError(Exception):
    """Base class for all pipeline errors."""


class NotFound(TrustBridgeError):
    """Raised when an id does not resolve to a known record."""

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class InsufficientFunds(TrustBridgeError):
    """Custody inputs cannot cover the estimated settlement fee."""

    def __init__(self, total_input: int, estimated_fee: int) -> None:
        super().__init__(
            f"Insufficient funds: inputs total {total_input} sat, "
            f"estimated fee is {estimated_fee} sat"
        )
        self.total_input = total_input
        self.estimated_fee = estimated_fee


class TransportError(TrustBridgeError):
    """HTTP or broadcast layer failure. Transient; eligible for retry."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SigningError(TrustBridgeError):
    """Signing service unavailable or key not usable. Not retried."""


class DecodeError(TrustBridgeError):
    """A collaborator returned a response that could not be parsed."""


class InvalidTransition(TrustBridgeError):
    """An anchor status change would move a batch backwards."""


class AnchorError(TrustBridgeError):
    """A collaborator failed in a way none of the errors above describe.

    The original exception is chained as __cause__. The batch is
    ANCHOR_FAILED and is not retried automatically.
    """
