"""Anchoring: settlement transaction building and the anchor orchestrator."""

from trustbridge.anchoring.collaborators import (
    BroadcastService,
    ChainQuery,
    CustodySource,
    HttpRequest,
    HttpResponse,
    HttpTransport,
    ResponseTransform,
    SigningService,
    TransactionEncoder,
)
from trustbridge.anchoring.orchestrator import (
    DEFAULT_CONFIRMATION_DEPTH,
    DEFAULT_KEY_ID,
    DEFAULT_MAX_ANCHOR_ATTEMPTS,
    AnchorOrchestrator,
)
from trustbridge.anchoring.settlement import (
    DEFAULT_TX_VBYTES,
    build_settlement_tx,
    estimate_fee,
    settlement_digest,
)

__all__ = [
    "AnchorOrchestrator",
    "BroadcastService",
    "ChainQuery",
    "CustodySource",
    "DEFAULT_CONFIRMATION_DEPTH",
    "DEFAULT_KEY_ID",
    "DEFAULT_MAX_ANCHOR_ATTEMPTS",
    "DEFAULT_TX_VBYTES",
    "HttpRequest",
    "HttpResponse",
    "HttpTransport",
    "ResponseTransform",
    "SigningService",
    "TransactionEncoder",
    "build_settlement_tx",
    "estimate_fee",
    "settlement_digest",
]
