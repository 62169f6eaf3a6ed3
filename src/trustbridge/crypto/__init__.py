"""Cryptographic primitives — batch root fold and canonical digests."""

from trustbridge.crypto.fingerprint import (
    canonical_digest,
    ensure_prefix,
    fold_root,
    raw_digest,
)

__all__ = ["canonical_digest", "ensure_prefix", "fold_root", "raw_digest"]
