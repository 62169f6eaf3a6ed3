"""Fingerprints — batch root fold and canonical digests.

Uses SHA-256 throughout. A batch root is a fold of the hash function
over the ordered member receipt ids, each preceded by its UTF-8 byte
length as a 4-byte big-endian integer:

    sha256(len(id_1) || id_1 || len(id_2) || id_2 || ... )

The length prefix keeps the fold injective: ["ab", "c"] and ["a", "bc"]
hash differently. Unlike a sorted Merkle tree, insertion order is
significant, so the same ids in a different order produce a different
root.

Fingerprints are rendered with a "sha256:" prefix. The raw 32 bytes
(prefix stripped) are what ends up embedded on the settlement chain.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable

PREFIX = "sha256:"


def fold_root(member_ids: Iterable[str]) -> str:
    """Compute the batch root over ordered member ids.

    Pure and deterministic: depends only on the ids and their order.
    """
    hasher = hashlib.sha256()
    for member_id in member_ids:
        encoded = member_id.encode("utf-8")
        hasher.update(len(encoded).to_bytes(4, "big"))
        hasher.update(encoded)
    return ensure_prefix(hasher.hexdigest())


def sha256_hex(data: bytes) -> str:
    """Compute SHA-256 hex digest."""
    return hashlib.sha256(data).hexdigest()


def canonical_digest(obj: Any) -> bytes:
    """SHA-256 over the canonical JSON form of obj.

    Canonical form: sorted keys, compact separators, Unicode preserved,
    UTF-8 encoded. Same structure in, same 32 bytes out.
    """
    return hashlib.sha256(canonical_json(obj)).digest()


def canonical_json(obj: Any) -> bytes:
    return json.dumps(
        obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"),
    ).encode("utf-8")


def ensure_prefix(hash_val: str) -> str:
    """Ensure sha256: prefix on a hash string."""
    if hash_val.startswith(PREFIX):
        return hash_val
    return f"{PREFIX}{hash_val}"


def raw_digest(fingerprint: str) -> bytes:
    """Return the 32 raw bytes behind a prefixed fingerprint.

    Raises ValueError if the value is not a 64-char hex SHA-256 digest.
    """
    hex_part = fingerprint.removeprefix(PREFIX)
    if len(hex_part) != 64:
        raise ValueError(f"Not a SHA-256 fingerprint: {fingerprint!r}")
    return bytes.fromhex(hex_part)
