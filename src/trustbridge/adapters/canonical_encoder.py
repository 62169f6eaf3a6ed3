"""Chain-neutral transaction encoder.

Serializes a signed settlement transaction as canonical JSON. Useful
for tests, for simulated chains and for archiving exactly what was
signed. A real Bitcoin or EVM deployment supplies an encoder that
produces the chain's wire format instead.
"""

from __future__ import annotations

import json

from trustbridge.crypto.fingerprint import canonical_json
from trustbridge.errors import DecodeError
from trustbridge.models.settlement import UnsignedSettlementTx


class CanonicalJsonEncoder:
    """TransactionEncoder producing sorted-key compact JSON bytes."""

    def encode(
        self,
        unsigned: UnsignedSettlementTx,
        signature: bytes,
        public_key: bytes,
    ) -> bytes:
        return canonical_json({
            "tx": unsigned.to_canonical(),
            "signature": signature.hex(),
            "public_key": public_key.hex(),
        })

    @staticmethod
    def decode(raw: bytes) -> dict:
        """Inverse of encode(), for inspection. Raises DecodeError."""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(f"Not a canonical settlement transaction: {e}") from e
        if not isinstance(data, dict) or not {"tx", "signature", "public_key"} <= set(data):
            raise DecodeError("Canonical settlement transaction is missing fields")
        return data
