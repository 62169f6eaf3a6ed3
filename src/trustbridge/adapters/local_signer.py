"""Local secp256k1 signer for development and tests.

Stands in for a remote custody signer (threshold ECDSA or an HSM).
Each key_id maps to a master private key. A derivation path yields a
child key: HMAC-SHA256(master, "/"-joined path). This is a
deterministic key-per-path scheme, not BIP-32.

Never use this with keys that guard real funds.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Mapping, Sequence

from eth_account import Account
from eth_keys import keys
from eth_keys.exceptions import BadSignature, ValidationError as EthKeysValidationError

from trustbridge.errors import SigningError
from trustbridge.models.settlement import DerivedKey

# secp256k1 group order
_CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


def _key_bytes(private_key: str | bytes) -> bytes:
    if isinstance(private_key, bytes):
        return private_key
    return bytes.fromhex(private_key.removeprefix("0x"))


class LocalKeySigner:
    """SigningService backed by eth_account.

    Usage:
        signer = LocalKeySigner({"anchor_key_1": os.getenv("PRIVATE_KEY")})
    """

    def __init__(self, master_keys: Mapping[str, str | bytes]) -> None:
        self._master_keys = {k: _key_bytes(v) for k, v in master_keys.items()}
        for key_id, key in self._master_keys.items():
            if len(key) != 32:
                raise ValueError(f"Key {key_id} must be 32 bytes, got {len(key)}")

    @classmethod
    def generate(cls, key_id: str = "anchor_key_1") -> LocalKeySigner:
        """Signer with one fresh random key."""
        return cls({key_id: bytes(Account.create().key)})

    def _child_key(self, key_id: str, derivation_path: Sequence[bytes]) -> bytes:
        master = self._master_keys.get(key_id)
        if master is None:
            raise SigningError(f"Unknown key id: {key_id}")
        if not derivation_path:
            return master
        child = hmac.new(master, b"/".join(derivation_path), hashlib.sha256).digest()
        if not 0 < int.from_bytes(child, "big") < _CURVE_ORDER:
            raise SigningError(f"Derivation path yields an invalid key for {key_id}")
        return child

    async def derive_public_key(
        self, key_id: str, derivation_path: Sequence[bytes],
    ) -> DerivedKey:
        child = self._child_key(key_id, derivation_path)
        private_key = keys.PrivateKey(child)
        return DerivedKey(
            public_key=private_key.public_key.to_compressed_bytes(),
            address=private_key.public_key.to_checksum_address(),
            derivation_path=tuple(derivation_path),
        )

    async def sign(
        self, key_id: str, derivation_path: Sequence[bytes], digest: bytes,
    ) -> bytes:
        """65-byte r || s || v signature over a 32-byte digest."""
        if len(digest) != 32:
            raise SigningError(f"Digest must be 32 bytes, got {len(digest)}")
        child = self._child_key(key_id, derivation_path)
        signed = Account.unsafe_sign_hash(digest, child)
        return bytes(signed.signature)


def recover_address(digest: bytes, signature: bytes) -> str:
    """Checksum address that produced signature over digest.

    Raises:
        SigningError: Signature is not a valid 65-byte recoverable signature.
    """
    if len(signature) != 65:
        raise SigningError(f"Signature must be 65 bytes, got {len(signature)}")
    v = signature[64]
    if v >= 27:
        v -= 27
    try:
        sig = keys.Signature(signature_bytes=signature[:64] + bytes([v]))
        return sig.recover_public_key_from_msg_hash(digest).to_checksum_address()
    except (BadSignature, EthKeysValidationError, ValueError) as e:
        raise SigningError(f"Invalid signature: {e}") from e
