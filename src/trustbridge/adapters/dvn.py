"""DVN (decentralized verifier network) verification client.

Asks a verifier endpoint whether it has verified a LayerZero message:

    GET {endpoint}/verify/{message_hash}

The reply must be a JSON object with a boolean "verified". A reply
that also names a source_chain_id must name the chain that was asked
about. Anything else is a DecodeError; an unreachable endpoint is a
TransportError from the transport.
"""

from __future__ import annotations

import json
import re
from typing import Optional

import structlog

from trustbridge.anchoring.collaborators import HttpRequest, HttpTransport
from trustbridge.errors import DecodeError

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RESPONSE_BYTES = 4096

_MESSAGE_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


class DvnClient:
    """Verification queries against one DVN endpoint."""

    def __init__(
        self,
        transport: HttpTransport,
        endpoint: str,
        max_response_bytes: Optional[int] = DEFAULT_MAX_RESPONSE_BYTES,
    ) -> None:
        if not endpoint:
            raise ValueError("DVN endpoint must not be empty")
        self._transport = transport
        self._endpoint = endpoint.rstrip("/")
        self._max_response_bytes = max_response_bytes

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def verify(self, source_chain_id: int, message_hash: str) -> bool:
        """Whether the DVN reports the message as verified.

        Raises:
            ValueError: message_hash is not a 0x-prefixed 32-byte hex hash.
            TransportError: The endpoint could not be reached.
            DecodeError: The reply is not a verification object for
                this source chain.
        """
        if not _MESSAGE_HASH_RE.match(message_hash):
            raise ValueError(f"Invalid message hash: {message_hash!r}")

        response = await self._transport.request(HttpRequest(
            method="GET",
            url=f"{self._endpoint}/verify/{message_hash}",
            headers={"Accept": "application/json"},
            max_response_bytes=self._max_response_bytes,
        ))
        try:
            data = json.loads(response.body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(f"DVN response is not JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("verified"), bool):
            raise DecodeError(f"DVN response has no boolean 'verified': {data!r}")
        reported_chain = data.get("source_chain_id")
        if reported_chain is not None and reported_chain != source_chain_id:
            raise DecodeError(
                f"DVN answered for source chain {reported_chain}, asked about {source_chain_id}"
            )

        logger.info(
            "dvn_verification",
            source_chain_id=source_chain_id,
            message_hash=message_hash,
            verified=data["verified"],
        )
        return data["verified"]
