"""mempool.space / Blockstream Esplora REST client.

Implements BroadcastService, ChainQuery and CustodySource for a
Bitcoin settlement chain. Both services expose the same API shape, so
the same client works against either base URL:

    https://mempool.space/api            https://blockstream.info/api
    https://mempool.space/testnet/api    https://blockstream.info/testnet/api

Endpoints used:
    POST /tx                    broadcast raw hex, returns txid
    GET  /tx/{txid}             full transaction
    GET  /tx/{txid}/status      {confirmed, block_height, ...}
    GET  /blocks/tip/height     current height as text
    GET  /address/{a}/utxo      [{txid, vout, value, status}, ...]
    GET  /v1/fees/recommended   {fastestFee, halfHourFee, hourFee, ...}
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Optional

import structlog

from trustbridge.anchoring.collaborators import HttpRequest, HttpTransport
from trustbridge.errors import DecodeError
from trustbridge.models.settlement import CustodyInput, TxStatus

logger = structlog.get_logger(__name__)

MAINNET_URL = "https://mempool.space/api"
TESTNET_URL = "https://mempool.space/testnet/api"

FEE_TARGETS = ("fastestFee", "halfHourFee", "hourFee", "economyFee", "minimumFee")

_TXID_RE = re.compile(r"^[0-9a-f]{64}$")


class MempoolClient:
    """Esplora-style REST client over an HttpTransport."""

    def __init__(
        self,
        transport: HttpTransport,
        base_url: str = MAINNET_URL,
        fee_target: str = "halfHourFee",
        max_response_bytes: Optional[int] = None,
        confirmed_inputs_only: bool = False,
    ) -> None:
        if fee_target not in FEE_TARGETS:
            raise ValueError(f"Unknown fee target {fee_target!r}, expected one of {FEE_TARGETS}")
        self._transport = transport
        self._base_url = base_url.rstrip("/")
        self._fee_target = fee_target
        self._max_response_bytes = max_response_bytes
        self._confirmed_only = confirmed_inputs_only

    # ------------------------------------------------------------------
    # BroadcastService
    # ------------------------------------------------------------------

    async def submit(self, raw_transaction: bytes) -> str:
        body = await self._call(
            "POST", "/tx",
            body=raw_transaction.hex().encode("ascii"),
            headers={"Content-Type": "text/plain"},
        )
        txid = body.decode("utf-8", errors="replace").strip()
        if not _TXID_RE.match(txid):
            raise DecodeError(f"Broadcast returned an invalid txid: {txid[:80]!r}")
        logger.info("mempool_broadcast", txid=txid)
        return txid

    async def query_status(self, external_tx_ref: str) -> TxStatus:
        data = self._json(await self._call("GET", f"/tx/{external_tx_ref}/status"))
        if not isinstance(data, dict) or not isinstance(data.get("confirmed"), bool):
            raise DecodeError(f"Malformed status for {external_tx_ref}: {data!r}")
        height = data.get("block_height")
        if height is not None and not isinstance(height, int):
            raise DecodeError(f"Malformed block_height for {external_tx_ref}: {height!r}")
        return TxStatus(confirmed=data["confirmed"], block_height=height)

    # ------------------------------------------------------------------
    # ChainQuery
    # ------------------------------------------------------------------

    async def tip_height(self) -> int:
        text = (await self._call("GET", "/blocks/tip/height")).decode("utf-8", errors="replace")
        try:
            return int(text.strip())
        except ValueError:
            raise DecodeError(f"Malformed tip height: {text[:80]!r}") from None

    async def get_transaction(self, external_tx_ref: str) -> dict[str, Any]:
        data = self._json(await self._call("GET", f"/tx/{external_tx_ref}"))
        if not isinstance(data, dict) or "txid" not in data:
            raise DecodeError(f"Malformed transaction for {external_tx_ref}")
        return data

    async def confirmations(self, external_tx_ref: str) -> int:
        """Block depth of a transaction; 0 while unconfirmed."""
        status = await self.query_status(external_tx_ref)
        if not status.confirmed or status.block_height is None:
            return 0
        return await self.tip_height() - status.block_height + 1

    # ------------------------------------------------------------------
    # CustodySource
    # ------------------------------------------------------------------

    async def list_inputs(self, address: str) -> list[CustodyInput]:
        data = self._json(await self._call("GET", f"/address/{address}/utxo"))
        if not isinstance(data, list):
            raise DecodeError(f"Malformed UTXO list for {address}")
        inputs = []
        for entry in data:
            try:
                if self._confirmed_only and not entry["status"]["confirmed"]:
                    continue
                inputs.append(CustodyInput(
                    txid=str(entry["txid"]),
                    vout=int(entry["vout"]),
                    amount=int(entry["value"]),
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise DecodeError(f"Malformed UTXO entry for {address}: {e}") from e
        return inputs

    async def fee_rate(self) -> int:
        """Recommended sat/vB for the configured target, rounded up."""
        data = self._json(await self._call("GET", "/v1/fees/recommended"))
        try:
            value = data[self._fee_target]
        except (KeyError, TypeError) as e:
            raise DecodeError(f"Malformed fee recommendation: missing {e}") from e
        if (
            isinstance(value, bool)
            or not isinstance(value, (int, float))
            or not math.isfinite(value)
            or value < 0
        ):
            raise DecodeError(f"Malformed fee recommendation: {value!r}")
        return math.ceil(value)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        path: str,
        body: Optional[bytes] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> bytes:
        response = await self._transport.request(HttpRequest(
            method=method,
            url=f"{self._base_url}{path}",
            headers=headers or {},
            body=body,
            max_response_bytes=self._max_response_bytes,
        ))
        return response.body

    @staticmethod
    def _json(body: bytes) -> Any:
        try:
            return json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise DecodeError(f"Response is not JSON: {e}") from e
