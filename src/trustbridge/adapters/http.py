"""httpx-backed HttpTransport.

Response bodies are streamed and cut off at max_response_bytes so a
misbehaving endpoint cannot exhaust memory. Every failure mode that
means "the request did not complete" becomes a TransportError:
connection and timeout errors, oversized bodies and non-2xx statuses.
"""

from __future__ import annotations

from typing import Optional

import httpx
import structlog

from trustbridge.anchoring.collaborators import HttpRequest, HttpResponse, ResponseTransform
from trustbridge.errors import TransportError

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RESPONSE_BYTES = 2_000_000


class HttpxTransport:
    """HttpTransport over an httpx.AsyncClient.

    Pass a client to share a connection pool (or an httpx.MockTransport
    in tests); otherwise the transport owns one and aclose() closes it.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._max_response_bytes = max_response_bytes

    async def request(
        self,
        request: HttpRequest,
        transform: Optional[ResponseTransform] = None,
    ) -> HttpResponse:
        limit = request.max_response_bytes or self._max_response_bytes
        try:
            async with self._client.stream(
                request.method,
                request.url,
                headers=request.headers,
                content=request.body,
            ) as resp:
                body = bytearray()
                async for chunk in resp.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > limit:
                        raise TransportError(
                            f"{request.method} {request.url}: response exceeds {limit} bytes",
                            status_code=resp.status_code,
                        )
                response = HttpResponse(
                    status=resp.status_code,
                    headers=dict(resp.headers),
                    body=bytes(body),
                )
        except httpx.HTTPError as e:
            logger.warning("http_request_failed", method=request.method, url=request.url, error=str(e))
            raise TransportError(f"{request.method} {request.url}: {e}") from e

        if not 200 <= response.status < 300:
            logger.warning(
                "http_status_error",
                method=request.method,
                url=request.url,
                status=response.status,
            )
            raise TransportError(
                f"{request.method} {request.url}: HTTP {response.status}: "
                f"{response.body[:200].decode('utf-8', errors='replace')}",
                status_code=response.status,
            )

        if transform is not None:
            response = transform(response)
        return response

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def strip_headers(response: HttpResponse) -> HttpResponse:
    """Transform that drops headers, leaving only status and body.

    Useful when several replicas must observe byte-identical responses.
    """
    return HttpResponse(status=response.status, headers={}, body=response.body)
