import logging
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from ..errors import (
    AuthenticationError,
    ConnectionEstablishmentError,
    ServerError,
    StreamAbortedError,
)
from ..logs import get_logger, log_event
from .base import ChatTransport, TransportHandle

logger = get_logger("coach_stream.transport.http")

MAX_ERROR_BODY_BYTES = 1024


def _interrupted(e: Exception) -> StreamAbortedError:
    return StreamAbortedError(f"stream interrupted by peer ({type(e).__name__}: {e})", origin="transport")


class HttpxHandle(TransportHandle):
    def __init__(self, response: httpx.Response, client: Optional[httpx.AsyncClient]):
        self._response = response
        self._client = client
        self._aborted = False
        self.status_code = response.status_code

    @property
    def aborted(self) -> bool:
        return self._aborted

    def iter_bytes(self) -> AsyncIterator[bytes]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                if chunk:
                    yield chunk
        except (httpx.ReadError, httpx.RemoteProtocolError) as e:
            raise _interrupted(e) from e

    async def read(self) -> bytes:
        try:
            return await self._response.aread()
        except (httpx.ReadError, httpx.RemoteProtocolError) as e:
            raise _interrupted(e) from e

    async def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        try:
            await self._response.aclose()
        finally:
            if self._client is not None:
                await self._client.aclose()


class HttpxTransport(ChatTransport):
    """POSTs the turn to the coaching backend and exposes the streamed body.

    A short-lived AsyncClient is created per exchange to ensure proper
    cleanup. Only the connect step carries an httpx timeout; the session's
    phase budgets bound everything after it.
    """

    transport_name: str = "http"

    def __init__(
        self,
        endpoint_url: str,
        connect_timeout: float = 10.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint_url = endpoint_url
        self._connect_timeout = connect_timeout
        self._http_transport = http_transport

    def _new_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(None, connect=self._connect_timeout)
        if self._http_transport is not None:
            return httpx.AsyncClient(timeout=timeout, transport=self._http_transport)
        return httpx.AsyncClient(timeout=timeout)

    async def open(self, payload: Dict[str, Any], headers: Dict[str, str]) -> TransportHandle:
        client = self._new_client()
        request = client.build_request("POST", self.endpoint_url, headers=headers, json=payload)
        try:
            resp = await client.send(request, stream=True)
        except httpx.TransportError as e:
            await client.aclose()
            raise ConnectionEstablishmentError(f"network error while connecting: {type(e).__name__}: {e}") from e
        except BaseException:
            await client.aclose()
            raise

        handle = HttpxHandle(resp, client)
        if resp.status_code >= 400:
            try:
                raw = await resp.aread()
            except httpx.TransportError:
                raw = b""
            finally:
                await handle.abort()
            body = raw[:MAX_ERROR_BODY_BYTES].decode(errors="replace")
            log_event(
                logger,
                logging.ERROR,
                "backend_http_error",
                status=resp.status_code,
                body=body,
                traceId=headers.get("X-Request-Id"),
            )
            if resp.status_code in (401, 403):
                raise AuthenticationError(f"Not authenticated ({resp.status_code}) - please sign in again", status_code=resp.status_code)
            raise ServerError(resp.status_code, body)
        return handle
