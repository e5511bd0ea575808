"""JSON-over-HTTP(S) client for the language server's Connect-RPC endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

log = logging.getLogger(__name__)

SERVICE_PATH = "/exa.language_server_pb.LanguageServerService"
DEFAULT_TIMEOUT = 10.0
MAX_RESPONSE_BYTES = 50 * 1024 * 1024
CLIENT_METADATA = {"ideName": "antigravity", "extensionName": "antigravity"}


class RpcError(Exception):
    """Base class for language server RPC failures."""


class RpcTransportError(RpcError):
    """Connection failure, timeout, or an aborted transfer."""


class RpcCancelledError(RpcTransportError):
    """The shared cancellation signal fired before the call completed."""


class RpcCapacityError(RpcTransportError):
    """The response body exceeded the configured size cap."""


class RpcStatusError(RpcError):
    """The server answered with a non-2xx status."""

    def __init__(self, endpoint: str, status_code: int, body: str = "") -> None:
        super().__init__(f"{endpoint}: HTTP {status_code}: {body}")
        self.status_code = status_code


class RpcProtocolError(RpcError):
    """The response body was not a JSON object."""


@dataclass(frozen=True)
class LanguageServerInfo:
    pid: int
    csrf_token: str
    port: int
    use_tls: bool

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_tls else "http"
        return f"{scheme}://127.0.0.1:{self.port}"


def metadata_payload(**extra: Any) -> dict[str, Any]:
    return {"metadata": dict(CLIENT_METADATA, **extra)}


class RpcClient:
    """Issues POST calls against one language server endpoint.

    The server uses a self-signed certificate, so TLS verification is off.
    When *cancel* is given, every call races it and raises
    :class:`RpcCancelledError` once it is set.
    """

    def __init__(
        self,
        ls: LanguageServerInfo,
        *,
        http: httpx.AsyncClient | None = None,
        cancel: asyncio.Event | None = None,
        max_response_bytes: int = MAX_RESPONSE_BYTES,
    ) -> None:
        self.ls = ls
        self._http = http or httpx.AsyncClient(verify=False)
        self._owns_http = http is None
        self._cancel = cancel
        self._max_response_bytes = max_response_bytes

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> RpcClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def call(
        self,
        endpoint: str,
        payload: dict[str, Any],
        timeout: float = DEFAULT_TIMEOUT,
    ) -> dict[str, Any]:
        if self._cancel is None:
            return await self._post(endpoint, payload, timeout)
        if self._cancel.is_set():
            raise RpcCancelledError(f"{endpoint}: cancelled")

        request = asyncio.ensure_future(self._post(endpoint, payload, timeout))
        waiter = asyncio.ensure_future(self._cancel.wait())
        try:
            await asyncio.wait({request, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not request.done():
                request.cancel()
                await asyncio.gather(request, return_exceptions=True)
        if request.cancelled():
            raise RpcCancelledError(f"{endpoint}: cancelled")
        return request.result()

    async def _post(self, endpoint: str, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
        url = f"{self.ls.base_url}{SERVICE_PATH}/{endpoint}"
        headers = {
            "Content-Type": "application/json",
            "Connect-Protocol-Version": "1",
            "x-codeium-csrf-token": self.ls.csrf_token,
        }
        body = bytearray()
        try:
            async with self._http.stream(
                "POST", url, content=json.dumps(payload), headers=headers, timeout=timeout,
            ) as resp:
                async for chunk in resp.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > self._max_response_bytes:
                        raise RpcCapacityError(
                            f"{endpoint}: response exceeded {self._max_response_bytes} bytes"
                        )
                status = resp.status_code
        except httpx.TimeoutException as e:
            raise RpcTransportError(f"{endpoint}: timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise RpcTransportError(f"{endpoint}: {e}") from e

        text = body.decode("utf-8", errors="replace")
        if not 200 <= status < 300:
            raise RpcStatusError(endpoint, status, text[:200])
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise RpcProtocolError(f"{endpoint}: unparsable response: {text[:200]}") from e
        if not isinstance(data, dict):
            raise RpcProtocolError(f"{endpoint}: expected a JSON object, got {type(data).__name__}")
        return data
