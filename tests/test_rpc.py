"""Tests for the language server RPC client (httpx.MockTransport)."""

import asyncio
import json

import httpx
import pytest

from ctxmon.rpc import (
    SERVICE_PATH,
    LanguageServerInfo,
    RpcCancelledError,
    RpcCapacityError,
    RpcClient,
    RpcProtocolError,
    RpcStatusError,
    RpcTransportError,
    metadata_payload,
)

LS = LanguageServerInfo(pid=42, csrf_token="tok-123", port=5555, use_tls=False)


def _client(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RpcClient(LS, http=http, **kwargs), http


class TestLanguageServerInfo:

    def test_base_url(self):
        assert LS.base_url == "http://127.0.0.1:5555"
        tls = LanguageServerInfo(pid=1, csrf_token="t", port=443, use_tls=True)
        assert tls.base_url == "https://127.0.0.1:443"


class TestRpcClient:

    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        client, http = _client(handler)
        result = await client.call("GetAllCascadeTrajectories", metadata_payload())
        await http.aclose()

        assert result == {"ok": True}
        assert seen["method"] == "POST"
        assert seen["path"] == f"{SERVICE_PATH}/GetAllCascadeTrajectories"
        assert seen["headers"]["x-codeium-csrf-token"] == "tok-123"
        assert seen["headers"]["connect-protocol-version"] == "1"
        assert seen["headers"]["content-type"] == "application/json"
        assert "metadata" in seen["body"]

    @pytest.mark.asyncio
    async def test_non_2xx_is_status_error(self):
        client, http = _client(lambda request: httpx.Response(503, text="busy"))
        with pytest.raises(RpcStatusError) as exc_info:
            await client.call("GetCascadeTrajectorySteps", {})
        await http.aclose()
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_bad_json_is_protocol_error(self):
        client, http = _client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(RpcProtocolError):
            await client.call("X", {})
        await http.aclose()

    @pytest.mark.asyncio
    async def test_non_object_json_is_protocol_error(self):
        client, http = _client(lambda request: httpx.Response(200, json=[1, 2]))
        with pytest.raises(RpcProtocolError):
            await client.call("X", {})
        await http.aclose()

    @pytest.mark.asyncio
    async def test_oversized_body_is_capacity_error(self):
        client, http = _client(
            lambda request: httpx.Response(200, content=b"x" * 100),
            max_response_bytes=10,
        )
        with pytest.raises(RpcCapacityError):
            await client.call("X", {})
        await http.aclose()

    @pytest.mark.asyncio
    async def test_capacity_error_is_transport_class(self):
        assert issubclass(RpcCapacityError, RpcTransportError)
        assert issubclass(RpcCancelledError, RpcTransportError)

    @pytest.mark.asyncio
    async def test_connect_failure_is_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client, http = _client(handler)
        with pytest.raises(RpcTransportError):
            await client.call("X", {})
        await http.aclose()

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client, http = _client(handler)
        with pytest.raises(RpcTransportError, match="timed out"):
            await client.call("X", {}, timeout=0.5)
        await http.aclose()

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()
        client, http = _client(lambda request: httpx.Response(200, json={}), cancel=cancel)
        with pytest.raises(RpcCancelledError):
            await client.call("X", {})
        await http.aclose()

    @pytest.mark.asyncio
    async def test_cancel_aborts_in_flight_call(self):
        cancel = asyncio.Event()

        async def handler(request):
            await asyncio.sleep(3600)
            return httpx.Response(200, json={})

        client, http = _client(handler, cancel=cancel)

        async def fire():
            await asyncio.sleep(0)
            cancel.set()

        asyncio.ensure_future(fire())
        with pytest.raises(RpcCancelledError):
            await client.call("X", {})
        await http.aclose()

    @pytest.mark.asyncio
    async def test_context_manager_closes_owned_client(self):
        async with RpcClient(LS) as client:
            assert client.ls is LS
        assert client._http.is_closed
