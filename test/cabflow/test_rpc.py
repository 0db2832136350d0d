import asyncio

import httpx
import pytest

from cabflow.errors import RpcError, TransportError
from cabflow.rpc import JsonRpcClient, bytes_from_hex, int_from_quantity


def _client(handler) -> JsonRpcClient:
    return JsonRpcClient("http://rpc.test", transport=httpx.MockTransport(handler))


def test_call_returns_result_and_sends_jsonrpc_envelope():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = request.read()
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": "0x1"})

    result = asyncio.run(_client(handler).call("eth_chainId", []))

    assert result == "0x1"
    assert b'"method":"eth_chainId"' in seen["body"].replace(b" ", b"")


def test_error_member_raises_rpc_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad params", "data": {"x": 1}}},
        )

    with pytest.raises(RpcError) as excinfo:
        asyncio.run(_client(handler).call("eth_call", []))

    assert excinfo.value.code == -32602
    assert excinfo.value.data == {"x": 1}


def test_http_failure_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    with pytest.raises(TransportError) as excinfo:
        asyncio.run(_client(handler).call("eth_call", []))

    assert excinfo.value.code == 503
    assert excinfo.value.url == "http://rpc.test"


def test_connection_failure_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError):
        asyncio.run(_client(handler).call("eth_call", []))


def test_non_json_body_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(TransportError):
        asyncio.run(_client(handler).call("eth_call", []))


def test_construction_performs_no_io():
    def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not run
        raise AssertionError("no request expected")

    client = _client(handler)
    assert client.url == "http://rpc.test"


@pytest.mark.parametrize(
    "raw, expected",
    [(None, 0), ("", 0), ("0x2a", 42), ("42", 42), (7, 7), (7.9, 7), ("junk", 0)],
)
def test_int_from_quantity(raw, expected):
    assert int_from_quantity(raw) == expected


def test_bytes_from_hex():
    assert bytes_from_hex("0x") == b""
    assert bytes_from_hex(None) == b""
    assert bytes_from_hex("0x0a0b") == b"\x0a\x0b"
    assert bytes_from_hex(b"\x01") == b"\x01"
