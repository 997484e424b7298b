import json

import pytest

from mcp_terminal.errors import ProtocolError, RemoteError, SessionClosedError
from mcp_terminal.protocol import (
    ErrorObject,
    InitializeParams,
    Notification,
    Request,
    Response,
    ToolCallParams,
    decode_message,
    encode_message,
    parse_message,
    typed_params,
)


def test_request_with_id_and_method():
    msg = decode_message('{"jsonrpc":"2.0","id":3,"method":"tools/list"}')
    assert msg == Request(id=3, method="tools/list", params=None)


def test_method_without_id_is_notification():
    msg = decode_message('{"jsonrpc":"2.0","method":"notifications/initialized","params":{}}')
    assert isinstance(msg, Notification)
    assert msg.params == {}


def test_error_wins_over_result():
    msg = parse_message(
        {"jsonrpc": "2.0", "id": "x", "result": {"ok": True}, "error": {"code": -32601, "message": "nope"}}
    )
    assert isinstance(msg, Response)
    assert msg.is_error
    assert msg.error == ErrorObject(code=-32601, message="nope")


def test_null_error_is_ignored():
    msg = parse_message({"jsonrpc": "2.0", "id": 1, "result": [], "error": None})
    assert msg == Response(id=1, result=[])


def test_response_with_null_id_is_accepted():
    msg = parse_message({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "parse"}})
    assert msg.id is None


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2]",
        '{"id":1,"method":"ping"}',
        '{"jsonrpc":"1.0","id":1,"method":"ping"}',
        '{"jsonrpc":"2.0","id":true,"method":"ping"}',
        '{"jsonrpc":"2.0","id":1}',
        '{"jsonrpc":"2.0","method":""}',
    ],
)
def test_malformed_frames_raise(raw):
    with pytest.raises(ProtocolError):
        decode_message(raw)


def test_encode_is_single_line():
    msg = Request(id="abc", method="tools/call", params={"name": "t", "arguments": {"command": "echo a\nb"}})
    text = encode_message(msg)
    assert "\n" not in text
    assert json.loads(text) == {
        "jsonrpc": "2.0",
        "id": "abc",
        "method": "tools/call",
        "params": {"name": "t", "arguments": {"command": "echo a\nb"}},
    }
    assert decode_message(text) == msg


def test_typed_params_for_known_methods():
    init = Request(
        id=1,
        method="initialize",
        params={"protocolVersion": "2024-11-05", "clientInfo": {"name": "c", "version": "1"}, "capabilities": {}},
    )
    parsed = typed_params(init)
    assert isinstance(parsed, InitializeParams)
    assert parsed.client_info.name == "c"

    call = Request(id=2, method="tools/call", params={"name": "t", "arguments": {"a": 1}})
    assert typed_params(call) == ToolCallParams(name="t", arguments={"a": 1})


def test_typed_params_passes_unknown_methods_through():
    raw = {"anything": [1, 2, 3]}
    assert typed_params(Notification(method="custom/thing", params=raw)) is raw


def test_remote_error_formatting():
    assert str(RemoteError(-32601, "Method not found")) == "RPC Error: Method not found (Code: -32601)"
    closed = SessionClosedError()
    assert isinstance(closed, RemoteError)
    assert closed.message == "connection closed"
