"""JSON-RPC 2.0 message shapes and wire codec.

Every frame on either transport decodes to exactly one of `Request`,
`Response` or `Notification`. Payloads the core interprets (the handshake and
tool invocation) have typed views; everything else travels as the raw JSON
value it arrived as.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Union

from mcp_terminal.errors import ProtocolError

JSONRPC_VERSION = "2.0"

PROTOCOL_VERSION = "2024-11-05"
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26")

METHOD_INITIALIZE = "initialize"
METHOD_INITIALIZED = "notifications/initialized"
METHOD_PING = "ping"
METHOD_TOOLS_LIST = "tools/list"
METHOD_TOOLS_CALL = "tools/call"

MessageId = Union[str, int]


@dataclass(frozen=True)
class ErrorObject:
    code: int
    message: str
    data: object | None = None

    def to_dict(self) -> dict:
        out: dict[str, object] = {"code": self.code, "message": self.message}
        if self.data is not None:
            out["data"] = self.data
        return out

    @classmethod
    def from_dict(cls, raw: object) -> "ErrorObject":
        if not isinstance(raw, dict):
            raise ProtocolError("error must be an object", payload_preview=repr(raw)[:200])
        code = raw.get("code")
        if isinstance(code, bool) or not isinstance(code, int):
            raise ProtocolError("error.code must be an integer", payload_preview=repr(raw)[:200])
        message = raw.get("message")
        if not isinstance(message, str):
            message = str(message or "")
        return cls(code=code, message=message, data=raw.get("data"))


@dataclass(frozen=True)
class Request:
    id: MessageId
    method: str
    params: object | None = None

    def to_dict(self) -> dict:
        out: dict[str, object] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
        }
        if self.params is not None:
            out["params"] = self.params
        return out


@dataclass(frozen=True)
class Response:
    id: MessageId | None
    result: object | None = None
    error: ErrorObject | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict:
        out: dict[str, object] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            out["error"] = self.error.to_dict()
        else:
            out["result"] = self.result
        return out


@dataclass(frozen=True)
class Notification:
    method: str
    params: object | None = None

    def to_dict(self) -> dict:
        out: dict[str, object] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            out["params"] = self.params
        return out


Message = Union[Request, Response, Notification]


def _valid_id(value: object) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, (str, int))


def parse_message(obj: object) -> Message:
    """Turn one decoded JSON value into a Message.

    Raises ProtocolError when the value is not a JSON-RPC 2.0 frame.
    """
    if not isinstance(obj, dict):
        raise ProtocolError("frame must be a JSON object", payload_preview=repr(obj)[:200])
    if obj.get("jsonrpc") != JSONRPC_VERSION:
        raise ProtocolError("missing jsonrpc=2.0", payload_preview=repr(obj)[:200])

    method = obj.get("method")
    if method is not None:
        if not isinstance(method, str) or not method:
            raise ProtocolError("method must be a non-empty string", payload_preview=repr(obj)[:200])
        if "id" not in obj:
            return Notification(method=method, params=obj.get("params"))
        msg_id = obj.get("id")
        if not _valid_id(msg_id):
            raise ProtocolError("request id must be a string or integer", payload_preview=repr(obj)[:200])
        return Request(id=msg_id, method=method, params=obj.get("params"))

    if "id" not in obj or ("result" not in obj and "error" not in obj):
        raise ProtocolError("frame is neither request nor response", payload_preview=repr(obj)[:200])

    msg_id = obj.get("id")
    if msg_id is not None and not _valid_id(msg_id):
        raise ProtocolError("response id must be a string, integer or null", payload_preview=repr(obj)[:200])

    # Some peers send `"error": null` alongside a result.
    raw_error = obj.get("error")
    if raw_error is not None:
        return Response(id=msg_id, error=ErrorObject.from_dict(raw_error))
    return Response(id=msg_id, result=obj.get("result"))


def decode_message(data: str | bytes) -> Message:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    try:
        obj = json.loads(data)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid JSON: {e.msg}", payload_preview=data[:200]) from e
    return parse_message(obj)


def encode_message(message: Message) -> str:
    """Compact single-line JSON; safe for newline-delimited framing."""
    return json.dumps(message.to_dict(), separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Typed payload views
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Implementation:
    name: str
    version: str

    def to_dict(self) -> dict:
        return {"name": self.name, "version": self.version}

    @classmethod
    def from_dict(cls, raw: object) -> "Implementation":
        if not isinstance(raw, dict):
            return cls(name="unknown", version="0")
        return cls(name=str(raw.get("name") or "unknown"), version=str(raw.get("version") or "0"))


@dataclass(frozen=True)
class InitializeParams:
    protocol_version: str
    client_info: Implementation
    capabilities: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": self.capabilities,
            "clientInfo": self.client_info.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: object) -> "InitializeParams":
        if not isinstance(raw, dict):
            raise ProtocolError("initialize params must be an object")
        caps = raw.get("capabilities")
        return cls(
            protocol_version=str(raw.get("protocolVersion") or PROTOCOL_VERSION),
            client_info=Implementation.from_dict(raw.get("clientInfo")),
            capabilities=caps if isinstance(caps, dict) else {},
        )


@dataclass(frozen=True)
class InitializeResult:
    protocol_version: str
    server_info: Implementation
    capabilities: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": self.capabilities,
            "serverInfo": self.server_info.to_dict(),
        }

    @classmethod
    def from_dict(cls, raw: object) -> "InitializeResult":
        if not isinstance(raw, dict):
            raise ProtocolError("initialize result must be an object", payload_preview=repr(raw)[:200])
        caps = raw.get("capabilities")
        return cls(
            protocol_version=str(raw.get("protocolVersion") or ""),
            server_info=Implementation.from_dict(raw.get("serverInfo")),
            capabilities=caps if isinstance(caps, dict) else {},
        )


@dataclass(frozen=True)
class ToolCallParams:
    name: str
    arguments: object = None

    def to_dict(self) -> dict:
        return {"name": self.name, "arguments": self.arguments if self.arguments is not None else {}}

    @classmethod
    def from_dict(cls, raw: object) -> "ToolCallParams":
        if not isinstance(raw, dict):
            raise ProtocolError("tools/call params must be an object")
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            raise ProtocolError("tools/call params.name must be a non-empty string")
        return cls(name=name, arguments=raw.get("arguments"))


def typed_params(message: Request | Notification) -> object:
    """Typed view of params for methods the core interprets.

    Unknown methods get their params back untouched.
    """
    if message.method == METHOD_INITIALIZE:
        return InitializeParams.from_dict(message.params)
    if message.method == METHOD_TOOLS_CALL:
        return ToolCallParams.from_dict(message.params)
    return message.params
