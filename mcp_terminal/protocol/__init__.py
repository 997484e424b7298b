"""JSON-RPC message model."""

from mcp_terminal.protocol.messages import (
    METHOD_INITIALIZE,
    METHOD_INITIALIZED,
    METHOD_PING,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_LIST,
    PROTOCOL_VERSION,
    ErrorObject,
    Implementation,
    InitializeParams,
    InitializeResult,
    Message,
    Notification,
    Request,
    Response,
    ToolCallParams,
    decode_message,
    encode_message,
    parse_message,
    typed_params,
)

__all__ = [
    "METHOD_INITIALIZE",
    "METHOD_INITIALIZED",
    "METHOD_PING",
    "METHOD_TOOLS_CALL",
    "METHOD_TOOLS_LIST",
    "PROTOCOL_VERSION",
    "ErrorObject",
    "Implementation",
    "InitializeParams",
    "InitializeResult",
    "Message",
    "Notification",
    "Request",
    "Response",
    "ToolCallParams",
    "decode_message",
    "encode_message",
    "parse_message",
    "typed_params",
]
