"""Byte-level duplex channels for JSON-RPC frames."""

from mcp_terminal.transport.ports import DisconnectCallback, MessageCallback, Transport
from mcp_terminal.transport.registry import create_transport
from mcp_terminal.transport.sse import SseDecoder, SseEvent, SseTransport
from mcp_terminal.transport.subprocess_transport import LineBuffer, PipeTransport

__all__ = [
    "DisconnectCallback",
    "LineBuffer",
    "MessageCallback",
    "PipeTransport",
    "SseDecoder",
    "SseEvent",
    "SseTransport",
    "Transport",
    "create_transport",
]
