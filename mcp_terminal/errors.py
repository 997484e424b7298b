"""mcp-terminal exceptions.

These exception types let the session layer and the CLIs format failures
consistently without scraping strings.
"""

from __future__ import annotations

# JSON-RPC 2.0 error codes used on the wire.
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
CONNECTION_CLOSED = -32000


class McpTerminalError(RuntimeError):
    """Base class for session/transport errors."""


class TransportError(McpTerminalError):
    """I/O failure while sending or receiving frames."""

    def __init__(self, message: str, *, detail: str | None = None):
        self.message = message
        self.detail = detail
        super().__init__(self.__str__())

    def __str__(self) -> str:
        detail = (self.detail or "").strip()
        if detail:
            return f"Transport error: {self.message}: {detail}"
        return f"Transport error: {self.message}"


class ProtocolError(McpTerminalError):
    """Malformed/invalid frame from the peer."""

    def __init__(self, message: str, *, payload_preview: str | None = None):
        self.message = message
        self.payload_preview = payload_preview
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.payload_preview:
            return f"Protocol error: {self.message} (payload={self.payload_preview!r})"
        return f"Protocol error: {self.message}"


class RemoteError(McpTerminalError):
    """A Response that carried an error object."""

    def __init__(self, code: int, message: str, data: object | None = None):
        self.code = int(code)
        self.message = message
        self.data = data
        super().__init__(self.__str__())

    def __str__(self) -> str:
        return f"RPC Error: {self.message} (Code: {self.code})"


class SessionClosedError(RemoteError):
    """Synthesized for every call still outstanding when the session closes."""

    def __init__(self, message: str = "connection closed"):
        super().__init__(CONNECTION_CLOSED, message)


class InvalidArgumentsError(ValueError):
    """Tool arguments failed validation."""

    def __init__(self, issues: list[str]):
        self.issues = list(issues)
        super().__init__("; ".join(self.issues) or "invalid arguments")
