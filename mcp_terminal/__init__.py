"""JSON-RPC session layer and policy-gated shell command server."""

__version__ = "1.0.0"

from mcp_terminal.errors import RemoteError, SessionClosedError, TransportError  # noqa: E402
from mcp_terminal.session import HandshakeState, RpcSession  # noqa: E402

__all__ = [
    "HandshakeState",
    "RemoteError",
    "RpcSession",
    "SessionClosedError",
    "TransportError",
    "__version__",
]
