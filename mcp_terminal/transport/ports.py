"""Ports (interfaces) for transports.

The session layer and the server loop depend on this contract rather than
on concrete pipe/SSE implementations.
"""

from __future__ import annotations

from typing import Callable, Protocol

from mcp_terminal.protocol import Message

# Invoked once per fully-parsed inbound Message, on the event loop thread.
MessageCallback = Callable[[Message], None]

# Invoked at most once when the peer goes away (EOF, stream end). Receives a reason.
DisconnectCallback = Callable[[str], None]


class Transport(Protocol):
    """A duplex Message channel."""

    async def start(self) -> None:
        ...

    async def send(self, message: Message) -> None:
        """Write one frame. Raises TransportError on write failure."""
        ...

    def on_message(self, callback: MessageCallback) -> None:
        """Register the single inbound-message callback (replaces any previous one)."""
        ...

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        ...

    async def close(self) -> None:
        """Release resources. Safe to call more than once."""
        ...
