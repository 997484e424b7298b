"""Transport registry.

Maps a transport descriptor (a spawn command line, or the literal `sse` plus a
base URL) to a concrete transport. Callers should depend on the `Transport`
port.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mcp_terminal.transport.ports import Transport

SSE_COMMAND = "sse"


def create_transport(
    command: str,
    *,
    sse_url: str | None = None,
    cwd: str | None = None,
) -> Transport:
    command = (command or "").strip()

    if command.lower() == SSE_COMMAND:
        if not sse_url:
            raise ValueError("sseUrl missing for SSE transport")
        from mcp_terminal.transport.sse import SseTransport

        return SseTransport(sse_url)

    if not command:
        raise ValueError("command field is empty for stdio server")

    from mcp_terminal.transport.subprocess_transport import PipeTransport

    return PipeTransport(command, cwd=cwd)
