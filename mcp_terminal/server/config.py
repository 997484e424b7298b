"""Server configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass

from mcp_terminal.shell.exec import EXEC_TIMEOUT_S, MAX_OUTPUT_BYTES

TRANSPORTS = ("stdio", "sse")


@dataclass(frozen=True)
class ServerConfig:
    # Explicit values (CLI flags) win; otherwise env defaults apply.
    policy_file: str | None = None
    transport: str | None = None
    host: str | None = None
    port: int | None = None
    exec_timeout_s: float | None = None
    max_output_bytes: int | None = None
    cwd: str | None = None

    def resolve_policy_file(self) -> str | None:
        return self.policy_file or os.getenv("MCP_TERMINAL_CONFIG") or None

    def resolve_transport(self) -> str:
        transport = (self.transport or os.getenv("MCP_TERMINAL_TRANSPORT") or "stdio").strip().lower()
        if transport not in TRANSPORTS:
            raise ValueError(f"Unknown transport {transport!r}; expected one of {', '.join(TRANSPORTS)}")
        return transport

    def resolve_host(self) -> str:
        return self.host or os.getenv("MCP_TERMINAL_HOST", "127.0.0.1")

    def resolve_port(self) -> int:
        if self.port is not None:
            return self.port
        return int(os.getenv("MCP_TERMINAL_PORT", "8000"))

    def resolve_exec_timeout_s(self) -> float:
        if self.exec_timeout_s is not None:
            return self.exec_timeout_s
        return float(os.getenv("MCP_TERMINAL_EXEC_TIMEOUT_S", str(EXEC_TIMEOUT_S)))

    def resolve_max_output_bytes(self) -> int:
        if self.max_output_bytes is not None:
            return self.max_output_bytes
        return int(os.getenv("MCP_TERMINAL_MAX_OUTPUT_BYTES", str(MAX_OUTPUT_BYTES)))

    def resolve_cwd(self) -> str | None:
        return self.cwd or os.getenv("MCP_TERMINAL_CWD") or None
