"""Client target resolution from mcpServers.json.

    {
      "mcpServers": {
        "local": {"command": "mcp-terminal-server -f policy.json"},
        "remote": {"command": "sse", "sseUrl": "http://127.0.0.1:8000/sse"}
      }
    }
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from mcp_terminal.transport.ports import Transport
from mcp_terminal.transport.registry import SSE_COMMAND, create_transport

log = logging.getLogger("client")

CONFIG_FILENAME = "mcpServers.json"
ROOT_KEY = "mcpServers"


@dataclass(frozen=True)
class ServerEntry:
    name: str
    command: str
    sse_url: str | None = None

    @property
    def is_sse(self) -> bool:
        return self.command == SSE_COMMAND

    def create_transport(self, *, cwd: str | None = None) -> Transport:
        return create_transport(self.command, sse_url=self.sse_url, cwd=cwd)


@dataclass(frozen=True)
class ServersConfig:
    path: Path
    servers: dict

    def get(self, name: str) -> ServerEntry:
        raw = self.servers.get(name)
        if raw is None:
            raise ValueError(f"Server '{name}' not found in {CONFIG_FILENAME}")
        if not isinstance(raw, dict) or not isinstance(raw.get("command"), str):
            raise ValueError(f"Invalid config for server '{name}': \"command\" field must be a string.")
        command = raw["command"]
        sse_url = raw.get("sseUrl")
        if command == SSE_COMMAND and not isinstance(sse_url, str):
            raise ValueError(
                f"Invalid config for SSE server '{name}': \"sseUrl\" field must be a string when command is \"sse\"."
            )
        return ServerEntry(name=name, command=command, sse_url=sse_url if isinstance(sse_url, str) else None)

    def names(self) -> list[str]:
        return sorted(self.servers)


def resolve_config_path(explicit: str | None = None) -> Path:
    """--config path, then MCP_SERVERS_CONFIG, then ./mcpServers.json, then ~/mcpServers.json."""
    if explicit:
        return Path(explicit).expanduser()
    env_path = os.getenv("MCP_SERVERS_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    local = Path.cwd() / CONFIG_FILENAME
    if local.exists():
        return local
    return Path.home() / CONFIG_FILENAME


def load_servers_config(explicit: str | None = None) -> ServersConfig:
    path = resolve_config_path(explicit)
    if not path.exists():
        raise FileNotFoundError(f"Cannot find {CONFIG_FILENAME} at {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get(ROOT_KEY), dict):
        raise ValueError(f'Invalid config format: Missing "{ROOT_KEY}" root key in {path}')
    log.debug(f"Loaded config from {path}")
    return ServersConfig(path=path, servers=data[ROOT_KEY])
