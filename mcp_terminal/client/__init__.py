"""Client side: server target resolution and the command-line caller."""

from mcp_terminal.client.config import ServerEntry, ServersConfig, load_servers_config, resolve_config_path

__all__ = ["ServerEntry", "ServersConfig", "load_servers_config", "resolve_config_path"]
