"""Server side: method dispatch plus the stdio and SSE front ends."""

from mcp_terminal.server.channels import StdioServerChannel, ToolServer
from mcp_terminal.server.config import ServerConfig
from mcp_terminal.server.dispatcher import TOOL_NAME, ToolDispatcher, outcome_to_tool_result

__all__ = [
    "TOOL_NAME",
    "ServerConfig",
    "StdioServerChannel",
    "ToolDispatcher",
    "ToolServer",
    "outcome_to_tool_result",
]
