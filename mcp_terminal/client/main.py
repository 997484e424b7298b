"""mcp-terminal: call one tool (or raw method) on a configured server."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Iterable

from mcp_terminal import __version__
from mcp_terminal.client.config import load_servers_config
from mcp_terminal.errors import McpTerminalError
from mcp_terminal.protocol import METHOD_TOOLS_CALL
from mcp_terminal.session import RpcSession
from mcp_terminal.utils import configure_logging, load_env

log = logging.getLogger("client")

CLIENT_NAME = "mcp-terminal-client"


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mcp-terminal",
        usage="%(prog)s <server> <tool_name> [json_arguments]",
        description="Call a tool on a server listed in mcpServers.json",
    )
    parser.add_argument("server", help="server name from mcpServers.json")
    parser.add_argument("tool_name", help="tool to call, or a raw method such as tools/list")
    parser.add_argument("json_arguments", nargs="?", help="JSON object with the tool arguments")
    parser.add_argument("--config", help="path to mcpServers.json")
    parser.add_argument("--timeout", type=float, default=60.0, help="overall timeout in seconds")
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(list(argv))


def build_call(tool_name: str, arguments: object) -> tuple[str, object]:
    """A name containing "/" is sent as a method of its own; anything else goes through tools/call."""
    if "/" in tool_name:
        return tool_name, arguments if arguments != {} else None
    return METHOD_TOOLS_CALL, {"name": tool_name, "arguments": arguments}


async def run(entry, method: str, params: object, timeout_s: float) -> object:
    async with RpcSession(entry.create_transport()) as session:
        info = await asyncio.wait_for(
            session.perform_handshake(CLIENT_NAME, __version__), timeout=timeout_s
        )
        log.info(f"Connected to {info.server_info.name} {info.server_info.version}")
        return await asyncio.wait_for(session.call(method, params), timeout=timeout_s)


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    load_env()
    configure_logging(args.verbose)

    try:
        entry = load_servers_config(args.config).get(args.server)
    except (OSError, ValueError) as e:
        print(f"Failed to load mcpServers.json: {e}", file=sys.stderr)
        return 1

    arguments: object = {}
    if args.json_arguments:
        try:
            arguments = json.loads(args.json_arguments)
        except json.JSONDecodeError as e:
            print(f"Error: Failed to parse JSON arguments: {e}", file=sys.stderr)
            print(f"Provided arguments string: {args.json_arguments}", file=sys.stderr)
            return 1

    method, params = build_call(args.tool_name, arguments)
    try:
        result = asyncio.run(run(entry, method, params, args.timeout))
    except (McpTerminalError, asyncio.TimeoutError, ValueError) as e:
        print(f"Error during execution for server '{args.server}': {str(e) or type(e).__name__}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130

    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
