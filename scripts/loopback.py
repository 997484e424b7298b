#!/usr/bin/env python3
"""Loopback test for the terminal server.

Spawns `mcp-terminal-server` over a pipe, performs the handshake, runs one
command through the tool and prints the outcome to stdout.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Iterable

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from mcp_terminal.errors import McpTerminalError
from mcp_terminal.protocol import METHOD_TOOLS_CALL, METHOD_TOOLS_LIST
from mcp_terminal.server.dispatcher import TOOL_NAME
from mcp_terminal.session import RpcSession
from mcp_terminal.transport import PipeTransport
from mcp_terminal.utils import configure_logging, load_env


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="mcp-terminal loopback test")
    parser.add_argument("command", nargs="?", default="echo loopback-ok")
    parser.add_argument("--policy", help="Policy file passed to the server with -f")
    parser.add_argument("--approve", action="store_true", help="Send require_user_approval=true")
    parser.add_argument("--background", action="store_true")
    parser.add_argument("--timeout", type=float, default=12)
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(list(argv))


async def _run(args: argparse.Namespace) -> int:
    argv = [sys.executable, "-m", "mcp_terminal.server"]
    if args.policy:
        argv += ["-f", args.policy]
    if args.verbose:
        argv.append("--verbose")

    async with RpcSession(PipeTransport(argv, cwd=str(ROOT_DIR))) as session:
        info = await asyncio.wait_for(session.perform_handshake("mcp-terminal-loopback"), args.timeout)
        print(f"[server] {info.server_info.name} {info.server_info.version} ({info.protocol_version})")

        tools = await asyncio.wait_for(session.call(METHOD_TOOLS_LIST), args.timeout)
        names = [t.get("name") for t in (tools or {}).get("tools", [])]
        print(f"[tools] {', '.join(names) or '(none)'}")

        result = await asyncio.wait_for(
            session.call(
                METHOD_TOOLS_CALL,
                {
                    "name": TOOL_NAME,
                    "arguments": {
                        "command": args.command,
                        "explanation": "loopback test",
                        "is_background": args.background,
                        "require_user_approval": args.approve,
                    },
                },
            ),
            args.timeout,
        )
    print(json.dumps(result, indent=2, ensure_ascii=False))
    return 1 if isinstance(result, dict) and result.get("isError") else 0


def main(argv: Iterable[str]) -> int:
    args = _parse_args(argv)
    configure_logging(args.verbose)
    load_env()
    try:
        return asyncio.run(_run(args))
    except (McpTerminalError, asyncio.TimeoutError) as e:
        print(f"Loopback failed: {str(e) or type(e).__name__}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
