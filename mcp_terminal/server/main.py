"""mcp-terminal-server entry point.

Serves the command tool over stdio (default) or SSE. The policy file is
re-read on SIGHUP; SIGINT/SIGTERM shut down cleanly.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Iterable

from mcp_terminal import __version__
from mcp_terminal.server.channels import StdioServerChannel, ToolServer
from mcp_terminal.server.config import TRANSPORTS, ServerConfig
from mcp_terminal.server.dispatcher import ToolDispatcher
from mcp_terminal.server.http import start_sse_server
from mcp_terminal.shell.config import reload_policy
from mcp_terminal.shell.exec import ExecutionEngine
from mcp_terminal.shell.policy import PolicyConfig, PolicyStore
from mcp_terminal.utils import configure_logging, load_env

log = logging.getLogger("server")


def _parse_args(argv: Iterable[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mcp-terminal-server",
        description="Serve a policy-gated shell command tool over JSON-RPC",
    )
    parser.add_argument("-f", "--file", dest="policy_file", help="Policy JSON file (autorun_mode)")
    parser.add_argument("--transport", choices=TRANSPORTS, help="stdio (default) or sse")
    parser.add_argument("--host", help="SSE bind host (default 127.0.0.1)")
    parser.add_argument("--port", type=int, help="SSE bind port (default 8000)")
    parser.add_argument("--timeout", type=float, dest="exec_timeout_s", help="Foreground command timeout in seconds")
    parser.add_argument("--cwd", help="Working directory for commands")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(list(argv))


def build_dispatcher(config: ServerConfig) -> tuple[ToolDispatcher, PolicyStore]:
    store = PolicyStore(PolicyConfig())
    policy_file = config.resolve_policy_file()
    if policy_file:
        reload_policy(store, policy_file)
    else:
        log.warning("No policy file given; autorun mode is off and the denylist is empty")
    engine = ExecutionEngine(
        store,
        timeout_s=config.resolve_exec_timeout_s(),
        max_output_bytes=config.resolve_max_output_bytes(),
        cwd=config.resolve_cwd(),
    )
    return ToolDispatcher(engine), store


async def serve(config: ServerConfig) -> None:
    dispatcher, store = build_dispatcher(config)
    transport = config.resolve_transport()
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    policy_file = config.resolve_policy_file()
    if policy_file:
        loop.add_signal_handler(signal.SIGHUP, reload_policy, store, policy_file)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    if transport == "sse":
        runner, _, _ = await start_sse_server(
            dispatcher, host=config.resolve_host(), port=config.resolve_port()
        )
        try:
            await stop.wait()
        finally:
            log.info("Shutting down...")
            await runner.cleanup()
        return

    server = ToolServer(StdioServerChannel(), dispatcher)
    log.info(f"mcp-terminal-server {__version__} serving on stdio")
    stopper = asyncio.create_task(stop.wait())
    stopper.add_done_callback(lambda _: server.stop())
    try:
        await server.serve()
    finally:
        stopper.cancel()
    log.info("Shutting down...")


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    load_env()
    configure_logging(args.verbose)
    config = ServerConfig(
        policy_file=args.policy_file,
        transport=args.transport,
        host=args.host,
        port=args.port,
        exec_timeout_s=args.exec_timeout_s,
        cwd=args.cwd,
    )
    try:
        config.resolve_transport()
    except ValueError as e:
        log.error(str(e))
        return 2

    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        log.info("Shutting down...")
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
