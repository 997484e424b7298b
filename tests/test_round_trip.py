import asyncio
import json
import sys
from pathlib import Path

import aiohttp
from aiohttp import web

from mcp_terminal.errors import SessionClosedError
from mcp_terminal.protocol import Response
from mcp_terminal.server.dispatcher import TOOL_NAME, ToolDispatcher
from mcp_terminal.server.http import start_sse_server
from mcp_terminal.session import HandshakeState, RpcSession
from mcp_terminal.shell.exec import ExecutionEngine
from mcp_terminal.shell.policy import PolicyConfig, PolicyStore
from mcp_terminal.transport import PipeTransport, SseTransport

ROOT_DIR = Path(__file__).resolve().parents[1]

CALL = {
    "name": TOOL_NAME,
    "arguments": {
        "command": "echo round-trip",
        "explanation": "round trip test",
        "is_background": False,
        "require_user_approval": False,
    },
}


async def _exercise(session):
    info = await asyncio.wait_for(session.perform_handshake("round-trip", "1.0"), 10)
    tools = await asyncio.wait_for(session.call("tools/list"), 10)
    result = await asyncio.wait_for(session.call("tools/call", CALL), 10)
    ping = await asyncio.wait_for(session.call("ping"), 10)
    return info, tools, result, ping, session.handshake_state


def _check(info, tools, result, ping, state):
    assert info.server_info.name == "mcp-terminal-server"
    assert state == HandshakeState.COMPLETED
    assert [t["name"] for t in tools["tools"]] == [TOOL_NAME]
    assert json.loads(result["content"][0]["text"]) == {"stdout": "round-trip\n", "stderr": "", "exitCode": 0}
    assert ping == {}


def _pipe_round_trip():
    async def scenario():
        transport = PipeTransport([sys.executable, "-m", "mcp_terminal.server"], cwd=str(ROOT_DIR))
        async with RpcSession(transport) as session:
            return await _exercise(session)

    return asyncio.run(scenario())


def _sse_round_trip():
    async def scenario():
        dispatcher = ToolDispatcher(ExecutionEngine(PolicyStore(PolicyConfig())))
        runner, host, port = await start_sse_server(dispatcher, host="127.0.0.1", port=0)
        try:
            transport = SseTransport(f"http://{host}:{port}/sse")
            async with RpcSession(transport) as session:
                outcome = await _exercise(session)
                announced = transport.post_url
        finally:
            await runner.cleanup()
        return outcome, announced, dispatcher.initialized

    return asyncio.run(scenario())


def test_pipe_round_trip():
    _check(*_pipe_round_trip())


def test_sse_round_trip():
    outcome, announced, initialized = _sse_round_trip()
    _check(*outcome)
    assert "/messages?sessionId=" in announced
    assert initialized is True


def test_both_transports_deliver_identical_results():
    pipe = _pipe_round_trip()
    sse, _, _ = _sse_round_trip()
    # Tool results and handshake views decode to the same structures either way.
    assert pipe[0] == sse[0]
    assert pipe[1:4] == sse[1:4]
    assert Response(id=1, result=pipe[2]) == Response(id=1, result=sse[2])


def test_sse_post_rejects_bad_frames():
    async def scenario():
        dispatcher = ToolDispatcher(ExecutionEngine(PolicyStore(PolicyConfig())))
        runner, host, port = await start_sse_server(dispatcher, host="127.0.0.1", port=0)
        base = f"http://{host}:{port}"
        try:
            async with aiohttp.ClientSession() as http:
                async with http.post(f"{base}/messages", data=b"{nope") as resp:
                    garbage = (resp.status, await resp.json())
                async with http.post(f"{base}/messages", json={"jsonrpc": "2.0", "id": 1}) as resp:
                    not_a_frame = (resp.status, await resp.json())
                async with http.post(f"{base}/messages?sessionId=unknown", json={"jsonrpc": "2.0", "method": "ping", "id": 1}) as resp:
                    unknown_session = resp.status
        finally:
            await runner.cleanup()
        return garbage, not_a_frame, unknown_session

    garbage, not_a_frame, unknown_session = asyncio.run(scenario())
    assert garbage[0] == 400 and garbage[1]["error"]["code"] == -32700
    assert not_a_frame[0] == 400 and not_a_frame[1]["error"]["code"] == -32600
    assert unknown_session == 404


def test_sse_close_while_waiting_for_endpoint_posts_nothing():
    posts = []

    async def silent_stream(request):
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        try:
            while True:
                await resp.write(b": idle\n\n")
                await asyncio.sleep(0.05)
        except ConnectionResetError:
            pass
        return resp

    async def record_post(request):
        posts.append(await request.read())
        return web.Response(status=202)

    async def scenario():
        app = web.Application()
        app.router.add_get("/sse", silent_stream)
        app.router.add_post("/messages", record_post)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, host="127.0.0.1", port=0)
        await site.start()
        port = runner.addresses[0][1]
        try:
            transport = SseTransport(f"http://127.0.0.1:{port}/sse")
            session = RpcSession(transport)
            await session.start()
            call = asyncio.create_task(session.call("tools/list"))
            await asyncio.sleep(0.2)
            await session.close()
            outcome = await asyncio.gather(call, return_exceptions=True)
            await asyncio.sleep(0.1)
            leftover = transport._client_session
        finally:
            await runner.cleanup()
        return outcome[0], leftover

    outcome, leftover = asyncio.run(scenario())
    assert isinstance(outcome, SessionClosedError)
    assert leftover is None
    assert posts == []
