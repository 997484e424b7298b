"""SSE serving over aiohttp.

GET /sse opens an event stream. Its first event is `endpoint`, carrying the
URL to POST frames to (`/messages?sessionId=...`). Responses come back on the
stream as `message` events. A POST without a sessionId is answered on every
open stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid

from aiohttp import web

from mcp_terminal.errors import INVALID_REQUEST, PARSE_ERROR, ProtocolError
from mcp_terminal.protocol import ErrorObject, Message, Response, encode_message, parse_message
from mcp_terminal.server.dispatcher import ToolDispatcher
from mcp_terminal.transport.sse import ENDPOINT_EVENT, MESSAGE_EVENT, encode_sse_event

log = logging.getLogger("transport.sse")

KEEPALIVE_S = 15.0


class _StreamHub:
    def __init__(self) -> None:
        self.streams: dict[str, asyncio.Queue] = {}

    def open(self) -> tuple[str, asyncio.Queue]:
        session_id = uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue()
        self.streams[session_id] = queue
        return session_id, queue

    def close(self, session_id: str) -> None:
        self.streams.pop(session_id, None)

    def publish(self, session_id: str | None, payload: bytes) -> None:
        if session_id is None:
            targets = list(self.streams.values())
        else:
            queue = self.streams.get(session_id)
            targets = [queue] if queue is not None else []
        if not targets:
            log.warning(f"No open stream for session {session_id!r}; dropping response")
        for queue in targets:
            queue.put_nowait(payload)

    def shutdown(self) -> None:
        for queue in self.streams.values():
            queue.put_nowait(None)


def _error_reply(code: int, message: str) -> web.Response:
    # The frame had no usable id, so the error goes back on the POST itself.
    body = Response(id=None, error=ErrorObject(code=code, message=message)).to_dict()
    return web.json_response(body, status=400)


def build_app(dispatcher: ToolDispatcher, *, keepalive_s: float = KEEPALIVE_S) -> web.Application:
    app = web.Application()
    hub = _StreamHub()
    tasks: set[asyncio.Task] = set()

    async def handle_sse(request: web.Request) -> web.StreamResponse:
        session_id, queue = hub.open()
        resp = web.StreamResponse(
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            }
        )
        await resp.prepare(request)
        log.info(f"SSE stream opened: {session_id} from {request.remote}")
        try:
            await resp.write(encode_sse_event(ENDPOINT_EVENT, f"/messages?sessionId={session_id}"))
            while True:
                try:
                    payload = await asyncio.wait_for(queue.get(), timeout=keepalive_s)
                except asyncio.TimeoutError:
                    await resp.write(b": keepalive\n\n")
                    continue
                if payload is None:
                    break
                await resp.write(payload)
        except ConnectionResetError:
            log.info(f"SSE stream dropped: {session_id}")
        finally:
            hub.close(session_id)
        log.info(f"SSE stream closed: {session_id}")
        return resp

    async def answer(message: Message, session_id: str | None) -> None:
        response = await dispatcher.handle(message)
        if response is not None:
            hub.publish(session_id, encode_sse_event(MESSAGE_EVENT, encode_message(response)))

    async def handle_post(request: web.Request) -> web.Response:
        session_id = request.query.get("sessionId")
        if session_id is not None and session_id not in hub.streams:
            raise web.HTTPNotFound(text="Unknown session")

        body = await request.read()
        try:
            payload = json.loads(body)
        except ValueError as e:
            log.debug(f"Rejecting unparseable POST: {e}")
            return _error_reply(PARSE_ERROR, f"Parse error: {e}")
        try:
            message = parse_message(payload)
        except ProtocolError as e:
            log.debug(f"Rejecting malformed POST: {e}")
            return _error_reply(INVALID_REQUEST, str(e))

        task = asyncio.create_task(answer(message, session_id))
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return web.Response(status=202, text="Accepted")

    async def on_shutdown(app: web.Application) -> None:
        hub.shutdown()
        if tasks:
            await asyncio.gather(*list(tasks), return_exceptions=True)

    app.router.add_get("/sse", handle_sse)
    app.router.add_post("/messages", handle_post)
    app.on_shutdown.append(on_shutdown)
    return app


async def start_sse_server(
    dispatcher: ToolDispatcher,
    *,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> tuple[web.AppRunner, str, int]:
    """Start the SSE endpoint. Port 0 picks a free port; the bound one is returned."""
    app = build_app(dispatcher)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=host, port=port)
    await site.start()

    bound = port
    for addr in runner.addresses:
        if isinstance(addr, tuple) and len(addr) >= 2:
            bound = addr[1]
            break
    log.info(f"SSE server listening on http://{host}:{bound}/sse")
    return runner, host, bound
