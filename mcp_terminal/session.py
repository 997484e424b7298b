"""RpcSession.

This is the single place that owns:
- correlation ids and the pending-call map
- the initialize/initialized handshake
- close-time cancellation of everything still outstanding

It depends only on the Transport port, not on pipes or HTTP.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Callable

from mcp_terminal import __version__
from mcp_terminal.errors import (
    METHOD_NOT_FOUND,
    McpTerminalError,
    RemoteError,
    SessionClosedError,
)
from mcp_terminal.protocol import (
    METHOD_INITIALIZE,
    METHOD_INITIALIZED,
    METHOD_PING,
    PROTOCOL_VERSION,
    ErrorObject,
    Implementation,
    InitializeParams,
    InitializeResult,
    Message,
    Notification,
    Request,
    Response,
)
from mcp_terminal.protocol.messages import MessageId
from mcp_terminal.transport.ports import Transport

log = logging.getLogger("session")

# Reserved for the handshake; never produced by the ordinary id factory.
HANDSHAKE_ID = "client-initialize-handshake"


class HandshakeState(str, Enum):
    NOT_STARTED = "not_started"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


def _uuid_id() -> str:
    return str(uuid.uuid4())


def _consume_exception(fut: asyncio.Future) -> None:
    # Waiters may all have been cancelled; keep asyncio from logging
    # "exception was never retrieved" for the shared handshake future.
    if not fut.cancelled():
        fut.exception()


class RpcSession:
    """Client side of one JSON-RPC connection.

    Responses may arrive in any order; correlation by id is the only ordering
    contract.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        id_factory: Callable[[], MessageId] | None = None,
    ):
        self._transport = transport
        self._id_factory = id_factory or _uuid_id
        self._pending: dict[MessageId, asyncio.Future[Response]] = {}
        self._handshake_state = HandshakeState.NOT_STARTED
        self._handshake_future: asyncio.Future[InitializeResult] | None = None
        self._handshake_result: InitializeResult | None = None
        self._initialized_sent = False
        self._initialized_lock = asyncio.Lock()
        self._closed = False
        self._tasks: set[asyncio.Task] = set()

        transport.on_message(self._handle)
        transport.on_disconnect(self._handle_disconnect)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def handshake_state(self) -> HandshakeState:
        return self._handshake_state

    @property
    def server_info(self) -> Implementation | None:
        if self._handshake_result is None:
            return None
        return self._handshake_result.server_info

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def start(self) -> None:
        await self._transport.start()

    async def __aenter__(self) -> "RpcSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def perform_handshake(
        self,
        client_name: str = "mcp-terminal-client",
        client_version: str = __version__,
    ) -> InitializeResult:
        """Run initialize/initialized once.

        Concurrent or repeated calls share one outcome. After a remote error
        the state drops back so a later attempt can retry.
        """
        if self._closed:
            raise SessionClosedError()
        if self._handshake_state == HandshakeState.COMPLETED and self._handshake_result is not None:
            await self._send_initialized()
            return self._handshake_result

        fut = self._handshake_future
        if fut is None:
            fut = asyncio.get_running_loop().create_future()
            fut.add_done_callback(_consume_exception)
            self._handshake_future = fut
            self._handshake_state = HandshakeState.IN_FLIGHT

            params = InitializeParams(
                protocol_version=PROTOCOL_VERSION,
                client_info=Implementation(name=client_name, version=client_version),
                capabilities={"experimental": {}},
            )
            request = Request(id=HANDSHAKE_ID, method=METHOD_INITIALIZE, params=params.to_dict())
            log.info(f"Handshake: initialize as {client_name} {client_version}")
            try:
                await self._transport.send(request)
            except McpTerminalError as e:
                self._fail_handshake(SessionClosedError() if self._closed else e)

        result = await asyncio.shield(fut)
        await self._send_initialized()
        return result

    async def _send_initialized(self) -> None:
        # Marked sent only once the notification is out, so a failed send is
        # retried by the next perform_handshake().
        async with self._initialized_lock:
            if self._initialized_sent or self._closed:
                return
            await self.notify(METHOD_INITIALIZED, {})
            self._initialized_sent = True

    async def call(self, method: str, params: object | None = None) -> object:
        """Send a Request and wait for its Response's result.

        Raises RemoteError when the Response carries an error, and
        SessionClosedError when the session closes first.
        """
        if self._closed:
            raise SessionClosedError()

        msg_id = self._id_factory()
        if msg_id == HANDSHAKE_ID:
            raise ValueError(f"id {msg_id!r} is reserved for the handshake")
        if msg_id in self._pending:
            raise ValueError(f"id {msg_id!r} is already pending")

        fut: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = fut
        try:
            try:
                await self._transport.send(Request(id=msg_id, method=method, params=params))
            except McpTerminalError as e:
                if not self._closed:
                    raise
                # close() ran while the frame was going out; its error wins.
                if fut.done() and not fut.cancelled():
                    raise fut.exception() from e
                raise SessionClosedError() from e
            response = await fut
        finally:
            self._pending.pop(msg_id, None)

        if response.error is not None:
            raise RemoteError(response.error.code, response.error.message, response.error.data)
        return response.result

    async def notify(self, method: str, params: object | None = None) -> None:
        """Fire-and-forget; notifications never enter the pending map."""
        if self._closed:
            raise SessionClosedError()
        await self._transport.send(Notification(method=method, params=params))

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _handle(self, message: Message) -> None:
        if self._closed:
            return

        if isinstance(message, Response):
            self._handle_response(message)
        elif isinstance(message, Request):
            self._spawn(self._answer_server_request(message))
        else:
            log.debug(f"Ignoring notification {message.method}")

    def _handle_response(self, response: Response) -> None:
        if response.id == HANDSHAKE_ID:
            self._resolve_handshake(response)
            return

        fut = self._pending.pop(response.id, None) if response.id is not None else None
        if fut is None:
            # Late, duplicate, or never ours.
            log.debug(f"Discarding response with unknown id {response.id!r}")
            return
        if not fut.done():
            fut.set_result(response)

    def _resolve_handshake(self, response: Response) -> None:
        fut = self._handshake_future
        if fut is None or fut.done() or self._handshake_state != HandshakeState.IN_FLIGHT:
            log.debug("Discarding handshake response with no handshake in flight")
            return

        if response.error is not None:
            err = response.error
            self._fail_handshake(
                RemoteError(err.code, f"Initialize failed: {err.message}", err.data)
            )
            return

        try:
            result = InitializeResult.from_dict(response.result)
        except McpTerminalError as e:
            self._fail_handshake(e)
            return

        self._handshake_result = result
        self._handshake_state = HandshakeState.COMPLETED
        log.info(
            f"Handshake complete: {result.server_info.name} {result.server_info.version} "
            f"(protocol {result.protocol_version})"
        )
        fut.set_result(result)

    def _fail_handshake(self, error: Exception) -> None:
        fut = self._handshake_future
        self._handshake_future = None
        self._handshake_state = HandshakeState.FAILED
        log.warning(f"Handshake failed: {error}")
        if fut is not None and not fut.done():
            fut.set_exception(error)

    async def _answer_server_request(self, request: Request) -> None:
        if request.method == METHOD_PING:
            response = Response(id=request.id, result={})
        else:
            response = Response(
                id=request.id,
                error=ErrorObject(METHOD_NOT_FOUND, f"Method not found: {request.method}"),
            )
        try:
            await self._transport.send(response)
        except McpTerminalError as e:
            log.debug(f"Could not answer server request {request.method}: {e}")

    def _handle_disconnect(self, reason: str) -> None:
        if self._closed:
            return
        log.warning(f"Transport disconnected: {reason}")
        self._spawn(self.close())

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the transport and fail everything still outstanding."""
        if self._closed:
            return
        self._closed = True

        try:
            await self._transport.close()
        except Exception as e:
            log.error(f"Error closing transport: {e}")

        pending = list(self._pending.items())
        self._pending.clear()
        for msg_id, fut in pending:
            if not fut.done():
                fut.set_exception(SessionClosedError())
        if pending:
            log.info(f"Cancelled {len(pending)} pending call(s) on close")

        fut = self._handshake_future
        if fut is not None and not fut.done():
            self._handshake_future = None
            self._handshake_state = HandshakeState.FAILED
            fut.set_exception(SessionClosedError())
