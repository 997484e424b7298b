"""Stdio serving: frames in on our stdin, responses out on our stdout."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import BinaryIO

from mcp_terminal.errors import TransportError
from mcp_terminal.protocol import Message, encode_message
from mcp_terminal.server.dispatcher import ToolDispatcher
from mcp_terminal.transport.ports import DisconnectCallback, MessageCallback, Transport
from mcp_terminal.transport.subprocess_transport import LineBuffer, dispatch_line

log = logging.getLogger("server")


class StdioServerChannel:
    """Server end of the pipe transport.

    Reads newline-delimited frames from `stdin` and writes them to `stdout`.
    Nothing else may write to `stdout` while the channel is open.
    """

    def __init__(self, stdin: BinaryIO | None = None, stdout: BinaryIO | None = None):
        self._stdin = stdin if stdin is not None else sys.stdin.buffer
        self._stdout = stdout if stdout is not None else sys.stdout.buffer
        self._callback: MessageCallback | None = None
        self._on_disconnect: DisconnectCallback | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._write_lock = asyncio.Lock()
        self._closed = False

    def on_message(self, callback: MessageCallback) -> None:
        self._callback = callback

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        self._on_disconnect = callback

    async def start(self) -> None:
        if self._reader_task is not None:
            return
        await self._open_writer()
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        try:
            await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), self._stdin)
        except ValueError:
            # Regular files cannot be registered with the selector.
            log.debug("stdin is not a pipe; reading it in a worker thread")
            self._reader_task = asyncio.create_task(self._read_blocking())
            return
        self._reader_task = asyncio.create_task(self._read_loop(reader))

    async def _open_writer(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, self._stdout)
        except ValueError:
            log.debug("stdout is not a pipe; writing it in a worker thread")
            return
        self._writer = asyncio.StreamWriter(transport, protocol, None, loop)

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        lines = LineBuffer()
        reason = "stdin closed"
        try:
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    break
                for line in lines.feed(chunk):
                    dispatch_line(line, self._callback, log)
            if lines.pending.strip():
                dispatch_line(lines.pending, self._callback, log)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"stdin read failed: {type(e).__name__}: {e}"
            log.warning(reason)
        self._disconnected(reason)

    async def _read_blocking(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, self._stdin.readline)
            if not line:
                break
            dispatch_line(line.rstrip(b"\r\n"), self._callback, log)
        self._disconnected("stdin closed")

    def _disconnected(self, reason: str) -> None:
        log.info(f"Reader stopped: {reason}")
        if not self._closed and self._on_disconnect is not None:
            self._on_disconnect(reason)

    async def send(self, message: Message) -> None:
        if self._closed:
            raise TransportError("channel is closed")
        data = (encode_message(message) + "\n").encode("utf-8")
        async with self._write_lock:
            try:
                if self._writer is not None:
                    self._writer.write(data)
                    await self._writer.drain()
                else:
                    await asyncio.get_running_loop().run_in_executor(None, self._write_blocking, data)
            except (BrokenPipeError, ConnectionResetError, ValueError) as e:
                raise TransportError("write to stdout failed", detail=str(e)) from e

    def _write_blocking(self, data: bytes) -> None:
        self._stdout.write(data)
        self._stdout.flush()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass


class ToolServer:
    """Serves a dispatcher over one Transport until the peer goes away or stop() is called.

    Each request is handled in its own task, so a long-running command does
    not hold up `ping` or other calls.
    """

    def __init__(self, channel: Transport, dispatcher: ToolDispatcher):
        self.channel = channel
        self.dispatcher = dispatcher
        self._tasks: set[asyncio.Task] = set()
        self._stopped: asyncio.Event | None = None
        channel.on_message(self._on_message)
        channel.on_disconnect(self._on_disconnect)

    def _on_message(self, message: Message) -> None:
        task = asyncio.create_task(self._answer(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _answer(self, message: Message) -> None:
        response = await self.dispatcher.handle(message)
        if response is None:
            return
        try:
            await self.channel.send(response)
        except TransportError as e:
            log.warning(f"Could not deliver response id={response.id!r}: {e}")

    def _on_disconnect(self, reason: str) -> None:
        log.info(f"Client disconnected: {reason}")
        self.stop()

    def stop(self) -> None:
        if self._stopped is not None:
            self._stopped.set()

    async def serve(self) -> None:
        self._stopped = asyncio.Event()
        await self.channel.start()
        try:
            await self._stopped.wait()
        finally:
            # Let in-flight requests answer before the channel goes away.
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await self.channel.close()
