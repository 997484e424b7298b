"""Pipe transport: newline-delimited JSON over a child process's stdin/stdout."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex

from mcp_terminal.errors import ProtocolError, TransportError
from mcp_terminal.protocol import Message, decode_message, encode_message
from mcp_terminal.transport.ports import DisconnectCallback, MessageCallback

log = logging.getLogger("transport.pipe")

DEFAULT_STARTUP_DELAY_S = 0.2
MAX_LINE_BYTES = 16 * 1024 * 1024


class LineBuffer:
    """Accumulates raw reads and yields complete lines.

    Partial lines are kept across `feed()` calls until their newline arrives.
    A line that outgrows `max_bytes` is dropped up to its newline; complete
    lines from the same chunk are still returned.
    """

    def __init__(self, max_bytes: int = MAX_LINE_BYTES):
        self._buf = bytearray()
        self._max_bytes = max_bytes
        self._discarding = False
        self.dropped = 0

    def feed(self, chunk: bytes) -> list[bytes]:
        self._buf.extend(chunk)
        lines: list[bytes] = []
        while True:
            idx = self._buf.find(b"\n")
            if idx == -1:
                break
            line = bytes(self._buf[:idx]).rstrip(b"\r")
            del self._buf[: idx + 1]
            if self._discarding:
                self._discarding = False
                continue
            lines.append(line)
        if len(self._buf) > self._max_bytes:
            if not self._discarding:
                self.dropped += 1
                log.warning(f"Dropping oversized frame (over {self._max_bytes} bytes)")
            self._buf.clear()
            self._discarding = True
        return lines

    @property
    def pending(self) -> bytes:
        if self._discarding:
            return b""
        return bytes(self._buf)


def dispatch_line(line: bytes, callback: MessageCallback | None, logger: logging.Logger) -> None:
    """Decode one frame and hand it to `callback`; malformed frames are dropped."""
    if not line.strip():
        return
    try:
        message = decode_message(line)
    except ProtocolError as e:
        logger.debug(f"Dropping malformed frame: {e}")
        return
    if callback is not None:
        callback(message)


def parse_command_line(command: str | list[str]) -> list[str]:
    if isinstance(command, list):
        argv = [str(x) for x in command]
    else:
        argv = shlex.split(command or "")
    if not argv:
        raise ValueError(f"Invalid command string: {command!r}")
    return argv


class PipeTransport:
    """Spawns a subprocess and speaks newline-delimited JSON with it.

    The subprocess's stderr is inherited so its diagnostics land next to ours.
    """

    def __init__(
        self,
        command: str | list[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        startup_delay_s: float | None = None,
    ):
        self._argv = parse_command_line(command)
        self._cwd = cwd
        self._env = env
        if startup_delay_s is None:
            startup_delay_s = float(
                os.getenv("MCP_TERMINAL_STARTUP_DELAY_S", str(DEFAULT_STARTUP_DELAY_S))
            )
        self._startup_delay_s = max(0.0, startup_delay_s)
        self.process: asyncio.subprocess.Process | None = None
        self._callback: MessageCallback | None = None
        self._on_disconnect: DisconnectCallback | None = None
        self._reader_task: asyncio.Task | None = None
        self._write_lock = asyncio.Lock()
        self._first_send = True
        self._saw_output = False
        self._closed = False

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    def on_message(self, callback: MessageCallback) -> None:
        self._callback = callback

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        self._on_disconnect = callback

    async def start(self) -> None:
        if self.process is not None:
            return
        log.info(f"Spawning: {self._argv[0]} with args: {self._argv[1:]}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self._argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env,
            )
        except OSError as e:
            raise TransportError(f"failed to start subprocess {self._argv[0]!r}", detail=str(e)) from e

        if self.process.stdout is None or self.process.stdin is None:
            raise TransportError("subprocess pipes missing")

        self._reader_task = asyncio.create_task(self._read_loop(self.process.stdout))

    async def _read_loop(self, stdout: asyncio.StreamReader) -> None:
        # Read raw chunks instead of readline() so a single oversized frame
        # cannot trip the StreamReader limit.
        lines = LineBuffer()
        reason = "subprocess stdout closed"
        try:
            while True:
                chunk = await stdout.read(65536)
                if not chunk:
                    break
                self._saw_output = True
                for line in lines.feed(chunk):
                    dispatch_line(line, self._callback, log)
            if lines.pending.strip():
                dispatch_line(lines.pending, self._callback, log)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"subprocess read failed: {type(e).__name__}: {e}"
            log.warning(reason)

        if self.process and self.process.returncode is not None:
            reason = f"{reason} (exit code {self.process.returncode})"
        log.info(f"Reader stopped: {reason}")
        if not self._closed and self._on_disconnect is not None:
            self._on_disconnect(reason)

    async def send(self, message: Message) -> None:
        if self._closed:
            raise TransportError("transport is closed")
        if self.process is None:
            await self.start()
        proc = self.process
        if proc is None or proc.stdin is None:
            raise TransportError("subprocess stdin missing")

        data = (encode_message(message) + "\n").encode("utf-8")
        async with self._write_lock:
            if self._first_send:
                self._first_send = False
                # Grace period for the child's input loop; skipped once the
                # child has already written something (it is clearly up).
                if self._startup_delay_s and not self._saw_output:
                    log.debug(f"Applying initial {self._startup_delay_s:.3f}s delay before first send")
                    await asyncio.sleep(self._startup_delay_s)
            if proc.returncode is not None:
                raise TransportError("subprocess has exited", detail=f"exit code {proc.returncode}")
            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportError("write to subprocess failed", detail=str(e)) from e
        log.debug(f"Sent: {data[:500]!r}")

    async def close(self, timeout: float = 5.0) -> None:
        """Terminate the process, wait, then force-kill if still alive."""
        if self._closed:
            return
        self._closed = True

        proc = self.process
        if proc is not None and proc.stdin is not None:
            try:
                proc.stdin.close()
            except Exception as e:
                log.debug(f"Closing subprocess stdin failed: {e}")

        if proc is not None and proc.returncode is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            else:
                try:
                    await asyncio.wait_for(proc.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    log.warning(f"Process {proc.pid} did not exit after SIGTERM, sending SIGKILL")
                    try:
                        proc.kill()
                    except ProcessLookupError:
                        pass
                    await proc.wait()

        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
