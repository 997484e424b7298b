"""Event-stream transport: SSE for inbound frames, one HTTP POST per outbound frame."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from urllib.parse import urljoin

import aiohttp

from mcp_terminal.errors import TransportError
from mcp_terminal.protocol import Message, encode_message
from mcp_terminal.transport.ports import DisconnectCallback, MessageCallback
from mcp_terminal.transport.subprocess_transport import dispatch_line

log = logging.getLogger("transport.sse")

ENDPOINT_EVENT = "endpoint"
MESSAGE_EVENT = "message"

# How long the first send waits for an `endpoint` event before using the
# URL derived from the stream URL.
ENDPOINT_WAIT_S = 2.0


@dataclass(frozen=True)
class SseEvent:
    event: str
    data: str
    id: str | None = None


class SseDecoder:
    """Incremental Server-Sent-Events parser.

    Feed raw chunks; complete events (terminated by a blank line) come out.
    Comment lines (leading ':') are skipped and multi-line data is joined with
    newlines.
    """

    def __init__(self, max_bytes: int | None = None):
        if max_bytes is None:
            max_bytes = int(os.getenv("MCP_TERMINAL_SSE_MAX_BUFFER_BYTES", str(16 * 1024 * 1024)))
        self._max_bytes = max_bytes
        self._buf = bytearray()

    @staticmethod
    def _split_event(buf_bytes: bytearray) -> tuple[bytes | None, int]:
        """Return (event_bytes, consumed_bytes) for the next event, if any."""
        idx_nl = buf_bytes.find(b"\n\n")
        idx_crlf = buf_bytes.find(b"\r\n\r\n")
        if idx_nl == -1 and idx_crlf == -1:
            return None, 0
        if idx_crlf != -1 and (idx_nl == -1 or idx_crlf < idx_nl):
            return bytes(buf_bytes[:idx_crlf]), idx_crlf + 4
        return bytes(buf_bytes[:idx_nl]), idx_nl + 2

    def feed(self, chunk: bytes) -> list[SseEvent]:
        self._buf.extend(chunk)
        if len(self._buf) > self._max_bytes:
            size = len(self._buf)
            self._buf.clear()
            raise ValueError(f"SSE buffer too big ({size} bytes)")

        events: list[SseEvent] = []
        while True:
            event_bytes, consumed = self._split_event(self._buf)
            if event_bytes is None:
                break
            del self._buf[:consumed]
            event = self._parse_event(event_bytes)
            if event is not None:
                events.append(event)
        return events

    @staticmethod
    def _parse_event(event_bytes: bytes) -> SseEvent | None:
        if not event_bytes.strip():
            return None

        name = MESSAGE_EVENT
        event_id: str | None = None
        data_lines: list[str] = []
        for raw_line in event_bytes.splitlines():
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r")
            if not line or line.startswith(":"):
                continue
            field_name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field_name == "data":
                data_lines.append(value)
            elif field_name == "event":
                name = value or MESSAGE_EVENT
            elif field_name == "id":
                event_id = value

        if not data_lines:
            return None
        return SseEvent(event=name, data="\n".join(data_lines), id=event_id)


def encode_sse_event(event: str, data: str, *, event_id: str | None = None) -> bytes:
    lines: list[str] = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    for part in data.split("\n"):
        lines.append(f"data: {part}")
    return ("\n".join(lines) + "\n\n").encode("utf-8")


def default_post_url(sse_url: str) -> str:
    base = sse_url.rstrip("/")
    if base.endswith("/sse"):
        return base[: -len("/sse")] + "/messages"
    return base + "/messages"


class SseTransport:
    """HTTP + SSE transport.

    Inbound frames arrive on a long-lived GET; each outbound frame is its own
    POST. If the server announces an `endpoint` event, later POSTs go there.
    """

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        connect_timeout_s: float | None = None,
    ):
        self.url = url
        self.post_url = default_post_url(url)
        self._client_session = session
        self._owns_session = session is None
        if connect_timeout_s is None:
            connect_timeout_s = float(os.getenv("MCP_TERMINAL_SSE_CONNECT_TIMEOUT_S", "10"))
        self._connect_timeout_s = connect_timeout_s
        self._callback: MessageCallback | None = None
        self._on_disconnect: DisconnectCallback | None = None
        self._stream_task: asyncio.Task | None = None
        self._response: aiohttp.ClientResponse | None = None
        self._inflight: set[asyncio.Future] = set()
        self._endpoint_seen = asyncio.Event()
        self._closed = False

    def on_message(self, callback: MessageCallback) -> None:
        self._callback = callback

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        self._on_disconnect = callback

    def _session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise TransportError("transport is closed")
        if self._client_session is None:
            self._client_session = aiohttp.ClientSession()
        return self._client_session

    async def start(self) -> None:
        if self._stream_task is not None:
            return
        session = self._session()
        headers = {"Accept": "text/event-stream"}
        try:
            resp = await asyncio.wait_for(
                session.get(self.url, headers=headers, timeout=aiohttp.ClientTimeout(total=None)),
                timeout=self._connect_timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"SSE connect timed out for {self.url} after {self._connect_timeout_s}s"
            ) from e
        except aiohttp.ClientError as e:
            raise TransportError(f"SSE connect failed for {self.url}", detail=f"{type(e).__name__}: {e}") from e

        if resp.status >= 400:
            detail = (await resp.text()).strip() or resp.reason
            resp.release()
            raise TransportError(f"SSE HTTP {resp.status} for {self.url}", detail=detail)

        self._response = resp
        self._stream_task = asyncio.create_task(self._read_stream(resp))

    async def _read_stream(self, resp: aiohttp.ClientResponse) -> None:
        # Raw chunks rather than readline(): aiohttp raises "Chunk too big"
        # when one SSE line exceeds the reader limit.
        decoder = SseDecoder()
        reason = "SSE stream ended"
        try:
            async for chunk in resp.content.iter_any():
                if not chunk:
                    continue
                try:
                    events = decoder.feed(chunk)
                except ValueError as e:
                    log.warning(f"Dropping SSE buffer: {e}")
                    continue
                for event in events:
                    self._handle_event(event)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, ConnectionError) as e:
            reason = f"SSE stream failed: {type(e).__name__}: {e}"
            if not self._closed:
                log.warning(reason)
        finally:
            resp.release()

        log.info(f"SSE reader stopped: {reason}")
        if not self._closed and self._on_disconnect is not None:
            self._on_disconnect(reason)

    def _handle_event(self, event: SseEvent) -> None:
        if event.event == ENDPOINT_EVENT:
            self.post_url = urljoin(self.url, event.data.strip())
            self._endpoint_seen.set()
            log.debug(f"Server announced message endpoint {self.post_url}")
            return
        dispatch_line(event.data.encode("utf-8"), self._callback, log)

    async def _post(self, body: str) -> None:
        session = self._session()
        try:
            async with session.post(
                self.post_url,
                data=body.encode("utf-8"),
                headers={"Content-Type": "application/json"},
            ) as resp:
                if resp.status >= 400:
                    detail = (await resp.text()).strip() or resp.reason
                    raise TransportError(f"POST {self.post_url} returned HTTP {resp.status}", detail=detail)
        except aiohttp.ClientError as e:
            raise TransportError(f"POST {self.post_url} failed", detail=f"{type(e).__name__}: {e}") from e

    async def send(self, message: Message) -> None:
        if self._closed:
            raise TransportError("transport is closed")
        if self._stream_task is not None and not self._endpoint_seen.is_set():
            try:
                await asyncio.wait_for(self._endpoint_seen.wait(), timeout=ENDPOINT_WAIT_S)
            except asyncio.TimeoutError:
                log.debug(f"No endpoint event; posting to {self.post_url}")
                self._endpoint_seen.set()
            if self._closed:
                raise TransportError("transport is closed")
        body = encode_message(message)
        task = asyncio.ensure_future(self._post(body))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        # Shielded: close() aborts the stream but lets in-flight POSTs finish.
        await asyncio.shield(task)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake sends still waiting for the endpoint event.
        self._endpoint_seen.set()

        if self._stream_task:
            self._stream_task.cancel()
            try:
                await self._stream_task
            except asyncio.CancelledError:
                pass
            self._stream_task = None
        if self._response is not None:
            self._response.close()
            self._response = None

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

        if self._owns_session and self._client_session is not None and not self._client_session.closed:
            await self._client_session.close()
        self._client_session = None
