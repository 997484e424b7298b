import asyncio

import pytest

from mcp_terminal.errors import RemoteError, SessionClosedError, TransportError
from mcp_terminal.protocol import ErrorObject, Notification, Request, Response
from mcp_terminal.session import HANDSHAKE_ID, HandshakeState, RpcSession

INIT_RESULT = {
    "protocolVersion": "2024-11-05",
    "capabilities": {"tools": {}},
    "serverInfo": {"name": "fake-server", "version": "9.9"},
}


class FakeTransport:
    def __init__(self, fail_sends=False):
        self.sent = []
        self.callback = None
        self.disconnect = None
        self.started = 0
        self.closed = 0
        self.fail_sends = fail_sends

    async def start(self):
        self.started += 1

    async def send(self, message):
        if self.fail_sends:
            raise TransportError("broken pipe")
        self.sent.append(message)

    def on_message(self, callback):
        self.callback = callback

    def on_disconnect(self, callback):
        self.disconnect = callback

    async def close(self):
        self.closed += 1

    def deliver(self, message):
        self.callback(message)

    def requests(self, method=None):
        return [m for m in self.sent if isinstance(m, Request) and (method is None or m.method == method)]


async def _until(predicate, rounds=100):
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def _counter():
    state = {"n": 0}

    def next_id():
        state["n"] += 1
        return state["n"]

    return next_id


def test_concurrent_calls_resolve_by_id_in_any_order():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport, id_factory=_counter())
        calls = [asyncio.create_task(session.call("echo", {"n": n})) for n in range(5)]
        await _until(lambda: len(transport.sent) == 5)
        for req in reversed(transport.sent):
            transport.deliver(Response(id=req.id, result=req.params["n"] * 10))
        results = await asyncio.gather(*calls)
        return results, session.pending_count

    results, pending = asyncio.run(scenario())
    assert results == [0, 10, 20, 30, 40]
    assert pending == 0


def test_remote_error_is_raised_with_code_and_message():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport, id_factory=_counter())
        call = asyncio.create_task(session.call("missing"))
        await _until(lambda: transport.sent)
        transport.deliver(Response(id=1, error=ErrorObject(code=-32601, message="Method not found")))
        with pytest.raises(RemoteError) as info:
            await call
        return info.value

    err = asyncio.run(scenario())
    assert err.code == -32601
    assert err.message == "Method not found"


def test_unknown_and_late_responses_are_discarded():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport, id_factory=_counter())
        call = asyncio.create_task(session.call("slow"))
        await _until(lambda: transport.sent)
        transport.deliver(Response(id=999, result="stray"))
        transport.deliver(Response(id=1, result="ok"))
        transport.deliver(Response(id=1, result="duplicate"))
        return await call

    assert asyncio.run(scenario()) == "ok"


def test_close_fails_every_pending_call_once_and_is_idempotent():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport, id_factory=_counter())
        calls = [asyncio.create_task(session.call("wait")) for _ in range(3)]
        await _until(lambda: len(transport.sent) == 3)
        await session.close()
        await session.close()
        outcomes = await asyncio.gather(*calls, return_exceptions=True)
        # A response arriving after close resolves nothing.
        transport.deliver(Response(id=1, result="late"))
        with pytest.raises(SessionClosedError):
            await session.call("after-close")
        return outcomes, transport.closed, session.pending_count

    outcomes, closed, pending = asyncio.run(scenario())
    assert all(isinstance(o, SessionClosedError) for o in outcomes)
    assert closed == 1
    assert pending == 0


def test_concurrent_handshakes_share_one_initialize():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport, id_factory=_counter())
        first = asyncio.create_task(session.perform_handshake("c", "1"))
        second = asyncio.create_task(session.perform_handshake("c", "1"))
        await _until(lambda: transport.requests("initialize"))
        assert session.handshake_state == HandshakeState.IN_FLIGHT
        transport.deliver(Response(id=HANDSHAKE_ID, result=INIT_RESULT))
        a, b = await asyncio.gather(first, second)
        again = await session.perform_handshake("c", "1")
        return transport, session, a, b, again

    transport, session, a, b, again = asyncio.run(scenario())
    assert a == b == again
    assert a.server_info.name == "fake-server"
    inits = transport.requests("initialize")
    assert len(inits) == 1
    assert inits[0].id == HANDSHAKE_ID
    assert inits[0].params["clientInfo"] == {"name": "c", "version": "1"}
    notes = [m for m in transport.sent if isinstance(m, Notification)]
    assert [n.method for n in notes] == ["notifications/initialized"]
    assert session.handshake_state == HandshakeState.COMPLETED
    assert session.server_info.version == "9.9"


def test_handshake_failure_allows_retry():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport, id_factory=_counter())
        attempt = asyncio.create_task(session.perform_handshake())
        await _until(lambda: transport.requests("initialize"))
        transport.deliver(Response(id=HANDSHAKE_ID, error=ErrorObject(code=-32602, message="bad version")))
        with pytest.raises(RemoteError) as info:
            await attempt
        failed_state = session.handshake_state

        retry = asyncio.create_task(session.perform_handshake())
        await _until(lambda: len(transport.requests("initialize")) == 2)
        transport.deliver(Response(id=HANDSHAKE_ID, result=INIT_RESULT))
        await retry
        return info.value, failed_state, session.handshake_state

    err, failed_state, final_state = asyncio.run(scenario())
    assert err.code == -32602
    assert "bad version" in err.message
    assert failed_state == HandshakeState.FAILED
    assert final_state == HandshakeState.COMPLETED


def test_handshake_send_failure_propagates():
    async def scenario():
        session = RpcSession(FakeTransport(fail_sends=True))
        with pytest.raises(TransportError):
            await session.perform_handshake()
        return session.handshake_state

    assert asyncio.run(scenario()) == HandshakeState.FAILED


def test_close_fails_in_flight_handshake():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport)
        attempt = asyncio.create_task(session.perform_handshake())
        await _until(lambda: transport.sent)
        await session.close()
        with pytest.raises(SessionClosedError):
            await attempt

    asyncio.run(scenario())


def test_reserved_handshake_id_cannot_be_used_for_calls():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport, id_factory=lambda: HANDSHAKE_ID)
        with pytest.raises(ValueError):
            await session.call("tools/list")
        # No handshake in flight: a response carrying the reserved id resolves nothing.
        transport.deliver(Response(id=HANDSHAKE_ID, result=INIT_RESULT))
        return transport.sent, session.handshake_state

    sent, state = asyncio.run(scenario())
    assert sent == []
    assert state == HandshakeState.NOT_STARTED


def test_duplicate_pending_id_is_rejected():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport, id_factory=lambda: "same")
        first = asyncio.create_task(session.call("a"))
        await _until(lambda: transport.sent)
        with pytest.raises(ValueError):
            await session.call("b")
        transport.deliver(Response(id="same", result=1))
        return await first

    assert asyncio.run(scenario()) == 1


def test_server_ping_is_answered_and_other_requests_rejected():
    async def scenario():
        transport = FakeTransport()
        RpcSession(transport)
        transport.deliver(Request(id=7, method="ping"))
        transport.deliver(Request(id=8, method="sampling/createMessage", params={}))
        await _until(lambda: len(transport.sent) == 2)
        return {m.id: m for m in transport.sent}

    sent = asyncio.run(scenario())
    assert sent[7] == Response(id=7, result={})
    assert sent[8].error.code == -32601


def test_disconnect_closes_session():
    async def scenario():
        transport = FakeTransport()
        session = RpcSession(transport, id_factory=_counter())
        call = asyncio.create_task(session.call("wait"))
        await _until(lambda: transport.sent)
        transport.disconnect("subprocess stdout closed")
        with pytest.raises(SessionClosedError):
            await call
        return session.closed, transport.closed

    closed, transport_closed = asyncio.run(scenario())
    assert closed is True
    assert transport_closed == 1


def test_notify_sends_notification_without_pending_entry():
    async def scenario():
        transport = FakeTransport()
        async with RpcSession(transport) as session:
            await session.notify("notifications/progress", {"p": 1})
            pending = session.pending_count
        return transport, pending

    transport, pending = asyncio.run(scenario())
    assert transport.started == 1
    assert transport.closed == 1
    assert transport.sent == [Notification(method="notifications/progress", params={"p": 1})]
    assert pending == 0


class StallingTransport(FakeTransport):
    """Sends hang until close(), then fail the way a reaped child does."""

    def __init__(self):
        super().__init__()
        self.released = asyncio.Event()

    async def send(self, message):
        self.sent.append(message)
        await self.released.wait()
        raise TransportError("subprocess has exited", detail="exit code -15")

    async def close(self):
        self.closed += 1
        self.released.set()


def test_close_during_send_reports_session_closed():
    async def scenario():
        transport = StallingTransport()
        session = RpcSession(transport, id_factory=_counter())
        call = asyncio.create_task(session.call("tools/list"))
        handshake = asyncio.create_task(session.perform_handshake())
        await _until(lambda: len(transport.sent) == 2)
        await session.close()
        return await asyncio.gather(call, handshake, return_exceptions=True), session.pending_count

    outcomes, pending = asyncio.run(scenario())
    assert [type(o) for o in outcomes] == [SessionClosedError, SessionClosedError]
    assert pending == 0


class FlakyNotifyTransport(FakeTransport):
    def __init__(self):
        super().__init__()
        self.notify_failures = 1

    async def send(self, message):
        if isinstance(message, Notification) and self.notify_failures:
            self.notify_failures -= 1
            raise TransportError("broken pipe")
        await super().send(message)


def test_failed_initialized_notification_is_retried():
    async def scenario():
        transport = FlakyNotifyTransport()
        session = RpcSession(transport, id_factory=_counter())
        attempt = asyncio.create_task(session.perform_handshake())
        await _until(lambda: transport.requests("initialize"))
        transport.deliver(Response(id=HANDSHAKE_ID, result=INIT_RESULT))
        with pytest.raises(TransportError):
            await attempt
        result = await session.perform_handshake()
        await session.perform_handshake()
        return transport, result

    transport, result = asyncio.run(scenario())
    assert result.server_info.name == "fake-server"
    assert len(transport.requests("initialize")) == 1
    notes = [m for m in transport.sent if isinstance(m, Notification)]
    assert [n.method for n in notes] == ["notifications/initialized"]
