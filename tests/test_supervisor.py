"""
Test Connection Supervisor

Drives the supervisor with an in-memory transport through pairing, open,
reconnect, invalidation and shutdown scenarios.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from wa_session_agent.channels.display import OperatorDisplay
from wa_session_agent.config.schema import ReconnectConfig
from wa_session_agent.core.credentials import CREDS_FILE, Credentials, CredentialStore
from wa_session_agent.core.events import (
    CodeAvailable,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    InboundMessage,
    MessagesReceived,
    StatusNotice,
    Transport,
    TransportError,
)
from wa_session_agent.core.pairing import PairingConfig, PairingMethod
from wa_session_agent.core.policy import CloseReason, ReconnectPolicy
from wa_session_agent.core.router import EventRouter
from wa_session_agent.core.supervisor import (
    EXIT_FATAL,
    EXIT_OK,
    ConnectionState,
    ConnectionSupervisor,
    NotConnectedError,
)

NUMERIC = PairingConfig(method=PairingMethod.NUMERIC_CODE, phone_number="5511987654321")


class FakeTransport(Transport):
    """
    In-memory transport.

    Each connect() consumes the next scripted session: a list of events
    queued for events(). More events can be pushed while a session runs.
    """

    def __init__(self, sessions=None, connect_errors=None, pairing_code="ABCD1234"):
        self.sessions = list(sessions or [])
        self.connect_errors = list(connect_errors or [])
        self.pairing_code = pairing_code
        self.connected_with = []
        self.pairing_requests = []
        self.presence = []
        self.sent = []
        self.logouts = 0
        self.closes = 0
        self._queue = asyncio.Queue()

    def push(self, event):
        self._queue.put_nowait(event)

    async def connect(self, credentials):
        self.connected_with.append(credentials)
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        self._queue = asyncio.Queue()
        for event in (self.sessions.pop(0) if self.sessions else []):
            self._queue.put_nowait(event)

    async def events(self):
        while True:
            event = await self._queue.get()
            yield event
            if isinstance(event, ConnectionClosed):
                return

    async def request_pairing_code(self, phone_number):
        self.pairing_requests.append(phone_number)
        return self.pairing_code

    async def send_presence(self, presence):
        self.presence.append(presence)

    async def send_message(self, jid, content):
        self.sent.append((jid, content))
        return {"success": True, "messageId": "out1"}

    async def logout(self):
        self.logouts += 1

    async def close(self):
        self.closes += 1


def zero_delays(max_attempts=5, **overrides):
    values = dict(
        max_attempts=max_attempts,
        connect_cooldown=0,
        rate_limit_cooldown=0,
        credential_reset_delay=0,
        transient_delay=0,
        timed_out_delay=0,
        restart_required_delay=0,
        unknown_delay=0,
    )
    values.update(overrides)
    return ReconnectConfig(**values)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "auth_info")


@pytest.fixture
def saved_store(tmp_path):
    session_dir = tmp_path / "auth_info"
    CredentialStore(session_dir).save(Credentials(creds={"me": {"id": "5511987654321:7@s.whatsapp.net"}}))
    return CredentialStore(session_dir)


@pytest.fixture
def display():
    return OperatorDisplay(output_func=lambda line: None)


def make_supervisor(transport, store, display, pairing=None, reconnect=None, **kwargs):
    return ConnectionSupervisor(
        transport=transport,
        store=store,
        router=kwargs.pop("router", None) or EventRouter(),
        pairing=pairing,
        policy=ReconnectPolicy(reconnect or zero_delays()),
        display=display,
        **kwargs,
    )


class TestPairing:
    """Tests for scan-code and numeric-code pairing"""

    @pytest.mark.asyncio
    async def test_scan_code_displayed_per_event(self, store, display):
        """Test every scan code is shown while the state stays CONNECTING"""
        transport = FakeTransport(sessions=[[CodeAvailable("qr-1"), CodeAvailable("qr-2")]])
        supervisor = make_supervisor(transport, store, display)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: len(display.codes_shown) == 2)

        assert display.codes_shown == ["qr-1", "qr-2"]
        assert supervisor.state is ConnectionState.CONNECTING
        assert ConnectionState.AWAITING_CODE not in supervisor.history
        assert transport.pairing_requests == []

        supervisor.request_shutdown()
        assert await task == EXIT_OK

    @pytest.mark.asyncio
    async def test_numeric_code_requested_once(self, store, display):
        """Test repeated code offers request the numeric code only once per attempt"""
        transport = FakeTransport(sessions=[[CodeAvailable("qr-1"), CodeAvailable("qr-2"), CodeAvailable("qr-3")]])
        supervisor = make_supervisor(transport, store, display, pairing=NUMERIC)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: transport._queue.empty() and display.codes_shown)
        await asyncio.sleep(0.01)

        assert transport.pairing_requests == ["5511987654321"]
        assert display.codes_shown == ["ABCD1234"]
        assert supervisor.state is ConnectionState.AWAITING_CODE

        supervisor.request_shutdown()
        assert await task == EXIT_OK

    @pytest.mark.asyncio
    async def test_numeric_code_requested_again_on_new_attempt(self, store, display):
        """Test a reconnect gets its own pairing code request"""
        transport = FakeTransport(sessions=[
            [CodeAvailable("qr-1"), ConnectionClosed(CloseReason.TIMED_OUT, 408, "QR timed out")],
            [CodeAvailable("qr-2")],
        ])
        supervisor = make_supervisor(transport, store, display, pairing=NUMERIC)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: len(transport.pairing_requests) == 2)

        supervisor.request_shutdown()
        assert await task == EXIT_OK
        assert supervisor.connect_calls == 2

    @pytest.mark.asyncio
    async def test_pairing_code_failure_is_displayed(self, store):
        """Test a failed pairing code request is reported to the operator"""
        errors = []
        display = OperatorDisplay(output_func=lambda line: None)
        display.show_pairing_error = errors.append
        transport = FakeTransport(sessions=[[CodeAvailable("qr-1")]])
        transport.request_pairing_code = AsyncMock(side_effect=TransportError("rate limited"))
        supervisor = make_supervisor(transport, store, display, pairing=NUMERIC)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: errors)

        assert errors == ["rate limited"]

        supervisor.request_shutdown()
        assert await task == EXIT_OK

    @pytest.mark.asyncio
    async def test_code_after_open_ignored(self, store, display):
        """Test a pairing code offered after open neither leaves OPEN nor requests a second code"""
        transport = FakeTransport(sessions=[[CodeAvailable("qr-1"), ConnectionOpened(), CodeAvailable("qr-2")]])
        supervisor = make_supervisor(transport, store, display, pairing=NUMERIC)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.is_open and transport._queue.empty())
        await asyncio.sleep(0.01)

        assert transport.pairing_requests == ["5511987654321"]
        assert supervisor.state is ConnectionState.OPEN
        assert supervisor.history.count(ConnectionState.AWAITING_CODE) == 1
        assert supervisor.history[-1] is ConnectionState.OPEN

        supervisor.request_shutdown()
        assert await task == EXIT_OK


class TestOpenSession:
    """Tests for the open state"""

    @pytest.mark.asyncio
    async def test_open_resets_counter(self, saved_store, display):
        """Test reaching OPEN zeroes the reconnect counter"""
        transport = FakeTransport(sessions=[
            [ConnectionClosed(CloseReason.CONNECTION_LOST, 408)],
            [ConnectionClosed(CloseReason.CONNECTION_CLOSED, 428)],
            [ConnectionOpened("5511987654321:7@s.whatsapp.net", "Bot")],
        ])
        supervisor = make_supervisor(transport, saved_store, display)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.is_open)

        assert supervisor.counter.attempts == 0
        assert transport.presence == ["available"]
        assert supervisor.connect_calls == 3

        supervisor.request_shutdown()
        assert await task == EXIT_OK

    @pytest.mark.asyncio
    async def test_graceful_shutdown_logs_out(self, saved_store, display):
        """Test shutdown while open publishes unavailable, logs out and keeps credentials"""
        transport = FakeTransport(sessions=[[ConnectionOpened("me@s.whatsapp.net", "Bot")]])
        supervisor = make_supervisor(transport, saved_store, display)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.is_open)
        supervisor.request_shutdown()

        assert await task == EXIT_OK
        assert transport.presence == ["available", "unavailable"]
        assert transport.logouts == 1
        assert supervisor.state is ConnectionState.TERMINATED
        assert (saved_store.session_dir / CREDS_FILE).exists()

    @pytest.mark.asyncio
    async def test_shutdown_without_logout(self, saved_store, display):
        """Test logout can be disabled for shutdown"""
        transport = FakeTransport(sessions=[[ConnectionOpened()]])
        supervisor = make_supervisor(transport, saved_store, display, logout_on_shutdown=False)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.is_open)
        supervisor.request_shutdown()

        assert await task == EXIT_OK
        assert transport.logouts == 0

    @pytest.mark.asyncio
    async def test_send_requires_open_session(self, store, display):
        """Test sends fail fast until the session is open"""
        transport = FakeTransport(sessions=[[]])
        supervisor = make_supervisor(transport, store, display)

        with pytest.raises(NotConnectedError):
            await supervisor.send("5511987654321@s.whatsapp.net", {"text": "oi"})

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.state is ConnectionState.CONNECTING)

        with pytest.raises(NotConnectedError):
            await supervisor.send("5511987654321@s.whatsapp.net", {"text": "oi"})

        transport.push(ConnectionOpened())
        await wait_until(lambda: supervisor.is_open)

        result = await supervisor.send("5511987654321@s.whatsapp.net", {"text": "oi"})

        assert result["messageId"] == "out1"
        assert transport.sent == [("5511987654321@s.whatsapp.net", {"text": "oi"})]

        supervisor.request_shutdown()
        await task

    @pytest.mark.asyncio
    async def test_credentials_persisted(self, store, display):
        """Test credential updates are written to the store"""
        update = Credentials(creds={"me": {"id": "me@s.whatsapp.net"}}, keys={"pre-key": {"1": {"k": "v"}}})
        transport = FakeTransport(sessions=[[CredentialsUpdated(update), ConnectionOpened()]])
        supervisor = make_supervisor(transport, store, display)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.is_open)

        loaded = store.load()
        assert loaded.creds == update.creds
        assert loaded.keys == update.keys

        supervisor.request_shutdown()
        await task

    @pytest.mark.asyncio
    async def test_messages_routed_only_when_open(self, store, display):
        """Test inbound messages reach the handler once the session is open"""
        handler = AsyncMock()
        message = InboundMessage(id="m1", remote_jid="x@s.whatsapp.net", message={"conversation": "oi"})
        transport = FakeTransport(sessions=[[
            MessagesReceived("notify", [message]),
            StatusNotice(is_new_login=True),
            ConnectionOpened(),
            MessagesReceived("notify", [message]),
        ]])
        supervisor = make_supervisor(transport, store, display, router=EventRouter(handler=handler))

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: handler.await_count == 1)
        await asyncio.sleep(0.01)

        assert handler.await_count == 1

        supervisor.request_shutdown()
        await task


class TestReconnect:
    """Tests for closure handling and the retry budget"""

    @pytest.mark.asyncio
    async def test_bad_session_exhaustion(self, saved_store, display):
        """Test three bad-session closures with budget 3 invalidate and exit non-zero"""
        transport = FakeTransport(sessions=[
            [ConnectionClosed(CloseReason.BAD_SESSION, 500)],
            [ConnectionClosed(CloseReason.BAD_SESSION, 500)],
            [ConnectionClosed(CloseReason.BAD_SESSION, 500)],
            [ConnectionOpened()],
        ])
        supervisor = make_supervisor(transport, saved_store, display, reconnect=zero_delays(max_attempts=3))

        exit_code = await asyncio.wait_for(supervisor.run(), timeout=2)

        assert exit_code == EXIT_FATAL
        assert supervisor.connect_calls == 3
        assert len(transport.connected_with) == 3
        assert supervisor.state is ConnectionState.TERMINATED
        assert not (saved_store.session_dir / CREDS_FILE).exists()
        backups = [p for p in saved_store.session_dir.parent.iterdir() if ".backup-" in p.name]
        assert any((p / CREDS_FILE).exists() for p in backups)

    @pytest.mark.asyncio
    async def test_invalidation_connects_with_empty_credentials(self, saved_store, display):
        """Test the retry after invalidation starts from an empty session"""
        transport = FakeTransport(sessions=[
            [ConnectionClosed(CloseReason.LOGGED_OUT, 401)],
            [CodeAvailable("qr-1")],
        ])
        supervisor = make_supervisor(transport, saved_store, display)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: display.codes_shown)

        assert transport.connected_with[0].is_empty is False
        assert transport.connected_with[1].is_empty is True
        assert ConnectionState.IDLE in supervisor.history[1:]

        supervisor.request_shutdown()
        assert await task == EXIT_OK

    @pytest.mark.asyncio
    async def test_invalidation_falls_back_to_scan(self, saved_store, display):
        """Test numeric pairing switches to scan code after invalidation"""
        transport = FakeTransport(sessions=[
            [ConnectionClosed(CloseReason.BAD_SESSION, 500)],
            [CodeAvailable("qr-1")],
        ])
        supervisor = make_supervisor(transport, saved_store, display, pairing=NUMERIC)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: display.codes_shown)

        assert supervisor.pairing.method is PairingMethod.SCAN_CODE
        assert display.codes_shown == ["qr-1"]
        assert transport.pairing_requests == []

        supervisor.request_shutdown()
        await task

    @pytest.mark.asyncio
    async def test_invalidation_keeps_numeric(self, saved_store, display):
        """Test after_invalidation="keep" reuses numeric pairing"""
        transport = FakeTransport(sessions=[
            [ConnectionClosed(CloseReason.BAD_SESSION, 500)],
            [CodeAvailable("qr-1")],
        ])
        supervisor = make_supervisor(
            transport, saved_store, display, pairing=NUMERIC, after_invalidation="keep"
        )

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: transport.pairing_requests)

        assert supervisor.pairing == NUMERIC

        supervisor.request_shutdown()
        await task

    @pytest.mark.asyncio
    async def test_replaced_exits_cleanly(self, saved_store, display):
        """Test a replaced session terminates with exit 0 and keeps credentials"""
        transport = FakeTransport(sessions=[
            [ConnectionOpened(), ConnectionClosed(CloseReason.CONNECTION_REPLACED, 440)],
            [ConnectionOpened()],
        ])
        supervisor = make_supervisor(transport, saved_store, display)

        exit_code = await asyncio.wait_for(supervisor.run(), timeout=2)

        assert exit_code == EXIT_OK
        assert supervisor.connect_calls == 1
        assert (saved_store.session_dir / CREDS_FILE).exists()

    @pytest.mark.asyncio
    async def test_transient_exhaustion_keeps_credentials(self, saved_store, display):
        """Test exhausting the budget on transient closures does not discard the session"""
        transport = FakeTransport(sessions=[
            [ConnectionClosed(CloseReason.CONNECTION_LOST, 408)],
            [ConnectionClosed(CloseReason.RESTART_REQUIRED, 515)],
        ])
        supervisor = make_supervisor(transport, saved_store, display, reconnect=zero_delays(max_attempts=2))

        exit_code = await asyncio.wait_for(supervisor.run(), timeout=2)

        assert exit_code == EXIT_FATAL
        assert supervisor.connect_calls == 2
        assert (saved_store.session_dir / CREDS_FILE).exists()

    @pytest.mark.asyncio
    async def test_construction_failures_share_budget(self, store, display):
        """Test failing to build the transport counts against the budget"""
        transport = FakeTransport(connect_errors=[TransportError("bridge down")] * 3)
        supervisor = make_supervisor(transport, store, display, reconnect=zero_delays(max_attempts=3))

        exit_code = await asyncio.wait_for(supervisor.run(), timeout=2)

        assert exit_code == EXIT_FATAL
        assert supervisor.connect_calls == 3

    @pytest.mark.asyncio
    async def test_rate_limit_uses_longer_cooldown(self, store, display):
        """Test a rate-limited construction waits the rate-limit cool-down"""
        transport = FakeTransport(connect_errors=[TransportError("Bridge rate limited /status (429)")])
        supervisor = make_supervisor(
            transport, store, display, reconnect=zero_delays(rate_limit_cooldown=60)
        )

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.counter.attempts == 1)
        await asyncio.sleep(0.02)

        assert supervisor.connect_calls == 1

        supervisor.request_shutdown()
        assert await asyncio.wait_for(task, timeout=1) == EXIT_OK

    @pytest.mark.asyncio
    async def test_shutdown_during_backoff(self, saved_store, display):
        """Test a pending reconnect is abandoned when shutdown is requested"""
        transport = FakeTransport(sessions=[[ConnectionClosed(CloseReason.CONNECTION_LOST, 408)]])
        supervisor = make_supervisor(transport, saved_store, display, reconnect=zero_delays(transient_delay=60))

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.state is ConnectionState.CLOSING and transport.closes >= 1)
        supervisor.request_shutdown()

        assert await asyncio.wait_for(task, timeout=1) == EXIT_OK
        assert supervisor.connect_calls == 1
        assert transport.logouts == 0

    @pytest.mark.asyncio
    async def test_unexpected_construction_error_retries(self, store, display):
        """Test any error raised while constructing the session cools down and reconnects"""
        transport = FakeTransport(
            connect_errors=[ValueError("Expecting value: line 1 column 1 (char 0)")],
            sessions=[[ConnectionOpened()]],
        )
        supervisor = make_supervisor(transport, store, display)

        task = asyncio.create_task(supervisor.run())
        await wait_until(lambda: supervisor.is_open or task.done())

        assert not task.done()
        assert supervisor.connect_calls == 2
        assert supervisor.counter.attempts == 0

        supervisor.request_shutdown()
        assert await task == EXIT_OK

    @pytest.mark.asyncio
    async def test_no_connect_after_termination(self, store, display):
        """Test a terminated supervisor refuses to connect"""
        supervisor = make_supervisor(FakeTransport(), store, display)
        supervisor.request_shutdown()

        assert await supervisor.run() == EXIT_OK
        assert supervisor.connect_calls == 0

        with pytest.raises(RuntimeError):
            await supervisor.connect()

    @pytest.mark.asyncio
    async def test_connect_while_reconnecting(self, store, display):
        """Test a second concurrent connect is refused"""
        supervisor = make_supervisor(FakeTransport(sessions=[[]]), store, display)

        assert await supervisor.connect() is True
        with pytest.raises(RuntimeError):
            await supervisor.connect()
