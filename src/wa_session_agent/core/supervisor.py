"""
Connection Supervisor

Owns the single transport session of the process. It connects, consumes
transport events one at a time, keeps the credential store current, and
on every closure asks the reconnect policy what to do next.

State machine:

    IDLE --connect()--> CONNECTING
    CONNECTING --opened--> OPEN
    CONNECTING --code available (numeric pairing, first time)--> AWAITING_CODE
    CONNECTING|AWAITING_CODE|OPEN --closed--> CLOSING
    CLOSING --retry--> CONNECTING
    CLOSING --invalidate and retry--> IDLE --> CONNECTING
    CLOSING --terminate--> TERMINATED

TERMINATED is absorbing; run() returns the process exit status.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from .credentials import CredentialStore, Credentials
from .events import (
    CodeAvailable,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    MessagesReceived,
    StatusNotice,
    Transport,
    TransportEvent,
)
from .pairing import PairingConfig, PairingMethod
from .policy import CloseReason, ReconnectPolicy, Verdict, VerdictAction
from .router import EventRouter
from ..channels.display import OperatorDisplay

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_CODE = "awaiting_code"
    OPEN = "open"
    CLOSING = "closing"
    TERMINATED = "terminated"


class NotConnectedError(RuntimeError):
    """Outbound send attempted while the session is not open"""


@dataclass
class ReconnectCounter:
    """Attempts spent failing to reach or keep an open session"""
    attempts: int = 0
    max_attempts: int = 5

    def reset(self) -> None:
        self.attempts = 0

    def increment(self) -> int:
        self.attempts += 1
        return self.attempts

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class ConnectionSupervisor:
    """
    Drives one transport through connect, pairing, open and reconnect.

    Constructed once at process entry and handed to collaborators; all
    state below is only touched from the event loop running run().
    """

    def __init__(
        self,
        transport: Transport,
        store: CredentialStore,
        router: EventRouter,
        pairing: Optional[PairingConfig] = None,
        policy: Optional[ReconnectPolicy] = None,
        display: Optional[OperatorDisplay] = None,
        after_invalidation: str = "scan",
        logout_on_shutdown: bool = True,
    ):
        self.transport = transport
        self.store = store
        self.router = router
        self.policy = policy or ReconnectPolicy()
        self.display = display or OperatorDisplay()
        self.after_invalidation = after_invalidation
        self.logout_on_shutdown = logout_on_shutdown

        self.counter = ReconnectCounter(max_attempts=self.policy.max_attempts)
        self.history: List[ConnectionState] = [ConnectionState.IDLE]
        self.connect_calls = 0
        self.exit_code: Optional[int] = None

        self._state = ConnectionState.IDLE
        self._pairing = pairing or PairingConfig(method=PairingMethod.SCAN_CODE)
        self._credentials = Credentials()
        self._code_requested = False
        self._reconnecting = False
        self._construction_cooldown = self.policy.config.connect_cooldown
        self._shutdown = asyncio.Event()

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def pairing(self) -> PairingConfig:
        return self._pairing

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self) -> None:
        """Stop issuing connects and wind the session down"""
        if not self._shutdown.is_set():
            logger.info("🛑 Shutdown requested")
            self._shutdown.set()

    async def run(self) -> int:
        """
        Supervise the session until it terminates.

        Returns:
            Exit status: 0 for shutdown or replacement, 1 for exhausted retries
        """
        logger.info("🚀 Starting connection supervisor")

        while not self._shutdown.is_set():
            if not await self.connect():
                if self._shutdown.is_set():
                    break
                attempts = self.counter.increment()
                if self.counter.exhausted:
                    logger.error(
                        f"❌ Could not create a session after {attempts} attempts, giving up"
                    )
                    return await self._terminate(EXIT_FATAL)

                cooldown = self._construction_cooldown
                logger.info(
                    f"🔄 Retrying connection {attempts}/{self.counter.max_attempts} "
                    f"in {cooldown:g}s..."
                )
                self._reconnecting = False
                if not await self._sleep(cooldown):
                    break
                continue

            closed = await self._run_attempt()
            if closed is None:
                break

            verdict = await self._handle_close(closed)
            self._reconnecting = False

            if verdict.action is VerdictAction.TERMINATE:
                return await self._apply_termination(verdict, closed.reason)

            if verdict.invalidate:
                self._invalidate_session()

            logger.info(
                f"🔄 Reconnect attempt {self.counter.attempts}/{self.counter.max_attempts} "
                f"in {verdict.delay:g}s..."
            )
            if not await self._sleep(verdict.delay):
                break

        return await self.stop()

    async def connect(self) -> bool:
        """
        Start one connection attempt.

        Returns:
            True when the transport accepted the session, False when
            construction failed and the caller should cool down and retry

        Raises:
            RuntimeError: An attempt is already in progress or the
                supervisor has terminated
        """
        if self._state is ConnectionState.TERMINATED:
            raise RuntimeError("Supervisor has terminated; no further connects")
        if self._reconnecting:
            raise RuntimeError("Reconnect already in progress")
        if self._shutdown.is_set():
            return False

        self._reconnecting = True
        self._code_requested = False
        self._construction_cooldown = self.policy.config.connect_cooldown
        self.connect_calls += 1
        self._transition(ConnectionState.CONNECTING)
        logger.info("🔄 Establishing connection...")

        self._credentials = self.store.load()

        try:
            await self.transport.connect(self._credentials)
        except Exception as e:
            logger.error(f"❌ Failed to create connection: {e}")
            if "rate limit" in str(e).lower():
                self._construction_cooldown = self.policy.config.rate_limit_cooldown
                logger.warning(
                    f"⏳ Rate limit detected, waiting {self._construction_cooldown:g}s"
                )
            await self._close_transport()
            return False

        if self._pairing.method is PairingMethod.NUMERIC_CODE and self._credentials.is_empty:
            logger.info("📱 Pairing by numeric code enabled")

        logger.info("🔗 Session created")
        return True

    async def send(self, target_id: str, content: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send content to a chat through the open session.

        Raises:
            NotConnectedError: The session is not open
        """
        if self._state is not ConnectionState.OPEN:
            raise NotConnectedError("Bot is not connected")

        try:
            return await self.transport.send_message(target_id, content)
        except Exception as e:
            logger.error(f"❌ Error sending message to {target_id}: {e}")
            raise

    async def stop(self) -> int:
        """
        Graceful shutdown: presence unavailable, logout when open, close.

        Stored credentials are left untouched.
        """
        if self._state is ConnectionState.TERMINATED:
            return self.exit_code if self.exit_code is not None else EXIT_OK

        logger.info("🛑 Stopping bot...")
        self._shutdown.set()

        if self._state is ConnectionState.OPEN:
            await self._update_presence("unavailable")
            if self.logout_on_shutdown:
                logger.info("🚪 Logging out...")
                try:
                    await self.transport.logout()
                except Exception as e:
                    logger.error(f"❌ Error during logout: {e}")

        return await self._terminate(EXIT_OK)

    async def aclose(self) -> None:
        """Best-effort resource cleanup after an unexpected fault"""
        await self._close_transport()
        await self.router.drain(timeout=1.0)

    # =========================================================================
    # EVENT HANDLING
    # =========================================================================

    async def handle_event(self, event: TransportEvent) -> None:
        """Apply one non-closing transport event"""
        if isinstance(event, ConnectionOpened):
            await self._on_open(event)

        elif isinstance(event, CodeAvailable):
            await self._on_code_available(event)

        elif isinstance(event, CredentialsUpdated):
            self._on_credentials(event)

        elif isinstance(event, StatusNotice):
            if event.is_new_login:
                logger.info("🔐 New login detected")
            if event.received_pending_notifications:
                logger.info("📬 Pending notifications received")

        elif isinstance(event, MessagesReceived):
            if self._state is ConnectionState.OPEN:
                await self.router.dispatch(event)
            else:
                logger.debug(f"Dropping {len(event.messages)} messages received while {self._state.value}")

        else:
            logger.debug(f"Unhandled transport event: {event!r}")

    async def _on_open(self, event: ConnectionOpened) -> None:
        self._transition(ConnectionState.OPEN)
        self.counter.reset()

        logger.info(f"✅ Connected as {event.user_id or 'unknown'} ({event.user_name or 'N/A'})")
        if event.is_new_login:
            logger.info("🔐 New login detected")
        self.display.show_connected(event.user_id, event.user_name)

        await self._update_presence("available")
        await self.router.on_session_open()

    async def _on_code_available(self, event: CodeAvailable) -> None:
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.AWAITING_CODE):
            logger.debug(f"Ignoring pairing code offered while {self._state.value}")
            return

        if self._pairing.method is PairingMethod.SCAN_CODE:
            logger.info("📷 Scan code received")
            self.display.show_scan_code(event.qr)
            return

        if self._code_requested:
            logger.debug("Pairing code already requested for this connection attempt")
            return

        self._code_requested = True
        self._transition(ConnectionState.AWAITING_CODE)

        phone = self._pairing.phone_number
        self.display.show_pairing_wait()
        logger.info(f"🔢 Requesting pairing code for +{phone}")
        try:
            code = await self.transport.request_pairing_code(phone)
        except (OSError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Pairing code request failed: {e}")
            self.display.show_pairing_error(str(e))
            return

        self.display.show_pairing_code(code, phone)

    def _on_credentials(self, event: CredentialsUpdated) -> None:
        self._credentials = event.credentials
        try:
            self.store.save(event.credentials)
        except OSError as e:
            logger.error(f"❌ Failed to persist credentials: {e}")

    async def _run_attempt(self) -> Optional[ConnectionClosed]:
        """Consume events until the session closes; None when shutdown came first"""
        pump = asyncio.create_task(self._pump())
        waiter = asyncio.create_task(self._shutdown.wait())
        try:
            done, _ = await asyncio.wait({pump, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if pump in done:
            return pump.result()

        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
        return None

    async def _pump(self) -> ConnectionClosed:
        async for event in self.transport.events():
            if isinstance(event, ConnectionClosed):
                return event
            await self.handle_event(event)

        return ConnectionClosed(
            reason=CloseReason.CONNECTION_LOST,
            message="Transport event stream ended without a close notification",
        )

    # =========================================================================
    # CLOSURE AND POLICY
    # =========================================================================

    async def _handle_close(self, closed: ConnectionClosed) -> Verdict:
        self._transition(ConnectionState.CLOSING)
        logger.warning(
            f"🔌 Connection closed: {closed.reason.value} "
            f"(status {closed.status_code}, {closed.message or 'no message'})"
        )

        await self.router.on_session_closed(closed.reason)
        await self._close_transport()

        if closed.reason is not CloseReason.CONNECTION_REPLACED:
            self.counter.increment()

        verdict = self.policy.decide(closed.reason, self.counter.attempts)
        logger.info(f"Reconnect verdict for {closed.reason.value}: {verdict.action.value}")
        return verdict

    async def _apply_termination(self, verdict: Verdict, reason: CloseReason) -> int:
        if verdict.invalidate:
            self.store.invalidate()
            self.display.show_rebootstrap_required(str(self.store.session_dir))

        if verdict.fatal:
            logger.critical(
                f"❌ Maximum reconnect attempts reached ({self.counter.attempts}/"
                f"{self.counter.max_attempts}) after {reason.value}"
            )
            return await self._terminate(EXIT_FATAL)

        logger.info("🔄 Connection replaced on another device, shutting down")
        return await self._terminate(EXIT_OK)

    def _invalidate_session(self) -> None:
        logger.warning("❌ Stored session rejected, discarding credentials")
        self.store.invalidate()
        self._credentials = Credentials()
        self._transition(ConnectionState.IDLE)

        if self.after_invalidation == "scan" and self._pairing.method is not PairingMethod.SCAN_CODE:
            logger.info("Pairing falls back to scan code after invalidation")
            self._pairing = PairingConfig(method=PairingMethod.SCAN_CODE)

    async def _terminate(self, exit_code: int) -> int:
        await self._close_transport()
        await self.router.drain()
        self._transition(ConnectionState.TERMINATED)
        self.exit_code = exit_code
        logger.info(f"Supervisor terminated with exit status {exit_code}")
        return exit_code

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _sleep(self, delay: float) -> bool:
        """Backoff that a shutdown cuts short; False when shutdown was requested"""
        if self._shutdown.is_set():
            return False
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        logger.info("Pending reconnect abandoned due to shutdown")
        return False

    async def _update_presence(self, presence: str) -> None:
        # The channel is gone once closing; only an open session can publish
        if self._state is not ConnectionState.OPEN:
            return
        try:
            await self.transport.send_presence(presence)
        except Exception as e:
            logger.error(f"❌ Error updating presence: {e}")

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            logger.error(f"❌ Error closing transport: {e}")

    def _transition(self, new_state: ConnectionState) -> None:
        if self._state is ConnectionState.TERMINATED:
            return
        if new_state is not self._state:
            logger.debug(f"Connection state: {self._state.value} -> {new_state.value}")
            self._state = new_state
            self.history.append(new_state)
