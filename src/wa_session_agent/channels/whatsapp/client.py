"""
WhatsApp Bridge Transport

Drives the Node.js bridge that wraps the multi-device protocol library.
The bridge owns the protocol socket; this client starts and ends sessions
over HTTP and receives the library's events over a WebSocket.

Architecture:
    ConnectionSupervisor <-> BridgeTransport <-> Bridge (Node.js) <-> WhatsApp

HTTP API:
    GET  /status               bridge health
    POST /session/start        {auth: {creds, keys}, browser, ...}
    POST /session/end          drop the socket without logging out
    POST /auth/pairing-code    {phoneNumber} -> {code}
    POST /auth/logout
    POST /presence             {presence}
    POST /send                 {jid, content} -> {messageId, ...}

WebSocket events:
    connection.update  {connection, qr, lastDisconnect, isNewLogin, user, ...}
    creds.update       {creds}        partial update merged into creds
    keys.update        {keys}         {category: {id: value | null}}
    messages.upsert    {upsertType, messages}
"""

import asyncio
import copy
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from ...core.credentials import Credentials
from ...core.events import (
    CodeAvailable,
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    InboundMessage,
    MessagesReceived,
    StatusNotice,
    Transport,
    TransportError,
    TransportEvent,
)
from ...core.policy import CloseReason, classify_close

logger = logging.getLogger(__name__)


class BridgeTransport(Transport):
    """
    Transport backed by the multi-device bridge.

    Example:
        async with BridgeTransport() as transport:
            await transport.connect(store.load())
            async for event in transport.events():
                print(event)
    """

    def __init__(
        self,
        http_url: str = "http://localhost:3000",
        ws_url: str = "ws://localhost:3001",
        browser: Optional[List[str]] = None,
        request_timeout: float = 60.0,
        sync_full_history: bool = False,
    ):
        self.http_url = http_url.rstrip("/")
        self.ws_url = ws_url
        self.browser = browser or ["Session Agent", "Chrome", "3.0.0"]
        self.request_timeout = request_timeout
        self.sync_full_history = sync_full_history

        self._http_session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._credentials = Credentials()
        self._user: Optional[Dict[str, Any]] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self._user

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    # =========================================================================
    # SESSION LIFECYCLE
    # =========================================================================

    async def connect(self, credentials: Credentials) -> None:
        """
        Start a protocol session on the bridge with the stored credentials.

        Raises:
            TransportError: Bridge unreachable or refused the session
        """
        self._credentials = copy.deepcopy(credentials)
        self._user = None

        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )

        status = await self.get_status()
        logger.info(f"Bridge status: {status}")

        try:
            self._ws = await self._http_session.ws_connect(self.ws_url, heartbeat=30)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Cannot connect to WebSocket at {self.ws_url}: {e}") from e

        logger.info(f"Connected to bridge WebSocket: {self.ws_url}")

        try:
            await self._post("/session/start", {
                "auth": credentials.to_dict(),
                "browser": self.browser,
                "markOnlineOnConnect": False,
                "syncFullHistory": self.sync_full_history,
                "defaultQueryTimeoutMs": int(self.request_timeout * 1000),
            })
        except TransportError:
            await self._close_ws()
            raise

    async def close(self) -> None:
        """End the bridge session and release HTTP/WebSocket resources"""
        if self._ws is not None and self._http_session is not None and not self._http_session.closed:
            try:
                await self._post("/session/end")
            except TransportError as e:
                logger.debug(f"Bridge session end failed: {e}")

        await self._close_ws()

        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def logout(self) -> None:
        await self._post("/auth/logout")
        logger.info("Logged out from WhatsApp")

    # =========================================================================
    # HTTP API
    # =========================================================================

    async def get_status(self) -> Dict[str, Any]:
        """Bridge and protocol socket status"""
        return await self._get("/status")

    async def request_pairing_code(self, phone_number: str) -> str:
        data = await self._post("/auth/pairing-code", {"phoneNumber": phone_number})
        code = data.get("code")
        if not code:
            raise TransportError("Bridge returned no pairing code")
        return code

    async def send_presence(self, presence: str) -> None:
        await self._post("/presence", {"presence": presence})

    async def send_message(self, jid: str, content: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send a message to a chat.

        Args:
            jid: Chat ID (e.g., "5511987654321@s.whatsapp.net" or "group_id@g.us")
            content: Message content as the protocol library accepts it,
                e.g. {"text": "Hello"}

        Returns:
            Bridge response with messageId
        """
        return await self._post("/send", {"jid": jid, "content": content})

    async def _get(self, path: str) -> Dict[str, Any]:
        session = self._require_session()
        try:
            async with session.get(f"{self.http_url}{path}") as resp:
                self._check_response(resp, path)
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransportError(f"Bridge request GET {path} failed: {e}") from e

    async def _post(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        session = self._require_session()
        try:
            async with session.post(f"{self.http_url}{path}", json=payload or {}) as resp:
                self._check_response(resp, path)
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise TransportError(f"Bridge request POST {path} failed: {e}") from e

    def _check_response(self, resp, path: str) -> None:
        if resp.status == 429:
            raise TransportError(f"Bridge rate limited {path} (429)")
        resp.raise_for_status()

    def _require_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            raise TransportError("Not connected. Call connect() first.")
        return self._http_session

    async def _close_ws(self) -> None:
        if self._ws is not None:
            try:
                await self._ws.close()
            finally:
                self._ws = None

    # =========================================================================
    # WEBSOCKET EVENTS
    # =========================================================================

    async def events(self) -> AsyncIterator[TransportEvent]:
        """
        Yield transport events until the session closes.

        A WebSocket that drops without a close update is reported as a
        lost connection so the supervisor always sees a ConnectionClosed.
        """
        if self._ws is None:
            raise TransportError("Not connected. Call connect() first.")

        while True:
            try:
                msg = await self._ws.receive()
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error(f"Error in WebSocket listener: {e}")
                yield ConnectionClosed(reason=CloseReason.CONNECTION_LOST, message=str(e))
                return

            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = json.loads(msg.data)
                except ValueError:
                    logger.warning(f"Ignoring malformed bridge frame: {msg.data[:200]!r}")
                    continue

                for event in self.translate(data):
                    yield event
                    if isinstance(event, ConnectionClosed):
                        return

            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                logger.warning("Bridge WebSocket closed")
                yield ConnectionClosed(
                    reason=CloseReason.CONNECTION_LOST,
                    message="Bridge WebSocket closed",
                )
                return

    def translate(self, data: Dict[str, Any]) -> List[TransportEvent]:
        """Turn one bridge frame into transport events"""
        event_type = data.get("type")

        if event_type == "connection.update":
            return self._translate_connection_update(data)

        if event_type == "creds.update":
            self._credentials.creds.update(data.get("creds") or {})
            return [CredentialsUpdated(credentials=copy.deepcopy(self._credentials))]

        if event_type == "keys.update":
            self._credentials.apply_key_updates(data.get("keys") or {})
            return [CredentialsUpdated(credentials=copy.deepcopy(self._credentials))]

        if event_type == "messages.upsert":
            messages = [InboundMessage.from_bridge(m) for m in data.get("messages", [])]
            return [MessagesReceived(upsert_type=data.get("upsertType", "notify"), messages=messages)]

        logger.debug(f"Unknown bridge event type: {event_type}")
        return []

    def _translate_connection_update(self, data: Dict[str, Any]) -> List[TransportEvent]:
        events: List[TransportEvent] = []
        connection = data.get("connection")

        if data.get("qr"):
            events.append(CodeAvailable(qr=data["qr"]))

        if connection == "open":
            self._user = data.get("user") or None
            user = self._user or {}
            events.append(ConnectionOpened(
                user_id=user.get("id"),
                user_name=user.get("name"),
                is_new_login=bool(data.get("isNewLogin")),
            ))
        elif connection == "close":
            last = data.get("lastDisconnect") or {}
            status_code = last.get("statusCode")
            message = last.get("message")
            events.append(ConnectionClosed(
                reason=classify_close(status_code, message),
                status_code=status_code,
                message=message,
            ))
        elif data.get("isNewLogin") or data.get("receivedPendingNotifications"):
            events.append(StatusNotice(
                is_new_login=bool(data.get("isNewLogin")),
                received_pending_notifications=bool(data.get("receivedPendingNotifications")),
            ))

        return events
