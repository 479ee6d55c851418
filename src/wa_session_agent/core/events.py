"""
Transport Events and Interface

Everything the supervisor hears from a transport is one of the event
dataclasses below, delivered in order through Transport.events(). Concrete
transports translate their native notifications into these types so the
supervisor never dispatches on event-name strings.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from .credentials import Credentials
from .policy import CloseReason


class TransportError(ConnectionError):
    """The transport could not be constructed or a request to it failed"""


@dataclass
class ConnectionOpened:
    """The session is authenticated and usable"""
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    is_new_login: bool = False


@dataclass
class ConnectionClosed:
    """The session ended; reason drives the reconnect policy"""
    reason: CloseReason
    status_code: Optional[int] = None
    message: Optional[str] = None


@dataclass
class CodeAvailable:
    """The transport is unpaired and offers a scannable code"""
    qr: str


@dataclass
class CredentialsUpdated:
    """New session material that must be persisted"""
    credentials: Credentials


@dataclass
class StatusNotice:
    """Informational lifecycle flags with no state change"""
    is_new_login: bool = False
    received_pending_notifications: bool = False


@dataclass
class InboundMessage:
    """One inbound chat message as delivered by the transport"""
    id: str
    remote_jid: str
    from_me: bool = False
    message: Optional[Dict[str, Any]] = None
    push_name: Optional[str] = None
    timestamp: int = 0
    participant: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return self.remote_jid.endswith("@g.us")

    @classmethod
    def from_bridge(cls, data: Dict[str, Any]) -> "InboundMessage":
        """Create from the bridge's WAMessage JSON"""
        key = data.get("key", {})
        timestamp = data.get("messageTimestamp", 0)
        if isinstance(timestamp, dict):
            # Long values arrive as {"low": ..., "high": ...}
            timestamp = timestamp.get("low", 0)

        return cls(
            id=key.get("id", ""),
            remote_jid=key.get("remoteJid", ""),
            from_me=key.get("fromMe", False),
            message=data.get("message"),
            push_name=data.get("pushName"),
            timestamp=int(timestamp or 0),
            participant=key.get("participant"),
        )


@dataclass
class MessagesReceived:
    """A batch of inbound messages"""
    upsert_type: str
    messages: List[InboundMessage] = field(default_factory=list)


TransportEvent = Union[
    ConnectionOpened,
    ConnectionClosed,
    CodeAvailable,
    CredentialsUpdated,
    StatusNotice,
    MessagesReceived,
]


class Transport(ABC):
    """
    One session against the remote messaging service.

    connect() starts a session with the given credentials; events() then
    yields everything that happens until (and including) a ConnectionClosed.
    A transport instance may be connected again after it closed.
    """

    @abstractmethod
    async def connect(self, credentials: Credentials) -> None:
        """
        Start a session.

        Raises:
            TransportError: The session could not be constructed
        """

    @abstractmethod
    def events(self) -> AsyncIterator[TransportEvent]:
        """Events for the current session, ending after ConnectionClosed"""

    @abstractmethod
    async def request_pairing_code(self, phone_number: str) -> str:
        """Ask for a numeric pairing code bound to phone_number"""

    @abstractmethod
    async def send_presence(self, presence: str) -> None:
        """Publish presence ("available" / "unavailable")"""

    @abstractmethod
    async def send_message(self, jid: str, content: Dict[str, Any]) -> Dict[str, Any]:
        """Send content to a chat; returns the transport's result"""

    @abstractmethod
    async def logout(self) -> None:
        """Log the linked device out of the account"""

    @abstractmethod
    async def close(self) -> None:
        """Drop the current session without logging out"""

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        """Connected account, when known"""
        return None
