"""
Session Agent Core

Credential store, pairing, reconnect policy, supervisor and event router.
"""

from .credentials import Credentials, CredentialStore, SessionInfo
from .events import (
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
from .pairing import (
    InvalidPhoneNumberError,
    PairingConfig,
    PairingCoordinator,
    PairingMethod,
    normalize_phone_number,
)
from .policy import CloseReason, ReconnectPolicy, Verdict, VerdictAction, classify_close
from .router import EventRouter
from .supervisor import ConnectionState, ConnectionSupervisor, NotConnectedError

__all__ = [
    "Credentials",
    "CredentialStore",
    "SessionInfo",
    "CodeAvailable",
    "ConnectionClosed",
    "ConnectionOpened",
    "CredentialsUpdated",
    "InboundMessage",
    "MessagesReceived",
    "StatusNotice",
    "Transport",
    "TransportError",
    "TransportEvent",
    "InvalidPhoneNumberError",
    "PairingConfig",
    "PairingCoordinator",
    "PairingMethod",
    "normalize_phone_number",
    "CloseReason",
    "ReconnectPolicy",
    "Verdict",
    "VerdictAction",
    "classify_close",
    "EventRouter",
    "ConnectionState",
    "ConnectionSupervisor",
    "NotConnectedError",
]
