"""
Reconnect Policy

Maps the reason a session closed to what the supervisor does next.
The decision is a pure function of (reason, attempts, max_attempts) and the
configured delays; the supervisor owns the counter and carries out the verdict.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..config.schema import ReconnectConfig


class CloseReason(str, Enum):
    """Why the transport closed the session"""
    BAD_SESSION = "bad_session"
    LOGGED_OUT = "logged_out"
    CONNECTION_CLOSED = "connection_closed"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_REPLACED = "connection_replaced"
    TIMED_OUT = "timed_out"
    RESTART_REQUIRED = "restart_required"
    MULTIDEVICE_MISMATCH = "multidevice_mismatch"
    UNKNOWN = "unknown"


# Multi-device protocol DisconnectReason status codes.
# 408 is shared by "connection lost" and "timed out"; see classify_close().
STATUS_CODES = {
    500: CloseReason.BAD_SESSION,
    401: CloseReason.LOGGED_OUT,
    428: CloseReason.CONNECTION_CLOSED,
    408: CloseReason.CONNECTION_LOST,
    440: CloseReason.CONNECTION_REPLACED,
    515: CloseReason.RESTART_REQUIRED,
    411: CloseReason.MULTIDEVICE_MISMATCH,
}

CREDENTIAL_TRUST_REASONS = frozenset({CloseReason.BAD_SESSION, CloseReason.LOGGED_OUT})


def classify_close(status_code: Optional[int], message: Optional[str] = None) -> CloseReason:
    """
    Classify a transport close into a CloseReason.

    Args:
        status_code: Numeric status from the transport (may be missing)
        message: Error text accompanying the close, used to split 408

    Returns:
        CloseReason, UNKNOWN for anything unrecognised
    """
    if status_code is None:
        return CloseReason.UNKNOWN

    reason = STATUS_CODES.get(status_code, CloseReason.UNKNOWN)

    if reason is CloseReason.CONNECTION_LOST and message:
        text = message.lower()
        if "timed out" in text or "timeout" in text:
            return CloseReason.TIMED_OUT

    return reason


class VerdictAction(str, Enum):
    RETRY = "retry"
    INVALIDATE_AND_RETRY = "invalidate_and_retry"
    TERMINATE = "terminate"


@dataclass(frozen=True)
class Verdict:
    """
    Outcome of a reconnect decision.

    invalidate: discard stored credentials before acting
    fatal: a TERMINATE that should exit non-zero
    """
    action: VerdictAction
    delay: float = 0.0
    invalidate: bool = False
    fatal: bool = False

    @property
    def is_retry(self) -> bool:
        return self.action is not VerdictAction.TERMINATE


def retry_delay(reason: CloseReason, delays: ReconnectConfig) -> float:
    """Delay before reconnecting after a closure with this reason"""
    if reason in CREDENTIAL_TRUST_REASONS:
        return delays.credential_reset_delay
    if reason in (CloseReason.CONNECTION_CLOSED, CloseReason.CONNECTION_LOST):
        return delays.transient_delay
    if reason is CloseReason.TIMED_OUT:
        return delays.timed_out_delay
    if reason is CloseReason.RESTART_REQUIRED:
        return delays.restart_required_delay
    return delays.unknown_delay


def decide(
    reason: CloseReason,
    attempts: int,
    max_attempts: int,
    delays: Optional[ReconnectConfig] = None,
) -> Verdict:
    """
    Decide what to do after the session closed.

    Args:
        reason: Classified close reason
        attempts: Reconnect attempts already counted, including this closure
        max_attempts: Retry budget
        delays: Delay settings (defaults when omitted)

    Returns:
        Verdict for the supervisor
    """
    delays = delays or ReconnectConfig()

    # Another device owns the identity; fighting it would loop forever.
    if reason is CloseReason.CONNECTION_REPLACED:
        return Verdict(VerdictAction.TERMINATE, fatal=False)

    credential_trust = reason in CREDENTIAL_TRUST_REASONS

    if attempts >= max_attempts:
        return Verdict(VerdictAction.TERMINATE, invalidate=credential_trust, fatal=True)

    if credential_trust:
        return Verdict(
            VerdictAction.INVALIDATE_AND_RETRY,
            delay=retry_delay(reason, delays),
            invalidate=True,
        )

    return Verdict(VerdictAction.RETRY, delay=retry_delay(reason, delays))


class ReconnectPolicy:
    """decide() bound to a ReconnectConfig"""

    def __init__(self, config: Optional[ReconnectConfig] = None):
        self.config = config or ReconnectConfig()

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    def decide(self, reason: CloseReason, attempts: int) -> Verdict:
        return decide(reason, attempts, self.config.max_attempts, self.config)
