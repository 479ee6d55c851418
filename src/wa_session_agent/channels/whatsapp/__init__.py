"""
WhatsApp Channel - Bridge Transport

Architecture:
    ConnectionSupervisor <-> BridgeTransport <-> Bridge (Node.js) <-> WhatsApp

The Node.js bridge wraps the multi-device protocol library and handles:
- The protocol socket and handshake
- Scan-code and numeric pairing-code issuance
- Message sending/receiving

Session credentials are owned by the agent: the bridge receives them on
session start and reports every change back as creds.update / keys.update.
"""

from .client import BridgeTransport

__all__ = ["BridgeTransport"]
