"""
WhatsApp Session Agent

Connection lifecycle and session persistence for a WhatsApp bot: pairing,
credential storage, supervised reconnects and inbound event routing.
"""

__version__ = "0.1.0"
