"""
Session Agent Channels

Operator display and the WhatsApp bridge transport.
"""

from .display import OperatorDisplay

__all__ = ["OperatorDisplay"]
