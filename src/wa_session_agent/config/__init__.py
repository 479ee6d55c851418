"""
Session Agent Configuration Module

Provides centralized configuration management for the session agent.
"""

from .schema import (
    AgentConfig,
    BridgeConfig,
    SessionConfig,
    ReconnectConfig,
    PairingSettings,
    LoggingConfig,
)
from .loader import load_config, load_config_from_file, create_default_config

__all__ = [
    "AgentConfig",
    "BridgeConfig",
    "SessionConfig",
    "ReconnectConfig",
    "PairingSettings",
    "LoggingConfig",
    "load_config",
    "load_config_from_file",
    "create_default_config",
]
