"""
Session Agent Configuration Schema

Defines the configuration structure for the session agent.
All configuration can be specified via agent.yaml or environment variables.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from pathlib import Path


AFTER_INVALIDATION_CHOICES = ("scan", "keep")


@dataclass
class BridgeConfig:
    """Connection settings for the multi-device bridge"""
    http_url: str = "http://localhost:3000"
    ws_url: str = "ws://localhost:3001"
    # Identity shown on the phone's linked-devices list
    browser: List[str] = field(default_factory=lambda: ["Session Agent", "Chrome", "3.0.0"])
    request_timeout: float = 60.0
    sync_full_history: bool = False


@dataclass
class SessionConfig:
    """Where session credentials live and how shutdown treats them"""
    session_dir: str = "./auth_info"
    logout_on_shutdown: bool = True


@dataclass
class ReconnectConfig:
    """Retry budget and per-reason delays (seconds)"""
    max_attempts: int = 5
    connect_cooldown: float = 5.0
    rate_limit_cooldown: float = 30.0
    credential_reset_delay: float = 3.0
    transient_delay: float = 5.0
    timed_out_delay: float = 10.0
    restart_required_delay: float = 5.0
    unknown_delay: float = 5.0


@dataclass
class PairingSettings:
    """
    Bootstrap settings.

    method / phone_number preset the first-run answers so the agent can
    start without a terminal. after_invalidation controls how pairing
    works again once credentials were discarded by the reconnect policy:
    "scan" falls back to scan-code, "keep" reuses the original method.
    """
    method: Optional[str] = None  # "scan" | "numeric"
    phone_number: Optional[str] = None
    default_country_code: str = "55"
    after_invalidation: str = "scan"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class AgentConfig:
    """
    Central configuration for the session agent.

    Example agent.yaml:
    ```yaml
    bridge:
      http_url: "${BRIDGE_HTTP_URL:-http://localhost:3000}"
      ws_url: "${BRIDGE_WS_URL:-ws://localhost:3001}"

    session:
      session_dir: ./auth_info

    reconnect:
      max_attempts: 5

    pairing:
      method: numeric
      phone_number: "${BOT_PHONE_NUMBER}"
    ```
    """
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    pairing: PairingSettings = field(default_factory=PairingSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Relative paths are resolved against this directory
    working_dir: Path = field(default_factory=Path.cwd)

    @property
    def session_path(self) -> Path:
        """Absolute session directory"""
        path = Path(self.session.session_dir).expanduser()
        if not path.is_absolute():
            path = self.working_dir / path
        return path

    def validate(self) -> tuple[bool, list[str]]:
        """
        Validate configuration.

        Returns:
            (is_valid, error_messages)
        """
        errors = []

        if not self.bridge.http_url.startswith(("http://", "https://")):
            errors.append("Invalid bridge.http_url: must start with http:// or https://")

        if not self.bridge.ws_url.startswith(("ws://", "wss://")):
            errors.append("Invalid bridge.ws_url: must start with ws:// or wss://")

        if self.reconnect.max_attempts < 1:
            errors.append("reconnect.max_attempts must be at least 1")

        for name in (
            "connect_cooldown",
            "rate_limit_cooldown",
            "credential_reset_delay",
            "transient_delay",
            "timed_out_delay",
            "restart_required_delay",
            "unknown_delay",
        ):
            if getattr(self.reconnect, name) < 0:
                errors.append(f"reconnect.{name} cannot be negative")

        if self.pairing.method not in (None, "scan", "numeric"):
            errors.append(
                f"Invalid pairing.method '{self.pairing.method}': expected 'scan' or 'numeric'"
            )

        if self.pairing.after_invalidation not in AFTER_INVALIDATION_CHOICES:
            errors.append(
                f"Invalid pairing.after_invalidation '{self.pairing.after_invalidation}': "
                f"expected one of {', '.join(AFTER_INVALIDATION_CHOICES)}"
            )

        if not self.pairing.default_country_code.isdigit():
            errors.append("pairing.default_country_code must contain digits only")

        return (len(errors) == 0, errors)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        """Create AgentConfig from dictionary (e.g., parsed YAML)"""
        bridge_data = data.get("bridge") or {}
        bridge_config = BridgeConfig(
            http_url=bridge_data.get("http_url", "http://localhost:3000"),
            ws_url=bridge_data.get("ws_url", "ws://localhost:3001"),
            browser=list(bridge_data.get("browser", ["Session Agent", "Chrome", "3.0.0"])),
            request_timeout=float(bridge_data.get("request_timeout", 60.0)),
            sync_full_history=bool(bridge_data.get("sync_full_history", False)),
        )

        session_data = data.get("session") or {}
        session_config = SessionConfig(
            session_dir=str(session_data.get("session_dir", "./auth_info")),
            logout_on_shutdown=bool(session_data.get("logout_on_shutdown", True)),
        )

        reconnect_data = data.get("reconnect") or {}
        defaults = ReconnectConfig()
        reconnect_config = ReconnectConfig(
            max_attempts=int(reconnect_data.get("max_attempts", defaults.max_attempts)),
            **{
                name: float(reconnect_data.get(name, getattr(defaults, name)))
                for name in (
                    "connect_cooldown",
                    "rate_limit_cooldown",
                    "credential_reset_delay",
                    "transient_delay",
                    "timed_out_delay",
                    "restart_required_delay",
                    "unknown_delay",
                )
            },
        )

        pairing_data = data.get("pairing") or {}
        phone = pairing_data.get("phone_number")
        pairing_config = PairingSettings(
            method=pairing_data.get("method") or None,
            # YAML reads bare digit strings as ints
            phone_number=str(phone) if phone else None,
            default_country_code=str(pairing_data.get("default_country_code", "55")),
            after_invalidation=pairing_data.get("after_invalidation", "scan"),
        )

        logging_data = data.get("logging") or {}
        logging_config = LoggingConfig(
            level=str(logging_data.get("level", "INFO")).upper(),
            format=logging_data.get("format", LoggingConfig.format),
        )

        return cls(
            bridge=bridge_config,
            session=session_config,
            reconnect=reconnect_config,
            pairing=pairing_config,
            logging=logging_config,
            working_dir=Path(data.get("working_dir", ".")),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary (for serialization)"""
        return {
            "bridge": {
                "http_url": self.bridge.http_url,
                "ws_url": self.bridge.ws_url,
                "browser": list(self.bridge.browser),
                "request_timeout": self.bridge.request_timeout,
                "sync_full_history": self.bridge.sync_full_history,
            },
            "session": {
                "session_dir": self.session.session_dir,
                "logout_on_shutdown": self.session.logout_on_shutdown,
            },
            "reconnect": {
                "max_attempts": self.reconnect.max_attempts,
                "connect_cooldown": self.reconnect.connect_cooldown,
                "rate_limit_cooldown": self.reconnect.rate_limit_cooldown,
                "credential_reset_delay": self.reconnect.credential_reset_delay,
                "transient_delay": self.reconnect.transient_delay,
                "timed_out_delay": self.reconnect.timed_out_delay,
                "restart_required_delay": self.reconnect.restart_required_delay,
                "unknown_delay": self.reconnect.unknown_delay,
            },
            "pairing": {
                "method": self.pairing.method,
                "phone_number": self.pairing.phone_number,
                "default_country_code": self.pairing.default_country_code,
                "after_invalidation": self.pairing.after_invalidation,
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
            "working_dir": str(self.working_dir),
        }
