"""
Session Agent Daemon

Wires configuration, credential store, pairing, transport and supervisor
together and runs the supervisor until it terminates.
"""

import asyncio
import logging
import signal
from typing import Callable, Optional

from .channels.display import OperatorDisplay
from .channels.whatsapp.client import BridgeTransport
from .config.schema import AgentConfig
from .core.credentials import CredentialStore
from .core.events import InboundMessage, Transport
from .core.pairing import (
    InvalidPhoneNumberError,
    PairingConfig,
    PairingCoordinator,
    PairingMethod,
    normalize_phone_number,
)
from .core.policy import ReconnectPolicy
from .core.router import EventRouter, InboundHandler
from .core.supervisor import EXIT_FATAL, ConnectionSupervisor

logger = logging.getLogger(__name__)


async def log_inbound_message(message: InboundMessage) -> None:
    """Default handler when no conversational layer is attached"""
    sender = message.push_name or message.participant or message.remote_jid
    logger.info(f"💬 Message {message.id} from {sender}")


def resolve_pairing(
    config: AgentConfig,
    store: CredentialStore,
    coordinator: Optional[PairingCoordinator] = None,
) -> PairingConfig:
    """
    Pairing method for this process.

    The coordinator only runs when no session is stored; resumed sessions
    keep the configured method, or scan-code when none is configured.
    """
    settings = config.pairing

    if store.exists():
        logger.info("♻️  Resuming stored session, skipping pairing setup")
        if settings.method == PairingMethod.NUMERIC_CODE.value and settings.phone_number:
            try:
                phone = normalize_phone_number(settings.phone_number, settings.default_country_code)
            except InvalidPhoneNumberError as e:
                logger.warning(f"Configured phone number rejected, pairing by scan code if needed: {e}")
            else:
                return PairingConfig(method=PairingMethod.NUMERIC_CODE, phone_number=phone)
        return PairingConfig(method=PairingMethod.SCAN_CODE)

    coordinator = coordinator or PairingCoordinator(
        default_country_code=settings.default_country_code
    )
    return coordinator.bootstrap(settings.method, settings.phone_number)


def build_supervisor(
    config: AgentConfig,
    pairing: PairingConfig,
    store: Optional[CredentialStore] = None,
    transport: Optional[Transport] = None,
    handler: Optional[InboundHandler] = None,
    display: Optional[OperatorDisplay] = None,
) -> ConnectionSupervisor:
    """Construct the supervisor and its collaborators from configuration"""
    store = store or CredentialStore(config.session_path)
    transport = transport or BridgeTransport(
        http_url=config.bridge.http_url,
        ws_url=config.bridge.ws_url,
        browser=config.bridge.browser,
        request_timeout=config.bridge.request_timeout,
        sync_full_history=config.bridge.sync_full_history,
    )
    router = EventRouter(handler=handler or log_inbound_message)

    return ConnectionSupervisor(
        transport=transport,
        store=store,
        router=router,
        pairing=pairing,
        policy=ReconnectPolicy(config.reconnect),
        display=display or OperatorDisplay(),
        after_invalidation=config.pairing.after_invalidation,
        logout_on_shutdown=config.session.logout_on_shutdown,
    )


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    on_signal: Callable[[], None],
) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform; Ctrl+C falls back to KeyboardInterrupt
            logger.debug(f"Signal handler for {sig.name} not installed")


async def run_daemon(config: AgentConfig, pairing: PairingConfig) -> int:
    """
    Run the session agent until the supervisor terminates.

    Returns:
        Process exit status
    """
    supervisor = build_supervisor(config, pairing)
    install_signal_handlers(asyncio.get_running_loop(), supervisor.request_shutdown)

    print("🚀 WhatsApp Session Agent starting...")
    print(f"   Session: {config.session_path}")
    print(f"   Bridge: {config.bridge.http_url} / {config.bridge.ws_url}")
    print(f"   Pairing: {pairing.method.value}")
    print("   Press Ctrl+C to stop")

    try:
        return await supervisor.run()
    except Exception as e:
        logger.critical(f"❌ Unrecoverable error: {e}", exc_info=True)
        await supervisor.aclose()
        return EXIT_FATAL
