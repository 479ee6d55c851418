"""
Event Router

Boundary between the connection supervisor and the conversational
handlers. Lifecycle notifications and inbound messages arrive here;
self-sent and broadcast traffic is dropped before any handler sees it so
replies can never feed back into the bot.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from .events import InboundMessage, MessagesReceived
from .policy import CloseReason

logger = logging.getLogger(__name__)

InboundHandler = Callable[[InboundMessage], Awaitable[None]]

BROADCAST_SUFFIX = "@broadcast"
STATUS_BROADCAST_JID = "status@broadcast"


def is_broadcast_jid(jid: str) -> bool:
    return bool(jid) and jid.endswith(BROADCAST_SUFFIX)


def is_status_broadcast_jid(jid: str) -> bool:
    return jid == STATUS_BROADCAST_JID


class EventRouter:
    """
    Routes transport notifications to a conversational handler.

    Handler calls run as tracked background tasks so a slow reply never
    holds up event delivery; their errors are logged and never propagate.
    """

    def __init__(
        self,
        handler: Optional[InboundHandler] = None,
        on_open: Optional[Callable[[], Awaitable[None]]] = None,
        on_closed: Optional[Callable[[CloseReason], Awaitable[None]]] = None,
    ):
        self.handler = handler
        self._on_open = on_open
        self._on_closed = on_closed
        self._tasks: Set[asyncio.Task] = set()

    async def on_session_open(self) -> None:
        if self._on_open:
            await self._call_safely(self._on_open(), "session-open hook")

    async def on_session_closed(self, reason: CloseReason) -> None:
        if self._on_closed:
            await self._call_safely(self._on_closed(reason), "session-closed hook")

    def accepts(self, message: InboundMessage) -> bool:
        """Whether a message should reach the handler"""
        if message.from_me:
            return False
        if is_broadcast_jid(message.remote_jid) or is_status_broadcast_jid(message.remote_jid):
            return False
        if not message.message:
            return False
        return True

    async def dispatch(self, event: MessagesReceived) -> int:
        """
        Forward the accepted messages of a batch to the handler.

        Returns:
            Number of messages handed to the handler
        """
        if event.upsert_type != "notify":
            logger.debug(f"Ignoring '{event.upsert_type}' upsert of {len(event.messages)} messages")
            return 0

        dispatched = 0
        for message in event.messages:
            if not self.accepts(message):
                continue

            kind = "group" if message.is_group else "contact"
            logger.info(f"📨 New message from {kind}: {message.remote_jid}")

            if self.handler is None:
                continue

            task = asyncio.create_task(
                self._call_safely(self.handler(message), f"handler for {message.id}")
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatched += 1

        return dispatched

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight handler calls, cancelling any still running after timeout"""
        if not self._tasks:
            return

        tasks = list(self._tasks)
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} handler calls at shutdown")
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _call_safely(self, coro: Awaitable[None], label: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"❌ Error in {label}: {e}", exc_info=True)
