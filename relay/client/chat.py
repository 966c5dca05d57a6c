"""
Chat client facade.

Wires settings, the asyncio scheduler, the WebSocket transport, the
connection manager and the pending message store into one object a UI
(or a script) can drive.
"""

import logging
from typing import Callable, Optional

from pydantic import BaseModel

from relay.client.config import ClientSettings, get_client_settings
from relay.client.connection import ConnectionEvent, ConnectionManager, TransportFactory
from relay.client.offline_queue import OfflineQueue
from relay.client.pending import PendingEntry, PendingMessageStore
from relay.client.timeline import Timeline
from relay.client.transport import WebSocketTransport
from relay.scheduler import AsyncioScheduler, Scheduler
from relay.schemas import PresenceStatus, validate_username

logger = logging.getLogger(__name__)


class ChatClient:
    """
    One user's connection to the relay.

    Must be created and driven from inside a running event loop.
    """

    def __init__(
        self,
        username: str,
        settings: Optional[ClientSettings] = None,
        scheduler: Optional[Scheduler] = None,
        on_event: Optional[Callable[[ConnectionEvent], None]] = None,
        on_frame: Optional[Callable[[BaseModel], None]] = None,
        on_delivery: Optional[Callable[[PendingEntry], None]] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.settings = settings or get_client_settings()
        self.username = validate_username(username)
        self.scheduler = scheduler or AsyncioScheduler()

        self.timeline = Timeline(limit=self.settings.TIMELINE_LIMIT)
        self.connection = ConnectionManager(
            self.username,
            transport_factory or self._make_transport,
            self.scheduler,
            max_reconnect_attempts=self.settings.MAX_RECONNECT_ATTEMPTS,
            heartbeat_interval=self.settings.HEARTBEAT_INTERVAL_SECONDS,
            timeline=self.timeline,
            on_event=on_event,
            on_frame=on_frame,
        )
        self.pending = PendingMessageStore(
            self.connection,
            self.scheduler,
            self.username,
            queue=OfflineQueue(self.settings.OFFLINE_QUEUE_PATH or None),
            max_attempts=self.settings.MAX_DELIVERY_ATTEMPTS,
            delivery_timeout=self.settings.DELIVERY_TIMEOUT_SECONDS,
            offline_retry_delay=self.settings.OFFLINE_RETRY_SECONDS,
            flush_stagger=self.settings.FLUSH_STAGGER_SECONDS,
            on_change=on_delivery,
        )
        self.connection.attach_pending(self.pending)

    def _make_transport(self, on_open, on_message, on_close) -> WebSocketTransport:
        return WebSocketTransport(
            self.settings.SERVER_URL,
            on_open,
            on_message,
            on_close,
            open_timeout=self.settings.OPEN_TIMEOUT_SECONDS,
        )

    def start(self) -> None:
        """Restore queued messages from the last run, then connect."""
        restored = self.pending.restore()
        if restored:
            logger.info(f"Restored {restored} unacknowledged message(s)")
        self.connection.connect()

    def send(self, text: str) -> PendingEntry:
        return self.pending.submit(text)

    def retry(self, message_id: str) -> bool:
        return self.pending.retry(message_id)

    def set_status(self, status: PresenceStatus) -> None:
        self.connection.set_status(status)

    def clear_chat(self) -> bool:
        return self.connection.clear_chat()

    def logout(self) -> None:
        self.connection.logout()
