"""
Client connection lifecycle.

    DISCONNECTED -> CONNECTING -> OPEN -> CLOSING -> DISCONNECTED

The manager owns exactly one transport at a time. Callbacks from a transport
that has since been replaced are ignored, so a late close from a stale socket
cannot disturb the current one. Reconnects back off exponentially
(min(1000 * 2^attempts, 30000) ms) up to a fixed attempt budget, after which
the client reports that it cannot connect and stops trying.
"""

import logging
from enum import Enum
from typing import Callable, Optional, Protocol, Union

from pydantic import BaseModel

from relay.client.pending import PendingMessageStore
from relay.client.timeline import Timeline
from relay.scheduler import Cancellable, PeriodicTask, Scheduler
from relay.schemas import (
    ClearChatFrame,
    ErrorCode,
    ErrorFrame,
    FrameError,
    HeartbeatAckFrame,
    HeartbeatFrame,
    HistoryFrame,
    JoinFrame,
    MessageFrame,
    MessageRecord,
    OnlineCountFrame,
    PresenceEntry,
    PresenceStatus,
    UserJoinedFrame,
    UserLeftFrame,
    UsersListFrame,
    UserStatusFrame,
    encode_frame,
    parse_frame,
)

logger = logging.getLogger(__name__)

BASE_RECONNECT_DELAY_MS = 1000
MAX_RECONNECT_DELAY_MS = 30000


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class ConnectionEvent(str, Enum):
    """Status notices surfaced to the host application."""
    CONNECTING = "connecting"
    ONLINE = "online"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"
    UNABLE_TO_CONNECT = "unable_to_connect"
    NAME_IN_USE = "name_in_use"


class Transport(Protocol):
    def start(self) -> None:
        ...

    def send(self, data: str) -> None:
        ...

    def close(self) -> None:
        ...


# factory(on_open, on_message, on_close) -> Transport
TransportFactory = Callable[
    [Callable[[], None], Callable[[Union[str, bytes]], None], Callable[[int], None]],
    Transport,
]


def reconnect_delay(attempts: int) -> float:
    """Backoff before reconnect number `attempts`, in seconds."""
    return min(BASE_RECONNECT_DELAY_MS * 2 ** attempts, MAX_RECONNECT_DELAY_MS) / 1000


class ConnectionManager:
    """Owns the transport, reconnect backoff and inbound frame routing."""

    def __init__(
        self,
        username: str,
        transport_factory: TransportFactory,
        scheduler: Scheduler,
        max_reconnect_attempts: int = 5,
        heartbeat_interval: float = 20.0,
        timeline: Optional[Timeline] = None,
        on_event: Optional[Callable[[ConnectionEvent], None]] = None,
        on_frame: Optional[Callable[[BaseModel], None]] = None,
    ):
        self.username = username
        self._transport_factory = transport_factory
        self._scheduler = scheduler
        self.max_reconnect_attempts = max_reconnect_attempts
        self.heartbeat_interval = heartbeat_interval
        self.timeline = timeline if timeline is not None else Timeline()
        self._on_event = on_event
        self._on_frame = on_frame

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.logged_in = True
        self.user_status = PresenceStatus.OFFLINE
        self.online_count = 0
        self.users: dict[str, PresenceEntry] = {}

        self._transport: Optional[Transport] = None
        self._reconnect_timer: Optional[Cancellable] = None
        self._heartbeat: Optional[PeriodicTask] = None
        self._pending: Optional[PendingMessageStore] = None

    def attach_pending(self, store: PendingMessageStore) -> None:
        self._pending = store

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def connect(self) -> None:
        """Open a transport unless one is already connecting or open."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            return
        if not self.logged_in:
            logger.debug("Not logged in, ignoring connect request")
            return

        self._cancel_reconnect()
        if self._transport is not None:
            stale, self._transport = self._transport, None
            stale.close()

        if self.reconnect_attempts >= self.max_reconnect_attempts:
            logger.error(f"Giving up after {self.reconnect_attempts} reconnect attempts")
            self.state = ConnectionState.DISCONNECTED
            self._emit(ConnectionEvent.UNABLE_TO_CONNECT)
            return

        self.state = ConnectionState.CONNECTING
        self._emit(ConnectionEvent.CONNECTING)
        transport = self._transport_factory(
            lambda: self._handle_open(transport),
            lambda raw: self._handle_message(transport, raw),
            lambda code: self._handle_close(transport, code),
        )
        self._transport = transport
        logger.info(f"Connecting as {self.username} (attempt {self.reconnect_attempts})")
        transport.start()

    def login(self) -> None:
        """Resume automatic connection after a logout or terminal failure."""
        self.logged_in = True
        self.reconnect_attempts = 0
        self.connect()

    def logout(self) -> None:
        """Close the connection for good and cancel every timer that could resurrect work."""
        self.logged_in = False
        self._cancel_reconnect()
        self._stop_heartbeat()
        if self._pending is not None:
            self._pending.cancel_all()

        if self._transport is not None and self.state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            self.state = ConnectionState.CLOSING
            logger.info(f"Logging out {self.username}")
            self._transport.close()
        else:
            self.state = ConnectionState.DISCONNECTED
        self.user_status = PresenceStatus.OFFLINE

    def _handle_open(self, transport: Transport) -> None:
        if transport is not self._transport:
            return
        self.reconnect_attempts = 0
        self.state = ConnectionState.OPEN
        self.user_status = PresenceStatus.ONLINE
        logger.info("Connection open")
        self._emit(ConnectionEvent.ONLINE)

        self.send_frame(JoinFrame(username=self.username, timestamp=self._scheduler.now_ms()))
        self._start_heartbeat()
        if self._pending is not None:
            self._pending.flush()

    def _handle_close(self, transport: Transport, code: int) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        self._stop_heartbeat()
        closing = self.state == ConnectionState.CLOSING
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts += 1

        if self.logged_in and not closing:
            delay = reconnect_delay(self.reconnect_attempts)
            logger.warning(f"Connection closed (code {code}), reconnecting in {delay}s")
            self._reconnect_timer = self._scheduler.call_later(delay, self._reconnect)
            self._emit(ConnectionEvent.RECONNECTING)
        else:
            logger.info(f"Connection closed (code {code})")
            self._emit(ConnectionEvent.DISCONNECTED)

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat = self._scheduler.call_every(self.heartbeat_interval, self._send_heartbeat)

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None

    def _send_heartbeat(self) -> None:
        self.send_frame(HeartbeatFrame(timestamp=self._scheduler.now_ms()))

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def send_frame(self, frame: BaseModel) -> bool:
        """Transmit a frame if the connection is open. Returns False otherwise."""
        if self.state != ConnectionState.OPEN or self._transport is None:
            return False
        try:
            self._transport.send(encode_frame(frame))
        except ConnectionError as e:
            logger.warning(f"Failed to send {frame.type} frame: {e}")
            return False
        return True

    def set_status(self, status: PresenceStatus) -> None:
        """Report an away/online change (e.g. the app went to the background)."""
        if status == self.user_status or status == PresenceStatus.OFFLINE:
            return
        self.user_status = status
        self.send_frame(UserStatusFrame(username=self.username, status=status, timestamp=self._scheduler.now_ms()))

    def clear_chat(self) -> bool:
        return self.send_frame(ClearChatFrame(username=self.username, timestamp=self._scheduler.now_ms()))

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def _handle_message(self, transport: Transport, raw: Union[str, bytes]) -> None:
        if transport is not self._transport:
            return
        try:
            frame = parse_frame(raw)
        except FrameError as e:
            logger.warning(f"Dropping inbound frame ({e.reason}): {e.detail}")
            return

        self.dispatch(frame)
        if self._on_frame is not None:
            self._on_frame(frame)

    def dispatch(self, frame: BaseModel) -> None:
        if isinstance(frame, MessageFrame):
            record = frame_record(frame)
            if record.author == self.username and self._pending is not None:
                self._pending.reconcile(record.id)
            self.timeline.add(record)

        elif isinstance(frame, HistoryFrame):
            if self._pending is not None:
                for record in frame.messages:
                    if record.author == self.username:
                        self._pending.reconcile(record.id)
            added = self.timeline.merge(frame.messages)
            logger.debug(f"History merged, {added} new message(s)")

        elif isinstance(frame, (UserJoinedFrame, UserLeftFrame)):
            self.online_count = frame.online_count
            if isinstance(frame, UserLeftFrame):
                self.users.pop(frame.username, None)
            else:
                self.users[frame.username] = PresenceEntry(
                    username=frame.username, status=PresenceStatus.ONLINE, last_seen=frame.timestamp
                )

        elif isinstance(frame, OnlineCountFrame):
            self.online_count = frame.count

        elif isinstance(frame, UserStatusFrame):
            if frame.username == self.username:
                self.user_status = frame.status
            entry = self.users.get(frame.username)
            if entry is not None:
                entry.status = frame.status

        elif isinstance(frame, UsersListFrame):
            self.users = {u.username: u for u in frame.users}
            self.online_count = len(frame.users)

        elif isinstance(frame, ClearChatFrame):
            logger.info(f"Chat cleared by {frame.username}")
            self.timeline.clear()

        elif isinstance(frame, ErrorFrame):
            self._handle_error(frame)

        elif isinstance(frame, HeartbeatAckFrame):
            logger.debug("Heartbeat acknowledged")

    def _handle_error(self, frame: ErrorFrame) -> None:
        if frame.code == ErrorCode.NAME_IN_USE:
            # Same name would be rejected again; stop self-healing
            logger.error(f"Join rejected: {frame.message}")
            self.logged_in = False
            self._cancel_reconnect()
            if self._pending is not None:
                self._pending.cancel_all()
            self._emit(ConnectionEvent.NAME_IN_USE)
        else:
            logger.warning(f"Relay error ({frame.code}): {frame.message}")

    def _emit(self, event: ConnectionEvent) -> None:
        if self._on_event is not None:
            self._on_event(event)


def frame_record(frame: MessageFrame) -> MessageRecord:
    return MessageRecord(id=frame.id, text=frame.text, author=frame.username or "", timestamp=frame.timestamp)
