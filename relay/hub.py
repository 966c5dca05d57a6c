"""
Relay hub: per-event handling for WebSocket connections.

One hub is owned by the running app. Each connection event (open, inbound
frame, close) is handled synchronously to completion, so the registry,
broadcaster and history log need no locking.
"""

import logging
from typing import Optional, Union

from relay.broadcaster import Broadcaster
from relay.connections import Connection
from relay.history import HistoryLog
from relay.metrics import record_frame, record_protocol_error
from relay.scheduler import Scheduler
from relay.schemas import (
    CLIENT_FRAME_TYPES,
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
    UserStatusFrame,
    parse_frame,
)
from relay.sessions import SessionRegistry

logger = logging.getLogger(__name__)


class RelayHub:
    """Routes connection events to the registry, history log and broadcaster."""

    def __init__(
        self,
        history: HistoryLog,
        scheduler: Scheduler,
        broadcaster: Optional[Broadcaster] = None,
        registry: Optional[SessionRegistry] = None,
        max_text_length: int = 500,
        history_seed_limit: int = 100,
        clear_chat_max_occupancy: int = 2,
    ):
        self.history = history
        self.scheduler = scheduler
        self.broadcaster = broadcaster or Broadcaster()
        self.registry = registry or SessionRegistry(self.broadcaster, scheduler)
        self.max_text_length = max_text_length
        self.history_seed_limit = history_seed_limit
        self.clear_chat_max_occupancy = clear_chat_max_occupancy

    def start(self) -> None:
        self.registry.start()

    def shutdown(self) -> None:
        self.registry.shutdown()
        self.broadcaster.close_all()

    # -------------------------------------------------------------------------
    # Connection events
    # -------------------------------------------------------------------------

    def handle_connect(self, connection: Connection) -> None:
        """Register a new connection and seed it with recent history."""
        self.broadcaster.add(connection)
        logger.info("New connection")
        self.broadcaster.send(connection, HistoryFrame(messages=self.history.recent(self.history_seed_limit)))

    def handle_disconnect(self, connection: Connection) -> None:
        self.broadcaster.remove(connection)
        username = self.registry.handle_disconnect(connection)
        logger.info(f"Connection closed{f' ({username})' if username else ''}")

    def handle_raw(self, connection: Connection, raw: Union[str, bytes]) -> None:
        """
        Parse and dispatch one inbound frame.

        Protocol errors are logged, counted and answered with an error
        frame; the connection stays open.
        """
        try:
            frame = parse_frame(raw)
        except FrameError as e:
            self._protocol_error(connection, e.reason, e.detail)
            return

        if not isinstance(frame, CLIENT_FRAME_TYPES):
            self._protocol_error(connection, "unexpected", f"Clients may not send {frame.type} frames")
            return

        record_frame("in", frame.type)
        self.handle_frame(connection, frame)

    def handle_frame(self, connection: Connection, frame) -> None:
        if isinstance(frame, JoinFrame):
            self.registry.handle_join(frame.username, connection)
        elif isinstance(frame, MessageFrame):
            self._handle_message(connection, frame)
        elif isinstance(frame, HeartbeatFrame):
            self._handle_heartbeat(connection, frame)
        elif isinstance(frame, UserStatusFrame):
            if self.registry.set_status(connection, frame.status) is None:
                self._not_joined(connection)
        elif isinstance(frame, ClearChatFrame):
            self._handle_clear_chat(connection)

    # -------------------------------------------------------------------------
    # Frame handlers
    # -------------------------------------------------------------------------

    def _handle_message(self, connection: Connection, frame: MessageFrame) -> None:
        username = self.registry.handle_activity(connection)
        if username is None:
            self._not_joined(connection)
            return

        text = frame.text.strip()
        if not text:
            logger.debug(f"Dropping empty message {frame.id} from {username}")
            return

        record = MessageRecord(
            id=frame.id,
            text=text[:self.max_text_length],
            author=username,
            timestamp=frame.timestamp,
        )
        echo = MessageFrame.from_record(record)

        if self.history.append(record):
            logger.info(f"Message {record.id} from {username} accepted")
            self.broadcaster.broadcast(echo)
        else:
            # Already relayed once: acknowledge the retry to its sender only
            logger.info(f"Message {record.id} from {username} is a resend, acknowledging sender")
            self.broadcaster.send(connection, echo)

    def _handle_heartbeat(self, connection: Connection, frame: HeartbeatFrame) -> None:
        if self.registry.handle_activity(connection, explicit=False) is None:
            self._not_joined(connection)
            return
        self.broadcaster.send(connection, HeartbeatAckFrame(timestamp=self.scheduler.now_ms()))

    def _handle_clear_chat(self, connection: Connection) -> None:
        username = self.registry.handle_activity(connection)
        if username is None:
            self._not_joined(connection)
            return

        present = self.registry.online_count
        if present > self.clear_chat_max_occupancy:
            logger.warning(f"clear_chat from {username} refused with {present} users present")
            self.broadcaster.send(connection, ErrorFrame(
                message=f"Chat can only be cleared with at most {self.clear_chat_max_occupancy} users present",
                code=ErrorCode.CLEAR_REFUSED,
            ))
            return

        self.history.clear()
        logger.info(f"Chat cleared by {username}")
        self.broadcaster.broadcast(ClearChatFrame(username=username, timestamp=self.scheduler.now_ms()))

    def _not_joined(self, connection: Connection) -> None:
        self.broadcaster.send(connection, ErrorFrame(
            message="Join the chat first",
            code=ErrorCode.NOT_JOINED,
        ))

    def _protocol_error(self, connection: Connection, reason: str, detail: str) -> None:
        logger.warning(f"Protocol error ({reason}): {detail}")
        record_protocol_error(reason)
        self.broadcaster.send(connection, ErrorFrame(message=detail, code=ErrorCode.INVALID_FRAME))
