"""
Server-side presence registry.

A Session is one logical participant keyed by display name. It outlives any
single connection: when a connection drops, the session is kept for a grace
window so a quick reconnect can reclaim it without anyone seeing a
leave/join pair. Only when the window elapses unclaimed is the session
demoted to offline, announced as left, and removed.

    absent -> online <-> away -> offline -> absent

Lookups are kept in both directions (connection id -> username and
username -> session); neither side owns the other.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from relay.broadcaster import Broadcaster
from relay.connections import CLOSE_POLICY_VIOLATION, Connection
from relay.metrics import record_presence
from relay.scheduler import Cancellable, PeriodicTask, Scheduler
from relay.schemas import (
    ErrorCode,
    ErrorFrame,
    OnlineCountFrame,
    PresenceEntry,
    PresenceStatus,
    UserJoinedFrame,
    UserLeftFrame,
    UsersListFrame,
    UserStatusFrame,
)

logger = logging.getLogger(__name__)


class JoinOutcome(str, Enum):
    CREATED = "created"
    ADOPTED = "adopted"
    REFRESHED = "refreshed"
    REJECTED = "rejected"


@dataclass
class Session:
    username: str
    status: PresenceStatus = PresenceStatus.ONLINE
    last_seen: int = 0
    connection_id: Optional[str] = None
    joined_at: int = 0
    # Away was reported by the client itself, not inferred from idleness
    declared_away: bool = False

    @property
    def connected(self) -> bool:
        return self.connection_id is not None


class SessionRegistry:
    """Owns per-username session state, admission and the reconnect grace window."""

    def __init__(
        self,
        broadcaster: Broadcaster,
        scheduler: Scheduler,
        grace_window: float = 30.0,
        away_threshold: float = 30.0,
        sweep_interval: float = 30.0,
    ):
        self._broadcaster = broadcaster
        self._scheduler = scheduler
        self.grace_window = grace_window
        self.away_threshold = away_threshold
        self.sweep_interval = sweep_interval

        self._sessions: dict[str, Session] = {}
        self._by_connection: dict[str, str] = {}
        self._grace_timers: dict[str, Cancellable] = {}
        self._sweeper: Optional[PeriodicTask] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, username: str) -> bool:
        return username in self._sessions

    @property
    def online_count(self) -> int:
        """Sessions currently present, including those inside the grace window."""
        return len(self._sessions)

    def get(self, username: str) -> Optional[Session]:
        return self._sessions.get(username)

    def in_grace(self, username: str) -> bool:
        return username in self._grace_timers

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic idle sweep."""
        if self._sweeper is None:
            self._sweeper = self._scheduler.call_every(self.sweep_interval, self.sweep)
            logger.info(
                f"Session registry started: grace={self.grace_window}s, "
                f"away_after={self.away_threshold}s, sweep_every={self.sweep_interval}s"
            )

    def shutdown(self) -> None:
        """Cancel every timer and drop all sessions."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        for handle in self._grace_timers.values():
            handle.cancel()
        self._grace_timers.clear()
        self._sessions.clear()
        self._by_connection.clear()
        logger.info("Session registry shut down")

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def handle_join(self, username: str, connection: Connection) -> JoinOutcome:
        """
        Admit `connection` under `username`.

        - Name held by a different live connection: reject and close.
        - Name held by a session whose connection dropped: adopt silently.
        - Otherwise: create a fresh online session and announce it.
        """
        now = self._scheduler.now_ms()

        bound = self._by_connection.get(connection.id)
        if bound is not None and bound != username:
            logger.warning(f"Connection {connection.id} already joined as {bound}, refusing {username}")
            self._broadcaster.send(connection, ErrorFrame(
                message=f"Already joined as {bound}",
                code=ErrorCode.INVALID_FRAME,
            ))
            return JoinOutcome.REJECTED

        session = self._sessions.get(username)

        if session is not None and session.connection_id == connection.id:
            session.last_seen = now
            return JoinOutcome.REFRESHED

        if session is not None and self._broadcaster.is_open(session.connection_id):
            logger.warning(f"Join rejected, name in use: {username}")
            self._broadcaster.send(connection, ErrorFrame(
                message="A user with this name is already in the chat",
                code=ErrorCode.NAME_IN_USE,
            ))
            connection.close(CLOSE_POLICY_VIOLATION)
            record_presence("rejected", len(self._sessions))
            return JoinOutcome.REJECTED

        if session is not None:
            self._adopt(session, connection, now)
            return JoinOutcome.ADOPTED

        session = Session(
            username=username,
            status=PresenceStatus.ONLINE,
            last_seen=now,
            connection_id=connection.id,
            joined_at=now,
        )
        self._sessions[username] = session
        self._by_connection[connection.id] = username
        logger.info(f"{username} joined the chat")
        record_presence("joined", len(self._sessions))

        self._broadcaster.send(connection, self.users_list())
        self._broadcaster.broadcast(
            UserJoinedFrame(username=username, online_count=self.online_count, timestamp=now),
            exclude=connection,
        )
        self._broadcaster.broadcast(OnlineCountFrame(count=self.online_count, timestamp=now))
        return JoinOutcome.CREATED

    def _adopt(self, session: Session, connection: Connection, now: int) -> None:
        grace = self._grace_timers.pop(session.username, None)
        if grace is not None:
            grace.cancel()

        if session.connection_id is not None:
            self._by_connection.pop(session.connection_id, None)
        session.connection_id = connection.id
        session.last_seen = now
        session.declared_away = False
        self._by_connection[connection.id] = session.username
        logger.info(f"{session.username} reconnected, session adopted")
        record_presence("adopted", len(self._sessions))

        self._broadcaster.send(connection, self.users_list())
        if session.status != PresenceStatus.ONLINE:
            self._set_status(session, PresenceStatus.ONLINE, now)

    # -------------------------------------------------------------------------
    # Activity and status
    # -------------------------------------------------------------------------

    def handle_activity(self, connection: Connection, explicit: bool = True) -> Optional[str]:
        """
        Record activity from a joined connection.

        Refreshes lastSeen and promotes an away session back to online. A
        heartbeat (explicit=False) does not undo an away the client declared.

        Returns:
            The session's username, or None if the connection has not joined
        """
        username = self._by_connection.get(connection.id)
        if username is None:
            return None
        session = self._sessions[username]
        now = self._scheduler.now_ms()
        session.last_seen = now

        if session.status == PresenceStatus.AWAY and (explicit or not session.declared_away):
            session.declared_away = False
            self._set_status(session, PresenceStatus.ONLINE, now)
        return username

    def set_status(self, connection: Connection, status: PresenceStatus) -> Optional[str]:
        """Apply a client-reported online/away status."""
        username = self._by_connection.get(connection.id)
        if username is None:
            return None
        if status == PresenceStatus.OFFLINE:
            logger.debug(f"Ignoring client-reported offline status from {username}")
            return username

        session = self._sessions[username]
        now = self._scheduler.now_ms()
        session.last_seen = now
        session.declared_away = status == PresenceStatus.AWAY
        if session.status != status:
            self._set_status(session, status, now)
        return username

    def _set_status(self, session: Session, status: PresenceStatus, now: int) -> None:
        previous = session.status
        session.status = status
        logger.info(f"{session.username} is now {status.value} (was {previous.value})")
        record_presence("away" if status == PresenceStatus.AWAY else "back", len(self._sessions))
        self._broadcaster.broadcast(UserStatusFrame(username=session.username, status=status, timestamp=now))

    def sweep(self) -> list[str]:
        """
        Demote connected online sessions idle longer than the away threshold.

        Sessions inside the grace window are left alone; their fate is
        decided by the grace timer.

        Returns:
            Usernames moved to away
        """
        now = self._scheduler.now_ms()
        cutoff = now - int(self.away_threshold * 1000)
        demoted = []
        for session in list(self._sessions.values()):
            if session.status == PresenceStatus.ONLINE and session.connected and session.last_seen < cutoff:
                self._set_status(session, PresenceStatus.AWAY, now)
                demoted.append(session.username)
        if demoted:
            logger.debug(f"Idle sweep moved {len(demoted)} session(s) to away")
        return demoted

    # -------------------------------------------------------------------------
    # Departure
    # -------------------------------------------------------------------------

    def handle_disconnect(self, connection: Connection) -> Optional[str]:
        """
        Unbind a closed connection and start its session's grace window.

        Returns:
            The username whose grace window started, or None
        """
        username = self._by_connection.pop(connection.id, None)
        if username is None:
            return None
        session = self._sessions.get(username)
        if session is None or session.connection_id != connection.id:
            return None

        session.connection_id = None
        previous = self._grace_timers.pop(username, None)
        if previous is not None:
            previous.cancel()
        self._grace_timers[username] = self._scheduler.call_later(self.grace_window, self._expire, username)
        logger.info(f"{username} disconnected, holding session for {self.grace_window}s")
        return username

    def _expire(self, username: str) -> None:
        self._grace_timers.pop(username, None)
        session = self._sessions.get(username)
        if session is None or session.connected:
            return

        session.status = PresenceStatus.OFFLINE
        del self._sessions[username]
        now = self._scheduler.now_ms()
        logger.info(f"{username} left the chat")
        record_presence("left", len(self._sessions))

        self._broadcaster.broadcast(UserLeftFrame(username=username, online_count=self.online_count, timestamp=now))
        self._broadcaster.broadcast(OnlineCountFrame(count=self.online_count, timestamp=now))

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def users_list(self) -> UsersListFrame:
        return UsersListFrame(users=[
            PresenceEntry(username=s.username, status=s.status, last_seen=s.last_seen)
            for s in sorted(self._sessions.values(), key=lambda s: s.joined_at)
        ])
