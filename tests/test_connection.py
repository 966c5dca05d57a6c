"""
Tests for the client connection manager.

Tests cover:
- Exponential reconnect backoff, attempt cap and reset on open
- connect() idempotence and stale transport callbacks
- logout() cancelling every timer
- name_in_use stopping automatic reconnects
- Inbound frame routing: echoes, history, presence, clear_chat
- Offline messages flushed exactly once after reconnect
"""

import pytest

from relay.client.connection import ConnectionEvent, ConnectionManager, ConnectionState, reconnect_delay
from relay.client.offline_queue import DeliveryState
from relay.client.pending import PendingMessageStore


@pytest.fixture
def events():
    return []


@pytest.fixture
def manager(transports, scheduler, events):
    return ConnectionManager(
        "alice",
        transports,
        scheduler,
        max_reconnect_attempts=5,
        heartbeat_interval=20.0,
        on_event=events.append,
    )


@pytest.fixture
def pending(manager, scheduler):
    store = PendingMessageStore(manager, scheduler, "alice", delivery_timeout=10.0, offline_retry_delay=5.0)
    manager.attach_pending(store)
    return store


def message(message_id, text="hi", username="bob", timestamp=1000):
    return {"type": "message", "id": message_id, "text": text, "username": username, "timestamp": timestamp}


class TestBackoff:
    """Test reconnect scheduling."""

    @pytest.mark.parametrize("attempts,seconds", [
        (0, 1.0),
        (1, 2.0),
        (2, 4.0),
        (4, 16.0),
        (5, 30.0),
        (12, 30.0),
    ])
    def test_reconnect_delay(self, attempts, seconds):
        assert reconnect_delay(attempts) == seconds

    def test_close_schedules_reconnect(self, manager, transports, scheduler, events):
        manager.connect()
        transports.last.open()
        transports.last.drop()

        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.reconnect_attempts == 1
        assert events[-1] == ConnectionEvent.RECONNECTING

        scheduler.advance(1.9)
        assert len(transports.transports) == 1
        scheduler.advance(0.1)
        assert len(transports.transports) == 2
        assert manager.state == ConnectionState.CONNECTING

    def test_gives_up_after_max_attempts(self, manager, transports, scheduler, events):
        manager.connect()
        for _ in range(5):
            transports.last.drop()
            scheduler.advance(30)

        assert len(transports.transports) == 5
        assert events[-1] == ConnectionEvent.UNABLE_TO_CONNECT
        assert manager.state == ConnectionState.DISCONNECTED
        assert scheduler.pending == []

    def test_open_resets_attempts(self, manager, transports, scheduler):
        manager.connect()
        transports.last.drop()
        scheduler.advance(2)
        transports.last.drop()
        assert manager.reconnect_attempts == 2

        scheduler.advance(4)
        transports.last.open()

        assert manager.reconnect_attempts == 0
        assert manager.is_open

    def test_login_after_giving_up(self, manager, transports, scheduler):
        manager.connect()
        for _ in range(5):
            transports.last.drop()
            scheduler.advance(30)

        manager.login()

        assert len(transports.transports) == 6
        assert manager.state == ConnectionState.CONNECTING


class TestLifecycle:
    """Test connect/logout."""

    def test_connect_is_noop_while_connecting_or_open(self, manager, transports):
        manager.connect()
        manager.connect()
        assert len(transports.transports) == 1

        transports.last.open()
        manager.connect()
        assert len(transports.transports) == 1

    def test_open_sends_join(self, manager, transports, events):
        manager.connect()
        transports.last.open()

        joins = transports.last.frames("join")
        assert len(joins) == 1
        assert joins[0]["username"] == "alice"
        assert events[-1] == ConnectionEvent.ONLINE

    def test_heartbeat_while_open(self, manager, transports, scheduler):
        manager.connect()
        transports.last.open()

        scheduler.advance(20)
        assert len(transports.last.frames("heartbeat")) == 1
        scheduler.advance(20)
        assert len(transports.last.frames("heartbeat")) == 2

    def test_heartbeat_stops_on_close(self, manager, transports, scheduler):
        manager.connect()
        first = transports.last
        first.open()
        first.drop()

        scheduler.advance(20)

        assert first.frames("heartbeat") == []

    def test_stale_transport_callbacks_ignored(self, manager, transports, scheduler):
        manager.connect()
        stale = transports.last
        stale.drop()
        scheduler.advance(2)
        current = transports.last
        current.open()

        stale.drop()
        stale.receive({"type": "clear_chat", "username": "bob"})

        assert manager.is_open
        assert manager.reconnect_attempts == 0
        assert len(scheduler.pending) == 1  # heartbeat only

    def test_logout_cancels_all_timers(self, manager, pending, transports, scheduler):
        manager.connect()
        transports.last.open()
        pending.submit("in flight")
        assert scheduler.pending

        manager.logout()

        assert scheduler.pending == []
        assert transports.last.closed
        assert manager.state == ConnectionState.CLOSING

        transports.last.drop(1000)
        assert manager.state == ConnectionState.DISCONNECTED
        assert scheduler.pending == []

        manager.connect()
        assert len(transports.transports) == 1

    def test_logout_while_waiting_to_reconnect(self, manager, transports, scheduler):
        manager.connect()
        transports.last.drop()
        assert scheduler.pending

        manager.logout()

        assert scheduler.pending == []
        assert manager.state == ConnectionState.DISCONNECTED
        scheduler.advance(60)
        assert len(transports.transports) == 1

    def test_name_in_use_stops_reconnect(self, manager, pending, transports, scheduler, events):
        manager.connect()
        transports.last.open()
        transports.last.receive({"type": "error", "message": "taken", "code": "name_in_use"})

        assert manager.logged_in is False
        assert events[-1] == ConnectionEvent.NAME_IN_USE

        transports.last.drop(1008)
        scheduler.advance(60)

        assert len(transports.transports) == 1
        assert scheduler.pending == []


class TestInbound:
    """Test frame routing."""

    @pytest.fixture
    def open_manager(self, manager, transports):
        manager.connect()
        transports.last.open()
        return manager

    def test_malformed_frames_dropped(self, open_manager, transports):
        transports.last.on_message("not json")
        transports.last.receive({"type": "typing"})
        transports.last.on_message('{"type": ["message"]}')
        transports.last.on_message('{"type": {"name": "history"}}')

        assert open_manager.is_open
        assert len(open_manager.timeline) == 0

    def test_message_added_to_timeline(self, open_manager, transports):
        transports.last.receive(message("m2", timestamp=2000))
        transports.last.receive(message("m1", timestamp=1000))
        transports.last.receive(message("m1", timestamp=1000))

        assert [r.id for r in open_manager.timeline] == ["m1", "m2"]
        assert open_manager.timeline.messages[0].author == "bob"

    def test_own_echo_acknowledges_pending(self, open_manager, pending, transports, scheduler):
        entry = pending.submit("hello")
        sent = transports.last.frames("message")[0]

        transports.last.receive(sent)

        assert entry.state == DeliveryState.SENT
        assert entry.id in open_manager.timeline
        assert len(pending) == 0
        assert len(scheduler.pending) == 1  # heartbeat only

    def test_history_acknowledges_pending(self, open_manager, pending, transports):
        entry = pending.submit("hello")
        record = transports.last.frames("message")[0]

        transports.last.receive({"type": "history", "messages": [record, message("m0")]})

        assert entry.state == DeliveryState.SENT
        assert len(open_manager.timeline) == 2

    def test_presence_frames(self, open_manager, transports):
        transports.last.receive({"type": "users_list", "users": [
            {"username": "alice", "status": "online", "lastSeen": 1},
            {"username": "bob", "status": "online", "lastSeen": 1},
        ]})
        assert open_manager.online_count == 2

        transports.last.receive({"type": "user_joined", "username": "carol", "onlineCount": 3})
        transports.last.receive({"type": "user_status", "username": "bob", "status": "away"})
        assert open_manager.online_count == 3
        assert open_manager.users["bob"].status == "away"

        transports.last.receive({"type": "user_left", "username": "carol", "onlineCount": 2})
        transports.last.receive({"type": "online_count", "count": 2})
        assert "carol" not in open_manager.users
        assert open_manager.online_count == 2

    def test_clear_chat_clears_timeline(self, open_manager, transports):
        transports.last.receive(message("m1"))

        transports.last.receive({"type": "clear_chat", "username": "bob"})

        assert len(open_manager.timeline) == 0

    def test_frame_callback(self, transports, scheduler):
        seen = []
        manager = ConnectionManager("alice", transports, scheduler, on_frame=seen.append)
        manager.connect()
        transports.last.open()

        transports.last.receive({"type": "online_count", "count": 4})

        assert [f.type for f in seen] == ["online_count"]


class TestOfflineDelivery:
    """Test messages written while disconnected."""

    def test_offline_message_sent_once_after_reconnect(self, manager, pending, transports, scheduler):
        manager.connect()
        first = transports.last
        first.open()
        first.drop()

        entry = pending.submit("written offline")
        assert first.frames("message") == []

        second = transports.last
        assert second is not first
        second.open()
        scheduler.advance(0)

        assert [f["id"] for f in second.frames("message")] == [entry.id]

        second.receive(second.frames("message")[0])
        scheduler.advance(60)

        assert entry.state == DeliveryState.SENT
        assert len(second.frames("message")) == 1
