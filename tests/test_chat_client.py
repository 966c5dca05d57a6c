"""
Tests for the ChatClient facade wiring.
"""

import pytest

from relay.client.chat import ChatClient
from relay.client.config import ClientSettings
from relay.client.connection import ConnectionEvent
from relay.client.offline_queue import DeliveryState
from relay.schemas import PresenceStatus


@pytest.fixture
def settings(tmp_path):
    return ClientSettings(
        SERVER_URL="ws://relay.test/ws",
        OFFLINE_QUEUE_PATH=str(tmp_path / "pending.json"),
        DELIVERY_TIMEOUT_SECONDS=10.0,
    )


@pytest.fixture
def make_client(settings, scheduler, transports):
    def _make(events=None):
        return ChatClient(
            "alice",
            settings=settings,
            scheduler=scheduler,
            on_event=events.append if events is not None else None,
            transport_factory=transports,
        )
    return _make


class TestChatClient:

    def test_invalid_username_rejected(self, settings, scheduler, transports):
        with pytest.raises(ValueError):
            ChatClient("a", settings=settings, scheduler=scheduler, transport_factory=transports)

    def test_send_round_trip(self, make_client, transports):
        events = []
        client = make_client(events)
        client.start()
        transports.last.open()

        entry = client.send("hello")
        transports.last.receive(transports.last.frames("message")[0])

        assert entry.state == DeliveryState.SENT
        assert [r.text for r in client.timeline] == ["hello"]
        assert ConnectionEvent.ONLINE in events

    def test_unsent_messages_survive_restart(self, make_client, transports, scheduler):
        """A message written offline is restored and delivered by the next run."""
        first = make_client()
        entry = first.send("written offline")
        first.logout()

        second = make_client()
        second.start()
        transports.last.open()
        scheduler.advance(0)

        sent = transports.last.frames("message")
        assert [f["id"] for f in sent] == [entry.id]
        assert sent[0]["text"] == "written offline"

    def test_status_and_clear(self, make_client, transports):
        client = make_client()
        client.start()
        transports.last.open()

        client.set_status(PresenceStatus.AWAY)
        assert client.clear_chat() is True

        assert transports.last.frames("user_status")[0]["status"] == "away"
        assert transports.last.frames("clear_chat")

    def test_retry_unknown_message(self, make_client):
        assert make_client().retry("missing") is False
