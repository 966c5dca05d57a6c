"""
Pytest configuration and shared fixtures.

Test env vars are set here before any relay import so the cached settings
pick them up. Timers are driven by a virtual clock (FakeScheduler) so grace
windows, retries and backoff can be exercised without sleeping.
"""

import json
import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./relay_test.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Clear settings cache before any app imports to ensure test env vars are used
from relay.config import get_settings
get_settings.cache_clear()

from relay.broadcaster import Broadcaster
from relay.connections import CLOSE_NORMAL, ConnectionClosed
from relay.history import HistoryLog
from relay.hub import RelayHub
from relay.scheduler import Scheduler
from relay.sessions import SessionRegistry


START_MS = 1_700_000_000_000


class FakeTimer:
    def __init__(self, when: int, seq: int, callback, args):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler(Scheduler):
    """Virtual clock: timers only fire inside advance()."""

    def __init__(self, start_ms: int = START_MS):
        self._now = start_ms
        self._seq = 0
        self._timers: list[FakeTimer] = []

    def now_ms(self) -> int:
        return self._now

    def call_later(self, delay, callback, *args) -> FakeTimer:
        self._seq += 1
        timer = FakeTimer(self._now + int(delay * 1000), self._seq, callback, args)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self._timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order (including ones they arm)."""
        target = self._now + int(seconds * 1000)
        while True:
            due = [t for t in self.pending if t.when <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.when, t.seq))
            self._now = max(self._now, timer.when)
            timer.fired = True
            timer.callback(*timer.args)
        self._now = target


class FakeConnection:
    """Server-side connection that records decoded outbound frames."""

    def __init__(self, connection_id: str):
        self.id = connection_id
        self.sent: list[dict] = []
        self.closed_with = None

    @property
    def open(self) -> bool:
        return self.closed_with is None

    def send(self, data: str) -> None:
        if not self.open:
            raise ConnectionClosed(f"connection {self.id} is closed")
        self.sent.append(json.loads(data))

    def close(self, code: int = CLOSE_NORMAL) -> None:
        if self.closed_with is None:
            self.closed_with = code

    def frames(self, frame_type: str = None) -> list[dict]:
        if frame_type is None:
            return list(self.sent)
        return [f for f in self.sent if f["type"] == frame_type]

    def types(self) -> list[str]:
        return [f["type"] for f in self.sent]


class FakeTransport:
    """Client-side transport; tests drive open/receive/drop by hand."""

    def __init__(self, on_open, on_message, on_close):
        self.on_open = on_open
        self.on_message = on_message
        self.on_close = on_close
        self.started = False
        self.closed = False
        self.sent: list[dict] = []

    def start(self) -> None:
        self.started = True

    def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionError("transport closed")
        self.sent.append(json.loads(data))

    def close(self) -> None:
        self.closed = True

    def open(self) -> None:
        self.on_open()

    def receive(self, frame: dict) -> None:
        self.on_message(json.dumps(frame))

    def drop(self, code: int = 1006) -> None:
        self.on_close(code)

    def frames(self, frame_type: str) -> list[dict]:
        return [f for f in self.sent if f["type"] == frame_type]


class FakeTransportFactory:
    def __init__(self):
        self.transports: list[FakeTransport] = []

    def __call__(self, on_open, on_message, on_close) -> FakeTransport:
        transport = FakeTransport(on_open, on_message, on_close)
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def make_connection():
    counter = iter(range(1, 10_000))

    def factory() -> FakeConnection:
        return FakeConnection(f"conn-{next(counter)}")

    return factory


@pytest.fixture
def broadcaster():
    return Broadcaster()


@pytest.fixture
def registry(broadcaster, scheduler):
    return SessionRegistry(broadcaster, scheduler, grace_window=30.0, away_threshold=30.0, sweep_interval=30.0)


@pytest.fixture
def hub(broadcaster, registry, scheduler):
    """Relay hub with an in-memory history log."""
    return RelayHub(HistoryLog(), scheduler, broadcaster=broadcaster, registry=registry)


@pytest.fixture
def transports():
    return FakeTransportFactory()
