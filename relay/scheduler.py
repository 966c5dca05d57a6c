"""
Delayed-task scheduling shared by the relay server and the chat client.

Every timer in the system (delivery timeouts, retry delays, reconnect backoff,
grace windows, presence sweeps) is armed through a Scheduler and returns a
handle with cancel(). Whoever arms a timer keeps the handle and cancels it
when the condition it guards changes.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Protocol


class Cancellable(Protocol):
    """Handle for a scheduled callback."""

    def cancel(self) -> None:
        ...


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


class Scheduler(ABC):
    """Arms delayed callbacks and reports the current time."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Cancellable:
        """Run callback(*args) after `delay` seconds."""

    @abstractmethod
    def now_ms(self) -> int:
        """Current time in milliseconds since the epoch."""

    def call_every(self, interval: float, callback: Callable[[], Any]) -> "PeriodicTask":
        """Run callback every `interval` seconds until the handle is cancelled."""
        return PeriodicTask(self, interval, callback)


class PeriodicTask:
    """A repeating callback built on one-shot timers."""

    def __init__(self, scheduler: Scheduler, interval: float, callback: Callable[[], Any]):
        self._scheduler = scheduler
        self._interval = interval
        self._callback = callback
        self._cancelled = False
        self._handle: Optional[Cancellable] = scheduler.call_later(interval, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        # Next run is armed before this one executes
        self._handle = self._scheduler.call_later(self._interval, self._fire)
        self._callback()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class AsyncioScheduler(Scheduler):
    """Scheduler backed by an asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        return self._loop.call_later(delay, callback, *args)

    def now_ms(self) -> int:
        return now_ms()
