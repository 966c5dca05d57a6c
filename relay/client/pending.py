"""
Outbound message delivery for the chat client.

Every message the user submits ends in exactly one of three places: it is
acknowledged (the relay echoed it back), it is marked failed after its retry
budget and waits for a manual retry, or it sits pending in the offline queue
until the next reconnect. Nothing is dropped silently.

Each entry owns at most one timer at a time (delivery timeout, offline retry
or staggered replay); arming a new one always cancels the previous one.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from pydantic import BaseModel

from relay.client.offline_queue import DeliveryState, OfflineQueue, QueuedMessage
from relay.scheduler import Cancellable, Scheduler
from relay.schemas import MessageFrame, MessageRecord

logger = logging.getLogger(__name__)


class DeliveryChannel(Protocol):
    """What the store needs from the connection manager."""

    @property
    def is_open(self) -> bool:
        ...

    def send_frame(self, frame: BaseModel) -> bool:
        ...

    def connect(self) -> None:
        ...


@dataclass
class PendingEntry:
    """A submitted message awaiting acknowledgement."""
    record: MessageRecord
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    max_attempts: int = 3
    timer: Optional[Cancellable] = field(default=None, repr=False, compare=False)

    @property
    def id(self) -> str:
        return self.record.id

    def disarm(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def to_queued(self) -> QueuedMessage:
        return QueuedMessage(record=self.record, state=self.state, attempts=self.attempts)


class PendingMessageStore:
    """Owns outbound messages until they are acknowledged or given up on."""

    def __init__(
        self,
        channel: DeliveryChannel,
        scheduler: Scheduler,
        username: str,
        queue: Optional[OfflineQueue] = None,
        max_attempts: int = 3,
        delivery_timeout: float = 10.0,
        offline_retry_delay: float = 5.0,
        flush_stagger: float = 0.5,
        on_change: Optional[Callable[[PendingEntry], None]] = None,
    ):
        self._channel = channel
        self._scheduler = scheduler
        self.username = username
        self._queue = queue or OfflineQueue(None)
        self.max_attempts = max_attempts
        self.delivery_timeout = delivery_timeout
        self.offline_retry_delay = offline_retry_delay
        self.flush_stagger = flush_stagger
        self._on_change = on_change
        self._entries: "OrderedDict[str, PendingEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._entries

    def get(self, message_id: str) -> Optional[PendingEntry]:
        return self._entries.get(message_id)

    @property
    def entries(self) -> list[PendingEntry]:
        return list(self._entries.values())

    def failed(self) -> list[PendingEntry]:
        return [e for e in self._entries.values() if e.state == DeliveryState.FAILED]

    # -------------------------------------------------------------------------
    # Submission and delivery
    # -------------------------------------------------------------------------

    def submit(self, text: str) -> PendingEntry:
        """
        Create a pending message, persist it, and try to deliver it.

        Raises:
            ValueError: text is empty after stripping
        """
        text = text.strip()
        if not text:
            raise ValueError("message text is empty")

        record = MessageRecord(text=text, author=self.username, timestamp=self._scheduler.now_ms())
        entry = PendingEntry(record=record, max_attempts=self.max_attempts)
        self._entries[record.id] = entry
        self._persist()
        logger.info(f"Message {record.id} submitted")
        self._notify(entry)

        self.attempt_to_send(entry)
        return entry

    def attempt_to_send(self, entry: PendingEntry) -> None:
        """
        One delivery attempt.

        Connected: transmit and arm the delivery timeout. Not connected: ask
        for a reconnect and retry after a fixed delay while the attempt
        budget lasts; after that the entry waits for the reconnect flush.
        """
        if entry.state != DeliveryState.PENDING:
            return
        entry.attempts += 1

        if self._channel.is_open and self._channel.send_frame(MessageFrame.from_record(entry.record)):
            logger.info(f"Message {entry.id} sent (attempt {entry.attempts}/{entry.max_attempts})")
            self._arm(entry, self.delivery_timeout, self._on_delivery_timeout)
        else:
            self._channel.connect()
            if entry.attempts < entry.max_attempts:
                logger.info(f"Message {entry.id} queued offline, retrying in {self.offline_retry_delay}s")
                self._arm(entry, self.offline_retry_delay, self._on_offline_retry)
            else:
                entry.disarm()
                logger.info(f"Message {entry.id} waiting for reconnect")
        self._persist()
        self._notify(entry)

    def _arm(self, entry: PendingEntry, delay: float, callback: Callable[[str], None]) -> None:
        entry.disarm()
        entry.timer = self._scheduler.call_later(delay, callback, entry.id)

    def _on_delivery_timeout(self, message_id: str) -> None:
        entry = self._entries.get(message_id)
        if entry is None:
            return
        entry.timer = None
        if entry.state != DeliveryState.PENDING:
            return

        logger.warning(f"Delivery timeout for message {message_id} after attempt {entry.attempts}")
        if entry.attempts >= entry.max_attempts:
            self._mark_failed(entry)
        else:
            self.attempt_to_send(entry)

    def _on_offline_retry(self, message_id: str) -> None:
        entry = self._entries.get(message_id)
        if entry is None:
            return
        entry.timer = None
        self.attempt_to_send(entry)

    def _mark_failed(self, entry: PendingEntry) -> None:
        entry.disarm()
        entry.state = DeliveryState.FAILED
        self._persist()
        logger.error(f"Message {entry.id} failed after {entry.attempts} attempts")
        self._notify(entry)

    # -------------------------------------------------------------------------
    # Acknowledgement and recovery
    # -------------------------------------------------------------------------

    def reconcile(self, message_id: str) -> Optional[PendingEntry]:
        """
        Mark a message delivered on seeing the relay's echo of it.

        Returns:
            The acknowledged entry, or None if the id was not outstanding
        """
        entry = self._entries.pop(message_id, None)
        if entry is None:
            return None
        entry.disarm()
        entry.state = DeliveryState.SENT
        self._persist()
        logger.info(f"Message {message_id} acknowledged after {entry.attempts} attempt(s)")
        self._notify(entry)
        return entry

    def flush(self) -> int:
        """
        Replay every pending entry after a reconnect, oldest first, staggered.

        Returns:
            Number of entries scheduled for replay
        """
        pending = sorted(
            (e for e in self._entries.values() if e.state == DeliveryState.PENDING),
            key=lambda e: e.record.timestamp,
        )
        for index, entry in enumerate(pending):
            entry.attempts = 0
            self._arm(entry, index * self.flush_stagger, self._on_replay)
        if pending:
            logger.info(f"Replaying {len(pending)} pending message(s)")
        return len(pending)

    def _on_replay(self, message_id: str) -> None:
        entry = self._entries.get(message_id)
        if entry is None:
            return
        entry.timer = None
        if entry.state == DeliveryState.PENDING and self._channel.is_open:
            self.attempt_to_send(entry)

    def retry(self, message_id: str) -> bool:
        """Manually resend a failed message with a fresh attempt budget."""
        entry = self._entries.get(message_id)
        if entry is None or entry.state != DeliveryState.FAILED:
            return False
        entry.state = DeliveryState.PENDING
        entry.attempts = 0
        logger.info(f"Manual retry of message {message_id}")
        self.attempt_to_send(entry)
        return True

    def cancel_all(self) -> None:
        """Cancel every outstanding timer; entries stay queued for the next login."""
        for entry in self._entries.values():
            entry.disarm()

    def restore(self) -> int:
        """
        Reload entries persisted by a previous run.

        Pending entries start with a fresh attempt budget and go out on the
        next flush; failed entries stay failed.

        Returns:
            Number of entries restored
        """
        restored = 0
        for item in self._queue.load():
            if item.record.id in self._entries or item.state == DeliveryState.SENT:
                continue
            entry = PendingEntry(record=item.record, state=item.state, max_attempts=self.max_attempts)
            self._entries[item.record.id] = entry
            restored += 1
        return restored

    def _persist(self) -> None:
        self._queue.save(entry.to_queued() for entry in self._entries.values())

    def _notify(self, entry: PendingEntry) -> None:
        if self._on_change is not None:
            self._on_change(entry)
