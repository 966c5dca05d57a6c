from typing import Iterable, Iterator

from relay.schemas import MessageRecord


class Timeline:
    """Local list of received messages, unique by id and sorted by timestamp."""

    def __init__(self, limit: int = 200):
        self.limit = limit
        self._messages: list[MessageRecord] = []
        self._ids: set[str] = set()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[MessageRecord]:
        return iter(self._messages)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    @property
    def messages(self) -> list[MessageRecord]:
        return list(self._messages)

    def add(self, record: MessageRecord) -> bool:
        """Add one message; returns False if its id is already present."""
        return self.merge([record]) == 1

    def merge(self, records: Iterable[MessageRecord]) -> int:
        """
        Merge messages (e.g. a history snapshot) into the timeline.

        Returns:
            Number of messages that were new
        """
        added = 0
        for record in records:
            if record.id in self._ids:
                continue
            self._messages.append(record)
            self._ids.add(record.id)
            added += 1

        if added:
            self._messages.sort(key=lambda r: r.timestamp)
            if len(self._messages) > self.limit:
                for dropped in self._messages[:-self.limit]:
                    self._ids.discard(dropped.id)
                self._messages = self._messages[-self.limit:]
        return added

    def clear(self) -> None:
        self._messages.clear()
        self._ids.clear()
