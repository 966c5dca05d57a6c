"""
Bounded, deduplicated chat history.

The in-memory tail is authoritative while the relay runs; every change is
written through to the database so the tail can be reloaded on start. A
database failure is logged and the log keeps serving from memory.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from relay.metrics import record_history_append
from relay.models import HistoryEntry
from relay.schemas import MessageRecord

logger = logging.getLogger(__name__)


class HistoryLog:
    """Capped append log of accepted messages, keyed by message id."""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        capacity: int = 1000,
        dedup_window_ms: int = 5000,
    ):
        self._session_factory = session_factory
        self.capacity = capacity
        self.dedup_window_ms = dedup_window_ms
        self._entries: "OrderedDict[str, MessageRecord]" = OrderedDict()
        self.degraded = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._entries

    def load(self) -> int:
        """
        Read the capped tail of the durable log into memory.

        Returns:
            Number of entries loaded (0 if the database is unavailable)
        """
        if self._session_factory is None:
            return 0

        try:
            with self._session_factory() as db:
                rows = (
                    db.query(HistoryEntry)
                    .order_by(HistoryEntry.timestamp.desc(), HistoryEntry.id.desc())
                    .limit(self.capacity)
                    .all()
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to load history, continuing in memory only: {e}")
            self.degraded = True
            return 0

        self._entries.clear()
        for row in reversed(rows):
            self._entries[row.id] = MessageRecord(
                id=row.id, text=row.text, author=row.author, timestamp=row.timestamp
            )
        logger.info(f"Loaded {len(self._entries)} messages from history")
        return len(self._entries)

    def append(self, record: MessageRecord) -> bool:
        """
        Append an accepted message (idempotent).

        A record is skipped when its id is already logged, or when the same
        author sent the same text within the dedup window.

        Returns:
            True if the record was stored, False if it was a duplicate
        """
        if record.id in self._entries:
            logger.info(f"Duplicate message detected: {record.id}")
            record_history_append("duplicate")
            return False

        if self._is_near_duplicate(record):
            logger.info(f"Duplicate text from {record.author} within window, skipping {record.id}")
            record_history_append("duplicate")
            return False

        self._entries[record.id] = record
        evicted = []
        while len(self._entries) > self.capacity:
            evicted_id, _ = self._entries.popitem(last=False)
            evicted.append(evicted_id)

        stored = self._persist(record, evicted)
        record_history_append("created" if stored else "degraded")
        return True

    def _is_near_duplicate(self, record: MessageRecord) -> bool:
        for existing in reversed(self._entries.values()):
            if (
                existing.author == record.author
                and existing.text == record.text
                and abs(existing.timestamp - record.timestamp) <= self.dedup_window_ms
            ):
                return True
        return False

    def _persist(self, record: MessageRecord, evicted: list[str]) -> bool:
        if self._session_factory is None:
            return True

        db = self._session_factory()
        try:
            db.add(HistoryEntry(
                id=record.id,
                author=record.author,
                text=record.text,
                timestamp=record.timestamp,
                created_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            ))
            if evicted:
                db.query(HistoryEntry).filter(HistoryEntry.id.in_(evicted)).delete(synchronize_session=False)
            db.commit()
            self.degraded = False
            return True
        except IntegrityError:
            # Row already on disk but not in the loaded tail
            db.rollback()
            logger.debug(f"Message {record.id} already persisted")
            return True
        except (SQLAlchemyError, OverflowError) as e:
            # Driver-level errors such as an out of range INTEGER are not wrapped
            db.rollback()
            logger.error(f"Failed to persist message {record.id}, keeping it in memory: {e}")
            self.degraded = True
            return False
        finally:
            db.close()

    def recent(self, limit: int) -> list[MessageRecord]:
        """Return up to `limit` most recently appended messages, sorted by timestamp."""
        if limit <= 0:
            return []
        tail = list(self._entries.values())[-limit:]
        return sorted(tail, key=lambda r: r.timestamp)

    def since(self, timestamp: int, limit: int, after_id: Optional[str] = None) -> list[MessageRecord]:
        """
        Return up to `limit` messages after the cursor, ordered by (timestamp, id).

        Without `after_id` the cursor is exclusive on timestamp alone. With it,
        messages at exactly `timestamp` whose id sorts after `after_id` are
        included too, so a page can end inside a millisecond.
        """
        if after_id is None:
            newer = [r for r in self._entries.values() if r.timestamp > timestamp]
        else:
            cursor = (timestamp, after_id)
            newer = [r for r in self._entries.values() if (r.timestamp, r.id) > cursor]
        newer.sort(key=lambda r: (r.timestamp, r.id))
        return newer[:limit]

    def clear(self) -> None:
        """Drop every entry, in memory and on disk."""
        self._entries.clear()
        if self._session_factory is None:
            return

        db = self._session_factory()
        try:
            db.query(HistoryEntry).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to clear persisted history: {e}")
            self.degraded = True
        finally:
            db.close()
        logger.info("History cleared")

    def bounds(self) -> tuple[Optional[int], Optional[int]]:
        """Earliest and latest timestamps in the log, or (None, None) when empty."""
        if not self._entries:
            return None, None
        stamps = [r.timestamp for r in self._entries.values()]
        return min(stamps), max(stamps)
