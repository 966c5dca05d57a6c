"""
On-disk copy of unacknowledged outbound messages.

The queue is rewritten as a whole on every change (it holds a handful of
entries) through a temp file and rename, so a crash mid-write leaves the
previous version intact.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from relay.schemas import MessageRecord

logger = logging.getLogger(__name__)


class DeliveryState(str, Enum):
    """Client-side delivery state of an outbound message."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class QueuedMessage(BaseModel):
    """Persisted form of a pending entry."""
    record: MessageRecord
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = Field(default=0, ge=0)


_queue_adapter = TypeAdapter(list[QueuedMessage])


class OfflineQueue:
    """JSON file holding messages that have not been acknowledged yet."""

    def __init__(self, path: Optional[Union[str, Path]]):
        self.path = Path(path) if path else None

    def load(self) -> list[QueuedMessage]:
        """Read the queue; a missing or unreadable file yields an empty list."""
        if self.path is None or not self.path.exists():
            return []
        try:
            items = _queue_adapter.validate_json(self.path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.error(f"Failed to read offline queue {self.path}: {e}")
            return []
        logger.info(f"Loaded {len(items)} queued message(s) from {self.path}")
        return items

    def save(self, items: Iterable[QueuedMessage]) -> bool:
        """Replace the queue contents. Returns False if the write failed."""
        if self.path is None:
            return True
        payload = _queue_adapter.dump_json(list(items), by_alias=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            if self.path.parent and not self.path.parent.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(payload)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to write offline queue {self.path}: {e}")
            return False
        return True
