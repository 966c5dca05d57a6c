import logging
from typing import Optional

from pydantic import BaseModel

from relay.connections import Connection, ConnectionClosed
from relay.metrics import record_frame
from relay.schemas import encode_frame

logger = logging.getLogger(__name__)


class Broadcaster:
    """Fan-out of frames to every open connection."""

    def __init__(self):
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def add(self, connection: Connection) -> None:
        self._connections[connection.id] = connection

    def remove(self, connection: Connection) -> None:
        self._connections.pop(connection.id, None)

    def is_open(self, connection_id: Optional[str]) -> bool:
        """True if `connection_id` names a registered connection that is still open."""
        if connection_id is None:
            return False
        connection = self._connections.get(connection_id)
        return connection is not None and connection.open

    def send(self, connection: Connection, frame: BaseModel) -> bool:
        """Send one frame to one connection. Returns False if it is closed."""
        try:
            connection.send(encode_frame(frame))
        except ConnectionClosed as e:
            logger.warning(f"Dropping {frame.type} frame: {e}")
            return False
        record_frame("out", frame.type)
        return True

    def broadcast(self, frame: BaseModel, exclude: Optional[Connection] = None) -> int:
        """
        Send a frame to every open connection except `exclude`.

        The frame is serialized once. A failed send is logged and skipped;
        the failing connection is cleaned up by the disconnect path.

        Returns:
            Number of connections the frame was queued for
        """
        data = encode_frame(frame)
        delivered = 0
        for connection in list(self._connections.values()):
            if exclude is not None and connection.id == exclude.id:
                continue
            if not connection.open:
                continue
            try:
                connection.send(data)
            except ConnectionClosed as e:
                logger.warning(f"Broadcast of {frame.type} skipped a connection: {e}")
                continue
            delivered += 1

        if delivered:
            record_frame("out", frame.type)
        logger.debug(f"Broadcast {frame.type} to {delivered} connection(s)")
        return delivered

    def close_all(self) -> None:
        for connection in list(self._connections.values()):
            connection.close()
        self._connections.clear()
