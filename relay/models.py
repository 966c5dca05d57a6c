"""
SQLAlchemy ORM models for database tables.

For the wire-level message entity, see schemas.MessageRecord.
"""

from sqlalchemy import BigInteger, Column, String, Text

from relay.storage import Base


class HistoryEntry(Base):
    """
    One accepted chat message in the durable history log.

    Table: messages
    Primary Key: id (sender-assigned, ensures idempotent appends)
    """
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True, index=True)
    author = Column(String(32), nullable=False, index=True)
    text = Column(Text, nullable=False)
    timestamp = Column(BigInteger, nullable=False, index=True)  # ms since epoch
    created_at = Column(String, nullable=False)  # Server time ISO-8601
