"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, Integer, JSON, String, Text, UniqueConstraint

from chatpipe.storage import Base
from chatpipe.utils import new_id


class Message(Base):
    """
    One stored message row.

    A row is either a complete logical message or one fragment of an
    oversized one (chunk_group_id/chunk_index/total_chunks all set).
    content is stored post-transform (encoded by the configured codec).

    Table: messages
    Primary Key: seq (insertion order, tie-breaker for equal created_at)
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, unique=True, index=True, nullable=False, default=new_id)
    sender_id = Column(String, nullable=False, index=True)
    receiver_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)
    content_type = Column(String, nullable=False, default="text")
    created_at = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    status = Column(String, nullable=False, default="sent")
    updated_at = Column(String, nullable=True)

    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(String, nullable=True)
    edit_history = Column(JSON, nullable=True)  # [{"content": ..., "edited_at": ...}], oldest first

    chunk_group_id = Column(String, nullable=True, index=True)
    chunk_index = Column(Integer, nullable=True)
    total_chunks = Column(Integer, nullable=True)

    # Shared by a message and its sender-addressed copy
    correlation_id = Column(String, nullable=True, index=True)
    is_self_copy = Column(Boolean, nullable=False, default=False)

    @property
    def is_fragment(self) -> bool:
        return self.chunk_group_id is not None


class MessageRead(Base):
    """
    Read receipt, unique per (message_id, reader_id).

    Table: message_reads
    """
    __tablename__ = "message_reads"
    __table_args__ = (
        UniqueConstraint("message_id", "reader_id", name="uq_message_reads_message_reader"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String, nullable=False, index=True)
    reader_id = Column(String, nullable=False)
    read_at = Column(String, nullable=False)
