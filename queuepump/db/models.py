"""
SQLAlchemy database models.
Defines the queue message and overflow blob tables.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class QueueMessageRecord(Base):
    """
    A message stored in a queue.

    A message is visible when next_visible_at has passed. Fetching it pushes
    next_visible_at forward by the visibility timeout, assigns a new
    lease_token and increments dequeue_count; deleting requires that token.
    An expired lease needs no recovery step: the row simply becomes visible.
    """

    __tablename__ = "queue_messages"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    queue_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    body: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )

    dequeue_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    lease_token: Mapped[UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    inserted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    next_visible_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        # Index for efficient queue polling
        Index("ix_queue_messages_poll", "queue_name", "next_visible_at", "inserted_at"),
    )

    def __repr__(self) -> str:
        return (
            f"QueueMessageRecord(id={self.id}, queue={self.queue_name}, "
            f"dequeue_count={self.dequeue_count})"
        )


class OverflowBlob(Base):
    """Payload of a message too large to be stored inline."""

    __tablename__ = "overflow_blobs"

    container: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )
    data: Mapped[bytes] = mapped_column(
        LargeBinary,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
