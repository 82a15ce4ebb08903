"""
PostgreSQL-backed queue and blob store.
Implements the QueueClient and BlobStore capabilities on SQLAlchemy async sessions.
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from queuepump.config import get_settings
from queuepump.db.connection import session_scope
from queuepump.db.models import Base, OverflowBlob, QueueMessageRecord
from queuepump.exceptions import LeaseLostError
from queuepump.types.message import QueueMessage

logger = logging.getLogger(__name__)


class SqlQueueClient:
    """
    Queue stored in the queue_messages table.

    Implements atomic operations for:
    - Lease acquisition with FOR UPDATE SKIP LOCKED
    - Lease-checked deletion
    - Enqueue with an optional initial visibility delay
    """

    def __init__(
        self,
        queue_name: str,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """
        Initialize the queue.

        Args:
            queue_name: Name of the queue; many queues share one table.
            session_factory: Session factory; defaults to the one from init_db().
        """
        self.queue_name = queue_name
        self._session_factory = session_factory

    async def create_if_not_exists(self) -> None:
        """Create the queue table if it is missing (Alembic is preferred in production)."""
        async with session_scope(self._session_factory) as session:
            await session.run_sync(
                lambda sync_session: Base.metadata.create_all(
                    sync_session.connection(),
                    tables=[QueueMessageRecord.__table__],
                )
            )

    async def clear(self) -> None:
        """Delete every message of this queue."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                delete(QueueMessageRecord).where(
                    QueueMessageRecord.queue_name == self.queue_name
                )
            )
        logger.info(
            f"Cleared {result.rowcount} messages",
            extra={"queue_name": self.queue_name},
        )

    async def enqueue_message(
        self,
        body: bytes,
        initial_visibility_delay_seconds: float = 0.0,
    ) -> str:
        """
        Add a message to the queue.

        Args:
            body: The message body.
            initial_visibility_delay_seconds: Keep the message hidden this long.

        Returns:
            The new message id.
        """
        now = datetime.now(timezone.utc)
        stmt = (
            insert(QueueMessageRecord)
            .values(
                queue_name=self.queue_name,
                body=body,
                dequeue_count=0,
                inserted_at=now,
                next_visible_at=now + timedelta(seconds=initial_visibility_delay_seconds),
            )
            .returning(QueueMessageRecord.id)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            message_id = result.scalar_one()
        return str(message_id)

    async def fetch_batch(
        self,
        max_count: int,
        visibility_timeout_seconds: float,
    ) -> list[QueueMessage]:
        """
        Lease visible messages using FOR UPDATE SKIP LOCKED.

        This is the critical path for message distribution. Each leased row
        gets a fresh lease token, an incremented dequeue count and is hidden
        for the visibility timeout, all in one statement.

        Args:
            max_count: Maximum number of messages to lease.
            visibility_timeout_seconds: How long leased messages stay hidden.

        Returns:
            Leased messages, oldest first.
        """
        now = datetime.now(timezone.utc)
        visible_until = now + timedelta(seconds=visibility_timeout_seconds)

        sql = text("""
            UPDATE queue_messages
            SET
                dequeue_count = dequeue_count + 1,
                lease_token = gen_random_uuid(),
                next_visible_at = :visible_until
            WHERE id IN (
                SELECT id FROM queue_messages
                WHERE queue_name = :queue_name
                AND next_visible_at <= :now
                ORDER BY inserted_at ASC
                FOR UPDATE SKIP LOCKED
                LIMIT :max_count
            )
            RETURNING id, lease_token, body, dequeue_count, inserted_at, next_visible_at
        """)

        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                sql,
                {
                    "queue_name": self.queue_name,
                    "now": now,
                    "visible_until": visible_until,
                    "max_count": max_count,
                },
            )
            rows = result.fetchall()

        if rows:
            logger.debug(
                f"Leased {len(rows)} messages",
                extra={"queue_name": self.queue_name, "message_count": len(rows)},
            )

        messages = [
            QueueMessage(
                id=str(row.id),
                lease_token=str(row.lease_token),
                body=bytes(row.body),
                dequeue_count=row.dequeue_count,
                inserted_at=row.inserted_at,
                next_visible_at=row.next_visible_at,
            )
            for row in rows
        ]
        messages.sort(key=lambda m: m.inserted_at)
        return messages

    async def delete_message(self, message_id: str, lease_token: str) -> None:
        """
        Delete a leased message.

        Raises:
            LeaseLostError: If the message is gone or was leased again since.
        """
        try:
            row_id, token = UUID(message_id), UUID(lease_token)
        except ValueError as e:
            raise LeaseLostError(f"Invalid message id or lease token: {e}", message_id) from e

        stmt = delete(QueueMessageRecord).where(
            QueueMessageRecord.id == row_id,
            QueueMessageRecord.lease_token == token,
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)

        if result.rowcount == 0:
            raise LeaseLostError(
                f"Lease on message {message_id} is no longer held",
                message_id=message_id,
            )

    async def get_approximate_message_count(self) -> int:
        stmt = (
            select(func.count())
            .select_from(QueueMessageRecord)
            .where(QueueMessageRecord.queue_name == self.queue_name)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return result.scalar() or 0


class SqlBlobStore:
    """Blob store kept in the overflow_blobs table, one container per store."""

    def __init__(
        self,
        container: str | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        # Falls back to the configured overflow_container
        self.container = container or get_settings().overflow_container
        self._session_factory = session_factory

    async def create_if_not_exists(self) -> None:
        async with session_scope(self._session_factory) as session:
            await session.run_sync(
                lambda sync_session: Base.metadata.create_all(
                    sync_session.connection(),
                    tables=[OverflowBlob.__table__],
                )
            )

    async def put(self, key: str, data: bytes) -> None:
        stmt = insert(OverflowBlob).values(
            container=self.container,
            key=key,
            data=data,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[OverflowBlob.container, OverflowBlob.key],
            set_={"data": stmt.excluded.data},
        )
        async with session_scope(self._session_factory) as session:
            await session.execute(stmt)

    async def get(self, key: str) -> bytes:
        """
        Read a blob.

        Raises:
            KeyError: If the blob does not exist.
        """
        stmt = select(OverflowBlob.data).where(
            OverflowBlob.container == self.container,
            OverflowBlob.key == key,
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            data = result.scalar_one_or_none()
        if data is None:
            raise KeyError(key)
        return bytes(data)

    async def delete(self, key: str) -> None:
        stmt = delete(OverflowBlob).where(
            OverflowBlob.container == self.container,
            OverflowBlob.key == key,
        )
        async with session_scope(self._session_factory) as session:
            await session.execute(stmt)
