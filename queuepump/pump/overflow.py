"""
Envelope encoding with transparent overflow to a blob store.

Payloads whose inline envelope would exceed the queue's size limit are
written to the blob store and replaced by a pointer envelope. On receipt the
pointer is resolved back into the original bytes, so message hooks only ever
see content.
"""

import base64
import binascii
import logging
from uuid import uuid4

from pydantic import ValidationError

from queuepump.config import Settings, get_settings
from queuepump.constants import MAX_INLINE_MESSAGE_BYTES, EnvelopeKind
from queuepump.exceptions import ConfigurationError, OverflowStoreError
from queuepump.storage.base import BlobStore
from queuepump.types.message import Envelope

logger = logging.getLogger(__name__)


class OverflowCodec:
    """
    Encodes payloads into queue bodies and resolves them back.

    Bodies that are not envelopes (written by other producers) are treated
    as inline raw content without a message type.
    """

    def __init__(
        self,
        blob_store: BlobStore | None = None,
        max_inline_bytes: int = MAX_INLINE_MESSAGE_BYTES,
    ):
        """
        Initialize the codec.

        Args:
            blob_store: Where oversized payloads go. Without one, oversized
                payloads cannot be sent and pointer envelopes cannot be resolved.
            max_inline_bytes: Largest encoded body kept inline in the queue.
        """
        if max_inline_bytes < 1:
            raise ConfigurationError("max_inline_bytes must be >= 1")
        self._blob_store = blob_store
        self.max_inline_bytes = max_inline_bytes

    @classmethod
    def from_settings(
        cls,
        blob_store: BlobStore | None = None,
        settings: Settings | None = None,
    ) -> "OverflowCodec":
        """Build a codec using the configured overflow_max_inline_bytes."""
        settings = settings or get_settings()
        return cls(blob_store, max_inline_bytes=settings.overflow_max_inline_bytes)

    async def encode(self, content: bytes, message_type: str | None = None) -> bytes:
        """
        Build the queue body for a payload, overflowing it if needed.

        Args:
            content: The serialized payload.
            message_type: Optional dispatch discriminator.

        Returns:
            The body to enqueue.

        Raises:
            OverflowStoreError: If the payload is too large and cannot be stored.
        """
        inline = Envelope(
            kind=EnvelopeKind.INLINE,
            message_type=message_type,
            content=base64.b64encode(content).decode("ascii"),
        )
        body = inline.model_dump_json(exclude_none=True).encode("utf-8")
        if len(body) <= self.max_inline_bytes:
            return body

        if self._blob_store is None:
            raise OverflowStoreError(
                f"Payload of {len(content)} bytes exceeds the inline limit "
                f"of {self.max_inline_bytes} bytes and no blob store is configured"
            )

        blob_key = str(uuid4())
        try:
            await self._blob_store.put(blob_key, content)
        except Exception as e:
            raise OverflowStoreError(f"Failed to store overflow blob {blob_key}: {e}") from e

        logger.debug(
            "Payload overflowed to blob store",
            extra={"blob_key": blob_key, "size": len(content)},
        )
        pointer = Envelope(
            kind=EnvelopeKind.OVERFLOW,
            message_type=message_type,
            blob_key=blob_key,
        )
        return pointer.model_dump_json(exclude_none=True).encode("utf-8")

    def parse(self, body: bytes) -> Envelope:
        """Parse a queue body. Never fails: foreign bodies become inline raw content."""
        try:
            envelope = Envelope.model_validate_json(body)
        except ValidationError:
            return self._raw(body)

        if envelope.is_overflow and not envelope.blob_key:
            return self._raw(body)
        if not envelope.is_overflow:
            try:
                base64.b64decode(envelope.content or "", validate=True)
            except (binascii.Error, ValueError):
                return self._raw(body)
        return envelope

    async def resolve(self, envelope: Envelope, message_id: str | None = None) -> bytes:
        """
        Get the payload bytes of an envelope, reading the blob for overflow.

        Raises:
            OverflowStoreError: If the overflow blob cannot be read.
        """
        if not envelope.is_overflow:
            return base64.b64decode(envelope.content or "")

        if self._blob_store is None:
            raise OverflowStoreError(
                f"Message references overflow blob {envelope.blob_key} "
                "but no blob store is configured",
                message_id=message_id,
            )
        try:
            return await self._blob_store.get(envelope.blob_key)
        except Exception as e:
            raise OverflowStoreError(
                f"Failed to read overflow blob {envelope.blob_key}: {e}",
                message_id=message_id,
            ) from e

    async def cleanup(self, blob_key: str) -> bool:
        """
        Delete an overflow blob, best-effort.

        Returns:
            True if the blob was deleted, False if the delete failed.
        """
        if self._blob_store is None:
            return False
        try:
            await self._blob_store.delete(blob_key)
        except Exception:
            logger.exception(
                "Failed to delete overflow blob",
                extra={"blob_key": blob_key},
            )
            return False
        return True

    @staticmethod
    def _raw(body: bytes) -> Envelope:
        return Envelope(
            kind=EnvelopeKind.INLINE,
            content=base64.b64encode(body).decode("ascii"),
        )
