"""
Producer side of the queue: serializes payloads and enqueues them through
the overflow codec.
"""

import logging

from pydantic import BaseModel

from queuepump.constants import EnvelopeKind
from queuepump.pump.overflow import OverflowCodec
from queuepump.storage.base import QueueClient

logger = logging.getLogger(__name__)


def message_type_of(model_cls: type[BaseModel]) -> str:
    """Get the dispatch discriminator for a pydantic model class."""
    return getattr(model_cls, "__message_type__", None) or model_cls.__name__


class MessageSender:
    """
    Sends payloads to a queue.

    Accepts bytes, str (encoded as UTF-8) and pydantic models (JSON, with the
    model's message type as discriminator so HandlerDispatch can route it).
    """

    def __init__(self, queue: QueueClient, codec: OverflowCodec | None = None):
        self._queue = queue
        self._codec = codec or OverflowCodec()

    async def send(
        self,
        payload: bytes | str | BaseModel,
        message_type: str | None = None,
        initial_visibility_delay_seconds: float = 0.0,
    ) -> str:
        """
        Enqueue a payload.

        Args:
            payload: The payload to send.
            message_type: Discriminator override; defaults to the model's type.
            initial_visibility_delay_seconds: Hide the message for this long.

        Returns:
            The queue's id for the new message.
        """
        content, message_type = self._serialize(payload, message_type)
        body = await self._codec.encode(content, message_type)

        try:
            message_id = await self._queue.enqueue_message(
                body,
                initial_visibility_delay_seconds=initial_visibility_delay_seconds,
            )
        except Exception:
            # Nothing will ever reference the blob we just wrote
            envelope = self._codec.parse(body)
            if envelope.kind == EnvelopeKind.OVERFLOW and envelope.blob_key:
                await self._codec.cleanup(envelope.blob_key)
            raise

        logger.debug(
            "Message enqueued",
            extra={"message_id": message_id, "message_type": message_type, "size": len(content)},
        )
        return message_id

    @staticmethod
    def _serialize(
        payload: bytes | str | BaseModel,
        message_type: str | None,
    ) -> tuple[bytes, str | None]:
        if isinstance(payload, BaseModel):
            return (
                payload.model_dump_json().encode("utf-8"),
                message_type or message_type_of(type(payload)),
            )
        if isinstance(payload, str):
            return payload.encode("utf-8"), message_type
        if isinstance(payload, (bytes, bytearray, memoryview)):
            return bytes(payload), message_type
        raise TypeError(f"Unsupported payload type: {type(payload).__name__}")

