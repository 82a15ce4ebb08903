"""
Typed message routing on top of the pump's message hook.

Handlers must be idempotent - at-least-once delivery means they may run
more than once for the same message.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from queuepump.exceptions import ConfigurationError, DispatchError
from queuepump.pump.sender import message_type_of
from queuepump.types.message import ReceivedMessage

logger = logging.getLogger(__name__)

# Type alias for message handler functions (sync or async)
MessageHandler = Callable[[Any, ReceivedMessage, asyncio.Event], Awaitable[None] | None]


class HandlerDispatch:
    """
    Routes resolved messages to handlers by message type.

    An instance is used as a pump's on_message hook. It adds no concurrency
    of its own; failures it raises go through the pump's retry/poison path.

    Example:
        dispatch = HandlerDispatch()

        @dispatch.handler(OrderPlaced)
        async def handle_order(order: OrderPlaced, message, cancel_event):
            ...

        pump = MessagePump(config, queue, on_message=dispatch)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, tuple[type[BaseModel], MessageHandler]] = {}

    def register(
        self,
        model_cls: type[BaseModel],
        handler: MessageHandler,
        message_type: str | None = None,
    ) -> None:
        """
        Register the handler for a message type.

        Args:
            model_cls: Pydantic model the payload is deserialized into.
            handler: Called as handler(payload, message, cancel_event).
            message_type: Discriminator; defaults to the model's message type.

        Raises:
            ConfigurationError: If the message type already has a handler.
        """
        key = message_type or message_type_of(model_cls)
        if key in self._handlers:
            raise ConfigurationError(f"A handler is already registered for message type: {key}")
        self._handlers[key] = (model_cls, handler)
        logger.info(f"Registered handler for message type: {key}")

    def handler(
        self,
        model_cls: type[BaseModel],
        message_type: str | None = None,
    ) -> Callable[[MessageHandler], MessageHandler]:
        """Decorator form of register()."""
        def decorator(func: MessageHandler) -> MessageHandler:
            self.register(model_cls, func, message_type)
            return func
        return decorator

    def list_message_types(self) -> list[str]:
        """List all registered message types."""
        return list(self._handlers.keys())

    async def __call__(self, message: ReceivedMessage, cancel_event: asyncio.Event) -> None:
        """
        Deserialize a message and run its handler.

        Raises:
            DispatchError: If the message has no type, no handler is
                registered for it, or the payload does not validate.
        """
        if message.message_type is None:
            raise DispatchError(
                "Message carries no message type to dispatch on",
                message_id=message.id,
            )

        entry = self._handlers.get(message.message_type)
        if entry is None:
            logger.error(
                f"No handler for message type: {message.message_type}",
                extra={"message_id": message.id},
            )
            raise DispatchError(
                f"No handler registered for message type: {message.message_type}",
                message_id=message.id,
            )

        model_cls, handler = entry
        try:
            payload = model_cls.model_validate_json(message.content)
        except ValidationError as e:
            raise DispatchError(
                f"Invalid payload for message type {message.message_type}: {e}",
                message_id=message.id,
            ) from e

        result = handler(payload, message, cancel_event)
        if inspect.isawaitable(result):
            await result
