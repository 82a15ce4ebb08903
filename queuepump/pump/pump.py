"""
Message pump: the fetch / process / acknowledge loop.

A fixed pool of workers each repeatedly leases a batch from the queue,
resolves overflow payloads, runs the message hook and deletes what
succeeded. Failures are never requeued explicitly: a retryable message is
simply not deleted, its lease expires and the queue delivers it again with a
higher dequeue count. Once that count exceeds the configured attempts the
next failure deletes it as poison.

Workers share nothing but the cancellation event; "no two workers process
the same message" rests entirely on the queue's leases, so the visibility
timeout must exceed the worst-case processing time.
"""

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from typing import Any

from queuepump.config import PumpConfig
from queuepump.constants import (
    METRIC_MESSAGE_FETCH_TIME,
    METRIC_MESSAGE_PROCESSING_TIME,
    METRIC_MESSAGES_FAILED,
    METRIC_MESSAGES_POISONED,
    METRIC_MESSAGES_PROCESSED,
    METRIC_QUEUE_EMPTY_COUNT,
    METRIC_QUEUED_MESSAGES,
    PumpState,
)
from queuepump.exceptions import (
    ConfigurationError,
    ProcessingError,
    PumpStateError,
    TransientFetchError,
)
from queuepump.observability.logging import (
    bind_worker_context,
    get_logger,
    message_log_context,
)
from queuepump.observability.metrics import MetricsSink
from queuepump.observability.tracing import message_span
from queuepump.pump.overflow import OverflowCodec
from queuepump.pump.policy import EmptyQueueBackoff, PoisonPolicy
from queuepump.storage.base import BlobStore, QueueClient
from queuepump.types.message import QueueMessage, ReceivedMessage

# Hook signatures; each may be a plain function or a coroutine function
OnMessage = Callable[[ReceivedMessage, asyncio.Event], Awaitable[None] | None]
OnQueueEmpty = Callable[[asyncio.Event], Awaitable[None] | None]
OnError = Callable[[QueueMessage | None, Exception, bool], Awaitable[None] | None]

# The pump whose worker is running the current task; inherited by tasks a hook spawns
_current_worker_pump: ContextVar["MessagePump | None"] = ContextVar(
    "queuepump_current_worker_pump", default=None
)


async def _call_hook(hook: Callable[..., Any], *args: Any) -> None:
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


class MessagePump:
    """
    Concurrent consumer for an at-least-once queue.

    Features:
    - `concurrency` independent workers, each a sequential fetch/process loop
    - Poison detection from the queue's dequeue count
    - Transparent overflow payloads through the blob store
    - Capped exponential backoff while the queue is empty
    - Idempotent stop, callable from hooks, other tasks and other threads

    Hooks:
    - on_message(message, cancel_event): required. Raising marks the delivery failed.
    - on_queue_empty(cancel_event): optional. Exceptions are logged and ignored.
    - on_error(message, error, is_poison): optional. message is None for fetch errors.
    """

    def __init__(
        self,
        config: PumpConfig,
        queue: QueueClient,
        *,
        blob_store: BlobStore | None = None,
        codec: OverflowCodec | None = None,
        on_message: OnMessage | None = None,
        on_queue_empty: OnQueueEmpty | None = None,
        on_error: OnError | None = None,
    ):
        """
        Initialize the pump.

        Args:
            config: Validated pump configuration.
            queue: The queue to consume.
            blob_store: Store holding overflow payloads; ignored when codec is given.
            codec: Envelope codec; defaults to an OverflowCodec over blob_store.
            on_message: Processes one resolved message.
            on_queue_empty: Called whenever a fetch returns nothing.
            on_error: Called for every processing failure and fetch error.
        """
        if not isinstance(config, PumpConfig):
            raise ConfigurationError("config must be a PumpConfig")
        if queue is None:
            raise ConfigurationError("queue is required")

        self.config = config
        self._queue = queue
        self._codec = codec or OverflowCodec(blob_store)
        self._policy = PoisonPolicy(config.max_dequeue_attempts)
        self._metrics: MetricsSink = config.metrics or MetricsSink()
        self._logger = (config.logger or get_logger(__name__)).bind(queue=config.queue_name)

        self._on_message = on_message
        self._on_queue_empty = on_queue_empty
        self._on_error = on_error

        self._state = PumpState.IDLE
        self._cancel_event = asyncio.Event()
        self._stopped_event = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._workers: list[asyncio.Task] = []
        self._shutdown_task: asyncio.Future | None = None

    @property
    def state(self) -> PumpState:
        return self._state

    @property
    def cancel_event(self) -> asyncio.Event:
        """The shared cancellation signal handed to hooks."""
        return self._cancel_event

    async def start(self) -> None:
        """
        Run the pump until it is stopped.

        This blocks (awaits) until every worker has exited; use
        start_in_background() for a non-blocking start.

        Raises:
            ConfigurationError: If no on_message hook was given.
            PumpStateError: If the pump was already started or stopped.
        """
        self._validate_startable()
        self._claim()
        await self._run()

    def start_in_background(self) -> asyncio.Task:
        """
        Start the pump as a task on the running loop and return the task.

        Configuration is validated and the pump is marked running
        synchronously, so a stop() issued before the task first runs still
        goes through the normal shutdown sequence.
        """
        self._validate_startable()
        self._claim()
        task = asyncio.create_task(self._run(), name=f"queuepump-{self.config.queue_name}")
        # A task cancelled before its first step never reaches _run's cleanup
        task.add_done_callback(lambda _: self._mark_stopped())
        return task

    async def stop(self) -> None:
        """
        Stop the pump and wait until every worker has exited.

        Idempotent: concurrent and repeated calls share one shutdown sequence.
        Stopping a pump that was never started marks it stopped. When called
        from a hook running on one of the pump's own workers (or any task that
        hook spawned), the shutdown is triggered and this returns at once; the
        worker exits after the hook. From a different event loop the call is
        forwarded to the pump's loop and awaited there.
        """
        loop = self._loop
        if (
            loop is not None
            and self._state is not PumpState.STOPPED
            and loop is not asyncio.get_running_loop()
        ):
            await asyncio.wrap_future(asyncio.run_coroutine_threadsafe(self.stop(), loop))
            return

        self._begin_stop()
        if self._stopped_event.is_set():
            return
        if _current_worker_pump.get() is self:
            return
        await asyncio.shield(self._shutdown_task)

    def stop_blocking(self, timeout: float | None = None) -> None:
        """
        Stop the pump from a thread without an event loop and wait for it.

        Raises:
            PumpStateError: If called from the pump's own event loop thread,
                where waiting would block the workers it waits for.
            TimeoutError: If the pump did not stop within timeout seconds.
        """
        loop = self._loop
        if loop is None:
            self._begin_stop()
            return
        if self._state is PumpState.STOPPED:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            raise PumpStateError("stop_blocking() cannot be called from the pump's own loop")

        asyncio.run_coroutine_threadsafe(self.stop(), loop).result(timeout)

    def request_stop(self) -> None:
        """
        Trigger the shutdown without waiting for it.

        Safe to call from any thread and from plain (non-async) hooks.
        """
        if self._state is PumpState.STOPPED:
            return
        loop = self._loop
        if loop is None:
            self._begin_stop()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._begin_stop()
        else:
            loop.call_soon_threadsafe(self._begin_stop)

    def _validate_startable(self) -> None:
        if self._on_message is None:
            raise ConfigurationError("An on_message hook is required to start the pump")
        if self._state is not PumpState.IDLE:
            raise PumpStateError(f"Cannot start a pump in state {self._state}")

    def _claim(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._state = PumpState.RUNNING

    def _mark_stopped(self) -> None:
        if self._stopped_event.is_set():
            return
        self._cancel_event.set()
        self._state = PumpState.STOPPED
        self._stopped_event.set()
        self._logger.info("Message pump stopped")

    def _begin_stop(self) -> None:
        if self._state is PumpState.IDLE:
            self._state = PumpState.STOPPED
            self._stopped_event.set()
            self._logger.info("Message pump stopped before it was started")
            return
        if self._state is not PumpState.RUNNING:
            return

        self._state = PumpState.STOPPING
        self._cancel_event.set()
        self._shutdown_task = asyncio.ensure_future(self._shutdown())

    async def _shutdown(self) -> None:
        self._logger.info("Message pump stopping")
        await self._stopped_event.wait()

    async def _run(self) -> None:
        self._logger.info(
            "Message pump starting",
            concurrency=self.config.concurrency,
            max_messages_per_fetch=self.config.max_messages_per_fetch,
            max_dequeue_attempts=self.config.max_dequeue_attempts,
        )

        self._workers = [
            asyncio.create_task(
                self._worker_loop(index),
                name=f"queuepump-{self.config.queue_name}-worker-{index}",
            )
            for index in range(self.config.concurrency)
        ]
        gauge_task = None
        if self.config.metrics is not None:
            gauge_task = asyncio.create_task(self._gauge_loop())

        try:
            await asyncio.gather(*self._workers)
        finally:
            self._cancel_event.set()
            for worker in self._workers:
                if not worker.done():
                    worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            if gauge_task is not None:
                gauge_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await gauge_task

            self._mark_stopped()

    async def _worker_loop(self, worker_index: int) -> None:
        """
        One worker: fetch, process each message, repeat until cancelled.

        Cancellation is checked before every fetch and between messages,
        never in the middle of a hook.
        """
        _current_worker_pump.set(self)
        bind_worker_context(self.config.queue_name, worker_index)
        log = self._logger
        backoff = EmptyQueueBackoff(
            self.config.empty_backoff_base_seconds,
            self.config.empty_backoff_max_seconds,
        )
        log.debug("Worker started")

        while not self._cancel_event.is_set():
            try:
                messages = await self._fetch()
            except TransientFetchError as e:
                log.warning("Fetching messages failed", error=str(e))
                await self._report_error(None, e, False, log)
                await self._wait(backoff.next_delay())
                continue

            if not messages:
                self._metrics.increment(METRIC_QUEUE_EMPTY_COUNT, queue=self.config.queue_name)
                await self._notify_queue_empty(log)
                await self._wait(backoff.next_delay())
                continue

            backoff.reset()
            for index, message in enumerate(messages):
                if self._cancel_event.is_set():
                    log.info(
                        "Stop requested, leaving leased messages for redelivery",
                        remaining=len(messages) - index,
                    )
                    break
                try:
                    with message_log_context(message.id, message.dequeue_count):
                        await self._process_message(message, log)
                except Exception:
                    log.exception("Unexpected error handling message", message_id=message.id)

        log.debug("Worker stopped")

    async def _fetch(self) -> list[QueueMessage]:
        try:
            with self._metrics.timer(METRIC_MESSAGE_FETCH_TIME, queue=self.config.queue_name):
                messages = await self._queue.fetch_batch(
                    self.config.max_messages_per_fetch,
                    self.config.visibility_timeout_seconds,
                )
        except Exception as e:
            raise TransientFetchError(
                f"Failed to fetch messages from {self.config.queue_name}: {e}"
            ) from e
        return list(messages)

    async def _process_message(self, message: QueueMessage, log: Any) -> None:
        """
        Process a single message.

        Handles the full lifecycle:
        1. Resolve the envelope (reading the overflow blob if any)
        2. Run the message hook
        3. Delete on success, or classify the failure as retryable or poison
        """
        envelope = self._codec.parse(message.body)
        blob_key = envelope.blob_key if envelope.is_overflow else None

        try:
            content = await self._codec.resolve(envelope, message_id=message.id)
            received = ReceivedMessage(
                id=message.id,
                content=content,
                message_type=envelope.message_type,
                dequeue_count=message.dequeue_count,
                max_dequeue_attempts=self.config.max_dequeue_attempts,
                inserted_at=message.inserted_at,
            )

            with message_span(self.config.queue_name, message.id, message.dequeue_count):
                with self._metrics.timer(
                    METRIC_MESSAGE_PROCESSING_TIME, queue=self.config.queue_name
                ):
                    await _call_hook(self._on_message, received, self._cancel_event)

        except Exception as e:
            await self._handle_failure(message, blob_key, e, log)
            return

        log.debug("Message processed")
        self._metrics.increment(METRIC_MESSAGES_PROCESSED, queue=self.config.queue_name)
        await self._acknowledge(message, blob_key, log)

    async def _handle_failure(
        self,
        message: QueueMessage,
        blob_key: str | None,
        exc: Exception,
        log: Any,
    ) -> None:
        if isinstance(exc, ProcessingError):
            error = exc
        else:
            error = ProcessingError(f"Processing failed: {exc}", message_id=message.id)
            error.__cause__ = exc

        is_poison = self._policy.is_poison(message.dequeue_count)
        self._metrics.increment(METRIC_MESSAGES_FAILED, queue=self.config.queue_name)

        if is_poison:
            self._metrics.increment(METRIC_MESSAGES_POISONED, queue=self.config.queue_name)
            log.error(
                "Poison message rejected",
                error=str(error),
                max_dequeue_attempts=self.config.max_dequeue_attempts,
            )
        else:
            log.warning("Message processing failed, leaving it for redelivery", error=str(error))

        await self._report_error(message, error, is_poison, log)

        if is_poison:
            await self._acknowledge(message, blob_key, log)

    async def _acknowledge(self, message: QueueMessage, blob_key: str | None, log: Any) -> None:
        """Delete a message that reached a terminal outcome, then its overflow blob."""
        try:
            await self._queue.delete_message(message.id, message.lease_token)
        except Exception:
            # The message comes back, so it still needs its blob
            log.exception("Failed to delete message; it will be redelivered")
            return

        if blob_key is not None:
            await self._codec.cleanup(blob_key)

    async def _report_error(
        self,
        message: QueueMessage | None,
        error: Exception,
        is_poison: bool,
        log: Any,
    ) -> None:
        if self._on_error is None:
            return
        try:
            await _call_hook(self._on_error, message, error, is_poison)
        except Exception:
            log.exception("Error hook raised")

    async def _notify_queue_empty(self, log: Any) -> None:
        if self._on_queue_empty is None:
            return
        try:
            await _call_hook(self._on_queue_empty, self._cancel_event)
        except Exception:
            log.exception("Queue empty hook raised, ignoring")

    async def _wait(self, delay: float) -> None:
        """Sleep for delay seconds, waking up early if the pump is stopped."""
        if self._cancel_event.is_set():
            return
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._cancel_event.wait(), timeout=delay)

    async def _gauge_loop(self) -> None:
        """Periodically publish the approximate queue length."""
        while not self._cancel_event.is_set():
            try:
                count = await self._queue.get_approximate_message_count()
                self._metrics.set_gauge(
                    METRIC_QUEUED_MESSAGES, count, queue=self.config.queue_name
                )
            except Exception:
                self._logger.exception("Failed to refresh queued messages gauge")
            await self._wait(self.config.metrics_interval_seconds)
