"""
Unit tests for the message pump.
"""

import asyncio
import dataclasses
from unittest.mock import patch

import pytest
from prometheus_client import CollectorRegistry

from queuepump.config import PumpConfig
from queuepump.constants import PumpState
from queuepump.exceptions import (
    ConfigurationError,
    ProcessingError,
    PumpStateError,
    TransientFetchError,
)
from queuepump.observability.metrics import PrometheusMetricsSink
from queuepump.pump import MessagePump, MessageSender, OverflowCodec
from queuepump.storage import InMemoryBlobStore, InMemoryQueueClient
from queuepump.types.message import ReceivedMessage

RUN_TIMEOUT = 5


async def run(pump: MessagePump) -> None:
    await asyncio.wait_for(pump.start(), timeout=RUN_TIMEOUT)


def stop_when_drained(queue: InMemoryQueueClient, get_pump):
    """Build an on_queue_empty hook that stops the pump once the queue holds nothing."""
    async def on_queue_empty(cancel_event: asyncio.Event) -> None:
        if queue.message_count == 0:
            await get_pump().stop()
    return on_queue_empty


class FlakyFetchQueue(InMemoryQueueClient):
    """Queue whose first fetch fails."""

    async def fetch_batch(self, max_count, visibility_timeout_seconds):
        if self.fetch_calls == 0:
            self.fetch_calls += 1
            raise ConnectionError("queue unreachable")
        return await super().fetch_batch(max_count, visibility_timeout_seconds)


class FailingDeleteQueue(InMemoryQueueClient):
    """Queue that never lets a message be deleted."""

    async def delete_message(self, message_id, lease_token):
        self.delete_calls += 1
        raise ConnectionError("delete failed")


class FailingDeleteBlobStore(InMemoryBlobStore):
    """Blob store that never lets a blob be deleted."""

    async def delete(self, key):
        self.delete_calls += 1
        raise ConnectionError("blob delete failed")


class TestPumpLifecycle:
    """Tests for starting and stopping the pump."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency", [1, 4])
    async def test_empty_queue_stops_without_processing(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
        concurrency: int,
    ):
        """Test that a pump on an empty queue never calls on_message."""
        processed = []
        config = dataclasses.replace(fast_config, concurrency=concurrency)

        pump = MessagePump(
            config,
            queue,
            on_message=lambda message, cancel: processed.append(message),
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        assert processed == []
        assert pump.state == PumpState.STOPPED
        assert queue.fetch_calls >= concurrency

    @pytest.mark.asyncio
    async def test_stop_before_start(self, queue: InMemoryQueueClient, fast_config: PumpConfig):
        """Test that stopping an idle pump marks it stopped and it can no longer start."""
        pump = MessagePump(fast_config, queue, on_message=lambda m, c: None)

        await pump.stop()
        assert pump.state == PumpState.STOPPED

        with pytest.raises(PumpStateError):
            await pump.start()
        assert queue.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_start_without_on_message(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that a pump without a message hook refuses to start."""
        pump = MessagePump(fast_config, queue)

        with pytest.raises(ConfigurationError):
            await pump.start()
        with pytest.raises(ConfigurationError):
            pump.start_in_background()

        assert queue.fetch_calls == 0
        assert pump.state == PumpState.IDLE

    def test_invalid_construction(self, queue: InMemoryQueueClient, fast_config: PumpConfig):
        """Test that a pump requires a PumpConfig and a queue."""
        with pytest.raises(ConfigurationError):
            MessagePump({"queue_name": "x"}, queue)
        with pytest.raises(ConfigurationError):
            MessagePump(fast_config, None)

    @pytest.mark.asyncio
    async def test_concurrent_stops_share_one_shutdown(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that many concurrent stop calls run the shutdown sequence once."""
        fetched = asyncio.Event()
        pump = MessagePump(
            fast_config,
            queue,
            on_message=lambda m, c: None,
            on_queue_empty=lambda cancel: fetched.set(),
        )

        with patch.object(pump, "_shutdown", wraps=pump._shutdown) as shutdown:
            task = pump.start_in_background()
            await asyncio.wait_for(fetched.wait(), timeout=RUN_TIMEOUT)

            await asyncio.gather(pump.stop(), pump.stop(), pump.stop())
            await asyncio.wait_for(task, timeout=RUN_TIMEOUT)

            shutdown.assert_awaited_once()

        assert pump.state == PumpState.STOPPED
        assert pump.cancel_event.is_set()

        # Stopping again after shutdown returns immediately
        await pump.stop()

    @pytest.mark.asyncio
    async def test_request_stop_from_another_thread(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that request_stop works from a thread other than the loop's."""
        async def on_queue_empty(cancel_event):
            await asyncio.to_thread(pump.request_stop)

        pump = MessagePump(
            fast_config,
            queue,
            on_message=lambda m, c: None,
            on_queue_empty=on_queue_empty,
        )
        await run(pump)

        assert pump.state == PumpState.STOPPED

    @pytest.mark.asyncio
    async def test_sync_hook_can_request_stop(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that a plain function hook can stop the pump."""
        def on_queue_empty(cancel_event):
            pump.request_stop()

        pump = MessagePump(
            fast_config,
            queue,
            on_message=lambda m, c: None,
            on_queue_empty=on_queue_empty,
        )
        await run(pump)

        assert pump.state == PumpState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_from_message_hook_leaves_rest_of_batch(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that messages leased but not yet processed are left for redelivery."""
        for i in range(3):
            await queue.enqueue_message(f"message-{i}".encode())

        processed = []

        async def on_message(message: ReceivedMessage, cancel_event):
            processed.append(message.content)
            await pump.stop()

        pump = MessagePump(fast_config, queue, on_message=on_message)
        await run(pump)

        assert processed == [b"message-0"]
        assert queue.delete_calls == 1
        assert queue.message_count == 2
        assert all(m.dequeue_count == 1 for m in queue.messages.values())

    @pytest.mark.asyncio
    async def test_stop_from_task_spawned_by_hook(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that a hook awaiting stop() through a child task does not hang."""
        async def on_queue_empty(cancel_event):
            await asyncio.gather(pump.stop())

        pump = MessagePump(
            fast_config,
            queue,
            on_message=lambda m, c: None,
            on_queue_empty=on_queue_empty,
        )
        await run(pump)

        assert pump.state == PumpState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_with_timeout_from_message_hook(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that wait_for(stop()) inside a hook returns before its timeout."""
        await queue.enqueue_message(b"payload")

        async def on_message(message, cancel_event):
            await asyncio.wait_for(pump.stop(), timeout=1)

        pump = MessagePump(fast_config, queue, on_message=on_message)
        await run(pump)

        assert pump.state == PumpState.STOPPED
        assert queue.message_count == 0

    @pytest.mark.asyncio
    async def test_hook_stopping_another_pump_waits_for_it(
        self,
        fast_config: PumpConfig,
    ):
        """Test that a hook stopping a different pump waits for that pump's workers."""
        other_queue = InMemoryQueueClient(name="other-queue")
        other_fetched = asyncio.Event()
        other = MessagePump(
            dataclasses.replace(fast_config, queue_name="other-queue"),
            other_queue,
            on_message=lambda m, c: None,
            on_queue_empty=lambda cancel: other_fetched.set(),
        )
        other_task = other.start_in_background()
        await asyncio.wait_for(other_fetched.wait(), timeout=RUN_TIMEOUT)

        observed = []

        async def on_queue_empty(cancel_event):
            await other.stop()
            observed.append(other.state)
            await pump.stop()

        pump = MessagePump(
            fast_config,
            InMemoryQueueClient(name="test-queue"),
            on_message=lambda m, c: None,
            on_queue_empty=on_queue_empty,
        )
        await run(pump)
        await asyncio.wait_for(other_task, timeout=RUN_TIMEOUT)

        assert observed == [PumpState.STOPPED]

    @pytest.mark.asyncio
    async def test_stop_from_another_event_loop(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that stop() awaited on a different loop waits for the shutdown."""
        fetched = asyncio.Event()
        pump = MessagePump(
            fast_config,
            queue,
            on_message=lambda m, c: None,
            on_queue_empty=lambda cancel: fetched.set(),
        )
        task = pump.start_in_background()
        await asyncio.wait_for(fetched.wait(), timeout=RUN_TIMEOUT)

        def stop_on_own_loop() -> PumpState:
            asyncio.run(pump.stop())
            return pump.state

        state = await asyncio.wait_for(
            asyncio.to_thread(stop_on_own_loop), timeout=RUN_TIMEOUT
        )

        assert state == PumpState.STOPPED
        await asyncio.wait_for(task, timeout=RUN_TIMEOUT)

    @pytest.mark.asyncio
    async def test_stop_blocking_from_another_thread(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that stop_blocking returns only once the pump has stopped."""
        fetched = asyncio.Event()
        pump = MessagePump(
            fast_config,
            queue,
            on_message=lambda m, c: None,
            on_queue_empty=lambda cancel: fetched.set(),
        )
        task = pump.start_in_background()
        await asyncio.wait_for(fetched.wait(), timeout=RUN_TIMEOUT)

        def stop_and_read_state() -> PumpState:
            pump.stop_blocking(timeout=RUN_TIMEOUT)
            return pump.state

        state = await asyncio.wait_for(
            asyncio.to_thread(stop_and_read_state), timeout=RUN_TIMEOUT
        )

        assert state == PumpState.STOPPED
        await asyncio.wait_for(task, timeout=RUN_TIMEOUT)

        # Already stopped
        await asyncio.to_thread(pump.stop_blocking)

    @pytest.mark.asyncio
    async def test_stop_blocking_on_pump_loop_is_rejected(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that stop_blocking refuses to block the loop the workers run on."""
        pump = MessagePump(fast_config, queue, on_message=lambda m, c: None)
        task = pump.start_in_background()

        with pytest.raises(PumpStateError):
            pump.stop_blocking()
        assert pump.state == PumpState.RUNNING

        await asyncio.wait_for(pump.stop(), timeout=RUN_TIMEOUT)
        await task

    def test_stop_blocking_before_start(self, queue: InMemoryQueueClient, fast_config: PumpConfig):
        pump = MessagePump(fast_config, queue, on_message=lambda m, c: None)

        pump.stop_blocking()

        assert pump.state == PumpState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_right_after_background_start(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that stopping before the background task first runs shuts down cleanly."""
        await queue.enqueue_message(b"payload")
        pump = MessagePump(fast_config, queue, on_message=lambda m, c: None)

        task = pump.start_in_background()
        assert pump.state == PumpState.RUNNING

        await asyncio.wait_for(pump.stop(), timeout=RUN_TIMEOUT)
        await asyncio.wait_for(task, timeout=RUN_TIMEOUT)

        assert pump.state == PumpState.STOPPED
        assert queue.fetch_calls == 0
        assert queue.message_count == 1

    @pytest.mark.asyncio
    async def test_background_task_cancelled_before_it_runs(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that stop() still returns when the background task never ran."""
        pump = MessagePump(fast_config, queue, on_message=lambda m, c: None)

        task = pump.start_in_background()
        task.cancel()

        await asyncio.wait_for(pump.stop(), timeout=RUN_TIMEOUT)

        assert pump.state == PumpState.STOPPED
        with pytest.raises(asyncio.CancelledError):
            await task


class TestPumpProcessing:
    """Tests for message processing outcomes."""

    @pytest.mark.asyncio
    async def test_processes_and_deletes_all_messages(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that every successful message is processed and deleted once."""
        for i in range(5):
            await queue.enqueue_message(f"message-{i}".encode())

        processed = []
        empty_calls = []

        async def on_queue_empty(cancel_event):
            empty_calls.append(cancel_event)
            if queue.message_count == 0:
                await pump.stop()

        pump = MessagePump(
            fast_config,
            queue,
            on_message=lambda message, cancel: processed.append(message.text()),
            on_queue_empty=on_queue_empty,
        )
        await run(pump)

        assert processed == [f"message-{i}" for i in range(5)]
        assert queue.delete_calls == 5
        assert queue.message_count == 0
        assert len(empty_calls) >= 1
        assert empty_calls[0] is pump.cancel_event

    @pytest.mark.asyncio
    async def test_concurrent_workers_process_each_message_once(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that with several workers no message is processed twice."""
        for i in range(20):
            await queue.enqueue_message(str(i).encode())

        processed = []

        async def on_message(message: ReceivedMessage, cancel_event):
            await asyncio.sleep(0)
            processed.append(message.id)

        config = dataclasses.replace(
            fast_config,
            concurrency=4,
            max_messages_per_fetch=3,
            visibility_timeout_seconds=5,
        )
        pump = MessagePump(
            config,
            queue,
            on_message=on_message,
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        assert len(processed) == 20
        assert len(set(processed)) == 20
        assert queue.delete_calls == 20

    @pytest.mark.asyncio
    async def test_failing_message_retried_until_poison(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that a failing message is redelivered until its attempts run out."""
        await queue.enqueue_message(b"always fails")

        attempts = []
        errors = []

        def on_message(message: ReceivedMessage, cancel_event):
            attempts.append((message.dequeue_count, message.is_last_attempt))
            raise ValueError("boom")

        def on_error(message, error, is_poison):
            errors.append((message, error, is_poison))

        pump = MessagePump(
            fast_config,
            queue,
            on_message=on_message,
            on_error=on_error,
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        assert [is_poison for _, _, is_poison in errors] == [False, False, False, True]
        assert attempts == [(1, False), (2, False), (3, False), (4, True)]
        assert queue.delete_calls == 1
        assert queue.message_count == 0

        message, error, _ = errors[-1]
        assert message.dequeue_count == 4
        assert isinstance(error, ProcessingError)
        assert isinstance(error.__cause__, ValueError)
        assert error.message_id == message.id

    @pytest.mark.asyncio
    async def test_poison_on_first_delivery_seen(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that a message already past its attempts is deleted on its next failure."""
        message_id = await queue.enqueue_message(b"poison")
        queue.messages[message_id].dequeue_count = fast_config.max_dequeue_attempts

        errors = []

        async def on_message(message, cancel_event):
            raise RuntimeError("cannot handle")

        pump = MessagePump(
            fast_config,
            queue,
            on_message=on_message,
            on_error=lambda message, error, is_poison: errors.append(is_poison),
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        assert errors == [True]
        assert queue.delete_calls == 1
        assert queue.message_count == 0

    @pytest.mark.asyncio
    async def test_queue_empty_hook_errors_are_ignored(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that a raising on_queue_empty does not stop the pump."""
        calls = []

        async def on_queue_empty(cancel_event):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("hook failed")
            await pump.stop()

        pump = MessagePump(
            fast_config,
            queue,
            on_message=lambda m, c: None,
            on_queue_empty=on_queue_empty,
        )
        await run(pump)

        assert len(calls) == 2
        assert pump.state == PumpState.STOPPED

    @pytest.mark.asyncio
    async def test_fetch_error_reported_without_message(self, fast_config: PumpConfig):
        """Test that a failed fetch reaches on_error with no message and the pump continues."""
        queue = FlakyFetchQueue(name="test-queue")
        errors = []

        pump = MessagePump(
            fast_config,
            queue,
            on_message=lambda m, c: None,
            on_error=lambda message, error, is_poison: errors.append((message, error, is_poison)),
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        assert len(errors) == 1
        message, error, is_poison = errors[0]
        assert message is None
        assert isinstance(error, TransientFetchError)
        assert isinstance(error.__cause__, ConnectionError)
        assert is_poison is False
        assert queue.fetch_calls >= 2

    @pytest.mark.asyncio
    async def test_error_hook_failure_is_isolated(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that a raising on_error does not affect the poison deletion."""
        message_id = await queue.enqueue_message(b"poison")
        queue.messages[message_id].dequeue_count = fast_config.max_dequeue_attempts

        def on_error(message, error, is_poison):
            raise RuntimeError("error hook failed")

        def on_message(message, cancel_event):
            raise ValueError("boom")

        pump = MessagePump(
            fast_config,
            queue,
            on_message=on_message,
            on_error=on_error,
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        assert queue.message_count == 0


class TestPumpOverflow:
    """Tests for overflow payloads flowing through the pump."""

    @pytest.fixture
    def codec(self, blob_store: InMemoryBlobStore) -> OverflowCodec:
        """Create a codec that overflows anything beyond a few bytes."""
        return OverflowCodec(blob_store, max_inline_bytes=128)

    @pytest.mark.asyncio
    async def test_large_payload_is_resolved_and_blob_deleted(
        self,
        queue: InMemoryQueueClient,
        blob_store: InMemoryBlobStore,
        codec: OverflowCodec,
        fast_config: PumpConfig,
    ):
        """Test that a hook sees the exact large payload and its blob is removed after ack."""
        payload = bytes(range(256)) * 64
        await MessageSender(queue, codec).send(payload, message_type="blob")
        assert len(blob_store.blobs) == 1

        received = []
        pump = MessagePump(
            fast_config,
            queue,
            codec=codec,
            on_message=lambda message, cancel: received.append(message),
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        assert len(received) == 1
        assert received[0].content == payload
        assert received[0].message_type == "blob"
        assert blob_store.blobs == {}

    @pytest.mark.asyncio
    async def test_blob_kept_when_message_delete_fails(
        self,
        blob_store: InMemoryBlobStore,
        codec: OverflowCodec,
        fast_config: PumpConfig,
    ):
        """Test that the blob survives while its message is still in the queue."""
        queue = FailingDeleteQueue(name="test-queue")
        await MessageSender(queue, codec).send(b"x" * 1024)

        async def on_message(message, cancel_event):
            await pump.stop()

        pump = MessagePump(fast_config, queue, codec=codec, on_message=on_message)
        await run(pump)

        assert queue.delete_calls == 1
        assert queue.message_count == 1
        assert len(blob_store.blobs) == 1
        assert blob_store.delete_calls == 0

    @pytest.mark.asyncio
    async def test_blob_delete_failure_does_not_fail_ack(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
    ):
        """Test that a failed blob cleanup leaves the message acknowledged."""
        blob_store = FailingDeleteBlobStore()
        codec = OverflowCodec(blob_store, max_inline_bytes=128)
        await MessageSender(queue, codec).send(b"y" * 1024)

        errors = []
        pump = MessagePump(
            fast_config,
            queue,
            codec=codec,
            on_message=lambda m, c: None,
            on_error=lambda *args: errors.append(args),
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        assert errors == []
        assert queue.message_count == 0
        assert blob_store.delete_calls == 1

    @pytest.mark.asyncio
    async def test_missing_blob_is_a_processing_failure(
        self,
        queue: InMemoryQueueClient,
        blob_store: InMemoryBlobStore,
        codec: OverflowCodec,
        fast_config: PumpConfig,
    ):
        """Test that an unreadable overflow blob goes through the retry path."""
        await MessageSender(queue, codec).send(b"z" * 1024)
        blob_store.blobs.clear()

        processed = []
        errors = []
        config = dataclasses.replace(fast_config, max_dequeue_attempts=1)
        pump = MessagePump(
            config,
            queue,
            codec=codec,
            on_message=lambda m, c: processed.append(m),
            on_error=lambda message, error, is_poison: errors.append(is_poison),
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        assert processed == []
        assert errors == [False, True]
        assert queue.message_count == 0


class TestPumpMetrics:
    """Tests for pump metrics."""

    @pytest.fixture
    def registry(self) -> CollectorRegistry:
        """Create an isolated registry."""
        return CollectorRegistry()

    @pytest.mark.asyncio
    async def test_prometheus_metrics(
        self,
        queue: InMemoryQueueClient,
        fast_config: PumpConfig,
        registry: CollectorRegistry,
    ):
        """Test that processing outcomes are recorded per queue."""
        await queue.enqueue_message(b"ok-1")
        await queue.enqueue_message(b"ok-2")
        poison_id = await queue.enqueue_message(b"bad")
        queue.messages[poison_id].dequeue_count = fast_config.max_dequeue_attempts

        def on_message(message, cancel_event):
            if message.content == b"bad":
                raise ValueError("bad message")

        config = dataclasses.replace(fast_config, metrics=PrometheusMetricsSink(registry))
        pump = MessagePump(
            config,
            queue,
            on_message=on_message,
            on_queue_empty=stop_when_drained(queue, lambda: pump),
        )
        await run(pump)

        labels = {"queue": "test-queue"}
        assert registry.get_sample_value("queuepump_messages_processed_total", labels) == 2
        assert registry.get_sample_value("queuepump_messages_failed_total", labels) == 1
        assert registry.get_sample_value("queuepump_messages_poisoned_total", labels) == 1
        assert registry.get_sample_value("queuepump_queue_empty_count_total", labels) >= 1
        assert (
            registry.get_sample_value("queuepump_message_processing_time_seconds_count", labels)
            == 3
        )
        assert registry.get_sample_value("queuepump_message_fetch_time_seconds_count", labels) >= 2
        assert registry.get_sample_value("queuepump_queued_messages_approx", labels) is not None
