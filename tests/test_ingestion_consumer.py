"""
Tests for the joke ingestion consumer.

Covers:
  - Idempotent persistence (duplicate hash → one row, both acked)
  - Malformed payloads are nak'd and eventually dead-lettered
  - Store failures are nak'd
  - Broker subscribe and pull errors back off without killing the loop
  - End-to-end: publish → consume → persisted once
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from ingestion.fingerprint import fingerprint_text
from job_queue.consumer import JokeIngestionConsumer, Settlement
from job_queue.message_queue import (
    BrokerUnavailableError, ConsumerGroups, InMemoryMessageQueue, QueueEnvelope, Topics,
)


def envelope(payload, message_id="0", deliveries=1) -> QueueEnvelope:
    if isinstance(payload, dict):
        payload = json.dumps(payload).encode("utf-8")
    return QueueEnvelope(
        topic=Topics.JOKES, payload=payload, message_id=message_id,
        group=ConsumerGroups.INGESTION, delivery_count=deliveries,
    )


WHY = {
    "content": "Why?",
    "source": "reddit",
    "source_url": "u",
    "hash": fingerprint_text("Why?"),
}


# ──────────────────────────────────────────────────────────────
#  handle()
# ──────────────────────────────────────────────────────────────

class TestIngestionHandle:
    @pytest.fixture
    def consumer(self, memory_store, memory_queue, stop_event):
        return JokeIngestionConsumer(memory_store, memory_queue, stop_event=stop_event)

    @pytest.mark.asyncio
    async def test_valid_joke_persisted_and_acked(self, consumer, memory_store):
        assert await consumer.handle(envelope(WHY)) is Settlement.ACK
        assert await memory_store.count() == 1
        assert await memory_store.hash_exists(WHY["hash"])

    @pytest.mark.asyncio
    async def test_duplicate_is_acked_without_second_row(self, consumer, memory_store):
        assert await consumer.handle(envelope(WHY, "0")) is Settlement.ACK
        assert await consumer.handle(envelope(WHY, "1")) is Settlement.ACK
        assert await memory_store.count() == 1

    @pytest.mark.asyncio
    async def test_invalid_json_is_naked(self, consumer, memory_store):
        assert await consumer.handle(envelope(b"{not json")) is Settlement.NAK
        assert await memory_store.count() == 0

    @pytest.mark.asyncio
    async def test_missing_hash_is_naked(self, consumer):
        payload = {k: v for k, v in WHY.items() if k != "hash"}
        assert await consumer.handle(envelope(payload)) is Settlement.NAK

    @pytest.mark.asyncio
    async def test_malformed_hash_is_naked(self, consumer):
        assert await consumer.handle(envelope({**WHY, "hash": "ABC"})) is Settlement.NAK

    @pytest.mark.asyncio
    async def test_unknown_source_is_naked(self, consumer):
        assert await consumer.handle(envelope({**WHY, "source": "twitter"})) is Settlement.NAK

    @pytest.mark.asyncio
    async def test_store_failure_is_naked(self, memory_queue, stop_event):
        store = MagicMock()
        store.create = AsyncMock(side_effect=RuntimeError("db down"))
        consumer = JokeIngestionConsumer(store, memory_queue, stop_event=stop_event)
        assert await consumer.handle(envelope(WHY)) is Settlement.NAK


# ──────────────────────────────────────────────────────────────
#  run() loop
# ──────────────────────────────────────────────────────────────

class TestIngestionLoop:
    @pytest.mark.asyncio
    async def test_end_to_end_persisted_once(self, memory_store, memory_queue, stop_event,
                                             candidate_factory, wait_until):
        candidate = candidate_factory("Why?")
        await memory_queue.publish_joke(candidate)
        await memory_queue.publish_joke(candidate)

        consumer = JokeIngestionConsumer(memory_store, memory_queue,
                                         stop_event=stop_event, max_wait=0.05)
        task = await consumer.start_background()

        async def drained():
            return (await memory_store.count() == 1
                    and await memory_queue.pending_count(Topics.JOKES, ConsumerGroups.INGESTION) == 0)

        assert await wait_until(drained)
        await consumer.stop()
        assert task.done()

        # Nothing left for the group
        sub = await memory_queue.subscribe(Topics.JOKES, ConsumerGroups.INGESTION)
        assert await sub.pull(10, 0.05) == []
        joke = await memory_store.get_random()
        assert joke.content == "Why?"
        assert joke.content_hash == fingerprint_text("Why?")

    @pytest.mark.asyncio
    async def test_poison_message_dead_lettered(self, memory_store, stop_event, wait_until):
        queue = InMemoryMessageQueue(max_deliveries=3)
        await queue.connect()
        await queue.publish(Topics.JOKES, b"garbage")

        consumer = JokeIngestionConsumer(memory_store, queue,
                                         stop_event=stop_event, max_wait=0.05)
        await consumer.start_background()

        async def dead_lettered():
            return await queue.queue_length(Topics.dead_letter(Topics.JOKES)) == 1

        assert await wait_until(dead_lettered)
        await consumer.stop()
        assert await memory_store.count() == 0
        assert await queue.peek(Topics.dead_letter(Topics.JOKES)) == [b"garbage"]

    @pytest.mark.asyncio
    async def test_pull_error_backs_off_and_continues(self, memory_store, stop_event):
        calls = []

        async def pull(max_batch, max_wait):
            calls.append(max_batch)
            if len(calls) == 1:
                raise BrokerUnavailableError("connection refused", Topics.JOKES)
            stop_event.set()
            return []

        subscription = MagicMock()
        subscription.consumer_name = "test"
        subscription.pull = pull
        queue = MagicMock()
        queue.subscribe = AsyncMock(return_value=subscription)

        consumer = JokeIngestionConsumer(memory_store, queue, stop_event=stop_event,
                                         error_backoff=0.01)
        await asyncio.wait_for(consumer.run(), timeout=2.0)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_stop_exits_idle_loop_promptly(self, memory_store, memory_queue, stop_event):
        consumer = JokeIngestionConsumer(memory_store, memory_queue,
                                         stop_event=stop_event, max_wait=0.05)
        task = await consumer.start_background()
        await asyncio.sleep(0.02)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

    @pytest.mark.asyncio
    async def test_subscribe_error_retried_until_broker_returns(
            self, memory_store, memory_queue, stop_event, candidate_factory, wait_until):
        real_subscribe = memory_queue.subscribe
        attempts = []

        async def flaky_subscribe(*args, **kwargs):
            attempts.append(args)
            if len(attempts) == 1:
                raise BrokerUnavailableError("connection refused", Topics.JOKES)
            return await real_subscribe(*args, **kwargs)

        memory_queue.subscribe = flaky_subscribe
        consumer = JokeIngestionConsumer(memory_store, memory_queue, stop_event=stop_event,
                                         error_backoff=0.01, max_wait=0.05)
        task = await consumer.start_background()
        await memory_queue.publish_joke(candidate_factory("Why?"))

        async def persisted():
            return await memory_store.count() == 1

        assert await wait_until(persisted)
        await consumer.stop()
        assert len(attempts) == 2
        assert task.exception() is None

    @pytest.mark.asyncio
    async def test_stop_while_broker_unreachable(self, memory_store, stop_event):
        queue = MagicMock()
        queue.subscribe = AsyncMock(side_effect=BrokerUnavailableError("down", Topics.JOKES))
        consumer = JokeIngestionConsumer(memory_store, queue, stop_event=stop_event,
                                         error_backoff=0.01)
        task = asyncio.create_task(consumer.run())
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert queue.subscribe.await_count >= 2
        assert task.exception() is None
