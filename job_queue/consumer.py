"""
Queue Consumers — Pull loops that drive ingestion and delivery.

Each consumer runs as its own asyncio task and shares nothing in-process
with the others; the broker and the store are the only meeting points.

Topology:
  ┌──────────┐  publish  ┌──────────────┐  pull   ┌─────────────────────┐
  │ Fetchers │──────────▶│ jokes         │───────▶│ JokeIngestionConsumer│──▶ store
  └──────────┘           └──────────────┘         └─────────────────────┘
  ┌──────────┐  publish  ┌──────────────────┐ pull ┌──────────────────┐
  │ Commands │──────────▶│ outbound-messages │────▶│ DeliveryConsumer │──▶ chat
  └──────────┘           └──────────────────┘      └──────────────────┘

Every pull is bounded (max_wait) and every loop checks the shared stop
event between pulls and between messages. Anything not acked when the
event fires stays pending and is redelivered to the next instance.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

from database.store_base import BaseJokeStore
from job_queue.message_queue import (
    ConsumerGroups, MessageQueue, PayloadDecodeError, QueueEnvelope, QueueError,
    Subscription, Topics,
    get_message_queue,
)
from models.schemas import JokeCandidate, OutboundMessage

logger = structlog.get_logger()


async def wait_or_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to `timeout` seconds. Returns True if the stop event fired."""
    if timeout <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


def decode_joke(envelope: QueueEnvelope) -> JokeCandidate:
    try:
        return JokeCandidate.model_validate(envelope.decode_json())
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError, TypeError) as e:
        raise PayloadDecodeError(f"Malformed joke payload: {e}", envelope.topic) from e


def decode_outbound(envelope: QueueEnvelope) -> OutboundMessage:
    try:
        return OutboundMessage.model_validate(envelope.decode_json())
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError, TypeError) as e:
        raise PayloadDecodeError(f"Malformed outbound payload: {e}", envelope.topic) from e


class Settlement(str, Enum):
    ACK = "ack"
    NAK = "nak"
    LEAVE = "leave"     # neither; the visibility timeout will redeliver


class QueueConsumer:
    """
    Base pull loop. Subclasses set `topic`/`group` and implement handle().

    Usage:
        consumer = JokeIngestionConsumer(store, queue, stop_event=stop)
        await consumer.run()                # blocks until stop is set
        task = await consumer.start_background()
        await consumer.stop()
    """

    topic: str = ""
    group: str = ""

    def __init__(
        self,
        queue: MessageQueue = None,
        stop_event: Optional[asyncio.Event] = None,
        batch_size: int = 10,
        max_wait: float = 0.5,
        error_backoff: float = 1.0,
        consumer_name: str = "",
        logger: Any = None,
    ):
        self.queue = queue or get_message_queue()
        self.stop_event = stop_event or asyncio.Event()
        self.batch_size = batch_size
        self.max_wait = max_wait
        self.error_backoff = error_backoff
        self.consumer_name = consumer_name
        self.log = (logger or structlog.get_logger()).bind(topic=self.topic, group=self.group)
        self._task: Optional[asyncio.Task] = None

    async def handle(self, envelope: QueueEnvelope) -> Settlement:
        raise NotImplementedError

    async def _subscribe(self) -> Optional[Subscription]:
        """Join the consumer group, retrying while the broker is unreachable."""
        while not self.stop_event.is_set():
            try:
                return await self.queue.subscribe(self.topic, self.group, self.consumer_name)
            except QueueError as e:
                self.log.error("consumer_subscribe_failed", error=str(e))
                await wait_or_stop(self.stop_event, self.error_backoff)
        return None

    async def run(self) -> None:
        """Pull and settle messages until the stop event fires."""
        subscription = await self._subscribe()
        if subscription is None:
            return
        self.log.info("consumer_started", consumer=subscription.consumer_name)

        while not self.stop_event.is_set():
            try:
                envelopes = await subscription.pull(self.batch_size, self.max_wait)
            except QueueError as e:
                self.log.error("consumer_pull_failed", error=str(e))
                await wait_or_stop(self.stop_event, self.error_backoff)
                continue

            for envelope in envelopes:
                if self.stop_event.is_set():
                    break  # remaining envelopes stay pending for redelivery
                await self._process(subscription, envelope)

        self.log.info("consumer_stopped", consumer=subscription.consumer_name)

    async def _process(self, subscription: Subscription, envelope: QueueEnvelope) -> None:
        try:
            settlement = await self.handle(envelope)
        except Exception as e:
            self.log.error("message_handler_error",
                           message_id=envelope.message_id,
                           error=str(e),
                           exc_info=True)
            settlement = Settlement.NAK

        try:
            if settlement is Settlement.ACK:
                await subscription.ack(envelope)
            elif settlement is Settlement.NAK:
                await subscription.nak(envelope)
        except QueueError as e:
            self.log.error("message_settle_failed",
                           message_id=envelope.message_id,
                           settlement=settlement.value,
                           error=str(e))

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        self._task = asyncio.create_task(self.run(), name=f"{self.group}_consumer")
        return self._task

    async def stop(self) -> None:
        """Signal the loop and wait for it to finish its current message."""
        self.stop_event.set()
        if self._task:
            await self._task
            self._task = None


class JokeIngestionConsumer(QueueConsumer):
    """
    Persists joke candidates from the `jokes` topic.

    The store's unique content hash makes create() idempotent, so a
    redelivered candidate is acked without writing a second row.
    """

    topic = Topics.JOKES
    group = ConsumerGroups.INGESTION

    def __init__(self, store: BaseJokeStore, queue: MessageQueue = None, **kwargs):
        super().__init__(queue, **kwargs)
        self.store = store

    async def handle(self, envelope: QueueEnvelope) -> Settlement:
        try:
            candidate = decode_joke(envelope)
        except PayloadDecodeError as e:
            self.log.error("joke_decode_failed",
                           message_id=envelope.message_id,
                           deliveries=envelope.delivery_count,
                           error=str(e))
            return Settlement.NAK

        try:
            created = await self.store.create(candidate)
        except Exception as e:
            self.log.error("joke_persist_failed",
                           hash=candidate.content_hash,
                           error=str(e))
            return Settlement.NAK

        if created:
            self.log.info("joke_persisted",
                          hash=candidate.content_hash,
                          source=candidate.source.value)
        else:
            self.log.debug("joke_duplicate_skipped", hash=candidate.content_hash)
        return Settlement.ACK
