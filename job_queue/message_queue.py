"""
Message Queue — Abstract pull-based broker with Redis Streams and in-memory backends.

Topic Topology:
  jokes                    — scraped joke candidates → ingestion consumer
  outbound-messages        — chat replies → delivery consumer
  <topic>.dlq              — dead-letter copies of messages that hit max_deliveries

Delivery contract:
  - publish() durably appends to the topic or raises PublishError
  - subscribe(topic, group).pull(max_batch, max_wait) returns 0..max_batch
    envelopes; an empty list after the wait is not an error
  - ack() retires a message for the group; nak() or an expired visibility
    timeout makes it eligible for redelivery to the same group
  - ordering is kept per topic within one group's pull stream, redeliveries
    first; delivery is at-least-once
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from models.schemas import JokeCandidate, OutboundMessage

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Topic / Group Names
# ──────────────────────────────────────────────────────────────

class Topics:
    JOKES = "jokes"
    OUTBOUND = "outbound-messages"

    @staticmethod
    def dead_letter(topic: str) -> str:
        return f"{topic}.dlq"


class ConsumerGroups:
    INGESTION = "ingestion"
    DELIVERY = "delivery"


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class QueueError(Exception):
    """Base exception for broker operations."""

    def __init__(self, message: str, topic: str = ""):
        self.topic = topic
        super().__init__(message)


class PublishError(QueueError):
    """Broker unreachable or payload could not be encoded."""


class BrokerUnavailableError(QueueError):
    """Pull/ack could not reach the broker. Transient."""


class PayloadDecodeError(QueueError):
    """A pulled payload is not valid JSON or does not match its topic schema."""


# ──────────────────────────────────────────────────────────────
#  Envelope
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueEnvelope:
    """A delivered message plus the broker metadata needed to ack it."""
    topic: str
    payload: bytes
    message_id: str
    group: str
    consumer: str = ""
    delivery_count: int = 1
    received_at: float = field(default_factory=time.monotonic)

    def decode_json(self) -> Any:
        return json.loads(self.payload.decode("utf-8"))


def encode_payload(topic: str, data: dict[str, Any]) -> bytes:
    try:
        return json.dumps(data, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise PublishError(f"Failed to encode payload for {topic}: {e}", topic) from e


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class Subscription:
    """Pull handle for one consumer in a consumer group."""

    def __init__(self, queue: MessageQueue, topic: str, group: str, consumer_name: str = ""):
        self.queue = queue
        self.topic = topic
        self.group = group
        self.consumer_name = consumer_name or f"{group}_{uuid.uuid4().hex[:8]}"

    async def pull(self, max_batch: int = 10, max_wait: float = 0.5) -> list[QueueEnvelope]:
        return await self.queue._pull(self.topic, self.group, self.consumer_name, max_batch, max_wait)

    async def ack(self, envelope: QueueEnvelope) -> None:
        await self.queue.ack(envelope)

    async def nak(self, envelope: QueueEnvelope) -> None:
        await self.queue.nak(envelope)


class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, visibility_timeout: float = 30.0, max_deliveries: int = 10):
        self.visibility_timeout = visibility_timeout
        self.max_deliveries = max_deliveries    # 0 → redeliver forever

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def publish(self, topic: str, payload: bytes) -> str:
        """Durably append a payload to a topic. Returns the message id."""
        ...

    @abstractmethod
    async def _ensure_group(self, topic: str, group: str) -> None:
        ...

    @abstractmethod
    async def _pull(self, topic: str, group: str, consumer: str,
                    max_batch: int, max_wait: float) -> list[QueueEnvelope]:
        ...

    @abstractmethod
    async def ack(self, envelope: QueueEnvelope) -> None:
        """Retire the message for its consumer group."""
        ...

    @abstractmethod
    async def _requeue(self, envelope: QueueEnvelope) -> None:
        """Make the message immediately eligible for redelivery."""
        ...

    @abstractmethod
    async def queue_length(self, topic: str) -> int:
        """Number of messages ever appended to a topic."""
        ...

    async def subscribe(self, topic: str, group: str, consumer_name: str = "") -> Subscription:
        await self._ensure_group(topic, group)
        sub = Subscription(self, topic, group, consumer_name)
        logger.info("queue_subscribed", topic=topic, group=group, consumer=sub.consumer_name)
        return sub

    async def nak(self, envelope: QueueEnvelope) -> None:
        """Negative-acknowledge: redeliver, or dead-letter once max_deliveries is hit."""
        if self.max_deliveries and envelope.delivery_count >= self.max_deliveries:
            await self.publish(Topics.dead_letter(envelope.topic), envelope.payload)
            await self.ack(envelope)
            logger.warning("message_moved_to_dlq",
                           topic=envelope.topic,
                           message_id=envelope.message_id,
                           deliveries=envelope.delivery_count)
            return
        await self._requeue(envelope)
        logger.debug("message_naked",
                     topic=envelope.topic,
                     message_id=envelope.message_id,
                     deliveries=envelope.delivery_count)

    # ── Typed producers ───────────────────────────────────────

    async def publish_joke(self, candidate: JokeCandidate) -> str:
        payload = encode_payload(Topics.JOKES, candidate.to_wire())
        message_id = await self.publish(Topics.JOKES, payload)
        logger.debug("joke_published",
                     source=candidate.source.value,
                     hash=candidate.content_hash)
        return message_id

    async def publish_outbound(self, message: OutboundMessage) -> str:
        payload = encode_payload(Topics.OUTBOUND, message.to_wire())
        message_id = await self.publish(Topics.OUTBOUND, payload)
        logger.debug("outbound_message_published", chat_id=message.chat_id)
        return message_id


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams consumer groups.

    - publish → XADD
    - pull    → XAUTOCLAIM (entries idle past the visibility timeout),
                then XREADGROUP for new entries
    - ack     → XACK
    - nak     → XCLAIM with IDLE = visibility timeout, so the next pull
                reclaims the entry straight away
    """

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 visibility_timeout: float = 30.0, max_deliveries: int = 10,
                 client=None):
        super().__init__(visibility_timeout, max_deliveries)
        self._redis_url = redis_url
        self._redis = client

    @property
    def _visibility_ms(self) -> int:
        return max(1, int(self.visibility_timeout * 1000))

    async def connect(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=False,
                max_connections=20,
            )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    async def _ensure_group(self, topic: str, group: str) -> None:
        from redis.exceptions import RedisError, ResponseError
        try:
            await self._redis.xgroup_create(topic, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise BrokerUnavailableError(f"Failed to create group {group} on {topic}: {e}", topic) from e
        except RedisError as e:
            raise BrokerUnavailableError(f"Failed to create group {group} on {topic}: {e}", topic) from e


    async def publish(self, topic: str, payload: bytes) -> str:
        from redis.exceptions import RedisError
        try:
            message_id = await self._redis.xadd(topic, {"payload": payload})
        except RedisError as e:
            raise PublishError(f"Failed to publish to {topic}: {e}", topic) from e
        return _decode_id(message_id)

    async def _pull(self, topic: str, group: str, consumer: str,
                    max_batch: int, max_wait: float) -> list[QueueEnvelope]:
        from redis.exceptions import RedisError
        batch: list[QueueEnvelope] = []
        try:
            # Entries whose visibility timeout expired (or that were nak'd)
            claimed = await self._redis.xautoclaim(
                topic, group, consumer,
                min_idle_time=self._visibility_ms,
                start_id="0-0",
                count=max_batch,
            )
            for message_id, fields in claimed[1]:
                if not fields:
                    continue  # deleted from the stream while pending
                message_id = _decode_id(message_id)
                deliveries = await self._delivery_count(topic, group, message_id)
                batch.append(self._envelope(topic, group, consumer, message_id, fields, deliveries))

            if len(batch) < max_batch:
                response = await self._redis.xreadgroup(
                    groupname=group,
                    consumername=consumer,
                    streams={topic: ">"},
                    count=max_batch - len(batch),
                    # Never block when reclaimed work is already in hand
                    block=None if batch else max(1, int(max_wait * 1000)),
                )
                for _stream, stream_messages in response or []:
                    for message_id, fields in stream_messages:
                        batch.append(self._envelope(
                            topic, group, consumer, _decode_id(message_id), fields, 1,
                        ))
        except RedisError as e:
            raise BrokerUnavailableError(f"Failed to pull from {topic}: {e}", topic) from e
        return batch

    async def _delivery_count(self, topic: str, group: str, message_id: str) -> int:
        entries = await self._redis.xpending_range(
            topic, group, min=message_id, max=message_id, count=1,
        )
        if not entries:
            return 1
        return int(entries[0].get("times_delivered", 1))

    @staticmethod
    def _envelope(topic, group, consumer, message_id, fields, deliveries) -> QueueEnvelope:
        payload = fields.get(b"payload", fields.get("payload", b""))
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return QueueEnvelope(
            topic=topic, payload=payload, message_id=message_id,
            group=group, consumer=consumer, delivery_count=deliveries,
        )

    async def ack(self, envelope: QueueEnvelope) -> None:
        from redis.exceptions import RedisError
        try:
            await self._redis.xack(envelope.topic, envelope.group, envelope.message_id)
        except RedisError as e:
            raise BrokerUnavailableError(f"Failed to ack on {envelope.topic}: {e}", envelope.topic) from e

    async def _requeue(self, envelope: QueueEnvelope) -> None:
        from redis.exceptions import RedisError
        try:
            await self._redis.xclaim(
                envelope.topic, envelope.group, envelope.consumer,
                min_idle_time=0,
                message_ids=[envelope.message_id],
                idle=self._visibility_ms,
                justid=True,
            )
        except RedisError as e:
            raise BrokerUnavailableError(f"Failed to nak on {envelope.topic}: {e}", envelope.topic) from e

    async def queue_length(self, topic: str) -> int:
        from redis.exceptions import RedisError
        try:
            return await self._redis.xlen(topic)
        except RedisError as e:
            raise BrokerUnavailableError(f"Failed to read length of {topic}: {e}", topic) from e


def _decode_id(message_id: Any) -> str:
    return message_id.decode() if isinstance(message_id, bytes) else str(message_id)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _GroupState:
    cursor: int = 0                                          # next never-delivered offset
    pending: dict[int, float] = field(default_factory=dict)  # offset → visibility deadline
    ready: set[int] = field(default_factory=set)             # offsets awaiting redelivery
    deliveries: dict[int, int] = field(default_factory=dict)


class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only, but honors consumer groups, ack/nak and the
    visibility timeout so consumers behave the same as against Redis.
    """

    def __init__(self, visibility_timeout: float = 30.0, max_deliveries: int = 10):
        super().__init__(visibility_timeout, max_deliveries)
        self._logs: dict[str, list[bytes]] = {}
        self._groups: dict[tuple[str, str], _GroupState] = {}
        self._cond = asyncio.Condition()
        self._connected = False

    async def connect(self):
        self._connected = True
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._connected = False

    def _log(self, topic: str) -> list[bytes]:
        return self._logs.setdefault(topic, [])

    def _group(self, topic: str, group: str) -> _GroupState:
        return self._groups.setdefault((topic, group), _GroupState())

    async def _ensure_group(self, topic: str, group: str) -> None:
        self._log(topic)
        self._group(topic, group)

    async def publish(self, topic: str, payload: bytes) -> str:
        if not self._connected:
            raise PublishError(f"Queue not connected, cannot publish to {topic}", topic)
        async with self._cond:
            log = self._log(topic)
            log.append(payload)
            self._cond.notify_all()
            return str(len(log) - 1)

    async def _pull(self, topic: str, group: str, consumer: str,
                    max_batch: int, max_wait: float) -> list[QueueEnvelope]:
        if not self._connected:
            raise BrokerUnavailableError(f"Queue not connected, cannot pull from {topic}", topic)
        deadline = time.monotonic() + max_wait
        async with self._cond:
            while True:
                batch = self._collect(topic, group, consumer, max_batch)
                now = time.monotonic()
                if batch or now >= deadline:
                    return batch
                # Wake for new publishes, nak'd messages, or the next visibility expiry
                timeout = deadline - now
                state = self._group(topic, group)
                if state.pending:
                    timeout = min(timeout, max(0.0, min(state.pending.values()) - now))
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

    def _collect(self, topic: str, group: str, consumer: str, max_batch: int) -> list[QueueEnvelope]:
        log = self._log(topic)
        state = self._group(topic, group)
        now = time.monotonic()

        for offset, visible_at in list(state.pending.items()):
            if visible_at <= now:
                del state.pending[offset]
                state.ready.add(offset)

        offsets = sorted(state.ready)[:max_batch]
        for offset in offsets:
            state.ready.discard(offset)
        while len(offsets) < max_batch and state.cursor < len(log):
            offsets.append(state.cursor)
            state.cursor += 1

        batch = []
        for offset in offsets:
            state.deliveries[offset] = state.deliveries.get(offset, 0) + 1
            state.pending[offset] = now + self.visibility_timeout
            batch.append(QueueEnvelope(
                topic=topic, payload=log[offset], message_id=str(offset),
                group=group, consumer=consumer,
                delivery_count=state.deliveries[offset],
            ))
        return batch

    async def ack(self, envelope: QueueEnvelope) -> None:
        async with self._cond:
            state = self._group(envelope.topic, envelope.group)
            offset = int(envelope.message_id)
            state.pending.pop(offset, None)
            state.ready.discard(offset)
            state.deliveries.pop(offset, None)

    async def _requeue(self, envelope: QueueEnvelope) -> None:
        async with self._cond:
            state = self._group(envelope.topic, envelope.group)
            offset = int(envelope.message_id)
            if state.deliveries.get(offset) != envelope.delivery_count:
                return  # stale nak; the message was redelivered since
            if state.pending.pop(offset, None) is not None:
                state.ready.add(offset)
                self._cond.notify_all()

    async def queue_length(self, topic: str) -> int:
        return len(self._log(topic))

    async def pending_count(self, topic: str, group: str) -> int:
        state = self._group(topic, group)
        return len(state.pending) + len(state.ready)

    async def peek(self, topic: str, count: int = 10) -> list[bytes]:
        return list(self._log(topic)[:count])


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = queue_config or {}
    backend = config.get("backend", "memory")
    visibility_timeout = float(config.get("visibility_timeout", 30.0))
    max_deliveries = int(config.get("max_deliveries", 10))

    if backend == "redis":
        url = config.get("redis_url", "redis://localhost:6379")
        _instance = RedisMessageQueue(
            redis_url=url,
            visibility_timeout=visibility_timeout,
            max_deliveries=max_deliveries,
        )
    else:
        _instance = InMemoryMessageQueue(
            visibility_timeout=visibility_timeout,
            max_deliveries=max_deliveries,
        )

    return _instance


def get_message_queue() -> MessageQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_message_queue()
    return _instance


def reset_message_queue() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
