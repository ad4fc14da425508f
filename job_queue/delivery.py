"""
Outbound delivery — bounded exponential backoff against a rate-limited chat.

Per-message state machine:

    Pending → Attempting(n) ─┬─ success ──────────────▶ Sent          (ack)
                             ├─ other error ──────────▶ Failed        (nak)
                             └─ rate limited ─┬─ n < max_attempts → wait d0·2^(n-1) → Attempting(n+1)
                                              └─ n = max_attempts → Exhausted (nak)

The wait between attempts listens on the shutdown event; if it fires the
message is left unsettled (Interrupted) and the broker redelivers it later.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from tenacity import (
    AsyncRetrying, RetryCallState,
    retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import ChatSender, is_rate_limited
from job_queue.consumer import QueueConsumer, Settlement, decode_outbound, wait_or_stop
from job_queue.message_queue import (
    ConsumerGroups, MessageQueue, PayloadDecodeError, QueueEnvelope, Topics,
)
from models.schemas import OutboundMessage

logger = structlog.get_logger()


class DeliveryOutcome(str, Enum):
    SENT = "sent"
    RATE_LIMITED_EXHAUSTED = "rate_limited_exhausted"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Wait after the given (1-based) failed attempt."""
        return self.initial_delay * self.multiplier ** (attempt - 1)


@dataclass
class DeliveryResult:
    outcome: DeliveryOutcome
    attempts: int
    error: str = ""


class ShutdownRequested(Exception):
    """Raised out of a backoff wait when the stop event fires."""


class MessageDelivery:
    """Runs the retry state machine for one outbound message at a time."""

    def __init__(
        self,
        sender: ChatSender,
        policy: RetryPolicy = None,
        stop_event: Optional[asyncio.Event] = None,
        parse_mode: Optional[str] = "Markdown",
        logger: Any = None,
    ):
        self.sender = sender
        self.policy = policy or RetryPolicy()
        self.stop_event = stop_event or asyncio.Event()
        self.parse_mode = parse_mode
        self.log = logger or structlog.get_logger()

    async def _backoff(self, seconds: float) -> None:
        if await wait_or_stop(self.stop_event, seconds):
            raise ShutdownRequested()

    def _log_backoff(self, retry_state: RetryCallState) -> None:
        self.log.warning("delivery_rate_limited",
                         retry=retry_state.attempt_number,
                         max_retries=self.policy.max_attempts,
                         delay=retry_state.next_action.sleep if retry_state.next_action else None)

    async def deliver(self, message: OutboundMessage) -> DeliveryResult:
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=wait_exponential(multiplier=self.policy.initial_delay,
                                  exp_base=self.policy.multiplier),
            retry=retry_if_exception(is_rate_limited),
            sleep=self._backoff,
            before_sleep=self._log_backoff,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self.sender.send(message.chat_id, message.text, self.parse_mode)
        except ShutdownRequested:
            return DeliveryResult(DeliveryOutcome.INTERRUPTED, attempts)
        except Exception as e:
            if is_rate_limited(e):
                return DeliveryResult(DeliveryOutcome.RATE_LIMITED_EXHAUSTED, attempts, str(e))
            return DeliveryResult(DeliveryOutcome.FAILED, attempts, str(e))
        return DeliveryResult(DeliveryOutcome.SENT, attempts)


class DeliveryConsumer(QueueConsumer):
    """Sends messages from `outbound-messages` through the chat sender."""

    topic = Topics.OUTBOUND
    group = ConsumerGroups.DELIVERY

    def __init__(
        self,
        sender: ChatSender,
        queue: MessageQueue = None,
        policy: RetryPolicy = None,
        parse_mode: Optional[str] = "Markdown",
        **kwargs,
    ):
        super().__init__(queue, **kwargs)
        self.delivery = MessageDelivery(
            sender, policy,
            stop_event=self.stop_event,
            parse_mode=parse_mode,
            logger=self.log,
        )

    async def handle(self, envelope: QueueEnvelope) -> Settlement:
        try:
            message = decode_outbound(envelope)
        except PayloadDecodeError as e:
            self.log.error("outbound_decode_failed",
                           message_id=envelope.message_id,
                           deliveries=envelope.delivery_count,
                           error=str(e))
            return Settlement.NAK

        result = await self.delivery.deliver(message)

        if result.outcome is DeliveryOutcome.SENT:
            self.log.debug("message_delivered", chat_id=message.chat_id, attempts=result.attempts)
            return Settlement.ACK
        if result.outcome is DeliveryOutcome.INTERRUPTED:
            self.log.info("delivery_interrupted", chat_id=message.chat_id, attempts=result.attempts)
            return Settlement.LEAVE
        if result.outcome is DeliveryOutcome.RATE_LIMITED_EXHAUSTED:
            self.log.error("delivery_rate_limit_exhausted",
                           chat_id=message.chat_id,
                           attempts=result.attempts,
                           error=result.error)
        else:
            self.log.error("delivery_failed",
                           chat_id=message.chat_id,
                           attempts=result.attempts,
                           error=result.error)
        return Settlement.NAK
