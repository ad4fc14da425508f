"""
Chat Channels — Outbound send contract and shared resilience pieces.

Provides:
- ChannelError / RateLimitedError: structured error split the delivery
  retry policy relies on (rate-limited vs. everything else)
- is_rate_limited(): classifier that also recognizes foreign exceptions
  by their text ("Too Many Requests", "rate")
- TokenBucketRateLimiter: async token bucket used to stay under the
  provider's send quota
- ChatSender: abstract base every chat transport implements
"""
from __future__ import annotations

import abc
import asyncio
import time
from typing import Optional


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = "", retry_after: Optional[float] = None, detail: str = ""):
        self.retry_after = retry_after
        message = f"Rate limit exceeded for {channel}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, channel, retryable=True)


_RATE_LIMIT_MARKERS = ("too many requests", "rate")


def is_rate_limited(exc: BaseException) -> bool:
    """True when a send failure means "slow down" rather than "broken"."""
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, ChannelError):
        return False
    text = str(exc).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Send quota for one bot token.

    Holds up to `burst` sends; refills at `rate` sends per second. acquire()
    waits for the next token but gives up after `timeout` seconds so a
    saturated quota surfaces as a rate-limited send instead of a stall.
    """

    def __init__(self, rate: float = 25.0, burst: int = 25):
        self.rate = max(rate, 0.001)
        self.burst = burst
        self._available = float(burst)
        self._stamp = time.monotonic()
        self._lock = asyncio.Lock()

    def _top_up(self) -> None:
        now = time.monotonic()
        self._available = min(self.burst, self._available + (now - self._stamp) * self.rate)
        self._stamp = now

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        async with self._lock:
            while True:
                self._top_up()
                if self._available >= 1.0:
                    self._available -= 1.0
                    return True
                # Time until one whole token has accrued
                shortfall = (1.0 - self._available) / self.rate
                if time.monotonic() + shortfall > deadline:
                    return False
                await asyncio.sleep(shortfall)


# ══════════════════════════════════════════════════════════════
#  CHAT SENDER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChatSender(abc.ABC):
    """
    Narrow outbound contract consumed by the delivery consumer.

    send() returns on success and raises RateLimitedError or ChannelError
    on failure. It never retries internally; retry policy lives in the
    delivery consumer.
    """

    channel_name: str = "chat"

    @abc.abstractmethod
    async def send(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> None:
        ...

    async def shutdown(self) -> None:
        pass
