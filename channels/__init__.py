"""Chat transports: the outbound send contract and the Telegram Bot API client."""
from channels.base import (
    ChannelError,
    RateLimitedError,
    is_rate_limited,
    TokenBucketRateLimiter,
    ChatSender,
)
from channels.telegram import TelegramBotClient

__all__ = [
    "ChannelError", "RateLimitedError", "is_rate_limited",
    "TokenBucketRateLimiter", "ChatSender", "TelegramBotClient",
]
