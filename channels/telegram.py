"""
Telegram Bot API client — outbound sends and long-poll updates.

API Docs: https://core.telegram.org/bots/api

Error mapping:
  HTTP 429 / {"error_code": 429}   → RateLimitedError(retry_after)
  any other non-ok response        → ChannelError(description)
  transport failure                → ChannelError(retryable=True)
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from channels.base import ChannelError, ChatSender, RateLimitedError, TokenBucketRateLimiter

logger = structlog.get_logger()


class TelegramBotClient(ChatSender):
    """Thin Bot API client. No internal retries; callers own the retry policy."""

    channel_name = "telegram"
    BASE_URL = "https://api.telegram.org"

    def __init__(
        self,
        token: str,
        base_url: str = BASE_URL,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        if not token:
            raise ChannelError("telegram bot token is empty", self.channel_name)
        self.base_url = f"{base_url.rstrip('/')}/bot{token}"
        self.rate_limiter = rate_limiter
        self._transport = transport
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def _call(self, method: str, payload: dict[str, Any],
                    timeout: Optional[float] = None) -> Any:
        client = await self._get_client()
        try:
            resp = await client.post(
                f"{self.base_url}/{method}",
                json=payload,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"{method} failed: {e}", self.channel_name, retryable=True) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        error_code = body.get("error_code", resp.status_code)
        if resp.status_code == 429 or error_code == 429:
            retry_after = (body.get("parameters") or {}).get("retry_after")
            raise RateLimitedError(
                self.channel_name,
                retry_after=float(retry_after) if retry_after is not None else None,
                detail=body.get("description", "Too Many Requests"),
            )
        if resp.status_code >= 400 or not body.get("ok", False):
            description = body.get("description") or resp.text[:200]
            logger.error("telegram_api_error", method=method,
                         status=resp.status_code, description=description)
            raise ChannelError(
                f"{method} failed ({error_code}): {description}",
                self.channel_name,
                retryable=resp.status_code >= 500,
            )
        return body.get("result")

    async def send(self, chat_id: int, text: str, parse_mode: Optional[str] = None) -> None:
        if self.rate_limiter and not await self.rate_limiter.acquire():
            raise RateLimitedError(self.channel_name, detail="local send rate exceeded")

        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        await self._call("sendMessage", payload)
        logger.debug("telegram_message_sent", chat_id=chat_id)

    async def get_updates(self, offset: int = 0, timeout: int = 10) -> list[dict[str, Any]]:
        """Long-poll for updates with update_id >= offset."""
        payload = {"offset": offset, "timeout": timeout, "allowed_updates": ["message"]}
        # HTTP timeout must outlast the server-side long poll
        result = await self._call("getUpdates", payload, timeout=timeout + 10.0)
        return result if isinstance(result, list) else []

    async def get_me(self) -> dict[str, Any]:
        return await self._call("getMe", {})

    async def shutdown(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
