"""
Update Poller — long-polls Telegram getUpdates and feeds the command router.

Runs as a background task inside the FastAPI lifespan. Each getUpdates call
blocks server-side for up to `poll_timeout` seconds, so the stop event is
observed at least that often.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from bot.commands import CommandRouter
from channels.base import ChannelError
from channels.telegram import TelegramBotClient
from job_queue.consumer import wait_or_stop

logger = structlog.get_logger()


class UpdatePoller:
    """Long-poll loop; the offset advances past every update it has handled."""

    def __init__(
        self,
        client: TelegramBotClient,
        router: CommandRouter,
        poll_timeout: int = 10,
        error_backoff: float = 3.0,
        stop_event: Optional[asyncio.Event] = None,
        logger: Any = None,
    ):
        self.client = client
        self.router = router
        self.poll_timeout = poll_timeout
        self.error_backoff = error_backoff
        self.stop_event = stop_event or asyncio.Event()
        self.log = logger or structlog.get_logger()
        self.offset = 0
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name="update_poller")
        self.log.info("update_poller_started", poll_timeout=self.poll_timeout)
        return self._task

    async def stop(self) -> None:
        self.stop_event.set()
        if self._task and not self._task.done():
            # An in-flight long poll has nothing to lose; don't wait it out
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.log.info("update_poller_stopped")

    async def run(self) -> None:
        while not self.stop_event.is_set():
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.log.error("poll_cycle_error", error=str(e), exc_info=True)
                await wait_or_stop(self.stop_event, self.error_backoff)

    async def poll_once(self) -> int:
        """One getUpdates round. Returns the number of updates handled."""
        try:
            updates = await self.client.get_updates(self.offset, self.poll_timeout)
        except ChannelError as e:
            self.log.error("get_updates_failed", error=str(e))
            await wait_or_stop(self.stop_event, self.error_backoff)
            return 0

        for update in updates:
            if not isinstance(update, dict):
                self.log.warning("malformed_update_skipped", update=repr(update)[:200])
                continue
            update_id = update.get("update_id")
            if update_id is not None:
                self.offset = max(self.offset, int(update_id) + 1)
            try:
                await self.router.handle_update(update)
            except Exception as e:
                self.log.error("update_handler_error",
                               update_id=update_id,
                               error=str(e),
                               exc_info=True)
        return len(updates)
