"""
FastAPI Application — process lifespan plus health and stats endpoints.

Provides:
- Lifespan that wires store, broker, consumers, fetch scheduler and the
  Telegram update poller under one shared stop event
- GET /healthz for liveness probes
- GET /stats with joke and user totals

Run:
    python -m api.main
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request

from bot.commands import CommandRouter
from bot.poller import UpdatePoller
from channels.base import ChatSender, TokenBucketRateLimiter
from channels.telegram import TelegramBotClient
from config.settings import Settings, get_settings
from database.session import close_db, init_db
from database.store_base import BaseJokeStore
from database.store_factory import create_store
from ingestion.fetcher import AnekdotFetcher, JokeFetcher, RedditFetcher
from ingestion.scheduler import FetchScheduler
from job_queue.consumer import JokeIngestionConsumer
from job_queue.delivery import DeliveryConsumer, RetryPolicy
from job_queue.message_queue import MessageQueue, create_message_queue
from models.schemas import JokeSource
from utils.logging import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Runtime
# ──────────────────────────────────────────────────────────────

def build_fetchers(settings: Settings) -> list[JokeFetcher]:
    fetchers: list[JokeFetcher] = []
    if settings.parser.reddit.enabled:
        fetchers.append(RedditFetcher(settings.parser.reddit.subreddits,
                                      limit=settings.parser.reddit.limit))
    if settings.parser.anekdot.enabled:
        fetchers.append(AnekdotFetcher(limit=settings.parser.anekdot.limit))
    return fetchers


class BotRuntime:
    """
    Owns every long-running role of the process.

    Roles run as independent tasks and meet only at the broker and the
    store. stop() sets the shared event; each loop exits at its next
    blocking-call boundary and unacked messages stay with the broker.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[BaseJokeStore] = None,
        queue: Optional[MessageQueue] = None,
        sender: Optional[ChatSender] = None,
    ):
        self.settings = settings
        self.stop_event = asyncio.Event()
        self.store = store
        self.queue = queue
        self.sender = sender
        self.consumers: list[Any] = []
        self.scheduler: Optional[FetchScheduler] = None
        self.poller: Optional[UpdatePoller] = None
        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        settings = self.settings
        settings.validate()

        if self.store is None:
            if settings.database.store_backend == "sql":
                await init_db(settings.database.url)
            self.store = create_store({"store_backend": settings.database.store_backend})

        if self.queue is None:
            self.queue = create_message_queue({
                "backend": settings.queue.backend,
                "redis_url": settings.queue.redis_url,
                "visibility_timeout": settings.queue.visibility_timeout,
                "max_deliveries": settings.queue.max_deliveries,
            })
        await self.queue.connect()

        if self.sender is None and settings.bot.enabled:
            self.sender = TelegramBotClient(
                settings.bot.token,
                base_url=settings.bot.api_base_url,
                rate_limiter=TokenBucketRateLimiter(rate=settings.bot.send_rate,
                                                    burst=int(settings.bot.send_rate)),
            )

        loop_opts = dict(
            stop_event=self.stop_event,
            batch_size=settings.queue.batch_size,
            max_wait=settings.queue.pull_wait,
            error_backoff=settings.queue.error_backoff,
        )
        self.consumers.append(JokeIngestionConsumer(self.store, self.queue, **loop_opts))
        if self.sender is not None:
            self.consumers.append(DeliveryConsumer(
                self.sender, self.queue,
                policy=RetryPolicy(
                    max_attempts=settings.delivery.max_attempts,
                    initial_delay=settings.delivery.initial_backoff,
                    multiplier=settings.delivery.backoff_multiplier,
                ),
                parse_mode=settings.bot.parse_mode,
                **loop_opts,
            ))
        for consumer in self.consumers:
            self._tasks.append(await consumer.start_background())

        if settings.parser.enabled:
            self.scheduler = FetchScheduler(
                build_fetchers(settings),
                self.queue,
                interval_s=settings.parser.interval_minutes * 60,
                stop_event=self.stop_event,
            )
            self._tasks.append(await self.scheduler.start())

        if settings.bot.enabled and isinstance(self.sender, TelegramBotClient):
            router = CommandRouter(self.store, outbox=self.queue,
                                   parse_mode=settings.bot.parse_mode)
            self.poller = UpdatePoller(
                self.sender, router,
                poll_timeout=settings.bot.poll_timeout,
                stop_event=self.stop_event,
            )
            await self.poller.start()

        logger.info("anek_bot_started",
                    queue_backend=type(self.queue).__name__,
                    store_backend=type(self.store).__name__,
                    roles=len(self._tasks) + (1 if self.poller else 0))

    async def stop(self) -> None:
        self.stop_event.set()
        if self.poller:
            await self.poller.stop()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("role_exited_with_error", error=str(result))
        self._tasks.clear()

        if self.queue:
            await self.queue.close()
        if self.sender:
            await self.sender.shutdown()
        if self.settings.database.store_backend == "sql":
            await close_db()
        logger.info("anek_bot_stopped")

    async def stats(self) -> dict[str, int]:
        return {
            "total_jokes": await self.store.count(),
            "reddit_jokes": await self.store.count_by_source(JokeSource.REDDIT),
            "anekdot_jokes": await self.store.count_by_source(JokeSource.ANEKDOT),
            "total_users": await self.store.count_users(),
        }


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None, runtime: Optional[BotRuntime] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.app.log_level, json=settings.app.log_json)
        rt = app.state.runtime
        await rt.start()
        yield
        await rt.stop()

    app = FastAPI(
        title="Anek Bot",
        description="Joke ingestion and Telegram delivery service",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime or BotRuntime(settings)

    async def healthz():
        return {"status": "ok"}

    app.add_api_route(settings.health.endpoint, healthz, methods=["GET"])

    @app.get("/stats")
    async def stats(request: Request):
        return await request.app.state.runtime.stats()

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    configure_logging(settings.app.log_level, json=settings.app.log_json)
    uvicorn.run(create_app(settings), host=settings.health.host, port=settings.health.port)


if __name__ == "__main__":
    main()
