"""
Fetch Scheduler — periodic scrape of every joke source.

Runs as a background task inside the FastAPI lifespan.

Flow:
    Fetchers (reddit, anekdot) → candidates with content hash
    → publish_joke() onto the `jokes` topic
    → JokeIngestionConsumer persists (dedup by hash)

A fetcher failure is logged and the cycle moves on to the next fetcher;
a publish failure is logged and the next candidate is tried. Whatever
failed is picked up again at the next scheduled cycle.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional, Protocol

from ingestion.fetcher import JokeFetcher
from job_queue.consumer import wait_or_stop
from models.schemas import JokeCandidate

logger = structlog.get_logger()


class JokePublisher(Protocol):
    async def publish_joke(self, candidate: JokeCandidate) -> str:
        ...


class FetchScheduler:
    """
    Runs every fetcher once at start, then every `interval_s` seconds.

    Configure in settings:
        parser:
          interval_minutes: 30
    """

    def __init__(
        self,
        fetchers: list[JokeFetcher],
        publisher: JokePublisher,
        interval_s: float = 1800.0,
        stop_event: Optional[asyncio.Event] = None,
        logger: Any = None,
    ):
        self.fetchers = list(fetchers)
        self.publisher = publisher
        self.interval_s = interval_s
        self.stop_event = stop_event or asyncio.Event()
        self.log = logger or structlog.get_logger()
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> asyncio.Task:
        """Start the scheduling loop as a background task."""
        self._task = asyncio.create_task(self.run(), name="fetch_scheduler")
        self.log.info("fetch_scheduler_started",
                      interval_s=self.interval_s,
                      fetchers=[f.name for f in self.fetchers])
        return self._task

    async def stop(self) -> None:
        """Signal the loop and wait for the current cycle to finish."""
        self.stop_event.set()
        if self._task:
            await self._task
            self._task = None
        self.log.info("fetch_scheduler_stopped")

    async def run(self) -> None:
        """Main loop: one cycle immediately, then one per interval, until stopped."""
        while not self.stop_event.is_set():
            await self.run_cycle()
            if await wait_or_stop(self.stop_event, self.interval_s):
                break

    async def run_cycle(self) -> dict[str, int]:
        """
        Single cycle over all fetchers.

        Returns counts: {"fetched": N, "published": N, "errors": N}
        """
        stats = {"fetched": 0, "published": 0, "errors": 0}

        for fetcher in self.fetchers:
            if self.stop_event.is_set():
                break
            try:
                candidates = await fetcher.fetch()
            except Exception as e:
                self.log.error("fetcher_failed", fetcher=fetcher.name, error=str(e))
                stats["errors"] += 1
                continue

            stats["fetched"] += len(candidates)
            for candidate in candidates:
                try:
                    await self.publisher.publish_joke(candidate)
                    stats["published"] += 1
                except Exception as e:
                    self.log.error("joke_publish_failed",
                                   fetcher=fetcher.name,
                                   hash=candidate.content_hash,
                                   error=str(e))
                    stats["errors"] += 1

        self.log.info("fetch_cycle_complete", **stats)
        return stats
