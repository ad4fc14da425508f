"""
InMemoryJokeStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Same interface and conflict semantics as SqlJokeStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart
"""
from __future__ import annotations

import random
import structlog
from datetime import datetime, timezone
from typing import Optional

from database.store_base import BaseJokeStore
from models.schemas import Joke, JokeCandidate, JokeSource, User

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryJokeStore(BaseJokeStore):
    """Full-featured in-memory store with the same interface as SqlJokeStore."""

    def __init__(self, rng: random.Random = None):
        self._jokes: dict[int, Joke] = {}          # id → joke
        self._hash_index: dict[str, int] = {}      # hash → id
        self._users: dict[int, User] = {}          # telegram_id → user
        self._next_id = 1
        self._rng = rng or random.Random()
        logger.info("inmemory_store_initialized")

    # ── Jokes ─────────────────────────────────────────────

    async def create(self, joke: JokeCandidate) -> bool:
        if joke.content_hash in self._hash_index:
            return False
        row = Joke(
            id=self._next_id,
            content=joke.content,
            source=joke.source,
            source_url=joke.source_url,
            content_hash=joke.content_hash,
            created_at=_utcnow(),
        )
        self._jokes[row.id] = row
        self._hash_index[row.content_hash] = row.id
        self._next_id += 1
        return True

    async def get_random(self) -> Optional[Joke]:
        return self._take_random(list(self._jokes.values()))

    async def get_random_by_source(self, source: JokeSource) -> Optional[Joke]:
        return self._take_random([j for j in self._jokes.values() if j.source == source])

    def _take_random(self, candidates: list[Joke]) -> Optional[Joke]:
        if not candidates:
            return None
        joke = self._rng.choice(candidates)
        joke.used_count += 1
        return joke.model_copy()

    async def count(self) -> int:
        return len(self._jokes)

    async def count_by_source(self, source: JokeSource) -> int:
        return sum(1 for j in self._jokes.values() if j.source == source)

    async def hash_exists(self, content_hash: str) -> bool:
        return content_hash in self._hash_index

    # ── Users ─────────────────────────────────────────────

    async def upsert_user(self, user: User) -> User:
        existing = self._users.get(user.telegram_id)
        now = _utcnow()
        stored = user.model_copy(update={
            "created_at": existing.created_at if existing else now,
            "last_interaction": now,
        })
        self._users[user.telegram_id] = stored
        return stored

    async def count_users(self) -> int:
        return len(self._users)
