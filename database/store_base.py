"""
Abstract Joke Store — Interface for all storage backends.

Implementations:
  - SqlJokeStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryJokeStore (dict-based, single-process, no persistence)

create() is the idempotent entry point used by the ingestion consumer:
the content hash is unique, and a conflicting insert is a silent no-op.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from models.schemas import Joke, JokeCandidate, JokeSource, User


class BaseJokeStore(ABC):
    """Interface that all joke store backends must implement."""

    # ── Jokes ─────────────────────────────────────────────────

    @abstractmethod
    async def create(self, joke: JokeCandidate) -> bool:
        """Insert unless the hash exists. True if a row was written."""
        ...

    @abstractmethod
    async def get_random(self) -> Optional[Joke]:
        """Pick a random joke and bump its used_count."""
        ...

    @abstractmethod
    async def get_random_by_source(self, source: JokeSource) -> Optional[Joke]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def count_by_source(self, source: JokeSource) -> int:
        ...

    @abstractmethod
    async def hash_exists(self, content_hash: str) -> bool:
        ...

    # ── Users ─────────────────────────────────────────────────

    @abstractmethod
    async def upsert_user(self, user: User) -> User:
        ...

    @abstractmethod
    async def count_users(self) -> int:
        ...

    async def close(self) -> None:
        pass
