"""
Joke store selection.

    database:
      store_backend: sql      # "sql" → SqlJokeStore on database.url
                              # "memory" → InMemoryJokeStore (tests, local runs)

The chosen store is cached for the process; reset_store() clears it.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseJokeStore

logger = structlog.get_logger()

STORE_BACKENDS = ("sql", "memory")

_instance: Optional[BaseJokeStore] = None


def create_store(config: dict = None) -> BaseJokeStore:
    """Build (once) the store named by config["store_backend"]; memory when unset."""
    global _instance
    if _instance is None:
        backend = (config or {}).get("store_backend", "memory")
        if backend not in STORE_BACKENDS:
            raise ValueError(f"unknown store backend: {backend}")
        if backend == "sql":
            from database.store import SqlJokeStore
            _instance = SqlJokeStore()
        else:
            from database.store_memory import InMemoryJokeStore
            _instance = InMemoryJokeStore()
        logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseJokeStore:
    return create_store()


def reset_store() -> None:
    global _instance
    _instance = None
