"""
Joke and user persistence.

    from database import create_store
    store = create_store({"store_backend": "sql"})
    if await store.create(candidate):   # False when the hash is already stored
        ...
"""
from database.models import Base, JokeRow, UserRow
from database.session import close_db, get_engine, get_session, init_db
from database.store_base import BaseJokeStore
from database.store import SqlJokeStore
from database.store_memory import InMemoryJokeStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "Base", "JokeRow", "UserRow",
    "get_engine", "get_session", "init_db", "close_db",
    "BaseJokeStore", "SqlJokeStore", "InMemoryJokeStore",
    "create_store", "get_store", "reset_store",
]
