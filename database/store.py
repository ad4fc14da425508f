"""
SqlJokeStore — Portable SQL queries for PostgreSQL and SQLite.

Idempotent insert is done the portable way: add the row and let the
unique index on `hash` reject duplicates; IntegrityError means "already
stored" and is reported as a no-op, never as a failure.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from database.models import JokeRow, UserRow
from database.session import get_session
from database.store_base import BaseJokeStore
from models.schemas import Joke, JokeCandidate, JokeSource, User

logger = structlog.get_logger()


class SqlJokeStore(BaseJokeStore):
    """
    Persistent joke store backed by any SQLAlchemy-supported database.
    Connection pooling (and with it the cap on concurrent DB work) comes
    from the engine in database/session.py.
    """

    # ── Jokes ─────────────────────────────────────────────

    async def create(self, joke: JokeCandidate) -> bool:
        try:
            async with get_session() as db:
                db.add(JokeRow(
                    content=joke.content,
                    source=joke.source.value,
                    source_url=joke.source_url,
                    hash=joke.content_hash,
                ))
                await db.flush()
        except IntegrityError:
            logger.debug("joke_hash_conflict", hash=joke.content_hash)
            return False
        return True

    async def get_random(self) -> Optional[Joke]:
        return await self._take_random(None)

    async def get_random_by_source(self, source: JokeSource) -> Optional[Joke]:
        return await self._take_random(source)

    async def _take_random(self, source: Optional[JokeSource]) -> Optional[Joke]:
        async with get_session() as db:
            stmt = select(JokeRow)
            if source is not None:
                stmt = stmt.where(JokeRow.source == source.value)
            stmt = stmt.order_by(func.random()).limit(1)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            if row is None:
                return None
            row.used_count = (row.used_count or 0) + 1
            await db.flush()
            return self._row_to_joke(row)

    async def count(self) -> int:
        async with get_session() as db:
            result = await db.execute(select(func.count()).select_from(JokeRow))
            return int(result.scalar_one())

    async def count_by_source(self, source: JokeSource) -> int:
        async with get_session() as db:
            stmt = select(func.count()).select_from(JokeRow).where(JokeRow.source == source.value)
            result = await db.execute(stmt)
            return int(result.scalar_one())

    async def hash_exists(self, content_hash: str) -> bool:
        async with get_session() as db:
            stmt = select(JokeRow.id).where(JokeRow.hash == content_hash).limit(1)
            result = await db.execute(stmt)
            return result.scalar_one_or_none() is not None

    # ── Users ─────────────────────────────────────────────

    async def upsert_user(self, user: User) -> User:
        try:
            return await self._upsert_user(user)
        except IntegrityError:
            # Lost an insert race for the same telegram_id; the row exists now
            return await self._upsert_user(user)

    async def _upsert_user(self, user: User) -> User:
        async with get_session() as db:
            stmt = select(UserRow).where(UserRow.telegram_id == user.telegram_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row:
                row.username = user.username
                row.first_name = user.first_name
                row.last_name = user.last_name
                row.last_interaction = datetime.now(timezone.utc)
            else:
                row = UserRow(
                    telegram_id=user.telegram_id,
                    username=user.username,
                    first_name=user.first_name,
                    last_name=user.last_name,
                )
                db.add(row)
            await db.flush()
            return User(
                telegram_id=row.telegram_id,
                username=row.username,
                first_name=row.first_name,
                last_name=row.last_name,
                created_at=row.created_at,
                last_interaction=row.last_interaction,
            )

    async def count_users(self) -> int:
        async with get_session() as db:
            result = await db.execute(select(func.count()).select_from(UserRow))
            return int(result.scalar_one())

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    def _row_to_joke(row: JokeRow) -> Joke:
        return Joke(
            id=row.id,
            content=row.content,
            source=JokeSource(row.source),
            source_url=row.source_url or "",
            content_hash=row.hash,
            created_at=row.created_at,
            used_count=row.used_count or 0,
        )
