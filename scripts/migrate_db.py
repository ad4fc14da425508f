#!/usr/bin/env python3
"""
Database Migration — create the jokes/users tables from the ORM models.

Usage:
    python scripts/migrate_db.py                       # uses database.url from settings
    python scripts/migrate_db.py --url sqlite:///./anekbot.db
    python scripts/migrate_db.py --check               # report only, no changes
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
from sqlalchemy import inspect


async def existing_tables(engine) -> list[str]:
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(db_url: str = None, check_only: bool = False) -> set[str]:
    """Returns the set of model tables still missing after the run."""
    from config.settings import load_settings
    from database.models import Base
    from database.session import close_db, get_engine, init_db

    settings = load_settings()
    engine = get_engine(db_url or settings.database.url)
    defined = set(Base.metadata.tables.keys())

    try:
        print(f"Database: {engine.dialect.name}")
        print(f"URL: {engine.url.render_as_string(hide_password=True)}")
        print(f"Tables defined: {', '.join(sorted(defined))}")

        if not check_only:
            print("Running database migration...")
            await init_db()

        existing = await existing_tables(engine)
        print(f"Tables existing: {', '.join(sorted(existing)) or '(none)'}")

        missing = defined - set(existing)
        if missing:
            print(f"Tables MISSING: {', '.join(sorted(missing))}")
            print("Run without --check to create them.")
        else:
            print("All tables exist.")
        return missing
    finally:
        await close_db()


def main():
    load_dotenv()
    parser = argparse.ArgumentParser(description="Create the Anek Bot database schema")
    parser.add_argument("--url", default=None, help="Database URL (overrides settings)")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    missing = asyncio.run(run_migration(args.url, check_only=args.check))
    sys.exit(1 if missing else 0)


if __name__ == "__main__":
    main()
