#!/usr/bin/env python3
"""
Database Migration — create the dispatch tables from the SQLAlchemy models.

Usage:
    python scripts/migrate_db.py            # create missing tables
    python scripts/migrate_db.py --check    # report only, no changes
    python scripts/migrate_db.py --reset    # drop and recreate (destroys job history)

The database URL comes from config (database.url) or DISPATCHER_CONFIG.
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text


_LIST_TABLES = {
    "postgresql": "SELECT tablename FROM pg_tables WHERE schemaname = 'public'",
    "mysql": "SHOW TABLES",
    "sqlite": "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'",
}


async def existing_tables() -> list[str]:
    from database.session import get_engine

    engine = get_engine()
    query = _LIST_TABLES.get(engine.dialect.name, _LIST_TABLES["sqlite"])
    async with engine.connect() as conn:
        result = await conn.execute(text(query))
        return sorted(row[0] for row in result.fetchall())


async def missing_tables() -> set[str]:
    from database.models import Base
    return set(Base.metadata.tables.keys()) - set(await existing_tables())


async def run_migration(check_only: bool = False, reset: bool = False) -> int:
    from config.settings import load_settings
    load_settings()

    from database.models import Base
    from database.session import close_db, drop_db, get_engine, init_db

    engine = get_engine()
    url = str(engine.url)
    print(f"Database: {engine.dialect.name}")
    print(f"URL: {url.split('@')[-1] if '@' in url else url}")
    print(f"Tables defined: {', '.join(Base.metadata.tables.keys())}")

    try:
        if check_only:
            print(f"Tables existing: {', '.join(await existing_tables()) or '(none)'}")
            missing = await missing_tables()
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        if reset:
            print("Dropping dispatch tables...")
            await drop_db()

        print("Running database migration...")
        await init_db()
        print(f"Tables created/verified: {', '.join(await existing_tables())}")
        print("Migration complete.")
        return 0
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Dispatch database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    parser.add_argument("--reset", action="store_true", help="Drop all dispatch tables first")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check, reset=args.reset)))


if __name__ == "__main__":
    main()
