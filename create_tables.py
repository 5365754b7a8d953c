"""
Script to create all database tables.

Creates every table registered by ``peoplesync.models`` on the configured
DATABASE_URL. Use the Alembic revision for managed databases.
"""
import asyncio
import sys

from peoplesync.database import engine
from peoplesync.logging_config import get_logger
from peoplesync.models import Base

log = get_logger(component="create_tables")


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("tables_created", tables=sorted(Base.metadata.tables))


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    log.info("tables_dropped")


async def main(argv: list[str]):
    if "--drop" in argv:
        await drop_all_tables()
    await create_all_tables()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1:]))
