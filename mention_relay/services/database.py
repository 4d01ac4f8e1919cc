"""SQLite state database for the relay."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..orm.base import Base

logger = logging.getLogger(__name__)


class DatabaseService:
    """Owns the async engine for the local state file."""

    def __init__(self, database_path: str | Path):
        self.database_path = Path(database_path).expanduser()
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_async_engine(f"sqlite+aiosqlite:///{self.database_path}")
        self.async_session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def initialize(self):
        """Create missing tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.debug("State database ready at %s", self.database_path)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """One transaction: committed on success, rolled back on error."""
        async with self.async_session_factory() as session:
            async with session.begin():
                yield session

    async def close(self):
        await self.engine.dispose()


db_service: DatabaseService | None = None


def get_db_service() -> DatabaseService:
    """Return the process-wide database service."""
    if db_service is None:
        raise RuntimeError("Database service not initialized")
    return db_service


async def init_db_service(database_path: str | Path) -> DatabaseService:
    """Open the process-wide database service.

    Re-initializing with the same path keeps the existing service, so a
    config reload doesn't drop the engine.
    """
    global db_service
    path = Path(database_path).expanduser()
    if db_service is not None:
        if db_service.database_path == path:
            return db_service
        await db_service.close()
    db_service = DatabaseService(path)
    await db_service.initialize()
    return db_service
