"""Service for the persisted last-seen message watermark."""

import logging
from typing import Optional

from sqlalchemy import select

from ..orm.watermark import Watermark
from .database import DatabaseService, get_db_service

logger = logging.getLogger(__name__)

LAST_SEEN = "last_seen_ts"


class WatermarkService:
    """Durable single-value cursor stored in the state database.

    Each write is one committed transaction, so a crash leaves either the
    old or the new value, never a partial one.
    """

    def __init__(self, db_service: Optional[DatabaseService] = None, name: str = LAST_SEEN):
        self.db_service = db_service
        self.name = name

    def _db(self) -> DatabaseService:
        return self.db_service or get_db_service()

    async def read(self) -> Optional[str]:
        """Return the stored timestamp, or None before the first write."""
        async with self._db().session() as session:
            result = await session.execute(select(Watermark).where(Watermark.name == self.name))
            row = result.scalar_one_or_none()
            return row.ts if row else None

    async def write(self, ts: str) -> None:
        """Replace the stored timestamp."""
        async with self._db().session() as session:
            row = await session.get(Watermark, self.name)
            if row is None:
                session.add(Watermark(name=self.name, ts=ts))
            else:
                row.ts = ts
        logger.debug("Watermark %s persisted: %s", self.name, ts)
