"""Live stats cache: combined stats captured during play, the finalizer's second chance."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from livesync.database import AsyncSessionLocal
from livesync.db_utils import upsert
from livesync.matches.store import DERIVED_FIELDS, has_derived_data
from livesync.models import LiveStatsCache

logger = logging.getLogger(__name__)


class LiveStatsCacheStore:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def save(self, match_external_id: str, **fields) -> bool:
        """Merge non-empty derived values into the cache row. Empty values never erase cached data."""
        values = {
            name: value
            for name, value in fields.items()
            if name in DERIVED_FIELDS and has_derived_data(name, value)
        }
        if not values:
            return False
        async with self.session_factory() as session:
            await upsert(
                session,
                LiveStatsCache,
                {"match_external_id": match_external_id, **values, "updated_at": datetime.utcnow()},
                conflict_columns=["match_external_id"],
            )
            await session.commit()
        return True

    async def get(self, match_external_id: str) -> Optional[LiveStatsCache]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LiveStatsCache).where(LiveStatsCache.match_external_id == match_external_id)
            )
            return result.scalar_one_or_none()
