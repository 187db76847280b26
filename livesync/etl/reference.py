"""Reference data (teams, competitions) pre-populated from bulletin metadata."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import sessionmaker

from livesync.database import AsyncSessionLocal
from livesync.db_utils import bulk_upsert
from livesync.etl.payloads import extract_reference_rows
from livesync.models import Competition, Team

logger = logging.getLogger(__name__)

TEAM_FIELDS = (
    ("name", "name"),
    ("short_name", "short_name"),
    ("logo_url", "logo"),
    ("competition_id", "competition_id"),
    ("country_id", "country_id"),
)

COMPETITION_FIELDS = (
    ("name", "name"),
    ("short_name", "short_name"),
    ("logo_url", "logo"),
    ("country_id", "country_id"),
    ("category_id", "category_id"),
)


class ReferenceDataStore:
    """Idempotent upsert-by-external-id for teams and competitions."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or AsyncSessionLocal

    async def batch_upsert(self, model, rows: list) -> int:
        if not rows:
            return 0
        now = datetime.utcnow()
        async with self.session_factory() as session:
            count = await bulk_upsert(
                session,
                model,
                [{**row, "updated_at": now} for row in rows],
                conflict_columns=["external_id"],
            )
            await session.commit()
        return count

    async def upsert_from_bulletin(self, teams, competitions) -> dict:
        """Competitions first, then teams (teams reference competitions)."""
        competition_rows = extract_reference_rows(competitions, COMPETITION_FIELDS)
        team_rows = extract_reference_rows(teams, TEAM_FIELDS)
        result = {
            "competitions": await self.batch_upsert(Competition, competition_rows),
            "teams": await self.batch_upsert(Team, team_rows),
        }
        logger.info(
            f"[WINDOW_SYNC] Reference data upserted: "
            f"competitions={result['competitions']}, teams={result['teams']}"
        )
        return result
