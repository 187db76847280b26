"""Abstract provider gateway consumed by the sync workers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional


@dataclass(frozen=True)
class ChangedMatch:
    """One entry of the provider's change feed."""

    match_id: str
    update_time: Optional[int] = None  # epoch seconds


@dataclass
class DailyBulletin:
    """A provider day's full match list plus the reference data embedded with it."""

    date_str: str  # YYYYMMDD in provider timezone
    matches: list = field(default_factory=list)
    teams: list = field(default_factory=list)
    competitions: list = field(default_factory=list)


class ProviderGateway(ABC):
    """
    Capability interface over the upstream sports-data API.

    One instance is shared by all workers so that its rate limiter
    coordinates the whole process quota.
    """

    @abstractmethod
    async def fetch_changed_matches(self) -> list[ChangedMatch]:
        """
        Matches changed since the provider's last refresh window.

        Returns:
            Deduplicated ChangedMatch entries in feed order.
        """
        pass

    @abstractmethod
    async def fetch_live_detail(self, match_id: str) -> Optional[dict]:
        """
        Live detail record for one match.

        Returns:
            The record for exactly this match, or None if the live feed no
            longer carries it (typical right after the final whistle).
        """
        pass

    @abstractmethod
    async def fetch_match_detail(self, match_id: str) -> Optional[dict]:
        """
        Generic (non-live) match record.

        Returns:
            The record, or None if the provider does not know the id.
        """
        pass

    @abstractmethod
    async def fetch_daily_bulletin(self, day: date) -> DailyBulletin:
        """Full bulletin for one provider-timezone day."""
        pass

    @abstractmethod
    async def fetch_match_statistics(self, match_id: str) -> Any:
        pass

    @abstractmethod
    async def fetch_match_incidents(self, match_id: str) -> Any:
        pass

    @abstractmethod
    async def fetch_match_trend(self, match_id: str) -> Any:
        pass

    @abstractmethod
    async def fetch_player_stats(self, match_id: str) -> Any:
        pass

    @abstractmethod
    async def fetch_lineup(self, match_id: str) -> Any:
        pass

    @abstractmethod
    async def fetch_h2h(self, match_id: str) -> Any:
        pass

    @abstractmethod
    async def fetch_standings(self, season_id: str) -> Any:
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close any open connections."""
        pass
