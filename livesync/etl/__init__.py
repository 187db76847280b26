"""Provider gateway, payload normalisation and reference data loading."""

from livesync.etl.base import ChangedMatch, DailyBulletin, ProviderGateway
from livesync.etl.rate_limit import TokenBucket
from livesync.etl.thesports import TheSportsProvider

__all__ = [
    "ChangedMatch",
    "DailyBulletin",
    "ProviderGateway",
    "TheSportsProvider",
    "TokenBucket",
]
