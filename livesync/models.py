"""Database models using SQLModel."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, Column
from sqlmodel import Field, SQLModel


class Competition(SQLModel, table=True):
    """Competition reference data (leagues, cups)."""

    __tablename__ = "competitions"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: str = Field(unique=True, index=True, max_length=64, description="TheSports competition ID")
    name: Optional[str] = Field(default=None, max_length=255)
    short_name: Optional[str] = Field(default=None, max_length=100)
    logo_url: Optional[str] = Field(default=None, max_length=500)
    country_id: Optional[str] = Field(default=None, max_length=64)
    category_id: Optional[str] = Field(default=None, max_length=64)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Team(SQLModel, table=True):
    """Team reference data."""

    __tablename__ = "teams"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: str = Field(unique=True, index=True, max_length=64, description="TheSports team ID")
    name: Optional[str] = Field(default=None, max_length=255)
    short_name: Optional[str] = Field(default=None, max_length=100)
    logo_url: Optional[str] = Field(default=None, max_length=500)
    competition_id: Optional[str] = Field(default=None, max_length=64)
    country_id: Optional[str] = Field(default=None, max_length=64)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Match(SQLModel, table=True):
    """
    Canonical match record keyed by the provider's external id.

    Volatile fields (status_id, minute, *_score_display) carry a paired
    <field>_source / <field>_timestamp audit column. Once status_id is
    FINISHED (8) it is frozen; only derived post-match data may still be filled.
    """

    __tablename__ = "matches"

    id: Optional[int] = Field(default=None, primary_key=True)
    external_id: str = Field(unique=True, index=True, max_length=64, description="TheSports match ID")

    # Classification (nullable until enriched)
    competition_id: Optional[str] = Field(default=None, index=True, max_length=64)
    season_id: Optional[str] = Field(default=None, index=True, max_length=64)
    stage_id: Optional[str] = Field(default=None, max_length=64)
    venue_id: Optional[str] = Field(default=None, max_length=64)
    referee_id: Optional[str] = Field(default=None, max_length=64)
    home_team_id: Optional[str] = Field(default=None, max_length=64)
    away_team_id: Optional[str] = Field(default=None, max_length=64)

    match_time: int = Field(sa_type=BigInteger, index=True, description="Scheduled kickoff, epoch seconds")

    status_id: int = Field(default=1, index=True, description="TheSports status code")
    status_id_source: Optional[str] = Field(default=None, max_length=20)
    status_id_timestamp: Optional[int] = Field(default=None, sa_type=BigInteger)

    minute: Optional[int] = Field(default=None, description="Raw provider minute")
    minute_source: Optional[str] = Field(default=None, max_length=20)
    minute_timestamp: Optional[int] = Field(default=None, sa_type=BigInteger)

    home_score_display: Optional[int] = Field(default=None)
    home_score_display_source: Optional[str] = Field(default=None, max_length=20)
    home_score_display_timestamp: Optional[int] = Field(default=None, sa_type=BigInteger)
    away_score_display: Optional[int] = Field(default=None)
    away_score_display_source: Optional[str] = Field(default=None, max_length=20)
    away_score_display_timestamp: Optional[int] = Field(default=None, sa_type=BigInteger)

    # Raw per-side arrays: [regular, halftime, red, yellow, corners, overtime, penalties]
    home_scores: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    away_scores: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))

    home_score_overtime: Optional[int] = Field(default=None)
    away_score_overtime: Optional[int] = Field(default=None)
    home_score_penalties: Optional[int] = Field(default=None)
    away_score_penalties: Optional[int] = Field(default=None)
    home_red_cards: Optional[int] = Field(default=None)
    away_red_cards: Optional[int] = Field(default=None)
    home_yellow_cards: Optional[int] = Field(default=None)
    away_yellow_cards: Optional[int] = Field(default=None)
    home_corners: Optional[int] = Field(default=None)
    away_corners: Optional[int] = Field(default=None)

    # Phase kickoffs, set once per phase
    first_half_kickoff_ts: Optional[int] = Field(default=None, sa_type=BigInteger)
    second_half_kickoff_ts: Optional[int] = Field(default=None, sa_type=BigInteger)
    overtime_kickoff_ts: Optional[int] = Field(default=None, sa_type=BigInteger)

    # Post-match derived data
    statistics: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    incidents: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    trend_data: Optional[dict] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    player_stats: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    lineup_data: Optional[dict] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    h2h_data: Optional[dict] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))

    # Per-half snapshots: statistics frozen at half time, second half = full time minus first
    first_half_stats: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    statistics_second_half: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    incidents_first_half: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    incidents_second_half: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    data_completeness: Optional[dict] = Field(
        default=None,
        sa_column=Column(JSON(none_as_null=True)),
        description="{first_half, second_half, full_time} capture flags",
    )

    last_update_source: Optional[str] = Field(default=None, max_length=20)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class LiveStatsCache(SQLModel, table=True):
    """Combined live stats captured while a match is in play (finalizer second chance)."""

    __tablename__ = "live_stats_cache"

    id: Optional[int] = Field(default=None, primary_key=True)
    match_external_id: str = Field(unique=True, index=True, max_length=64)
    statistics: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    incidents: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    trend_data: Optional[dict] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    player_stats: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Standing(SQLModel, table=True):
    """Season standings table, one row per season."""

    __tablename__ = "standings"

    id: Optional[int] = Field(default=None, primary_key=True)
    season_id: str = Field(unique=True, index=True, max_length=64)
    standings: Optional[list] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    source: str = Field(default="computed", max_length=20, description="computed | provider")
    computed_at: datetime = Field(default_factory=datetime.utcnow)


class SyncState(SQLModel, table=True):
    """Diagnostic summary of one bulletin sync per provider date. Safe to lose."""

    __tablename__ = "sync_state"

    id: Optional[int] = Field(default=None, primary_key=True)
    date_str: str = Field(unique=True, index=True, max_length=8, description="YYYYMMDD in provider timezone")
    date_display: Optional[str] = Field(default=None, max_length=20)
    reason: Optional[str] = Field(default=None, max_length=50)
    ok: bool = Field(default=False)
    total_matches: int = Field(default=0)
    synced: int = Field(default=0)
    errors: int = Field(default=0)
    success_rate: float = Field(default=0.0)
    rejected_reasons: Optional[dict] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class JobRun(SQLModel, table=True):
    """Persisted scheduler job executions."""

    __tablename__ = "job_runs"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_name: str = Field(index=True, max_length=100)
    status: str = Field(max_length=20, description="ok, error, skipped")
    started_at: datetime = Field(index=True)
    finished_at: Optional[datetime] = Field(default=None)
    duration_ms: Optional[int] = Field(default=None)
    error_message: Optional[str] = Field(default=None)
    metrics: Optional[dict] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
