"""
SQLAlchemy ORM models for the standings and relation-migration engine.
"""

import enum
import uuid
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    UniqueConstraint,
    Index,
    JSON,
)
from standings_engine.database.db import Base
from standings_engine.utils.datetime_utils import utcnow


def new_document_id() -> str:
    """Stable business key shared by a record and its snapshot copies."""
    return uuid.uuid4().hex


class MatchStatus(str, enum.Enum):
    """Match status enum."""

    SCHEDULED = "scheduled"
    LIVE = "live"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class ParticipantScheme(str, enum.Enum):
    """How a match or standing references its participants."""

    TEAM = "team"  # legacy
    CLUB = "club"


class MigrationStatus(str, enum.Enum):
    """Migration record status enum."""

    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"
    ROLLEDBACK = "rolledback"


class League(Base):
    """League model."""

    __tablename__ = "leagues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(32), unique=True, nullable=False, default=new_document_id)
    name = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Season(Base):
    """Season model."""

    __tablename__ = "seasons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(32), unique=True, nullable=False, default=new_document_id)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    name = Column(String, nullable=False)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_seasons_league", "league_id"),)


class Club(Base):
    """Club model (current participant scheme)."""

    __tablename__ = "clubs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(32), unique=True, nullable=False, default=new_document_id)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (Index("idx_clubs_name", "name"),)


class ClubLeague(Base):
    """Registration of a club in a league."""

    __tablename__ = "club_leagues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(32), unique=True, nullable=False, default=new_document_id)
    club_id = Column(Integer, ForeignKey("clubs.id"), nullable=False)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("club_id", "league_id", name="uq_club_leagues_club_league"),
        Index("idx_club_leagues_league", "league_id"),
    )


class Team(Base):
    """Team model (legacy participant scheme)."""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(32), unique=True, nullable=False, default=new_document_id)
    name = Column(String, nullable=False)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=True)
    club_id = Column(Integer, ForeignKey("clubs.id"), nullable=True)  # team -> club mapping
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_teams_league", "league_id"),
        Index("idx_teams_club", "club_id"),
    )


class Match(Base):
    """Match model. References participants through teams, clubs, or both mid-migration."""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(32), unique=True, nullable=False, default=new_document_id)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    season_id = Column(Integer, ForeignKey("seasons.id"), nullable=False)
    matchday = Column(Integer, nullable=True)
    home_team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    away_team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    home_club_id = Column(Integer, ForeignKey("clubs.id"), nullable=True)
    away_club_id = Column(Integer, ForeignKey("clubs.id"), nullable=True)
    score_home = Column(Integer, nullable=True)
    score_away = Column(Integer, nullable=True)
    status = Column(Enum(MatchStatus), default=MatchStatus.SCHEDULED, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_matches_league_season", "league_id", "season_id"),
        Index("idx_matches_status", "status"),
        Index("idx_matches_home_team", "home_team_id"),
        Index("idx_matches_away_team", "away_team_id"),
        Index("idx_matches_home_club", "home_club_id"),
        Index("idx_matches_away_club", "away_club_id"),
    )


class Standing(Base):
    """
    League table row for one participant in one league season.

    No unique or check constraints: duplicates and negative counters are
    corruption the consistency validator must be able to see.
    """

    __tablename__ = "standings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    document_id = Column(String(32), unique=True, nullable=False, default=new_document_id)
    league_id = Column(Integer, ForeignKey("leagues.id"), nullable=False)
    season_id = Column(Integer, ForeignKey("seasons.id"), nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    club_id = Column(Integer, ForeignKey("clubs.id"), nullable=True)
    played = Column(Integer, default=0, nullable=False)
    wins = Column(Integer, default=0, nullable=False)
    draws = Column(Integer, default=0, nullable=False)
    losses = Column(Integer, default=0, nullable=False)
    goals_for = Column(Integer, default=0, nullable=False)
    goals_against = Column(Integer, default=0, nullable=False)
    goal_diff = Column(Integer, default=0, nullable=False)
    points = Column(Integer, default=0, nullable=False)
    rank = Column(Integer, default=1, nullable=False)
    auto_calculated = Column(Boolean, default=False, nullable=False)
    calculation_source = Column(String, nullable=True)
    last_updated = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_standings_league_season", "league_id", "season_id"),
        Index("idx_standings_team", "team_id"),
        Index("idx_standings_club", "club_id"),
    )


class MigrationRecord(Base):
    """Durable record of one migration or rollback run."""

    __tablename__ = "migration_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    migration_type = Column(String, nullable=False)  # 'team_to_club' or 'rollback'
    status = Column(Enum(MigrationStatus), default=MigrationStatus.PENDING, nullable=False)
    state = Column(String, nullable=False, default="idle")  # last engine state reached
    backup_id = Column(String, nullable=True)
    processed = Column(Integer, default=0, nullable=False)
    migrated = Column(Integer, default=0, nullable=False)
    skipped = Column(Integer, default=0, nullable=False)
    errors = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    rollback_of_id = Column(Integer, ForeignKey("migration_records.id"), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_migration_records_status", "status"),
        Index("idx_migration_records_backup", "backup_id"),
    )


class MigrationLock(Base):
    """Single-row durable lock held while a migration or rollback runs."""

    __tablename__ = "migration_locks"

    name = Column(String, primary_key=True)
    holder = Column(String, nullable=False)
    migration_id = Column(Integer, ForeignKey("migration_records.id"), nullable=True)
    acquired_at = Column(DateTime(timezone=True), default=utcnow)


class AuditLogEntry(Base):
    """Append-only audit trail of engine state transitions and record mutations."""

    __tablename__ = "audit_log_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String, nullable=False)  # e.g. 'repair.clamp_negative', 'migration.state'
    entity = Column(String, nullable=False)  # collection name or 'migration'
    entity_id = Column(Integer, nullable=True)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    source = Column(String, nullable=False)  # 'repair_engine', 'migration_engine'
    migration_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_audit_log_entity", "entity", "entity_id"),
        Index("idx_audit_log_migration", "migration_id"),
    )
