"""
Shared pytest configuration for standings engine tests.

Each test gets its own SQLite file (aiosqlite) so sessions opened by the
engine components see each other's commits. SQLite does not enforce foreign
keys by default, which lets tests seed the orphaned rows the validator has
to find.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402
from standings_engine.database import db  # noqa: E402
from standings_engine.database.models import Club, MatchStatus  # noqa: E402
from standings_engine.database.repository import ContentStore  # noqa: E402
from standings_engine.services.settings_service import EngineSettings  # noqa: E402


class Seeder:
    """Creates leagues, clubs, teams, matches and standings through the content store."""

    def __init__(self, store: ContentStore):
        self.store = store

    async def league(self, name="Coastal League"):
        return await self.store.create("leagues", name=name)

    async def season(self, league, name="2024"):
        return await self.store.create("seasons", league_id=league.id, name=name)

    async def club(self, name, league=None, is_active=True):
        club = await self.store.create("clubs", name=name, is_active=is_active)
        if league is not None:
            await self.store.create("club_leagues", club_id=club.id, league_id=league.id)
        return club

    async def team(self, name, league, club=None):
        return await self.store.create(
            "teams", name=name, league_id=league.id, club_id=club.id if club else None
        )

    async def match(self, season, home, away, score=None, status=None, **extra):
        """Home/away may be clubs or teams; finished when a score is given."""
        values = {"league_id": season.league_id, "season_id": season.id}
        for side, participant in (("home", home), ("away", away)):
            kind = "club" if isinstance(participant, Club) else "team"
            values[f"{side}_{kind}_id"] = participant.id
        if score is not None:
            values["score_home"], values["score_away"] = score
        if status is None:
            status = MatchStatus.FINISHED if score is not None else MatchStatus.SCHEDULED
        values["status"] = status
        values.update(extra)
        return await self.store.create("matches", **values)

    async def standing(self, season, participant, **values):
        ref = "club_id" if isinstance(participant, Club) else "team_id"
        values[ref] = participant.id
        return await self.store.create(
            "standings", league_id=season.league_id, season_id=season.id, **values
        )

    async def club_season(self, names=("Anchors", "Breakers", "Corals")):
        """League and season with registered clubs and one same-named team per club."""
        league = await self.league()
        season = await self.season(league)
        clubs = [await self.club(name, league) for name in names]
        teams = [await self.team(name, league, club) for name, club in zip(names, clubs)]
        return league, season, clubs, teams


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """File-backed SQLite engine with all tables created."""
    # NullPool: each session gets its own connection, like separate processes would
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'standings_test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    await db.init_database(engine)

    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    yield engine

    db.AsyncSessionLocal = original_async_session_local
    await engine.dispose()


@pytest_asyncio.fixture
async def store(test_engine):
    return ContentStore(db.AsyncSessionLocal)


@pytest_asyncio.fixture
async def seed(store):
    return Seeder(store)


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        backup_dir=str(tmp_path / "backups"),
        report_dir=str(tmp_path / "reports"),
    )
