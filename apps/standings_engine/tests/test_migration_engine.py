"""
Tests for the team -> club relation migration, its gates and rollback.

SQLite allows one writer at a time, so parallel workers run against a store
whose transactions take turns; partitioning and the worker fan-out are still
exercised end to end.
"""
import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace
import pytest
from standings_engine.database import db
from standings_engine.database.models import MatchStatus, MigrationStatus, ParticipantScheme
from standings_engine.database.repository import ContentStore
from standings_engine.services.audit_log import AuditLog
from standings_engine.services.backup_manager import BackupManager
from standings_engine.services.consistency_validator import ConsistencyValidator
from standings_engine.services.migration_engine import (
    MigrationEngine,
    MigrationState,
    TeamToClubTransformer,
    partition_ids,
)
from standings_engine.services.migration_lock import MigrationLockService
from standings_engine.services.notification_service import MemoryChannel
from standings_engine.services.standings_service import recalculate_standings
from standings_engine.utils.exceptions import (
    ConcurrencyError,
    IntegrityError,
    PreflightError,
    ReferentialError,
    StateTransitionError,
)


def make_engine(store, settings, **kwargs):
    lock = MigrationLockService(store)
    backups = BackupManager(store, settings.backup_dir, settings=settings, lock=lock)
    return MigrationEngine(store, backups, lock=lock, settings=settings, **kwargs)


async def team_season(seed):
    """Legacy data: matches and standings keyed by teams that each map to a club."""
    league, season, clubs, teams = await seed.club_season()
    await seed.match(season, teams[0], teams[1], (2, 1))
    await seed.match(season, teams[1], teams[2], (1, 1))
    await seed.match(season, teams[2], teams[0], (0, 3))
    await recalculate_standings(seed.store, league.id, season.id, ParticipantScheme.TEAM)
    return league, season, clubs, teams


# ============================================================================
# Full runs
# ============================================================================

@pytest.mark.asyncio
async def test_migration_commits_and_moves_every_reference(seed, settings):
    store = seed.store
    league, season, clubs, teams = await team_season(seed)
    engine = make_engine(store, settings)

    result = await engine.migrate()

    assert result.state == MigrationState.COMMITTED
    assert result.succeeded
    assert result.stats.to_dict() == {"processed": 6, "migrated": 6, "skipped": 0, "errors": 0}
    assert engine.state == MigrationState.COMMITTED

    for match in await store.find("matches"):
        assert match.home_team_id is None and match.away_team_id is None
        assert {match.home_club_id, match.away_club_id} <= {c.id for c in clubs}
    standings = await store.find("standings", order_by="rank")
    assert [s.club_id for s in standings] == [clubs[0].id, clubs[1].id, clubs[2].id]
    assert all(s.team_id is None for s in standings)

    record = await store.get("migration_records", result.migration_id)
    assert record.status == MigrationStatus.COMMITTED
    assert record.state == "committed"
    assert record.backup_id == result.backup_id
    assert (record.processed, record.migrated, record.errors) == (6, 6, 0)
    assert record.completed_at is not None

    assert not await engine.lock.is_held()
    assert engine.backups.verify(result.backup_id).backup_type == "full"
    assert not (await ConsistencyValidator().run(store)).has_errors

    entries = await AuditLog(store, "migration_engine").entries(migration_id=result.migration_id)
    transitions = [e.after["state"] for e in entries if e.action == "migration.state"]
    assert transitions == ["snapshot_created", "pre_validating", "transforming", "post_validating", "committed"]
    assert sum(1 for e in entries if e.action == "migration.team_to_club") == 6


@pytest.mark.asyncio
async def test_rollback_restores_team_references(seed, settings):
    store = seed.store
    league, season, clubs, teams = await team_season(seed)
    engine = make_engine(store, settings)
    migrated = await engine.migrate()

    result = await engine.rollback(migrated.backup_id)

    assert result.state == MigrationState.ROLLED_BACK
    assert result.succeeded
    assert result.restore_summary["matches"]["updated"] == 3
    for match in await store.find("matches"):
        assert match.home_club_id is None
        assert match.home_team_id in {t.id for t in teams}
    assert all(s.team_id is not None and s.club_id is None for s in await store.find("standings"))

    rollback_record = await store.get("migration_records", result.migration_id)
    assert rollback_record.migration_type == "rollback"
    assert rollback_record.rollback_of_id == migrated.migration_id
    assert rollback_record.status == MigrationStatus.ROLLEDBACK
    source = await store.get("migration_records", migrated.migration_id)
    assert source.status == MigrationStatus.ROLLEDBACK
    assert not await engine.lock.is_held()


@pytest.mark.asyncio
async def test_club_names_reorder_tied_ranks(seed, settings):
    store = seed.store
    league = await seed.league()
    season = await seed.season(league)
    zulu = await seed.club("Zulu Sports Club", league)
    yankee = await seed.club("Yankee Sports Club", league)
    await seed.team("Alpha", league, zulu)
    await seed.team("Bravo", league, yankee)
    await recalculate_standings(store, league.id, season.id, ParticipantScheme.TEAM)

    result = await make_engine(store, settings).migrate()

    assert result.state == MigrationState.COMMITTED, result.message
    standings = await store.find("standings", order_by="rank")
    assert [s.club_id for s in standings] == [yankee.id, zulu.id]
    assert result.recalculated == 2
    entries = await AuditLog(store, "migration_engine").entries(
        migration_id=result.migration_id, action="migration.team_to_club.recalculate"
    )
    assert len(entries) == 2


@pytest.mark.asyncio
async def test_registered_club_without_team_gets_a_row(seed, settings):
    store = seed.store
    league, season, clubs, teams = await team_season(seed)
    aardvarks = await seed.club("Aardvarks", league)

    engine = make_engine(store, settings)
    result = await engine.migrate()

    assert result.state == MigrationState.COMMITTED, result.message
    standings = await store.find("standings", order_by="rank")
    assert [s.club_id for s in standings] == [clubs[0].id, clubs[1].id, clubs[2].id, aardvarks.id]
    assert standings[-1].played == 0 and standings[-1].auto_calculated
    assert not (await ConsistencyValidator().run(store)).inconsistencies

    # The created row postdates the snapshot, so rollback removes it
    rolled_back = await engine.rollback(result.backup_id)
    assert rolled_back.restore_summary["standings"]["deleted"] == 1
    assert await store.count("standings", club_id=aardvarks.id) == 0
    assert await store.count("standings") == 3


@pytest.mark.asyncio
async def test_rollback_crash_marks_record_failed(seed, settings, monkeypatch):
    store = seed.store
    await team_season(seed)
    engine = make_engine(store, settings)
    migrated = await engine.migrate()

    async def broken(payload, scope):
        raise RuntimeError("disk detached")

    monkeypatch.setattr(engine.backups, "_restore_tables", broken)
    with pytest.raises(RuntimeError):
        await engine.rollback(migrated.backup_id)

    record = (await store.find("migration_records", migration_type="rollback"))[0]
    assert record.status == MigrationStatus.FAILED
    assert record.state == "failed"
    assert record.completed_at is not None
    assert "disk detached" in record.error_message
    assert (await store.get("migration_records", migrated.migration_id)).status == MigrationStatus.COMMITTED
    assert not await engine.lock.is_held()


@pytest.mark.asyncio
async def test_error_rate_within_tolerance_commits(seed, settings):
    result, store = await run_with_unmapped_team(seed, settings, max_error_rate=0.1)

    assert result.stats.to_dict() == {"processed": 100, "migrated": 90, "skipped": 0, "errors": 10}
    assert result.state == MigrationState.COMMITTED
    assert len(result.errors) == 10
    assert {e["type"] for e in result.errors} == {"ReferentialError"}


@pytest.mark.asyncio
async def test_error_rate_above_tolerance_fails_and_keeps_batches(seed, settings):
    result, store = await run_with_unmapped_team(seed, settings, max_error_rate=0.05)

    assert result.stats.to_dict() == {"processed": 100, "migrated": 90, "skipped": 0, "errors": 10}
    assert result.state == MigrationState.FAILED
    assert not result.succeeded
    assert result.backup_id in result.recommendation
    assert await store.count("matches", home_club_id__isnull=False) == 90

    record = await store.get("migration_records", result.migration_id)
    assert record.status == MigrationStatus.FAILED
    assert "10 of 100" in record.error_message
    assert len(record.details["errors"]) == 10


async def run_with_unmapped_team(seed, settings, max_error_rate):
    store = seed.store
    league, season, clubs, teams = await seed.club_season(names=("Anchors", "Breakers"))
    ghost = await seed.team("Ghost Town", league)
    rows = [
        {"league_id": league.id, "season_id": season.id, "matchday": i + 1,
         "home_team_id": teams[i % 2].id, "away_team_id": teams[(i + 1) % 2].id}
        for i in range(90)
    ]
    rows += [
        {"league_id": league.id, "season_id": season.id, "matchday": 91 + i,
         "home_team_id": ghost.id, "away_team_id": teams[0].id}
        for i in range(10)
    ]
    await store.create_many("matches", rows)

    settings.migration_max_error_rate = max_error_rate
    settings.migration_batch_size = 25
    return await make_engine(store, settings).migrate(), store


class TurnTakingStore(ContentStore):
    """Content store whose transactions run one at a time."""

    def __init__(self, session_factory=None):
        super().__init__(session_factory)
        self._turn = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self):
        async with self._turn:
            async with super().transaction() as tx:
                yield tx


@pytest.mark.asyncio
async def test_two_workers_split_the_batches(seed, settings):
    league, season, clubs, teams = await team_season(seed)
    await seed.match(season, teams[1], teams[0], (0, 0))
    await seed.match(season, teams[2], teams[1], (2, 2))
    await recalculate_standings(seed.store, league.id, season.id, ParticipantScheme.TEAM)
    store = TurnTakingStore(db.AsyncSessionLocal)
    settings.migration_workers = 2
    settings.migration_batch_size = 1

    result = await make_engine(store, settings).migrate()

    assert result.state == MigrationState.COMMITTED, result.message
    assert result.stats.to_dict() == {"processed": 8, "migrated": 8, "skipped": 0, "errors": 0}
    assert await store.count("matches", home_team_id__isnull=False) == 0
    assert await store.count("standings", club_id__isnull=False) == 3
    assert not (await ConsistencyValidator().run(store)).has_errors


# ============================================================================
# Gates
# ============================================================================

@pytest.mark.asyncio
async def test_held_lock_refuses_without_writing(seed, settings):
    store = seed.store
    await team_season(seed)
    other = MigrationLockService(store, holder="other-process")
    await other.acquire()

    engine = make_engine(store, settings)
    with pytest.raises(ConcurrencyError):
        await engine.migrate()

    assert await store.count("migration_records") == 0
    assert engine.state == MigrationState.IDLE
    assert (await other.current()).holder == "other-process"
    assert engine.backups.list_snapshots() == []


@pytest.mark.asyncio
async def test_no_mappable_team_fails_preflight(seed, settings):
    store = seed.store
    league = await seed.league()
    await seed.season(league)
    await seed.team("Ghost Town", league)

    with pytest.raises(PreflightError):
        await make_engine(store, settings).migrate()
    assert await store.count("migration_records") == 0


@pytest.mark.asyncio
async def test_pre_validation_errors_stop_before_transforming(seed, settings):
    store = seed.store
    await team_season(seed)
    row = (await store.find("standings"))[0]
    await store.update("standings", row.id, wins=-1)
    channel = MemoryChannel()

    result = await make_engine(store, settings, notifier=channel).migrate()

    assert result.state == MigrationState.FAILED
    assert "Pre-validation" in result.message
    assert result.stats.processed == 0
    assert result.recommendation is None
    assert await store.count("matches", home_team_id__isnull=False) == 3
    record = await store.get("migration_records", result.migration_id)
    assert record.status == MigrationStatus.FAILED
    assert record.backup_id == result.backup_id
    assert [e.severity for e in channel.events] == ["error"]


@pytest.mark.asyncio
async def test_pre_validation_tolerance(seed, settings):
    store = seed.store
    await team_season(seed)
    row = (await store.find("standings"))[0]
    await store.update("standings", row.id, goals_for=row.goals_for + 1)
    settings.pre_validation_error_tolerance = 5

    result = await make_engine(store, settings).migrate()
    # The moved row is recalculated with the club table, so the tolerated drift is gone
    assert result.state == MigrationState.COMMITTED
    assert result.recalculated == 1
    moved = await store.get("standings", row.id)
    assert moved.goals_for == row.goals_for


@pytest.mark.asyncio
async def test_new_post_validation_errors_fail_and_can_be_rolled_back(seed, settings):
    store = seed.store
    await team_season(seed)

    class DanglingClubTransformer(TeamToClubTransformer):
        def _prepare_standing(self, standing):
            return {"club_id": 9999, "team_id": None}

    channel = MemoryChannel()
    engine = make_engine(store, settings, notifier=channel, transformer=DanglingClubTransformer())
    result = await engine.migrate()

    assert result.state == MigrationState.FAILED
    assert "orphan_standings" in {i.type for i in result.new_inconsistencies}
    assert result.recommendation is not None
    assert channel.events[-1].title == "Migration team_to_club failed"

    await engine.rollback(result.backup_id)
    assert not (await ConsistencyValidator().run(store)).has_errors


@pytest.mark.asyncio
async def test_cancel_stops_after_current_batch(seed, settings):
    store = seed.store
    await team_season(seed)
    settings.migration_batch_size = 1

    class CancellingTransformer(TeamToClubTransformer):
        engine = None

        def prepare(self, collection, record):
            self.engine.cancel()
            return super().prepare(collection, record)

    transformer = CancellingTransformer()
    engine = make_engine(store, settings, transformer=transformer)
    transformer.engine = engine

    result = await engine.migrate()

    assert result.cancelled is True
    assert result.state == MigrationState.FAILED
    assert result.stats.processed == 1
    assert result.stats.migrated == 1
    record = await store.get("migration_records", result.migration_id)
    assert record.details["cancelled"] is True
    assert not await engine.lock.is_held()


@pytest.mark.asyncio
async def test_dry_run_counts_without_writing(seed, settings):
    store = seed.store
    await team_season(seed)
    engine = make_engine(store, settings)

    result = await engine.migrate(dry_run=True)

    assert result.dry_run is True
    assert result.succeeded
    assert result.stats.to_dict() == {"processed": 6, "migrated": 6, "skipped": 0, "errors": 0}
    assert await store.count("matches", home_club_id__isnull=False) == 0
    assert await store.count("migration_records") == 0
    assert engine.backups.list_snapshots() == []


@pytest.mark.asyncio
async def test_unsupported_type_and_illegal_transition(store, settings):
    engine = make_engine(store, settings)
    with pytest.raises(ValueError):
        await engine.migrate("club_to_team")
    with pytest.raises(StateTransitionError):
        await engine._transition(MigrationState.COMMITTED)


@pytest.mark.asyncio
async def test_status_reports_progress(seed, settings):
    store = seed.store
    await team_season(seed)
    engine = make_engine(store, settings)

    before = await engine.status()
    assert before["progress_percent"] == 0.0
    assert before["lock"] is None
    assert before["matches"] == {"team": 3}

    await engine.migrate()
    after = await engine.status()
    assert after["progress_percent"] == 100.0
    assert after["matches"] == {"club": 3}
    assert after["recent"][0]["status"] == "committed"


# ============================================================================
# Transformer and partitioning
# ============================================================================

def legacy_match(match_id=1, home_team=1, away_team=2, home_club=None, away_club=None, league_id=1):
    return SimpleNamespace(
        id=match_id, league_id=league_id, season_id=1, status=MatchStatus.FINISHED,
        home_team_id=home_team, away_team_id=away_team, home_club_id=home_club, away_club_id=away_club,
    )


def transformer_with(mapping, registrations):
    transformer = TeamToClubTransformer()
    transformer.team_to_club = dict(mapping)
    transformer.club_leagues = set(registrations)
    return transformer


def test_transformer_rewrites_match_references():
    transformer = transformer_with({1: 10, 2: 20}, {(10, 1), (20, 1)})
    assert transformer.prepare("matches", legacy_match()) == {
        "home_club_id": 10, "away_club_id": 20, "home_team_id": None, "away_team_id": None,
    }
    assert transformer.prepare("matches", legacy_match(home_team=None, away_team=None, home_club=10, away_club=20)) is None


def test_transformer_refuses_unmapped_and_conflicting_references():
    transformer = transformer_with({1: 10, 2: 20}, {(10, 1)})
    with pytest.raises(ReferentialError):
        transformer.prepare("matches", legacy_match(home_team=3))
    with pytest.raises(ReferentialError):
        # club 20 is not registered in league 1
        transformer.prepare("matches", legacy_match())

    transformer = transformer_with({1: 10, 2: 20}, {(10, 1), (20, 1)})
    with pytest.raises(IntegrityError):
        transformer.prepare("matches", legacy_match(home_club=30))


def test_transformer_refuses_duplicate_standings():
    transformer = transformer_with({1: 10}, {(10, 1)})
    transformer.claimed_standings = {(10, 1, 1)}
    standing = SimpleNamespace(id=5, league_id=1, season_id=1, team_id=1, club_id=None)
    with pytest.raises(IntegrityError):
        transformer.prepare("standings", standing)


@pytest.mark.asyncio
async def test_transformer_maps_by_unique_active_club_name(seed):
    league = await seed.league()
    anchors = await seed.club("Anchors", league)
    await seed.club("Twins", league)
    await seed.club("twins", league)
    await seed.club("Retired", league, is_active=False)
    by_name = await seed.team("  ANCHORS ", league)
    ambiguous = await seed.team("Twins", league)
    inactive = await seed.team("Retired", league)

    transformer = TeamToClubTransformer()
    await transformer.load(seed.store)

    assert transformer.team_to_club == {by_name.id: anchors.id}
    assert ambiguous.id not in transformer.team_to_club
    assert inactive.id not in transformer.team_to_club


def test_partition_ids_keeps_keys_together():
    candidates = [(1, 10), (2, 11), (3, 10), (4, 12), (5, 11)]
    partitions = partition_ids(candidates, 2)

    assert partitions == [[1, 3, 4], [2, 5]]
    assert sorted(i for p in partitions for i in p) == [1, 2, 3, 4, 5]
    assert partition_ids(candidates, 0) == [[1, 2, 3, 4, 5]]
