"""
Tests for the repair engine against a real (SQLite) content store.
"""
import pytest
from standings_engine.database.models import MatchStatus
from standings_engine.models.inconsistency import RepairKind
from standings_engine.services.audit_log import AuditLog
from standings_engine.services.consistency_validator import ConsistencyValidator
from standings_engine.services.notification_service import MemoryChannel
from standings_engine.services.repair_engine import RepairEngine
from standings_engine.services.standings_service import recalculate_standings


async def seeded_season(seed):
    """Three clubs, three finished matches and correct standings."""
    league, season, clubs, teams = await seed.club_season()
    await seed.match(season, clubs[0], clubs[1], (2, 1))
    await seed.match(season, clubs[1], clubs[2], (0, 0))
    await seed.match(season, clubs[2], clubs[0], (1, 3))
    await recalculate_standings(seed.store, league.id, season.id)
    return league, season, clubs


async def validate(store):
    return await ConsistencyValidator().run(store)


@pytest.mark.asyncio
async def test_recalculated_season_is_consistent(seed):
    await seeded_season(seed)
    report = await validate(seed.store)
    assert not report.inconsistencies


@pytest.mark.asyncio
async def test_repairs_converge_and_second_run_is_a_no_op(seed):
    store = seed.store
    league, season, clubs = await seeded_season(seed)
    rows = await store.find("standings", order_by="rank")
    await store.update("standings", rows[0].id, wins=-2)
    await store.update("standings", rows[1].id, points=rows[1].points + 5)
    await store.update("standings", rows[2].id, goals_for=rows[2].goals_for + 3)

    before = await validate(store)
    assert {"negative_values", "arithmetic_mismatch", "standings_drift"} <= {i.type for i in before.errors}

    engine = RepairEngine(store)
    result = await engine.repair(before.fixable())
    assert result.failed == 0
    assert result.fixed > 0

    after = await validate(store)
    assert not after.has_errors
    assert after.warning_count == 0

    second = await engine.repair(before.fixable())
    assert second.fixed == 0
    assert second.planned == 0


@pytest.mark.asyncio
async def test_dry_run_changes_nothing(seed):
    store = seed.store
    await seeded_season(seed)
    row = (await store.find("standings"))[0]
    await store.update("standings", row.id, draws=-1)

    report = await validate(store)
    result = await RepairEngine(store).repair(report.fixable(), dry_run=True)

    assert result.dry_run is True
    assert result.planned > 0
    assert result.fixed == 0
    assert (await store.get("standings", row.id)).draws == -1
    assert await store.count("audit_log") == 0


@pytest.mark.asyncio
async def test_row_deleting_repairs_need_force(seed):
    store = seed.store
    league, season, clubs = await seeded_season(seed)
    original = (await store.find("standings", club_id=clubs[0].id))[0]
    duplicate = await seed.standing(
        season, clubs[0],
        played=original.played, wins=original.wins, draws=original.draws, losses=original.losses,
        goals_for=original.goals_for, goals_against=original.goals_against,
        goal_diff=original.goal_diff, points=original.points, rank=original.rank,
    )
    orphan = await store.create("standings", league_id=league.id, season_id=season.id, club_id=999)

    report = await validate(store)
    engine = RepairEngine(store)
    result = await engine.repair(report.fixable())

    skipped = {o.repair for o in result.outcomes if o.skipped_reason}
    assert skipped == {RepairKind.DELETE_DUPLICATES, RepairKind.DELETE_ORPHANS}
    assert await store.get("standings", duplicate.id) is not None
    assert await store.get("standings", orphan.id) is not None

    result = await engine.repair(report.fixable(), force=True)
    assert result.skipped == 0
    assert await store.get("standings", duplicate.id) is None
    assert await store.get("standings", orphan.id) is None
    assert await store.get("standings", original.id) is not None

    deletions = await AuditLog(store, "repair_engine").entries(entity="standings", action="repair.delete_duplicates")
    assert [e.entity_id for e in deletions] == [duplicate.id]
    assert deletions[0].after is None
    assert deletions[0].before["club_id"] == clubs[0].id

    assert not (await validate(store)).has_errors


@pytest.mark.asyncio
async def test_standings_of_other_league_clubs_are_removed_with_force(seed):
    store = seed.store
    league, season, clubs = await seeded_season(seed)
    other_league = await seed.league("Inland League")
    outsider = await seed.club("Harbour Masters", other_league)
    stray = await seed.standing(season, outsider, played=4, wins=4, goals_for=8, goal_diff=8, points=12, rank=4)

    report = await validate(store)
    assert [i.record_ids for i in report.errors if i.type == "stray_standings"] == [(stray.id,)]

    engine = RepairEngine(store)
    result = await engine.repair(report.fixable())
    assert {o.repair for o in result.outcomes if o.skipped_reason} == {RepairKind.DELETE_STRAY}
    assert await store.get("standings", stray.id) is not None

    await engine.repair(report.fixable(), force=True)
    assert await store.get("standings", stray.id) is None
    assert await store.count("standings") == 3
    assert not (await validate(store)).has_errors


@pytest.mark.asyncio
async def test_self_play_is_cancelled_not_deleted(seed):
    store = seed.store
    league, season, clubs = await seeded_season(seed)
    match = await seed.match(season, clubs[0], clubs[0], (1, 1))

    report = await validate(store)
    assert "self_play" in {i.type for i in report.errors}
    await RepairEngine(store).repair(report.fixable())

    repaired = await store.get("matches", match.id)
    assert repaired.status == MatchStatus.CANCELLED
    assert not (await validate(store)).has_errors


@pytest.mark.asyncio
async def test_invalid_score_resets_match_and_recalculates(seed):
    store = seed.store
    league, season, clubs = await seeded_season(seed)
    match = await seed.match(season, clubs[0], clubs[1], status=MatchStatus.FINISHED, score_home=4)

    report = await validate(store)
    await RepairEngine(store).repair(report.fixable())

    repaired = await store.get("matches", match.id)
    assert repaired.status == MatchStatus.SCHEDULED
    assert repaired.score_home is None and repaired.score_away is None
    assert not (await validate(store)).has_errors


@pytest.mark.asyncio
async def test_every_change_is_audited(seed):
    store = seed.store
    await seeded_season(seed)
    row = (await store.find("standings"))[0]
    await store.update("standings", row.id, losses=-3)

    report = await validate(store)
    await RepairEngine(store).repair(report.fixable())

    entries = await AuditLog(store, "repair_engine").entries(action="repair.clamp_negative")
    assert len(entries) == 1
    assert entries[0].source == "repair_engine"
    assert entries[0].before["losses"] == -3
    assert entries[0].after["losses"] == 0


@pytest.mark.asyncio
async def test_failures_halt_and_alert(seed, monkeypatch):
    store = seed.store
    await seeded_season(seed)
    row = (await store.find("standings"))[0]
    await store.update("standings", row.id, wins=-1)
    report = await validate(store)

    channel = MemoryChannel()
    engine = RepairEngine(store, notifier=channel, max_failures=0)

    async def broken(tx, items):
        raise RuntimeError("storage unavailable")

    monkeypatch.setitem(engine._planners, RepairKind.CLAMP_NEGATIVE, broken)
    result = await engine.repair(report.fixable())

    assert result.failed == 1
    assert result.halted is True
    assert all(o.skipped_reason for o in result.outcomes if o.repair != RepairKind.CLAMP_NEGATIVE)
    assert [e.title for e in channel.events] == ["Standings repair halted"]
    assert (await store.get("standings", row.id)).wins == -1
