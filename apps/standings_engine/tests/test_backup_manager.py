"""
Tests for snapshot creation, verification, restore and retention.
"""
import asyncio
import gzip
import json
import os
from datetime import datetime, timedelta
import pytest
import pytz
from standings_engine.services import backup_manager
from standings_engine.services.backup_manager import BackupManager, RetentionPolicy
from standings_engine.services.migration_lock import MigrationLockService
from standings_engine.services.settings_service import EngineSettings
from standings_engine.utils.exceptions import (
    CapacityError,
    ChecksumError,
    ConcurrencyError,
    SnapshotNotFoundError,
)


@pytest.fixture
def backups(store, settings):
    return BackupManager(store, settings.backup_dir, settings=settings)


async def seed_data(seed):
    league, season, clubs, teams = await seed.club_season()
    match = await seed.match(season, clubs[0], clubs[1], (2, 0))
    await seed.standing(season, clubs[0], played=1, wins=1, goals_for=2, goal_diff=2, points=3, rank=1)
    return league, season, clubs, match


@pytest.mark.asyncio
async def test_snapshot_artifacts_and_metadata(seed, backups):
    await seed_data(seed)
    snapshot_id = await backups.create_snapshot()

    files = sorted(p.name for p in backups.backup_dir.iterdir())
    assert files == [f"{snapshot_id}.json.gz", f"{snapshot_id}.meta.json"]

    metadata = backups.verify(snapshot_id)
    assert metadata.version == "1.0"
    assert metadata.backup_type == "full"
    assert metadata.record_counts["clubs"] == 3
    assert metadata.record_counts["matches"] == 1
    assert metadata.tables[0] == "leagues"

    raw = json.loads(backups._metadata_path(snapshot_id).read_text())
    assert raw["snapshotId"] == snapshot_id
    assert "recordCounts" in raw

    payload = json.loads(gzip.decompress(backups._payload_path(snapshot_id).read_bytes()))
    assert payload["tables"]["clubs"]["recordCount"] == 3
    assert [m.snapshot_id for m in backups.list_snapshots()] == [snapshot_id]


@pytest.mark.asyncio
async def test_restore_round_trip(seed, backups):
    store = seed.store
    league, season, clubs, match = await seed_data(seed)
    snapshot_id = await backups.create_snapshot()

    await store.update("clubs", clubs[0].id, name="Renamed FC")
    await store.delete("matches", match.id)
    await seed.club("Latecomers")

    summary = await backups.restore(snapshot_id)

    assert (await store.get("clubs", clubs[0].id)).name == "Anchors"
    restored = await store.get("matches", match.id)
    assert restored.document_id == match.document_id
    assert restored.score_home == 2
    assert summary["clubs"] == {"created": 0, "updated": 1, "unchanged": 2}
    assert summary["matches"]["created"] == 1
    # Restore does not delete records created after the snapshot
    assert await store.count("clubs") == 4

    again = await backups.restore(snapshot_id)
    assert all(counts["created"] == counts["updated"] == 0 for counts in again.values())


@pytest.mark.asyncio
async def test_restore_limited_to_target_scope(seed, backups):
    store = seed.store
    league, season, clubs, match = await seed_data(seed)
    snapshot_id = await backups.create_snapshot()
    await store.update("clubs", clubs[0].id, name="Renamed FC")
    await store.update("matches", match.id, score_home=9)

    summary = await backups.restore(snapshot_id, target_scope=["matches"])

    assert list(summary) == ["matches"]
    assert (await store.get("matches", match.id)).score_home == 2
    assert (await store.get("clubs", clubs[0].id)).name == "Renamed FC"


@pytest.mark.asyncio
async def test_corrupted_snapshot_is_refused_without_writes(seed, backups):
    store = seed.store
    league, season, clubs, match = await seed_data(seed)
    snapshot_id = await backups.create_snapshot()
    await store.update("clubs", clubs[0].id, name="Renamed FC")

    payload_path = backups._payload_path(snapshot_id)
    payload = json.loads(gzip.decompress(payload_path.read_bytes()))
    payload["tables"]["clubs"]["data"][0]["name"] = "Tampered"
    payload_path.write_bytes(gzip.compress(json.dumps(payload).encode("utf-8")))

    with pytest.raises(ChecksumError):
        await backups.restore(snapshot_id)
    assert (await store.get("clubs", clubs[0].id)).name == "Renamed FC"


@pytest.mark.asyncio
async def test_unknown_snapshot(backups):
    with pytest.raises(SnapshotNotFoundError):
        backups.verify("snapshot-full-missing")
    with pytest.raises(SnapshotNotFoundError):
        await backups.restore("snapshot-full-missing")


@pytest.mark.asyncio
async def test_failed_write_leaves_no_artifacts(seed, backups, monkeypatch):
    await seed_data(seed)
    real_replace = os.replace

    def failing_replace(src, dst):
        if str(dst).endswith(backup_manager.METADATA_SUFFIX):
            raise OSError("No space left on device")
        real_replace(src, dst)

    monkeypatch.setattr(backup_manager.os, "replace", failing_replace)
    with pytest.raises(OSError):
        await backups.create_snapshot()

    assert list(backups.backup_dir.iterdir()) == []
    assert backups.list_snapshots() == []


@pytest.mark.asyncio
async def test_slow_export_raises_capacity_error(seed, store, tmp_path, monkeypatch):
    await seed_data(seed)
    settings = EngineSettings(
        backup_dir=str(tmp_path / "slow"),
        snapshot_base_timeout_seconds=0.05,
        snapshot_timeout_per_row_ms=0.0,
    )
    backups = BackupManager(store, settings.backup_dir, settings=settings)

    async def slow_export(scope, since):
        await asyncio.sleep(1)
        return {}

    monkeypatch.setattr(backups, "_export_tables", slow_export)
    with pytest.raises(CapacityError):
        await backups.create_snapshot()
    assert backups.list_snapshots() == []


@pytest.mark.asyncio
async def test_incremental_snapshot_holds_only_changed_records(seed, backups):
    store = seed.store
    league, season, clubs, match = await seed_data(seed)
    await backups.create_snapshot()
    await asyncio.sleep(0.01)
    await store.update("clubs", clubs[1].id, name="Breakers United")

    snapshot_id = await backups.create_snapshot(snapshot_type="incremental")
    metadata = backups.get_metadata(snapshot_id)

    assert metadata.backup_type == "incremental"
    assert metadata.since is not None
    assert metadata.record_counts["clubs"] == 1
    assert metadata.record_counts["matches"] == 0


@pytest.mark.asyncio
async def test_incremental_without_base_falls_back_to_full(seed, backups):
    await seed_data(seed)
    snapshot_id = await backups.create_snapshot(snapshot_type="incremental")
    metadata = backups.get_metadata(snapshot_id)
    assert metadata.backup_type == "full"
    assert metadata.since is None


@pytest.mark.asyncio
async def test_retention_keeps_minimum_and_recent(store, settings):
    now = datetime(2024, 6, 1, tzinfo=pytz.UTC)
    ages = iter([100, 90, 80, 70, 60, 50, 40, 1])
    backups = BackupManager(
        store, settings.backup_dir, settings=settings, clock=lambda: now - timedelta(days=next(ages))
    )
    created = [await backups.create_snapshot(scope=["clubs"]) for _ in range(8)]

    result = await backups.retention(RetentionPolicy(retention_days=30, keep_minimum=5), now=now)

    # Newest five are kept even though four of them are past the window
    assert sorted(result["deleted"]) == sorted(created[:3])
    assert result["kept"] == 5
    assert [m.snapshot_id for m in backups.list_snapshots()] == list(reversed(created[3:]))


@pytest.mark.asyncio
async def test_retention_refused_while_migration_lock_held(store, backups):
    lock = MigrationLockService(store, holder="other-process")
    await lock.acquire()
    try:
        with pytest.raises(ConcurrencyError):
            await backups.retention()
    finally:
        await lock.release()
