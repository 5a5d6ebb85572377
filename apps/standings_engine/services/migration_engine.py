"""
Relation migration engine.

Moves matches and standings from legacy team references to club references
through a fixed pipeline:

    idle -> preflight_checks -> snapshot_created -> pre_validating
         -> transforming -> post_validating -> committed

Any stage after preflight can end in failed. Rollback is a separate run
(idle -> rolling_back -> rolled_back) that restores the migration's snapshot
and gets its own MigrationRecord. Progress lives in the migration_records and
migration_locks tables, never in process memory alone.
"""

import asyncio
import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple
from standings_engine.database.models import MigrationStatus, ParticipantScheme
from standings_engine.database.repository import ContentStore, chunks
from standings_engine.models.inconsistency import Inconsistency
from standings_engine.services.audit_log import AuditLog
from standings_engine.services.backup_manager import BackupManager
from standings_engine.services.consistency_validator import ConsistencyValidator, ValidationReport
from standings_engine.services.migration_lock import MigrationLockService
from standings_engine.services.notification_service import NotificationChannel, emit_alert
from standings_engine.services.participants import match_scheme, standing_scheme
from standings_engine.services.settings_service import EngineSettings
from standings_engine.services.standings_service import load_dataset, plan_recalculation
from standings_engine.utils.constants import (
    MIGRATION_ROLLBACK,
    MIGRATION_SCOPE,
    MIGRATION_TEAM_TO_CLUB,
)
from standings_engine.utils.datetime_utils import utcnow
from standings_engine.utils.exceptions import (
    EngineError,
    IntegrityError,
    PreflightError,
    ReferentialError,
    StateTransitionError,
)

logger = logging.getLogger(__name__)

# Per-record errors kept on the MigrationRecord
MAX_RECORDED_ERRORS = 100


class MigrationState(str, enum.Enum):
    IDLE = "idle"
    PREFLIGHT_CHECKS = "preflight_checks"
    SNAPSHOT_CREATED = "snapshot_created"
    PRE_VALIDATING = "pre_validating"
    TRANSFORMING = "transforming"
    POST_VALIDATING = "post_validating"
    COMMITTED = "committed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"


_TRANSITIONS = {
    MigrationState.IDLE: {MigrationState.PREFLIGHT_CHECKS, MigrationState.ROLLING_BACK},
    # failed here means the snapshot could not be written
    MigrationState.PREFLIGHT_CHECKS: {MigrationState.SNAPSHOT_CREATED, MigrationState.FAILED, MigrationState.IDLE},
    MigrationState.SNAPSHOT_CREATED: {MigrationState.PRE_VALIDATING, MigrationState.FAILED},
    MigrationState.PRE_VALIDATING: {MigrationState.TRANSFORMING, MigrationState.FAILED},
    MigrationState.TRANSFORMING: {MigrationState.POST_VALIDATING, MigrationState.FAILED},
    MigrationState.POST_VALIDATING: {MigrationState.COMMITTED, MigrationState.FAILED},
    MigrationState.ROLLING_BACK: {MigrationState.ROLLED_BACK, MigrationState.FAILED},
    MigrationState.COMMITTED: set(),
    MigrationState.FAILED: set(),
    MigrationState.ROLLED_BACK: set(),
}


@dataclass
class MigrationStats:
    processed: int = 0
    migrated: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def error_rate(self) -> float:
        if self.processed == 0:
            return 0.0
        return self.errors / self.processed

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "errors": self.errors,
        }


@dataclass
class MigrationResult:
    migration_type: str
    state: MigrationState = MigrationState.IDLE
    migration_id: Optional[int] = None
    backup_id: Optional[str] = None
    stats: MigrationStats = field(default_factory=MigrationStats)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    pre_validation: Optional[ValidationReport] = None
    post_validation: Optional[ValidationReport] = None
    new_inconsistencies: List[Inconsistency] = field(default_factory=list)
    cancelled: bool = False
    dry_run: bool = False
    message: Optional[str] = None
    recommendation: Optional[str] = None
    restore_summary: Optional[Dict[str, Dict[str, int]]] = None
    # (league_id, season_id) pairs whose standings were moved to clubs
    standings_seasons: Set[Tuple[int, int]] = field(default_factory=set)
    recalculated: int = 0

    @property
    def succeeded(self) -> bool:
        if self.dry_run:
            return self.stats.errors == 0
        return self.state in (MigrationState.COMMITTED, MigrationState.ROLLED_BACK)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migration_type": self.migration_type,
            "state": self.state.value,
            "migration_id": self.migration_id,
            "backup_id": self.backup_id,
            "stats": self.stats.to_dict(),
            "errors": self.errors[:MAX_RECORDED_ERRORS],
            "new_inconsistencies": [i.to_dict() for i in self.new_inconsistencies],
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
            "message": self.message,
            "recommendation": self.recommendation,
            "restore_summary": self.restore_summary,
            "recalculated": self.recalculated,
        }


def partition_ids(candidates: List[Tuple[int, int]], workers: int) -> List[List[int]]:
    """
    Split (record_id, partition_key) pairs into disjoint per-worker id lists.

    Records sharing a partition key always land in the same partition.
    """
    partitions: List[List[int]] = [[] for _ in range(max(1, workers))]
    for record_id, key in candidates:
        partitions[key % len(partitions)].append(record_id)
    return partitions


# ============================================================================
# Team -> club transformation
# ============================================================================

class TeamToClubTransformer:
    """Rewrites team references on matches and standings to the teams' clubs."""

    name = MIGRATION_TEAM_TO_CLUB
    collections = ("matches", "standings")

    def __init__(self):
        self.team_to_club: Dict[int, int] = {}
        self.club_leagues: Set[Tuple[int, int]] = set()
        self.claimed_standings: Set[Tuple[int, int, int]] = set()

    async def load(self, store: ContentStore) -> None:
        """Build the team -> club mapping: Team.club_id, else a unique active club of the same name."""
        teams = await store.find("teams")
        clubs = await store.find("clubs")
        links = await store.find("club_leagues")
        club_standings = await store.find("standings", club_id__isnull=False)

        by_name: Dict[str, List[int]] = {}
        for club in clubs:
            if club.is_active:
                by_name.setdefault(club.name.strip().casefold(), []).append(club.id)

        self.team_to_club = {}
        for team in teams:
            if team.club_id is not None:
                self.team_to_club[team.id] = team.club_id
            else:
                matches = by_name.get(team.name.strip().casefold(), [])
                if len(matches) == 1:
                    self.team_to_club[team.id] = matches[0]

        self.club_leagues = {(link.club_id, link.league_id) for link in links}
        self.claimed_standings = {(s.club_id, s.league_id, s.season_id) for s in club_standings}

    def has_mappings(self) -> bool:
        return bool(self.team_to_club)

    async def candidates(self, store: ContentStore, collection: str) -> list:
        if collection == "matches":
            with_home = await store.find("matches", home_team_id__isnull=False)
            away_only = await store.find("matches", home_team_id__isnull=True, away_team_id__isnull=False)
            return sorted(with_home + away_only, key=lambda m: m.id)
        return await store.find("standings", team_id__isnull=False)

    def partition_key(self, collection: str, record) -> int:
        if collection == "matches":
            return record.home_team_id or record.away_team_id or record.id
        return self.team_to_club.get(record.team_id, record.team_id)

    def club_for(self, team_id: int, league_id: int) -> int:
        club_id = self.team_to_club.get(team_id)
        if club_id is None:
            raise ReferentialError(f"Team {team_id} has no club mapping")
        if (club_id, league_id) not in self.club_leagues:
            raise ReferentialError(f"Club {club_id} (team {team_id}) is not registered in league {league_id}")
        return club_id

    def prepare(self, collection: str, record) -> Optional[Dict[str, Any]]:
        """
        New values for one record, or None when there is nothing to migrate.

        Raises:
            ReferentialError: Team cannot be mapped to a club of the record's league
            IntegrityError: Mapping conflicts with existing club data
        """
        if collection == "matches":
            return self._prepare_match(record)
        return self._prepare_standing(record)

    def _prepare_match(self, match) -> Optional[Dict[str, Any]]:
        if match.home_team_id is None and match.away_team_id is None:
            return None
        sides = {}
        for side in ("home", "away"):
            team_id = getattr(match, f"{side}_team_id")
            current_club = getattr(match, f"{side}_club_id")
            if team_id is None:
                if current_club is None:
                    raise ReferentialError(f"Match {match.id} has no {side} participant")
                sides[side] = current_club
                continue
            club_id = self.club_for(team_id, match.league_id)
            if current_club is not None and current_club != club_id:
                raise IntegrityError(
                    f"Match {match.id} {side} club {current_club} conflicts with team {team_id} -> club {club_id}"
                )
            sides[side] = club_id
        return {
            "home_club_id": sides["home"],
            "away_club_id": sides["away"],
            "home_team_id": None,
            "away_team_id": None,
        }

    def _prepare_standing(self, standing) -> Optional[Dict[str, Any]]:
        if standing.team_id is None:
            return None
        club_id = self.club_for(standing.team_id, standing.league_id)
        if standing.club_id is not None and standing.club_id != club_id:
            raise IntegrityError(
                f"Standing {standing.id} club {standing.club_id} conflicts with team {standing.team_id} -> club {club_id}"
            )
        key = (club_id, standing.league_id, standing.season_id)
        if standing.club_id is None and key in self.claimed_standings:
            raise IntegrityError(
                f"Standing {standing.id} would duplicate the club {club_id} row for league {standing.league_id} "
                f"season {standing.season_id}"
            )
        self.claimed_standings.add(key)
        return {"club_id": club_id, "team_id": None}


# ============================================================================
# Engine
# ============================================================================

class MigrationEngine:
    def __init__(
        self,
        store: ContentStore,
        backups: BackupManager,
        validator: Optional[ConsistencyValidator] = None,
        audit_log: Optional[AuditLog] = None,
        lock: Optional[MigrationLockService] = None,
        notifier: Optional[NotificationChannel] = None,
        settings: Optional[EngineSettings] = None,
        transformer: Optional[TeamToClubTransformer] = None,
    ):
        self.store = store
        self.backups = backups
        self.validator = validator or ConsistencyValidator()
        self.audit = audit_log or AuditLog(store, source="migration_engine")
        self.lock = lock or MigrationLockService(store)
        self.notifier = notifier
        self.settings = settings or EngineSettings()
        self.transformer = transformer or TeamToClubTransformer()
        self._state = MigrationState.IDLE
        self._record_id: Optional[int] = None
        self._cancel = asyncio.Event()

    @property
    def state(self) -> MigrationState:
        return self._state

    def cancel(self) -> None:
        """Stop after the batches currently in flight."""
        logger.warning("Migration cancellation requested")
        self._cancel.set()

    # ------------------------------------------------------------------
    # State and record bookkeeping
    # ------------------------------------------------------------------

    def _reset(self) -> None:
        self._state = MigrationState.IDLE
        self._record_id = None
        self._cancel.clear()

    async def _transition(self, new_state: MigrationState, **details) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise StateTransitionError(f"Illegal migration transition {self._state.value} -> {new_state.value}")
        old_state = self._state
        self._state = new_state
        if self._record_id is None:
            logger.info(f"Migration: {old_state.value} -> {new_state.value}")
            return
        await self.audit.transition(self._record_id, old_state.value, new_state.value, details)
        await self.store.update("migration_records", self._record_id, state=new_state.value)

    async def _save_progress(self, result: MigrationResult) -> None:
        await self.store.update("migration_records", self._record_id, **result.stats.to_dict())

    async def _finish(self, result: MigrationResult, status: MigrationStatus) -> None:
        result.state = self._state
        await self.store.update(
            "migration_records",
            self._record_id,
            status=status,
            error_message=result.message if status == MigrationStatus.FAILED else None,
            completed_at=utcnow(),
            details={
                "errors": result.errors[:MAX_RECORDED_ERRORS],
                "new_inconsistencies": [i.to_dict() for i in result.new_inconsistencies],
                "cancelled": result.cancelled,
                "recommendation": result.recommendation,
                "restore_summary": result.restore_summary,
                "recalculated": result.recalculated,
            },
            **result.stats.to_dict(),
        )

    async def _fail(self, result: MigrationResult, message: str) -> MigrationResult:
        result.message = message
        if result.stats.migrated and result.backup_id and result.migration_type != MIGRATION_ROLLBACK:
            result.recommendation = f"Review the data and roll back with backup id {result.backup_id}"
        await self._transition(MigrationState.FAILED, reason=message)
        await self._finish(result, MigrationStatus.FAILED)
        logger.error(f"Migration {self._record_id} failed: {message}")
        await emit_alert(
            self.notifier,
            "error",
            f"Migration {result.migration_type} failed",
            message,
            {"migration_id": self._record_id, "backup_id": result.backup_id, **result.stats.to_dict()},
        )
        return result

    # ------------------------------------------------------------------
    # Migrate
    # ------------------------------------------------------------------

    def _transformer_for(self, migration_type: str) -> TeamToClubTransformer:
        if migration_type != self.transformer.name:
            raise ValueError(f"Unsupported migration type: {migration_type}")
        return self.transformer

    async def _check_prerequisites(self, transformer: TeamToClubTransformer) -> None:
        try:
            for collection in MIGRATION_SCOPE:
                await self.store.count(collection)
            await transformer.load(self.store)
        except EngineError:
            raise
        except Exception as e:
            raise PreflightError(f"Content store is not usable: {e}") from e
        if not transformer.has_mappings():
            raise PreflightError("No team can be mapped to a club")

        backup_dir = Path(self.backups.backup_dir)
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreflightError(f"Backup directory {backup_dir} cannot be created: {e}") from e
        if not os.access(backup_dir, os.W_OK):
            raise PreflightError(f"Backup directory {backup_dir} is not writable")

    async def migrate(self, migration_type: str = MIGRATION_TEAM_TO_CLUB, dry_run: bool = False) -> MigrationResult:
        """
        Run the full migration pipeline.

        Args:
            migration_type: Only 'team_to_club' is supported
            dry_run: Check prerequisites, validate and count what would change;
                takes no lock, writes nothing

        Returns:
            MigrationResult ending in committed or failed

        Raises:
            PreflightError: A prerequisite is missing (nothing was written)
            ConcurrencyError: Another migration holds the lock (nothing was written)
        """
        transformer = self._transformer_for(migration_type)
        if dry_run:
            return await self._dry_run(transformer)

        self._reset()
        await self._transition(MigrationState.PREFLIGHT_CHECKS)
        try:
            await self._check_prerequisites(transformer)
            await self.lock.acquire()
        except EngineError:
            await self._transition(MigrationState.IDLE)
            raise

        result = MigrationResult(migration_type=migration_type)
        try:
            record = await self.store.create(
                "migration_records",
                migration_type=migration_type,
                status=MigrationStatus.PENDING,
                state=self._state.value,
            )
            self._record_id = result.migration_id = record.id
            await self.lock.attach(record.id)
            logger.info(f"Migration {record.id} ({migration_type}) started")
            return await self._run_pipeline(transformer, result)
        except Exception as e:
            logger.error(f"Migration {self._record_id} crashed: {e}", exc_info=True)
            if self._record_id is not None and self._state not in (MigrationState.COMMITTED, MigrationState.FAILED):
                return await self._fail(result, f"Unexpected error: {e}")
            raise
        finally:
            await self.lock.release()

    async def _run_pipeline(self, transformer: TeamToClubTransformer, result: MigrationResult) -> MigrationResult:
        try:
            result.backup_id = await self.backups.create_snapshot(MIGRATION_SCOPE, "full")
        except Exception as e:
            logger.error(f"Snapshot before migration failed: {e}", exc_info=True)
            return await self._fail(result, f"Snapshot failed: {e}")
        await self.store.update("migration_records", self._record_id, backup_id=result.backup_id)
        await self._transition(MigrationState.SNAPSHOT_CREATED, backup_id=result.backup_id)

        await self._transition(MigrationState.PRE_VALIDATING)
        result.pre_validation = await self.validator.run(self.store)
        tolerance = self.settings.pre_validation_error_tolerance
        if result.pre_validation.error_count > tolerance:
            types = sorted({i.type for i in result.pre_validation.errors})
            return await self._fail(
                result,
                f"Pre-validation found {result.pre_validation.error_count} errors "
                f"({', '.join(types)}); tolerance is {tolerance}",
            )

        await self._transition(MigrationState.TRANSFORMING)
        await self._transform(transformer, result)
        if result.cancelled:
            return await self._fail(
                result,
                f"Cancelled after {result.stats.processed} records "
                f"({result.stats.migrated} migrated); already committed batches are kept",
            )
        max_rate = self.settings.migration_max_error_rate
        if result.stats.error_rate > max_rate:
            return await self._fail(
                result,
                f"{result.stats.errors} of {result.stats.processed} records failed "
                f"({result.stats.error_rate:.1%} > {max_rate:.1%})",
            )
        await self._rebuild_club_tables(transformer, result)

        await self._transition(MigrationState.POST_VALIDATING)
        result.post_validation = await self.validator.run(self.store)
        new_signatures = result.post_validation.error_signatures() - result.pre_validation.error_signatures()
        if new_signatures:
            result.new_inconsistencies = [
                i for i in result.post_validation.errors if i.signatures() & new_signatures
            ]
            types = sorted({i.type for i in result.new_inconsistencies})
            return await self._fail(result, f"Post-validation found new errors: {', '.join(types)}")

        await self._transition(MigrationState.COMMITTED, **result.stats.to_dict())
        await self._finish(result, MigrationStatus.COMMITTED)
        logger.info(
            f"Migration {self._record_id} committed: {result.stats.migrated} migrated, "
            f"{result.stats.skipped} skipped, {result.stats.errors} errors"
        )
        return result

    async def _transform(self, transformer: TeamToClubTransformer, result: MigrationResult) -> None:
        await transformer.load(self.store)
        batch_size = max(1, self.settings.migration_batch_size)

        for collection in transformer.collections:
            records = await transformer.candidates(self.store, collection)
            partitions = partition_ids(
                [(r.id, transformer.partition_key(collection, r)) for r in records],
                self.settings.migration_workers,
            )
            logger.info(
                f"Transforming {len(records)} {collection} across "
                f"{sum(1 for p in partitions if p)} workers in batches of {batch_size}"
            )

            async def worker(ids: List[int]) -> None:
                for batch in chunks(ids, batch_size):
                    if self._cancel.is_set():
                        result.cancelled = True
                        return
                    await self._process_batch(transformer, collection, batch, result)

            await asyncio.gather(*(worker(p) for p in partitions if p))
            if result.cancelled:
                return

    async def _process_batch(
        self,
        transformer: TeamToClubTransformer,
        collection: str,
        ids: List[int],
        result: MigrationResult,
    ) -> None:
        """One transaction per batch; a bad record is counted and skipped, a bad batch is counted whole."""
        migrated = skipped = 0
        errors: List[Dict[str, Any]] = []
        seasons: Set[Tuple[int, int]] = set()
        action = f"migration.{transformer.name}"
        try:
            async with self.store.transaction() as tx:
                records = await tx.find(collection, id__in=ids)
                skipped += len(ids) - len(records)  # deleted since candidates were listed
                for record in records:
                    try:
                        changes = transformer.prepare(collection, record)
                    except Exception as e:
                        errors.append(
                            {"collection": collection, "id": record.id, "type": type(e).__name__, "error": str(e)}
                        )
                        continue
                    if not changes:
                        skipped += 1
                        continue
                    await self.audit.record_change(tx, action, collection, record, changes, self._record_id)
                    migrated += 1
                    if collection == "standings":
                        seasons.add((record.league_id, record.season_id))
        except Exception as e:
            logger.error(f"Batch of {len(ids)} {collection} failed and was rolled back: {e}", exc_info=True)
            migrated = skipped = 0
            seasons = set()
            errors = [
                {"collection": collection, "id": record_id, "type": type(e).__name__, "error": f"batch failed: {e}"}
                for record_id in ids
            ]

        result.stats.processed += len(ids)
        result.stats.migrated += migrated
        result.stats.skipped += skipped
        result.stats.errors += len(errors)
        result.errors.extend(errors)
        result.standings_seasons.update(seasons)
        for error in errors:
            logger.warning(f"Could not migrate {error['collection']} {error['id']}: {error['error']}")
        await self._save_progress(result)

    async def _rebuild_club_tables(self, transformer: TeamToClubTransformer, result: MigrationResult) -> None:
        """
        Recalculate the club table of every season whose standings moved to clubs.

        Moved rows keep their team-table ranks, and registered clubs without a
        legacy team have no row yet; both are settled here, one season per
        transaction, with audit entries under the migration.
        """
        action = f"migration.{transformer.name}.recalculate"
        for league_id, season_id in sorted(result.standings_seasons):
            async with self.store.transaction() as tx:
                dataset = await load_dataset(tx, league_id, season_id)
                plan = plan_recalculation(dataset, league_id, season_id, ParticipantScheme.CLUB)
                now = utcnow()
                for current, values in plan:
                    values = {**values, "last_updated": now}
                    if current is None:
                        await self.audit.record_creation(tx, action, "standings", values, self._record_id)
                    else:
                        await self.audit.record_change(tx, action, "standings", current, values, self._record_id)
            result.recalculated += len(plan)
            if plan:
                logger.info(
                    f"Recalculated club table for league {league_id} season {season_id}: {len(plan)} rows changed"
                )

    async def _dry_run(self, transformer: TeamToClubTransformer) -> MigrationResult:
        result = MigrationResult(migration_type=transformer.name, dry_run=True)
        await self._check_prerequisites(transformer)
        result.pre_validation = await self.validator.run(self.store)
        for collection in transformer.collections:
            for record in await transformer.candidates(self.store, collection):
                result.stats.processed += 1
                try:
                    changes = transformer.prepare(collection, record)
                except EngineError as e:
                    result.stats.errors += 1
                    result.errors.append(
                        {"collection": collection, "id": record.id, "type": type(e).__name__, "error": str(e)}
                    )
                    continue
                if changes:
                    result.stats.migrated += 1
                else:
                    result.stats.skipped += 1
        result.message = (
            f"Dry run: {result.stats.migrated} would migrate, {result.stats.skipped} unchanged, "
            f"{result.stats.errors} would fail"
        )
        logger.info(result.message)
        return result

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, backup_id: str) -> MigrationResult:
        """
        Restore the snapshot taken before a migration.

        The rollback gets its own MigrationRecord pointing at the migration that
        produced the snapshot, which is marked rolledback on success. Rows that
        migration created are removed, since the snapshot cannot restore their absence.
        Any failure marks the rollback record failed before it propagates.

        Raises:
            ConcurrencyError: Another migration holds the lock (nothing was written)
            ChecksumError: Snapshot is corrupted (nothing was restored)
            SnapshotNotFoundError: No snapshot with that id
        """
        self._reset()
        await self.lock.acquire()
        result = MigrationResult(migration_type=MIGRATION_ROLLBACK, backup_id=backup_id)
        try:
            source = await self.store.find_one(
                "migration_records", backup_id=backup_id, migration_type__ne=MIGRATION_ROLLBACK
            )
            record = await self.store.create(
                "migration_records",
                migration_type=MIGRATION_ROLLBACK,
                status=MigrationStatus.PENDING,
                state=self._state.value,
                backup_id=backup_id,
                rollback_of_id=source.id if source else None,
            )
            self._record_id = result.migration_id = record.id
            await self.lock.attach(record.id)
            await self._transition(MigrationState.ROLLING_BACK)

            try:
                result.restore_summary = await self.backups.restore(backup_id)
                if source is not None:
                    removed = await self._remove_created_rows(source.id)
                    for collection, count in removed.items():
                        counts = result.restore_summary.setdefault(
                            collection, {"created": 0, "updated": 0, "unchanged": 0}
                        )
                        counts["deleted"] = count
            except Exception as e:
                if not isinstance(e, EngineError):
                    logger.error(f"Rollback {record.id} crashed: {e}", exc_info=True)
                await self._fail(result, f"Rollback from {backup_id} failed: {e}")
                raise

            result.stats.processed = sum(sum(c.values()) for c in result.restore_summary.values())
            result.stats.migrated = sum(
                c["created"] + c["updated"] + c.get("deleted", 0) for c in result.restore_summary.values()
            )
            result.stats.skipped = sum(c["unchanged"] for c in result.restore_summary.values())
            await self._transition(MigrationState.ROLLED_BACK)
            await self._finish(result, MigrationStatus.ROLLEDBACK)
            if source is not None:
                await self.store.update("migration_records", source.id, status=MigrationStatus.ROLLEDBACK)
            logger.info(f"Rollback {record.id} restored {backup_id}: {result.restore_summary}")
            return result
        finally:
            await self.lock.release()

    async def _remove_created_rows(self, migration_id: int) -> Dict[str, int]:
        """Delete rows a migration created (the snapshot predates them), in one transaction."""
        created = [
            entry for entry in await self.audit.entries(migration_id=migration_id)
            if entry.before is None and entry.after is not None and entry.entity in MIGRATION_SCOPE
        ]
        removed: Dict[str, int] = {}
        async with self.store.transaction() as tx:
            for entry in created:
                record = await tx.get(entry.entity, entry.entity_id)
                if record is None or record.document_id != entry.after.get("document_id"):
                    continue
                await self.audit.record_change(tx, "rollback.remove_created", entry.entity, record, None, self._record_id)
                removed[entry.entity] = removed.get(entry.entity, 0) + 1
        if removed:
            logger.info(f"Removed rows created by migration {migration_id}: {removed}")
        return removed

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self) -> Dict[str, Any]:
        """Lock holder, recent migration records and how far the data has moved to clubs."""
        lock = await self.lock.current()
        recent = await self.store.find("migration_records", order_by="-id", limit=5)

        match_counts: Dict[str, int] = {}
        for match in await self.store.find("matches"):
            scheme = match_scheme(match)
            match_counts[scheme] = match_counts.get(scheme, 0) + 1
        standing_counts: Dict[str, int] = {}
        for standing in await self.store.find("standings"):
            scheme = standing_scheme(standing)
            standing_counts[scheme] = standing_counts.get(scheme, 0) + 1

        total = sum(match_counts.values()) + sum(standing_counts.values())
        migrated = match_counts.get(ParticipantScheme.CLUB.value, 0) + standing_counts.get(ParticipantScheme.CLUB.value, 0)
        return {
            "lock": {
                "holder": lock.holder,
                "migration_id": lock.migration_id,
                "acquired_at": lock.acquired_at.isoformat() if lock.acquired_at else None,
            } if lock else None,
            "recent": [
                {
                    "id": r.id,
                    "type": r.migration_type,
                    "status": r.status.value,
                    "state": r.state,
                    "backup_id": r.backup_id,
                    "processed": r.processed,
                    "migrated": r.migrated,
                    "skipped": r.skipped,
                    "errors": r.errors,
                    "error_message": r.error_message,
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                }
                for r in recent
            ],
            "matches": match_counts,
            "standings": standing_counts,
            "progress_percent": round(100.0 * migrated / total, 1) if total else 100.0,
        }
