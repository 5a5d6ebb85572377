"""
Repair engine: applies the one deterministic fix for each fixable inconsistency type.

Every repair re-reads the affected rows inside its own transaction and only
changes what is still wrong, so a second run over the same findings touches
nothing. Each repair category commits or rolls back as a unit and writes a
before/after audit pair for every record it touches.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from standings_engine.database.models import MatchStatus, ParticipantScheme
from standings_engine.database.repository import ContentStore, StoreTransaction
from standings_engine.models.inconsistency import DESTRUCTIVE_REPAIRS, Inconsistency, RepairKind
from standings_engine.services.audit_log import AuditLog
from standings_engine.services.consistency_validator import ConsistencyValidator
from standings_engine.services.notification_service import NotificationChannel, emit_alert
from standings_engine.services.participants import detect_scheme
from standings_engine.services.standings_calculator import has_valid_score
from standings_engine.services.standings_service import Dataset, load_dataset, plan_recalculation
from standings_engine.utils.constants import STANDING_COUNTERS
from standings_engine.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

# Match fixes first (they change what recalculation sees), recalculation last
REPAIR_ORDER = (
    RepairKind.RESET_INVALID_SCORE,
    RepairKind.CANCEL_SELF_PLAY,
    RepairKind.DELETE_ORPHANS,
    RepairKind.DELETE_DUPLICATES,
    RepairKind.DELETE_STRAY,
    RepairKind.CLAMP_NEGATIVE,
    RepairKind.RECOMPUTE_DERIVED,
    RepairKind.RECALCULATE,
)


@dataclass
class PlannedChange:
    collection: str
    record: Any  # None when creating
    changes: Optional[Dict[str, Any]]  # None when deleting


@dataclass
class RepairOutcome:
    repair: RepairKind
    inconsistency_types: List[str]
    planned: int = 0
    applied: int = 0
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repair": self.repair.value,
            "types": self.inconsistency_types,
            "planned": self.planned,
            "applied": self.applied,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
        }


@dataclass
class RepairResult:
    dry_run: bool
    outcomes: List[RepairOutcome] = field(default_factory=list)
    halted: bool = False

    @property
    def fixed(self) -> int:
        return sum(o.applied for o in self.outcomes)

    @property
    def planned(self) -> int:
        return sum(o.planned for o in self.outcomes)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.error)

    @property
    def skipped(self) -> int:
        return sum(1 for o in self.outcomes if o.skipped_reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "halted": self.halted,
            "planned": self.planned,
            "fixed": self.fixed,
            "failed": self.failed,
            "skipped": self.skipped,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def _derived(wins: int, draws: int, losses: int, goals_for: int, goals_against: int) -> Dict[str, int]:
    return {
        "played": wins + draws + losses,
        "goal_diff": goals_for - goals_against,
        "points": wins * 3 + draws,
    }


def _record_ids(items: List[Inconsistency], entity: Optional[str] = None) -> List[int]:
    return sorted({i for item in items if entity is None or item.entity == entity for i in item.record_ids})


class RepairEngine:
    def __init__(
        self,
        store: ContentStore,
        audit_log: Optional[AuditLog] = None,
        notifier: Optional[NotificationChannel] = None,
        max_failures: int = 0,
    ):
        self.store = store
        self.audit = audit_log or AuditLog(store, source="repair_engine")
        self.notifier = notifier
        self.max_failures = max_failures
        self._planners = {
            RepairKind.RESET_INVALID_SCORE: self._plan_reset_invalid_scores,
            RepairKind.CANCEL_SELF_PLAY: self._plan_cancel_self_play,
            RepairKind.DELETE_ORPHANS: self._plan_delete_orphans,
            RepairKind.DELETE_DUPLICATES: self._plan_delete_duplicates,
            RepairKind.DELETE_STRAY: self._plan_delete_stray,
            RepairKind.CLAMP_NEGATIVE: self._plan_clamp_negative,
            RepairKind.RECOMPUTE_DERIVED: self._plan_recompute_derived,
            RepairKind.RECALCULATE: self._plan_recalculate,
        }

    async def repair(
        self,
        inconsistencies: List[Inconsistency],
        dry_run: bool = False,
        force: bool = False,
    ) -> RepairResult:
        """
        Repair every fixable inconsistency.

        Args:
            inconsistencies: Validator findings; non-fixable ones are ignored
            dry_run: Only count the records each repair would touch
            force: Allow repairs that delete rows (duplicates, orphans)

        Returns:
            RepairResult with one outcome per repair category involved
        """
        groups: Dict[RepairKind, List[Inconsistency]] = defaultdict(list)
        for inconsistency in inconsistencies:
            if inconsistency.fixable and inconsistency.repair is not None:
                groups[inconsistency.repair].append(inconsistency)

        result = RepairResult(dry_run=dry_run)
        failures = 0
        for kind in REPAIR_ORDER:
            items = groups.get(kind)
            if not items:
                continue
            outcome = RepairOutcome(kind, sorted({i.type for i in items}))
            result.outcomes.append(outcome)

            if result.halted:
                outcome.skipped_reason = "halted after earlier failures"
                continue
            if kind in DESTRUCTIVE_REPAIRS and not force and not dry_run:
                outcome.skipped_reason = "deletes rows; rerun with force"
                logger.info(f"Skipping {kind.value}: requires force")
                continue

            try:
                async with self.store.transaction() as tx:
                    changes = await self._planners[kind](tx, items)
                    outcome.planned = len(changes)
                    if not dry_run:
                        await self._apply(tx, kind, changes)
                        outcome.applied = len(changes)
            except Exception as e:
                outcome.applied = 0
                outcome.error = str(e)
                failures += 1
                logger.error(f"Repair {kind.value} failed and was rolled back: {e}", exc_info=True)
                if failures > self.max_failures:
                    result.halted = True
                    await emit_alert(
                        self.notifier,
                        "error",
                        "Standings repair halted",
                        f"{failures} repair categories failed; last: {kind.value}: {e}",
                        {"repair": kind.value},
                    )
                continue

            verb = "would touch" if dry_run else "touched"
            logger.info(f"Repair {kind.value} {verb} {outcome.planned} records")

        return result

    async def _apply(self, tx: StoreTransaction, kind: RepairKind, changes: List[PlannedChange]) -> None:
        action = f"repair.{kind.value}"
        for change in changes:
            if change.record is None:
                await self.audit.record_creation(tx, action, change.collection, change.changes)
            else:
                await self.audit.record_change(tx, action, change.collection, change.record, change.changes)

    # ------------------------------------------------------------------
    # Planners: re-read current rows, return only what still needs changing
    # ------------------------------------------------------------------

    async def _plan_reset_invalid_scores(self, tx: StoreTransaction, items) -> List[PlannedChange]:
        matches = await tx.find("matches", id__in=_record_ids(items))
        return [
            PlannedChange("matches", m, {"status": MatchStatus.SCHEDULED, "score_home": None, "score_away": None})
            for m in matches
            if m.status == MatchStatus.FINISHED and not has_valid_score(m)
        ]

    async def _plan_cancel_self_play(self, tx: StoreTransaction, items) -> List[PlannedChange]:
        matches = await tx.find("matches", id__in=_record_ids(items))
        return [
            PlannedChange("matches", m, {"status": MatchStatus.CANCELLED})
            for m in matches
            if m.status != MatchStatus.CANCELLED
            and (
                (m.home_team_id is not None and m.home_team_id == m.away_team_id)
                or (m.home_club_id is not None and m.home_club_id == m.away_club_id)
            )
        ]

    async def _plan_delete_orphans(self, tx: StoreTransaction, items) -> List[PlannedChange]:
        dataset = Dataset(
            leagues=await tx.find("leagues"),
            seasons=await tx.find("seasons"),
            clubs=await tx.find("clubs"),
            teams=await tx.find("teams"),
            standings=await tx.find("standings", id__in=_record_ids(items, "standings")),
            matches=await tx.find("matches", id__in=_record_ids(items, "matches")),
        )
        still_orphaned = ConsistencyValidator().check_orphans(dataset, {})
        rows = {("standings", r.id): r for r in dataset.standings}
        rows.update({("matches", m.id): m for m in dataset.matches})
        return [
            PlannedChange(found.entity, rows[(found.entity, record_id)], None)
            for found in still_orphaned
            for record_id in found.record_ids
        ]

    async def _plan_delete_duplicates(self, tx: StoreTransaction, items) -> List[PlannedChange]:
        scopes = sorted({(i.league_id, i.season_id) for i in items})
        changes = []
        for league_id, season_id in scopes:
            rows = await tx.find("standings", league_id=league_id, season_id=season_id)
            by_id = {row.id: row for row in rows}
            for found in ConsistencyValidator().check_duplicates(Dataset(standings=rows), {}):
                changes.extend(PlannedChange("standings", by_id[i], None) for i in found.record_ids)
        return changes

    async def _plan_delete_stray(self, tx: StoreTransaction, items) -> List[PlannedChange]:
        scopes = sorted({(i.league_id, i.season_id) for i in items})
        changes = []
        for league_id, season_id in scopes:
            dataset = await load_dataset(tx, league_id, season_id)
            by_id = {row.id: row for row in dataset.standings}
            for found in ConsistencyValidator().check_drift(dataset, {}):
                if found.type == "stray_standings":
                    changes.extend(PlannedChange("standings", by_id[i], None) for i in found.record_ids)
        return changes

    async def _plan_clamp_negative(self, tx: StoreTransaction, items) -> List[PlannedChange]:
        changes = []
        for row in await tx.find("standings", id__in=_record_ids(items)):
            clamped = {f: max(0, getattr(row, f)) for f in STANDING_COUNTERS}
            if clamped == {f: getattr(row, f) for f in STANDING_COUNTERS}:
                continue
            clamped.update(
                _derived(
                    clamped["wins"], clamped["draws"], clamped["losses"],
                    clamped["goals_for"], clamped["goals_against"],
                )
            )
            diff = {k: v for k, v in clamped.items() if getattr(row, k) != v}
            changes.append(PlannedChange("standings", row, diff))
        return changes

    async def _plan_recompute_derived(self, tx: StoreTransaction, items) -> List[PlannedChange]:
        changes = []
        for row in await tx.find("standings", id__in=_record_ids(items)):
            derived = _derived(row.wins, row.draws, row.losses, row.goals_for, row.goals_against)
            diff = {k: v for k, v in derived.items() if getattr(row, k) != v}
            if diff:
                changes.append(PlannedChange("standings", row, diff))
        return changes

    async def _plan_recalculate(self, tx: StoreTransaction, items) -> List[PlannedChange]:
        requested = defaultdict(set)
        for item in items:
            if item.league_id is None or item.season_id is None:
                continue
            requested[(item.league_id, item.season_id)].add(item.details.get("scheme"))

        changes = []
        now = utcnow()
        for league_id, season_id in sorted(requested):
            dataset = await load_dataset(tx, league_id, season_id)
            schemes = {
                ParticipantScheme(scheme) if scheme else detect_scheme(
                    dataset.season_matches(league_id, season_id),
                    dataset.season_standings(league_id, season_id),
                )
                for scheme in requested[(league_id, season_id)]
            }
            for scheme in sorted(schemes, key=lambda s: s.value):
                for current, values in plan_recalculation(dataset, league_id, season_id, scheme):
                    changes.append(PlannedChange("standings", current, {**values, "last_updated": now}))
        return changes
