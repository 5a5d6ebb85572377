"""
Consistency validation over standings and matches.

Every check runs independently; one crashing check is reported as a
check_failed finding instead of hiding the others. The validator never raises.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from standings_engine.database.models import MatchStatus, ParticipantScheme
from standings_engine.models.inconsistency import Inconsistency, RepairKind, Severity
from standings_engine.services.participants import (
    SCHEME_MIXED,
    SCHEME_UNRESOLVED,
    match_scheme,
    standing_participant,
    standing_scheme,
)
from standings_engine.services.standings_calculator import CalculationResult, has_valid_score
from standings_engine.services.standings_service import Dataset, calculate_for_season, load_dataset
from standings_engine.utils.constants import STANDING_COUNTERS, STANDING_TABLE_FIELDS
from standings_engine.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

ComputedTables = Dict[Tuple[int, int, ParticipantScheme], CalculationResult]

STATUS_PASSED = "passed"
STATUS_WARNING = "warning"
STATUS_ERROR = "error"


@dataclass
class CheckResult:
    name: str
    inconsistencies: List[Inconsistency] = field(default_factory=list)

    @property
    def status(self) -> str:
        if any(i.is_error for i in self.inconsistencies):
            return STATUS_ERROR
        if self.inconsistencies:
            return STATUS_WARNING
        return STATUS_PASSED


@dataclass
class ValidationReport:
    checks: List[CheckResult] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def inconsistencies(self) -> List[Inconsistency]:
        return [i for check in self.checks for i in check.inconsistencies]

    @property
    def errors(self) -> List[Inconsistency]:
        return [i for i in self.inconsistencies if i.is_error]

    @property
    def warnings(self) -> List[Inconsistency]:
        return [i for i in self.inconsistencies if not i.is_error]

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    @property
    def has_errors(self) -> bool:
        return self.error_count > 0

    def fixable(self) -> List[Inconsistency]:
        return [i for i in self.inconsistencies if i.fixable]

    def error_signatures(self) -> set:
        signatures = set()
        for inconsistency in self.errors:
            signatures |= inconsistency.signatures()
        return signatures

    def summary(self) -> Dict[str, int]:
        return {
            "checks": len(self.checks),
            "errors": self.error_count,
            "warnings": self.warning_count,
        }


def _by_season(rows) -> Dict[Tuple[int, int], list]:
    groups = defaultdict(list)
    for row in rows:
        groups[(row.league_id, row.season_id)].append(row)
    return groups


def _arithmetic_ok(standing) -> bool:
    return (
        standing.played == standing.wins + standing.draws + standing.losses
        and standing.goal_diff == standing.goals_for - standing.goals_against
        and standing.points == standing.wins * 3 + standing.draws
    )


def _season_start_tie(rows) -> bool:
    """Everyone on zero and sharing rank 1."""
    return len(rows) > 1 and all(row.rank == 1 and row.played == 0 for row in rows)


class ConsistencyValidator:
    """Runs every consistency check and collects the findings."""

    def _checks(self) -> List[Tuple[str, Callable]]:
        return [
            ("negative_values", self.check_negative_values),
            ("arithmetic", self.check_arithmetic),
            ("drift", self.check_drift),
            ("duplicates", self.check_duplicates),
            ("orphans", self.check_orphans),
            ("self_play", self.check_self_play),
            ("rank_sequence", self.check_rank_sequence),
            ("invalid_scores", self.check_invalid_scores),
            ("participant_schemes", self.check_participant_schemes),
        ]

    def validate(self, dataset: Dataset, computed: Optional[ComputedTables] = None) -> ValidationReport:
        """
        Validate a loaded dataset.

        Args:
            dataset: Records to check
            computed: Optional fresh calculator output keyed by
                (league_id, season_id, scheme); missing entries are computed here

        Returns:
            ValidationReport with one CheckResult per check
        """
        computed = dict(computed or {})
        report = ValidationReport()
        for name, check in self._checks():
            result = CheckResult(name=name)
            try:
                result.inconsistencies = check(dataset, computed)
            except Exception as e:
                logger.error(f"Consistency check {name} crashed: {e}", exc_info=True)
                result.inconsistencies = [
                    Inconsistency(
                        type="check_failed",
                        severity=Severity.ERROR,
                        entity=name,
                        description=f"Check {name} could not complete: {e}",
                        affected_count=0,
                        fixable=False,
                        category=type(e).__name__,
                        details={"check": name, "error": str(e)},
                    )
                ]
            report.checks.append(result)

        logger.info(
            f"Validation finished: {report.error_count} errors, {report.warning_count} warnings "
            f"across {len(report.checks)} checks"
        )
        return report

    async def run(self, store, league_id: Optional[int] = None, season_id: Optional[int] = None) -> ValidationReport:
        """Load the (optionally scoped) dataset from the content store and validate it."""
        try:
            dataset = await load_dataset(store, league_id, season_id)
        except Exception as e:
            logger.error(f"Failed to load data for validation: {e}", exc_info=True)
            return ValidationReport(
                checks=[
                    CheckResult(
                        name="load",
                        inconsistencies=[
                            Inconsistency(
                                type="load_failed",
                                severity=Severity.ERROR,
                                entity="content_store",
                                description=f"Could not load records: {e}",
                                affected_count=0,
                                fixable=False,
                                category=type(e).__name__,
                            )
                        ],
                    )
                ]
            )
        return self.validate(dataset)

    # ------------------------------------------------------------------
    # Standings checks
    # ------------------------------------------------------------------

    def check_negative_values(self, data: Dataset, computed: ComputedTables) -> List[Inconsistency]:
        found = []
        for (league_id, season_id), rows in sorted(_by_season(data.standings).items()):
            bad, fields = [], set()
            for row in rows:
                negative = [f for f in STANDING_COUNTERS if (getattr(row, f) or 0) < 0]
                if negative:
                    bad.append(row.id)
                    fields.update(negative)
            if bad:
                found.append(
                    Inconsistency(
                        type="negative_values",
                        severity=Severity.ERROR,
                        entity="standings",
                        description=f"{len(bad)} standings have negative counters ({', '.join(sorted(fields))})",
                        affected_count=len(bad),
                        fixable=True,
                        repair=RepairKind.CLAMP_NEGATIVE,
                        record_ids=tuple(bad),
                        league_id=league_id,
                        season_id=season_id,
                        details={"fields": sorted(fields)},
                    )
                )
        return found

    def check_arithmetic(self, data: Dataset, computed: ComputedTables) -> List[Inconsistency]:
        found = []
        for (league_id, season_id), rows in sorted(_by_season(data.standings).items()):
            bad = [row.id for row in rows if not _arithmetic_ok(row)]
            if bad:
                found.append(
                    Inconsistency(
                        type="arithmetic_mismatch",
                        severity=Severity.ERROR,
                        entity="standings",
                        description=(
                            f"{len(bad)} standings break played = W+D+L, goal_diff = GF-GA "
                            f"or points = 3W+D"
                        ),
                        affected_count=len(bad),
                        fixable=True,
                        repair=RepairKind.RECOMPUTE_DERIVED,
                        record_ids=tuple(bad),
                        league_id=league_id,
                        season_id=season_id,
                    )
                )
        return found

    def check_drift(self, data: Dataset, computed: ComputedTables) -> List[Inconsistency]:
        """Stored standings against a fresh calculation from current matches."""
        found = []
        existing = {
            ParticipantScheme.TEAM: {team.id for team in data.teams},
            ParticipantScheme.CLUB: {club.id for club in data.clubs},
        }
        for (league_id, season_id), rows in sorted(_by_season(data.standings).items()):
            by_scheme = defaultdict(list)
            for row in rows:
                scheme, participant_id = standing_participant(row)
                if participant_id is not None:
                    by_scheme[scheme].append(row)

            for scheme, scheme_rows in sorted(by_scheme.items(), key=lambda kv: kv[0].value):
                key = (league_id, season_id, scheme)
                if key not in computed:
                    computed[key] = calculate_for_season(data, league_id, season_id, scheme)
                expected = computed[key].by_participant()
                # A shared rank 1 before any match is reported by the rank check only
                fields = STANDING_TABLE_FIELDS
                if _season_start_tie(scheme_rows):
                    fields = tuple(f for f in STANDING_TABLE_FIELDS if f != "rank")

                drifted, stray, stored_ids = [], [], set()
                for row in scheme_rows:
                    participant_id = standing_participant(row)[1]
                    stored_ids.add(participant_id)
                    fresh = expected.get(participant_id)
                    if fresh is None:
                        # Missing participants are reported by the orphan check
                        if participant_id in existing[scheme]:
                            stray.append(row.id)
                        continue
                    values = fresh.table_values()
                    if any(getattr(row, f) != values[f] for f in fields):
                        drifted.append(row.id)

                if drifted:
                    found.append(
                        Inconsistency(
                            type="standings_drift",
                            severity=Severity.ERROR,
                            entity="standings",
                            description=(
                                f"{len(drifted)} {scheme.value} standings differ from a recalculation "
                                f"of finished matches"
                            ),
                            affected_count=len(drifted),
                            fixable=True,
                            repair=RepairKind.RECALCULATE,
                            record_ids=tuple(drifted),
                            league_id=league_id,
                            season_id=season_id,
                            details={"scheme": scheme.value},
                        )
                    )

                if stray:
                    found.append(
                        Inconsistency(
                            type="stray_standings",
                            severity=Severity.ERROR,
                            entity="standings",
                            description=(
                                f"{len(stray)} {scheme.value} standings belong to participants outside "
                                f"this league season's table"
                            ),
                            affected_count=len(stray),
                            fixable=True,
                            repair=RepairKind.DELETE_STRAY,
                            record_ids=tuple(stray),
                            league_id=league_id,
                            season_id=season_id,
                            details={"scheme": scheme.value},
                        )
                    )

                missing = sorted(set(expected) - stored_ids)
                if missing:
                    found.append(
                        Inconsistency(
                            type="missing_standings",
                            severity=Severity.WARNING,
                            entity="standings",
                            description=f"{len(missing)} {scheme.value} participants have no standings row",
                            affected_count=len(missing),
                            fixable=True,
                            repair=RepairKind.RECALCULATE,
                            league_id=league_id,
                            season_id=season_id,
                            details={"scheme": scheme.value, "participant_ids": missing},
                        )
                    )
        return found

    def check_duplicates(self, data: Dataset, computed: ComputedTables) -> List[Inconsistency]:
        found = []
        for (league_id, season_id), rows in sorted(_by_season(data.standings).items()):
            groups = defaultdict(list)
            for row in rows:
                scheme, participant_id = standing_participant(row)
                if participant_id is not None:
                    groups[(scheme.value, participant_id)].append(row.id)

            duplicated = {key: sorted(ids) for key, ids in groups.items() if len(ids) > 1}
            if duplicated:
                extras = sorted(i for ids in duplicated.values() for i in ids[1:])
                found.append(
                    Inconsistency(
                        type="duplicate_standings",
                        severity=Severity.ERROR,
                        entity="standings",
                        description=(
                            f"{len(duplicated)} participants have more than one standings row "
                            f"({len(extras)} extra rows)"
                        ),
                        affected_count=len(extras),
                        fixable=True,
                        repair=RepairKind.DELETE_DUPLICATES,
                        record_ids=tuple(extras),
                        league_id=league_id,
                        season_id=season_id,
                        details={"keys": [[scheme, pid] for scheme, pid in sorted(duplicated)]},
                    )
                )
        return found

    def check_rank_sequence(self, data: Dataset, computed: ComputedTables) -> List[Inconsistency]:
        found = []
        for (league_id, season_id), rows in sorted(_by_season(data.standings).items()):
            by_scheme = defaultdict(list)
            for row in rows:
                by_scheme[standing_participant(row)[0]].append(row)

            for scheme, scheme_rows in sorted(by_scheme.items(), key=lambda kv: kv[0].value):
                ranks = sorted(row.rank for row in scheme_rows)
                ids = tuple(sorted(row.id for row in scheme_rows))
                expected = list(range(1, len(ranks) + 1))
                if ranks == expected:
                    continue

                if _season_start_tie(scheme_rows):
                    found.append(
                        Inconsistency(
                            type="season_start_tie",
                            severity=Severity.WARNING,
                            entity="standings",
                            description=f"{len(ranks)} {scheme.value} standings share rank 1 before any match",
                            affected_count=len(ranks),
                            fixable=True,
                            repair=RepairKind.RECALCULATE,
                            record_ids=ids,
                            league_id=league_id,
                            season_id=season_id,
                            details={"scheme": scheme.value},
                        )
                    )
                elif len(set(ranks)) != len(ranks):
                    found.append(
                        Inconsistency(
                            type="rank_duplicates",
                            severity=Severity.ERROR,
                            entity="standings",
                            description=f"{scheme.value} standings reuse ranks: {ranks}",
                            affected_count=len(ranks) - len(set(ranks)),
                            fixable=True,
                            repair=RepairKind.RECALCULATE,
                            record_ids=ids,
                            league_id=league_id,
                            season_id=season_id,
                            details={"scheme": scheme.value, "ranks": ranks},
                        )
                    )
                else:
                    found.append(
                        Inconsistency(
                            type="rank_sequence",
                            severity=Severity.WARNING,
                            entity="standings",
                            description=f"{scheme.value} ranks are not contiguous from 1: {ranks}",
                            affected_count=len(ranks),
                            fixable=True,
                            repair=RepairKind.RECALCULATE,
                            record_ids=ids,
                            league_id=league_id,
                            season_id=season_id,
                            details={"scheme": scheme.value, "ranks": ranks},
                        )
                    )
        return found

    # ------------------------------------------------------------------
    # Reference and match checks
    # ------------------------------------------------------------------

    def check_orphans(self, data: Dataset, computed: ComputedTables) -> List[Inconsistency]:
        league_ids = {league.id for league in data.leagues}
        season_ids = {season.id for season in data.seasons}
        team_ids = {team.id for team in data.teams}
        club_ids = {club.id for club in data.clubs}

        def dangling(value, known) -> bool:
            return value is not None and value not in known

        orphan_standings = []
        for row in data.standings:
            if (
                row.league_id not in league_ids
                or row.season_id not in season_ids
                or dangling(row.team_id, team_ids)
                or dangling(row.club_id, club_ids)
                or standing_scheme(row) == SCHEME_UNRESOLVED
            ):
                orphan_standings.append(row.id)

        orphan_matches = []
        for match in data.matches:
            if (
                match.league_id not in league_ids
                or match.season_id not in season_ids
                or dangling(match.home_team_id, team_ids)
                or dangling(match.away_team_id, team_ids)
                or dangling(match.home_club_id, club_ids)
                or dangling(match.away_club_id, club_ids)
            ):
                orphan_matches.append(match.id)

        found = []
        for entity, ids in (("standings", orphan_standings), ("matches", orphan_matches)):
            if ids:
                found.append(
                    Inconsistency(
                        type=f"orphan_{entity}",
                        severity=Severity.ERROR,
                        entity=entity,
                        description=f"{len(ids)} {entity} reference a missing participant, league or season",
                        affected_count=len(ids),
                        fixable=True,
                        category="ReferentialError",
                        repair=RepairKind.DELETE_ORPHANS,
                        record_ids=tuple(sorted(ids)),
                    )
                )
        return found

    def check_self_play(self, data: Dataset, computed: ComputedTables) -> List[Inconsistency]:
        ids = sorted(
            m.id for m in data.matches
            if m.status != MatchStatus.CANCELLED
            and (
                (m.home_team_id is not None and m.home_team_id == m.away_team_id)
                or (m.home_club_id is not None and m.home_club_id == m.away_club_id)
            )
        )
        if not ids:
            return []
        return [
            Inconsistency(
                type="self_play",
                severity=Severity.ERROR,
                entity="matches",
                description=f"{len(ids)} matches have the same participant on both sides",
                affected_count=len(ids),
                fixable=True,
                category="InputError",
                repair=RepairKind.CANCEL_SELF_PLAY,
                record_ids=tuple(ids),
            )
        ]

    def check_invalid_scores(self, data: Dataset, computed: ComputedTables) -> List[Inconsistency]:
        ids = sorted(
            m.id for m in data.matches
            if m.status == MatchStatus.FINISHED and not has_valid_score(m)
        )
        if not ids:
            return []
        return [
            Inconsistency(
                type="invalid_score",
                severity=Severity.ERROR,
                entity="matches",
                description=f"{len(ids)} finished matches have a missing or negative score",
                affected_count=len(ids),
                fixable=True,
                category="InputError",
                repair=RepairKind.RESET_INVALID_SCORE,
                record_ids=tuple(ids),
            )
        ]

    def check_participant_schemes(self, data: Dataset, computed: ComputedTables) -> List[Inconsistency]:
        """Rows carrying both reference schemes, or no complete one. Informational."""
        found = []
        mixed_matches = sorted(m.id for m in data.matches if match_scheme(m) == SCHEME_MIXED)
        unresolved_matches = sorted(m.id for m in data.matches if match_scheme(m) == SCHEME_UNRESOLVED)
        mixed_standings = sorted(s.id for s in data.standings if standing_scheme(s) == SCHEME_MIXED)

        for kind, entity, ids in (
            ("mixed_scheme", "matches", mixed_matches),
            ("mixed_scheme", "standings", mixed_standings),
            ("unresolved_participants", "matches", unresolved_matches),
        ):
            if ids:
                found.append(
                    Inconsistency(
                        type=kind,
                        severity=Severity.WARNING,
                        entity=entity,
                        description=(
                            f"{len(ids)} {entity} carry both team and club references"
                            if kind == "mixed_scheme"
                            else f"{len(ids)} {entity} have no complete team or club pairing"
                        ),
                        affected_count=len(ids),
                        fixable=False,
                        category="ReferentialError",
                        record_ids=tuple(ids),
                    )
                )
        return found
