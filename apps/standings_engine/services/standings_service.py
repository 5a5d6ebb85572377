"""
Standings persistence: loads league data through the content store and
writes StandingsCalculator output back as Standing rows.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple
from standings_engine.database.models import ParticipantScheme, Standing
from standings_engine.database.repository import ContentStore, StoreTransaction
from standings_engine.services.participants import (
    detect_scheme,
    season_participants,
    standing_participant,
)
from standings_engine.services.standings_calculator import CalculationResult, calculate_standings
from standings_engine.utils.constants import CALCULATION_SOURCE
from standings_engine.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Dataset:
    """Everything validation and recalculation need, loaded in one pass."""

    leagues: list = field(default_factory=list)
    seasons: list = field(default_factory=list)
    clubs: list = field(default_factory=list)
    club_leagues: list = field(default_factory=list)
    teams: list = field(default_factory=list)
    matches: list = field(default_factory=list)
    standings: list = field(default_factory=list)

    def season_keys(self) -> List[Tuple[int, int]]:
        """Every (league_id, season_id) pair that has a season, match or standing."""
        keys: Set[Tuple[int, int]] = {(s.league_id, s.id) for s in self.seasons}
        keys.update((m.league_id, m.season_id) for m in self.matches)
        keys.update((s.league_id, s.season_id) for s in self.standings)
        return sorted(keys)

    def season_matches(self, league_id: int, season_id: int) -> list:
        return [m for m in self.matches if m.league_id == league_id and m.season_id == season_id]

    def season_standings(self, league_id: int, season_id: int) -> list:
        return [s for s in self.standings if s.league_id == league_id and s.season_id == season_id]


async def load_dataset(source, league_id: Optional[int] = None, season_id: Optional[int] = None) -> Dataset:
    """
    Load a dataset from a ContentStore or an open StoreTransaction.

    Reference collections are always loaded whole so dangling references can
    be told apart from filtered-out ones; matches and standings follow the
    optional league/season scope.
    """
    scope = {}
    if league_id is not None:
        scope["league_id"] = league_id
    if season_id is not None:
        scope["season_id"] = season_id

    return Dataset(
        leagues=await source.find("leagues"),
        seasons=await source.find("seasons"),
        clubs=await source.find("clubs"),
        club_leagues=await source.find("club_leagues"),
        teams=await source.find("teams"),
        matches=await source.find("matches", **scope),
        standings=await source.find("standings", **scope),
    )


def calculate_for_season(
    dataset: Dataset,
    league_id: int,
    season_id: int,
    scheme: Optional[ParticipantScheme] = None,
) -> CalculationResult:
    """Run the calculator for one league season of a loaded dataset."""
    matches = dataset.season_matches(league_id, season_id)
    if scheme is None:
        scheme = detect_scheme(matches, dataset.season_standings(league_id, season_id))
    participants = season_participants(
        scheme, league_id, matches, dataset.teams, dataset.clubs, dataset.club_leagues
    )
    return calculate_standings(matches, participants, league_id, season_id, scheme)


def plan_recalculation(
    dataset: Dataset,
    league_id: int,
    season_id: int,
    scheme: Optional[ParticipantScheme] = None,
) -> List[Tuple[Optional[Standing], Dict]]:
    """
    Changes needed to make stored standings match a fresh calculation.

    Returns:
        (existing_row, changed_values) pairs; existing_row is None for rows to
        create. Rows already matching the calculation are left out, so a second
        plan after applying the first is empty.
    """
    stored = dataset.season_standings(league_id, season_id)
    if scheme is None:
        scheme = detect_scheme(dataset.season_matches(league_id, season_id), stored)
    result = calculate_for_season(dataset, league_id, season_id, scheme)

    # Lowest id wins when duplicates exist
    existing: Dict[int, Standing] = {}
    for row in sorted(stored, key=lambda s: s.id):
        row_scheme, participant_id = standing_participant(row)
        if row_scheme == scheme and participant_id is not None:
            existing.setdefault(participant_id, row)

    plan = []
    for computed in result.standings:
        values = computed.table_values()
        current = existing.get(computed.participant_id)
        if current is None:
            ref_field = "club_id" if scheme == ParticipantScheme.CLUB else "team_id"
            values.update(
                league_id=league_id,
                season_id=season_id,
                auto_calculated=True,
                calculation_source=CALCULATION_SOURCE,
            )
            values[ref_field] = computed.participant_id
            plan.append((None, values))
            continue
        changed = {k: v for k, v in values.items() if getattr(current, k) != v}
        if not current.auto_calculated:
            changed["auto_calculated"] = True
        if changed:
            changed["calculation_source"] = CALCULATION_SOURCE
            plan.append((current, changed))
    return plan


async def apply_plan(tx: StoreTransaction, plan: List[Tuple[Optional[Standing], Dict]]) -> List[Standing]:
    """Write planned standing changes; returns the touched rows."""
    touched = []
    now = utcnow()
    for current, values in plan:
        if current is None:
            touched.append(await tx.create("standings", last_updated=now, **values))
        else:
            touched.append(await tx.update(current, last_updated=now, **values))
    return touched


async def recalculate_standings(
    store: ContentStore,
    league_id: int,
    season_id: int,
    scheme: Optional[ParticipantScheme] = None,
) -> Dict[str, int]:
    """
    Recalculate and persist one league season's standings atomically.

    Returns:
        Dict with 'created' and 'updated' row counts
    """
    async with store.transaction() as tx:
        dataset = await load_dataset(tx, league_id, season_id)
        plan = plan_recalculation(dataset, league_id, season_id, scheme)
        await apply_plan(tx, plan)

    created = sum(1 for current, _ in plan if current is None)
    summary = {"created": created, "updated": len(plan) - created}
    logger.info(
        f"Recalculated standings for league {league_id} season {season_id}: "
        f"{summary['created']} created, {summary['updated']} updated"
    )
    return summary
