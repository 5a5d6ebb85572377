"""
Standings calculation.
Aggregates finished matches of one league season into a ranked table.
Pure: no I/O, no clock, same input always gives the same output.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
from standings_engine.database.models import MatchStatus, ParticipantScheme
from standings_engine.models.inconsistency import Inconsistency, RepairKind, Severity
from standings_engine.services.participants import Participant, match_participants
from standings_engine.utils.constants import POINTS_DRAW, POINTS_LOSS, POINTS_WIN


# ============================================================================
# Helper Functions
# ============================================================================

def has_valid_score(match) -> bool:
    """Both scores present and non-negative."""
    return (
        match.score_home is not None
        and match.score_away is not None
        and match.score_home >= 0
        and match.score_away >= 0
    )


# ============================================================================
# ParticipantStats Class
# ============================================================================

class ParticipantStats:
    """Running table counters for a single participant."""

    def __init__(self, participant: Participant):
        self.participant = participant
        self.wins = 0
        self.draws = 0
        self.losses = 0
        self.goals_for = 0
        self.goals_against = 0

    @property
    def played(self) -> int:
        return self.wins + self.draws + self.losses

    @property
    def goal_diff(self) -> int:
        return self.goals_for - self.goals_against

    @property
    def points(self) -> int:
        """Calculate points: +3 for each win, +1 for each draw."""
        return self.wins * POINTS_WIN + self.draws * POINTS_DRAW + self.losses * POINTS_LOSS

    def record(self, scored: int, conceded: int) -> None:
        self.goals_for += scored
        self.goals_against += conceded
        if scored > conceded:
            self.wins += 1
        elif scored < conceded:
            self.losses += 1
        else:
            self.draws += 1

    def sort_key(self):
        """Points desc, goal difference desc, goals for desc, then name and id asc."""
        return (
            -self.points,
            -self.goal_diff,
            -self.goals_for,
            self.participant.name.casefold(),
            self.participant.id,
        )


@dataclass
class ComputedStanding:
    participant_id: int
    participant_name: str
    league_id: int
    season_id: int
    scheme: ParticipantScheme
    played: int
    wins: int
    draws: int
    losses: int
    goals_for: int
    goals_against: int
    goal_diff: int
    points: int
    rank: int

    def table_values(self) -> Dict[str, int]:
        """The stored table columns of this row."""
        return {
            "played": self.played,
            "wins": self.wins,
            "draws": self.draws,
            "losses": self.losses,
            "goals_for": self.goals_for,
            "goals_against": self.goals_against,
            "goal_diff": self.goal_diff,
            "points": self.points,
            "rank": self.rank,
        }


@dataclass
class CalculationResult:
    standings: List[ComputedStanding] = field(default_factory=list)
    issues: List[Inconsistency] = field(default_factory=list)

    def by_participant(self) -> Dict[int, ComputedStanding]:
        return {row.participant_id: row for row in self.standings}


# ============================================================================
# StandingsTracker Class
# ============================================================================

class StandingsTracker:
    """Tracks table counters for every participant of one league season."""

    def __init__(self, participants: Iterable[Participant], scheme: ParticipantScheme):
        self.scheme = scheme
        self.stats: Dict[int, ParticipantStats] = {
            p.id: ParticipantStats(p) for p in participants
        }

    def get(self, participant_id: int) -> Optional[ParticipantStats]:
        return self.stats.get(participant_id)

    def process_match(self, match) -> Optional[str]:
        """
        Apply one finished match.

        Returns:
            None when applied, otherwise the reason it was excluded
        """
        if not has_valid_score(match):
            return "invalid_score"
        pair = match_participants(match, self.scheme)
        if pair is None:
            return "unknown_participant"
        home, away = self.get(pair[0]), self.get(pair[1])
        if home is None or away is None:
            return "unknown_participant"

        home.record(match.score_home, match.score_away)
        away.record(match.score_away, match.score_home)
        return None

    def ranked(self) -> List[ParticipantStats]:
        return sorted(self.stats.values(), key=lambda s: s.sort_key())


def calculate_standings(
    matches: Iterable,
    participants: Iterable[Participant],
    league_id: int,
    season_id: int,
    scheme: ParticipantScheme = ParticipantScheme.CLUB,
) -> CalculationResult:
    """
    Compute the table for one league season.

    Only finished matches of the league season count. A finished match with a
    missing or negative score, or with a participant outside the list, is left
    out and reported instead of being guessed at.

    Args:
        matches: Match records (any league/season; filtered here)
        participants: Everyone who gets a row, including zero-match participants
        league_id: League to calculate
        season_id: Season to calculate
        scheme: Which participant references to read from matches

    Returns:
        CalculationResult with rows ranked 1..N and the excluded-match issues
    """
    tracker = StandingsTracker(participants, scheme)
    excluded: Dict[str, List[int]] = {"invalid_score": [], "unknown_participant": []}

    finished = [
        m for m in matches
        if m.league_id == league_id
        and m.season_id == season_id
        and m.status == MatchStatus.FINISHED
    ]
    for match in sorted(finished, key=lambda m: m.id):
        reason = tracker.process_match(match)
        if reason is not None:
            excluded[reason].append(match.id)

    result = CalculationResult()
    for idx, stats in enumerate(tracker.ranked()):
        result.standings.append(
            ComputedStanding(
                participant_id=stats.participant.id,
                participant_name=stats.participant.name,
                league_id=league_id,
                season_id=season_id,
                scheme=scheme,
                played=stats.played,
                wins=stats.wins,
                draws=stats.draws,
                losses=stats.losses,
                goals_for=stats.goals_for,
                goals_against=stats.goals_against,
                goal_diff=stats.goal_diff,
                points=stats.points,
                rank=idx + 1,
            )
        )

    if excluded["invalid_score"]:
        result.issues.append(
            Inconsistency(
                type="invalid_score",
                severity=Severity.ERROR,
                entity="matches",
                description=f"{len(excluded['invalid_score'])} finished matches without a valid score were excluded",
                affected_count=len(excluded["invalid_score"]),
                fixable=True,
                category="InputError",
                repair=RepairKind.RESET_INVALID_SCORE,
                record_ids=tuple(excluded["invalid_score"]),
                league_id=league_id,
                season_id=season_id,
            )
        )
    if excluded["unknown_participant"]:
        result.issues.append(
            Inconsistency(
                type="unknown_participant",
                severity=Severity.ERROR,
                entity="matches",
                description=(
                    f"{len(excluded['unknown_participant'])} finished matches reference participants "
                    f"outside the {scheme.value} table and were excluded"
                ),
                affected_count=len(excluded["unknown_participant"]),
                fixable=False,
                category="InputError",
                record_ids=tuple(excluded["unknown_participant"]),
                league_id=league_id,
                season_id=season_id,
            )
        )
    return result
