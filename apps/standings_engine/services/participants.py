"""
Participant reference helpers for the team (legacy) and club schemes.
"""

from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple
from standings_engine.database.models import ParticipantScheme

SCHEME_MIXED = "mixed"
SCHEME_UNRESOLVED = "unresolved"


class Participant(NamedTuple):
    id: int
    name: str


def match_participants(match, scheme: ParticipantScheme) -> Optional[Tuple[int, int]]:
    """(home, away) ids under the scheme, or None if either side is missing."""
    if scheme == ParticipantScheme.CLUB:
        home, away = match.home_club_id, match.away_club_id
    else:
        home, away = match.home_team_id, match.away_team_id
    if home is None or away is None:
        return None
    return home, away


def match_scheme(match) -> str:
    """'team', 'club', 'mixed' (both complete) or 'unresolved' (neither)."""
    has_team = match_participants(match, ParticipantScheme.TEAM) is not None
    has_club = match_participants(match, ParticipantScheme.CLUB) is not None
    if has_team and has_club:
        return SCHEME_MIXED
    if has_club:
        return ParticipantScheme.CLUB.value
    if has_team:
        return ParticipantScheme.TEAM.value
    return SCHEME_UNRESOLVED


def standing_scheme(standing) -> str:
    if standing.team_id is not None and standing.club_id is not None:
        return SCHEME_MIXED
    if standing.club_id is not None:
        return ParticipantScheme.CLUB.value
    if standing.team_id is not None:
        return ParticipantScheme.TEAM.value
    return SCHEME_UNRESOLVED


def standing_participant(standing) -> Tuple[ParticipantScheme, Optional[int]]:
    """Scheme and participant id a standing row is keyed by (club wins when both are set)."""
    if standing.club_id is not None:
        return ParticipantScheme.CLUB, standing.club_id
    return ParticipantScheme.TEAM, standing.team_id


def detect_scheme(matches: Iterable, standings: Iterable = ()) -> ParticipantScheme:
    """
    Scheme a league season should be calculated under.

    Existing standings decide by majority; otherwise any match with complete
    club references makes it a club season.
    """
    counts = {ParticipantScheme.TEAM: 0, ParticipantScheme.CLUB: 0}
    for standing in standings:
        scheme, participant_id = standing_participant(standing)
        if participant_id is not None:
            counts[scheme] += 1
    if counts[ParticipantScheme.CLUB] or counts[ParticipantScheme.TEAM]:
        if counts[ParticipantScheme.CLUB] >= counts[ParticipantScheme.TEAM]:
            return ParticipantScheme.CLUB
        return ParticipantScheme.TEAM
    for match in matches:
        if match_participants(match, ParticipantScheme.CLUB) is not None:
            return ParticipantScheme.CLUB
    return ParticipantScheme.TEAM


def season_participants(
    scheme: ParticipantScheme,
    league_id: int,
    matches: Iterable,
    teams: Iterable,
    clubs: Iterable,
    club_leagues: Iterable,
) -> List[Participant]:
    """
    Everyone who belongs in a league season's table under a scheme.

    Registered members of the league plus anyone referenced by its matches,
    limited to participants that actually exist.
    """
    if scheme == ParticipantScheme.CLUB:
        known: Dict[int, str] = {club.id: club.name for club in clubs}
        member_ids = {link.club_id for link in club_leagues if link.league_id == league_id}
    else:
        known = {team.id: team.name for team in teams}
        member_ids = {team.id for team in teams if team.league_id == league_id}

    for match in matches:
        pair = match_participants(match, scheme)
        if pair is not None:
            member_ids.update(pair)

    return sorted(
        (Participant(pid, known[pid]) for pid in member_ids if pid in known),
        key=lambda p: p.id,
    )
