"""
Constants used across the standings engine.
"""

# Points per result
POINTS_WIN = 3
POINTS_DRAW = 1
POINTS_LOSS = 0

# Standing counters that must never go negative (goal_diff may)
STANDING_COUNTERS = ("played", "wins", "draws", "losses", "goals_for", "goals_against", "points")

# Fields compared when checking stored standings against a fresh calculation
STANDING_TABLE_FIELDS = STANDING_COUNTERS + ("goal_diff", "rank")

CALCULATION_SOURCE = "standings_calculator"

# Migration
MIGRATION_TEAM_TO_CLUB = "team_to_club"
MIGRATION_ROLLBACK = "rollback"
MIGRATION_LOCK_NAME = "relation_migration"

# Collections captured before a relation migration, in restore (parent-first) order
MIGRATION_SCOPE = ("leagues", "seasons", "clubs", "club_leagues", "teams", "matches", "standings")

SNAPSHOT_FORMAT_VERSION = "1.0"
