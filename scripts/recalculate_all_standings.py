#!/usr/bin/env python3
"""
Recalculate standings for every league season in the database.

This script:
1. Fetches all seasons from the database
2. Recalculates each league season's standings from its finished matches
3. Runs the consistency validator over the result
4. Provides progress feedback and summary statistics

Usage:
    python scripts/recalculate_all_standings.py [--league-id ID] [--scheme team|club]
"""

import argparse
import asyncio
import os
import sys

# Add apps to path (so standings_engine.* imports work)
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
apps_path = os.path.join(project_root, "apps")
sys.path.insert(0, apps_path)

from standings_engine.database.db import close_database
from standings_engine.database.models import ParticipantScheme
from standings_engine.database.repository import ContentStore
from standings_engine.services.consistency_validator import ConsistencyValidator
from standings_engine.services.standings_service import recalculate_standings


async def recalculate_all_standings(league_id=None, scheme=None):
    """Recalculate standings for all (or one league's) seasons."""
    store = ContentStore()

    print("=" * 60)
    print("📊 Fetching seasons...")
    print("=" * 60)

    filters = {"league_id": league_id} if league_id is not None else {}
    seasons = await store.find("seasons", **filters)
    if not seasons:
        print("❌ No seasons found in the database.")
        return 1
    print(f"✓ Found {len(seasons)} season(s)\n")

    successful = 0
    failed = []
    created = updated = 0
    for idx, season in enumerate(seasons, 1):
        print(f"[{idx}/{len(seasons)}] League {season.league_id}, season {season.name} (ID: {season.id})")
        try:
            result = await recalculate_standings(store, season.league_id, season.id, scheme)
        except Exception as e:
            print(f"   ❌ Error: {str(e)}")
            failed.append((season, str(e)))
            continue
        created += result["created"]
        updated += result["updated"]
        successful += 1
        print(f"   ✓ {result['created']} created, {result['updated']} updated")

    print()
    print("=" * 60)
    print("🔍 Validating...")
    print("=" * 60)
    report = await ConsistencyValidator().run(store, league_id)
    print(f"Errors: {report.error_count}  Warnings: {report.warning_count}")
    for inconsistency in report.errors:
        print(f"  - {inconsistency.type}: {inconsistency.description}")

    print()
    print("=" * 60)
    print("📊 Summary")
    print("=" * 60)
    print(f"Total seasons: {len(seasons)}")
    print(f"Standings rows: {created} created, {updated} updated")
    print(f"✅ Successful: {successful}")
    print(f"❌ Failed: {len(failed)}")
    if failed:
        print("\nFailed seasons:")
        for season, error in failed:
            print(f"  - {season.name} (ID: {season.id}): {error}")

    return 1 if failed or report.has_errors else 0


async def run(league_id=None, scheme=None):
    try:
        return await recalculate_all_standings(league_id, scheme)
    finally:
        await close_database()


def main():
    parser = argparse.ArgumentParser(description="Recalculate standings for every league season")
    parser.add_argument("--league-id", type=int, default=None, help="Only this league")
    parser.add_argument(
        "--scheme",
        choices=[s.value for s in ParticipantScheme],
        default=None,
        help="Participant references to calculate from (detected per season by default)",
    )
    args = parser.parse_args()
    scheme = ParticipantScheme(args.scheme) if args.scheme else None
    return asyncio.run(run(args.league_id, scheme))


if __name__ == "__main__":
    sys.exit(main())
