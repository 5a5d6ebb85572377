"""
Command line interface for the standings engine.

    standings-engine status
    standings-engine validate [--detailed] [--league-id N] [--season-id N]
    standings-engine migrate [--type team_to_club] [--dry-run] [--force]
    standings-engine rollback --backup-id ID [--force]
    standings-engine repair [--dry-run] [--force] [--backup]
    standings-engine report [--detailed] [--output DIR]
    standings-engine backup {create,list,verify,prune}
    standings-engine unlock --force

Exit code 0 on success, 1 on validation errors or failures. Confirmation
prompts live here only; --force skips them.
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from typing import List, Optional
from standings_engine.database.db import close_database
from standings_engine.database.repository import ContentStore
from standings_engine.services.backup_manager import BackupManager, RetentionPolicy
from standings_engine.services.consistency_validator import ConsistencyValidator, ValidationReport
from standings_engine.services.migration_engine import MigrationEngine
from standings_engine.services.migration_lock import MigrationLockService
from standings_engine.services.notification_service import NotificationChannel, alert_on_inconsistencies
from standings_engine.services.repair_engine import RepairEngine
from standings_engine.services.report_service import build_report, save_report
from standings_engine.services.settings_service import EngineSettings, load_settings
from standings_engine.utils.constants import MIGRATION_SCOPE, MIGRATION_TEAM_TO_CLUB
from standings_engine.utils.exceptions import EngineError

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: EngineSettings
    store: ContentStore
    lock: MigrationLockService
    backups: BackupManager
    validator: ConsistencyValidator
    repair: RepairEngine
    migration: MigrationEngine
    notifier: NotificationChannel


def build_services(
    settings: Optional[EngineSettings] = None,
    store: Optional[ContentStore] = None,
    notifier: Optional[NotificationChannel] = None,
) -> Services:
    settings = settings or load_settings()
    store = store or ContentStore()
    notifier = notifier or NotificationChannel()
    lock = MigrationLockService(store)
    backups = BackupManager(store, settings.backup_dir, settings=settings, lock=lock)
    validator = ConsistencyValidator()
    return Services(
        settings=settings,
        store=store,
        lock=lock,
        backups=backups,
        validator=validator,
        repair=RepairEngine(store, notifier=notifier, max_failures=settings.repair_max_failures),
        migration=MigrationEngine(
            store, backups, validator=validator, lock=lock, notifier=notifier, settings=settings
        ),
        notifier=notifier,
    )


def confirm(prompt: str, assume_yes: bool = False) -> bool:
    if assume_yes:
        return True
    answer = input(f"{prompt} [y/N]: ")
    return answer.strip().lower() in ("y", "yes")


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_validation(report: ValidationReport, detailed: bool) -> None:
    print("=" * 60)
    print("🔍 Consistency validation")
    print("=" * 60)
    icons = {"passed": "✓", "warning": "⚠️ ", "error": "❌"}
    for check in report.checks:
        print(f"{icons[check.status]} {check.name}")
        for inconsistency in check.inconsistencies:
            print(f"     - [{inconsistency.severity.value}] {inconsistency.description}")
            if detailed and inconsistency.record_ids:
                print(f"       records: {list(inconsistency.record_ids)}")
    print(f"\nErrors: {report.error_count}  Warnings: {report.warning_count}")


# ============================================================================
# Commands
# ============================================================================

async def cmd_status(services: Services, args) -> int:
    _print_json(await services.migration.status())
    return 0


async def cmd_validate(services: Services, args) -> int:
    report = await services.validator.run(services.store, args.league_id, args.season_id)
    _print_validation(report, args.detailed)
    await alert_on_inconsistencies(services.notifier, report)
    return 1 if report.has_errors else 0


async def cmd_migrate(services: Services, args) -> int:
    if not args.dry_run and not confirm(
        f"Migrate all team references to clubs ({args.type})? A snapshot is taken first.", args.force
    ):
        print("Aborted.")
        return 1
    result = await services.migration.migrate(args.type, dry_run=args.dry_run)
    _print_json(result.to_dict())
    if result.recommendation:
        print(f"\n⚠️  {result.recommendation}")
    return 0 if result.succeeded else 1


async def cmd_rollback(services: Services, args) -> int:
    if not confirm(f"Restore snapshot {args.backup_id} over current data?", args.force):
        print("Aborted.")
        return 1
    result = await services.migration.rollback(args.backup_id)
    _print_json(result.to_dict())
    return 0 if result.succeeded else 1


async def cmd_repair(services: Services, args) -> int:
    report = await services.validator.run(services.store)
    fixable = report.fixable()
    if not fixable:
        print("✓ Nothing to repair")
        return 1 if report.has_errors else 0

    print(f"Found {len(fixable)} fixable inconsistencies:")
    for inconsistency in fixable:
        print(f"  - {inconsistency.type}: {inconsistency.description}")

    force = args.force
    if not args.dry_run:
        if not confirm("Apply these repairs, including row deletions?", args.force):
            print("Aborted.")
            return 1
        force = True
        if args.backup or services.settings.repair_backup_first:
            snapshot_id = await services.backups.create_snapshot(MIGRATION_SCOPE, "full")
            print(f"💾 Snapshot {snapshot_id} created before repair")

    result = await services.repair.repair(fixable, dry_run=args.dry_run, force=force)
    _print_json(result.to_dict())
    if result.failed or result.halted:
        return 1
    if args.dry_run:
        return 0
    after = await services.validator.run(services.store)
    print(f"\nAfter repair: {after.error_count} errors, {after.warning_count} warnings")
    return 1 if after.has_errors else 0


async def cmd_report(services: Services, args) -> int:
    report = await services.validator.run(services.store)
    document = build_report(report, detailed=args.detailed, migration_status=await services.migration.status())
    path = save_report(document, args.output or services.settings.report_dir)
    summary = document.summary
    print(
        f"📄 Report written to {path}\n"
        f"   {summary.total_checks} checks: {summary.passed} passed, "
        f"{summary.warnings} warnings, {summary.errors} errors"
    )
    await alert_on_inconsistencies(services.notifier, report)
    return 1 if summary.errors else 0


async def cmd_backup(services: Services, args) -> int:
    backups = services.backups
    if args.action == "create":
        snapshot_id = await backups.create_snapshot(MIGRATION_SCOPE, args.type)
        print(f"💾 Snapshot created: {snapshot_id}")
    elif args.action == "list":
        _print_json([m.model_dump(by_alias=True) for m in backups.list_snapshots()])
    elif args.action == "verify":
        metadata = backups.verify(args.snapshot_id)
        print(f"✓ Snapshot {metadata.snapshot_id} checksum OK ({metadata.checksum})")
    elif args.action == "prune":
        policy = RetentionPolicy(
            retention_days=args.retention_days or services.settings.backup_retention_days,
            keep_minimum=args.keep_minimum if args.keep_minimum is not None else services.settings.backup_keep_minimum,
        )
        _print_json(await backups.retention(policy))
    return 0


async def cmd_unlock(services: Services, args) -> int:
    if not confirm("Force-release the migration lock? Only do this if no migration is running.", args.force):
        print("Aborted.")
        return 1
    released = await services.lock.force_release()
    print("✓ Lock released" if released else "Lock was not held")
    return 0


COMMANDS = {
    "status": cmd_status,
    "validate": cmd_validate,
    "migrate": cmd_migrate,
    "rollback": cmd_rollback,
    "repair": cmd_repair,
    "report": cmd_report,
    "backup": cmd_backup,
    "unlock": cmd_unlock,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="standings-engine", description="Standings calculation and relation migration engine"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show migration lock, recent runs and progress")

    validate = sub.add_parser("validate", help="Run all consistency checks")
    validate.add_argument("--detailed", action="store_true", help="List affected record ids")
    validate.add_argument("--league-id", type=int, default=None)
    validate.add_argument("--season-id", type=int, default=None)

    migrate = sub.add_parser("migrate", help="Migrate team references to clubs")
    migrate.add_argument("--type", default=MIGRATION_TEAM_TO_CLUB, choices=[MIGRATION_TEAM_TO_CLUB])
    migrate.add_argument("--dry-run", action="store_true", help="Count changes without writing")
    migrate.add_argument("--force", action="store_true", help="Skip confirmation")

    rollback = sub.add_parser("rollback", help="Restore the snapshot taken before a migration")
    rollback.add_argument("--backup-id", required=True)
    rollback.add_argument("--force", action="store_true", help="Skip confirmation")

    repair = sub.add_parser("repair", help="Fix every fixable inconsistency")
    repair.add_argument("--dry-run", action="store_true", help="Report what would change")
    repair.add_argument("--force", action="store_true", help="Skip confirmation (allows row deletions)")
    repair.add_argument("--backup", action="store_true", help="Snapshot before repairing")

    report = sub.add_parser("report", help="Write a JSON consistency report")
    report.add_argument("--detailed", action="store_true")
    report.add_argument("--output", default=None, help="Report directory")

    backup = sub.add_parser("backup", help="Manage snapshots")
    backup_sub = backup.add_subparsers(dest="action", required=True)
    create = backup_sub.add_parser("create")
    create.add_argument("--type", default="full", choices=["full", "incremental"])
    backup_sub.add_parser("list")
    verify = backup_sub.add_parser("verify")
    verify.add_argument("--snapshot-id", required=True)
    prune = backup_sub.add_parser("prune")
    prune.add_argument("--retention-days", type=int, default=None)
    prune.add_argument("--keep-minimum", type=int, default=None)

    unlock = sub.add_parser("unlock", help="Force-release a stale migration lock")
    unlock.add_argument("--force", action="store_true", help="Skip confirmation")

    return parser


async def run(args, services: Services) -> int:
    try:
        return await COMMANDS[args.command](services, args)
    except EngineError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"❌ {type(e).__name__}: {e}")
        return 1


async def _main(args, settings: EngineSettings) -> int:
    try:
        return await run(args, build_services(settings))
    finally:
        await close_database()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return asyncio.run(_main(args, settings))


if __name__ == "__main__":
    sys.exit(main())
