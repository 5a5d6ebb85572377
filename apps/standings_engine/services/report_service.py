"""
Report service: turns a ValidationReport into the persisted JSON report document.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from standings_engine.models.schemas import ReportCheck, ReportDocument, ReportSection, ReportSummary
from standings_engine.services.consistency_validator import CheckResult, ValidationReport
from standings_engine.utils.datetime_utils import snapshot_stamp

logger = logging.getLogger(__name__)

# Section name -> validator checks shown in it
SECTIONS = (
    ("Standings integrity", ("negative_values", "arithmetic", "drift", "duplicates", "rank_sequence")),
    ("Referential integrity", ("orphans", "participant_schemes")),
    ("Match data", ("self_play", "invalid_scores")),
)


def _check_message(check: CheckResult) -> str:
    if not check.inconsistencies:
        return "No issues found"
    return "; ".join(i.description for i in check.inconsistencies)


def _report_check(check: CheckResult, detailed: bool) -> ReportCheck:
    return ReportCheck(
        name=check.name,
        status=check.status,
        message=_check_message(check),
        count=sum(i.affected_count for i in check.inconsistencies),
        details=[i.to_dict() for i in check.inconsistencies] if detailed else None,
    )


def build_report(
    validation: ValidationReport,
    detailed: bool = False,
    migration_status: Optional[Dict[str, Any]] = None,
) -> ReportDocument:
    """
    Build the report document.

    Args:
        validation: Validator output
        detailed: Include every inconsistency (with record ids) per check
        migration_status: Optional MigrationEngine.status() output, added as its own section
    """
    checks = {check.name: check for check in validation.checks}
    sections: List[ReportSection] = []
    placed = set()
    for name, check_names in SECTIONS:
        section_checks = [_report_check(checks[c], detailed) for c in check_names if c in checks]
        placed.update(check_names)
        if section_checks:
            sections.append(ReportSection(name=name, checks=section_checks))

    # load failures and anything not assigned to a section
    other = [_report_check(c, detailed) for c in validation.checks if c.name not in placed]
    if other:
        sections.append(ReportSection(name="Other", checks=other))

    if migration_status is not None:
        lock = migration_status.get("lock")
        sections.append(
            ReportSection(
                name="Migration",
                checks=[
                    ReportCheck(
                        name="migration_lock",
                        status="warning" if lock else "passed",
                        message=f"Held by {lock['holder']}" if lock else "Not held",
                        count=1 if lock else 0,
                    ),
                    ReportCheck(
                        name="migration_progress",
                        status="passed",
                        message=f"{migration_status['progress_percent']}% of rows use club references",
                        count=sum(migration_status.get("matches", {}).values()),
                        details=migration_status.get("recent") if detailed else None,
                    ),
                ],
            )
        )

    all_checks = [check for section in sections for check in section.checks]
    summary = ReportSummary(
        total_checks=len(all_checks),
        passed=sum(1 for c in all_checks if c.status == "passed"),
        warnings=sum(1 for c in all_checks if c.status == "warning"),
        errors=sum(1 for c in all_checks if c.status == "error"),
    )
    return ReportDocument(timestamp=validation.generated_at.isoformat(), summary=summary, sections=sections)


def save_report(document: ReportDocument, report_dir, name: Optional[str] = None) -> Path:
    """Write the document as JSON (camelCase keys) and return its path."""
    directory = Path(report_dir)
    directory.mkdir(parents=True, exist_ok=True)
    if name is None:
        stamp = snapshot_stamp(datetime.fromisoformat(document.timestamp))
        name = f"consistency-report-{stamp}.json"
    path = directory / name
    path.write_text(document.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    logger.info(f"Report written to {path}")
    return path
