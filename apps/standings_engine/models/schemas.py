"""
Pydantic models for persisted documents: reports, snapshot metadata and alerts.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict


class ReportCheck(BaseModel):
    """One check line in a report section."""

    name: str
    status: str  # 'passed', 'warning' or 'error'
    message: str
    count: int = 0
    details: Optional[List[Dict[str, Any]]] = None


class ReportSection(BaseModel):
    """Group of related checks."""

    name: str
    checks: List[ReportCheck] = []


class ReportSummary(BaseModel):
    """Totals over all checks."""

    model_config = ConfigDict(populate_by_name=True)
    total_checks: int = Field(alias="totalChecks")
    passed: int
    warnings: int
    errors: int


class ReportDocument(BaseModel):
    """Validation report persisted as JSON."""

    timestamp: str
    summary: ReportSummary
    sections: List[ReportSection] = []


class BackupMetadata(BaseModel):
    """Sidecar metadata written next to every snapshot payload."""

    model_config = ConfigDict(populate_by_name=True)
    version: str
    snapshot_id: str = Field(alias="snapshotId")
    timestamp: str
    backup_type: str = Field(alias="backupType")  # 'full' or 'incremental'
    tables: List[str]
    checksum: str
    record_counts: Dict[str, int] = Field(default_factory=dict, alias="recordCounts")
    since: Optional[str] = None  # incremental base timestamp


class AlertEvent(BaseModel):
    """Alert handed to the notification channel."""

    severity: str  # 'info', 'warning', 'error', 'critical'
    title: str
    message: str
    details: Dict[str, Any] = {}
