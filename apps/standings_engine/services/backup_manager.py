"""
Snapshot backups of content-store collections.

A snapshot is an artifact pair in the backup directory:
    <id>.json.gz    gzip-compressed JSON payload
    <id>.meta.json  BackupMetadata sidecar with the SHA-256 of the .json.gz bytes

Both files are written to temp names and renamed into place, so a failed
snapshot leaves nothing behind. Snapshots are never modified after creation.
"""

import asyncio
import gzip
import hashlib
import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional
from standings_engine.database.repository import (
    COLLECTIONS,
    ContentStore,
    chunks,
    get_model,
    record_to_dict,
    values_from_dict,
)
from standings_engine.models.schemas import BackupMetadata
from standings_engine.services.migration_lock import MigrationLockService
from standings_engine.services.settings_service import EngineSettings
from standings_engine.utils.constants import MIGRATION_SCOPE, SNAPSHOT_FORMAT_VERSION
from standings_engine.utils.datetime_utils import ensure_utc, snapshot_stamp, utcnow
from standings_engine.utils.exceptions import (
    CapacityError,
    ChecksumError,
    ConcurrencyError,
    SnapshotNotFoundError,
)

logger = logging.getLogger(__name__)

SNAPSHOT_TYPES = ("full", "incremental")
PAYLOAD_SUFFIX = ".json.gz"
METADATA_SUFFIX = ".meta.json"


@dataclass
class RetentionPolicy:
    retention_days: int = 30
    keep_minimum: int = 5


def _restore_order(collections: Iterable[str]) -> List[str]:
    """Parent collections first, following the registry order."""
    order = list(COLLECTIONS)
    return sorted(set(collections), key=order.index)


class BackupManager:
    def __init__(
        self,
        store: ContentStore,
        backup_dir,
        settings: Optional[EngineSettings] = None,
        lock: Optional[MigrationLockService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.backup_dir = Path(backup_dir)
        self.settings = settings or EngineSettings()
        self.lock = lock or MigrationLockService(store)
        self.clock = clock

    # ------------------------------------------------------------------
    # Paths and metadata
    # ------------------------------------------------------------------

    def _payload_path(self, snapshot_id: str) -> Path:
        return self.backup_dir / f"{snapshot_id}{PAYLOAD_SUFFIX}"

    def _metadata_path(self, snapshot_id: str) -> Path:
        return self.backup_dir / f"{snapshot_id}{METADATA_SUFFIX}"

    def _timeout(self, rows: int) -> float:
        return self.settings.snapshot_base_timeout_seconds + rows * self.settings.snapshot_timeout_per_row_ms / 1000.0

    def list_snapshots(self) -> List[BackupMetadata]:
        """All readable snapshots, newest first."""
        if not self.backup_dir.exists():
            return []
        snapshots = []
        for path in self.backup_dir.glob(f"*{METADATA_SUFFIX}"):
            try:
                snapshots.append(BackupMetadata.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable snapshot metadata {path.name}: {e}")
        return sorted(snapshots, key=lambda m: ensure_utc(datetime.fromisoformat(m.timestamp)), reverse=True)

    def get_metadata(self, snapshot_id: str) -> BackupMetadata:
        path = self._metadata_path(snapshot_id)
        if not path.exists() or not self._payload_path(snapshot_id).exists():
            raise SnapshotNotFoundError(f"Snapshot {snapshot_id} not found in {self.backup_dir}")
        return BackupMetadata.model_validate_json(path.read_text(encoding="utf-8"))

    def verify(self, snapshot_id: str) -> BackupMetadata:
        """
        Recompute the payload checksum and compare it with the metadata.

        Raises:
            SnapshotNotFoundError: If either artifact is missing
            ChecksumError: If the payload bytes changed since creation
        """
        metadata = self.get_metadata(snapshot_id)
        digest = hashlib.sha256(self._payload_path(snapshot_id).read_bytes()).hexdigest()
        if digest != metadata.checksum:
            raise ChecksumError(
                f"Snapshot {snapshot_id} checksum mismatch (expected {metadata.checksum[:12]}..., got {digest[:12]}...)"
            )
        return metadata

    def _read_payload(self, snapshot_id: str) -> Dict[str, Any]:
        return json.loads(gzip.decompress(self._payload_path(snapshot_id).read_bytes()).decode("utf-8"))

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_snapshot(
        self,
        scope: Iterable[str] = MIGRATION_SCOPE,
        snapshot_type: str = "full",
    ) -> str:
        """
        Snapshot the named collections.

        An incremental snapshot holds only records updated since the newest
        snapshot covering the same collections; without one it falls back to full.

        Returns:
            The new snapshot id

        Raises:
            CapacityError: If export exceeds its size-proportional timeout
        """
        scope = _restore_order(scope)
        for collection in scope:
            get_model(collection)
        if snapshot_type not in SNAPSHOT_TYPES:
            raise ValueError(f"Unknown snapshot type: {snapshot_type}")

        since = None
        if snapshot_type == "incremental":
            base = next((m for m in self.list_snapshots() if set(scope) <= set(m.tables)), None)
            if base is None:
                logger.warning("No previous snapshot covers this scope, creating full snapshot instead")
                snapshot_type = "full"
            else:
                since = ensure_utc(datetime.fromisoformat(base.timestamp))

        estimated_rows = 0
        for collection in scope:
            estimated_rows += await self.store.count(collection)
        timeout = self._timeout(estimated_rows)

        created_at = self.clock()
        snapshot_id = f"snapshot-{snapshot_type}-{snapshot_stamp(created_at)}-{uuid.uuid4().hex[:6]}"
        logger.info(f"Creating {snapshot_type} snapshot {snapshot_id} of {', '.join(scope)} (~{estimated_rows} rows)")

        try:
            tables = await asyncio.wait_for(self._export_tables(scope, since), timeout)
        except asyncio.TimeoutError:
            raise CapacityError(
                f"Snapshot {snapshot_id} exceeded {timeout:.1f}s for ~{estimated_rows} rows"
            ) from None

        record_counts = {name: len(rows) for name, rows in tables.items()}
        payload = {
            "snapshotId": snapshot_id,
            "timestamp": created_at.isoformat(),
            "tables": {name: {"recordCount": len(rows), "data": rows} for name, rows in tables.items()},
        }
        data = gzip.compress(json.dumps(payload, sort_keys=True).encode("utf-8"), mtime=0)
        metadata = BackupMetadata(
            version=SNAPSHOT_FORMAT_VERSION,
            snapshot_id=snapshot_id,
            timestamp=created_at.isoformat(),
            backup_type=snapshot_type,
            tables=scope,
            checksum=hashlib.sha256(data).hexdigest(),
            record_counts=record_counts,
            since=since.isoformat() if since else None,
        )
        self._write_artifacts(snapshot_id, data, metadata)
        logger.info(f"Snapshot {snapshot_id} written ({sum(record_counts.values())} records, {len(data)} bytes)")
        return snapshot_id

    async def _export_tables(self, scope: List[str], since: Optional[datetime]) -> Dict[str, list]:
        filters = {"updated_at__gte": since} if since is not None else {}
        tables = {}
        async with self.store.transaction() as tx:
            for collection in scope:
                rows = await tx.find(collection, **filters)
                tables[collection] = [record_to_dict(row) for row in rows]
        return tables

    def _write_artifacts(self, snapshot_id: str, data: bytes, metadata: BackupMetadata) -> None:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        payload_path = self._payload_path(snapshot_id)
        metadata_path = self._metadata_path(snapshot_id)
        tmp_payload = payload_path.with_name(payload_path.name + ".tmp")
        tmp_metadata = metadata_path.with_name(metadata_path.name + ".tmp")
        try:
            tmp_payload.write_bytes(data)
            tmp_metadata.write_text(metadata.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
            os.replace(tmp_payload, payload_path)
            # Metadata last: a snapshot is only listed once its payload is in place
            os.replace(tmp_metadata, metadata_path)
        except Exception:
            for path in (tmp_payload, tmp_metadata, payload_path, metadata_path):
                path.unlink(missing_ok=True)
            logger.error(f"Failed to write snapshot {snapshot_id}; partial files removed", exc_info=True)
            raise

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(self, snapshot_id: str, target_scope: Optional[Iterable[str]] = None) -> Dict[str, Dict[str, int]]:
        """
        Write a snapshot's records back, matched by document_id, in one transaction.

        The checksum is verified before anything is written. Records already equal
        to the snapshot are left alone, so restoring twice changes nothing the
        second time. Collections outside target_scope are not touched.

        Returns:
            Per-collection counts of created, updated and unchanged records

        Raises:
            ChecksumError: Payload corrupted (no writes happened)
            CapacityError: Restore exceeded its size-proportional timeout
        """
        metadata = self.verify(snapshot_id)
        payload = self._read_payload(snapshot_id)

        scope = list(metadata.tables)
        if target_scope is not None:
            requested = set(target_scope)
            ignored = requested - set(scope)
            if ignored:
                logger.warning(f"Snapshot {snapshot_id} has no data for {', '.join(sorted(ignored))}")
            scope = [c for c in scope if c in requested]
        scope = _restore_order(scope)

        rows = sum(len(payload["tables"][c]["data"]) for c in scope)
        timeout = self._timeout(rows)
        logger.info(f"Restoring snapshot {snapshot_id} ({rows} records in {', '.join(scope)})")
        try:
            summary = await asyncio.wait_for(self._restore_tables(payload, scope), timeout)
        except asyncio.TimeoutError:
            raise CapacityError(f"Restore of {snapshot_id} exceeded {timeout:.1f}s for {rows} rows") from None

        logger.info(f"Restore of {snapshot_id} complete: {summary}")
        return summary

    async def _restore_tables(self, payload: Dict[str, Any], scope: List[str]) -> Dict[str, Dict[str, int]]:
        summary = {}
        async with self.store.transaction() as tx:
            for collection in scope:
                counts = {"created": 0, "updated": 0, "unchanged": 0}
                records = payload["tables"][collection]["data"]
                for chunk in chunks(records, 500):
                    existing = {
                        row.document_id: row
                        for row in await tx.find(
                            collection, document_id__in=[r["document_id"] for r in chunk]
                        )
                    }
                    for data in chunk:
                        current = existing.get(data["document_id"])
                        if current is None:
                            await tx.insert_row(collection, values_from_dict(collection, data))
                            counts["created"] += 1
                        elif record_to_dict(current) == data:
                            counts["unchanged"] += 1
                        else:
                            values = values_from_dict(collection, data)
                            values.pop("id", None)
                            await tx.update_row(collection, current.id, values)
                            counts["updated"] += 1
                if counts["created"]:
                    await tx.resync_identity(collection)
                summary[collection] = counts
        return summary

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def delete_snapshot(self, snapshot_id: str) -> None:
        self._payload_path(snapshot_id).unlink(missing_ok=True)
        self._metadata_path(snapshot_id).unlink(missing_ok=True)

    async def retention(self, policy: Optional[RetentionPolicy] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Delete snapshots older than the retention window, always keeping the
        newest keep_minimum.

        Raises:
            ConcurrencyError: While a migration holds the lock
        """
        if await self.lock.is_held():
            raise ConcurrencyError("Snapshot retention refused while the migration lock is held")

        if policy is None:
            policy = RetentionPolicy(self.settings.backup_retention_days, self.settings.backup_keep_minimum)
        cutoff = ensure_utc(now or self.clock()) - timedelta(days=policy.retention_days)

        snapshots = self.list_snapshots()
        deleted = []
        for metadata in snapshots[policy.keep_minimum:]:
            if ensure_utc(datetime.fromisoformat(metadata.timestamp)) < cutoff:
                self.delete_snapshot(metadata.snapshot_id)
                deleted.append(metadata.snapshot_id)
                logger.info(f"Deleted expired snapshot {metadata.snapshot_id}")

        return {"deleted": deleted, "kept": len(snapshots) - len(deleted), "cutoff": cutoff.isoformat()}
