"""
Audit log: append-only trail of state transitions and record mutations.

Entries are written inside the caller's transaction, so an audit row exists
exactly when the change it describes was committed.
"""

import logging
from typing import Any, Dict, List, Optional
from standings_engine.database.repository import ContentStore, StoreTransaction, record_to_dict
from standings_engine.database.models import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLog:
    def __init__(self, store: ContentStore, source: str):
        self.store = store
        self.source = source

    async def record(
        self,
        tx: StoreTransaction,
        action: str,
        entity: str,
        entity_id: Optional[int] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        migration_id: Optional[int] = None,
    ) -> AuditLogEntry:
        return await tx.create(
            "audit_log",
            action=action,
            entity=entity,
            entity_id=entity_id,
            before=before,
            after=after,
            source=self.source,
            migration_id=migration_id,
        )

    async def record_change(
        self,
        tx: StoreTransaction,
        action: str,
        entity: str,
        record,
        changes: Optional[Dict[str, Any]],
        migration_id: Optional[int] = None,
    ) -> AuditLogEntry:
        """
        Apply changes to a record and log the before/after pair.

        changes=None deletes the record (after-image is None).
        """
        before = record_to_dict(record)
        if changes is None:
            await tx.delete(record)
            after = None
        else:
            await tx.update(record, **changes)
            after = record_to_dict(record)
        return await self.record(tx, action, entity, before.get("id"), before, after, migration_id)

    async def record_creation(
        self,
        tx: StoreTransaction,
        action: str,
        entity: str,
        values: Dict[str, Any],
        migration_id: Optional[int] = None,
    ):
        record = await tx.create(entity, **values)
        await self.record(tx, action, entity, record.id, None, record_to_dict(record), migration_id)
        return record

    async def transition(
        self,
        migration_id: Optional[int],
        old_state: str,
        new_state: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log a migration state transition in its own transaction."""
        async with self.store.transaction() as tx:
            await self.record(
                tx,
                "migration.state",
                "migration",
                migration_id,
                {"state": old_state},
                {"state": new_state, **(details or {})},
                migration_id,
            )
        logger.info(f"Migration {migration_id}: {old_state} -> {new_state}")

    async def entries(self, **filters) -> List[AuditLogEntry]:
        return await self.store.find("audit_log", **filters)
