"""
Durable single migration lock.

The lock is a row in migration_locks keyed by name; inserting it is the
acquire, so the database primary key decides races between processes.
"""

import logging
import uuid
from typing import Optional
from sqlalchemy import exc as sa_exc
from standings_engine.database.models import MigrationLock
from standings_engine.database.repository import ContentStore
from standings_engine.utils.constants import MIGRATION_LOCK_NAME
from standings_engine.utils.datetime_utils import utcnow
from standings_engine.utils.exceptions import ConcurrencyError

logger = logging.getLogger(__name__)


class MigrationLockService:
    def __init__(self, store: ContentStore, holder: Optional[str] = None, name: str = MIGRATION_LOCK_NAME):
        self.store = store
        self.name = name
        self.holder = holder or f"engine-{uuid.uuid4().hex[:12]}"

    async def current(self) -> Optional[MigrationLock]:
        return await self.store.get("migration_locks", self.name)

    async def is_held(self) -> bool:
        return await self.current() is not None

    async def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            ConcurrencyError: If any holder (including this one) already has it
        """
        try:
            await self.store.create(
                "migration_locks", name=self.name, holder=self.holder, acquired_at=utcnow()
            )
        except sa_exc.IntegrityError:
            existing = await self.current()
            owner = existing.holder if existing else "unknown"
            raise ConcurrencyError(f"Migration lock '{self.name}' is held by {owner}") from None
        logger.info(f"Migration lock '{self.name}' acquired by {self.holder}")

    async def attach(self, migration_id: int) -> None:
        """Record which migration run the held lock belongs to."""
        async with self.store.transaction() as tx:
            lock = await tx.get("migration_locks", self.name)
            if lock is not None and lock.holder == self.holder:
                await tx.update(lock, migration_id=migration_id)

    async def release(self) -> bool:
        """Release the lock if this holder owns it."""
        async with self.store.transaction() as tx:
            lock = await tx.get("migration_locks", self.name)
            if lock is None or lock.holder != self.holder:
                return False
            await tx.delete(lock)
        logger.info(f"Migration lock '{self.name}' released by {self.holder}")
        return True

    async def force_release(self) -> bool:
        """Drop the lock regardless of holder (operator recovery after a crash)."""
        deleted = await self.store.delete("migration_locks", self.name)
        if deleted:
            logger.warning(f"Migration lock '{self.name}' force-released")
        return deleted
