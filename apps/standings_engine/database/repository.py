"""
Content store: the only way engine components read and write records.

Collections are addressed by name ("matches", "standings", ...). Every call
outside an explicit transaction() runs in its own short transaction.
"""

import enum
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional
from sqlalchemy import Date, DateTime, Enum as SAEnum, func, insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from standings_engine.database import db
from standings_engine.database.models import (
    AuditLogEntry,
    Club,
    ClubLeague,
    League,
    Match,
    MigrationLock,
    MigrationRecord,
    Season,
    Standing,
    Team,
)

COLLECTIONS = {
    "leagues": League,
    "seasons": Season,
    "clubs": Club,
    "club_leagues": ClubLeague,
    "teams": Team,
    "matches": Match,
    "standings": Standing,
    "migration_records": MigrationRecord,
    "migration_locks": MigrationLock,
    "audit_log": AuditLogEntry,
}

_OPERATORS = {
    "eq": lambda col, v: col == v,
    "ne": lambda col, v: col != v,
    "in": lambda col, v: col.in_(list(v)),
    "gt": lambda col, v: col > v,
    "gte": lambda col, v: col >= v,
    "lt": lambda col, v: col < v,
    "lte": lambda col, v: col <= v,
    "isnull": lambda col, v: col.is_(None) if v else col.is_not(None),
}


def chunks(lst: list, n: int):
    """Yield successive n-sized chunks from list."""
    for i in range(0, len(lst), n):
        yield lst[i:i + n]


def get_model(collection: str):
    """Resolve a collection name to its ORM model."""
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}") from None


def _conditions(model, filters: Dict[str, Any]) -> list:
    """Translate field__op=value filters into SQL expressions."""
    conditions = []
    for key, value in filters.items():
        field, _, op = key.partition("__")
        op = op or "eq"
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op}")
        column = getattr(model, field, None)
        if column is None:
            raise ValueError(f"{model.__tablename__} has no field {field}")
        if op == "eq" and value is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(_OPERATORS[op](column, value))
    return conditions


def _json_value(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def record_to_dict(record) -> Dict[str, Any]:
    """Plain JSON-compatible dict of a record's column values."""
    return {
        column.key: _json_value(getattr(record, column.key))
        for column in record.__table__.columns
    }


def values_from_dict(collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Inverse of record_to_dict: coerce JSON values back to column types.

    Unknown keys are dropped so snapshots survive added/removed columns.
    """
    table = get_model(collection).__table__
    values = {}
    for column in table.columns:
        if column.key not in data:
            continue
        value = data[column.key]
        if value is not None:
            if isinstance(column.type, SAEnum) and column.type.enum_class is not None:
                value = column.type.enum_class(value)
            elif isinstance(column.type, DateTime):
                value = datetime.fromisoformat(value)
            elif isinstance(column.type, Date):
                value = date.fromisoformat(value)
        values[column.key] = value
    return values


class StoreTransaction:
    """Collection operations bound to one open session/transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find(
        self,
        collection: str,
        *,
        order_by: Optional[str] = "id",
        limit: Optional[int] = None,
        **filters,
    ) -> list:
        model = get_model(collection)
        stmt = select(model).where(*_conditions(model, filters))
        if order_by:
            descending = order_by.startswith("-")
            column = getattr(model, order_by.lstrip("-"))
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_one(self, collection: str, **filters):
        rows = await self.find(collection, limit=1, **filters)
        return rows[0] if rows else None

    async def get(self, collection: str, record_id):
        return await self.session.get(get_model(collection), record_id)

    async def ids(self, collection: str, **filters) -> List[int]:
        model = get_model(collection)
        stmt = select(model.id).where(*_conditions(model, filters)).order_by(model.id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count(self, collection: str, **filters) -> int:
        model = get_model(collection)
        stmt = select(func.count()).select_from(model).where(*_conditions(model, filters))
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def create(self, collection: str, **values):
        record = get_model(collection)(**values)
        self.session.add(record)
        await self.session.flush()
        return record

    async def update(self, record, **values):
        for key, value in values.items():
            setattr(record, key, value)
        await self.session.flush()
        return record

    async def delete(self, record) -> None:
        await self.session.delete(record)
        await self.session.flush()

    async def insert_row(self, collection: str, values: Dict[str, Any]) -> None:
        """Insert a row exactly as given (explicit id and timestamps kept)."""
        table = get_model(collection).__table__
        await self.session.execute(insert(table).values(**values))

    async def update_row(self, collection: str, record_id, values: Dict[str, Any]) -> None:
        """Overwrite a row's columns exactly as given, bypassing ORM onupdate hooks."""
        table = get_model(collection).__table__
        await self.session.execute(update(table).where(table.c.id == record_id).values(**values))

    async def resync_identity(self, collection: str) -> None:
        """Advance a PostgreSQL id sequence past rows inserted with explicit ids."""
        if self.session.bind.dialect.name != "postgresql":
            return
        table_name = get_model(collection).__tablename__
        await self.session.execute(
            text(
                f"SELECT setval(pg_get_serial_sequence('{table_name}', 'id'), "
                f"COALESCE((SELECT MAX(id) FROM {table_name}), 1))"
            )
        )


class ContentStore:
    """
    Repository over an async session factory.

    Each method opens its own transaction; use transaction() to group
    several operations atomically.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory or db.AsyncSessionLocal

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """Commit on clean exit, roll back on any exception."""
        async with self._session_factory() as session:
            async with session.begin():
                yield StoreTransaction(session)

    async def find(self, collection: str, **kwargs) -> list:
        async with self.transaction() as tx:
            return await tx.find(collection, **kwargs)

    async def find_one(self, collection: str, **filters):
        async with self.transaction() as tx:
            return await tx.find_one(collection, **filters)

    async def get(self, collection: str, record_id):
        async with self.transaction() as tx:
            return await tx.get(collection, record_id)

    async def ids(self, collection: str, **filters) -> List[int]:
        async with self.transaction() as tx:
            return await tx.ids(collection, **filters)

    async def count(self, collection: str, **filters) -> int:
        async with self.transaction() as tx:
            return await tx.count(collection, **filters)

    async def create(self, collection: str, **values):
        async with self.transaction() as tx:
            return await tx.create(collection, **values)

    async def create_many(self, collection: str, rows: Iterable[Dict[str, Any]]) -> list:
        async with self.transaction() as tx:
            return [await tx.create(collection, **values) for values in rows]

    async def update(self, collection: str, record_id, **values):
        async with self.transaction() as tx:
            record = await tx.get(collection, record_id)
            if record is None:
                raise LookupError(f"{collection} record {record_id} not found")
            return await tx.update(record, **values)

    async def delete(self, collection: str, record_id) -> bool:
        async with self.transaction() as tx:
            record = await tx.get(collection, record_id)
            if record is None:
                return False
            await tx.delete(record)
            return True
