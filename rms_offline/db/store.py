"""
Local Store - persistent, schema-versioned object store on SQLite.

Every call is atomic. Writes are serialised through one process-wide lock
and committed before the call returns, so later reads always observe them.
Multi-step writes go through ``transaction()``:

    async with store.transaction() as tx:
        await tx.put("orders", order)
        await queue.enqueue(tx, change)

``transaction()`` is not reentrant; never call a write method of the store
itself while holding a handle.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from sqlalchemy import delete, func, insert, inspect, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rms_offline.core.errors import LocalStorageError
from rms_offline.db.base import Base, MirroredRecordMixin
from rms_offline.db.session import create_session_factory, create_store_engine
from rms_offline.models import StoreMeta, model_for, resolve_table

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 8
SCHEMA_VERSION_KEY = "schema_version"

Row = Dict[str, Any]

# version -> step run on a sync connection when upgrading from an older store
UPGRADE_STEPS: Dict[int, Callable[[Any], None]] = {}


def upgrade_step(version: int):
    """Register a schema upgrade that brings a store up to ``version``."""
    def decorator(func):
        UPGRADE_STEPS[version] = func
        return func
    return decorator


@upgrade_step(8)
def _add_missing_columns(sync_conn) -> None:
    """Add columns introduced since the store was created.

    ``create_all`` only creates missing tables, so stores created by older
    releases lack the queue backoff and conflict columns.
    """
    inspector = inspect(sync_conn)
    for table in Base.metadata.sorted_tables:
        existing = {column["name"] for column in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in existing:
                continue
            ddl = f"ALTER TABLE {table.name} ADD COLUMN {column.name} {column.type.compile(dialect=sync_conn.dialect)}"
            default = getattr(column.default, "arg", None)
            if isinstance(default, bool):
                ddl += f" DEFAULT {int(default)}"
            elif isinstance(default, (int, str)):
                ddl += f" DEFAULT {default!r}"
            logger.info(f"Upgrading {table.name}: adding column {column.name}")
            sync_conn.execute(text(ddl))


class StoreTransaction:
    """
    Handle for one atomic unit of work against the local store.

    Everything done through a handle commits or rolls back together.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, table: str, record_id: Any) -> Optional[Row]:
        model = model_for(table)
        obj = await self.session.get(model, record_id)
        return obj.to_row() if obj is not None else None

    async def put(self, table: str, row: Row) -> Row:
        """Upsert by id. Rows of autoincrement tables may omit the id."""
        model = model_for(table)
        obj = None
        if row.get("id") is not None:
            obj = await self.session.get(model, row["id"])
        if obj is None:
            obj = model(**model.columns_from_row(row))
            self.session.add(obj)
        else:
            obj.apply_row(row)
        await self.session.flush()
        return obj.to_row()

    async def bulk_put(self, table: str, rows: List[Row]) -> List[Row]:
        return [await self.put(table, row) for row in rows]

    async def delete(self, table: str, record_id: Any) -> bool:
        model = model_for(table)
        obj = await self.session.get(model, record_id)
        if obj is None:
            return False
        await self.session.delete(obj)
        await self.session.flush()
        return True

    async def query(self, table: str, field: str, value: Any) -> List[Row]:
        model = model_for(table)
        column = getattr(model, model.column_for(field))
        result = await self.session.execute(select(model).where(column == value))
        return [obj.to_row() for obj in result.scalars()]

    async def query_range(
        self,
        table: str,
        field: str,
        lower: Any = None,
        upper: Any = None,
    ) -> List[Row]:
        """Rows with ``lower <= field <= upper``; a ``None`` bound is open."""
        model = model_for(table)
        column = getattr(model, model.column_for(field))
        stmt = select(model)
        if lower is not None:
            stmt = stmt.where(column >= lower)
        if upper is not None:
            stmt = stmt.where(column <= upper)
        result = await self.session.execute(stmt.order_by(column))
        return [obj.to_row() for obj in result.scalars()]

    async def all(self, table: str) -> List[Row]:
        model = model_for(table)
        result = await self.session.execute(select(model))
        return [obj.to_row() for obj in result.scalars()]

    async def count(self, table: str) -> int:
        model = model_for(table)
        result = await self.session.execute(select(func.count()).select_from(model))
        return result.scalar_one()

    async def clear(self, table: str) -> int:
        model = model_for(table)
        result = await self.session.execute(delete(model))
        return result.rowcount or 0

    async def merge_remote(self, table: str, row: Row) -> bool:
        """
        Apply a server row, remote-wins.

        The stored row is kept only when it outranks the incoming one by
        version (or updatedAt). A row carrying ``deletedAt`` confirms the
        removal and purges the local copy. Returns True when anything changed.
        """
        model = model_for(table)
        record_id = row.get("id")
        if record_id is None:
            raise ValueError(f"Remote row for {table} has no id")

        existing = await self.session.get(model, record_id)
        if row.get("deletedAt"):
            if existing is None:
                return False
            await self.session.delete(existing)
            await self.session.flush()
            return True

        if (
            existing is not None
            and isinstance(existing, MirroredRecordMixin)
            and existing.is_newer_than(row)
        ):
            return False

        await self.put(table, row)
        return True

    async def rekey(self, table: str, old_id: Any, new_id: Any) -> Optional[Row]:
        """Move a row to a server-assigned id."""
        model = model_for(table)
        obj = await self.session.get(model, old_id)
        if obj is None:
            return None
        row = obj.to_row()
        row["id"] = new_id
        await self.session.delete(obj)
        await self.session.flush()
        return await self.put(table, row)


class LocalStore:
    """
    Async facade over the SQLite database holding every local table.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.engine = create_store_engine(database_url, echo=echo)
        self._session_factory = create_session_factory(self.engine)
        self._write_lock = asyncio.Lock()
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    async def open(self) -> int:
        """Create missing tables and bring the schema up to date.

        Returns the schema version found on disk (0 for a fresh store).
        """
        if self._opened:
            return SCHEMA_VERSION
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
                result = await conn.execute(
                    select(StoreMeta.value).where(StoreMeta.key == SCHEMA_VERSION_KEY)
                )
                stored = result.scalar_one_or_none()
                found = int(stored) if stored is not None else 0

                if found > SCHEMA_VERSION:
                    raise LocalStorageError(
                        f"Local store schema version {found} is newer than supported "
                        f"version {SCHEMA_VERSION}; refusing to open"
                    )
                if 0 < found < SCHEMA_VERSION:
                    for version in sorted(UPGRADE_STEPS):
                        if found < version <= SCHEMA_VERSION:
                            logger.info(f"Upgrading local store schema to version {version}")
                            await conn.run_sync(UPGRADE_STEPS[version])
                if found != SCHEMA_VERSION:
                    await conn.execute(delete(StoreMeta).where(StoreMeta.key == SCHEMA_VERSION_KEY))
                    await conn.execute(
                        insert(StoreMeta).values(key=SCHEMA_VERSION_KEY, value=str(SCHEMA_VERSION))
                    )
        except SQLAlchemyError as exc:
            raise LocalStorageError(f"Failed to open local store: {exc}") from exc

        self._opened = True
        logger.info(f"Local store opened at schema version {SCHEMA_VERSION} (found {found})")
        return found

    async def close(self) -> None:
        await self.engine.dispose()
        self._opened = False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[StoreTransaction]:
        """Exclusive write transaction; commits on exit, rolls back on error."""
        async with self._write_lock:
            async with self._session_factory() as session:
                try:
                    yield StoreTransaction(session)
                    await session.commit()
                except SQLAlchemyError as exc:
                    await session.rollback()
                    logger.error(f"Local store write failed: {exc}")
                    raise LocalStorageError(str(exc)) from exc
                except BaseException:
                    await session.rollback()
                    raise

    @asynccontextmanager
    async def reader(self) -> AsyncIterator[StoreTransaction]:
        """Read-only handle; does not take the write lock."""
        async with self._session_factory() as session:
            try:
                yield StoreTransaction(session)
            except SQLAlchemyError as exc:
                raise LocalStorageError(str(exc)) from exc

    # Single-call operations

    async def get(self, table: str, record_id: Any) -> Optional[Row]:
        async with self.reader() as tx:
            return await tx.get(table, record_id)

    async def put(self, table: str, row: Row) -> Row:
        async with self.transaction() as tx:
            return await tx.put(table, row)

    async def bulk_put(self, table: str, rows: List[Row]) -> List[Row]:
        async with self.transaction() as tx:
            return await tx.bulk_put(table, rows)

    async def delete(self, table: str, record_id: Any) -> bool:
        async with self.transaction() as tx:
            return await tx.delete(table, record_id)

    async def query(self, table: str, field: str, value: Any) -> List[Row]:
        async with self.reader() as tx:
            return await tx.query(table, field, value)

    async def query_range(self, table: str, field: str, lower: Any = None, upper: Any = None) -> List[Row]:
        async with self.reader() as tx:
            return await tx.query_range(table, field, lower, upper)

    async def all(self, table: str) -> List[Row]:
        async with self.reader() as tx:
            return await tx.all(table)

    async def count(self, table: str) -> int:
        async with self.reader() as tx:
            return await tx.count(table)

    async def clear(self, table: str) -> int:
        resolve_table(table)
        async with self.transaction() as tx:
            return await tx.clear(table)

    async def merge_remote(self, table: str, row: Row) -> bool:
        async with self.transaction() as tx:
            return await tx.merge_remote(table, row)

    async def schema_version(self) -> Optional[int]:
        async with self.reader() as tx:
            result = await tx.session.execute(
                select(StoreMeta.value).where(StoreMeta.key == SCHEMA_VERSION_KEY)
            )
            value = result.scalar_one_or_none()
            return int(value) if value is not None else None
