"""
Sync Queue Service

Ordered log of local mutations waiting to reach the remote backend. Entries
live in the ``sync_queue`` table of the local store and move through
PENDING -> SYNCING -> SYNCED / FAILED.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select, update

from rms_offline.core.clock import to_naive_utc, utcnow_naive
from rms_offline.core.errors import ErrorKind
from rms_offline.db.store import LocalStore, StoreTransaction
from rms_offline.models import (
    OUTSTANDING_STATUSES,
    QueueStatus,
    SyncQueueEntry,
    resolve_table,
)
from rms_offline.schemas.sync import LocalChange, QueueEntry

logger = logging.getLogger(__name__)

RecordKey = Tuple[str, str]


class SyncQueue:
    """Queue operations over the local store."""

    def __init__(self, store: LocalStore):
        self.store = store

    @asynccontextmanager
    async def _writing(self, tx: Optional[StoreTransaction]) -> AsyncIterator[StoreTransaction]:
        if tx is not None:
            yield tx
        else:
            async with self.store.transaction() as own:
                yield own

    @asynccontextmanager
    async def _reading(self, tx: Optional[StoreTransaction]) -> AsyncIterator[StoreTransaction]:
        if tx is not None:
            yield tx
        else:
            async with self.store.reader() as own:
                yield own

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, tx: StoreTransaction, change: LocalChange) -> QueueEntry:
        """Append a change; call inside the transaction of the local write."""
        entry = SyncQueueEntry(
            table_name=resolve_table(change.table),
            action=change.action.value,
            record_id=str(change.record_id),
            tenant_id=change.tenant_id,
            payload=dict(change.payload),
            base_version=change.base_version,
            force=change.force,
            status=QueueStatus.PENDING.value,
            attempts=0,
            created_at=utcnow_naive(),
        )
        tx.session.add(entry)
        await tx.session.flush()
        logger.debug(f"Queued {entry.action} {entry.table_name}/{entry.record_id} as entry {entry.id}")
        return QueueEntry.model_validate(entry)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def claim(self, entry_id: int) -> bool:
        """Atomically move an entry from PENDING to SYNCING.

        Returns False when another worker got there first or the entry is no
        longer pending.
        """
        async with self.store.transaction() as tx:
            result = await tx.session.execute(
                update(SyncQueueEntry)
                .where(
                    SyncQueueEntry.id == entry_id,
                    SyncQueueEntry.status == QueueStatus.PENDING.value,
                )
                .values(status=QueueStatus.SYNCING.value, last_attempt_at=utcnow_naive())
            )
            return result.rowcount == 1

    async def mark_synced(self, tx: StoreTransaction, entry_id: int) -> None:
        await tx.session.execute(
            update(SyncQueueEntry)
            .where(SyncQueueEntry.id == entry_id)
            .values(
                status=QueueStatus.SYNCED.value,
                synced_at=utcnow_naive(),
                next_attempt_at=None,
                error=None,
                error_kind=None,
            )
        )

    async def mark_failed(
        self,
        entry_id: int,
        kind: ErrorKind,
        error: str,
        conflict: Optional[Dict[str, Any]] = None,
        attempts: Optional[int] = None,
        tx: Optional[StoreTransaction] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "status": QueueStatus.FAILED.value,
            "error": error,
            "error_kind": ErrorKind(kind).value,
            "conflict": conflict,
            "next_attempt_at": None,
        }
        if attempts is not None:
            values["attempts"] = attempts
        async with self._writing(tx) as handle:
            await handle.session.execute(
                update(SyncQueueEntry).where(SyncQueueEntry.id == entry_id).values(**values)
            )
        logger.warning(f"Sync entry {entry_id} failed ({ErrorKind(kind).value}): {error}")

    async def release(
        self,
        entry_id: int,
        error: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
        attempts: Optional[int] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> None:
        """SYNCING -> PENDING, optionally recording a retryable failure."""
        values: Dict[str, Any] = {
            "status": QueueStatus.PENDING.value,
            "next_attempt_at": to_naive_utc(next_attempt_at),
        }
        if error is not None:
            values["error"] = error
            values["error_kind"] = ErrorKind(kind).value if kind else None
        if attempts is not None:
            values["attempts"] = attempts
        async with self.store.transaction() as tx:
            await tx.session.execute(
                update(SyncQueueEntry)
                .where(
                    SyncQueueEntry.id == entry_id,
                    SyncQueueEntry.status == QueueStatus.SYNCING.value,
                )
                .values(**values)
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, entry_id: int, tx: Optional[StoreTransaction] = None) -> Optional[QueueEntry]:
        async with self._reading(tx) as handle:
            entry = await handle.session.get(SyncQueueEntry, entry_id)
            return QueueEntry.model_validate(entry) if entry is not None else None

    async def list(
        self,
        status: Optional[QueueStatus] = None,
        table: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[QueueEntry]:
        stmt = select(SyncQueueEntry).order_by(SyncQueueEntry.id)
        if status is not None:
            stmt = stmt.where(SyncQueueEntry.status == QueueStatus(status).value)
        if table is not None:
            stmt = stmt.where(SyncQueueEntry.table_name == resolve_table(table))
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self.store.reader() as tx:
            result = await tx.session.execute(stmt)
            return [QueueEntry.model_validate(entry) for entry in result.scalars()]

    async def drainable(self) -> List[QueueEntry]:
        """PENDING and SYNCING entries in creation order."""
        async with self.store.reader() as tx:
            result = await tx.session.execute(
                select(SyncQueueEntry)
                .where(SyncQueueEntry.status.in_(OUTSTANDING_STATUSES))
                .order_by(SyncQueueEntry.id)
            )
            return [QueueEntry.model_validate(entry) for entry in result.scalars()]

    async def outstanding_keys(self, tx: Optional[StoreTransaction] = None) -> Set[RecordKey]:
        """``(table, record_id)`` pairs that still have local edits in flight."""
        async with self._reading(tx) as handle:
            result = await handle.session.execute(
                select(SyncQueueEntry.table_name, SyncQueueEntry.record_id)
                .where(SyncQueueEntry.status.in_(OUTSTANDING_STATUSES))
                .distinct()
            )
            return {(table, record_id) for table, record_id in result.all()}

    async def has_outstanding(
        self, table: str, record_id: str, tx: Optional[StoreTransaction] = None
    ) -> bool:
        async with self._reading(tx) as handle:
            result = await handle.session.execute(
                select(func.count())
                .select_from(SyncQueueEntry)
                .where(
                    SyncQueueEntry.table_name == resolve_table(table),
                    SyncQueueEntry.record_id == str(record_id),
                    SyncQueueEntry.status.in_(OUTSTANDING_STATUSES),
                )
            )
            return result.scalar_one() > 0

    async def counts(self) -> Dict[str, int]:
        """Entry count per status; every status is present."""
        counts = {status.value: 0 for status in QueueStatus}
        async with self.store.reader() as tx:
            result = await tx.session.execute(
                select(SyncQueueEntry.status, func.count()).group_by(SyncQueueEntry.status)
            )
            for status, count in result.all():
                counts[status] = count
        return counts

    async def counts_by_table(self) -> Dict[str, Dict[str, int]]:
        by_table: Dict[str, Dict[str, int]] = {}
        async with self.store.reader() as tx:
            result = await tx.session.execute(
                select(SyncQueueEntry.table_name, SyncQueueEntry.status, func.count())
                .group_by(SyncQueueEntry.table_name, SyncQueueEntry.status)
            )
            for table, status, count in result.all():
                by_table.setdefault(table, {})[status] = count
        return by_table

    async def count_outstanding_after(
        self, tx: StoreTransaction, table: str, record_id: str, after_id: int
    ) -> int:
        """Outstanding entries for a record queued after ``after_id``."""
        result = await tx.session.execute(
            select(func.count())
            .select_from(SyncQueueEntry)
            .where(
                SyncQueueEntry.table_name == resolve_table(table),
                SyncQueueEntry.record_id == str(record_id),
                SyncQueueEntry.id > after_id,
                SyncQueueEntry.status.in_(OUTSTANDING_STATUSES),
            )
        )
        return result.scalar_one()

    async def advance_base_version(
        self, tx: StoreTransaction, table: str, record_id: str, after_id: int, base_version: str
    ) -> None:
        """Later edits of a record were made on top of the version just pushed."""
        await tx.session.execute(
            update(SyncQueueEntry)
            .where(
                SyncQueueEntry.table_name == resolve_table(table),
                SyncQueueEntry.record_id == str(record_id),
                SyncQueueEntry.id > after_id,
                SyncQueueEntry.status == QueueStatus.PENDING.value,
            )
            .values(base_version=base_version)
        )

    # ------------------------------------------------------------------
    # Re-keying
    # ------------------------------------------------------------------

    async def rekey(self, tx: StoreTransaction, table: str, old_id: str, new_id: str) -> int:
        """Point outstanding entries of a record at its server-assigned id."""
        table = resolve_table(table)
        result = await tx.session.execute(
            select(SyncQueueEntry).where(
                SyncQueueEntry.table_name == table,
                SyncQueueEntry.record_id == str(old_id),
                SyncQueueEntry.status.in_(OUTSTANDING_STATUSES),
            )
        )
        entries = list(result.scalars())
        for entry in entries:
            entry.record_id = str(new_id)
            if entry.payload.get("id") == old_id:
                entry.payload = {**entry.payload, "id": new_id}
        await tx.session.flush()
        if entries:
            logger.info(f"Re-keyed {len(entries)} queued change(s) for {table}/{old_id} -> {new_id}")
        return len(entries)

    # ------------------------------------------------------------------
    # Maintenance primitives
    # ------------------------------------------------------------------

    async def delete_by_status(self, status: QueueStatus) -> int:
        async with self.store.transaction() as tx:
            result = await tx.session.execute(
                delete(SyncQueueEntry).where(SyncQueueEntry.status == QueueStatus(status).value)
            )
            return result.rowcount or 0

    async def reset_status(self, status: QueueStatus) -> int:
        """Move every entry in ``status`` back to PENDING with a fresh budget."""
        async with self.store.transaction() as tx:
            result = await tx.session.execute(
                update(SyncQueueEntry)
                .where(SyncQueueEntry.status == QueueStatus(status).value)
                .values(
                    status=QueueStatus.PENDING.value,
                    attempts=0,
                    next_attempt_at=None,
                    error=None,
                    error_kind=None,
                )
            )
            return result.rowcount or 0

    async def reset_entries(self, entry_ids: Iterable[int], force: bool = False) -> int:
        ids = list(entry_ids)
        if not ids:
            return 0
        values: Dict[str, Any] = {
            "status": QueueStatus.PENDING.value,
            "attempts": 0,
            "next_attempt_at": None,
            "error": None,
            "error_kind": None,
        }
        if force:
            values["force"] = True
        async with self.store.transaction() as tx:
            result = await tx.session.execute(
                update(SyncQueueEntry).where(SyncQueueEntry.id.in_(ids)).values(**values)
            )
            return result.rowcount or 0

    async def clear(self) -> int:
        async with self.store.transaction() as tx:
            result = await tx.session.execute(delete(SyncQueueEntry))
            return result.rowcount or 0
