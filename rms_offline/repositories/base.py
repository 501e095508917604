"""
Base repository over the local store.

Reads are tenant-scoped and hide soft-deleted rows. Mutations write the
local row optimistically and stage a sync change in the same transaction,
then hand the change to the synchronizer.
"""

import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from rms_offline.core.cache import EphemeralCache
from rms_offline.core.clock import utcnow_iso
from rms_offline.db.store import LocalStore
from rms_offline.models import SyncAction, model_for
from rms_offline.schemas.sync import LocalChange
from rms_offline.services.synchronizer import Synchronizer, observed_version

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

# Client bookkeeping never sent to the server
LOCAL_FIELDS = ("syncStatus", "lastSynced")

ITEM_CACHE_TTL = 2 * 60


def _cache_param(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


class EntityRepository:
    """Query facade and mutation entry point for one mirrored table."""

    table: str = ""
    scope_field: str = "tenantId"

    def __init__(
        self,
        store: LocalStore,
        synchronizer: Synchronizer,
        tenant_id: str,
        cache: Optional[EphemeralCache] = None,
        table: Optional[str] = None,
    ):
        if table:
            self.table = table
        if not self.table:
            raise ValueError(f"{type(self).__name__} has no table")
        self.model = model_for(self.table)
        self.store = store
        self.synchronizer = synchronizer
        self.tenant_id = tenant_id
        self.cache = cache

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def cache_key(self, operation: str, *params: Any) -> str:
        suffix = ":".join(_cache_param(p) for p in params)
        return f"{self.table}:{self.tenant_id}:{operation}:{suffix}"

    def invalidate_cache(self) -> None:
        if self.cache is not None:
            self.cache.delete_pattern(f"{self.table}:{self.tenant_id}:*")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_visible(self, row: Optional[Row], include_deleted: bool = False) -> bool:
        if row is None:
            return False
        if row.get(self.scope_field) != self.tenant_id:
            return False
        return include_deleted or not row.get("deletedAt")

    @staticmethod
    def _matches(row: Row, filters: Dict[str, Any]) -> bool:
        return all(row.get(key) == value for key, value in filters.items())

    def _split_filters(self, filters: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
        """Pick one indexed field to query on; the rest filter in memory."""
        indexed = self.model.indexed_fields()
        for field in filters:
            if field in indexed and field not in ("deletedAt",):
                rest = {k: v for k, v in filters.items() if k != field}
                return field, rest
        return None, filters

    async def _scan(self, filters: Optional[Dict[str, Any]], include_deleted: bool) -> List[Row]:
        filters = {
            key: value
            for key, value in (filters or {}).items()
            if value is not None and value != ""
        }
        field, rest = self._split_filters(filters)
        if field is not None:
            rows = await self.store.query(self.table, field, filters[field])
        else:
            rows = await self.store.query(self.table, self.scope_field, self.tenant_id)
        return [
            row for row in rows
            if self.is_visible(row, include_deleted) and self._matches(row, rest)
        ]

    async def find_all(
        self,
        filters: Optional[Dict[str, Any]] = None,
        include_deleted: bool = False,
    ) -> List[Row]:
        """All visible rows matching ``filters`` (field -> value equality)."""
        key = self.cache_key("find_all", filters, include_deleted)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        result = await self._scan(filters, include_deleted)
        if self.cache is not None:
            self.cache.set(key, result)
        return result

    async def find_all_paginated(
        self,
        page: int = 1,
        limit: int = 10,
        filters: Optional[Dict[str, Any]] = None,
        include_deleted: bool = False,
    ) -> Dict[str, Any]:
        rows = await self.find_all(filters, include_deleted)
        start = (max(page, 1) - 1) * limit
        return {"data": rows[start:start + limit], "total": len(rows)}

    async def find_by_id(self, record_id: str) -> Optional[Row]:
        key = self.cache_key("find_by_id", record_id)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        row = await self.store.get(self.table, record_id)
        if not self.is_visible(row):
            return None
        if self.cache is not None:
            self.cache.set(key, row, ITEM_CACHE_TTL)
        return row

    async def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        return len(await self._scan(filters, include_deleted=False))

    async def exists(self, record_id: str) -> bool:
        return await self.find_by_id(record_id) is not None

    async def _query_visible(self, field: str, value: Any) -> List[Row]:
        return [row for row in await self.store.query(self.table, field, value) if self.is_visible(row)]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @staticmethod
    def wire_payload(row: Row) -> Row:
        return {key: value for key, value in row.items() if key not in LOCAL_FIELDS}

    async def _write(self, row: Row, action: SyncAction, base_version: Optional[str]) -> Row:
        change = LocalChange(
            table=self.table,
            action=action,
            record_id=str(row["id"]),
            payload=self.wire_payload(row),
            tenant_id=self.tenant_id,
            base_version=base_version,
        )
        async with self.store.transaction() as tx:
            saved = await tx.put(self.table, row)
            staged = await self.synchronizer.stage(tx, change)
        self.invalidate_cache()

        outcome = await self.synchronizer.dispatch(change, staged)
        if outcome.status == "failed":
            logger.warning(
                f"{action.value} {self.table}/{row['id']} not synced: {outcome.error}"
            )
        return outcome.row or saved

    async def create(self, data: Row) -> Row:
        now = utcnow_iso()
        row = {
            **data,
            "id": str(data.get("id") or uuid.uuid4()),
            self.scope_field: self.tenant_id,
            "createdAt": data.get("createdAt") or now,
            "updatedAt": now,
            "deletedAt": None,
            "syncStatus": "pending",
        }
        return await self._write(row, SyncAction.CREATE, base_version=None)

    async def update(self, record_id: str, data: Row) -> Optional[Row]:
        """Returns None when the record does not exist for this tenant."""
        existing = await self.store.get(self.table, record_id)
        if not self.is_visible(existing):
            return None
        row = {
            **existing,
            **data,
            "id": existing["id"],
            self.scope_field: self.tenant_id,
            "updatedAt": utcnow_iso(),
            "syncStatus": "pending",
        }
        return await self._write(row, SyncAction.UPDATE, observed_version(existing))

    async def delete(self, record_id: str) -> bool:
        """Soft delete; the row is purged once the server confirms."""
        existing = await self.store.get(self.table, record_id)
        if not self.is_visible(existing):
            return False
        now = utcnow_iso()
        row = {**existing, "deletedAt": now, "updatedAt": now, "syncStatus": "pending"}
        await self._write(row, SyncAction.DELETE, observed_version(existing))
        return True
