"""
Report read-models.

Aggregation happens server-side; the client keeps the latest copy of each
report in the ``reports`` table and fronts it with the ephemeral cache so
reports stay readable offline.
"""

import logging
from typing import Any, Dict, List, Optional

from rms_offline.core.cache import CacheKeys, EphemeralCache, make_cache_key
from rms_offline.core.clock import parse_timestamp, utcnow, utcnow_iso
from rms_offline.core.errors import RemoteError
from rms_offline.db.store import LocalStore
from rms_offline.services.synchronizer import Synchronizer

logger = logging.getLogger(__name__)


def report_id(tenant_id: str, report_type: str, filters: Optional[Dict[str, Any]]) -> str:
    return f"{tenant_id}:{report_type}:{make_cache_key(filters or {})}"


class ReportRepository:
    table = "reports"

    def __init__(
        self,
        store: LocalStore,
        synchronizer: Synchronizer,
        tenant_id: str,
        cache: Optional[EphemeralCache] = None,
        ttl: Optional[float] = None,
    ):
        self.store = store
        self.synchronizer = synchronizer
        self.tenant_id = tenant_id
        self.cache = cache
        self.ttl = ttl

    def _cache_key(self, report_id_: str) -> str:
        return f"{CacheKeys.REPORTS}:{report_id_}"

    async def get(
        self,
        report_type: str,
        filters: Optional[Dict[str, Any]] = None,
        max_age: Optional[float] = None,
        refresh: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        Report payload, served from cache, then the local copy, then the
        server. A stored copy older than ``max_age`` seconds is refetched
        when the server is reachable; otherwise the stale copy is returned.
        """
        rid = report_id(self.tenant_id, report_type, filters)
        key = self._cache_key(rid)

        if not refresh and self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        stored = await self.store.get(self.table, rid)
        if stored is not None and not refresh and not self._is_stale(stored, max_age):
            self._remember(key, stored["payload"])
            return stored["payload"]

        try:
            payload = await self.synchronizer.fetch_report(report_type, filters)
        except RemoteError as exc:
            logger.warning(f"Report {report_type} unavailable from server: {exc}")
            return stored["payload"] if stored is not None else None

        await self.store.put(self.table, {
            "id": rid,
            "type": report_type,
            "tenantId": self.tenant_id,
            "filters": filters or {},
            "payload": payload,
            "updatedAt": utcnow_iso(),
        })
        self._remember(key, payload)
        return payload

    def _remember(self, key: str, payload: Any) -> None:
        if self.cache is not None:
            self.cache.set(key, payload, self.ttl)

    @staticmethod
    def _is_stale(row: Dict[str, Any], max_age: Optional[float]) -> bool:
        if max_age is None:
            return False
        updated = parse_timestamp(row.get("updatedAt"))
        return updated is None or (utcnow() - updated).total_seconds() > max_age

    async def list_cached(self, report_type: Optional[str] = None) -> List[Dict[str, Any]]:
        if report_type is not None:
            rows = await self.store.query(self.table, "type", report_type)
        else:
            rows = await self.store.all(self.table)
        return [row for row in rows if row.get("tenantId") == self.tenant_id]

    async def invalidate(self) -> int:
        """Forget every stored report of this tenant."""
        removed = 0
        async with self.store.transaction() as tx:
            for row in await tx.all(self.table):
                if row.get("tenantId") == self.tenant_id:
                    await tx.delete(self.table, row["id"])
                    removed += 1
        if self.cache is not None:
            self.cache.delete_pattern(f"{CacheKeys.REPORTS}:*")
        return removed
