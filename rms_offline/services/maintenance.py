"""
Sync queue maintenance.

Operator-facing inspection and bulk cleanup. Every destructive operation
must be confirmed with its exact phrase; a wrong phrase changes nothing.
"""

import logging
from datetime import timedelta
from typing import Optional

from rms_offline.core.clock import utcnow_naive
from rms_offline.core.errors import ConfirmationRequired
from rms_offline.models import QueueStatus
from rms_offline.schemas.sync import QueueInspection, QueueEntry
from rms_offline.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

CLEAR_SYNCED = "CLEAR SYNCED"
RESET_SYNCING = "RESET SYNCING"
RETRY_FAILED = "RETRY FAILED"
CLEAR_ALL = "CLEAR ALL"

STALE_SYNCED_AFTER = timedelta(days=7)


class QueueMaintenance:
    """Inspection and confirmed bulk operations on the sync queue."""

    def __init__(self, queue: SyncQueue, sample_size: int = 5):
        self.queue = queue
        self.sample_size = sample_size

    @staticmethod
    def _confirm(operation: str, phrase: str, confirmation: Optional[str]) -> None:
        if confirmation != phrase:
            logger.info(f"{operation} cancelled: confirmation did not match")
            raise ConfirmationRequired(operation, phrase)

    @staticmethod
    def is_stuck(entry: QueueEntry, now=None) -> bool:
        """SYNCING entries, and SYNCED ones older than a week."""
        if entry.status is QueueStatus.SYNCING:
            return True
        if entry.status is QueueStatus.SYNCED:
            when = entry.synced_at or entry.created_at
            return when < (now or utcnow_naive()) - STALE_SYNCED_AFTER
        return False

    async def inspect(self) -> QueueInspection:
        entries = await self.queue.list()
        now = utcnow_naive()
        by_status = await self.queue.counts()
        by_table = await self.queue.counts_by_table()
        return QueueInspection(
            total=len(entries),
            by_status=by_status,
            by_table=by_table,
            samples=entries[: self.sample_size],
            stuck=[entry for entry in entries if self.is_stuck(entry, now)],
        )

    async def clear_synced(self, confirmation: Optional[str]) -> int:
        self._confirm("clear-synced", CLEAR_SYNCED, confirmation)
        removed = await self.queue.delete_by_status(QueueStatus.SYNCED)
        logger.info(f"Removed {removed} SYNCED queue entries")
        return removed

    async def reset_syncing(self, confirmation: Optional[str]) -> int:
        self._confirm("reset-syncing", RESET_SYNCING, confirmation)
        reset = await self.queue.reset_status(QueueStatus.SYNCING)
        logger.info(f"Reset {reset} SYNCING queue entries to PENDING")
        return reset

    async def retry_failed(self, confirmation: Optional[str]) -> int:
        self._confirm("retry-failed", RETRY_FAILED, confirmation)
        reset = await self.queue.reset_status(QueueStatus.FAILED)
        logger.info(f"Reset {reset} FAILED queue entries to PENDING")
        return reset

    async def clear_all(self, confirmation: Optional[str]) -> int:
        self._confirm("clear-all", CLEAR_ALL, confirmation)
        removed = await self.queue.clear()
        logger.warning(f"Cleared the entire sync queue ({removed} entries)")
        return removed
