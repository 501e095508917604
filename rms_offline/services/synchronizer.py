"""
Synchronizer Service

Moves local mutations to the remote backend and remote changes into the
local store. Two strategies share one interface:

- ``QueuedSynchronizer``: changes are staged in the sync queue inside the
  same transaction as the optimistic local write and drained by ``push()``
  with per-record FIFO ordering, bounded retry and conflict escalation.
- ``DirectSynchronizer``: every change is sent immediately; nothing is
  queued and failures are reported back to the caller.

Sync failures are recorded (on queue entries or dispatch outcomes) and
logged; they never propagate into repository callers.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, List, Optional, Set, TypeVar

from sqlalchemy import select

from rms_offline.core.cache import CacheKeys, EphemeralCache, invalidate_table
from rms_offline.core.clock import utcnow, utcnow_iso, utcnow_naive
from rms_offline.core.config import Settings
from rms_offline.core.errors import ErrorKind, LocalStorageError, RemoteError
from rms_offline.db.store import LocalStore, StoreTransaction
from rms_offline.models import (
    LOCAL_ONLY_TABLES,
    QueueStatus,
    SyncAction,
    SyncCheckpoint,
    SyncQueueEntry,
    resolve_table,
)
from rms_offline.schemas.sync import (
    ConflictResolution,
    DispatchOutcome,
    LocalChange,
    PullReport,
    PushReport,
    PushResult,
    QueueEntry,
    SyncReport,
    SyncStatusSnapshot,
)
from rms_offline.services.remote import RemoteBackend
from rms_offline.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fields the server owns; applied even while later local edits are queued
SERVER_OWNED_FIELDS = ("updatedAt", "version", "createdAt")

# Releasing a claim after a local store failure
RELEASE_RETRIES = 3
RELEASE_RETRY_DELAY = 0.05


def observed_version(row: Optional[Dict[str, Any]]) -> Optional[str]:
    """The version marker a client saw for a row (``version`` or ``updatedAt``)."""
    if not row:
        return None
    version = row.get("version")
    if isinstance(version, int):
        return str(version)
    return row.get("updatedAt")


class Synchronizer(ABC):
    """
    Common sync machinery: pull, report refresh, status and the background
    loop. Subclasses decide how local changes reach the remote.
    """

    strategy: str = ""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteBackend,
        queue: Optional[SyncQueue] = None,
        cache: Optional[EphemeralCache] = None,
        tenant_id: Optional[str] = None,
        request_timeout: float = 15.0,
        sync_interval: float = 30.0,
    ):
        self.store = store
        self.remote = remote
        self.queue = queue
        self.cache = cache
        self.tenant_id = tenant_id
        self.request_timeout = request_timeout
        self.sync_interval = sync_interval

        self.is_online = True
        self.last_synced: Optional[datetime] = None
        self._syncing = False
        self._sync_lock = asyncio.Lock()
        self._pull_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Strategy hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def stage(self, tx: StoreTransaction, change: LocalChange) -> Optional[QueueEntry]:
        """Record a change inside the transaction of its local write."""

    @abstractmethod
    async def dispatch(self, change: LocalChange, staged: Optional[QueueEntry] = None) -> DispatchOutcome:
        """Hand a committed change over for delivery."""

    @abstractmethod
    async def push(self) -> PushReport:
        """Deliver outstanding local changes."""

    @abstractmethod
    async def resolve_conflicts(self, resolutions: List[ConflictResolution]) -> List[QueueEntry]:
        """Apply operator decisions to conflicted changes."""

    # ------------------------------------------------------------------
    # Remote calls
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[T]) -> T:
        """Run one remote call with the per-attempt timeout.

        Every failure comes out as a classified ``RemoteError``.
        """
        try:
            result = await asyncio.wait_for(awaitable, timeout=self.request_timeout)
        except asyncio.TimeoutError as exc:
            self._went_offline()
            raise RemoteError(
                ErrorKind.NETWORK_ERROR, f"No response within {self.request_timeout}s"
            ) from exc
        except RemoteError as exc:
            if exc.kind is ErrorKind.NETWORK_ERROR:
                self._went_offline()
            raise
        except Exception as exc:
            logger.exception("Unexpected error from remote backend")
            raise RemoteError(ErrorKind.SERVER_ERROR, f"{type(exc).__name__}: {exc}") from exc
        self.is_online = True
        return result

    def _went_offline(self) -> None:
        if self.is_online:
            logger.warning("Remote backend unreachable, working offline")
        self.is_online = False

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _reconcile(
        self,
        tx: StoreTransaction,
        change: LocalChange,
        result: PushResult,
        entry_id: Optional[int] = None,
    ) -> Optional[Dict[str, Any]]:
        """Fold the server's answer to a pushed change into the local row."""
        table = resolve_table(change.table)
        record_id = change.record_id
        if result.new_id and result.new_id != record_id:
            await tx.rekey(table, record_id, result.new_id)
            if self.queue is not None:
                await self.queue.rekey(tx, table, record_id, result.new_id)
            logger.info(f"Server assigned id {result.new_id} to {table}/{record_id}")
            record_id = result.new_id

        later = 0
        if self.queue is not None and entry_id is not None:
            later = await self.queue.count_outstanding_after(tx, table, record_id, entry_id)

        server_row = dict(result.row or {})
        if change.action is SyncAction.DELETE or server_row.get("deletedAt"):
            # Removal confirmed; a later queued edit re-creates the row instead
            if not later:
                await tx.delete(table, record_id)
            return None

        local = await tx.get(table, record_id)
        if later:
            if local is None:
                return None
            merged = {**local, **{k: server_row[k] for k in SERVER_OWNED_FIELDS if k in server_row}}
            new_base = observed_version(server_row)
            if new_base is not None:
                await self.queue.advance_base_version(tx, table, record_id, entry_id, new_base)
        else:
            merged = {**(local or change.payload), **server_row, "syncStatus": "synced"}
        merged["id"] = record_id
        merged["lastSynced"] = utcnow_iso()
        return await tx.put(table, merged)

    async def _flag_row(self, tx: StoreTransaction, table: str, record_id: str, sync_status: str) -> None:
        row = await tx.get(table, record_id)
        if row is not None and row.get("syncStatus") != sync_status:
            await tx.put(table, {**row, "syncStatus": sync_status})

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def _load_checkpoint(self, tenant_id: str) -> Optional[str]:
        async with self.store.reader() as tx:
            checkpoint = await tx.session.get(SyncCheckpoint, tenant_id)
            return checkpoint.server_timestamp if checkpoint else None

    async def pull(self, force: bool = False) -> PullReport:
        """
        Apply remote changes since the last checkpoint, remote-wins.

        Rows with outstanding local changes are left alone; they converge
        once their queue entries resolve. Raises ``RemoteError`` when the
        backend cannot be reached.
        """
        tenant_id = self.tenant_id
        if not tenant_id:
            logger.warning("Pull skipped: no active tenant")
            return PullReport()

        async with self._pull_lock:
            since = None if force else await self._load_checkpoint(tenant_id)
            result = await self._call(self.remote.pull(tenant_id, since))
            report = PullReport(full=since is None, timestamp=result.timestamp)
            touched = set()

            async with self.store.transaction() as tx:
                outstanding = await self.queue.outstanding_keys(tx) if self.queue else set()
                for table, rows in result.changes.items():
                    if table in LOCAL_ONLY_TABLES:
                        continue
                    for row in rows:
                        record_id = row.get("id")
                        if record_id is None:
                            continue
                        if (table, str(record_id)) in outstanding:
                            report.skipped += 1
                            continue
                        if await tx.merge_remote(table, {**row, "syncStatus": "synced"}):
                            touched.add(table)
                            if row.get("deletedAt"):
                                report.deleted += 1
                            else:
                                report.applied += 1

                checkpoint = await tx.session.get(SyncCheckpoint, tenant_id)
                if checkpoint is None:
                    checkpoint = SyncCheckpoint(tenant_id=tenant_id)
                    tx.session.add(checkpoint)
                if result.timestamp:
                    checkpoint.server_timestamp = result.timestamp
                checkpoint.pulled_at = utcnow_naive()
                checkpoint.rows_applied = report.applied + report.deleted

        for table in touched:
            invalidate_table(self.cache, table)
        self.last_synced = utcnow()
        logger.info(
            f"Pulled {'snapshot' if report.full else 'changes'} for tenant {tenant_id}: "
            f"{report.applied} applied, {report.deleted} deleted, {report.skipped} skipped"
        )
        return report

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def fetch_report(self, report_type: str, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.tenant_id:
            raise ValueError("No active tenant")
        return await self._call(self.remote.fetch_report(self.tenant_id, report_type, filters))

    async def refresh_reports(self) -> int:
        """Re-fetch every cached report read-model of the active tenant."""
        if not self.tenant_id:
            return 0
        refreshed = 0
        for row in await self.store.all("reports"):
            if row.get("tenantId") not in (None, self.tenant_id):
                continue
            try:
                payload = await self.fetch_report(row["type"], row.get("filters"))
            except RemoteError as exc:
                logger.warning(f"Report refresh failed for {row['id']}: {exc}")
                if exc.transient:
                    break
                continue
            await self.store.put("reports", {**row, "payload": payload, "updatedAt": utcnow_iso()})
            refreshed += 1
        if refreshed and self.cache is not None:
            self.cache.delete_pattern(f"{CacheKeys.REPORTS}:*")
        return refreshed

    # ------------------------------------------------------------------
    # Full cycle and status
    # ------------------------------------------------------------------

    async def sync(self) -> SyncReport:
        """Push then pull. Never raises; failures land in the report."""
        async with self._sync_lock:
            self._syncing = True
            report = SyncReport()
            try:
                report.push = await self.push()
                report.pull = await self.pull()
            except (RemoteError, LocalStorageError) as exc:
                report.error = str(exc)
                logger.warning(f"Sync cycle incomplete: {exc}")
            except Exception as exc:
                report.error = str(exc)
                logger.exception("Sync cycle failed")
            finally:
                self._syncing = False
            return report

    async def _queue_counts(self) -> Dict[str, int]:
        if self.queue is None:
            return {}
        return await self.queue.counts()

    async def status(self) -> SyncStatusSnapshot:
        counts = await self._queue_counts()
        return SyncStatusSnapshot(
            is_online=self.is_online,
            is_syncing=self._syncing,
            last_synced=self.last_synced,
            pending_changes=counts.get(QueueStatus.PENDING.value, 0)
            + counts.get(QueueStatus.SYNCING.value, 0),
            failed_changes=counts.get(QueueStatus.FAILED.value, 0),
            strategy=self.strategy,
        )

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self, interval: Optional[float] = None) -> asyncio.Task:
        """Run push+pull every ``interval`` seconds until ``stop()``."""
        if self.running:
            return self._loop_task
        interval = interval or self.sync_interval
        self._loop_task = asyncio.create_task(self._run_loop(interval))
        logger.info(f"{self.strategy} synchronizer started (every {interval}s)")
        return self._loop_task

    async def _run_loop(self, interval: float) -> None:
        while True:
            # A wake-up arriving mid-cycle triggers one more cycle right away
            self._wake.clear()
            await self._run_cycle()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def _run_cycle(self) -> None:
        if self._cycle_task is None or self._cycle_task.done():
            self._cycle_task = asyncio.create_task(self.sync())
        # Cancelling the loop must not cancel a cycle in flight
        await asyncio.shield(self._cycle_task)

    async def stop(self) -> None:
        """Stop the timer loop; an in-flight cycle still runs to completion."""
        task, self._loop_task = self._loop_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"{self.strategy} synchronizer stopped")

    def notify_online(self) -> None:
        """Connectivity is back; run a cycle now."""
        logger.info("Connectivity restored, syncing")
        self.is_online = True
        if self.running:
            self._wake.set()
        else:
            self._spawn(self.sync())

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for background pushes and the current cycle to finish."""
        pending = list(self._background)
        if self._cycle_task is not None:
            pending.append(self._cycle_task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        await self.stop()
        await self.wait_idle()


class QueuedSynchronizer(Synchronizer):
    """Queue-backed strategy with per-record FIFO, retry and conflicts."""

    strategy = "queued"

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteBackend,
        queue: SyncQueue,
        cache: Optional[EphemeralCache] = None,
        tenant_id: Optional[str] = None,
        request_timeout: float = 15.0,
        sync_interval: float = 30.0,
        push_concurrency: int = 4,
        max_attempts: int = 5,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 300.0,
        push_on_dispatch: bool = True,
    ):
        super().__init__(
            store,
            remote,
            queue=queue,
            cache=cache,
            tenant_id=tenant_id,
            request_timeout=request_timeout,
            sync_interval=sync_interval,
        )
        self.push_concurrency = push_concurrency
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.push_on_dispatch = push_on_dispatch
        self._push_lock = asyncio.Lock()
        self._push_scheduled = False

    def backoff_delay(self, attempts: int) -> float:
        """Delay before the next try after ``attempts`` failed ones."""
        return min(self.retry_base_delay * 2 ** max(attempts - 1, 0), self.retry_max_delay)

    async def stage(self, tx: StoreTransaction, change: LocalChange) -> Optional[QueueEntry]:
        return await self.queue.enqueue(tx, change)

    async def dispatch(self, change: LocalChange, staged: Optional[QueueEntry] = None) -> DispatchOutcome:
        if self.push_on_dispatch and self.is_online:
            self._schedule_push()
        return DispatchOutcome(status="queued", entry_id=staged.id if staged else None)

    def _schedule_push(self) -> None:
        if self._push_scheduled:
            return
        self._push_scheduled = True
        self._spawn(self._scheduled_push())

    async def _scheduled_push(self) -> None:
        try:
            async with self._push_lock:
                self._push_scheduled = False
                await self._drain()
        except Exception:
            logger.exception("Background push failed")

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push(self) -> PushReport:
        async with self._push_lock:
            return await self._drain()

    async def _drain(self) -> PushReport:
        report = PushReport()
        groups: "OrderedDict[tuple, List[QueueEntry]]" = OrderedDict()
        for entry in await self.queue.drainable():
            groups.setdefault(entry.key, []).append(entry)
        if not groups:
            return report

        semaphore = asyncio.Semaphore(self.push_concurrency)

        async def run(group: List[QueueEntry]) -> None:
            async with semaphore:
                try:
                    await self._push_group(group, report)
                except LocalStorageError as exc:
                    logger.error(f"Local store failure while pushing {group[0].key}: {exc}")

        await asyncio.gather(*(run(group) for group in groups.values()))
        if report.attempted:
            logger.info(
                f"Push finished: {report.synced} synced, {report.retrying} retrying, "
                f"{report.failed} failed ({report.conflicts} conflicts), {report.skipped} skipped"
            )
        return report

    async def _push_group(self, entries: List[QueueEntry], report: PushReport) -> None:
        """Process one record's entries strictly in creation order."""
        now = utcnow_naive()
        for index, entry in enumerate(entries):
            remaining = len(entries) - index
            if entry.status is QueueStatus.SYNCING:
                # Claimed by someone else (or stuck); later edits must wait
                report.skipped += remaining
                return
            if entry.next_attempt_at is not None and entry.next_attempt_at > now:
                report.skipped += remaining
                return
            if not await self.queue.claim(entry.id):
                report.skipped += remaining
                return

            try:
                current = await self.queue.get(entry.id)
            except LocalStorageError as exc:
                await self._release_claim(entry.id, exc)
                report.skipped += remaining
                return
            if current is None:
                continue
            outcome = await self._push_entry(current)
            if outcome == "synced":
                report.synced += 1
            elif outcome == "conflict":
                report.failed += 1
                report.conflicts += 1
            elif outcome == "failed":
                report.failed += 1
            else:
                # Retrying or released: the rest of the group waits for it
                if outcome == "retrying":
                    report.retrying += 1
                report.skipped += remaining - 1
                return

    async def _push_entry(self, entry: QueueEntry) -> str:
        change = entry.to_change()
        try:
            result = await self._call(self.remote.push(change))
        except RemoteError as exc:
            try:
                return await self._handle_failure(entry, exc)
            except LocalStorageError as store_exc:
                logger.error(f"Could not record failure of entry {entry.id}: {store_exc}")
                await self._release_claim(entry.id, store_exc)
                return "released"

        try:
            async with self.store.transaction() as tx:
                await self._reconcile(tx, change, result, entry_id=entry.id)
                await self.queue.mark_synced(tx, entry.id)
        except LocalStorageError as exc:
            logger.error(f"Could not apply server result for entry {entry.id}: {exc}")
            await self._release_claim(entry.id, exc)
            return "released"

        invalidate_table(self.cache, entry.table_name)
        logger.debug(f"Entry {entry.id} synced ({entry.action.value} {entry.table_name}/{entry.record_id})")
        return "synced"

    async def _release_claim(self, entry_id: int, error: LocalStorageError) -> None:
        """
        Hand a claimed entry back as PENDING after a local store failure.
        Nothing was committed, so no attempt is spent and the next drain
        retries it.
        """
        for attempt in range(1, RELEASE_RETRIES + 1):
            try:
                await self.queue.release(entry_id)
                return
            except LocalStorageError as exc:
                logger.warning(f"Release of entry {entry_id} failed (try {attempt}): {exc}")
                await asyncio.sleep(RELEASE_RETRY_DELAY * attempt)
        logger.error(f"Entry {entry_id} left SYNCING after {error}; reset it with RESET SYNCING")

    async def _handle_failure(self, entry: QueueEntry, error: RemoteError) -> str:
        if error.transient:
            attempts = entry.attempts + 1
            if attempts >= self.max_attempts:
                await self.queue.mark_failed(
                    entry.id,
                    ErrorKind.MAX_ATTEMPTS,
                    f"Gave up after {attempts} attempts: {error}",
                    attempts=attempts,
                )
                return "failed"
            delay = self.backoff_delay(attempts)
            await self.queue.release(
                entry.id,
                error=str(error),
                kind=error.kind,
                attempts=attempts,
                next_attempt_at=utcnow() + timedelta(seconds=delay),
            )
            logger.info(f"Entry {entry.id} will retry in {delay:.0f}s (attempt {attempts}): {error}")
            return "retrying"

        if error.kind is ErrorKind.CONFLICT:
            conflict = {
                "reason": error.message,
                "status_code": error.status_code,
                "base_version": entry.base_version,
                "server_row": error.server_row,
            }
            async with self.store.transaction() as tx:
                await self.queue.mark_failed(entry.id, ErrorKind.CONFLICT, str(error), conflict=conflict, tx=tx)
                await self._flag_row(tx, entry.table_name, entry.record_id, "conflict")
            return "conflict"

        await self.queue.mark_failed(entry.id, error.kind, str(error))
        return "failed"

    # ------------------------------------------------------------------
    # Conflict resolution
    # ------------------------------------------------------------------

    async def resolve_conflicts(self, resolutions: List[ConflictResolution]) -> List[QueueEntry]:
        """
        Apply per-entry decisions. Entries that are not FAILED are left alone;
        FAILED entries without a decision simply stay FAILED.
        """
        resolved: List[QueueEntry] = []
        for resolution in resolutions:
            async with self.store.transaction() as tx:
                entry = await tx.session.get(SyncQueueEntry, resolution.entry_id)
                if entry is None or entry.status != QueueStatus.FAILED.value:
                    logger.warning(f"Entry {resolution.entry_id} is not awaiting resolution, skipping")
                    continue
                await self._apply_resolution(tx, entry, resolution)
                resolved.append(QueueEntry.model_validate(entry))
            logger.info(f"Entry {resolution.entry_id} resolved with {resolution.decision}")
            invalidate_table(self.cache, entry.table_name)

        if resolved and self.push_on_dispatch and self.is_online:
            self._schedule_push()
        return resolved

    async def _apply_resolution(
        self, tx: StoreTransaction, entry: SyncQueueEntry, resolution: ConflictResolution
    ) -> None:
        table = entry.table_name
        server_row = (entry.conflict or {}).get("server_row")

        if resolution.decision == "use-server":
            if server_row:
                if server_row.get("deletedAt"):
                    await tx.delete(table, entry.record_id)
                else:
                    await tx.put(table, {**server_row, "id": entry.record_id, "syncStatus": "synced"})
            entry.status = QueueStatus.SYNCED.value
            entry.synced_at = utcnow_naive()
            entry.resolution = "use-server"
            await tx.session.flush()
            return

        if resolution.decision == "merge":
            payload = resolution.payload or {**(server_row or {}), **entry.payload}
            entry.payload = {**payload, "id": entry.record_id}
            local = await tx.get(table, entry.record_id)
            if local is not None:
                await tx.put(table, {**local, **entry.payload, "syncStatus": "pending"})
        else:
            await self._flag_row(tx, table, entry.record_id, "pending")

        # use-local and merge: send again, overriding the version check
        entry.status = QueueStatus.PENDING.value
        entry.force = True
        entry.attempts = 0
        entry.next_attempt_at = None
        entry.error = None
        entry.error_kind = None
        entry.resolution = resolution.decision
        base = observed_version(server_row)
        if base is not None:
            entry.base_version = base
        await tx.session.flush()

    async def conflicts(self) -> List[QueueEntry]:
        """FAILED entries waiting for a conflict decision."""
        async with self.store.reader() as tx:
            result = await tx.session.execute(
                select(SyncQueueEntry)
                .where(
                    SyncQueueEntry.status == QueueStatus.FAILED.value,
                    SyncQueueEntry.error_kind == ErrorKind.CONFLICT.value,
                )
                .order_by(SyncQueueEntry.id)
            )
            return [QueueEntry.model_validate(entry) for entry in result.scalars()]


class DirectSynchronizer(Synchronizer):
    """Sends every change as it happens; no queue, no automatic retry."""

    strategy = "direct"

    async def stage(self, tx: StoreTransaction, change: LocalChange) -> Optional[QueueEntry]:
        return None

    async def dispatch(self, change: LocalChange, staged: Optional[QueueEntry] = None) -> DispatchOutcome:
        try:
            result = await self._call(self.remote.push(change))
        except RemoteError as exc:
            logger.warning(
                f"Direct {change.action.value} {change.table}/{change.record_id} failed: {exc}"
            )
            if exc.kind is ErrorKind.CONFLICT:
                try:
                    async with self.store.transaction() as tx:
                        await self._flag_row(tx, resolve_table(change.table), change.record_id, "conflict")
                except LocalStorageError as store_exc:
                    logger.error(f"Could not flag conflicted row: {store_exc}")
            return DispatchOutcome(status="failed", error=str(exc), error_kind=exc.kind.value)

        try:
            async with self.store.transaction() as tx:
                row = await self._reconcile(tx, change, result)
        except LocalStorageError as exc:
            logger.error(f"Direct change applied remotely but not locally: {exc}")
            return DispatchOutcome(
                status="failed", error=str(exc), error_kind=ErrorKind.LOCAL_STORAGE.value
            )
        invalidate_table(self.cache, resolve_table(change.table))
        return DispatchOutcome(status="synced", row=row)

    async def push(self) -> PushReport:
        # Nothing is ever queued in direct mode
        return PushReport()

    async def resolve_conflicts(self, resolutions: List[ConflictResolution]) -> List[QueueEntry]:
        if resolutions:
            logger.warning("Direct synchronizer keeps no queue; conflict resolutions ignored")
        return []


def create_synchronizer(
    settings: Settings,
    store: LocalStore,
    remote: RemoteBackend,
    queue: SyncQueue,
    cache: Optional[EphemeralCache] = None,
) -> Synchronizer:
    """Build the strategy selected by ``settings.sync_strategy``."""
    if settings.sync_strategy == "direct":
        return DirectSynchronizer(
            store,
            remote,
            queue=queue,
            cache=cache,
            tenant_id=settings.tenant_id,
            request_timeout=settings.request_timeout_seconds,
            sync_interval=settings.sync_interval_seconds,
        )
    return QueuedSynchronizer(
        store,
        remote,
        queue,
        cache=cache,
        tenant_id=settings.tenant_id,
        request_timeout=settings.request_timeout_seconds,
        sync_interval=settings.sync_interval_seconds,
        push_concurrency=settings.push_concurrency,
        max_attempts=settings.max_sync_attempts,
        retry_base_delay=settings.retry_base_delay_seconds,
        retry_max_delay=settings.retry_max_delay_seconds,
    )
