"""Sync schemas for offline-first synchronization."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from rms_offline.models.offline_sync import QueueStatus, SyncAction


class LocalChange(BaseModel):
    """A local mutation headed for the remote backend."""

    table: str
    action: SyncAction
    record_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    tenant_id: Optional[str] = None
    base_version: Optional[str] = None  # updatedAt or version last observed
    force: bool = False


class QueueEntry(BaseModel):
    """Read model of a sync queue row."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    table_name: str
    action: SyncAction
    record_id: str
    tenant_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: QueueStatus
    attempts: int = 0
    force: bool = False
    base_version: Optional[str] = None
    created_at: datetime
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    synced_at: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    conflict: Optional[Dict[str, Any]] = None
    resolution: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.table_name, self.record_id)

    def to_change(self) -> LocalChange:
        return LocalChange(
            table=self.table_name,
            action=self.action,
            record_id=self.record_id,
            payload=self.payload,
            tenant_id=self.tenant_id,
            base_version=self.base_version,
            force=self.force,
        )


class PushResult(BaseModel):
    """Server acknowledgement of one pushed change."""

    row: Optional[Dict[str, Any]] = None
    new_id: Optional[str] = None


class PullResult(BaseModel):
    """Changes since a checkpoint, keyed by local table name."""

    timestamp: Optional[str] = None
    changes: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict)


class PushReport(BaseModel):
    synced: int = 0
    failed: int = 0
    retrying: int = 0
    skipped: int = 0
    conflicts: int = 0

    @property
    def attempted(self) -> int:
        return self.synced + self.failed + self.retrying


class PullReport(BaseModel):
    applied: int = 0
    skipped: int = 0
    deleted: int = 0
    full: bool = False
    timestamp: Optional[str] = None


class SyncReport(BaseModel):
    push: PushReport = Field(default_factory=PushReport)
    pull: Optional[PullReport] = None
    error: Optional[str] = None


class DispatchOutcome(BaseModel):
    """What happened to a change handed to the synchronizer."""

    status: Literal["queued", "synced", "failed"]
    entry_id: Optional[int] = None
    row: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


class ConflictResolution(BaseModel):
    """Operator decision for one conflicted queue entry."""

    entry_id: int
    decision: Literal["use-server", "use-local", "merge"]
    payload: Optional[Dict[str, Any]] = None  # explicit merged row for "merge"


class SyncStatusSnapshot(BaseModel):
    is_online: bool
    is_syncing: bool
    last_synced: Optional[datetime] = None
    pending_changes: int = 0
    failed_changes: int = 0
    strategy: Literal["queued", "direct"]


class QueueInspection(BaseModel):
    """Diagnostic summary of the sync queue."""

    total: int
    by_status: Dict[str, int]
    by_table: Dict[str, Dict[str, int]]
    samples: List[QueueEntry]
    stuck: List[QueueEntry]
