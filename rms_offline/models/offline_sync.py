"""
Offline Sync Models - Local Mutation Queue and Sync State

Enables the client to keep working offline and reconcile when connectivity
is restored.

Key Features:
- Ordered mutation queue with an explicit lifecycle per entry
- Pull checkpoints per tenant
- Store schema version tracking
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON, Index
)
import enum

from rms_offline.db.base import Base


class QueueStatus(str, enum.Enum):
    """Sync queue entry status."""
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class SyncAction(str, enum.Enum):
    """Kind of local mutation recorded in the queue."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


OUTSTANDING_STATUSES = (QueueStatus.PENDING.value, QueueStatus.SYNCING.value)


class SyncQueueEntry(Base):
    """
    One local mutation waiting to be (or already) applied to the remote.

    Entries are never deleted automatically; SYNCED rows stay as an audit
    trail until maintenance prunes them.
    """
    __tablename__ = "sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_record", "table_name", "record_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=True, index=True)

    table_name = Column(String(64), nullable=False, index=True)
    action = Column(String(10), nullable=False)  # CREATE, UPDATE, DELETE
    record_id = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    base_version = Column(String(40), nullable=True)  # updatedAt/version last observed

    status = Column(String(10), nullable=False, default=QueueStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    force = Column(Boolean, nullable=False, default=False)

    # Naive UTC; SQLite drops tzinfo on the way back out
    created_at = Column(DateTime, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=True)

    # Failure details
    error = Column(Text, nullable=True)
    error_kind = Column(String(30), nullable=True)
    conflict = Column(JSON, nullable=True)  # {"reason": ..., "server_row": {...}}
    resolution = Column(String(20), nullable=True)  # use-server, use-local, merge

    def __repr__(self) -> str:
        return (
            f"<SyncQueueEntry {self.id} {self.action} "
            f"{self.table_name}/{self.record_id} {self.status}>"
        )


class SyncCheckpoint(Base):
    """
    Last successful pull per tenant.
    """
    __tablename__ = "sync_checkpoints"

    tenant_id = Column(String(64), primary_key=True)
    server_timestamp = Column(String(40), nullable=True)
    pulled_at = Column(DateTime, nullable=True)
    rows_applied = Column(Integer, default=0)


class StoreMeta(Base):
    """
    Key/value metadata about the local store itself (schema version).
    """
    __tablename__ = "store_meta"

    key = Column(String(50), primary_key=True)
    value = Column(String(200), nullable=True)
