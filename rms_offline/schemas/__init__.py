"""Pydantic schemas."""

from rms_offline.schemas.realtime import ChangeType, RealtimeEvent, normalize_event
from rms_offline.schemas.sync import (
    ConflictResolution,
    DispatchOutcome,
    LocalChange,
    PullReport,
    PullResult,
    PushReport,
    PushResult,
    QueueEntry,
    QueueInspection,
    SyncReport,
    SyncStatusSnapshot,
)

__all__ = [
    "ChangeType",
    "RealtimeEvent",
    "normalize_event",
    "ConflictResolution",
    "DispatchOutcome",
    "LocalChange",
    "PullReport",
    "PullResult",
    "PushReport",
    "PushResult",
    "QueueEntry",
    "QueueInspection",
    "SyncReport",
    "SyncStatusSnapshot",
]
