"""Realtime change event schemas.

Remote producers emit a handful of frame shapes; each one is decoded into
its own model through a discriminated union and converted into the single
``RealtimeEvent`` shape consumed by the store bridge.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


_CHANGE_TYPES = {
    "INSERT": ChangeType.CREATED,
    "CREATE": ChangeType.CREATED,
    "CREATED": ChangeType.CREATED,
    "UPDATE": ChangeType.UPDATED,
    "UPDATED": ChangeType.UPDATED,
    "DELETE": ChangeType.DELETED,
    "DELETED": ChangeType.DELETED,
}

# Application broadcast event -> (table, change type)
BROADCAST_EVENTS = {
    "new_order": ("orders", ChangeType.CREATED),
    "order_created": ("orders", ChangeType.CREATED),
    "order_update": ("orders", ChangeType.UPDATED),
    "order_updated": ("orders", ChangeType.UPDATED),
    "order_status_changed": ("orders", ChangeType.UPDATED),
    "order_ready": ("orders", ChangeType.UPDATED),
    "ticket_bump": ("orders", ChangeType.UPDATED),
    "order_deleted": ("orders", ChangeType.DELETED),
    "low_stock": ("ingredients", ChangeType.UPDATED),
    "out_of_stock": ("ingredients", ChangeType.UPDATED),
    "stock_received": ("ingredients", ChangeType.UPDATED),
    "categories_updated": ("categories", ChangeType.UPDATED),
    "food_items_updated": ("food_items", ChangeType.UPDATED),
}

# Transport-level frames that never carry data changes
CONTROL_EVENTS = frozenset({
    "heartbeat",
    "ping",
    "pong",
    "ack",
    "connected",
    "phx_join",
    "phx_reply",
    "phx_close",
    "presence_state",
    "presence_diff",
    "system",
})


def change_type(value: str) -> ChangeType:
    try:
        return _CHANGE_TYPES[str(value).upper()]
    except KeyError:
        raise ValueError(f"Unknown change type {value!r}") from None


def wire_row(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Database column names (snake_case) to wire field names (camelCase)."""
    if row is None:
        return None
    return {
        (to_camel(key) if "_" in key.strip("_") else key): value
        for key, value in row.items()
    }


class RealtimeEvent(BaseModel):
    """Normalised change notification."""

    type: ChangeType
    table: str
    record_id: str
    row: Optional[Dict[str, Any]] = None
    commit_timestamp: Optional[str] = None

    @property
    def dedupe_key(self) -> Optional[str]:
        """None when the event carries no version marker; such events are always delivered."""
        marker = self.commit_timestamp
        if self.row:
            marker = self.row.get("version") or self.row.get("updatedAt") or marker
        if marker is None:
            return None
        return f"{self.type.value}:{self.table}:{self.record_id}:{marker}"


RecordId = Union[str, int]


class CanonicalFrame(BaseModel):
    """``{type, table, recordId, row}``"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    table: str
    record_id: RecordId = Field(alias="recordId")
    row: Optional[Dict[str, Any]] = None

    def to_event(self, default_table: Optional[str] = None) -> RealtimeEvent:
        return RealtimeEvent(
            type=change_type(self.type),
            table=self.table,
            record_id=str(self.record_id),
            row=wire_row(self.row),
        )


class PostgresChangeData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    table: str
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None
    commit_timestamp: Optional[str] = None


class PostgresChangePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: PostgresChangeData

    @model_validator(mode="before")
    @classmethod
    def lift_flat_payload(cls, value: Any) -> Any:
        # Older servers send the change directly as the payload
        if isinstance(value, dict) and "data" not in value and "type" in value:
            return {"data": value}
        return value


class PostgresChangesFrame(BaseModel):
    """Supabase realtime ``postgres_changes`` frame."""

    model_config = ConfigDict(extra="ignore")

    event: Literal["postgres_changes"]
    topic: Optional[str] = None
    payload: PostgresChangePayload

    def to_event(self, default_table: Optional[str] = None) -> RealtimeEvent:
        data = self.payload.data
        kind = change_type(data.type)
        source = data.old_record if kind is ChangeType.DELETED else data.record
        source = source or data.record or data.old_record or {}
        if source.get("id") is None:
            raise ValueError("postgres_changes frame without a record id")
        return RealtimeEvent(
            type=kind,
            table=data.table,
            record_id=str(source["id"]),
            row=wire_row(source),
            commit_timestamp=data.commit_timestamp,
        )


class ClientCallbackPayload(BaseModel):
    """Supabase client callback payload ``{eventType, new, old}``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_type: str = Field(alias="eventType")
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    table: Optional[str] = None
    commit_timestamp: Optional[str] = None

    def to_event(self, default_table: Optional[str] = None) -> RealtimeEvent:
        kind = change_type(self.event_type)
        source = (self.old if kind is ChangeType.DELETED else self.new) or self.new or self.old or {}
        table = self.table or default_table
        if table is None or source.get("id") is None:
            raise ValueError("client payload without a table or record id")
        return RealtimeEvent(
            type=kind,
            table=table,
            record_id=str(source["id"]),
            row=wire_row(source),
            commit_timestamp=self.commit_timestamp,
        )


class BroadcastMessage(BaseModel):
    """Application broadcast ``{event, data}`` such as ``new_order``."""

    model_config = ConfigDict(extra="ignore")

    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[str] = None

    def to_event(self, default_table: Optional[str] = None) -> RealtimeEvent:
        name = self.event.lower().replace("-", "_")
        if name not in BROADCAST_EVENTS:
            raise ValueError(f"Unhandled broadcast event {self.event!r}")
        table, kind = BROADCAST_EVENTS[name]
        data = wire_row(self.data) or {}
        record_id = data.get("id") or data.get("recordId") or data.get("orderId")
        if record_id is None:
            raise ValueError(f"Broadcast {self.event!r} without a record id")
        # Only a full row (one carrying its own id) can be merged
        row = data if data.get("id") is not None else None
        return RealtimeEvent(
            type=kind,
            table=data.get("table", table),
            record_id=str(record_id),
            row=row,
            commit_timestamp=self.timestamp,
        )


def frame_kind(value: Any) -> Optional[str]:
    if isinstance(value, BaseModel):
        return {
            CanonicalFrame: "canonical",
            PostgresChangesFrame: "postgres_changes",
            ClientCallbackPayload: "client_callback",
            BroadcastMessage: "broadcast",
        }.get(type(value))
    if not isinstance(value, dict):
        return None
    if value.get("event") == "postgres_changes":
        return "postgres_changes"
    if "eventType" in value:
        return "client_callback"
    if "recordId" in value or "record_id" in value:
        return "canonical"
    if "event" in value:
        return "broadcast"
    return None


ChangeFrame = Annotated[
    Union[
        Annotated[CanonicalFrame, Tag("canonical")],
        Annotated[PostgresChangesFrame, Tag("postgres_changes")],
        Annotated[ClientCallbackPayload, Tag("client_callback")],
        Annotated[BroadcastMessage, Tag("broadcast")],
    ],
    Discriminator(frame_kind),
]

change_frame_adapter = TypeAdapter(ChangeFrame)


def is_control_frame(message: Any) -> bool:
    if not isinstance(message, dict):
        return False
    event = str(message.get("event") or message.get("type") or "").lower()
    return event in CONTROL_EVENTS or message.get("topic") == "phoenix"


def normalize_event(message: Any, default_table: Optional[str] = None) -> Optional[RealtimeEvent]:
    """
    Decode one transport message into a ``RealtimeEvent``.

    Returns None for control frames and for messages that are not data
    changes; those are logged at debug level and dropped.
    """
    if is_control_frame(message):
        return None
    try:
        frame = change_frame_adapter.validate_python(message)
        return frame.to_event(default_table)
    except (ValidationError, ValueError) as exc:
        logger.debug(f"Dropping unrecognised realtime message: {exc}")
        return None
