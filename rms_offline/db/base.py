"""SQLAlchemy declarative base and the row mixins shared by local tables."""

from typing import Any, ClassVar, Dict, Optional

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from rms_offline.core.clock import parse_timestamp


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class RowMixin:
    """Maps a JSON row (camelCase wire fields) onto a table's columns.

    The full row lives in ``data``; fields named in ``__indexed_fields__``
    are copied into real indexed columns so they can be queried.
    """

    __indexed_fields__: ClassVar[Dict[str, str]] = {}

    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    @classmethod
    def indexed_fields(cls) -> Dict[str, str]:
        return dict(cls.__indexed_fields__)

    @classmethod
    def column_for(cls, field: str) -> str:
        """Column name backing an indexed row field."""
        try:
            return cls.indexed_fields()[field]
        except KeyError:
            raise KeyError(f"{field!r} is not an indexed field of {cls.__tablename__}") from None

    @classmethod
    def columns_from_row(cls, row: Dict[str, Any]) -> Dict[str, Any]:
        columns = {
            column: row.get(field)
            for field, column in cls.indexed_fields().items()
        }
        if columns.get("id") is None:
            columns.pop("id", None)
        columns["data"] = dict(row)
        return columns

    def apply_row(self, row: Dict[str, Any]) -> None:
        for column, value in self.columns_from_row(row).items():
            setattr(self, column, value)

    def to_row(self) -> Dict[str, Any]:
        row = dict(self.data or {})
        row["id"] = self.id
        return row


class MirroredRecordMixin(RowMixin):
    """Columns shared by every table mirrored from the remote backend.

    ``updated_at`` and ``version`` are server-authoritative once a row has
    synced; ``deleted_at`` is the soft-delete marker.
    """

    __indexed_fields__: ClassVar[Dict[str, str]] = {
        "id": "id",
        "tenantId": "tenant_id",
        "updatedAt": "updated_at",
        "deletedAt": "deleted_at",
    }
    __extra_indexes__: ClassVar[Dict[str, str]] = {}

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    updated_at: Mapped[Optional[str]] = mapped_column(String(40), index=True, nullable=True)
    deleted_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True, default=None)
    version: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    @classmethod
    def indexed_fields(cls) -> Dict[str, str]:
        return {**MirroredRecordMixin.__indexed_fields__, **cls.__extra_indexes__}

    @classmethod
    def columns_from_row(cls, row: Dict[str, Any]) -> Dict[str, Any]:
        columns = super().columns_from_row(row)
        version = row.get("version")
        columns["version"] = version if isinstance(version, int) else None
        return columns

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def is_newer_than(self, row: Dict[str, Any]) -> bool:
        """True if the stored row outranks ``row``.

        Integer versions win when both sides carry one, otherwise the later
        ``updatedAt`` wins. Ties go to the incoming row so re-applying the same
        row is a no-op rewrite.
        """
        incoming_version = row.get("version")
        if isinstance(incoming_version, int) and self.version is not None:
            return self.version > incoming_version

        stored_ts = parse_timestamp(self.updated_at)
        incoming_ts = parse_timestamp(row.get("updatedAt"))
        if stored_ts is None or incoming_ts is None:
            return False
        return stored_ts > incoming_ts
