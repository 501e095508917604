"""Local store package."""

from rms_offline.db.base import Base
from rms_offline.db.store import SCHEMA_VERSION, LocalStore, StoreTransaction

__all__ = ["Base", "LocalStore", "StoreTransaction", "SCHEMA_VERSION"]
