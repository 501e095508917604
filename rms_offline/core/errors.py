"""Error taxonomy for the offline data layer.

transient      network / 5xx - retried automatically with backoff
permanent      validation / not found - surfaced, never retried
conflict       remote row changed since last observed - surfaced with options
local-storage  client store write failed - aborted, retried on next drain
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Classification recorded on failed queue entries."""
    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    NETWORK_ERROR = "network_error"
    LOCAL_STORAGE = "local_storage"
    MAX_ATTEMPTS = "max_attempts"


TRANSIENT_KINDS = frozenset({ErrorKind.SERVER_ERROR, ErrorKind.NETWORK_ERROR})


class OfflineError(Exception):
    """Base class for all offline data layer errors."""


class RemoteError(OfflineError):
    """A structured failure returned by (or on the way to) the remote backend."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status_code: Optional[int] = None,
        server_row: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.status_code = status_code
        self.server_row = server_row

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.kind.value} ({self.status_code}): {self.message}"
        return f"{self.kind.value}: {self.message}"


class LocalStorageError(OfflineError):
    """A local store operation failed; nothing from it was committed."""


class UnknownTableError(OfflineError, KeyError):
    """Table name is not part of the local store schema."""


class ConfirmationRequired(OfflineError):
    """A destructive maintenance operation was not confirmed."""

    def __init__(self, operation: str, phrase: str):
        super().__init__(f"{operation} requires typing {phrase!r} to confirm")
        self.operation = operation
        self.phrase = phrase


class RealtimeConnectionError(OfflineError):
    """The realtime listener gave up reconnecting; fall back to polling."""

    def __init__(self, tenant_id: str, attempts: int, last_error: Optional[BaseException] = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(
            f"Realtime channel for tenant {tenant_id} failed after {attempts} attempts{detail}"
        )
        self.tenant_id = tenant_id
        self.attempts = attempts
        self.last_error = last_error
