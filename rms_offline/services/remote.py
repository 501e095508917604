"""Abstract base class for the remote backend the local store syncs with."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from rms_offline.schemas.sync import LocalChange, PullResult, PushResult


class RemoteBackend(ABC):
    """Base interface for the server side of synchronization.

    Implementations raise ``RemoteError`` with a classified ``kind`` for
    every failure so the synchronizer can decide between retrying,
    surfacing and conflict handling.
    """

    @abstractmethod
    async def push(self, change: LocalChange) -> PushResult:
        """Apply one local change remotely and return the server row."""

    @abstractmethod
    async def pull(self, tenant_id: str, since: Optional[str] = None) -> PullResult:
        """Changes for a tenant since a checkpoint (full snapshot when None)."""

    @abstractmethod
    async def fetch_report(
        self,
        tenant_id: str,
        report_type: str,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Server-side aggregated report."""

    @abstractmethod
    async def health(self) -> bool:
        """True when the backend is reachable."""

    async def aclose(self) -> None:
        """Release network resources."""
        return None
