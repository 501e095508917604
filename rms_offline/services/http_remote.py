"""HTTP remote backend on httpx."""

import logging
from typing import Any, Dict, Optional

import httpx

from rms_offline.core.config import Settings
from rms_offline.core.errors import ErrorKind, RemoteError, UnknownTableError
from rms_offline.models import resolve_table, wire_name
from rms_offline.schemas.sync import LocalChange, PullResult, PushResult
from rms_offline.services.remote import RemoteBackend

logger = logging.getLogger(__name__)


def kind_for_status(status_code: int) -> ErrorKind:
    """Classify an HTTP status code."""
    if status_code in (400, 422):
        return ErrorKind.VALIDATION
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code in (409, 412):
        return ErrorKind.CONFLICT
    if status_code == 408 or status_code == 429:
        return ErrorKind.NETWORK_ERROR
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.VALIDATION


def _error_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        for key in ("message", "detail", "error"):
            value = body.get(key)
            if isinstance(value, str):
                return value
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
    return default


class HttpRemoteBackend(RemoteBackend):
    """REST sync API client.

    Endpoints: ``POST /sync/push``, ``GET /sync/pull``, ``GET /reports/{type}``
    and ``GET /health``.
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "HttpRemoteBackend":
        return cls(
            settings.api_base_url,
            api_token=settings.api_token,
            timeout=settings.request_timeout_seconds,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteError(ErrorKind.NETWORK_ERROR, f"Timed out calling {path}") from exc
        except httpx.TransportError as exc:
            raise RemoteError(ErrorKind.NETWORK_ERROR, f"{type(exc).__name__}: {exc}") from exc

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = None

        if resp.status_code >= 400:
            kind = kind_for_status(resp.status_code)
            server_row = None
            if isinstance(body, dict):
                server_row = body.get("serverRow") or body.get("server_row")
            raise RemoteError(
                kind,
                _error_message(body, resp.reason_phrase or "request failed"),
                status_code=resp.status_code,
                server_row=server_row,
            )
        if body is None:
            raise RemoteError(
                ErrorKind.SERVER_ERROR,
                f"Invalid JSON from {path}",
                status_code=resp.status_code,
            )
        return body

    async def push(self, change: LocalChange) -> PushResult:
        request = {
            "table": wire_name(change.table),
            "action": change.action.value,
            "recordId": change.record_id,
            "data": change.payload,
            "baseVersion": change.base_version,
            "force": change.force,
        }
        body = await self._request("POST", "/sync/push", json={"changes": [request]})

        results = body.get("results") if isinstance(body, dict) else None
        result = results[0] if results else body
        if not isinstance(result, dict):
            raise RemoteError(ErrorKind.SERVER_ERROR, "Malformed push response")

        # Per-change failures are reported inside a 200 body
        if result.get("success") is False or result.get("error"):
            status_code = result.get("status")
            if result.get("kind"):
                kind = ErrorKind(result["kind"])
            elif isinstance(status_code, int):
                kind = kind_for_status(status_code)
            else:
                kind = ErrorKind.SERVER_ERROR
            raise RemoteError(
                kind,
                _error_message(result, "change rejected"),
                status_code=status_code if isinstance(status_code, int) else None,
                server_row=result.get("serverRow"),
            )

        new_id = result.get("newId")
        return PushResult(row=result.get("row"), new_id=str(new_id) if new_id is not None else None)

    async def pull(self, tenant_id: str, since: Optional[str] = None) -> PullResult:
        params = {"tenantId": tenant_id}
        if since:
            params["since"] = since
        body = await self._request("GET", "/sync/pull", params=params)

        changes: Dict[str, list] = {}
        for table, rows in (body.get("changes") or {}).items():
            try:
                local = resolve_table(table)
            except UnknownTableError:
                logger.debug(f"Ignoring pulled rows for unknown table {table}")
                continue
            changes.setdefault(local, []).extend(rows or [])
        return PullResult(timestamp=body.get("timestamp"), changes=changes)

    async def fetch_report(
        self,
        tenant_id: str,
        report_type: str,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        params = {"tenantId": tenant_id, **(filters or {})}
        return await self._request("GET", f"/reports/{report_type}", params=params)

    async def health(self) -> bool:
        try:
            await self._request("GET", "/health")
            return True
        except RemoteError as exc:
            logger.debug(f"Health check failed: {exc}")
            return False
