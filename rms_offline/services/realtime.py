"""
Realtime Change Service
Live remote change notifications for the local store

One transport connection per tenant, shared by every subscriber through a
reference-counted registry. Messages are normalised into ``RealtimeEvent``
and applied to the local store through the same remote-wins merge as pull.
"""
import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from enum import Enum
from itertools import count
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from rms_offline.core.cache import EphemeralCache, invalidate_table
from rms_offline.core.clock import utcnow_iso
from rms_offline.core.config import Settings
from rms_offline.core.errors import RealtimeConnectionError, UnknownTableError
from rms_offline.db.store import LocalStore
from rms_offline.models import LOCAL_ONLY_TABLES, resolve_table
from rms_offline.schemas.realtime import ChangeType, RealtimeEvent, normalize_event
from rms_offline.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

EventCallback = Callable[[RealtimeEvent], Union[None, Awaitable[None]]]
ErrorHandler = Callable[[RealtimeConnectionError], Union[None, Awaitable[None]]]


class ConnectionState(str, Enum):
    """Realtime connection states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ChannelClosed(Exception):
    """The transport closed the channel."""


class ChangeChannel(ABC):
    """Tenant-scoped transport delivering raw change messages."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the transport and subscribe; raise on failure."""

    @abstractmethod
    async def receive(self) -> Any:
        """Next decoded message; raise ``ChannelClosed`` when the channel ends."""

    @abstractmethod
    async def close(self) -> None:
        """Close the transport. Safe to call more than once."""


ChannelFactory = Callable[[str], ChangeChannel]


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class WebSocketChangeChannel(ChangeChannel):
    """
    Change channel over a websocket speaking the Supabase realtime
    (Phoenix) protocol: join a tenant-filtered ``postgres_changes`` topic and
    keep it alive with heartbeats.
    """

    def __init__(
        self,
        url: str,
        tenant_id: str,
        api_token: Optional[str] = None,
        tables: Optional[List[str]] = None,
        heartbeat_interval: float = 25.0,
        open_timeout: float = 10.0,
    ):
        self.url = url
        self.tenant_id = tenant_id
        self.api_token = api_token
        self.tables = tables or ["*"]
        self.heartbeat_interval = heartbeat_interval
        self.open_timeout = open_timeout
        self.topic = f"realtime:tenant-{tenant_id}"
        self._ws = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._refs = count(1)

    def join_message(self) -> Dict[str, Any]:
        changes = [
            {
                "event": "*",
                "schema": "public",
                **({} if table == "*" else {"table": table}),
                "filter": f"tenant_id=eq.{self.tenant_id}",
            }
            for table in self.tables
        ]
        payload: Dict[str, Any] = {"config": {"postgres_changes": changes}}
        if self.api_token:
            payload["access_token"] = self.api_token
        return {"topic": self.topic, "event": "phx_join", "payload": payload, "ref": str(next(self._refs))}

    async def connect(self) -> None:
        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else None
        self._ws = await ws_connect(
            self.url,
            additional_headers=headers,
            open_timeout=self.open_timeout,
            close_timeout=5,
        )
        await self._ws.send(json.dumps(self.join_message()))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while self._ws is not None:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._ws.send(json.dumps({
                    "topic": "phoenix",
                    "event": "heartbeat",
                    "payload": {},
                    "ref": str(next(self._refs)),
                }))
            except (ConnectionClosed, WebSocketException):
                return

    async def receive(self) -> Any:
        if self._ws is None:
            raise ChannelClosed("not connected")
        try:
            raw = await self._ws.recv()
        except ConnectionClosed as exc:
            raise ChannelClosed(str(exc)) from exc
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding non-JSON realtime frame")
            return None

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if ws is not None:
            await ws.close()


def websocket_channel_factory(settings: Settings) -> ChannelFactory:
    def factory(tenant_id: str) -> ChangeChannel:
        return WebSocketChangeChannel(settings.realtime_url, tenant_id, api_token=settings.api_token)
    return factory


class RealtimeChangeListener:
    """
    Maintains one live channel for a tenant and fans normalised events out to
    registered callbacks, in transport order.

    Reconnects with exponential backoff after a closure; after
    ``max_reconnect_attempts`` consecutive failed connects it stops and
    reports ``RealtimeConnectionError`` to error handlers and ``wait()``.
    Delivery is at-least-once; a bounded window of recent event keys
    suppresses most duplicates.
    """

    def __init__(
        self,
        tenant_id: str,
        channel_factory: ChannelFactory,
        default_table: Optional[str] = "orders",
        reconnect_base: float = 1.0,
        reconnect_max: float = 30.0,
        max_reconnect_attempts: int = 5,
        dedupe_window: int = 256,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.tenant_id = tenant_id
        self.channel_factory = channel_factory
        self.default_table = default_table
        self.reconnect_base = reconnect_base
        self.reconnect_max = reconnect_max
        self.max_reconnect_attempts = max_reconnect_attempts
        self.dedupe_window = dedupe_window
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.failed_attempts = 0
        self.error: Optional[RealtimeConnectionError] = None
        self._callbacks: "OrderedDict[int, EventCallback]" = OrderedDict()
        self._error_handlers: List[ErrorHandler] = []
        self._tokens = count(1)
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._task: Optional[asyncio.Task] = None
        self._channel: Optional[ChangeChannel] = None
        self._stopping = False

        self.stats = {
            "connects": 0,
            "events_delivered": 0,
            "duplicates_dropped": 0,
            "frames_ignored": 0,
        }

    # Registration

    def add_callback(self, callback: EventCallback) -> int:
        token = next(self._tokens)
        self._callbacks[token] = callback
        return token

    def remove_callback(self, token: int) -> None:
        self._callbacks.pop(token, None)

    @property
    def callback_count(self) -> int:
        return len(self._callbacks)

    def add_error_handler(self, handler: ErrorHandler) -> None:
        self._error_handlers.append(handler)

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def reconnect_delay(self, attempt: int) -> float:
        return min(self.reconnect_base * 2 ** attempt, self.reconnect_max)

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stopping = False
        self.error = None
        self.failed_attempts = 0
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_channel()
        self._set_state(ConnectionState.DISCONNECTED)

    async def wait(self) -> None:
        """Wait for the listener to finish; raises if it gave up reconnecting."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        if self.error is not None:
            raise self.error

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self.state:
            logger.debug(f"Realtime tenant={self.tenant_id}: {self.state.value} -> {state.value}")
            self.state = state

    async def _close_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception as exc:
                logger.debug(f"Error closing realtime channel: {exc}")

    async def _run(self) -> None:
        last_error: Optional[BaseException] = None
        while not self._stopping:
            self._set_state(ConnectionState.CONNECTING)
            channel = self.channel_factory(self.tenant_id)
            self._channel = channel
            try:
                await channel.connect()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                self.failed_attempts += 1
                await self._close_channel()
                self._set_state(ConnectionState.DISCONNECTED)
                if self.failed_attempts >= self.max_reconnect_attempts:
                    await self._give_up(last_error)
                    return
                delay = self.reconnect_delay(self.failed_attempts - 1)
                logger.warning(
                    f"Realtime connect failed for tenant {self.tenant_id} "
                    f"(attempt {self.failed_attempts}/{self.max_reconnect_attempts}): {exc}; "
                    f"retrying in {delay:.0f}s"
                )
                await self._sleep(delay)
                continue

            self.failed_attempts = 0
            self.stats["connects"] += 1
            self._set_state(ConnectionState.CONNECTED)
            logger.info(f"Realtime connected for tenant {self.tenant_id}")
            try:
                await self._read(channel)
            except ChannelClosed as exc:
                logger.info(f"Realtime channel closed for tenant {self.tenant_id}: {exc}")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(f"Realtime channel error for tenant {self.tenant_id}: {exc}")
            finally:
                await self._close_channel()
                self._set_state(ConnectionState.DISCONNECTED)

            if not self._stopping:
                await self._sleep(self.reconnect_delay(0))

    async def _give_up(self, last_error: Optional[BaseException]) -> None:
        self.error = RealtimeConnectionError(self.tenant_id, self.failed_attempts, last_error)
        logger.error(str(self.error))
        for handler in list(self._error_handlers):
            try:
                await _maybe_await(handler(self.error))
            except Exception:
                logger.exception("Realtime error handler failed")

    async def _read(self, channel: ChangeChannel) -> None:
        while not self._stopping:
            message = await channel.receive()
            event = normalize_event(message, self.default_table)
            if event is None:
                self.stats["frames_ignored"] += 1
                continue
            if self._is_duplicate(event):
                self.stats["duplicates_dropped"] += 1
                continue
            await self.deliver(event)

    def _is_duplicate(self, event: RealtimeEvent) -> bool:
        key = event.dedupe_key
        if key is None:
            return False
        if key in self._seen:
            self._seen.move_to_end(key)
            return True
        self._seen[key] = None
        while len(self._seen) > self.dedupe_window:
            self._seen.popitem(last=False)
        return False

    async def deliver(self, event: RealtimeEvent) -> None:
        """Invoke every callback; one failing callback never stops the others."""
        for callback in list(self._callbacks.values()):
            try:
                await _maybe_await(callback(event))
            except Exception:
                logger.exception(f"Realtime callback failed for {event.table}/{event.record_id}")
        self.stats["events_delivered"] += 1


class Subscription:
    """Handle returned by ``RealtimeRegistry.subscribe``."""

    def __init__(self, registry: "RealtimeRegistry", tenant_id: str, token: int):
        self.registry = registry
        self.tenant_id = tenant_id
        self.token = token
        self.active = True

    async def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            await self.registry._release(self)


class RealtimeRegistry:
    """
    Reference-counted realtime subscriptions keyed by tenant.

    The registry owns each listener: the first subscriber for a tenant starts
    it and the last one to unsubscribe tears it down.
    """

    def __init__(
        self,
        channel_factory: ChannelFactory,
        error_handlers: Optional[List[ErrorHandler]] = None,
        **listener_options: Any,
    ):
        self.channel_factory = channel_factory
        self.error_handlers = list(error_handlers or [])
        self.listener_options = listener_options
        self._listeners: Dict[str, RealtimeChangeListener] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        channel_factory: Optional[ChannelFactory] = None,
        **kwargs: Any,
    ) -> "RealtimeRegistry":
        return cls(
            channel_factory or websocket_channel_factory(settings),
            reconnect_base=settings.realtime_reconnect_base_seconds,
            reconnect_max=settings.realtime_reconnect_max_seconds,
            max_reconnect_attempts=settings.realtime_max_reconnect_attempts,
            **kwargs,
        )

    def subscribe(self, tenant_id: str, callback: EventCallback) -> Subscription:
        if not tenant_id:
            raise ValueError("tenant_id is required for realtime subscriptions")
        listener = self._listeners.get(tenant_id)
        if listener is None:
            listener = RealtimeChangeListener(tenant_id, self.channel_factory, **self.listener_options)
            for handler in self.error_handlers:
                listener.add_error_handler(handler)
            self._listeners[tenant_id] = listener
            logger.info(f"Opening realtime channel for tenant {tenant_id}")
        token = listener.add_callback(callback)
        if not listener.running:
            listener.start()
        logger.debug(f"Realtime subscribers for tenant {tenant_id}: {listener.callback_count}")
        return Subscription(self, tenant_id, token)

    async def _release(self, subscription: Subscription) -> None:
        listener = self._listeners.get(subscription.tenant_id)
        if listener is None:
            return
        listener.remove_callback(subscription.token)
        if listener.callback_count == 0:
            del self._listeners[subscription.tenant_id]
            await listener.stop()
            logger.info(f"Closed realtime channel for tenant {subscription.tenant_id}")

    def listener(self, tenant_id: str) -> Optional[RealtimeChangeListener]:
        return self._listeners.get(tenant_id)

    def subscriber_count(self, tenant_id: str) -> int:
        listener = self._listeners.get(tenant_id)
        return listener.callback_count if listener else 0

    async def close(self) -> None:
        listeners, self._listeners = self._listeners, {}
        for listener in listeners.values():
            await listener.stop()


class RealtimeStoreBridge:
    """
    Applies realtime events to the local store.

    Uses the same remote-wins merge as pull and skips records with
    outstanding local changes. ``DELETED`` soft-deletes the local row.
    """

    def __init__(
        self,
        store: LocalStore,
        queue: Optional[SyncQueue] = None,
        cache: Optional[EphemeralCache] = None,
        tenant_id: Optional[str] = None,
    ):
        self.store = store
        self.queue = queue
        self.cache = cache
        self.tenant_id = tenant_id

    async def __call__(self, event: RealtimeEvent) -> bool:
        return await self.apply(event)

    async def apply(self, event: RealtimeEvent) -> bool:
        """Returns True when the local store changed."""
        try:
            table = resolve_table(event.table)
        except UnknownTableError:
            logger.debug(f"Ignoring realtime event for unknown table {event.table}")
            return False
        if table in LOCAL_ONLY_TABLES:
            return False

        row = event.row
        if row and self.tenant_id and row.get("tenantId") not in (None, self.tenant_id):
            logger.debug(f"Ignoring realtime event for another tenant: {table}/{event.record_id}")
            return False

        async with self.store.transaction() as tx:
            if self.queue is not None and await self.queue.has_outstanding(table, event.record_id, tx=tx):
                logger.debug(f"Realtime {event.type.value} for {table}/{event.record_id} deferred: local changes pending")
                return False

            if event.type is ChangeType.DELETED:
                existing = await tx.get(table, event.record_id)
                if existing is None or existing.get("deletedAt"):
                    changed = False
                else:
                    deleted_at = (row or {}).get("deletedAt") or utcnow_iso()
                    await tx.put(table, {**existing, "deletedAt": deleted_at, "syncStatus": "synced"})
                    changed = True
            elif row:
                changed = await tx.merge_remote(
                    table, {**row, "id": event.record_id, "syncStatus": "synced"}
                )
            else:
                # Bare notification; nothing to merge until the next pull
                changed = False

        invalidate_table(self.cache, table)
        if changed:
            logger.debug(f"Realtime {event.type.value} applied to {table}/{event.record_id}")
        return changed
