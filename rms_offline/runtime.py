"""
Runtime composition: wires store, cache, queue, synchronizer, realtime and
repositories for one client process.

    async with OfflineRuntime(get_settings()) as runtime:
        order = await runtime.orders.create({...})
"""

import logging
from typing import Optional

from rms_offline.core.cache import EphemeralCache
from rms_offline.core.config import Settings
from rms_offline.core.errors import RealtimeConnectionError
from rms_offline.db.store import LocalStore
from rms_offline.repositories import (
    CartRepository,
    IngredientRepository,
    OrderItemRepository,
    OrderRepository,
    RecipeRepository,
    ReportRepository,
    TenantRepository,
)
from rms_offline.services.http_remote import HttpRemoteBackend
from rms_offline.services.maintenance import QueueMaintenance
from rms_offline.services.realtime import (
    ChannelFactory,
    RealtimeRegistry,
    RealtimeStoreBridge,
    Subscription,
)
from rms_offline.services.remote import RemoteBackend
from rms_offline.services.sync_queue import SyncQueue
from rms_offline.services.synchronizer import Synchronizer, create_synchronizer

logger = logging.getLogger(__name__)


class OfflineRuntime:
    """Owns every long-lived component and their start/stop order."""

    def __init__(
        self,
        settings: Settings,
        remote: Optional[RemoteBackend] = None,
        channel_factory: Optional[ChannelFactory] = None,
    ):
        self.settings = settings
        self.store = LocalStore(settings.database_url, echo=False)
        self.cache = EphemeralCache(
            default_ttl=settings.cache_default_ttl_seconds,
            max_size=settings.cache_max_size,
        )
        self.queue = SyncQueue(self.store)
        self._owns_remote = remote is None
        self.remote = remote or HttpRemoteBackend.from_settings(settings)
        self.synchronizer: Synchronizer = create_synchronizer(
            settings, self.store, self.remote, self.queue, cache=self.cache
        )
        self.maintenance = QueueMaintenance(self.queue)

        self._realtime_wanted = channel_factory is not None or settings.realtime_configured
        self.realtime: Optional[RealtimeRegistry] = None
        if self._realtime_wanted:
            self.realtime = RealtimeRegistry.from_settings(
                settings,
                channel_factory,
                error_handlers=[self._on_realtime_failure],
            )
        self.bridge = RealtimeStoreBridge(
            self.store, queue=self.queue, cache=self.cache, tenant_id=settings.tenant_id
        )
        self._subscription: Optional[Subscription] = None

        tenant_id = settings.tenant_id or ""
        self.orders = OrderRepository(self.store, self.synchronizer, tenant_id, self.cache)
        self.order_items = OrderItemRepository(self.store, self.synchronizer, tenant_id, self.cache)
        self.ingredients = IngredientRepository(self.store, self.synchronizer, tenant_id, self.cache)
        self.recipes = RecipeRepository(self.store, self.synchronizer, tenant_id, self.cache)
        self.tenants = TenantRepository(self.store, self.synchronizer, tenant_id, self.cache)
        self.cart = CartRepository(self.store)
        self.reports = ReportRepository(self.store, self.synchronizer, tenant_id, self.cache)

    async def open(self) -> "OfflineRuntime":
        await self.store.open()
        return self

    async def start(self) -> None:
        """Open the store and start background work."""
        if not self.store.is_open:
            await self.store.open()
        self.cache.start_cleanup(self.settings.cache_cleanup_interval_seconds)
        self.synchronizer.start(self.settings.sync_interval_seconds)
        if self.realtime is not None and self.settings.tenant_id:
            self._subscription = self.realtime.subscribe(self.settings.tenant_id, self.bridge)
        logger.info(
            f"Offline runtime started (strategy={self.synchronizer.strategy}, "
            f"realtime={'on' if self._subscription else 'off'})"
        )

    async def _on_realtime_failure(self, error: RealtimeConnectionError) -> None:
        # Periodic pull keeps the store converging while realtime is down
        logger.warning(f"Realtime unavailable, relying on periodic pull: {error}")
        if not self.synchronizer.running:
            self.synchronizer.start(self.settings.sync_interval_seconds)

    async def stop(self) -> None:
        """Tear down in reverse order of ``start()``."""
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None
        if self.realtime is not None:
            await self.realtime.close()
        await self.synchronizer.close()
        await self.cache.stop_cleanup()
        if self._owns_remote:
            await self.remote.aclose()
        await self.store.close()
        logger.info("Offline runtime stopped")

    async def __aenter__(self) -> "OfflineRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
