"""
Client sync layer wiring.

SyncLayer builds every component from settings and owns their lifecycle.
Presentation code holds one SyncLayer per process and reaches documents,
permissions and realtime watches through it.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from shared.config import SyncSettings, get_settings
from shared.errors import StorageError
from shared.logging import configure_logging, get_logger
from shared.metrics import SyncMetrics
from shared.retry import RetryConfig
from .adapters.documents_client import DocumentsClient
from .adapters.http_client import HttpFetchClient
from .adapters.permissions_client import PermissionsClient
from .caching.cache_store import CacheStore
from .caching.persistent import PersistentTier, RedisPersistentTier
from .coalescing.coalescer import RequestCoalescer
from .documents.service import DOCUMENT_PREFIX, DocumentConfigService, document_resource
from .invalidation.bus import InvalidationBus, InvalidationReason, InvalidationScope
from .network import NetworkClass, NetworkProfile
from .permissions.models import PermissionsSnapshot, SessionIdentity
from .permissions.store import PermissionsStore
from .realtime.channel import ChannelClient, WebSocketChannelClient
from .realtime.reconciler import ChannelClassRegistry, RealtimeReconciler


class SyncLayer:
    """Process-wide data synchronization layer."""

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        network_class: Optional[NetworkClass] = None,
        channel_client: Optional[ChannelClient] = None,
        persistent: Optional[PersistentTier] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics: Optional[SyncMetrics] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        configure_logging("client-sync", self.settings.log_level)
        self.logger = get_logger("sync.layer")

        self.profile = NetworkProfile.from_settings(self.settings, network_class)
        self.metrics = metrics or SyncMetrics()
        self.clock = clock

        self._redis: Optional[RedisPersistentTier] = None
        if persistent is None and self.settings.persistent_cache_enabled:
            self._redis = RedisPersistentTier(self.settings.redis_url, key_prefix=self.settings.persistent_key_prefix)
            persistent = self._redis

        self.bus = InvalidationBus(metrics=self.metrics, clock=clock)
        self.store = CacheStore(
            persistent=persistent,
            persistent_ttl_seconds=self.settings.persistent_ttl_seconds,
            read_timeout_seconds=self.settings.persistent_read_timeout_seconds,
            clock=clock,
        )
        self._unbind_store = self.store.bind(self.bus)
        self.coalescer = RequestCoalescer(
            self.store,
            default_ttl_seconds=self.settings.default_ttl_seconds,
            error_ttl_seconds=self.settings.error_ttl_seconds,
            default_timeout=self.profile.fetch_timeout,
            metrics=self.metrics,
            clock=clock,
        )

        self.http = HttpFetchClient(
            self.settings.api_base_url,
            token_provider=self._access_token,
            timeout=self.profile.fetch_timeout,
            retry_config=RetryConfig(
                max_attempts=self.settings.http_connect_attempts,
                base_delay=self.settings.http_retry_base_delay,
                max_delay=self.settings.http_retry_base_delay * 4,
            ),
            transport=transport,
            sleep=sleep,
        )
        self.permissions = PermissionsStore(
            PermissionsClient(self.http),
            self.coalescer,
            self.profile,
            bus=self.bus,
            ttl_seconds=self.settings.permissions_ttl_seconds,
            clock=clock,
        )
        self.documents = DocumentConfigService(
            DocumentsClient(self.http),
            self.coalescer,
            self.permissions,
            self.bus,
            self.profile,
            ttl_seconds=self.settings.default_ttl_seconds,
            can_edit_ttl_seconds=self.settings.can_edit_ttl_seconds,
        )

        self.registry = ChannelClassRegistry()
        self.reconciler = RealtimeReconciler(
            channel_client or WebSocketChannelClient(self.settings.realtime_url, token_provider=self._access_token),
            self.bus,
            self.profile,
            registry=self.registry,
            channel_class="documents",
            sleep=sleep,
            clock=clock,
            metrics=self.metrics,
        )

    def _access_token(self) -> Optional[str]:
        return self.permissions.access_token()

    async def start(self):
        """Open the HTTP client and, when configured, the persistent tier."""
        await self.http.start()
        if self._redis is not None:
            try:
                await self._redis.start()
            except StorageError as e:
                self.logger.warning("Persistent tier unavailable; running memory-only", error=e.message)
                self.store.persistent = None
        self.logger.info(
            "Sync layer started",
            network_class=self.profile.network_class.value,
            persistent=self.store.persistent is not None
        )

    async def stop(self):
        """Close channels, settle in-flight work and release connections."""
        await self.reconciler.stop()
        await self.coalescer.drain()
        await self.store.flush()
        self._unbind_store()
        await self.http.stop()
        if self._redis is not None and self.store.persistent is not None:
            await self._redis.stop()
        self.logger.info("Sync layer stopped")

    async def __aenter__(self) -> "SyncLayer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def sign_in(self, identity: SessionIdentity) -> PermissionsSnapshot:
        """Start a session and load its permissions."""
        if self.permissions.sign_in(identity):
            await self.reconciler.stop()
        return await self.permissions.ensure_loaded()

    async def sign_out(self):
        """End the session: reset permissions, drop watches and document entries."""
        self.permissions.sign_out()
        await self.reconciler.stop()
        self.bus.publish(InvalidationScope.for_prefix(DOCUMENT_PREFIX), InvalidationReason.SESSION)

    async def watch_document(self, slug: str) -> Callable[[], Awaitable[None]]:
        """Subscribe to change notifications for a document once permissions are known."""
        await self.permissions.ensure_loaded()
        return self.reconciler.watch(document_resource(slug))

    async def on_background(self):
        await self.reconciler.on_background()

    def on_foreground(self):
        self.reconciler.on_foreground()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "network_class": self.profile.network_class.value,
            "cache": self.store.get_stats(),
            "coalescer": self.coalescer.get_stats(),
            "permissions_state": self.permissions.state.value,
            "realtime_disabled": self.registry.disabled_classes(),
            "metrics": self.metrics.snapshot(),
        }
