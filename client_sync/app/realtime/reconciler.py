"""
Realtime reconciler: turns push notifications into cache invalidations.

Realtime updates are an optimization. When a channel class keeps failing
the reconciler gives up on it for the rest of the session and the cache
falls back to TTL expiry and explicit refresh.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.errors import ChannelError
from shared.logging import get_logger
from shared.metrics import SyncMetrics
from shared.retry import RetryConfig, calculate_delay
from ..invalidation.bus import InvalidationBus, InvalidationReason, InvalidationScope
from ..network import NetworkProfile
from .channel import Channel, ChannelClient


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    DISABLED_GLOBALLY = "disabled_globally"


@dataclass
class SubscriptionState:
    """Connection bookkeeping for one watched resource."""
    channel_key: str
    max_attempts: int
    attempt: int = 0
    disabled_globally: bool = False
    last_connected_at: Optional[float] = None
    state: ChannelState = ChannelState.DISCONNECTED
    watchers: int = 0


class ChannelClassRegistry:
    """Session-lifetime record of channel classes that exhausted their retries."""

    def __init__(self):
        self._disabled: Dict[str, float] = {}

    def is_disabled(self, channel_class: str) -> bool:
        return channel_class in self._disabled

    def disable(self, channel_class: str, at: float):
        self._disabled.setdefault(channel_class, at)

    def enable(self, channel_class: str) -> bool:
        return self._disabled.pop(channel_class, None) is not None

    def disabled_classes(self) -> Dict[str, float]:
        return dict(self._disabled)


def default_topic(resource: str) -> str:
    return f"sync.changes.{resource}"


class RealtimeReconciler:
    """
    Keeps one push channel open per watched resource.

    Per resource: DISCONNECTED -> CONNECTING -> CONNECTED, and on failure
    BACKOFF -> CONNECTING ... until `max_attempts` connect attempts have
    failed in a row, at which point the whole channel class is disabled
    in the registry and no further connections of that class are tried.

    A received message publishes a resource-wide invalidation; payloads
    are never written to the cache directly. Returning to the foreground
    starts one fresh attempt sequence even for a disabled class, and a
    successful connect in that sequence re-enables the class.
    """

    def __init__(
        self,
        channel_client: ChannelClient,
        bus: InvalidationBus,
        profile: NetworkProfile,
        registry: Optional[ChannelClassRegistry] = None,
        channel_class: str = "documents",
        topic_for: Callable[[str], str] = default_topic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        metrics: Optional[SyncMetrics] = None,
    ):
        self.channel_client = channel_client
        self.bus = bus
        self.profile = profile
        self.registry = registry or ChannelClassRegistry()
        self.channel_class = channel_class
        self.topic_for = topic_for
        self.sleep = sleep
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("sync.realtime.reconciler")

        self.backoff = RetryConfig(
            max_attempts=profile.realtime_max_attempts,
            base_delay=profile.realtime_retry_delay,
            max_delay=profile.realtime_max_delay,
            jitter=profile.realtime_backoff_jitter,
        )
        self.backgrounded = False

        self._subscriptions: Dict[str, SubscriptionState] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._channels: Dict[str, Channel] = {}

    @property
    def disabled(self) -> bool:
        return self.registry.is_disabled(self.channel_class)

    def state_of(self, resource: str) -> Optional[SubscriptionState]:
        return self._subscriptions.get(resource)

    def watch(self, resource: str) -> Callable[[], Awaitable[None]]:
        """
        Start receiving invalidations for a resource.

        Watches are reference counted: the channel stays open while at
        least one watcher remains.

        Returns:
            Coroutine function that releases this watch
        """
        InvalidationScope.for_resource(resource)

        subscription = self._subscriptions.get(resource)
        if subscription is None:
            subscription = SubscriptionState(
                channel_key=resource,
                max_attempts=self.profile.realtime_max_attempts,
            )
            self._subscriptions[resource] = subscription
        subscription.watchers += 1

        if not self.backgrounded and not self._is_running(resource):
            self._start(subscription, bypass_disabled=False)

        released = False

        async def unwatch() -> None:
            nonlocal released
            if released:
                return
            released = True
            await self._release(resource)

        return unwatch

    async def on_background(self):
        """Visibility lost: tear down every channel; watches are kept."""
        self.backgrounded = True
        for resource in list(self._subscriptions):
            await self._disconnect(resource)
        self.logger.info("Backgrounded; realtime channels closed", watched=len(self._subscriptions))

    def on_foreground(self):
        """Visibility regained: one fresh attempt sequence per watched resource."""
        self.backgrounded = False
        for subscription in self._subscriptions.values():
            if self._is_running(subscription.channel_key):
                continue
            self._start(subscription, bypass_disabled=True)
        self.logger.info("Foregrounded; reconnecting realtime channels", watched=len(self._subscriptions))

    async def stop(self):
        """Close every channel and forget all watches."""
        for resource in list(self._subscriptions):
            await self._disconnect(resource)
        self._subscriptions.clear()
        self.logger.info("Realtime reconciler stopped")

    def _is_running(self, resource: str) -> bool:
        task = self._tasks.get(resource)
        return task is not None and not task.done()

    def _start(self, subscription: SubscriptionState, bypass_disabled: bool):
        subscription.attempt = 0
        if self.disabled and not bypass_disabled:
            self._mark_disabled(subscription)
            return

        subscription.disabled_globally = False
        task = asyncio.get_running_loop().create_task(self._run(subscription, bypass_disabled))
        self._tasks[subscription.channel_key] = task

    async def _run(self, subscription: SubscriptionState, bypass_disabled: bool):
        resource = subscription.channel_key
        while True:
            setup_delay = (
                self.profile.realtime_setup_delay
                if subscription.attempt == 0
                else self.profile.realtime_retry_setup_delay
            )
            subscription.state = ChannelState.CONNECTING
            await self.sleep(setup_delay)

            if self.disabled and not bypass_disabled:
                self._mark_disabled(subscription)
                return

            subscription.attempt += 1
            self.logger.info(
                "Connecting realtime channel",
                resource=resource,
                attempt=subscription.attempt,
                max_attempts=subscription.max_attempts
            )

            try:
                channel = await self.channel_client.subscribe(
                    self.topic_for(resource),
                    lambda message, r=resource: self._on_message(r, message),
                )
            except ChannelError as e:
                self._record_connect("failure")
                error = e
            else:
                self._on_connected(subscription, bypass_disabled)
                bypass_disabled = False
                self._channels[resource] = channel
                try:
                    await channel.wait_closed()
                    return
                except ChannelError as e:
                    self._record_connect("dropped")
                    error = e
                finally:
                    if self._channels.get(resource) is channel:
                        del self._channels[resource]

            if subscription.attempt >= subscription.max_attempts:
                self._exhausted(subscription, error)
                return

            delay = calculate_delay(max(1, subscription.attempt), self.backoff)
            subscription.state = ChannelState.BACKOFF
            self.logger.warning(
                "Realtime channel failed; backing off",
                resource=resource,
                attempt=subscription.attempt,
                delay=round(delay, 3),
                error=error.message
            )
            await self.sleep(delay)

    def _on_connected(self, subscription: SubscriptionState, bypass_disabled: bool):
        subscription.state = ChannelState.CONNECTED
        subscription.attempt = 0
        subscription.disabled_globally = False
        subscription.last_connected_at = self.clock()
        self._record_connect("success")

        if bypass_disabled and self.registry.enable(self.channel_class):
            self.logger.info("Channel class re-enabled", channel_class=self.channel_class)
        self.logger.info("Realtime channel connected", resource=subscription.channel_key)

    def _on_message(self, resource: str, message: Dict[str, Any]):
        subscription = self._subscriptions.get(resource)
        if subscription is not None:
            subscription.attempt = 0
        self.logger.debug("Change notification received", resource=resource, message_type=message.get("type"))
        self.bus.publish(InvalidationScope.for_resource(resource), InvalidationReason.REALTIME)

    def _exhausted(self, subscription: SubscriptionState, error: ChannelError):
        self.registry.disable(self.channel_class, self.clock())
        self._mark_disabled(subscription)
        if self.metrics:
            self.metrics.record_realtime_disabled(self.channel_class)
        self.logger.warning(
            "Realtime retries exhausted; channel class disabled for this session",
            resource=subscription.channel_key,
            channel_class=self.channel_class,
            attempts=subscription.attempt,
            error=error.message
        )

    def _mark_disabled(self, subscription: SubscriptionState):
        subscription.state = ChannelState.DISABLED_GLOBALLY
        subscription.disabled_globally = True

    async def _release(self, resource: str):
        subscription = self._subscriptions.get(resource)
        if subscription is None:
            return
        subscription.watchers -= 1
        if subscription.watchers > 0:
            return
        await self._disconnect(resource)
        del self._subscriptions[resource]
        self.logger.debug("Stopped watching", resource=resource)

    async def _disconnect(self, resource: str):
        channel = self._channels.pop(resource, None)
        task = self._tasks.pop(resource, None)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if channel is not None:
            await channel.close()

        subscription = self._subscriptions.get(resource)
        if subscription is not None and subscription.state != ChannelState.DISABLED_GLOBALLY:
            subscription.state = ChannelState.DISCONNECTED

    def _record_connect(self, outcome: str):
        if self.metrics:
            self.metrics.record_realtime_connect(self.channel_class, outcome)
