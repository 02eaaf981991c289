"""
Invalidation bus: typed publish/subscribe for "resource changed" signals.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Set

from shared.logging import get_logger
from shared.metrics import SyncMetrics
from ..models import KEY_SEPARATOR, resource_of


class ScopeKind(str, Enum):
    """How much of the cache an invalidation covers."""
    KEY = "key"              # one exact cache key
    RESOURCE = "resource"    # every key derived from a resource, any qualifier
    PREFIX = "prefix"        # every resource whose id starts with a prefix


class InvalidationReason(str, Enum):
    """Why an invalidation was published."""
    MUTATION = "mutation"
    REALTIME = "realtime"
    CREDENTIAL_STORED = "credential_stored"
    MANUAL = "manual"
    SESSION = "session"


@dataclass(frozen=True)
class InvalidationScope:
    """Target of an invalidation."""
    kind: ScopeKind
    value: str

    @classmethod
    def for_key(cls, key: str) -> "InvalidationScope":
        return cls(ScopeKind.KEY, key)

    @classmethod
    def for_resource(cls, resource: str) -> "InvalidationScope":
        if KEY_SEPARATOR in resource:
            raise ValueError(f"Resource scope must not carry qualifiers: {resource!r}")
        return cls(ScopeKind.RESOURCE, resource)

    @classmethod
    def for_prefix(cls, prefix: str) -> "InvalidationScope":
        return cls(ScopeKind.PREFIX, prefix)

    def matches(self, key: str) -> bool:
        """True if the cache key falls inside this scope."""
        if self.kind == ScopeKind.KEY:
            return key == self.value
        if self.kind == ScopeKind.RESOURCE:
            return resource_of(key) == self.value
        return resource_of(key).startswith(self.value)


@dataclass(frozen=True)
class InvalidationEvent:
    """Payload delivered to bus subscribers."""
    scope: InvalidationScope
    reason: InvalidationReason
    published_at: float = field(default_factory=time.time)


InvalidationHandler = Callable[[InvalidationEvent], object]


class InvalidationBus:
    """
    Process-wide channel for invalidation events.

    Plain handlers run synchronously inside `publish`, in subscription
    order, so the cache is stale before `publish` returns. Coroutine
    handlers are scheduled on the running loop and run on its next turn.
    A failing handler is logged and never affects the others.
    """

    def __init__(self, metrics: Optional[SyncMetrics] = None, clock: Callable[[], float] = time.time):
        self.logger = get_logger("sync.invalidation.bus")
        self.metrics = metrics
        self.clock = clock
        self._handlers: Dict[int, InvalidationHandler] = {}
        self._next_id = 0
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, handler: InvalidationHandler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        handler_id = self._next_id
        self._next_id += 1
        self._handlers[handler_id] = handler

        def unsubscribe() -> None:
            self._handlers.pop(handler_id, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    @property
    def pending_handlers(self) -> int:
        """Coroutine handlers scheduled but not yet finished."""
        return len(self._tasks)

    def publish(
        self,
        scope: InvalidationScope,
        reason: InvalidationReason = InvalidationReason.MANUAL,
    ) -> InvalidationEvent:
        """Fire-and-forget delivery of an invalidation to every subscriber."""
        event = InvalidationEvent(scope=scope, reason=reason, published_at=self.clock())

        self.logger.info(
            "Invalidation published",
            scope=scope.kind.value,
            target=scope.value,
            reason=reason.value,
            subscribers=len(self._handlers)
        )
        if self.metrics:
            self.metrics.record_invalidation(scope.kind.value, reason.value)

        for handler in list(self._handlers.values()):
            try:
                outcome = handler(event)
            except Exception as e:
                self.logger.error("Invalidation handler failed", target=scope.value, error=str(e))
                continue
            if asyncio.iscoroutine(outcome):
                self._schedule(outcome, scope)

        return event

    def _schedule(self, coro, scope: InvalidationScope):
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            self.logger.warning("No running loop; async invalidation handler skipped", target=scope.value)
            return
        self._tasks.add(task)
        task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: "asyncio.Task") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error("Async invalidation handler failed", error=str(error))
