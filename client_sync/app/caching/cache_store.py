"""
Two-tier cache store: an authoritative in-memory map plus an optional
persistent tier with wall-clock TTL.
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from shared.errors import StorageError
from shared.logging import get_logger
from ..invalidation.bus import InvalidationBus, InvalidationEvent, InvalidationScope, ScopeKind
from ..models import KEY_SEPARATOR, CacheEntry, resource_of
from .persistent import PersistentTier, escape_glob

# (generation, wall-clock time) of the latest invalidation for a target
InvalidationMark = Tuple[int, float]


class CacheStore:
    """
    Keyed cache for settled asks.

    The memory tier is consulted first and is always synchronous. The
    persistent tier is written and cleared from background tasks; its
    failures are logged and treated as misses.

    Every invalidation bumps a generation counter. An entry is fresh when
    it is within TTL and no invalidation covering its key has a
    generation newer than the one the entry was issued under.
    """

    def __init__(
        self,
        persistent: Optional[PersistentTier] = None,
        persistent_ttl_seconds: int = 300,
        read_timeout_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.persistent = persistent
        self.persistent_ttl_seconds = persistent_ttl_seconds
        self.read_timeout_seconds = read_timeout_seconds
        self.clock = clock
        self.logger = get_logger("sync.cache.store")

        self._entries: Dict[str, CacheEntry] = {}
        self._entry_generations: Dict[str, int] = {}
        self._generation = 0
        self._key_marks: Dict[str, InvalidationMark] = {}
        self._resource_marks: Dict[str, InvalidationMark] = {}
        self._prefix_marks: Dict[str, InvalidationMark] = {}
        self._background: Set[asyncio.Task] = set()

        self._stats = {
            "puts": 0,
            "invalidations": 0,
            "storage_errors": 0,
        }

    @property
    def generation(self) -> int:
        """Current invalidation generation; capture it when issuing a fetch."""
        return self._generation

    def get(self, key: str) -> Optional[CacheEntry]:
        """Memory-tier entry for a key, fresh or not."""
        return self._entries.get(key)

    def is_fresh(self, key: str) -> bool:
        return self.get_fresh(key) is not None

    def get_fresh(self, key: str) -> Optional[CacheEntry]:
        """Memory-tier entry if it is fresh, else None."""
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self.clock()):
            return None
        if self._invalidated_after(key, self._entry_generations.get(key, 0)):
            return None
        return entry

    def put(self, key: str, entry: CacheEntry, issued_generation: Optional[int] = None):
        """
        Store an entry in memory and, when eligible, in the persistent tier.

        Args:
            key: Cache key
            entry: Settled entry
            issued_generation: Generation captured when the fetch was issued;
                defaults to the current generation
        """
        generation = self._generation if issued_generation is None else issued_generation
        self._entries[key] = entry
        self._entry_generations[key] = generation
        self._stats["puts"] += 1

        if self._invalidated_after(key, generation):
            self.logger.debug("Stored entry is stale on arrival", key=key)
            return

        if self.persistent is not None and entry.error_kind is None and entry.ttl_seconds > 0:
            try:
                payload = entry.to_json()
            except (TypeError, ValueError) as e:
                self.logger.debug("Entry not serializable; kept in memory only", key=key, error=str(e))
                return
            self._spawn(self._persist(key, payload))

    def invalidate(self, key: str) -> int:
        """Invalidate one key in both tiers."""
        return self.invalidate_scope(InvalidationScope.for_key(key))

    def invalidate_scope(self, scope: InvalidationScope) -> int:
        """
        Invalidate every key inside a scope in both tiers.

        Returns:
            Number of memory entries removed
        """
        self._generation += 1
        mark = (self._generation, self.clock())
        if scope.kind == ScopeKind.KEY:
            self._key_marks[scope.value] = mark
        elif scope.kind == ScopeKind.RESOURCE:
            self._resource_marks[scope.value] = mark
        else:
            self._prefix_marks[scope.value] = mark

        to_delete = [key for key in self._entries if scope.matches(key)]
        for key in to_delete:
            del self._entries[key]
            self._entry_generations.pop(key, None)
        self._stats["invalidations"] += 1

        self.logger.info(
            "Cache invalidated",
            scope=scope.kind.value,
            target=scope.value,
            removed=len(to_delete)
        )

        if self.persistent is not None:
            self._spawn(self._forget(scope))

        return len(to_delete)

    def apply(self, event: InvalidationEvent):
        """Bus handler: invalidate the event's scope."""
        self.invalidate_scope(event.scope)

    def bind(self, bus: InvalidationBus) -> Callable[[], None]:
        """Subscribe this store to an invalidation bus."""
        return bus.subscribe(self.apply)

    async def load_persistent(self, key: str) -> Optional[CacheEntry]:
        """
        Read a fresh entry from the persistent tier and promote it to memory.

        Returns None on miss, expiry, invalidation, storage error or a read
        slower than `read_timeout_seconds`.
        """
        if self.persistent is None:
            return None

        generation = self._generation
        try:
            raw = await asyncio.wait_for(self.persistent.read(key), self.read_timeout_seconds)
        except asyncio.TimeoutError:
            self._record_storage_error(
                "read",
                key,
                StorageError("Persistent tier read timed out", details={"timeout": self.read_timeout_seconds}),
            )
            return None
        except StorageError as e:
            self._record_storage_error("read", key, e)
            return None
        if raw is None:
            return None

        try:
            entry = CacheEntry.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            self.logger.warning("Discarding unreadable persisted entry", key=key, error=str(e))
            return None

        if not entry.is_fresh(self.clock()) or self._invalidated_since_time(key, entry.issued_at):
            return None
        if self._invalidated_after(key, generation):
            return None

        self._entries[key] = entry
        self._entry_generations[key] = generation
        self.logger.debug("Hydrated entry from persistent tier", key=key)
        return entry

    async def flush(self):
        """Wait for pending persistent writes and deletes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def clear(self) -> int:
        """Clear both tiers; returns number of memory entries cleared."""
        count = len(self._entries)
        self.invalidate_scope(InvalidationScope.for_prefix(""))
        await self.flush()
        self.logger.info("Cleared cache entries", count=count)
        return count

    def prune_marks(self, floor_generation: int) -> int:
        """
        Drop invalidation marks that can no longer make anything stale.

        A mark is kept while an entry in memory or a fetch issued at or
        below its generation exists, and, with a persistent tier, until
        persisted copies older than it have expired.

        Args:
            floor_generation: Oldest generation still held by an in-flight fetch

        Returns:
            Number of marks dropped
        """
        floor = min([floor_generation, *self._entry_generations.values()])
        horizon = self.clock() - self.persistent_ttl_seconds
        dropped = 0
        for marks in (self._key_marks, self._resource_marks, self._prefix_marks):
            for target, (generation, at) in list(marks.items()):
                if generation <= floor and (self.persistent is None or at < horizon):
                    del marks[target]
                    dropped += 1
        if dropped:
            self.logger.debug("Pruned invalidation marks", count=dropped, floor=floor)
        return dropped

    def keys(self) -> List[str]:
        return list(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache store statistics."""
        now = self.clock()
        fresh = sum(1 for key in self._entries if self.get_fresh(key) is not None)
        return {
            "entries": len(self._entries),
            "fresh_entries": fresh,
            "stale_entries": len(self._entries) - fresh,
            "generation": self._generation,
            "invalidation_marks": len(self._key_marks) + len(self._resource_marks) + len(self._prefix_marks),
            "pending_storage_tasks": len(self._background),
            "checked_at": now,
            **self._stats,
        }

    def _marks_for(self, key: str) -> List[InvalidationMark]:
        marks = []
        if key in self._key_marks:
            marks.append(self._key_marks[key])
        resource = resource_of(key)
        if resource in self._resource_marks:
            marks.append(self._resource_marks[resource])
        for prefix, mark in self._prefix_marks.items():
            if resource.startswith(prefix):
                marks.append(mark)
        return marks

    def _invalidated_after(self, key: str, generation: int) -> bool:
        return any(mark[0] > generation for mark in self._marks_for(key))

    def _invalidated_since_time(self, key: str, issued_at: float) -> bool:
        return any(mark[1] >= issued_at for mark in self._marks_for(key))

    def _spawn(self, coro):
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            self.logger.debug("No running loop; persistent tier update skipped")
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, key: str, payload: str):
        try:
            await self.persistent.write(key, payload, self.persistent_ttl_seconds)
        except StorageError as e:
            self._record_storage_error("write", key, e)

    async def _forget(self, scope: InvalidationScope):
        try:
            if scope.kind == ScopeKind.KEY:
                await self.persistent.delete(scope.value)
            elif scope.kind == ScopeKind.RESOURCE:
                resource = escape_glob(scope.value)
                await self.persistent.delete(scope.value)
                await self.persistent.delete_matching(f"{resource}{escape_glob(KEY_SEPARATOR)}*")
            else:
                await self.persistent.delete_matching(f"{escape_glob(scope.value)}*")
        except StorageError as e:
            self._record_storage_error("delete", scope.value, e)

    def _record_storage_error(self, operation: str, key: str, error: StorageError):
        self._stats["storage_errors"] += 1
        self.logger.warning(
            "Persistent tier error treated as cache miss",
            operation=operation,
            key=key,
            error=error.message,
            details=json.dumps(error.details, default=str)
        )
