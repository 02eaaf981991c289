"""
Request coalescing to prevent duplicate network calls.

When several consumers ask for the same key while a fetch is in flight,
only one fetch is made and every asker receives the identical
RequestResult, errors included.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from shared.errors import ErrorKind, SyncLayerException
from shared.logging import get_logger
from shared.metrics import SyncMetrics
from shared.retry import RetryError
from ..caching.cache_store import CacheStore
from ..models import CacheEntry, RequestResult

import httpx

Fetcher = Callable[[str], Awaitable[Union[RequestResult, Any]]]


def classify_exception(error: BaseException) -> RequestResult:
    """Turn a raw fetch failure into a RequestResult."""
    if isinstance(error, RetryError):
        return classify_exception(error.last_exception)
    if isinstance(error, SyncLayerException):
        return RequestResult.failure(error.kind, error.message, details=error.details)
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return RequestResult.failure(ErrorKind.TIMEOUT, str(error) or "Request timed out")
    if isinstance(error, httpx.TransportError):
        return RequestResult.failure(ErrorKind.NETWORK_FAILURE, str(error) or "Network failure")
    return RequestResult.failure(ErrorKind.UNKNOWN, str(error) or error.__class__.__name__)


@dataclass
class PendingRequest:
    """Tracks an in-flight fetch shared by every asker of one key."""
    key: str
    started_at: float
    generation: int
    task: Optional["asyncio.Task[RequestResult]"] = None
    waiter_count: int = 0
    cancelled_listeners: int = 0
    listeners: list = field(default_factory=list)


class RequestCoalescer:
    """
    At most one in-flight fetch per key, with TTL-aware cache checks.

    Pattern:
    - A fresh cache entry is returned without touching the network
    - The first asker for a key starts the fetch as a shared task
    - Later askers attach a listener to the same task
    - On settlement the result is cached and handed to every listener

    The cache check and the pending-request registration happen in one
    synchronous section of `ask_nowait`, with no suspension point between
    them. Listeners are independent futures: cancelling one never cancels
    the shared fetch.

    Usage:
        coalescer = RequestCoalescer(store)
        result = await coalescer.ask("doc:acme", fetch_document)
    """

    def __init__(
        self,
        store: CacheStore,
        default_ttl_seconds: float = 300.0,
        error_ttl_seconds: float = 30.0,
        default_timeout: Optional[float] = None,
        metrics: Optional[SyncMetrics] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.default_ttl_seconds = default_ttl_seconds
        self.error_ttl_seconds = error_ttl_seconds
        self.default_timeout = default_timeout
        self.metrics = metrics
        self.clock = clock or store.clock or time.time
        self.logger = get_logger("sync.coalescer")
        self._pending: Dict[str, PendingRequest] = {}

    async def ask(
        self,
        key: str,
        fetcher: Fetcher,
        *,
        force_refresh: bool = False,
        ttl_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
        fallback: Optional[RequestResult] = None,
        decoder: Optional[Callable[[Any], Any]] = None,
    ) -> RequestResult:
        """
        Get the result for a key from cache or from one shared fetch.

        Args:
            key: Cache key (see make_cache_key)
            fetcher: Coroutine function called with the key
            force_refresh: Skip the freshness check; still joins an in-flight fetch
            ttl_seconds: TTL for a successful result
            timeout: Seconds before the fetch resolves with the fallback
            fallback: Result used on timeout; defaults to a Timeout error
            decoder: Rebuilds typed values hydrated from the persistent tier

        Returns:
            A RequestResult; this method never raises for fetch failures
        """
        listener = self.ask_nowait(
            key,
            fetcher,
            force_refresh=force_refresh,
            ttl_seconds=ttl_seconds,
            timeout=timeout,
            fallback=fallback,
            decoder=decoder,
        )
        return await listener

    def ask_nowait(
        self,
        key: str,
        fetcher: Fetcher,
        *,
        force_refresh: bool = False,
        ttl_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
        fallback: Optional[RequestResult] = None,
        decoder: Optional[Callable[[Any], Any]] = None,
    ) -> "asyncio.Future[RequestResult]":
        """
        Start or join the ask for a key and return this caller's listener.

        The listener may be cancelled by its owner (e.g. a torn-down view)
        without affecting other listeners or the shared fetch.
        """
        loop = asyncio.get_running_loop()

        if not force_refresh:
            entry = self.store.get_fresh(key)
            if entry is not None:
                self.logger.debug(
                    "Cache hit (fresh)",
                    key=key,
                    age=round(entry.age_seconds(self.clock()), 3)
                )
                self._record_lookup("fresh")
                listener = loop.create_future()
                listener.set_result(entry.to_result())
                return listener

        pending = self._pending.get(key)
        if pending is not None:
            pending.waiter_count += 1
            self.logger.debug("Coalescing ask", key=key, waiters=pending.waiter_count)
            self._record_lookup("coalesced")
        else:
            pending = PendingRequest(
                key=key,
                started_at=self.clock(),
                generation=self.store.generation,
                waiter_count=1,
            )
            self._pending[key] = pending
            pending.task = loop.create_task(
                self._run(pending, fetcher, force_refresh, ttl_seconds, timeout, fallback, decoder)
            )
            pending.task.add_done_callback(lambda task, p=pending: self._settle(p, task))
            self.logger.debug("Initiating fetch", key=key, force_refresh=force_refresh)

        listener = loop.create_future()
        listener.add_done_callback(lambda fut, p=pending: self._on_listener_done(p, fut))
        pending.listeners.append(listener)
        return listener

    async def _run(
        self,
        pending: PendingRequest,
        fetcher: Fetcher,
        force_refresh: bool,
        ttl_seconds: Optional[float],
        timeout: Optional[float],
        fallback: Optional[RequestResult],
        decoder: Optional[Callable[[Any], Any]],
    ) -> RequestResult:
        key = pending.key

        if not force_refresh:
            hydrated = await self.store.load_persistent(key)
            if hydrated is not None:
                result = hydrated.to_result()
                if decoder is not None and result.ok:
                    try:
                        result = RequestResult.success(decoder(result.value))
                    except Exception as e:
                        self.logger.warning("Persisted value could not be decoded", key=key, error=str(e))
                        result = None
                if result is not None:
                    self._record_lookup("persistent")
                    return result

        self._record_lookup("miss")
        result = await self._fetch(key, fetcher, timeout, fallback)

        if result.is_fallback or (result.error_kind is not None and result.error_kind.is_transient):
            entry_ttl = 0.0
        elif result.error_kind is not None:
            entry_ttl = self.error_ttl_seconds
        else:
            entry_ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds

        self.store.put(
            key,
            CacheEntry.from_result(
                result,
                fetched_at=self.clock(),
                ttl_seconds=entry_ttl,
                requested_at=pending.started_at,
            ),
            issued_generation=pending.generation,
        )

        if self.metrics:
            self.metrics.record_fetch_result(result.error_kind.value if result.error_kind else "ok")
        return result

    async def _fetch(
        self,
        key: str,
        fetcher: Fetcher,
        timeout: Optional[float],
        fallback: Optional[RequestResult],
    ) -> RequestResult:
        timeout = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        try:
            if timeout is None:
                outcome = await fetcher(key)
            else:
                outcome = await asyncio.wait_for(fetcher(key), timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Fetch timed out; using fallback", key=key, timeout=timeout)
            if fallback is not None:
                return fallback.as_fallback()
            return RequestResult.failure(
                ErrorKind.TIMEOUT,
                f"Request for {key} timed out after {timeout}s",
                is_fallback=True,
            )
        except Exception as e:
            result = classify_exception(e)
            self.logger.warning(
                "Fetch failed",
                key=key,
                error_kind=result.error_kind.value,
                error=result.error_message
            )
            return result

        if isinstance(outcome, RequestResult):
            result = outcome
        elif outcome is None:
            result = RequestResult.failure(ErrorKind.NOT_FOUND, f"No value for {key}")
        else:
            result = RequestResult.success(outcome)

        self.logger.debug(
            "Fetch settled",
            key=key,
            ok=result.ok,
            error_kind=result.error_kind.value if result.error_kind else None,
            duration=round(time.monotonic() - started, 3)
        )
        return result

    def _settle(self, pending: PendingRequest, task: "asyncio.Task[RequestResult]"):
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]
        self.store.prune_marks(min((p.generation for p in self._pending.values()), default=self.store.generation))

        if task.cancelled():
            for listener in pending.listeners:
                listener.cancel()
            return

        error = task.exception()
        if error is not None:
            self.logger.error("Coalesced fetch crashed", key=pending.key, error=str(error))
            result = classify_exception(error)
        else:
            result = task.result()

        for listener in pending.listeners:
            if not listener.done():
                listener.set_result(result)

    def _on_listener_done(self, pending: PendingRequest, listener: "asyncio.Future"):
        if listener.cancelled() and not (pending.task and pending.task.done()):
            pending.cancelled_listeners += 1
            self.logger.debug(
                "Listener cancelled; shared fetch continues",
                key=pending.key,
                cancelled=pending.cancelled_listeners
            )

    def _record_lookup(self, outcome: str):
        if self.metrics:
            self.metrics.record_cache_lookup(outcome)

    def pending_for(self, key: str) -> Optional[PendingRequest]:
        return self._pending.get(key)

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        return len(self._pending)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._pending),
            "active_keys": list(self._pending.keys()),
            "waiters": {key: p.waiter_count for key, p in self._pending.items()},
        }

    async def drain(self):
        """Wait for every in-flight fetch to settle."""
        tasks = [p.task for p in self._pending.values() if p.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
