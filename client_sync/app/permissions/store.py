"""
Process-wide permissions state for the signed-in session.

One store instance is created per process and injected wherever
authorization data is needed, so independent consumers share a single
permissions query instead of each issuing their own.
"""

import asyncio
import time
from typing import Callable, Optional

from shared.logging import clear_context, get_logger, set_session_context
from ..coalescing.coalescer import RequestCoalescer
from ..invalidation.bus import InvalidationBus, InvalidationReason, InvalidationScope
from ..models import RequestResult, make_cache_key
from ..network import NetworkProfile
from ..adapters.permissions_client import PermissionsClient
from .models import PermissionsPayload, PermissionsSnapshot, PermissionsState, SessionIdentity

RESOURCE_PREFIX = "permissions:"


def permissions_resource(user_id: str) -> str:
    return f"{RESOURCE_PREFIX}{user_id}"


class PermissionsStore:
    """
    Lazily loaded permissions snapshot with a session lifecycle.

    State machine: UNINITIALIZED -> LOADING -> READY | FAILED. Loading
    happens at most once per session; concurrent `ensure_loaded` calls
    attach to the same load. Sign-in with a new user and sign-out reset
    the store to UNINITIALIZED. A load that settles after the session it
    belongs to has ended is discarded.
    """

    def __init__(
        self,
        client: PermissionsClient,
        coalescer: RequestCoalescer,
        profile: NetworkProfile,
        bus: Optional[InvalidationBus] = None,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.coalescer = coalescer
        self.profile = profile
        self.bus = bus
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.logger = get_logger("sync.permissions")

        self._identity: Optional[SessionIdentity] = None
        self._snapshot = PermissionsSnapshot()
        self._session_generation = 0
        self._load_task: Optional[asyncio.Task] = None

    @property
    def identity(self) -> Optional[SessionIdentity]:
        return self._identity

    @property
    def state(self) -> PermissionsState:
        return self._snapshot.state

    def access_token(self) -> Optional[str]:
        return self._identity.access_token if self._identity else None

    def get(self) -> PermissionsSnapshot:
        """Current snapshot; `loading` is true until the first load settles."""
        return self._snapshot

    async def ensure_loaded(self) -> PermissionsSnapshot:
        """Load permissions once per session and return the settled snapshot."""
        if self._identity is None:
            if self._snapshot.loading:
                self._snapshot = PermissionsSnapshot(loading=False, state=PermissionsState.READY)
            return self._snapshot

        if self._snapshot.state in (PermissionsState.READY, PermissionsState.FAILED):
            return self._snapshot

        return await self._start_load(force_refresh=False)

    async def refetch(self) -> PermissionsSnapshot:
        """Reload permissions, bypassing the cached result."""
        if self._identity is None:
            return await self.ensure_loaded()
        return await self._start_load(force_refresh=True)

    def sign_in(self, identity: SessionIdentity) -> bool:
        """
        Switch the store to a signed-in session.

        Returns:
            False when the same user is already signed in (token refreshes
            keep the loaded snapshot), True when the session changed
        """
        if self._identity is not None and self._identity.user_id == identity.user_id:
            self._identity = identity
            self.logger.debug("Sign-in for current user; keeping permissions", user_id=identity.user_id)
            return False

        previous = self._identity
        self._reset()
        if previous is not None:
            self._forget(previous.user_id)
        self._identity = identity
        set_session_context(session_id=identity.session_id, user_id=identity.user_id)
        self.logger.info("Session started", user_id=identity.user_id)
        return True

    def sign_out(self):
        """End the session and clear the cached snapshot."""
        previous = self._identity
        self._reset()
        self._identity = None
        if previous is not None:
            self._forget(previous.user_id)
            self.logger.info("Session ended", user_id=previous.user_id)
        clear_context()

    def _reset(self):
        self._session_generation += 1
        self._snapshot = PermissionsSnapshot()
        self._load_task = None

    def _forget(self, user_id: str):
        scope = InvalidationScope.for_resource(permissions_resource(user_id))
        if self.bus is not None:
            self.bus.publish(scope, InvalidationReason.SESSION)
        else:
            self.coalescer.store.invalidate_scope(scope)

    async def _start_load(self, force_refresh: bool) -> PermissionsSnapshot:
        if self._load_task is None or self._load_task.done():
            self._snapshot = PermissionsSnapshot(
                loading=True,
                state=PermissionsState.LOADING,
                user_id=self._identity.user_id,
            )
            self._load_task = asyncio.get_running_loop().create_task(
                self._load(self._identity, self._session_generation, force_refresh)
            )
        return await asyncio.shield(self._load_task)

    async def _load(
        self,
        identity: SessionIdentity,
        generation: int,
        force_refresh: bool,
    ) -> PermissionsSnapshot:
        resource = permissions_resource(identity.user_id)
        self.logger.info("Fetching permissions", user_id=identity.user_id, force_refresh=force_refresh)

        result = await self.coalescer.ask(
            make_cache_key(resource),
            lambda key: self.client.fetch_permissions(timeout=self.profile.permissions_timeout),
            force_refresh=force_refresh,
            ttl_seconds=self.ttl_seconds,
            timeout=self.profile.permissions_timeout,
            fallback=RequestResult.success(PermissionsPayload.empty()),
            decoder=PermissionsPayload.model_validate,
        )

        approval = await self.coalescer.ask(
            make_cache_key(resource, params={"check": "needs_approval"}),
            lambda key: self.client.fetch_needs_approval(timeout=self.profile.approval_timeout),
            force_refresh=force_refresh,
            ttl_seconds=self.ttl_seconds,
            timeout=self.profile.approval_timeout,
            fallback=RequestResult.success(False),
        )

        if generation != self._session_generation:
            self.logger.info("Discarding permissions for ended session", user_id=identity.user_id)
            return self._snapshot

        needs_approval = bool(approval.value) if approval.ok else False
        if result.ok:
            snapshot = PermissionsSnapshot.from_payload(
                result.value,
                fetched_at=self.clock(),
                user_id=identity.user_id,
                needs_approval=needs_approval,
                is_fallback=result.is_fallback,
            )
        else:
            self.logger.warning(
                "Permissions fetch failed",
                user_id=identity.user_id,
                error_kind=result.error_kind.value,
                error=result.error_message
            )
            snapshot = PermissionsSnapshot(
                loading=False,
                fetched_at=self.clock(),
                error=result.error_message,
                state=PermissionsState.FAILED,
                user_id=identity.user_id,
            )

        self._snapshot = snapshot
        self.logger.info(
            "Permissions loaded",
            user_id=identity.user_id,
            state=snapshot.state.value,
            is_super_admin=snapshot.is_super_admin,
            owner_groups=len(snapshot.owner_groups),
            needs_approval=snapshot.needs_approval
        )
        return snapshot
