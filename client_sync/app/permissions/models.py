"""
Permissions wire models and the immutable snapshot handed to consumers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class PermissionsState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class OwnerGroup(BaseModel):
    """Membership of the user in an owner organisation."""
    model_config = ConfigDict(extra="allow", frozen=True)

    owner_id: str
    owner_slug: str
    owner_name: str
    owner_logo_url: Optional[str] = None
    role: str = "registered"


class PermissionsPayload(BaseModel):
    """Body of GET /api/permissions."""
    model_config = ConfigDict(extra="allow")

    permissions: List[str] = Field(default_factory=list)
    is_super_admin: bool = False
    owner_groups: List[OwnerGroup] = Field(default_factory=list)

    @classmethod
    def empty(cls) -> "PermissionsPayload":
        return cls()


@dataclass(frozen=True)
class PermissionsSnapshot:
    """Authorization state of the current session at one point in time."""
    permissions: FrozenSet[str] = frozenset()
    is_super_admin: bool = False
    owner_groups: Tuple[OwnerGroup, ...] = ()
    loading: bool = True
    fetched_at: Optional[float] = None
    needs_approval: bool = False
    error: Optional[str] = None
    state: PermissionsState = PermissionsState.UNINITIALIZED
    user_id: Optional[str] = None
    is_fallback: bool = False

    @property
    def is_owner_admin(self) -> bool:
        return any(group.role == "owner_admin" for group in self.owner_groups)

    def has(self, permission: str) -> bool:
        return self.is_super_admin or permission in self.permissions

    @classmethod
    def from_payload(
        cls,
        payload: PermissionsPayload,
        fetched_at: float,
        user_id: Optional[str],
        needs_approval: bool = False,
        is_fallback: bool = False,
    ) -> "PermissionsSnapshot":
        return cls(
            permissions=frozenset(payload.permissions),
            is_super_admin=payload.is_super_admin,
            owner_groups=tuple(payload.owner_groups),
            loading=False,
            fetched_at=fetched_at,
            needs_approval=needs_approval,
            state=PermissionsState.READY,
            user_id=user_id,
            is_fallback=is_fallback,
        )


@dataclass(frozen=True)
class SessionIdentity:
    """Who is signed in; the only input that resets the permissions store."""
    user_id: str
    access_token: Optional[str] = None
    session_id: Optional[str] = None
    email: Optional[str] = field(default=None, compare=False)
