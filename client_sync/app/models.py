"""
Core data structures shared by the cache, coalescer and consumers.
"""

import hashlib
import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Generic, Mapping, Optional, TypeVar

from pydantic import BaseModel

from shared.errors import ErrorKind

T = TypeVar("T")

KEY_SEPARATOR = "|"


def make_cache_key(
    resource: str,
    scope: Optional[str] = None,
    secret: Optional[str] = None,
    params: Optional[Mapping[str, Any]] = None,
) -> str:
    """
    Build the coalescing key for a resource ask.

    The key is deterministic: the same resource, scope, secret and params
    always produce the same string. Secrets are hashed so passcodes never
    appear in cache or storage keys.

    Args:
        resource: Resource identifier, e.g. "doc:acme"
        scope: Access-scope qualifier, e.g. the user id or "anon"
        secret: Optional passcode or token that changes the response
        params: Any other parameters that affect the response

    Returns:
        "doc:acme" for a bare resource, otherwise
        "doc:acme|scope=u1|secret=3f2a...|owner=x"
    """
    if not resource or KEY_SEPARATOR in resource:
        raise ValueError(f"Invalid resource identifier: {resource!r}")

    parts = [resource]
    if scope:
        parts.append(f"scope={scope}")
    if secret:
        digest = hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]
        parts.append(f"secret={digest}")
    for name in sorted(params or {}):
        value = params[name]
        if value is None:
            continue
        parts.append(f"{name}={value}")
    return KEY_SEPARATOR.join(parts)


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def resource_of(key: str) -> str:
    """Resource identifier a cache key was derived from."""
    return key.split(KEY_SEPARATOR, 1)[0]


@dataclass(frozen=True)
class RequestResult(Generic[T]):
    """
    Outcome of an ask, shared verbatim with every coalesced caller.

    Exactly one of `value` or `error_kind` is set. Build instances with
    `success()` or `failure()`.
    """
    value: Optional[T] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    error_details: Dict[str, Any] = field(default_factory=dict)
    is_fallback: bool = False

    def __post_init__(self):
        if (self.value is None) == (self.error_kind is None):
            raise ValueError("RequestResult needs exactly one of value or error_kind")

    @classmethod
    def success(cls, value: T, is_fallback: bool = False) -> "RequestResult[T]":
        return cls(value=value, is_fallback=is_fallback)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        is_fallback: bool = False,
    ) -> "RequestResult[T]":
        return cls(
            error_kind=kind,
            error_message=message,
            error_details=dict(details or {}),
            is_fallback=is_fallback,
        )

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    def as_fallback(self) -> "RequestResult[T]":
        """Copy of this result marked as produced by a timeout fallback."""
        return replace(self, is_fallback=True)


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """
    Immutable cached snapshot of a settled ask.

    `requested_at` is when the fetch that produced the entry was issued;
    invalidations published after it make the entry stale.
    """
    value: Optional[T]
    error_kind: Optional[ErrorKind]
    error_message: Optional[str]
    fetched_at: float
    ttl_seconds: float
    requested_at: Optional[float] = None
    error_details: Dict[str, Any] = field(default_factory=dict)
    is_fallback: bool = False

    @classmethod
    def placeholder(cls, now: float) -> "CacheEntry[T]":
        """Never-fetched entry: no value, no error, never fresh."""
        return cls(value=None, error_kind=None, error_message=None, fetched_at=now, ttl_seconds=0)

    @classmethod
    def from_result(
        cls,
        result: RequestResult[T],
        fetched_at: float,
        ttl_seconds: float,
        requested_at: Optional[float] = None,
    ) -> "CacheEntry[T]":
        return cls(
            value=result.value,
            error_kind=result.error_kind,
            error_message=result.error_message,
            fetched_at=fetched_at,
            ttl_seconds=ttl_seconds,
            requested_at=requested_at if requested_at is not None else fetched_at,
            error_details=dict(result.error_details),
            is_fallback=result.is_fallback,
        )

    @property
    def issued_at(self) -> float:
        return self.requested_at if self.requested_at is not None else self.fetched_at

    @property
    def is_placeholder(self) -> bool:
        return self.value is None and self.error_kind is None

    def age_seconds(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float) -> bool:
        """Within TTL; invalidations are checked by the store."""
        return not self.is_placeholder and self.age_seconds(now) < self.ttl_seconds

    def to_result(self) -> RequestResult[T]:
        if self.is_placeholder:
            raise ValueError("Placeholder entries carry no result")
        return RequestResult(
            value=self.value,
            error_kind=self.error_kind,
            error_message=self.error_message,
            error_details=dict(self.error_details),
            is_fallback=self.is_fallback,
        )

    def to_json(self) -> str:
        """Serialize for the persistent tier."""
        return json.dumps({
            "value": _plain(self.value),
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "fetched_at": self.fetched_at,
            "ttl_seconds": self.ttl_seconds,
            "requested_at": self.requested_at,
        })

    @classmethod
    def from_json(cls, raw: str) -> "CacheEntry[Any]":
        data = json.loads(raw)
        error_kind = data.get("error_kind")
        return cls(
            value=data.get("value"),
            error_kind=ErrorKind(error_kind) if error_kind else None,
            error_message=data.get("error_message"),
            fetched_at=float(data["fetched_at"]),
            ttl_seconds=float(data["ttl_seconds"]),
            requested_at=data.get("requested_at"),
        )
