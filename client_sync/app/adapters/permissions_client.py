"""
Permissions API client.
"""

from typing import Optional

from pydantic import ValidationError

from shared.errors import ErrorKind, FetchError
from ..permissions.models import PermissionsPayload
from .http_client import HttpFetchClient


class PermissionsClient:
    """Reads the signed-in user's authorization state."""

    def __init__(self, http: HttpFetchClient):
        self.http = http

    async def fetch_permissions(self, timeout: Optional[float] = None) -> PermissionsPayload:
        payload = await self.http.get_json("/api/permissions", timeout=timeout)
        try:
            return PermissionsPayload.model_validate(payload or {})
        except ValidationError as e:
            raise FetchError(ErrorKind.UNKNOWN, "Malformed permissions payload", details={"error": str(e)})

    async def fetch_needs_approval(self, timeout: Optional[float] = None) -> bool:
        """True when the user has neither roles nor owner access yet."""
        payload = await self.http.get_json("/api/permissions/needs-approval", timeout=timeout)
        return bool((payload or {}).get("needs_approval", False))
