"""
Document configuration reads through the coalescing cache.
"""

from typing import Any, Dict, List, Optional, Sequence

from shared.errors import ErrorKind, FetchError
from shared.logging import get_logger
from ..adapters.documents_client import DocumentsClient
from ..coalescing.coalescer import RequestCoalescer
from ..invalidation.bus import InvalidationBus, InvalidationReason, InvalidationScope
from ..models import RequestResult, make_cache_key
from ..network import NetworkProfile
from ..permissions.store import PermissionsStore
from .models import DocumentConfig, DocumentInfo

# Every document-derived resource id starts with this prefix
DOCUMENT_PREFIX = "doc"
DOCUMENT_LIST_RESOURCE = "doc-list"

PASSCODE_REQUIRED_MESSAGE = "This document requires a passcode to access"
ACCESS_DENIED_MESSAGE = "You do not have permission to access this document"
SUPER_ADMIN_DENIED_MESSAGE = "Unable to access document. This may be a server issue."
LOGIN_REQUIRED_MESSAGE = "Sign in to access this document"


def document_resource(slug: str) -> str:
    return f"{DOCUMENT_PREFIX}:{slug}"


def _decode_documents(items: Any) -> List[DocumentConfig]:
    return [DocumentConfig.model_validate(item) for item in items]


class DocumentConfigService:
    """
    Document configuration, listing and edit rights for the current session.

    Cache keys are qualified by the signed-in user and by the passcode in
    use, so differently-authorized views of a document never share an
    entry. Resource-wide invalidation of `doc:<slug>` clears all of them.
    """

    def __init__(
        self,
        client: DocumentsClient,
        coalescer: RequestCoalescer,
        permissions: PermissionsStore,
        bus: InvalidationBus,
        profile: NetworkProfile,
        ttl_seconds: float = 300.0,
        can_edit_ttl_seconds: float = 300.0,
    ):
        self.client = client
        self.coalescer = coalescer
        self.permissions = permissions
        self.bus = bus
        self.profile = profile
        self.ttl_seconds = ttl_seconds
        self.can_edit_ttl_seconds = can_edit_ttl_seconds
        self.logger = get_logger("sync.documents")
        self._passcodes: Dict[str, str] = {}

    def _scope(self) -> str:
        identity = self.permissions.identity
        return identity.user_id if identity else "anon"

    def passcode_for(self, slug: str) -> Optional[str]:
        return self._passcodes.get(slug)

    async def get_config(
        self,
        slug: str,
        passcode: Optional[str] = None,
        force_refresh: bool = False,
    ) -> RequestResult[DocumentConfig]:
        """
        Configuration for one document.

        Args:
            slug: Document slug
            passcode: Passcode for gated documents; defaults to a stored one
            force_refresh: Bypass the cached entry

        Returns:
            RequestResult with a DocumentConfig, or an error kind the caller
            branches on (secret_required prompts for a passcode)
        """
        passcode = passcode or self._passcodes.get(slug)
        snapshot = await self.permissions.ensure_loaded()
        signed_in = self.permissions.identity is not None

        async def fetch(key: str) -> DocumentConfig:
            try:
                return await self.client.fetch_config(slug, passcode=passcode, timeout=self.profile.fetch_timeout)
            except FetchError as e:
                raise self._explain(e, slug, signed_in, snapshot.is_super_admin, passcode)

        key = make_cache_key(document_resource(slug), scope=self._scope(), secret=passcode)
        return await self.coalescer.ask(
            key,
            fetch,
            force_refresh=force_refresh,
            ttl_seconds=self.ttl_seconds,
            timeout=self.profile.fetch_timeout,
            decoder=DocumentConfig.model_validate,
        )

    async def list_documents(
        self,
        owner: Optional[str] = None,
        docs: Optional[Sequence[str]] = None,
        passcode: Optional[str] = None,
        force_refresh: bool = False,
    ) -> RequestResult[List[DocumentConfig]]:
        """Documents visible to the current session, optionally filtered."""
        await self.permissions.ensure_loaded()

        async def fetch(key: str) -> List[DocumentConfig]:
            return await self.client.fetch_documents(
                docs=docs,
                owner=owner,
                passcode=passcode,
                timeout=self.profile.fetch_timeout,
            )

        key = make_cache_key(
            DOCUMENT_LIST_RESOURCE,
            scope=self._scope(),
            secret=passcode,
            params={"owner": owner, "docs": ",".join(docs) if docs else None},
        )
        return await self.coalescer.ask(
            key,
            fetch,
            force_refresh=force_refresh,
            ttl_seconds=self.ttl_seconds,
            timeout=self.profile.fetch_timeout,
            decoder=_decode_documents,
        )

    async def can_edit(self, slug: str) -> bool:
        """Whether the signed-in user may edit a document; false on any failure."""
        if self.permissions.identity is None:
            return False

        key = make_cache_key(document_resource(slug), scope=self._scope(), params={"check": "can_edit"})
        result = await self.coalescer.ask(
            key,
            lambda k: self.client.fetch_can_edit(slug, timeout=self.profile.fetch_timeout),
            ttl_seconds=self.can_edit_ttl_seconds,
            timeout=self.profile.fetch_timeout,
            fallback=RequestResult.success(False),
        )
        if not result.ok:
            self.logger.debug("Edit check failed", slug=slug, error_kind=result.error_kind.value)
            return False
        return bool(result.value)

    def store_passcode(self, slug: str, passcode: str):
        """Remember a passcode and force the next read of the document."""
        self._passcodes[slug] = passcode
        self.bus.publish(InvalidationScope.for_resource(document_resource(slug)), InvalidationReason.CREDENTIAL_STORED)

    def forget_passcode(self, slug: str):
        self._passcodes.pop(slug, None)

    def notify_mutated(self, slug: Optional[str] = None):
        """
        Signal that a document changed after a successful write.

        Without a slug every document-derived entry is invalidated.
        """
        if slug is None:
            self.bus.publish(InvalidationScope.for_prefix(DOCUMENT_PREFIX), InvalidationReason.MUTATION)
            return
        self.bus.publish(InvalidationScope.for_resource(document_resource(slug)), InvalidationReason.MUTATION)
        self.bus.publish(InvalidationScope.for_resource(DOCUMENT_LIST_RESOURCE), InvalidationReason.MUTATION)

    def clear_all(self):
        """Drop every cached document entry."""
        self.bus.publish(InvalidationScope.for_prefix(DOCUMENT_PREFIX), InvalidationReason.MANUAL)

    def _explain(
        self,
        error: FetchError,
        slug: str,
        signed_in: bool,
        is_super_admin: bool,
        passcode: Optional[str],
    ) -> FetchError:
        """Rewrite a documents API failure into the message shown to the user."""
        details = dict(error.details)

        if error.kind == ErrorKind.SECRET_REQUIRED:
            info = details.get("document_info")
            if isinstance(info, dict) and info.get("title"):
                details["document_info"] = DocumentInfo.model_validate(info).model_dump()
            message = details.get("error") or PASSCODE_REQUIRED_MESSAGE
            return FetchError(ErrorKind.SECRET_REQUIRED, message, status_code=error.status_code, details=details)

        if error.kind == ErrorKind.ACCESS_DENIED:
            if not signed_in and not passcode:
                details["login_required"] = True
                return FetchError(ErrorKind.ACCESS_DENIED, LOGIN_REQUIRED_MESSAGE, error.status_code, details)
            message = SUPER_ADMIN_DENIED_MESSAGE if is_super_admin else ACCESS_DENIED_MESSAGE
            return FetchError(ErrorKind.ACCESS_DENIED, message, status_code=error.status_code, details=details)

        if error.kind == ErrorKind.NOT_FOUND:
            if error.status_code is None and not signed_in and not passcode:
                details["login_required"] = True
                return FetchError(ErrorKind.ACCESS_DENIED, LOGIN_REQUIRED_MESSAGE, details=details)
            message = details.get("error") or f'Document "{slug}" not found'
            return FetchError(ErrorKind.NOT_FOUND, message, status_code=error.status_code, details=details)

        return error
