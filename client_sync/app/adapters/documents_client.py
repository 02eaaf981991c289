"""
Documents API client.
"""

from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from shared.errors import ErrorKind, FetchError
from shared.logging import get_logger
from ..documents.models import DocumentConfig
from .http_client import HttpFetchClient


class DocumentsClient:
    """Reads document configuration through the fetch collaborator."""

    def __init__(self, http: HttpFetchClient):
        self.http = http
        self.logger = get_logger("sync.adapters.documents")

    async def fetch_documents(
        self,
        docs: Optional[Sequence[str]] = None,
        owner: Optional[str] = None,
        passcode: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[DocumentConfig]:
        """GET /api/documents, optionally filtered by slugs or owner."""
        params: Dict[str, Any] = {
            "doc": ",".join(docs) if docs else None,
            "owner": owner,
            "passcode": passcode,
        }
        payload = await self.http.get_json("/api/documents", params=params, timeout=timeout)
        return self._parse_documents(payload)

    async def fetch_config(
        self,
        slug: str,
        passcode: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> DocumentConfig:
        """
        Configuration of a single document.

        Raises:
            FetchError: not_found when the slug is absent from the response,
                otherwise the classification of the HTTP failure
        """
        documents = await self.fetch_documents(docs=[slug], passcode=passcode, timeout=timeout)
        for document in documents:
            if document.slug == slug:
                return document

        raise FetchError(ErrorKind.NOT_FOUND, f'Document "{slug}" not found', details={"slug": slug})

    async def fetch_can_edit(self, slug: str, timeout: Optional[float] = None) -> bool:
        """GET /api/permissions/can-edit-document/<slug>."""
        payload = await self.http.get_json(f"/api/permissions/can-edit-document/{slug}", timeout=timeout)
        return bool((payload or {}).get("can_edit", False))

    def _parse_documents(self, payload: Any) -> List[DocumentConfig]:
        raw_documents = (payload or {}).get("documents") or []
        documents = []
        for raw in raw_documents:
            try:
                documents.append(DocumentConfig.model_validate(raw))
            except ValidationError as e:
                self.logger.warning(
                    "Skipping malformed document",
                    slug=raw.get("slug") if isinstance(raw, dict) else None,
                    error=str(e)
                )
        return documents
