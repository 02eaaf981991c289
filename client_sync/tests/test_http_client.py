"""
Unit tests for the HTTP fetch collaborator and API clients.
"""

import httpx
import pytest
from unittest.mock import AsyncMock

from shared.errors import ErrorKind, FetchError
from shared.retry import RetryConfig, RetryError
from client_sync.app.adapters.documents_client import DocumentsClient
from client_sync.app.adapters.http_client import HttpFetchClient, classify_status
from client_sync.app.adapters.permissions_client import PermissionsClient


def make_client(handler, token=None, sleep=None):
    return HttpFetchClient(
        "http://api.test",
        token_provider=lambda: token,
        transport=httpx.MockTransport(handler),
        retry_config=RetryConfig(max_attempts=2, base_delay=0.01, jitter=False),
        sleep=sleep or AsyncMock(),
    )


class TestClassifyStatus:
    """Test cases for classify_status."""

    @pytest.mark.parametrize("status, payload, kind", [
        (403, {"error_type": "passcode_required"}, ErrorKind.SECRET_REQUIRED),
        (403, {"error_type": "access_denied"}, ErrorKind.ACCESS_DENIED),
        (404, {"error_type": "document_not_found"}, ErrorKind.NOT_FOUND),
        (401, None, ErrorKind.ACCESS_DENIED),
        (403, {}, ErrorKind.ACCESS_DENIED),
        (404, None, ErrorKind.NOT_FOUND),
        (503, None, ErrorKind.NETWORK_FAILURE),
        (500, None, ErrorKind.UNKNOWN),
    ])
    def test_mapping(self, status, payload, kind):
        assert classify_status(status, payload) == kind


class TestHttpFetchClient:
    """Test cases for HttpFetchClient."""

    @pytest.mark.asyncio
    async def test_get_json_with_bearer_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler, token="abc")
        payload = await client.get_json("/api/documents", params={"doc": "acme", "passcode": None})
        await client.stop()

        assert payload == {"ok": True}
        assert seen["auth"] == "Bearer abc"
        assert seen["params"] == {"doc": "acme"}

    @pytest.mark.asyncio
    async def test_anonymous_request_has_no_auth_header(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={})

        client = make_client(handler)
        await client.get_json("/api/documents")
        await client.stop()

        assert seen["auth"] is None

    @pytest.mark.asyncio
    async def test_non_2xx_raises_classified_fetch_error(self):
        def handler(request):
            return httpx.Response(
                403,
                json={"error": "Passcode needed", "error_type": "passcode_required", "document_info": {"title": "Locked"}},
            )

        client = make_client(handler)
        with pytest.raises(FetchError) as exc_info:
            await client.get_json("/api/documents")
        await client.stop()

        error = exc_info.value
        assert error.kind == ErrorKind.SECRET_REQUIRED
        assert error.message == "Passcode needed"
        assert error.status_code == 403
        assert error.details["document_info"] == {"title": "Locked"}

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        client = make_client(lambda request: httpx.Response(502, text="Bad gateway"))

        with pytest.raises(FetchError) as exc_info:
            await client.get_json("/api/documents")
        await client.stop()

        assert exc_info.value.kind == ErrorKind.NETWORK_FAILURE
        assert exc_info.value.message == "HTTP 502"

    @pytest.mark.asyncio
    async def test_connection_failures_are_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        sleep = AsyncMock()
        client = make_client(handler, sleep=sleep)

        with pytest.raises(RetryError) as exc_info:
            await client.get_json("/api/documents")
        await client.stop()

        assert len(calls) == 2
        assert isinstance(exc_info.value.last_exception, httpx.ConnectError)
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retry_recovers(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"ok": True})

        client = make_client(handler)
        payload = await client.get_json("/api/documents")
        await client.stop()

        assert payload == {"ok": True}
        assert len(calls) == 2


class TestApiClients:
    """Test cases for the documents and permissions clients."""

    @pytest.mark.asyncio
    async def test_fetch_config_picks_matching_slug(self):
        def handler(request):
            assert request.url.path == "/api/documents"
            assert request.url.params["doc"] == "acme"
            return httpx.Response(200, json={"documents": [
                {"slug": "acme", "title": "Acme", "welcomeMessage": "Hi", "keywords": [{"term": "a", "weight": 2}]},
            ]})

        documents = DocumentsClient(make_client(handler))
        config = await documents.fetch_config("acme")

        assert config.title == "Acme"
        assert config.welcome_message == "Hi"
        assert config.keywords[0].term == "a"

    @pytest.mark.asyncio
    async def test_fetch_config_missing_slug(self):
        documents = DocumentsClient(make_client(lambda request: httpx.Response(200, json={"documents": []})))

        with pytest.raises(FetchError) as exc_info:
            await documents.fetch_config("acme")

        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        assert exc_info.value.status_code is None

    @pytest.mark.asyncio
    async def test_malformed_documents_are_skipped(self):
        def handler(request):
            return httpx.Response(200, json={"documents": [{"slug": "broken"}, {"slug": "ok", "title": "Ok"}]})

        documents = DocumentsClient(make_client(handler))
        result = await documents.fetch_documents(owner="acme")

        assert [d.slug for d in result] == ["ok"]

    @pytest.mark.asyncio
    async def test_fetch_can_edit(self):
        def handler(request):
            assert request.url.path == "/api/permissions/can-edit-document/acme"
            return httpx.Response(200, json={"can_edit": True})

        assert await DocumentsClient(make_client(handler)).fetch_can_edit("acme") is True

    @pytest.mark.asyncio
    async def test_fetch_permissions(self):
        def handler(request):
            if request.url.path == "/api/permissions/needs-approval":
                return httpx.Response(200, json={"needs_approval": True})
            return httpx.Response(200, json={
                "permissions": ["documents:read"],
                "is_super_admin": False,
                "owner_groups": [{"owner_id": "o1", "owner_slug": "acme", "owner_name": "Acme", "role": "owner_admin"}],
            })

        permissions = PermissionsClient(make_client(handler))
        payload = await permissions.fetch_permissions()

        assert payload.owner_groups[0].role == "owner_admin"
        assert await permissions.fetch_needs_approval() is True

    @pytest.mark.asyncio
    async def test_malformed_permissions(self):
        handler = lambda request: httpx.Response(200, json={"owner_groups": [{"role": "x"}]})

        with pytest.raises(FetchError) as exc_info:
            await PermissionsClient(make_client(handler)).fetch_permissions()

        assert exc_info.value.kind == ErrorKind.UNKNOWN
