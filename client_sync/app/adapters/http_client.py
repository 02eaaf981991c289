"""
HTTP fetch collaborator for the sync layer.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from shared.errors import ErrorKind, FetchError
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception

TokenProvider = Callable[[], Optional[str]]

# Payload error types the documents API returns on 403/404
ERROR_TYPES = {
    "passcode_required": ErrorKind.SECRET_REQUIRED,
    "access_denied": ErrorKind.ACCESS_DENIED,
    "document_not_found": ErrorKind.NOT_FOUND,
}


def classify_status(status_code: int, payload: Optional[Dict[str, Any]] = None) -> ErrorKind:
    """Map a non-2xx response to an ErrorKind."""
    error_type = (payload or {}).get("error_type")
    if error_type in ERROR_TYPES:
        return ERROR_TYPES[error_type]
    if status_code in (401, 403):
        return ErrorKind.ACCESS_DENIED
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code in (502, 503, 504):
        return ErrorKind.NETWORK_FAILURE
    return ErrorKind.UNKNOWN


class HttpFetchClient:
    """
    Thin async JSON client over httpx.

    Non-2xx responses become FetchError with a classified kind. Connection
    failures are retried once before they surface.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[TokenProvider] = None,
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=2, base_delay=0.5, max_delay=2.0)
        self.logger = get_logger("sync.http")
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )

    async def stop(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        GET a JSON document.

        Raises:
            FetchError: Non-2xx response or undecodable body
            RetryError: Connection-level failure on every attempt
        """
        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        @retry_on_exception((httpx.ConnectError, httpx.RemoteProtocolError), config=self.retry_config, **kwargs)
        async def _request():
            return await self._send(path, params, timeout)

        response = await _request()
        return self._decode(path, response)

    async def _send(self, path: str, params: Optional[Dict[str, Any]], timeout: Optional[float]) -> httpx.Response:
        await self.start()
        headers = {"Accept": "application/json"}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"

        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        return await self._client.get(
            path,
            params=clean_params,
            headers=headers,
            timeout=timeout if timeout is not None else self.timeout,
        )

    def _decode(self, path: str, response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_success:
            if payload is None and response.content:
                raise FetchError(
                    ErrorKind.UNKNOWN,
                    "Response body is not valid JSON",
                    status_code=response.status_code,
                )
            return payload

        body = payload if isinstance(payload, dict) else {}
        kind = classify_status(response.status_code, body)
        message = body.get("error") or body.get("message") or f"HTTP {response.status_code}"

        self.logger.info(
            "Request failed",
            path=path,
            status_code=response.status_code,
            error_kind=kind.value
        )
        raise FetchError(kind, message, status_code=response.status_code, details=body)
