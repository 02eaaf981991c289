"""
Adapters package for the client sync layer.

Contains the HTTP fetch collaborator and thin API clients built on it.
These adapters encapsulate:

- Base URLs and request shapes
- Retry policy for connection failures
- Error classification that maps responses to FetchError

Adapters raise; the request coalescer turns failures into results.
"""

from .http_client import HttpFetchClient, classify_status
from .documents_client import DocumentsClient
from .permissions_client import PermissionsClient

__all__ = [
    "HttpFetchClient",
    "classify_status",
    "DocumentsClient",
    "PermissionsClient",
]
