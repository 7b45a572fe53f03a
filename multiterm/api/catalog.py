"""
Connection Catalog Client - REST access to saved connections.

Resolves saved connection ids into connection descriptors and mints or
ends remote sessions on the backend.

Endpoints (relative to the catalog base URL):
- GET    /connections/{id}           → saved connection
- POST   /connections/{id}/sessions  → new remote session
- DELETE /sessions/{id}              → end a remote session

Every response is wrapped as {"code": ..., "message": ..., "data": ...};
code 200 (or 0) means success.

Author: Backend Lead Developer
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from ..core.models import ConnectionDescriptor, RemoteId
from ..observability.metrics import track_catalog_request

logger = logging.getLogger(__name__)

__all__ = ["ConnectionCatalog", "HttpConnectionCatalog", "CatalogError"]

_SUCCESS_CODES = (0, 200)


class CatalogError(Exception):
    """Catalog request failed or returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ConnectionCatalog(Protocol):
    async def resolve(self, connection_id: RemoteId) -> ConnectionDescriptor: ...

    async def create_session(self, connection_id: RemoteId) -> RemoteId: ...

    async def end_session(self, session_id: RemoteId) -> None: ...


class _Envelope(BaseModel):
    code: int
    message: str = ""
    data: Any = None


class HttpConnectionCatalog:
    """
    Catalog client over httpx.

    Attributes:
        base_url: Catalog API root, e.g. http://host:8080/api
        token_provider: Returns the bearer token sent with each request
    """

    __slots__ = ("base_url", "token_provider", "client")

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider or (lambda: None)
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @track_catalog_request("resolve")
    async def resolve(self, connection_id: RemoteId) -> ConnectionDescriptor:
        data = await self._request("GET", f"/connections/{connection_id}")
        if not isinstance(data, dict):
            raise CatalogError(f"Connection {connection_id}: unexpected payload")
        try:
            return ConnectionDescriptor(
                protocol=data["protocol"],
                host=data["host"],
                port=data["port"],
                name=data.get("name") or "",
                username=data.get("username") or None,
                credentials_ref=str(data.get("credentials_ref") or data.get("id") or connection_id),
            )
        except (KeyError, ValidationError) as e:
            raise CatalogError(f"Connection {connection_id}: invalid descriptor: {e}") from e

    @track_catalog_request("create_session")
    async def create_session(self, connection_id: RemoteId) -> RemoteId:
        data = await self._request("POST", f"/connections/{connection_id}/sessions")
        if not isinstance(data, dict) or data.get("id") is None:
            raise CatalogError(f"Connection {connection_id}: session response has no id")
        return data["id"]

    @track_catalog_request("end_session")
    async def end_session(self, session_id: RemoteId) -> None:
        await self._request("DELETE", f"/sessions/{session_id}", require_data=False)

    async def _request(self, method: str, path: str, require_data: bool = True) -> Any:
        headers = {}
        token = self.token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self.client.request(method, path, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CatalogError(
                f"{method} {path} failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise CatalogError(f"{method} {path} failed: {e}") from e

        try:
            envelope = _Envelope.model_validate_json(response.content)
        except ValidationError as e:
            raise CatalogError(f"{method} {path}: malformed response: {e}") from e

        if envelope.code not in _SUCCESS_CODES:
            raise CatalogError(f"{method} {path}: {envelope.message or 'error'} (code {envelope.code})")
        if require_data and envelope.data is None:
            raise CatalogError(f"{method} {path}: response has no data")

        logger.debug(f"{method} {path} → code {envelope.code}")
        return envelope.data

    async def aclose(self) -> None:
        await self.client.aclose()
