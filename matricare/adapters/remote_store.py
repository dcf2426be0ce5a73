"""
Remote document store clients.

The engine needs only two operations from the server:
- put(record_id, payload, expected_version) -> ok | version_conflict
- get(record_id) -> document or None
Credentials and sessions are handled outside the engine.
"""

import asyncio
import copy
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

import httpx

from matricare.domain.errors import RemoteRejectedError, RemoteUnavailableError
from matricare.domain.models import PutResult, RemoteDocument
from matricare.services.common import logger


class RemoteDocumentStore(Protocol):
    """What the sync queue and the pull path require from the server."""

    async def put(
        self, record_id: str, payload: dict[str, Any], expected_version: int
    ) -> PutResult: ...

    async def get(self, record_id: str) -> RemoteDocument | None: ...


def _updated_at(payload: dict[str, Any]) -> datetime | None:
    value = payload.get("updated_at")
    if value is None:
        return None
    return value if isinstance(value, datetime) else datetime.fromisoformat(value)


class InMemoryRemoteStore:
    """
    Process-local remote store with optimistic versioning.

    A put whose expected version is stale but whose payload equals the stored
    one is treated as a duplicate resend and acknowledged, which makes delivery
    after a crash idempotent.
    """

    def __init__(self) -> None:
        self.documents: dict[str, RemoteDocument] = {}
        self.put_calls: list[str] = []
        self.failures: list[BaseException] = []
        self.latency_seconds = 0.0
        self.logger = logger.bind(component="remote_store", backend="memory")

    def fail_next(self, *errors: BaseException) -> None:
        """Queue errors to raise on the next calls (tests and offline simulation)."""
        self.failures.extend(errors)

    def seed(self, document: RemoteDocument) -> None:
        self.documents[document.record_id] = document

    async def _network(self) -> None:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if self.failures:
            raise self.failures.pop(0)

    async def put(
        self, record_id: str, payload: dict[str, Any], expected_version: int
    ) -> PutResult:
        self.put_calls.append(record_id)
        await self._network()

        current = self.documents.get(record_id)
        current_version = current.version if current is not None else 0
        if expected_version != current_version:
            if current is not None and current.body == payload:
                self.logger.debug("duplicate_put_acknowledged", record_id=record_id)
                return PutResult(status="ok", version=current.version)
            return PutResult(status="version_conflict", version=current_version, current=current)

        document = RemoteDocument(
            record_id=record_id,
            version=current_version + 1,
            updated_at=_updated_at(payload),
            body=copy.deepcopy(payload),
        )
        self.documents[record_id] = document
        return PutResult(status="ok", version=document.version)

    async def get(self, record_id: str) -> RemoteDocument | None:
        await self._network()
        return self.documents.get(record_id)


class HttpRemoteStore:
    """
    REST client for the remote document store.

    PUT  {base_url}/records/{id}   If-Match: <expected version>
         200/201 -> ok, 409/412 -> version conflict
    GET  {base_url}/records/{id}   404 -> None
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 15.0,
        client: httpx.AsyncClient | None = None,
        headers_factory: Callable[[], dict[str, str]] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http_client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self.headers_factory = headers_factory or dict
        self.logger = logger.bind(component="remote_store", backend="http", base_url=self.base_url)

    async def close(self) -> None:
        await self.http_client.aclose()

    async def __aenter__(self) -> "HttpRemoteStore":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _url(self, record_id: str) -> str:
        return f"{self.base_url}/records/{record_id}"

    async def put(
        self, record_id: str, payload: dict[str, Any], expected_version: int
    ) -> PutResult:
        headers = {**self.headers_factory(), "If-Match": str(expected_version)}
        try:
            response = await self.http_client.put(
                self._url(record_id), json=payload, headers=headers
            )
        except httpx.TransportError as e:
            self.logger.warning("remote_put_unreachable", record_id=record_id, error=str(e))
            raise RemoteUnavailableError(f"PUT {record_id} failed: {e}") from e

        if response.status_code in (200, 201):
            data = _json_body(response)
            try:
                version = int(data["version"])
            except (KeyError, TypeError, ValueError) as e:
                raise RemoteRejectedError(response.status_code, "response carries no version") from e
            return PutResult(status="ok", version=version)
        if response.status_code in (409, 412):
            current = self._document_from(response) if response.content else None
            return PutResult(
                status="version_conflict",
                version=current.version if current is not None else 0,
                current=current,
            )
        raise RemoteRejectedError(response.status_code, response.text)

    async def get(self, record_id: str) -> RemoteDocument | None:
        try:
            response = await self.http_client.get(
                self._url(record_id), headers=self.headers_factory()
            )
        except httpx.TransportError as e:
            self.logger.warning("remote_get_unreachable", record_id=record_id, error=str(e))
            raise RemoteUnavailableError(f"GET {record_id} failed: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise RemoteRejectedError(response.status_code, response.text)
        return self._document_from(response)

    @staticmethod
    def _document_from(response: httpx.Response) -> RemoteDocument:
        data = _json_body(response)
        try:
            return RemoteDocument(
                record_id=data["record_id"],
                version=int(data["version"]),
                updated_at=_updated_at(data) if data.get("updated_at") else None,
                body=data["body"],
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteRejectedError(response.status_code, f"malformed document: {e}") from e


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise RemoteRejectedError(response.status_code, "response body is not JSON") from e
    if not isinstance(data, dict):
        raise RemoteRejectedError(response.status_code, "response body is not a JSON object")
    return data
