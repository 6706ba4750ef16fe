"""CouchDB document-store adapter over the HTTP API (httpx).

Documents of every model share one database; a model's records live under
``"<Model>:<id>"`` document ids. CouchDB enforces unique ids on its own and
returns a revision token for every write.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx

from nosql_connector.adapters.base import Adapter, Backend, Capabilities, Row, WriteResult
from nosql_connector.exceptions import BackendError, ConnectionFailedError
from nosql_connector.settings import DataSourceSettings, install_credential_filter

logger = logging.getLogger(__name__)

DEFAULT_PORT = 5984
# Fields CouchDB manages itself; never part of model data.
_BOOKKEEPING_FIELDS = ("_id", "_rev")


def server_url(settings: DataSourceSettings) -> str:
    """Build ``protocol://host:port`` from the settings unless a full URL is given."""
    if settings.url:
        return settings.url.rstrip("/")
    protocol = settings.protocol or "http"
    host = settings.host or "127.0.0.1"
    port = settings.port or DEFAULT_PORT
    return f"{protocol}://{host}:{port}"


class CouchDBAdapter(Adapter):
    """Async CouchDB adapter.

    Conflicts come back from CouchDB as HTTP 409; multi-get uses a single
    ``POST _all_docs`` with ``keys``.
    """

    capabilities = Capabilities(multi_get=True, unique_keys=True, revisions=True)

    @property
    def _prefix(self) -> str:
        return f"{self._model.storage_name}:"

    def _doc_id(self, id: Any) -> str:
        return f"{self._prefix}{id}"

    def _path(self, id: Any) -> str:
        return quote(self._doc_id(id), safe="")

    async def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        client: httpx.AsyncClient = await self.connection()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            logger.error("CouchDB %s connection error for %s: %s", operation, self.model_name, type(exc).__name__)
            raise ConnectionFailedError(
                model_name=self.model_name,
                operation=operation,
                detail="CouchDB request failed at the transport level.",
                cause=exc,
            ) from exc

    def _check(self, response: httpx.Response, operation: str) -> None:
        if not response.is_error:
            return
        logger.error("CouchDB %s failed for %s: status %s", operation, self.model_name, response.status_code)
        raise BackendError(
            model_name=self.model_name,
            operation=operation,
            detail=f"CouchDB returned {response.status_code}: {_reason(response)}",
            status_code=response.status_code,
        )

    async def _get_rev(self, id: Any, operation: str) -> str | None:
        """Return the current revision of a document, or ``None`` if it does not exist."""
        response = await self._request(operation, "HEAD", self._path(id))
        if response.status_code == 404:
            return None
        self._check(response, operation)
        etag = response.headers.get("etag")
        return etag.strip('"') if etag else None

    async def create_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        response = await self._request("create_with_id", "PUT", self._path(id), json=data)
        if response.status_code == 409:
            raise self._conflict(id, "create_with_id")
        self._check(response, "create_with_id")
        return id, response.json().get("rev")

    async def put_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        body = dict(data)
        rev = await self._get_rev(id, "put_with_id")
        if rev:
            body["_rev"] = rev
        response = await self._request("put_with_id", "PUT", self._path(id), json=body)
        self._check(response, "put_with_id")
        return id, response.json().get("rev")

    async def delete_by_id(self, id: Any, options: dict[str, Any] | None = None) -> bool:
        rev = await self._get_rev(id, "delete_by_id")
        if rev is None:
            return False
        response = await self._request("delete_by_id", "DELETE", self._path(id), params={"rev": rev})
        if response.status_code == 404:
            return False
        self._check(response, "delete_by_id")
        return True

    async def get_by_id(self, id: Any, options: dict[str, Any] | None = None) -> dict[str, Any]:
        response = await self._request("get_by_id", "GET", self._path(id))
        if response.status_code == 404:
            raise self._not_found(id, "get_by_id")
        self._check(response, "get_by_id")
        return response.json()

    async def list_all(self, options: dict[str, Any] | None = None) -> list[Row]:
        params = {
            "include_docs": "true",
            "startkey": json.dumps(self._prefix),
            "endkey": json.dumps(self._prefix + "\ufff0"),
        }
        response = await self._request("list_all", "GET", "_all_docs", params=params)
        self._check(response, "list_all")
        return self._rows(response.json())

    async def list_by_ids(self, ids: list[Any], options: dict[str, Any] | None = None) -> list[Row]:
        keys = [self._doc_id(id) for id in ids]
        response = await self._request(
            "list_by_ids", "POST", "_all_docs", params={"include_docs": "true"}, json={"keys": keys}
        )
        self._check(response, "list_by_ids")
        return self._rows(response.json())

    def _rows(self, body: dict[str, Any]) -> list[Row]:
        rows: list[Row] = []
        for row in body.get("rows", []):
            # Missing keys come back with "error"; deleted ones with a null doc.
            doc = row.get("doc")
            doc_id = row.get("id") or row.get("key")
            if row.get("error") or doc is None or not isinstance(doc_id, str):
                continue
            if not doc_id.startswith(self._prefix):
                continue
            rows.append((doc_id[len(self._prefix):], doc))
        return rows

    def to_db(self, data: dict[str, Any]) -> dict[str, Any]:
        data = super().to_db(data)
        for name in _BOOKKEEPING_FIELDS:
            data.pop(name, None)
        return data

    def from_db(self, data: dict[str, Any]) -> dict[str, Any]:
        for name in _BOOKKEEPING_FIELDS:
            data.pop(name, None)
        return super().from_db(data)


def _reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("reason") or body.get("error") or response.reason_phrase)
    return response.reason_phrase


class CouchDBBackend(Backend):
    """Opens an ``httpx.AsyncClient`` scoped to one CouchDB database.

    Recognised options: ``timeout`` (seconds), ``create_database`` (create the
    database when it does not exist), ``transport`` (custom httpx transport).
    """

    name = "couchdb"
    adapter_class = CouchDBAdapter
    requires_database = True

    async def open(self, settings: DataSourceSettings, database: str | None) -> httpx.AsyncClient:
        server = server_url(settings)
        if "@" in server:
            install_credential_filter("httpx", "httpcore")
        auth = (settings.username, settings.password or "") if settings.username else None
        client = httpx.AsyncClient(
            base_url=f"{server}/{quote(database or '', safe='')}/",
            auth=auth,
            timeout=settings.options.get("timeout", 10.0),
            transport=settings.options.get("transport"),
        )
        try:
            response = await client.get("")
            if response.status_code == 404 and settings.options.get("create_database", False):
                response = await client.put("")
            if response.is_error:
                raise ConnectionFailedError(
                    operation="connect",
                    detail=f"CouchDB database {database!r} is not available ({response.status_code}).",
                    status_code=response.status_code,
                )
        except Exception:
            await client.aclose()
            raise
        return client

    async def close(self, handle: httpx.AsyncClient) -> None:
        await handle.aclose()
