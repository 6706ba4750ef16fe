"""In-process reference backend — dict-based, for tests and local development."""

from __future__ import annotations

import copy
from typing import Any

from nosql_connector.adapters.base import Adapter, Backend, Capabilities, Row, WriteResult
from nosql_connector.exceptions import ConnectionFailedError
from nosql_connector.settings import DataSourceSettings


class MemoryStore:
    """Keyspace of one in-memory database: ``{model_name: {key: payload}}``."""

    def __init__(self) -> None:
        self.models: dict[str, dict[str, dict[str, Any]]] = {}
        self.closed = False

    def table(self, model_name: str) -> dict[str, dict[str, Any]]:
        if self.closed:
            raise ConnectionFailedError(model_name=model_name, operation="table", detail="Memory store is closed.")
        return self.models.setdefault(model_name, {})


class MemoryAdapter(Adapter):
    """Reference adapter over :class:`MemoryStore`.

    Declares no optional capabilities, so the coordinator exercises every
    fallback path (per-id lookups, ``list_all`` + predicate evaluation) and
    conflicts are detected with an explicit existence probe.
    """

    capabilities = Capabilities()

    async def _table(self) -> dict[str, dict[str, Any]]:
        store: MemoryStore = await self.connection()
        return store.table(self._model.storage_name)

    async def create_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        if await self.exists(id, options):
            raise self._conflict(id, "create_with_id")
        table = await self._table()
        table[str(id)] = copy.deepcopy(data)
        return id, None

    async def put_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        table = await self._table()
        table[str(id)] = copy.deepcopy(data)
        return id, None

    async def delete_by_id(self, id: Any, options: dict[str, Any] | None = None) -> bool:
        table = await self._table()
        return table.pop(str(id), None) is not None

    async def get_by_id(self, id: Any, options: dict[str, Any] | None = None) -> dict[str, Any]:
        table = await self._table()
        data = table.get(str(id))
        if data is None:
            raise self._not_found(id, "get_by_id")
        return copy.deepcopy(data)

    async def list_all(self, options: dict[str, Any] | None = None) -> list[Row]:
        table = await self._table()
        return [(key, copy.deepcopy(data)) for key, data in sorted(table.items())]


class MemoryBackend(Backend):
    """Opens a fresh :class:`MemoryStore`, or a shared one passed as ``options["store"]``."""

    name = "memory"
    adapter_class = MemoryAdapter
    requires_database = False

    async def open(self, settings: DataSourceSettings, database: str | None) -> MemoryStore:
        store = settings.options.get("store")
        if store is None:
            store = MemoryStore()
        store.closed = False
        return store

    async def close(self, handle: MemoryStore) -> None:
        handle.closed = True
