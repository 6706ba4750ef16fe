"""LevelDB ordered key-value adapter (plyvel).

Records are JSON values under ``"<Model>:<id>"`` keys, so one model occupies a
contiguous key range and listing is a prefix scan. All synchronous plyvel
calls are offloaded to a thread via ``asyncio.to_thread`` so that the asyncio
event loop is never blocked.

Requires the ``plyvel`` optional dependency:
    pip install nosql-connector[leveldb]
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from nosql_connector.adapters.base import Adapter, Backend, Capabilities, Row, WriteResult
from nosql_connector.exceptions import ConnectionFailedError, PersistenceError
from nosql_connector.settings import DataSourceSettings

logger = logging.getLogger(__name__)

TYPE_FIELD = "_type"


class LevelDBAdapter(Adapter):
    """Async LevelDB adapter.

    LevelDB overwrites on ``put``, so ``create_with_id`` probes for the key
    first. Multi-get reads from one snapshot; ``list_by_filter`` streams the
    model's key range and evaluates the injected predicate record by record.
    """

    capabilities = Capabilities(multi_get=True, native_filter=True)

    @property
    def _prefix(self) -> bytes:
        return f"{self._model.storage_name}:".encode()

    def _key(self, id: Any) -> bytes:
        return self._prefix + str(id).encode()

    async def _run(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        db = await self.connection()
        try:
            return await asyncio.to_thread(fn, db, *args, **kwargs)
        except PersistenceError:
            raise
        except Exception as exc:
            raise self._backend_error(exc, operation, "LevelDB operation failed.") from exc

    def _encode(self, data: dict[str, Any]) -> bytes:
        return json.dumps({**data, TYPE_FIELD: self.model_name}, default=str).encode()

    @staticmethod
    def _decode(value: bytes) -> dict[str, Any]:
        return json.loads(value)

    async def create_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        if await self.exists(id, options):
            raise self._conflict(id, "create_with_id")
        await self._run("create_with_id", lambda db: db.put(self._key(id), self._encode(data)))
        return id, None

    async def put_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        await self._run("put_with_id", lambda db: db.put(self._key(id), self._encode(data)))
        return id, None

    async def delete_by_id(self, id: Any, options: dict[str, Any] | None = None) -> bool:
        key = self._key(id)

        def _delete(db: Any) -> bool:
            # plyvel's delete is silent for missing keys.
            if db.get(key) is None:
                return False
            db.delete(key)
            return True

        return await self._run("delete_by_id", _delete)

    async def exists(self, id: Any, options: dict[str, Any] | None = None) -> bool:
        key = self._key(id)
        return await self._run("exists", lambda db: db.get(key) is not None)

    async def get_by_id(self, id: Any, options: dict[str, Any] | None = None) -> dict[str, Any]:
        value = await self._run("get_by_id", lambda db: db.get(self._key(id)))
        if value is None:
            raise self._not_found(id, "get_by_id")
        return self._decode(value)

    async def list_all(self, options: dict[str, Any] | None = None) -> list[Row]:
        prefix = self._prefix

        def _scan(db: Any) -> list[Row]:
            return [
                (key[len(prefix):].decode(), self._decode(value)) for key, value in db.iterator(prefix=prefix)
            ]

        return await self._run("list_all", _scan)

    async def list_by_ids(self, ids: list[Any], options: dict[str, Any] | None = None) -> list[Row]:
        def _multi_get(db: Any) -> list[Row]:
            snapshot = db.snapshot()
            try:
                rows: list[Row] = []
                for id in ids:
                    value = snapshot.get(self._key(id))
                    if value is not None:
                        rows.append((id, self._decode(value)))
                return rows
            finally:
                snapshot.close()

        return await self._run("list_by_ids", _multi_get)

    async def list_by_filter(self, where: dict[str, Any], options: dict[str, Any] | None = None) -> list[Row]:
        prefix = self._prefix
        model = self._model

        def _scan(db: Any) -> list[Row]:
            rows: list[Row] = []
            for key, value in db.iterator(prefix=prefix):
                raw_id = key[len(prefix):].decode()
                data = self._decode(value)
                # Evaluate against the model view; return the stored payload.
                candidate = self.from_db(dict(data))
                candidate[model.id_name] = model.coerce_id(raw_id)
                if self._predicate([candidate], where):
                    rows.append((raw_id, data))
            return rows

        return await self._run("list_by_filter", _scan)

    def from_db(self, data: dict[str, Any]) -> dict[str, Any]:
        data.pop(TYPE_FIELD, None)
        return super().from_db(data)


class LevelDBBackend(Backend):
    """Opens a ``plyvel.DB`` at the path named by ``database``.

    Extra ``options`` are passed to ``plyvel.DB``; ``create_if_missing``
    defaults to true.
    """

    name = "leveldb"
    adapter_class = LevelDBAdapter
    requires_database = True

    async def open(self, settings: DataSourceSettings, database: str | None) -> Any:
        import plyvel

        kwargs = {"create_if_missing": True, **settings.options}
        try:
            db = await asyncio.to_thread(plyvel.DB, database, **kwargs)
        except plyvel.Error as exc:
            logger.error("LevelDB open failed for %s: %s", database, type(exc).__name__)
            raise ConnectionFailedError(
                operation="connect",
                detail=f"Could not open LevelDB database at {database!r}.",
                cause=exc,
            ) from exc
        return db

    async def close(self, handle: Any) -> None:
        await asyncio.to_thread(handle.close)
