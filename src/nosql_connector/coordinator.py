"""Coordinator — the single entry point callers use for every backend.

The coordinator owns the connection handle and one adapter per model, and
builds compound operations (bulk update/delete, count, merge updates) out of
the adapters' primitives.

Bulk operations are best-effort and record-at-a-time: ``update`` and
``destroy_all`` act on each matching record independently and report only how
many succeeded. Per-record failures are logged at DEBUG and otherwise dropped;
callers cannot tell which records failed. ``find_by_ids`` likewise drops ids
that fail to resolve.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Callable
from typing import Any

from nosql_connector.adapters.base import Adapter, Backend, Row
from nosql_connector.exceptions import ConnectionFailedError, PersistenceError, QueryError
from nosql_connector.filters import PredicateEvaluator, apply_filter, apply_where, ids_from_where
from nosql_connector.schema import ModelRegistry
from nosql_connector.settings import DataSourceSettings

logger = logging.getLogger(__name__)

Record = dict[str, Any]


def generate_id() -> int:
    """Generate a numeric id: milliseconds since the epoch plus three random digits."""
    return int(time.time() * 1000) * 1000 + secrets.randbelow(1000)


class Coordinator:
    """Backend-agnostic CRUD/query facade over one configured data source.

    Args:
        backend: Connection primitives and adapter class of the backend family.
        settings: Data source settings handed to ``backend.open``.
        models: Registry supplying model schemas.
        id_generator: Produces ids for records created without one.
        predicate: Evaluator used when an adapter cannot filter natively.
    """

    def __init__(
        self,
        backend: Backend,
        settings: DataSourceSettings,
        models: ModelRegistry,
        *,
        id_generator: Callable[[], Any] | None = None,
        predicate: PredicateEvaluator = apply_where,
    ) -> None:
        self._backend = backend
        self._settings = settings
        self._models = models
        self._id_generator = id_generator or generate_id
        self._predicate = predicate
        self._connection: asyncio.Future[Any] | None = None
        self._adapters: dict[str, Adapter] = {}

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def settings(self) -> DataSourceSettings:
        return self._settings

    @property
    def models(self) -> ModelRegistry:
        return self._models

    @property
    def connected(self) -> bool:
        """True once a connect attempt has completed successfully."""
        future = self._connection
        return future is not None and future.done() and not future.cancelled() and future.exception() is None

    # -- Connection lifecycle -------------------------------------------------

    async def connect(self) -> Any:
        """Return the connection handle, establishing it if needed.

        Concurrent callers share a single in-flight attempt. A failed attempt
        is forgotten so that the next call starts a fresh one.
        """
        if self._connection is None:
            database = self._settings.database
            if self._backend.requires_database and not database:
                raise ConnectionFailedError(
                    operation="connect",
                    detail=f"A database name must be specified for the {self._backend.name} connector.",
                )
            logger.debug("connecting: %s", self._settings.redacted())
            future = asyncio.ensure_future(self._open(database))
            future.add_done_callback(self._forget_failed_connection)
            self._connection = future
        return await asyncio.shield(self._connection)

    async def _open(self, database: str | None) -> Any:
        try:
            return await self._backend.open(self._settings, database)
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error("connect to %s failed: %s", self._backend.name, type(exc).__name__)
            raise ConnectionFailedError(
                operation="connect",
                detail=f"Could not connect to the {self._backend.name} backend.",
                cause=exc,
            ) from exc

    def _forget_failed_connection(self, future: asyncio.Future[Any]) -> None:
        if future.cancelled() or future.exception() is not None:
            if self._connection is future:
                self._connection = None

    async def acquire(self) -> Any:
        """``ConnectionProvider`` hook for adapters; connects lazily."""
        return await self.connect()

    async def disconnect(self) -> None:
        """Release the connection handle. No-op when not connected."""
        if self._connection is None:
            return
        future, self._connection = self._connection, None
        try:
            handle = await future
        except PersistenceError:
            # The attempt never produced a handle; there is nothing to release.
            logger.debug("disconnect: pending connection to %s had failed", self._backend.name)
            return
        logger.debug("disconnecting from %s", self._backend.name)
        await self._backend.close(handle)

    # -- Adapters -------------------------------------------------------------

    def adapter(self, model_name: str) -> Adapter:
        """Return the cached adapter for *model_name*, creating it on first use."""
        adapter = self._adapters.get(model_name)
        if adapter is None:
            adapter = self._backend.adapter_class(
                self._models.get_model(model_name),
                self,
                id_generator=self._id_generator,
                predicate=self._predicate,
                settings=self._settings,
            )
            self._adapters[model_name] = adapter
        return adapter

    def id_name(self, model_name: str) -> str:
        return self._models.id_name(model_name)

    def _id_value(self, model_name: str, data: Record) -> Any:
        return data.get(self.id_name(model_name))

    def _for_db(self, adapter: Adapter, data: Record) -> Record:
        """Copy *data*, strip the id field, and let the adapter transcode the rest."""
        payload = dict(data)
        payload.pop(adapter.model.id_name, None)
        return adapter.to_db(payload)

    def _from_db(self, adapter: Adapter, raw_id: Any, data: Record) -> Record:
        """Transcode a backend payload and re-inject the id from its key."""
        record = adapter.from_db(dict(data))
        model = adapter.model
        record[model.id_name] = model.coerce_id(raw_id)
        for prop in model.properties:
            record.setdefault(prop.name, None)
        return record

    def _from_rows(self, adapter: Adapter, rows: list[Row]) -> list[Record]:
        return [self._from_db(adapter, raw_id, data) for raw_id, data in rows]

    # -- Single-record operations ---------------------------------------------

    async def create(self, model_name: str, data: Record, options: dict[str, Any] | None = None) -> tuple[Any, Any]:
        """Create a record. Returns ``(id, revision)``; revision is ``None`` on most backends.

        Raises:
            ConflictError: If *data* carries an id that already exists.
        """
        adapter = self.adapter(model_name)
        id = self._id_value(model_name, data)
        payload = self._for_db(adapter, data)
        if id is None:
            raw_id, rev = await adapter.create_without_id(payload, options)
        else:
            raw_id, rev = await adapter.create_with_id(adapter.model.coerce_id(id), payload, options)
        return adapter.model.coerce_id(raw_id), rev

    async def save(self, model_name: str, data: Record, options: dict[str, Any] | None = None) -> Any:
        """Upsert a record by its id. Returns the revision token, if any."""
        adapter = self.adapter(model_name)
        id = self._id_value(model_name, data)
        if id is None:
            raise QueryError(model_name=model_name, operation="save", detail="save requires an id.")
        _, rev = await adapter.put_with_id(adapter.model.coerce_id(id), self._for_db(adapter, data), options)
        return rev

    async def destroy(self, model_name: str, id: Any, options: dict[str, Any] | None = None) -> dict[str, int]:
        """Delete by id. Returns ``{"count": 1}`` or ``{"count": 0}`` when absent."""
        adapter = self.adapter(model_name)
        deleted = await adapter.delete_by_id(adapter.model.coerce_id(id), options)
        return {"count": 1 if deleted else 0}

    async def exists(self, model_name: str, id: Any, options: dict[str, Any] | None = None) -> bool:
        adapter = self.adapter(model_name)
        return await adapter.exists(adapter.model.coerce_id(id), options)

    async def find_by_id(self, model_name: str, id: Any, options: dict[str, Any] | None = None) -> Record:
        """Fetch one record.

        Raises:
            NotFoundError: If no record has this id.
        """
        adapter = self.adapter(model_name)
        id = adapter.model.coerce_id(id)
        data = await adapter.get_by_id(id, options)
        return self._from_db(adapter, id, data)

    async def update_attributes(
        self, model_name: str, id: Any, data: Record, options: dict[str, Any] | None = None
    ) -> Record:
        """Read, merge *data* into the record, and write it back. Not atomic."""
        base = await self.find_by_id(model_name, id, options)
        merged = {**base, **data, self.id_name(model_name): base[self.id_name(model_name)]}
        adapter = self.adapter(model_name)
        await adapter.put_with_id(merged[adapter.model.id_name], self._for_db(adapter, merged), options)
        return merged

    async def replace_by_id(self, model_name: str, id: Any, data: Record, options: dict[str, Any] | None = None) -> Record:
        """Overwrite an existing record entirely.

        Raises:
            NotFoundError: If no record has this id.
        """
        base = await self.find_by_id(model_name, id, options)
        id_name = self.id_name(model_name)
        replacement = {**data, id_name: base[id_name]}
        adapter = self.adapter(model_name)
        await adapter.put_with_id(base[id_name], self._for_db(adapter, replacement), options)
        return replacement

    # -- Multi-record reads ---------------------------------------------------

    async def find_by_ids(self, model_name: str, ids: list[Any], options: dict[str, Any] | None = None) -> list[Record]:
        """Fetch the records that exist among *ids*, in no guaranteed order."""
        adapter = self.adapter(model_name)
        ids = [adapter.model.coerce_id(id) for id in ids]
        if adapter.capabilities.multi_get:
            return self._from_rows(adapter, await adapter.list_by_ids(ids, options))
        found = await asyncio.gather(*(self._find_quietly(model_name, id, options) for id in ids))
        return [record for record in found if record is not None]

    async def _find_quietly(self, model_name: str, id: Any, options: dict[str, Any] | None) -> Record | None:
        try:
            return await self.find_by_id(model_name, id, options)
        except PersistenceError as exc:
            logger.debug("find_by_ids: dropping %s id=%r (%s)", model_name, id, type(exc).__name__)
            return None

    async def find_all(self, model_name: str, options: dict[str, Any] | None = None) -> list[Record]:
        adapter = self.adapter(model_name)
        return self._from_rows(adapter, await adapter.list_all(options))

    async def find_by_filters(
        self, model_name: str, where: dict[str, Any] | None, options: dict[str, Any] | None = None
    ) -> list[Record]:
        """Fetch records matching *where*, natively when the adapter can filter."""
        adapter = self.adapter(model_name)
        if not where:
            return await self.find_all(model_name, options)
        if adapter.capabilities.native_filter:
            return self._from_rows(adapter, await adapter.list_by_filter(where, options))
        return self._predicate(await self.find_all(model_name, options), where)

    async def find(self, model_name: str, query: dict[str, Any] | None = None, options: dict[str, Any] | None = None) -> list[Record]:
        """Run a query: ``where`` plus optional ``order``, ``skip``, ``limit``, ``fields``.

        A ``where`` that pins only the id to a value or an ``inq`` list takes the
        ``find_by_ids`` fast path instead of predicate evaluation.
        """
        query = dict(query or {})
        where = query.pop("where", None)
        ids = ids_from_where(where, self.id_name(model_name))
        if ids is not None:
            records = await self.find_by_ids(model_name, ids, options)
            rest = {k: v for k, v in where.items() if k != self.id_name(model_name)}
            if rest:
                records = self._predicate(records, rest)
        else:
            records = await self.find_by_filters(model_name, where, options)
        if query:
            records = apply_filter(records, query)
        return records

    async def count(self, model_name: str, where: dict[str, Any] | None = None, options: dict[str, Any] | None = None) -> int:
        """Count matching records by resolving them; not a backend-native count."""
        return len(await self.find(model_name, {"where": where}, options))

    # -- Bulk writes ----------------------------------------------------------

    async def update(
        self, model_name: str, where: dict[str, Any] | None, data: Record, options: dict[str, Any] | None = None
    ) -> dict[str, int]:
        """Merge *data* into every matching record. Returns the number of successful writes."""
        adapter = self.adapter(model_name)
        id_name = adapter.model.id_name
        records = await self.find(model_name, {"where": where}, options)

        async def _write(record: Record) -> bool:
            merged = {**record, **data, id_name: record[id_name]}
            try:
                await adapter.put_with_id(record[id_name], self._for_db(adapter, merged), options)
            except PersistenceError as exc:
                logger.debug("update: skipping %s id=%r (%s)", model_name, record[id_name], type(exc).__name__)
                return False
            return True

        results = await asyncio.gather(*(_write(record) for record in records))
        return {"count": sum(results)}

    async def destroy_all(
        self, model_name: str, where: dict[str, Any] | None = None, options: dict[str, Any] | None = None
    ) -> dict[str, int]:
        """Delete every matching record. Returns the number of successful deletions."""
        adapter = self.adapter(model_name)
        id_name = adapter.model.id_name
        records = await self.find(model_name, {"where": where}, options)

        async def _delete(record: Record) -> bool:
            try:
                return await adapter.delete_by_id(record[id_name], options)
            except PersistenceError as exc:
                logger.debug("destroy_all: skipping %s id=%r (%s)", model_name, record[id_name], type(exc).__name__)
                return False

        results = await asyncio.gather(*(_delete(record) for record in records))
        return {"count": sum(1 for deleted in results if deleted)}
