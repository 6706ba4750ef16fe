"""Redis hash-store adapter (redis.asyncio).

Each record is one hash under ``"<Model>:<id>"``. Hash fields are flat
strings, so every value goes through :func:`encode_flat` on the way in and
:func:`decode_flat` on the way out. A ``_type`` bookkeeping field is always
written so a record without data fields still exists as a key.

Requires the ``redis`` optional dependency:
    pip install nosql-connector[redis]
"""

from __future__ import annotations

import logging
import re
from typing import Any

from nosql_connector.adapters.base import Adapter, Backend, Capabilities, Row, WriteResult
from nosql_connector.exceptions import ConnectionFailedError, PersistenceError
from nosql_connector.settings import DataSourceSettings, install_credential_filter
from nosql_connector.transcoding import decode_flat, encode_flat

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6379
TYPE_FIELD = "_type"

_GLOB_SPECIAL_RE = re.compile(r"([*?\[\]\\])")


def _is_connection_error(exc: Exception) -> bool:
    """Check whether *exc* is a redis-py connection or timeout failure."""
    type_names = {cls.__name__ for cls in type(exc).__mro__}
    return bool(type_names & {"ConnectionError", "TimeoutError", "BusyLoadingError"})


class RedisAdapter(Adapter):
    """Async Redis adapter over hashes.

    Redis has no unique-insert primitive for hashes, so ``create_with_id``
    probes with ``EXISTS`` first. Multi-get pipelines one ``HGETALL`` per id.
    """

    capabilities = Capabilities(multi_get=True)

    @property
    def _prefix(self) -> str:
        return f"{self._model.storage_name}:"

    def _key(self, id: Any) -> str:
        return f"{self._prefix}{id}"

    def _translate(self, exc: Exception, operation: str, detail: str) -> PersistenceError:
        if isinstance(exc, PersistenceError):
            return exc
        if _is_connection_error(exc):
            logger.error("Redis %s connection error for %s: %s", operation, self.model_name, type(exc).__name__)
            return ConnectionFailedError(
                model_name=self.model_name,
                operation=operation,
                detail="Redis connection failed.",
                cause=exc,
            )
        return self._backend_error(exc, operation, detail)

    def _mapping(self, data: dict[str, Any]) -> dict[str, str]:
        return {**data, TYPE_FIELD: self.model_name}

    async def create_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        if await self.exists(id, options):
            raise self._conflict(id, "create_with_id")
        client = await self.connection()
        try:
            await client.hset(self._key(id), mapping=self._mapping(data))
        except Exception as exc:
            raise self._translate(exc, "create_with_id", "HSET failed.") from exc
        return id, None

    async def put_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        client = await self.connection()
        key = self._key(id)
        # Drop fields absent from the new payload; a full replace, not a merge.
        pipe = client.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping=self._mapping(data))
        try:
            await pipe.execute()
        except Exception as exc:
            raise self._translate(exc, "put_with_id", "Replace transaction failed.") from exc
        return id, None

    async def delete_by_id(self, id: Any, options: dict[str, Any] | None = None) -> bool:
        client = await self.connection()
        try:
            deleted = await client.delete(self._key(id))
        except Exception as exc:
            raise self._translate(exc, "delete_by_id", "DEL failed.") from exc
        return deleted > 0

    async def exists(self, id: Any, options: dict[str, Any] | None = None) -> bool:
        client = await self.connection()
        try:
            return await client.exists(self._key(id)) > 0
        except Exception as exc:
            raise self._translate(exc, "exists", "EXISTS failed.") from exc

    async def get_by_id(self, id: Any, options: dict[str, Any] | None = None) -> dict[str, Any]:
        client = await self.connection()
        try:
            data = await client.hgetall(self._key(id))
        except Exception as exc:
            raise self._translate(exc, "get_by_id", "HGETALL failed.") from exc
        # Redis drops empty hashes, so an empty reply means the key is absent.
        if not data:
            raise self._not_found(id, "get_by_id")
        return data

    async def list_all(self, options: dict[str, Any] | None = None) -> list[Row]:
        client = await self.connection()
        pattern = _GLOB_SPECIAL_RE.sub(r"\\\1", self._prefix) + "*"
        try:
            keys = sorted([key async for key in client.scan_iter(match=pattern)])
        except Exception as exc:
            raise self._translate(exc, "list_all", "SCAN failed.") from exc
        return await self._fetch("list_all", [key[len(self._prefix):] for key in keys])

    async def list_by_ids(self, ids: list[Any], options: dict[str, Any] | None = None) -> list[Row]:
        return await self._fetch("list_by_ids", list(ids))

    async def _fetch(self, operation: str, ids: list[Any]) -> list[Row]:
        if not ids:
            return []
        client = await self.connection()
        pipe = client.pipeline(transaction=False)
        for id in ids:
            pipe.hgetall(self._key(id))
        try:
            hashes = await pipe.execute()
        except Exception as exc:
            raise self._translate(exc, operation, "HGETALL pipeline failed.") from exc
        # Keys may vanish between SCAN and HGETALL.
        return [(id, data) for id, data in zip(ids, hashes) if data]

    def to_db(self, data: dict[str, Any]) -> dict[str, Any]:
        for name, value in data.items():
            prop = self._model.get_property(name)
            data[name] = encode_flat(prop.property_type if prop else None, value)
        return data

    def from_db(self, data: dict[str, Any]) -> dict[str, Any]:
        data.pop(TYPE_FIELD, None)
        for name, value in data.items():
            prop = self._model.get_property(name)
            data[name] = decode_flat(prop.property_type if prop else None, value)
        return data


class RedisBackend(Backend):
    """Opens a ``redis.asyncio.Redis`` client.

    ``database`` is the numeric db index and defaults to 0. Extra ``options``
    are passed to the client constructor unchanged.
    """

    name = "redis"
    adapter_class = RedisAdapter
    requires_database = False

    async def open(self, settings: DataSourceSettings, database: str | None) -> Any:
        import redis.asyncio as redis

        try:
            db = int(database) if database else 0
        except ValueError as exc:
            raise ConnectionFailedError(
                operation="connect",
                detail=f"Redis database must be a numeric index, got {database!r}.",
                cause=exc,
            ) from exc
        kwargs: dict[str, Any] = {"decode_responses": True, **settings.options}
        if settings.username:
            kwargs.setdefault("username", settings.username)
        if settings.password:
            kwargs.setdefault("password", settings.password)
        if settings.url:
            if "@" in settings.url:
                install_credential_filter("redis")
            # redis-py lets a db index in the URL path override this one.
            if database:
                kwargs.setdefault("db", db)
            client = redis.from_url(settings.url, **kwargs)
        else:
            kwargs.setdefault("db", db)
            client = redis.Redis(host=settings.host or "127.0.0.1", port=settings.port or DEFAULT_PORT, **kwargs)
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        logger.info("Redis connected (db %s)", kwargs.get("db", db))
        return client

    async def close(self, handle: Any) -> None:
        await handle.aclose()
