"""Motor/MongoDB adapter.

Each model maps to one collection; the record id is stored as ``_id``.
``where`` clauses are translated into native MongoDB queries, so filtering
happens server-side.

Requires the ``motor`` optional dependency:
    pip install nosql-connector[mongo]
"""

from __future__ import annotations

import logging
import re
from typing import Any

from nosql_connector.adapters.base import Adapter, Backend, Capabilities, Row, WriteResult
from nosql_connector.exceptions import ConnectionFailedError, PersistenceError, QueryError
from nosql_connector.filters import is_operator_clause
from nosql_connector.schema import PropertyType
from nosql_connector.settings import DataSourceSettings, install_credential_filter, redact_url
from nosql_connector.transcoding import encode_date

logger = logging.getLogger(__name__)

DEFAULT_PORT = 27017

_SIMPLE_OPERATORS = {
    "gt": "$gt",
    "gte": "$gte",
    "lt": "$lt",
    "lte": "$lte",
    "neq": "$ne",
}
_LIST_OPERATORS = {"inq": "$in", "nin": "$nin"}


class MongoAdapter(Adapter):
    """Async MongoDB adapter backed by Motor.

    Duplicate ids are rejected by the server's unique ``_id`` index; multi-get
    is a single ``$in`` query.
    """

    capabilities = Capabilities(multi_get=True, native_filter=True, unique_keys=True)

    async def _collection(self) -> Any:
        database = await self.connection()
        return database[self._model.storage_name]

    def _translate(self, exc: Exception, operation: str, detail: str) -> PersistenceError:
        if isinstance(exc, PersistenceError):
            return exc
        if _is_connection_error(exc):
            logger.error("Mongo %s connection error for %s: %s", operation, self.model_name, type(exc).__name__)
            return ConnectionFailedError(
                model_name=self.model_name,
                operation=operation,
                detail="Database connection failed.",
                cause=exc,
            )
        return self._backend_error(exc, operation, detail)

    async def create_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        coll = await self._collection()
        try:
            await coll.insert_one({**data, "_id": id})
        except Exception as exc:
            if _is_duplicate_key_error(exc):
                logger.error("Mongo create_with_id failed for %s: duplicate key", self.model_name)
                raise self._conflict(id, "create_with_id", exc) from exc
            raise self._translate(exc, "create_with_id", "Insert operation failed.") from exc
        return id, None

    async def put_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        coll = await self._collection()
        try:
            await coll.replace_one({"_id": id}, {**data, "_id": id}, upsert=True)
        except Exception as exc:
            raise self._translate(exc, "put_with_id", "Replace operation failed.") from exc
        return id, None

    async def delete_by_id(self, id: Any, options: dict[str, Any] | None = None) -> bool:
        coll = await self._collection()
        try:
            result = await coll.delete_one({"_id": id})
        except Exception as exc:
            raise self._translate(exc, "delete_by_id", "Delete operation failed.") from exc
        return result.deleted_count > 0

    async def get_by_id(self, id: Any, options: dict[str, Any] | None = None) -> dict[str, Any]:
        coll = await self._collection()
        try:
            doc = await coll.find_one({"_id": id})
        except Exception as exc:
            raise self._translate(exc, "get_by_id", "Query execution failed.") from exc
        if doc is None:
            raise self._not_found(id, "get_by_id")
        doc = dict(doc)
        doc.pop("_id", None)
        return doc

    async def list_all(self, options: dict[str, Any] | None = None) -> list[Row]:
        return await self._find("list_all", {})

    async def list_by_ids(self, ids: list[Any], options: dict[str, Any] | None = None) -> list[Row]:
        return await self._find("list_by_ids", {"_id": {"$in": list(ids)}})

    async def list_by_filter(self, where: dict[str, Any], options: dict[str, Any] | None = None) -> list[Row]:
        _reject_mongo_operators(where, self.model_name)
        return await self._find("list_by_filter", self.to_query(where))

    async def _find(self, operation: str, query: dict[str, Any]) -> list[Row]:
        coll = await self._collection()
        try:
            rows: list[Row] = []
            async for doc in coll.find(query):
                doc = dict(doc)
                rows.append((doc.pop("_id", None), doc))
            return rows
        except Exception as exc:
            raise self._translate(exc, operation, "Query execution failed.") from exc

    # -- Query translation ----------------------------------------------------

    def to_query(self, where: dict[str, Any]) -> dict[str, Any]:
        """Translate a ``where`` clause into a MongoDB query document."""
        query: dict[str, Any] = {}
        for key, condition in where.items():
            if key in ("and", "or"):
                if not isinstance(condition, (list, tuple)):
                    raise QueryError(
                        model_name=self.model_name, operation="list_by_filter", detail=f"'{key}' expects a list of clauses"
                    )
                query[f"${key}"] = [self.to_query(sub) for sub in condition]
                continue
            field = "_id" if key == self._model.id_name else key
            query[field] = self._condition(key, condition)
        return query

    def _condition(self, key: str, condition: Any) -> Any:
        if not is_operator_clause(condition):
            return self._operand(key, condition)
        out: dict[str, Any] = {}
        for op, operand in condition.items():
            if op in _SIMPLE_OPERATORS:
                out[_SIMPLE_OPERATORS[op]] = self._operand(key, operand)
            elif op in _LIST_OPERATORS:
                out[_LIST_OPERATORS[op]] = [self._operand(key, value) for value in operand]
            elif op == "between":
                low, high = operand
                out["$gte"] = self._operand(key, low)
                out["$lte"] = self._operand(key, high)
            elif op == "exists":
                out["$exists"] = bool(operand)
            elif op == "regexp":
                out["$regex"] = operand.pattern if isinstance(operand, re.Pattern) else str(operand)
            elif op in ("like", "ilike"):
                out["$regex"] = _like_pattern(operand)
                if op == "ilike":
                    out["$options"] = "i"
            else:
                # nlike / nilike
                flags = re.IGNORECASE if op == "nilike" else 0
                out["$not"] = re.compile(_like_pattern(operand), flags)
        return out

    def _operand(self, key: str, value: Any) -> Any:
        if key == self._model.id_name:
            return self._model.coerce_id(value)
        prop = self._model.get_property(key)
        if prop is not None and prop.property_type == PropertyType.DATE:
            return encode_date(value)
        return value


def _like_pattern(operand: Any) -> str:
    # SQL-style wildcard: % matches any run of characters.
    return str(operand).replace("%", ".*")


def _reject_mongo_operators(where: dict[str, Any], model_name: str) -> None:
    """Raise ``QueryError`` if any key (recursively) starts with ``$``.

    Raw MongoDB operators such as ``$where`` or ``$expr`` must not be smuggled
    in through caller-supplied ``where`` clauses.
    """

    def _check(obj: Any) -> None:
        if isinstance(obj, dict):
            for key in obj:
                if isinstance(key, str) and key.startswith("$"):
                    raise QueryError(
                        model_name=model_name,
                        operation="list_by_filter",
                        detail=f"Filter key '{key}' is not allowed: MongoDB operators are rejected.",
                    )
                _check(obj[key])
        elif isinstance(obj, list):
            for item in obj:
                _check(item)

    _check(where)


def _is_duplicate_key_error(exc: Exception) -> bool:
    """Check whether *exc* is a MongoDB duplicate-key error.

    Works without importing ``pymongo`` by inspecting the exception's class
    name and the error code attribute used by PyMongo.
    """
    if type(exc).__name__ == "DuplicateKeyError":
        return True
    # PyMongo wraps duplicate key errors as WriteError with code 11000.
    return getattr(exc, "code", None) == 11000


def _is_connection_error(exc: Exception) -> bool:
    """Check whether *exc* indicates a connection-level failure."""
    type_names = {cls.__name__ for cls in type(exc).__mro__}
    return bool(type_names & {"ConnectionFailure", "ServerSelectionTimeoutError", "AutoReconnect", "NetworkTimeout"})


def mongo_url(settings: DataSourceSettings) -> str:
    if settings.url:
        return settings.url
    host = settings.host or "127.0.0.1"
    port = settings.port or DEFAULT_PORT
    return f"mongodb://{host}:{port}"


class MongoBackend(Backend):
    """Opens a Motor client and returns the configured database.

    Extra ``options`` are passed to ``AsyncIOMotorClient`` unchanged.
    """

    name = "mongodb"
    adapter_class = MongoAdapter
    requires_database = True

    async def open(self, settings: DataSourceSettings, database: str | None) -> Any:
        from motor.motor_asyncio import AsyncIOMotorClient

        url = mongo_url(settings)
        if "@" in url:
            install_credential_filter("pymongo", "motor")
        kwargs = dict(settings.options)
        if settings.username:
            kwargs.setdefault("username", settings.username)
            kwargs.setdefault("password", settings.password)
        client = AsyncIOMotorClient(url, **kwargs)
        db = client[database]
        try:
            await db.command("ping")
        except Exception as exc:
            client.close()
            if _is_connection_error(exc):
                raise ConnectionFailedError(
                    operation="connect",
                    detail=f"MongoDB at {redact_url(url)} is unreachable.",
                    cause=exc,
                ) from exc
            raise
        return db

    async def close(self, handle: Any) -> None:
        handle.client.close()
