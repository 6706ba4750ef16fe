"""Tests for the MongoDB adapter: query translation, error mapping, and the Motor backend.

Motor is never contacted; the database and collections are mocks.
"""

from __future__ import annotations

import re
import sys
import types
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from nosql_connector.adapters.mongo import (
    MongoAdapter,
    MongoBackend,
    _is_connection_error,
    _is_duplicate_key_error,
    _reject_mongo_operators,
    mongo_url,
)
from nosql_connector.coordinator import Coordinator
from nosql_connector.exceptions import (
    BackendError,
    ConflictError,
    ConnectionFailedError,
    NotFoundError,
    QueryError,
)
from nosql_connector.schema import ModelRegistry, ModelSchema
from nosql_connector.settings import DataSourceSettings


class FakeDuplicateKeyError(Exception):
    """Simulates pymongo.errors.DuplicateKeyError."""


FakeDuplicateKeyError.__name__ = "DuplicateKeyError"


class FakeConnectionFailure(Exception):
    """Simulates pymongo.errors.ConnectionFailure."""


FakeConnectionFailure.__name__ = "ConnectionFailure"


class FakeServerSelectionTimeout(FakeConnectionFailure):
    """Simulates pymongo.errors.ServerSelectionTimeoutError."""


FakeServerSelectionTimeout.__name__ = "ServerSelectionTimeoutError"


class FakeOperationFailure(Exception):
    """Simulates pymongo.errors.OperationFailure with an error code."""

    code = 2


class FakeCursor:
    def __init__(self, docs: list[dict[str, Any]]) -> None:
        self._docs = docs

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._docs:
            yield dict(doc)


class StaticProvider:
    def __init__(self, handle: Any) -> None:
        self.handle = handle

    async def acquire(self) -> Any:
        return self.handle


class FakeCollection:
    """Dict-backed collection keyed by ``_id``, with Mongo's type-strict key matching."""

    def __init__(self) -> None:
        self.docs: dict[Any, dict[str, Any]] = {}

    async def insert_one(self, doc: dict[str, Any]) -> None:
        if doc["_id"] in self.docs:
            raise FakeDuplicateKeyError("E11000 duplicate key")
        self.docs[doc["_id"]] = dict(doc)

    async def replace_one(self, query: dict[str, Any], doc: dict[str, Any], upsert: bool = False) -> None:
        self.docs[query["_id"]] = dict(doc)

    async def find_one(self, query: dict[str, Any]) -> dict[str, Any] | None:
        return self.docs.get(query["_id"])

    async def delete_one(self, query: dict[str, Any]) -> MagicMock:
        return MagicMock(deleted_count=int(self.docs.pop(query["_id"], None) is not None))

    def find(self, query: dict[str, Any]) -> FakeCursor:
        if not query:
            return FakeCursor(list(self.docs.values()))
        wanted = query["_id"]["$in"]
        return FakeCursor([doc for key, doc in self.docs.items() if key in wanted])


def _database(collection: MagicMock) -> MagicMock:
    database = MagicMock()
    database.__getitem__ = MagicMock(return_value=collection)
    return database


def _adapter(model: ModelSchema, collection: MagicMock) -> MongoAdapter:
    return MongoAdapter(model, StaticProvider(_database(collection)), id_generator=lambda: 42)


class StubMongoBackend(MongoBackend):
    def __init__(self, database: MagicMock) -> None:
        self.database = database

    async def open(self, settings: DataSourceSettings, database: str | None) -> Any:
        return self.database


def _coordinator(models: ModelRegistry, collection: MagicMock) -> Coordinator:
    settings = DataSourceSettings(connector="mongodb", database="test")
    return Coordinator(StubMongoBackend(_database(collection)), settings, models)


# -- Error classification ----------------------------------------------------


def test_duplicate_key_detection():
    assert _is_duplicate_key_error(FakeDuplicateKeyError("dup"))
    err = Exception("write error")
    err.code = 11000  # type: ignore[attr-defined]
    assert _is_duplicate_key_error(err)
    assert not _is_duplicate_key_error(RuntimeError("other"))


def test_connection_error_detection_walks_mro():
    assert _is_connection_error(FakeConnectionFailure("down"))
    assert _is_connection_error(FakeServerSelectionTimeout("timeout"))
    assert not _is_connection_error(RuntimeError("other"))


def test_reject_mongo_operators():
    with pytest.raises(QueryError, match=r"\$where"):
        _reject_mongo_operators({"name": {"$where": "sleep(1000)"}}, "Widget")
    with pytest.raises(QueryError):
        _reject_mongo_operators({"or": [{"$expr": {}}]}, "Widget")
    _reject_mongo_operators({"name": {"like": "a%"}}, "Widget")


# -- Query translation -------------------------------------------------------


def test_to_query_maps_id_and_operators(widget_model: ModelSchema):
    adapter = _adapter(widget_model, MagicMock())
    query = adapter.to_query(
        {
            "id": {"inq": ["1", 2]},
            "name": {"neq": "x", "like": "a%"},
            "or": [{"createdAt": {"gt": "2024-01-01T00:00:00Z"}}, {"name": {"exists": False}}],
        }
    )
    assert query == {
        "_id": {"$in": [1, 2]},
        "name": {"$ne": "x", "$regex": "a.*"},
        "$or": [{"createdAt": {"$gt": "2024-01-01T00:00:00Z"}}, {"name": {"$exists": False}}],
    }


def test_to_query_between_and_case_insensitive_like(widget_model: ModelSchema):
    adapter = _adapter(widget_model, MagicMock())
    assert adapter.to_query({"name": {"between": ["a", "m"]}}) == {"name": {"$gte": "a", "$lte": "m"}}
    assert adapter.to_query({"name": {"ilike": "ab%"}}) == {"name": {"$regex": "ab.*", "$options": "i"}}
    negated = adapter.to_query({"name": {"nilike": "ab%"}})["name"]["$not"]
    assert isinstance(negated, re.Pattern)
    assert negated.flags & re.IGNORECASE


def test_to_query_encodes_dates(widget_model: ModelSchema):
    from datetime import datetime, timezone

    adapter = _adapter(widget_model, MagicMock())
    query = adapter.to_query({"createdAt": {"lt": datetime(2024, 1, 1, tzinfo=timezone.utc)}})
    assert query == {"createdAt": {"$lt": "2024-01-01T00:00:00.000000Z"}}


def test_to_query_rejects_malformed_composition(widget_model: ModelSchema):
    adapter = _adapter(widget_model, MagicMock())
    with pytest.raises(QueryError):
        adapter.to_query({"and": {"name": "a"}})


# -- Primitives --------------------------------------------------------------


async def test_create_with_id_inserts_under_underscore_id(widget_model: ModelSchema):
    coll = MagicMock()
    coll.insert_one = AsyncMock()
    adapter = _adapter(widget_model, coll)
    assert await adapter.create_with_id(7, {"name": "a"}) == (7, None)
    coll.insert_one.assert_awaited_once_with({"name": "a", "_id": 7})


async def test_create_duplicate_raises_conflict(widget_model: ModelSchema):
    coll = MagicMock()
    coll.insert_one = AsyncMock(side_effect=FakeDuplicateKeyError("dup"))
    adapter = _adapter(widget_model, coll)
    with pytest.raises(ConflictError) as exc_info:
        await adapter.create_with_id(7, {"name": "a"})
    assert exc_info.value.model_name == "Widget"
    assert exc_info.value.status_code == 409
    assert isinstance(exc_info.value.__cause__, FakeDuplicateKeyError)


async def test_create_connection_error(widget_model: ModelSchema):
    coll = MagicMock()
    coll.insert_one = AsyncMock(side_effect=FakeConnectionFailure("timeout"))
    adapter = _adapter(widget_model, coll)
    with pytest.raises(ConnectionFailedError) as exc_info:
        await adapter.create_with_id(7, {"name": "a"})
    assert exc_info.value.operation == "create_with_id"


async def test_generic_error_keeps_driver_code(widget_model: ModelSchema):
    coll = MagicMock()
    coll.replace_one = AsyncMock(side_effect=FakeOperationFailure("bad"))
    adapter = _adapter(widget_model, coll)
    with pytest.raises(BackendError) as exc_info:
        await adapter.put_with_id(7, {"name": "a"})
    assert exc_info.value.status_code == 2


async def test_put_with_id_upserts(widget_model: ModelSchema):
    coll = MagicMock()
    coll.replace_one = AsyncMock()
    adapter = _adapter(widget_model, coll)
    await adapter.put_with_id(7, {"name": "a"})
    coll.replace_one.assert_awaited_once_with({"_id": 7}, {"name": "a", "_id": 7}, upsert=True)


async def test_get_by_id(widget_model: ModelSchema):
    coll = MagicMock()
    coll.find_one = AsyncMock(return_value={"_id": 7, "name": "a"})
    adapter = _adapter(widget_model, coll)
    assert await adapter.get_by_id(7) == {"name": "a"}


async def test_get_by_id_missing(widget_model: ModelSchema):
    coll = MagicMock()
    coll.find_one = AsyncMock(return_value=None)
    adapter = _adapter(widget_model, coll)
    with pytest.raises(NotFoundError):
        await adapter.get_by_id(7)


async def test_delete_by_id(widget_model: ModelSchema):
    coll = MagicMock()
    coll.delete_one = AsyncMock(side_effect=[MagicMock(deleted_count=1), MagicMock(deleted_count=0)])
    adapter = _adapter(widget_model, coll)
    assert await adapter.delete_by_id(7) is True
    assert await adapter.delete_by_id(7) is False


async def test_list_all_connection_error(widget_model: ModelSchema):
    coll = MagicMock()
    coll.find = MagicMock(side_effect=FakeConnectionFailure("down"))
    adapter = _adapter(widget_model, coll)
    with pytest.raises(ConnectionFailedError):
        await adapter.list_all()


# -- Through the coordinator -------------------------------------------------


async def test_find_all_restores_ids(models: ModelRegistry):
    coll = MagicMock()
    coll.find = MagicMock(return_value=FakeCursor([{"_id": 1, "name": "a"}, {"_id": 2, "name": "b"}]))
    coordinator = _coordinator(models, coll)
    assert await coordinator.find_all("Widget") == [
        {"id": 1, "name": "a", "createdAt": None},
        {"id": 2, "name": "b", "createdAt": None},
    ]
    coll.find.assert_called_once_with({})


async def test_find_by_ids_uses_in_query(models: ModelRegistry):
    coll = MagicMock()
    coll.find = MagicMock(return_value=FakeCursor([{"_id": 1, "name": "a"}]))
    coordinator = _coordinator(models, coll)
    found = await coordinator.find_by_ids("Widget", ["1", 3])
    assert [r["id"] for r in found] == [1]
    coll.find.assert_called_once_with({"_id": {"$in": [1, 3]}})


async def test_find_by_filters_is_native(models: ModelRegistry):
    coll = MagicMock()
    coll.find = MagicMock(return_value=FakeCursor([{"_id": 2, "name": "b"}]))
    coordinator = _coordinator(models, coll)
    found = await coordinator.find_by_filters("Widget", {"name": {"inq": ["b", "c"]}})
    assert found == [{"id": 2, "name": "b", "createdAt": None}]
    coll.find.assert_called_once_with({"name": {"$in": ["b", "c"]}})


async def test_find_by_filters_rejects_raw_operators(models: ModelRegistry):
    coll = MagicMock()
    coordinator = _coordinator(models, coll)
    with pytest.raises(QueryError):
        await coordinator.find_by_filters("Widget", {"name": {"$ne": None}})
    coll.find.assert_not_called()


async def test_create_through_coordinator_conflict(models: ModelRegistry):
    coll = MagicMock()
    coll.insert_one = AsyncMock(side_effect=[None, FakeDuplicateKeyError("dup")])
    coordinator = _coordinator(models, coll)
    assert await coordinator.create("Widget", {"id": 1, "name": "a"}) == (1, None)
    with pytest.raises(ConflictError):
        await coordinator.create("Widget", {"id": 1, "name": "b"})


async def test_create_with_string_id_conflicts_with_numeric_key(models: ModelRegistry):
    coll = FakeCollection()
    coordinator = _coordinator(models, coll)
    await coordinator.create("Widget", {"id": 42, "name": "a"})
    with pytest.raises(ConflictError):
        await coordinator.create("Widget", {"id": "42", "name": "b"})
    assert list(coll.docs) == [42]


async def test_create_with_string_id_round_trips(models: ModelRegistry):
    coll = FakeCollection()
    coordinator = _coordinator(models, coll)
    id, _ = await coordinator.create("Widget", {"id": "7", "name": "a"})
    assert id == 7
    assert await coordinator.find_by_id("Widget", id) == {"id": 7, "name": "a", "createdAt": None}
    assert await coordinator.find_by_id("Widget", "7") == {"id": 7, "name": "a", "createdAt": None}


async def test_save_with_string_id_replaces_numeric_key(models: ModelRegistry):
    coll = FakeCollection()
    coordinator = _coordinator(models, coll)
    await coordinator.create("Widget", {"id": 3, "name": "a"})
    await coordinator.save("Widget", {"id": "3", "name": "b"})
    assert coll.docs == {3: {"_id": 3, "name": "b"}}


async def test_find_by_ids_and_update_with_string_ids(models: ModelRegistry):
    coll = FakeCollection()
    coordinator = _coordinator(models, coll)
    for id in (1, 2, 3):
        await coordinator.create("Widget", {"id": id, "name": "a"})
    found = await coordinator.find_by_ids("Widget", ["1", "3", "9"])
    assert sorted(r["id"] for r in found) == [1, 3]
    assert await coordinator.update("Widget", {"id": {"inq": ["1", "2"]}}, {"name": "b"}) == {"count": 2}
    assert {key: doc["name"] for key, doc in coll.docs.items()} == {1: "b", 2: "b", 3: "a"}


# -- Backend -----------------------------------------------------------------


def test_mongo_url():
    assert mongo_url(DataSourceSettings(connector="mongodb")) == "mongodb://127.0.0.1:27017"
    assert mongo_url(DataSourceSettings(connector="mongodb", host="db", port=27018)) == "mongodb://db:27018"
    assert mongo_url(DataSourceSettings(connector="mongodb", url="mongodb://u:p@db/x")) == "mongodb://u:p@db/x"


@pytest.fixture
def fake_motor(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    client_cls = MagicMock()
    motor_pkg = types.ModuleType("motor")
    motor_asyncio = types.ModuleType("motor.motor_asyncio")
    motor_asyncio.AsyncIOMotorClient = client_cls  # type: ignore[attr-defined]
    motor_pkg.motor_asyncio = motor_asyncio  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "motor", motor_pkg)
    monkeypatch.setitem(sys.modules, "motor.motor_asyncio", motor_asyncio)
    return client_cls


async def test_backend_open_pings_database(fake_motor: MagicMock):
    database = MagicMock()
    database.command = AsyncMock(return_value={"ok": 1})
    client = MagicMock()
    client.__getitem__ = MagicMock(return_value=database)
    fake_motor.return_value = client

    settings = DataSourceSettings(
        connector="mongodb", host="db", username="u", password="p", options={"serverSelectionTimeoutMS": 500}
    )
    handle = await MongoBackend().open(settings, "test")

    assert handle is database
    fake_motor.assert_called_once_with(
        "mongodb://db:27017", serverSelectionTimeoutMS=500, username="u", password="p"
    )
    client.__getitem__.assert_called_once_with("test")
    database.command.assert_awaited_once_with("ping")


async def test_backend_open_unreachable(fake_motor: MagicMock):
    database = MagicMock()
    database.command = AsyncMock(side_effect=FakeServerSelectionTimeout("no servers"))
    client = MagicMock()
    client.__getitem__ = MagicMock(return_value=database)
    fake_motor.return_value = client

    with pytest.raises(ConnectionFailedError):
        await MongoBackend().open(DataSourceSettings(connector="mongodb"), "test")
    client.close.assert_called_once()


async def test_backend_close():
    handle = MagicMock()
    await MongoBackend().close(handle)
    handle.client.close.assert_called_once()
