"""NoSQL Connector — one CRUD/query contract over document, hash and log stores."""

from nosql_connector.adapters.base import Adapter, Backend, Capabilities, ConnectionProvider
from nosql_connector.adapters.couchdb import CouchDBAdapter, CouchDBBackend
from nosql_connector.adapters.leveldb import LevelDBAdapter, LevelDBBackend
from nosql_connector.adapters.memory import MemoryAdapter, MemoryBackend, MemoryStore
from nosql_connector.adapters.mongo import MongoAdapter, MongoBackend
from nosql_connector.adapters.redis_hash import RedisAdapter, RedisBackend
from nosql_connector.coordinator import Coordinator, generate_id
from nosql_connector.exceptions import (
    BackendError,
    ConflictError,
    ConnectionFailedError,
    NotFoundError,
    PersistenceError,
    QueryError,
)
from nosql_connector.filters import apply_filter, apply_where
from nosql_connector.registry import BackendRegistry, create_coordinator, initialize
from nosql_connector.schema import ModelRegistry, ModelSchema, PropertySchema, PropertyType
from nosql_connector.settings import DataSourceConfig, DataSourceSettings, InvalidConnectionURL

__all__ = [
    "Adapter",
    "Backend",
    "BackendError",
    "BackendRegistry",
    "Capabilities",
    "ConflictError",
    "ConnectionFailedError",
    "ConnectionProvider",
    "Coordinator",
    "CouchDBAdapter",
    "CouchDBBackend",
    "DataSourceConfig",
    "DataSourceSettings",
    "InvalidConnectionURL",
    "LevelDBAdapter",
    "LevelDBBackend",
    "MemoryAdapter",
    "MemoryBackend",
    "MemoryStore",
    "ModelRegistry",
    "ModelSchema",
    "MongoAdapter",
    "MongoBackend",
    "NotFoundError",
    "PersistenceError",
    "PropertySchema",
    "PropertyType",
    "QueryError",
    "RedisAdapter",
    "RedisBackend",
    "apply_filter",
    "apply_where",
    "create_coordinator",
    "generate_id",
    "initialize",
]
