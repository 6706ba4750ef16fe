"""Backend routing — maps a connector name to its backend family."""

from __future__ import annotations

import importlib
from typing import Any

from nosql_connector.adapters.base import Backend
from nosql_connector.coordinator import Coordinator
from nosql_connector.schema import ModelRegistry
from nosql_connector.settings import DataSourceSettings

# Built-in backends, imported lazily so optional client libraries stay optional.
_BUILTIN_BACKENDS: dict[str, str] = {
    "memory": "nosql_connector.adapters.memory:MemoryBackend",
    "couchdb": "nosql_connector.adapters.couchdb:CouchDBBackend",
    "mongodb": "nosql_connector.adapters.mongo:MongoBackend",
    "mongo": "nosql_connector.adapters.mongo:MongoBackend",
    "redis": "nosql_connector.adapters.redis_hash:RedisBackend",
    "leveldb": "nosql_connector.adapters.leveldb:LevelDBBackend",
}


class BackendRegistry:
    """Resolves connector names to backend classes.

    Checks explicit registrations first, then falls back to the built-in
    backends.
    """

    def __init__(self) -> None:
        self._overrides: dict[str, type[Backend]] = {}

    def register(self, name: str, backend_cls: type[Backend]) -> None:
        """Register a custom backend under *name*."""
        self._overrides[name.lower()] = backend_cls

    def get_backend_class(self, name: str) -> type[Backend]:
        key = name.lower()
        if key in self._overrides:
            return self._overrides[key]
        target = _BUILTIN_BACKENDS.get(key)
        if target is None:
            available = sorted({*self._overrides, *_BUILTIN_BACKENDS})
            raise ValueError(f"Unsupported connector: {name!r}. Available: {available}")
        module_name, _, class_name = target.partition(":")
        module = importlib.import_module(module_name)
        return getattr(module, class_name)

    def create_coordinator(self, settings: DataSourceSettings, models: ModelRegistry, **kwargs: Any) -> Coordinator:
        """Build a coordinator for *settings*; extra keyword arguments go to :class:`Coordinator`."""
        backend = self.get_backend_class(settings.connector)()
        return Coordinator(backend, settings, models, **kwargs)


default_registry = BackendRegistry()


def create_coordinator(
    settings: DataSourceSettings, models: ModelRegistry, registry: BackendRegistry | None = None, **kwargs: Any
) -> Coordinator:
    return (registry or default_registry).create_coordinator(settings, models, **kwargs)


async def initialize(
    settings: DataSourceSettings, models: ModelRegistry, registry: BackendRegistry | None = None, **kwargs: Any
) -> Coordinator:
    """Build a coordinator and connect it before handing it back."""
    coordinator = create_coordinator(settings, models, registry, **kwargs)
    await coordinator.connect()
    return coordinator
