"""Adapter and backend contracts shared by every storage family."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol, runtime_checkable

from nosql_connector.exceptions import (
    BackendError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    status_of,
)
from nosql_connector.filters import PredicateEvaluator, apply_where
from nosql_connector.schema import ModelSchema, PropertyType
from nosql_connector.settings import DataSourceSettings
from nosql_connector.transcoding import decode_date, encode_date

logger = logging.getLogger(__name__)

# A backend row: the raw key-derived id and the stored payload.
Row = tuple[Any, dict[str, Any]]
# Result of a write: the id and the revision token (``None`` when unsupported).
WriteResult = tuple[Any, Any]


@dataclass(frozen=True)
class Capabilities:
    """What an adapter class supports beyond the required primitives.

    The coordinator branches on these flags; it never probes for methods.

    Attributes:
        multi_get: ``list_by_ids`` is implemented natively.
        native_filter: ``list_by_filter`` evaluates ``where`` clauses in the backend.
        unique_keys: the backend itself rejects inserts of an existing key.
        revisions: writes return a revision token.
    """

    multi_get: bool = False
    native_filter: bool = False
    unique_keys: bool = False
    revisions: bool = False


@runtime_checkable
class ConnectionProvider(Protocol):
    """Long-lived source of the current connection handle."""

    async def acquire(self) -> Any: ...


class Adapter(ABC):
    """Per-model gateway translating generic primitives to one backend.

    Subclasses implement the required primitives and override
    :attr:`capabilities` when they supply ``list_by_ids`` or
    ``list_by_filter``. Payloads passed in are already stripped of the id
    field and run through :meth:`to_db`; rows returned carry the raw id taken
    from the backend key.
    """

    capabilities: ClassVar[Capabilities] = Capabilities()

    def __init__(
        self,
        model: ModelSchema,
        provider: ConnectionProvider,
        *,
        id_generator: Callable[[], Any],
        predicate: PredicateEvaluator = apply_where,
        settings: DataSourceSettings | None = None,
    ) -> None:
        self._model = model
        self._provider = provider
        self._id_generator = id_generator
        self._predicate = predicate
        self._settings = settings

    @property
    def model(self) -> ModelSchema:
        return self._model

    @property
    def model_name(self) -> str:
        return self._model.name

    async def connection(self) -> Any:
        """Return the live handle from the provider; adapters never own it."""
        return await self._provider.acquire()

    # -- Required primitives --------------------------------------------------

    @abstractmethod
    async def create_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        """Insert a record under *id*; raise :class:`ConflictError` if it exists."""

    @abstractmethod
    async def put_with_id(self, id: Any, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        """Insert or fully replace the record under *id*."""

    @abstractmethod
    async def delete_by_id(self, id: Any, options: dict[str, Any] | None = None) -> bool:
        """Delete the record under *id*. Returns True if something was deleted."""

    @abstractmethod
    async def get_by_id(self, id: Any, options: dict[str, Any] | None = None) -> dict[str, Any]:
        """Return the stored payload; raise :class:`NotFoundError` when absent."""

    @abstractmethod
    async def list_all(self, options: dict[str, Any] | None = None) -> list[Row]:
        """Return every row belonging to the model."""

    # -- Defaults and optional primitives -------------------------------------

    async def create_without_id(self, data: dict[str, Any], options: dict[str, Any] | None = None) -> WriteResult:
        """Insert a record under a freshly generated id."""
        return await self.create_with_id(self._id_generator(), data, options)

    async def list_by_ids(self, ids: list[Any], options: dict[str, Any] | None = None) -> list[Row]:
        """Fetch several rows at once. Only called when ``capabilities.multi_get``."""
        raise self._unsupported("list_by_ids", "multi_get")

    async def list_by_filter(self, where: dict[str, Any], options: dict[str, Any] | None = None) -> list[Row]:
        """Fetch rows matching *where*. Only called when ``capabilities.native_filter``."""
        raise self._unsupported("list_by_filter", "native_filter")

    async def exists(self, id: Any, options: dict[str, Any] | None = None) -> bool:
        """Existence probe built on ``get_by_id``; not-found reads as ``False``."""
        try:
            await self.get_by_id(id, options)
        except NotFoundError:
            return False
        return True

    # -- Transcoding ----------------------------------------------------------

    def to_db(self, data: dict[str, Any]) -> dict[str, Any]:
        """Convert a model payload to the backend format.

        The default suits JSON-native backends: only dates need converting.
        """
        for name, value in data.items():
            prop = self._model.get_property(name)
            if prop is not None and prop.property_type == PropertyType.DATE:
                data[name] = encode_date(value)
        return data

    def from_db(self, data: dict[str, Any]) -> dict[str, Any]:
        """Convert a backend payload back to the model format."""
        for name, value in data.items():
            prop = self._model.get_property(name)
            if prop is not None and prop.property_type == PropertyType.DATE:
                data[name] = decode_date(value)
        return data

    # -- Helpers --------------------------------------------------------------

    def _not_found(self, id: Any, operation: str) -> NotFoundError:
        return NotFoundError(
            model_name=self.model_name,
            operation=operation,
            detail=f"No record with id {id!r}.",
        )

    def _conflict(self, id: Any, operation: str, cause: Exception | None = None) -> ConflictError:
        return ConflictError(
            model_name=self.model_name,
            operation=operation,
            detail=f"Duplicate id {id!r}.",
            cause=cause,
        )

    def _unsupported(self, operation: str, capability: str) -> BackendError:
        return BackendError(
            model_name=self.model_name,
            operation=operation,
            detail=f"{type(self).__name__} does not declare the {capability} capability.",
        )

    def _backend_error(self, exc: Exception, operation: str, detail: str) -> PersistenceError:
        """Wrap an unclassified driver exception, keeping its status indicator."""
        if isinstance(exc, PersistenceError):
            return exc
        logger.error("%s %s failed for %s: %s", type(self).__name__, operation, self.model_name, type(exc).__name__)
        return BackendError(
            model_name=self.model_name,
            operation=operation,
            detail=detail,
            cause=exc,
            status_code=status_of(exc),
        )


class Backend(ABC):
    """Connection primitives of one backend family.

    The coordinator calls :meth:`open` at most once per connect cycle and
    :meth:`close` with the handle it returned.
    """

    name: ClassVar[str]
    adapter_class: ClassVar[type[Adapter]]
    # Document and log stores need a named container; hash stores default to one.
    requires_database: ClassVar[bool] = True

    @abstractmethod
    async def open(self, settings: DataSourceSettings, database: str | None) -> Any:
        """Establish a connection and return the handle."""

    @abstractmethod
    async def close(self, handle: Any) -> None:
        """Release a handle returned by :meth:`open`."""
