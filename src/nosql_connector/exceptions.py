"""Domain exceptions for the connector.

All backend driver exceptions are caught by the adapters and re-raised as one
of these domain exceptions so that callers never see raw client errors. The
``status_code`` attribute carries an HTTP-like status (404, 409, or whatever
the backend reported) on a single common field.
"""

from __future__ import annotations

from typing import Any


class PersistenceError(Exception):
    """Base exception for all connector errors.

    Attributes:
        model_name: The model involved, or ``None`` for connection-level errors.
        operation: The operation that failed (e.g. ``"create"``, ``"get_by_id"``).
        detail: A sanitised description of what went wrong.
        status_code: Normalised status indicator, if any.
    """

    default_status: int | None = None

    def __init__(
        self,
        *,
        model_name: str | None = None,
        operation: str,
        detail: str,
        cause: Exception | None = None,
        status_code: int | None = None,
    ) -> None:
        self.model_name = model_name
        self.operation = operation
        self.detail = detail
        self.status_code = status_code if status_code is not None else self.default_status
        prefix = f"[{model_name}] " if model_name else ""
        super().__init__(f"{prefix}{operation} failed: {detail}")
        if cause is not None:
            self.__cause__ = cause


class NotFoundError(PersistenceError):
    """Raised when the requested id does not exist."""

    default_status = 404


class ConflictError(PersistenceError):
    """Raised when a create targets an id that already exists."""

    default_status = 409


class ConnectionFailedError(PersistenceError):
    """Raised when a connection precondition is missing or the backend is unreachable."""


class BackendError(PersistenceError):
    """Opaque passthrough of any other backend failure."""


class QueryError(PersistenceError):
    """Raised for invalid filters, bad limit/offset values, or missing ids."""

    default_status = 400


def status_of(exc: BaseException) -> int | None:
    """Extract a backend status indicator from a driver exception.

    Drivers disagree on where they put it (``status``, ``status_code``,
    ``code``, or ``response.status_code``); only integer values are kept.
    """
    candidates: list[Any] = [
        getattr(exc, "status", None),
        getattr(exc, "status_code", None),
        getattr(exc, "code", None),
    ]
    response = getattr(exc, "response", None)
    if response is not None:
        candidates.append(getattr(response, "status_code", None))
    for value in candidates:
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None
