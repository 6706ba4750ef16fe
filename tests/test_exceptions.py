"""Tests for the domain exception hierarchy."""

from __future__ import annotations

import pytest
from nosql_connector.exceptions import (
    BackendError,
    ConflictError,
    ConnectionFailedError,
    NotFoundError,
    PersistenceError,
    QueryError,
    status_of,
)


def test_persistence_error_attributes():
    cause = ValueError("root cause")
    err = PersistenceError(model_name="Widget", operation="create", detail="Something broke", cause=cause)
    assert err.model_name == "Widget"
    assert err.operation == "create"
    assert err.detail == "Something broke"
    assert err.__cause__ is cause
    assert "[Widget]" in str(err)
    assert "create failed" in str(err)


def test_persistence_error_without_model():
    err = ConnectionFailedError(operation="connect", detail="refused")
    assert err.model_name is None
    assert str(err) == "connect failed: refused"


@pytest.mark.parametrize(
    ("cls", "status"),
    [
        (NotFoundError, 404),
        (ConflictError, 409),
        (QueryError, 400),
        (ConnectionFailedError, None),
        (BackendError, None),
    ],
)
def test_default_status_codes(cls: type[PersistenceError], status: int | None):
    err = cls(model_name="Widget", operation="op", detail="d")
    assert err.status_code == status
    assert isinstance(err, PersistenceError)


def test_explicit_status_code_wins():
    err = BackendError(operation="get_by_id", detail="boom", status_code=503)
    assert err.status_code == 503


def test_status_of_reads_common_attributes():
    class WithStatus(Exception):
        status = 418

    class WithCode(Exception):
        code = 11000

    class WithResponse(Exception):
        def __init__(self) -> None:
            super().__init__("http")
            self.response = type("Resp", (), {"status_code": 502})()

    assert status_of(WithStatus()) == 418
    assert status_of(WithCode()) == 11000
    assert status_of(WithResponse()) == 502
    assert status_of(RuntimeError("plain")) is None


def test_status_of_ignores_non_integer_codes():
    class StringCode(Exception):
        code = "ECONNREFUSED"

    assert status_of(StringCode()) is None
