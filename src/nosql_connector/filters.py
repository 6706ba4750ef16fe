"""In-memory predicate evaluation for backends without native filtering.

``where`` clauses follow the familiar document-query shape::

    {"name": "a"}                              # equality
    {"age": {"gte": 18, "lt": 65}}             # comparison operators
    {"id": {"inq": [1, 2, 3]}}                 # inclusion list
    {"or": [{"name": "a"}, {"name": "b"}]}     # boolean composition

Supported operators: ``gt``, ``gte``, ``lt``, ``lte``, ``between``, ``inq``,
``nin``, ``neq``, ``like``, ``nlike``, ``ilike``, ``nilike``, ``regexp`` and
``exists``. An array-valued field matches an equality test when it contains
the operand.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

from nosql_connector.exceptions import QueryError
from nosql_connector.transcoding import decode_date

Record = dict[str, Any]
PredicateEvaluator = Callable[[list[Record], Any], list[Record]]

MIN_QUERY_LIMIT = 1

COMPARISON_OPERATORS = frozenset(
    {"gt", "gte", "lt", "lte", "between", "inq", "nin", "neq", "like", "nlike", "ilike", "nilike", "regexp", "exists"}
)


def _validate_limit(limit: int) -> int:
    """Validate the *limit* of a query. Raises ``QueryError`` for values below 1."""
    if not isinstance(limit, int) or limit < MIN_QUERY_LIMIT:
        raise QueryError(operation="find", detail=f"limit must be >= {MIN_QUERY_LIMIT}, got {limit!r}")
    return limit


def _validate_offset(offset: int) -> int:
    """Validate the *skip*/*offset* of a query. Raises ``QueryError`` for negative values."""
    if not isinstance(offset, int) or offset < 0:
        raise QueryError(operation="find", detail=f"skip must be >= 0, got {offset!r}")
    return offset


def ids_from_where(where: dict[str, Any] | None, id_name: str) -> list[Any] | None:
    """Return the ids a ``where`` clause pins the identifier to, if any.

    Only an exact scalar (``{"id": 42}``) or an inclusion list
    (``{"id": {"inq": [...]}}``) qualifies; every other shape returns ``None``
    and must go through predicate evaluation.
    """
    if not where or id_name not in where:
        return None
    value = where[id_name]
    if value is None:
        return None
    if isinstance(value, (str, int, float, bytes)) and not isinstance(value, bool):
        return [value]
    if isinstance(value, dict) and set(value) == {"inq"} and isinstance(value["inq"], (list, tuple)):
        return list(value["inq"])
    return None


def matches(record: Record, where: dict[str, Any] | None) -> bool:
    """Evaluate a ``where`` clause against a single record."""
    if not where:
        return True
    for key, condition in where.items():
        if key == "and":
            if not all(matches(record, sub) for sub in _clauses(condition, key)):
                return False
        elif key == "or":
            if not any(matches(record, sub) for sub in _clauses(condition, key)):
                return False
        elif not _test(record.get(key), condition, key in record):
            return False
    return True


def apply_where(records: list[Record], where: dict[str, Any] | None) -> list[Record]:
    """Return the records matching *where*, preserving input order."""
    if not where:
        return list(records)
    return [record for record in records if matches(record, where)]


def apply_filter(records: list[Record], query: dict[str, Any] | None) -> list[Record]:
    """Apply a full query (``where``, ``order``, ``skip``/``offset``, ``limit``, ``fields``)."""
    if not query:
        return list(records)
    result = apply_where(records, query.get("where"))
    order = query.get("order")
    if order:
        result = _apply_order(result, order)
    skip = query.get("skip", query.get("offset"))
    if skip is not None:
        result = result[_validate_offset(skip):]
    limit = query.get("limit")
    if limit is not None:
        result = result[: _validate_limit(limit)]
    fields = query.get("fields")
    if fields:
        result = [_project(record, fields) for record in result]
    return result


def _clauses(condition: Any, key: str) -> list[dict[str, Any]]:
    if not isinstance(condition, (list, tuple)):
        raise QueryError(operation="find", detail=f"'{key}' expects a list of clauses")
    return list(condition)


def is_operator_clause(condition: Any) -> bool:
    return isinstance(condition, dict) and bool(condition) and set(condition) <= COMPARISON_OPERATORS


def _test(value: Any, condition: Any, present: bool) -> bool:
    if not is_operator_clause(condition):
        return _equals(value, condition)
    for op, operand in condition.items():
        if not _apply_operator(op, value, operand, present):
            return False
    return True


def _apply_operator(op: str, value: Any, operand: Any, present: bool) -> bool:
    if op == "exists":
        return present == bool(operand)
    if op == "inq":
        return any(_equals(value, candidate) for candidate in _as_list(operand, op))
    if op == "nin":
        return not any(_equals(value, candidate) for candidate in _as_list(operand, op))
    if op == "neq":
        return not _equals(value, operand)
    if op in ("like", "nlike", "ilike", "nilike", "regexp"):
        if value is None:
            return op in ("nlike", "nilike")
        flags = re.IGNORECASE if op in ("ilike", "nilike") else 0
        if isinstance(operand, re.Pattern):
            pattern = operand
        elif op == "regexp":
            pattern = re.compile(str(operand), flags)
        else:
            # SQL-style wildcard: % matches any run of characters.
            pattern = re.compile(str(operand).replace("%", ".*"), flags)
        found = pattern.search(str(value)) is not None
        return not found if op in ("nlike", "nilike") else found
    if op == "between":
        bounds = _as_list(operand, op)
        if len(bounds) != 2:
            raise QueryError(operation="find", detail="'between' expects exactly two bounds")
        low, high = _compare(value, bounds[0]), _compare(value, bounds[1])
        return low is not None and high is not None and low >= 0 and high <= 0
    cmp = _compare(value, operand)
    if cmp is None:
        return False
    if op == "gt":
        return cmp > 0
    if op == "gte":
        return cmp >= 0
    if op == "lt":
        return cmp < 0
    return cmp <= 0


def _as_list(operand: Any, op: str) -> list[Any]:
    if not isinstance(operand, (list, tuple, set)):
        raise QueryError(operation="find", detail=f"'{op}' expects a list")
    return list(operand)


def _normalize(value: Any, other: Any) -> Any:
    # Compare dates against their string form when the other side is a string.
    if isinstance(value, (datetime, date)) and isinstance(other, str):
        parsed = decode_date(other)
        return parsed if isinstance(parsed, (datetime, date)) else value
    return other


def _equals(value: Any, expected: Any) -> bool:
    if isinstance(value, list) and not isinstance(expected, list):
        return any(_equals(item, expected) for item in value)
    expected = _normalize(value, expected)
    if value == expected:
        return True
    # Ids read back from string keys compare equal to their numeric form.
    if isinstance(value, (int, float)) and isinstance(expected, str) and not isinstance(value, bool):
        return str(value) == expected
    if isinstance(value, str) and isinstance(expected, (int, float)) and not isinstance(expected, bool):
        return value == str(expected)
    return False


def _compare(value: Any, operand: Any) -> int | None:
    if value is None or operand is None:
        return None
    operand = _normalize(value, operand)
    try:
        if value < operand:
            return -1
        if value > operand:
            return 1
        return 0
    except TypeError:
        return None


def _apply_order(records: list[Record], order: str | list[str]) -> list[Record]:
    keys = [order] if isinstance(order, str) else list(order)
    result = list(records)
    # Stable sort from the least significant key to the most significant one.
    for term in reversed(keys):
        parts = term.split()
        field = parts[0]
        descending = len(parts) > 1 and parts[1].upper() == "DESC"
        present = [r for r in result if r.get(field) is not None]
        missing = [r for r in result if r.get(field) is None]
        try:
            present.sort(key=lambda r: r[field], reverse=descending)
        except TypeError:
            present.sort(key=lambda r: str(r[field]), reverse=descending)
        result = present + missing
    return result


def _project(record: Record, fields: list[str] | dict[str, bool]) -> Record:
    if isinstance(fields, dict):
        included = [name for name, keep in fields.items() if keep]
        if included:
            return {name: record[name] for name in included if name in record}
        excluded = {name for name, keep in fields.items() if not keep}
        return {name: value for name, value in record.items() if name not in excluded}
    return {name: record[name] for name in fields if name in record}
